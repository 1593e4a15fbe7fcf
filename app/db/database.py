"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class.
Connection pool usage is exported as Prometheus metrics.
"""
import logging
import os
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import Pool
from prometheus_client import Gauge, Counter
from core.config import settings
from core.security import hash_password

logger = logging.getLogger(__name__)

db_pool_connections_active = Gauge(
    "db_pool_connections_active",
    "Number of active database connections",
    labelnames=["instance"]
)

db_connections_opened_total = Counter(
    "db_connections_opened_total",
    "Total number of database connections opened",
    labelnames=["instance"]
)

# Production connection pool settings
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_PRE_PING = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))  # 1 hour


def build_engine(database_url: str):
    """Create an engine with pool settings appropriate for the backend."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.log_level == "DEBUG"
        )
    return create_engine(
        database_url,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=DB_POOL_PRE_PING,
        pool_recycle=DB_POOL_RECYCLE,
        echo=settings.log_level == "DEBUG"
    )


engine = build_engine(settings.database_url)


@event.listens_for(Pool, "connect")
def receive_connect(dbapi_conn, connection_record):
    """Track database connections."""
    db_connections_opened_total.labels(instance="api").inc()


@event.listens_for(Pool, "checkout")
def receive_checkout(dbapi_conn, connection_record, connection_proxy):
    """Update metrics when connection is checked out from pool."""
    pool = connection_proxy._pool
    checkedout = getattr(pool, "checkedout", None)
    if checkedout is not None:
        db_pool_connections_active.labels(instance="api").set(checkedout())


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called once during application setup.
    """
    from db import models  # Import models to register them with Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def seed_db() -> None:
    """
    Create the bootstrap admin account.

    Only runs against an empty user table and only when ADMIN_EMAIL and
    ADMIN_PASSWORD are configured.
    """
    from db.models import User

    if not settings.admin_email or not settings.admin_password:
        logger.info("No bootstrap admin configured, skipping seed")
        return

    db = SessionLocal()
    try:
        existing_users = db.query(User).count()
        if existing_users > 0:
            logger.info(f"Database already seeded ({existing_users} users exist)")
            return

        admin = User(
            email=settings.admin_email.lower(),
            name=settings.admin_name,
            password=hash_password(settings.admin_password),
            is_admin=True
        )
        db.add(admin)
        db.commit()
        logger.info(f"Bootstrap admin {admin.email} created")

    except Exception as e:
        db.rollback()
        logger.error(f"Error seeding database: {e}")
        raise
    finally:
        db.close()
