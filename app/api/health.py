"""
Health check and readiness probe endpoints.
Provides liveness and readiness checks for orchestrators and monitoring systems.
"""
import logging
import os
from typing import Dict, Any
from fastapi import APIRouter, status, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from api.dependencies import get_db
from services import redis_client
from services import minio_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_NAME = "SecureChat API"
SERVICE_VERSION = "1.0.0"


def check_database(db: Session) -> Dict[str, Any]:
    """
    Check database connectivity.

    Args:
        db: Database session

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": f"Database connection failed: {str(e)}"}


def check_redis() -> Dict[str, Any]:
    if redis_client.ping_redis():
        return {"healthy": True, "message": "Redis connection OK"}
    return {"healthy": False, "message": "Redis unavailable (rate limiting fails open)"}


def check_storage() -> Dict[str, Any]:
    try:
        healthy = minio_client.get_minio_client().ping()
    except Exception as e:
        logger.warning(f"Object storage health check failed: {e}")
        healthy = False
    if healthy:
        return {"healthy": True, "message": "Object storage OK"}
    return {"healthy": False, "message": "Object storage unavailable (uploads disabled)"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Liveness probe endpoint.

    Returns basic service status without checking dependencies.

    Example Response:
        {
            "status": "healthy",
            "service": "SecureChat API",
            "version": "1.0.0"
        }
    """
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness probe endpoint.

    Only the database gates readiness. Redis and object storage are
    reported so operators can see degraded features, but the API keeps
    serving without them.

    Example Response:
        {
            "status": "ready",
            "checks": {
                "database": {"healthy": true, "message": "Database connection OK"},
                "redis": {"healthy": false, "message": "Redis unavailable (rate limiting fails open)"},
                "storage": {"healthy": true, "message": "Object storage OK"}
            }
        }
    """
    checks = {
        "database": check_database(db),
        "redis": check_redis(),
        "storage": check_storage()
    }

    if checks["database"]["healthy"]:
        return {"status": "ready", "checks": checks}

    logger.warning("Readiness check failed: database unavailable")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "checks": checks}
    )
