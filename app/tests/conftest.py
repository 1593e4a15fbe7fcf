"""
Pytest configuration and fixtures for testing.
Provides test database, test client, users, tokens and a fake object store.
"""
import os

# Must be set before the application modules read their settings
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_securechat.db")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from datetime import datetime
from typing import Callable, Generator
from sqlalchemy.orm import Session
from fastapi.testclient import TestClient
from db.database import Base, SessionLocal, engine
from db.models import User
from db.repository import Repository
from core.security import create_access_token, hash_password
from main import app
from api.dependencies import get_db
from api.websocket_manager import connection_manager
from services import minio_client


TEST_PASSWORD = "password123"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh database for each test.
    Automatically creates and destroys tables.
    """
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_client(test_db: Session) -> Generator[TestClient, None, None]:
    """
    Create a test client with test database dependency override.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    client = TestClient(app)
    yield client

    # Clean up dependency overrides and any connection left behind
    app.dependency_overrides.clear()
    connection_manager.active_connections.clear()
    connection_manager.connection_to_user.clear()
    connection_manager.connection_rooms.clear()
    connection_manager.last_heartbeat.clear()


@pytest.fixture
def make_user(test_db: Session) -> Callable[..., User]:
    """Factory creating users whose password is TEST_PASSWORD."""
    repository = Repository(test_db)
    counter = {"n": 0}

    def _make_user(name: str = None, email: str = None, is_admin: bool = False) -> User:
        counter["n"] += 1
        name = name or f"User {counter['n']}"
        email = email or f"user{counter['n']}@example.com"
        return repository.create_user(
            email=email,
            name=name,
            password_hash=hash_password(TEST_PASSWORD),
            is_admin=is_admin
        )

    return _make_user


@pytest.fixture
def seed_test_users(make_user) -> list[User]:
    """Three regular users: alice, bob and carol."""
    return [
        make_user(name="Alice", email="alice@example.com"),
        make_user(name="Bob", email="bob@example.com"),
        make_user(name="Carol", email="carol@example.com"),
    ]


@pytest.fixture
def admin_user(make_user) -> User:
    return make_user(name="Admin", email="admin@example.com", is_admin=True)


def auth_headers(user: User) -> dict:
    token = create_access_token(user.id)["token"]
    return {"Authorization": f"Bearer {token}"}


def token_for(user: User) -> str:
    return create_access_token(user.id)["token"]


class FakeObjectResponse:
    """Stands in for the urllib3 response returned by Minio.get_object."""

    def __init__(self, data: bytes):
        self._data = data
        self.closed = False
        self.released = False

    def stream(self, amt: int = 32 * 1024):
        for start in range(0, len(self._data), amt):
            yield self._data[start:start + amt]

    def close(self):
        self.closed = True

    def release_conn(self):
        self.released = True


class FakeMinIOClient:
    """In-memory replacement for services.minio_client.MinIOClient."""

    def __init__(self):
        self.objects = {}
        self.available = True

    def put_object(self, object_name, data, length, content_type="application/octet-stream"):
        if not self.available:
            raise ConnectionError("MinIO is down")
        self.objects[object_name] = {
            "data": data.read(length),
            "content_type": content_type,
            "last_modified": datetime.utcnow(),
        }
        return True

    def stat_object(self, object_name):
        stored = self.objects.get(object_name)
        if stored is None:
            return None
        return {
            "size": len(stored["data"]),
            "etag": "fake-etag",
            "content_type": stored["content_type"],
            "last_modified": stored["last_modified"],
        }

    def get_object(self, object_name):
        stored = self.objects.get(object_name)
        if stored is None:
            return None
        return FakeObjectResponse(stored["data"])

    def ping(self):
        return self.available


@pytest.fixture
def fake_minio(monkeypatch) -> FakeMinIOClient:
    """
    Mock MinIO client for testing without a real object store.
    """
    fake = FakeMinIOClient()
    monkeypatch.setattr(minio_client, "_minio_client", fake)
    return fake
