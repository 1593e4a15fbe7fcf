"""
Tests for file upload, metadata and serving.
"""
from fastapi.testclient import TestClient
from db.models import MessageType, User
from api.files import generate_object_name, message_type_for
from conftest import auth_headers


class TestFileHelpers:

    def test_generated_name_keeps_extension(self):
        name = generate_object_name("Report.PDF")

        assert name.startswith("file-")
        assert name.endswith(".pdf")
        assert generate_object_name("").count(".") == 0

    def test_generated_name_pads_random_suffix(self, monkeypatch):
        monkeypatch.setattr("api.files.random.randint", lambda low, high: 42)
        monkeypatch.setattr("api.files.time.time", lambda: 1700000000.5)

        assert generate_object_name("photo.png") == "file-1700000000500-000000042.png"

    def test_message_type_from_mimetype(self):
        assert message_type_for("image/jpeg") == MessageType.IMAGE
        assert message_type_for("video/mp4") == MessageType.VIDEO
        assert message_type_for("audio/ogg") == MessageType.AUDIO
        assert message_type_for("application/pdf") == MessageType.FILE
        assert message_type_for("") == MessageType.FILE


class TestFileEndpoints:

    def test_upload_requires_auth(self, test_client: TestClient, fake_minio):
        response = test_client.post("/api/files/upload", files={"file": ("a.txt", b"hi", "text/plain")})

        assert response.status_code == 401

    def test_upload_info_and_serve(self, test_client: TestClient, seed_test_users: list[User], fake_minio):
        headers = auth_headers(seed_test_users[0])

        response = test_client.post(
            "/api/files/upload",
            files={"file": ("notes.txt", b"secret notes", "text/plain")},
            headers=headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["originalName"] == "notes.txt"
        assert data["size"] == len(b"secret notes")
        assert data["mimetype"] == "text/plain"
        assert data["url"] == f"/api/files/{data['filename']}"

        info = test_client.get(f"/api/files/info/{data['filename']}", headers=headers)
        assert info.status_code == 200
        assert info.json()["size"] == len(b"secret notes")

        # Serving needs no token
        served = test_client.get(data["url"])
        assert served.status_code == 200
        assert served.content == b"secret notes"
        assert served.headers["x-content-type-options"] == "nosniff"
        assert served.headers["content-disposition"] == "inline"

    def test_upload_too_large(self, test_client: TestClient, seed_test_users: list[User], fake_minio, monkeypatch):
        from core.config import settings
        monkeypatch.setattr(settings, "max_upload_bytes", 10)

        response = test_client.post(
            "/api/files/upload",
            files={"file": ("big.bin", b"x" * 11, "application/octet-stream")},
            headers=auth_headers(seed_test_users[0])
        )

        assert response.status_code == 413
        assert fake_minio.objects == {}

    def test_upload_when_storage_down(self, test_client: TestClient, seed_test_users: list[User], fake_minio):
        fake_minio.available = False

        response = test_client.post(
            "/api/files/upload",
            files={"file": ("a.txt", b"hi", "text/plain")},
            headers=auth_headers(seed_test_users[0])
        )

        assert response.status_code == 503

    def test_missing_file(self, test_client: TestClient, seed_test_users: list[User], fake_minio):
        assert test_client.get("/api/files/file-1-2.png").status_code == 404
        info = test_client.get("/api/files/info/file-1-2.png", headers=auth_headers(seed_test_users[0]))
        assert info.status_code == 404
        assert info.json()["message"] == "File not found"
