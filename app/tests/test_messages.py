"""
Integration tests for the message pipeline.
Tests sending, listing, read receipts, expiry and soft delete.
"""
import pytest
from datetime import datetime, timedelta
from uuid import UUID, uuid4
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from db.models import Message, User
from services.message_service import days_until_expiry
from conftest import auth_headers


@pytest.fixture
def group_chat(test_client: TestClient, seed_test_users: list[User]) -> dict:
    """Group created by alice with bob; carol is left out."""
    alice, bob, _ = seed_test_users
    response = test_client.post(
        "/api/chats/group",
        json={"name": "Team", "participants": [bob.id]},
        headers=auth_headers(alice)
    )
    return response.json()


def send(test_client: TestClient, chat_id: int, user: User, **body):
    body.setdefault("content", "hello")
    return test_client.post(f"/api/messages/chats/{chat_id}/messages", json=body, headers=auth_headers(user))


class TestSendMessage:
    """Tests for POST /api/messages/chats/{id}/messages."""

    def test_send_text_message(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        alice = seed_test_users[0]

        response = send(test_client, group_chat["id"], alice, content="  hello team  ")

        assert response.status_code == 201
        data = response.json()
        UUID(data["id"])
        assert data["chatId"] == group_chat["id"]
        assert data["senderId"] == alice.id
        assert data["senderName"] == "Alice"
        assert data["content"] == "hello team"
        assert data["type"] == "text"
        assert data["isRead"] is False
        assert data["isEncrypted"] is True
        assert data["daysUntilExpiry"] == 7

    def test_send_updates_chat_last_message(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        alice, bob, _ = seed_test_users
        sent = send(test_client, group_chat["id"], alice, content="latest").json()

        chats = test_client.get("/api/chats", headers=auth_headers(bob)).json()

        assert chats[0]["lastMessage"]["id"] == sent["id"]
        assert chats[0]["lastMessage"]["content"] == "latest"
        assert chats[0]["lastMessage"]["senderName"] == "Alice"

    def test_send_requires_content_or_file(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        response = send(test_client, group_chat["id"], seed_test_users[0], content="   ")

        assert response.status_code == 400
        assert response.json()["message"] == "Message content or file is required"

    def test_send_rejects_long_content(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        response = send(test_client, group_chat["id"], seed_test_users[0], content="x" * 2001)

        assert response.status_code == 400
        assert response.json()["message"] == "Message too long"

    def test_send_accepts_max_length_content(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        response = send(test_client, group_chat["id"], seed_test_users[0], content="x" * 2000)

        assert response.status_code == 201

    def test_non_participant_cannot_send(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        carol = seed_test_users[2]

        response = send(test_client, group_chat["id"], carol)

        assert response.status_code == 404
        assert response.json()["message"] == "Chat not found"

    def test_client_message_id_deduplicates(
        self, test_client: TestClient, test_db: Session, seed_test_users: list[User], group_chat: dict
    ):
        alice = seed_test_users[0]

        first = send(test_client, group_chat["id"], alice, clientMessageId="c-1")
        retry = send(test_client, group_chat["id"], alice, clientMessageId="c-1")

        assert first.status_code == 201
        assert retry.status_code == 200
        assert retry.json()["id"] == first.json()["id"]
        assert test_db.query(Message).count() == 1

    def test_rest_keeps_identical_content_without_client_id(
        self, test_client: TestClient, test_db: Session, seed_test_users: list[User], group_chat: dict
    ):
        alice = seed_test_users[0]

        assert send(test_client, group_chat["id"], alice, content="ok").status_code == 201
        assert send(test_client, group_chat["id"], alice, content="ok").status_code == 201
        assert test_db.query(Message).count() == 2

    def test_send_invalid_json(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        response = test_client.post(
            f"/api/messages/chats/{group_chat['id']}/messages",
            content=b"{not json",
            headers={**auth_headers(seed_test_users[0]), "Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_message_expiry_override(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        alice = seed_test_users[0]
        test_client.put(
            f"/api/chats/{group_chat['id']}/settings",
            json={"settings": {"messageExpiry": 30}},
            headers=auth_headers(alice)
        )

        data = send(test_client, group_chat["id"], alice).json()

        expires_at = datetime.fromisoformat(data["expiresAt"])
        timestamp = datetime.fromisoformat(data["timestamp"])
        assert expires_at - timestamp == timedelta(minutes=30)
        assert data["daysUntilExpiry"] == 1

    def test_send_with_multipart_file(
        self, test_client: TestClient, seed_test_users: list[User], group_chat: dict, fake_minio
    ):
        response = test_client.post(
            f"/api/messages/chats/{group_chat['id']}/messages",
            data={"content": "look"},
            files={"file": ("photo.png", b"\x89PNG-data", "image/png")},
            headers=auth_headers(seed_test_users[0])
        )

        assert response.status_code == 201
        data = response.json()
        assert data["type"] == "image"
        assert data["fileName"] == "photo.png"
        assert data["fileSize"] == len(b"\x89PNG-data")
        assert data["fileUrl"].startswith("/api/files/file-")
        assert len(fake_minio.objects) == 1


class TestListMessages:
    """Tests for GET /api/messages/chats/{id}/messages."""

    def test_messages_are_chronological(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        alice, bob, _ = seed_test_users
        for i in range(3):
            send(test_client, group_chat["id"], alice if i % 2 == 0 else bob, content=f"m{i}")

        response = test_client.get(f"/api/messages/chats/{group_chat['id']}/messages", headers=auth_headers(bob))

        assert response.status_code == 200
        assert [m["content"] for m in response.json()] == ["m0", "m1", "m2"]

    def test_pagination_newest_page_first(
        self, test_client: TestClient, test_db: Session, seed_test_users: list[User], group_chat: dict
    ):
        alice = seed_test_users[0]
        for i in range(5):
            send(test_client, group_chat["id"], alice, content=f"m{i}")
        # Give every message a distinct timestamp
        base = datetime.utcnow() - timedelta(minutes=10)
        for i, message in enumerate(test_db.query(Message).order_by(Message.content).all()):
            message.created_at = base + timedelta(seconds=i)
        test_db.commit()

        url = f"/api/messages/chats/{group_chat['id']}/messages"
        page1 = test_client.get(url, params={"page": 1, "limit": 2}, headers=auth_headers(alice)).json()
        page3 = test_client.get(url, params={"page": 3, "limit": 2}, headers=auth_headers(alice)).json()

        assert [m["content"] for m in page1] == ["m3", "m4"]
        assert [m["content"] for m in page3] == ["m0"]

    def test_invalid_paging(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        url = f"/api/messages/chats/{group_chat['id']}/messages"
        headers = auth_headers(seed_test_users[0])

        assert test_client.get(url, params={"page": 0}, headers=headers).status_code == 400
        assert test_client.get(url, params={"limit": 101}, headers=headers).status_code == 400

    def test_non_participant_cannot_list(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        response = test_client.get(
            f"/api/messages/chats/{group_chat['id']}/messages",
            headers=auth_headers(seed_test_users[2])
        )

        assert response.status_code == 404

    def test_expired_messages_are_hidden(
        self, test_client: TestClient, test_db: Session, seed_test_users: list[User], group_chat: dict
    ):
        alice = seed_test_users[0]
        expired = send(test_client, group_chat["id"], alice, content="old").json()
        send(test_client, group_chat["id"], alice, content="new")
        message = test_db.get(Message, UUID(expired["id"]))
        message.expires_at = datetime.utcnow() - timedelta(seconds=1)
        test_db.commit()

        response = test_client.get(f"/api/messages/chats/{group_chat['id']}/messages", headers=auth_headers(alice))

        assert [m["content"] for m in response.json()] == ["new"]


class TestReadReceipts:
    """Tests for PUT /api/messages/messages/{id}/read."""

    def test_mark_read(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        alice, bob, _ = seed_test_users
        sent = send(test_client, group_chat["id"], alice).json()

        response = test_client.put(f"/api/messages/messages/{sent['id']}/read", headers=auth_headers(bob))
        repeat = test_client.put(f"/api/messages/messages/{sent['id']}/read", headers=auth_headers(bob))

        assert response.status_code == 200
        assert response.json() == {"message": "Message marked as read", "messageId": sent["id"], "isRead": True}
        assert repeat.status_code == 200

        listed = test_client.get(f"/api/messages/chats/{group_chat['id']}/messages", headers=auth_headers(alice)).json()
        assert listed[0]["isRead"] is True

    def test_mark_read_non_participant(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        sent = send(test_client, group_chat["id"], seed_test_users[0]).json()

        response = test_client.put(f"/api/messages/messages/{sent['id']}/read", headers=auth_headers(seed_test_users[2]))

        assert response.status_code == 403

    def test_mark_read_unknown_message(self, test_client: TestClient, seed_test_users: list[User]):
        response = test_client.put(f"/api/messages/messages/{uuid4()}/read", headers=auth_headers(seed_test_users[0]))

        assert response.status_code == 404
        assert response.json()["message"] == "Message not found"

    def test_mark_read_malformed_id(self, test_client: TestClient, seed_test_users: list[User]):
        response = test_client.put("/api/messages/messages/not-a-uuid/read", headers=auth_headers(seed_test_users[0]))

        assert response.status_code == 400


class TestExpiryAndDelete:
    """Tests for expiry metadata and soft delete."""

    def test_expiry_info(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        sent = send(test_client, group_chat["id"], seed_test_users[0]).json()

        response = test_client.get(f"/api/messages/messages/{sent['id']}/expiry", headers=auth_headers(seed_test_users[1]))

        assert response.status_code == 200
        data = response.json()
        assert data["messageId"] == sent["id"]
        assert data["daysUntilExpiry"] == 7
        assert data["isExpired"] is False

    def test_days_until_expiry_rounds_up(self):
        now = datetime(2024, 1, 1)
        assert days_until_expiry(now + timedelta(days=6, hours=1), now) == 7
        assert days_until_expiry(now + timedelta(minutes=1), now) == 1
        assert days_until_expiry(None, now) is None

    def test_delete_disabled_by_default(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        sent = send(test_client, group_chat["id"], seed_test_users[0]).json()

        response = test_client.delete(f"/api/messages/messages/{sent['id']}", headers=auth_headers(seed_test_users[0]))

        assert response.status_code == 403
        assert response.json()["message"] == "Message deletion is disabled for this chat"

    def test_delete_own_message(self, test_client: TestClient, seed_test_users: list[User], group_chat: dict):
        alice, bob, _ = seed_test_users
        test_client.put(
            f"/api/chats/{group_chat['id']}/settings",
            json={"settings": {"allowDelete": True}},
            headers=auth_headers(alice)
        )
        sent = send(test_client, group_chat["id"], alice).json()

        not_sender = test_client.delete(f"/api/messages/messages/{sent['id']}", headers=auth_headers(bob))
        response = test_client.delete(f"/api/messages/messages/{sent['id']}", headers=auth_headers(alice))

        assert not_sender.status_code == 403
        assert response.status_code == 200
        assert response.json()["chatId"] == group_chat["id"]

        listed = test_client.get(f"/api/messages/chats/{group_chat['id']}/messages", headers=auth_headers(bob)).json()
        assert listed == []
        chats = test_client.get("/api/chats", headers=auth_headers(bob)).json()
        assert chats[0]["lastMessage"] is None

        # Deleted messages can no longer be read
        read = test_client.put(f"/api/messages/messages/{sent['id']}/read", headers=auth_headers(bob))
        assert read.status_code == 404
