"""
Tests for the realtime gateway (/ws).
Covers the handshake, rooms, message fan-out, duplicate suppression,
typing relay, read receipts, presence and the admin registration toggle.
"""
import pytest
from contextlib import ExitStack
from datetime import timedelta
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from sqlalchemy.orm import Session
import api.realtime
from db.database import SessionLocal
from db.models import Message, User
from db.repository import Repository
from services.registration import is_registration_enabled
from conftest import auth_headers, token_for


@pytest.fixture
def chat_id(test_client: TestClient, seed_test_users: list[User]) -> int:
    alice, bob, _ = seed_test_users
    response = test_client.post("/api/chats/personal", json={"userId": bob.id}, headers=auth_headers(alice))
    return response.json()["id"]


def connect(test_client: TestClient, user: User):
    return test_client.websocket_connect(f"/ws?token={token_for(user)}")


def join(ws, chat_id: int) -> dict:
    ws.send_json({"action": "join_chat", "chatId": chat_id})
    return ws.receive_json()


class TestHandshake:

    def test_rejects_missing_token(self, test_client: TestClient):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 4001

    def test_rejects_invalid_token(self, test_client: TestClient):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/ws?token=garbage"):
                pass
        assert exc_info.value.code == 4001

    def test_connect_marks_user_online(self, test_client: TestClient, test_db: Session, seed_test_users: list[User]):
        alice = seed_test_users[0]

        with connect(test_client, alice) as ws:
            event = ws.receive_json()
            assert event["type"] == "connected"
            assert event["userId"] == alice.id
            test_db.refresh(alice)
            assert alice.is_online is True

        test_db.expire_all()
        assert Repository(test_db).get_user_by_id(alice.id).is_online is False

    def test_connection_limit(self, test_client: TestClient, seed_test_users: list[User]):
        alice = seed_test_users[0]

        with ExitStack() as stack:
            for _ in range(5):
                ws = stack.enter_context(connect(test_client, alice))
                assert ws.receive_json()["type"] == "connected"

            with pytest.raises(WebSocketDisconnect) as exc_info:
                with connect(test_client, alice):
                    pass
            assert exc_info.value.code == 4002

    def test_invalid_frames(self, test_client: TestClient, seed_test_users: list[User]):
        with connect(test_client, seed_test_users[0]) as ws:
            ws.receive_json()

            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON format", "code": "INVALID_JSON"}

            ws.send_json({"action": "dance"})
            assert ws.receive_json()["code"] == "INVALID_ACTION"


class TestRooms:

    def test_join_requires_participation(self, test_client: TestClient, seed_test_users: list[User], chat_id: int):
        carol = seed_test_users[2]

        with connect(test_client, carol) as ws:
            ws.receive_json()
            event = join(ws, chat_id)

        assert event["type"] == "error"
        assert event["code"] == "FORBIDDEN"

    def test_join_and_leave(self, test_client: TestClient, seed_test_users: list[User], chat_id: int):
        with connect(test_client, seed_test_users[0]) as ws:
            ws.receive_json()
            assert join(ws, chat_id) == {"type": "joined", "chatId": chat_id}

            ws.send_json({"action": "leave_chat", "chatId": chat_id})
            assert ws.receive_json() == {"type": "left", "chatId": chat_id}


class TestRealtimeMessaging:

    def test_send_message_reaches_room_including_sender(
        self, test_client: TestClient, seed_test_users: list[User], chat_id: int
    ):
        alice, bob, _ = seed_test_users

        with connect(test_client, alice) as ws_alice:
            ws_alice.receive_json()
            with connect(test_client, bob) as ws_bob:
                ws_bob.receive_json()
                presence = ws_alice.receive_json()
                assert presence["type"] == "presence"
                assert presence["userId"] == bob.id
                assert presence["status"] == "online"

                join(ws_alice, chat_id)
                join(ws_bob, chat_id)

                ws_alice.send_json({"action": "send_message", "chatId": chat_id, "content": "hi bob"})

                for ws in (ws_alice, ws_bob):
                    event = ws.receive_json()
                    assert event["type"] == "new_message"
                    assert event["chatId"] == chat_id
                    assert event["message"]["content"] == "hi bob"
                    assert event["message"]["senderId"] == alice.id
                    assert event["message"]["senderName"] == "Alice"

            # Bob's only connection closed
            offline = ws_alice.receive_json()
            assert offline["type"] == "presence"
            assert offline["status"] == "offline"

    def test_rest_send_is_pushed_to_room(self, test_client: TestClient, seed_test_users: list[User], chat_id: int):
        alice, bob, _ = seed_test_users

        with connect(test_client, bob) as ws_bob:
            ws_bob.receive_json()
            join(ws_bob, chat_id)

            response = test_client.post(
                f"/api/messages/chats/{chat_id}/messages",
                json={"content": "via rest"},
                headers=auth_headers(alice)
            )
            assert response.status_code == 201

            event = ws_bob.receive_json()
            assert event["type"] == "new_message"
            assert event["message"]["id"] == response.json()["id"]

    def test_duplicate_within_window_is_dropped(
        self, test_client: TestClient, test_db: Session, seed_test_users: list[User], chat_id: int
    ):
        alice = seed_test_users[0]

        with connect(test_client, alice) as ws:
            ws.receive_json()
            join(ws, chat_id)

            ws.send_json({"action": "send_message", "chatId": chat_id, "content": "same"})
            assert ws.receive_json()["type"] == "new_message"

            ws.send_json({"action": "send_message", "chatId": chat_id, "content": "same"})
            # Round trip so the duplicate has been processed
            assert join(ws, chat_id)["type"] == "joined"
            assert test_db.query(Message).count() == 1

            # Outside the window the same content is a new message
            message = test_db.query(Message).one()
            message.created_at = message.created_at - timedelta(seconds=6)
            test_db.commit()

            ws.send_json({"action": "send_message", "chatId": chat_id, "content": "same"})
            assert ws.receive_json()["type"] == "new_message"
            assert test_db.query(Message).count() == 2

    def test_send_message_validation_error(self, test_client: TestClient, seed_test_users: list[User], chat_id: int):
        with connect(test_client, seed_test_users[0]) as ws:
            ws.receive_json()
            ws.send_json({"action": "send_message", "chatId": chat_id, "content": ""})
            event = ws.receive_json()

        assert event["type"] == "error"
        assert event["code"] == "VALIDATION_ERROR"

    def test_typing_excludes_sender(self, test_client: TestClient, seed_test_users: list[User], chat_id: int):
        alice, bob, _ = seed_test_users

        with connect(test_client, alice) as ws_alice:
            ws_alice.receive_json()
            with connect(test_client, bob) as ws_bob:
                ws_bob.receive_json()
                ws_alice.receive_json()  # bob online

                # Typing before joining is refused
                ws_bob.send_json({"action": "typing_start", "chatId": chat_id})
                assert ws_bob.receive_json()["code"] == "FORBIDDEN"

                join(ws_alice, chat_id)
                join(ws_bob, chat_id)

                ws_bob.send_json({"action": "typing_start", "chatId": chat_id})
                assert ws_alice.receive_json() == {"type": "typing_start", "chatId": chat_id, "userId": bob.id}

                ws_bob.send_json({"action": "typing_stop", "chatId": chat_id})
                assert ws_alice.receive_json() == {"type": "typing_stop", "chatId": chat_id, "userId": bob.id}

                # Bob got nothing back from his own typing events
                assert join(ws_bob, chat_id)["type"] == "joined"

    def test_mark_read_broadcasts_update(self, test_client: TestClient, seed_test_users: list[User], chat_id: int):
        alice, bob, _ = seed_test_users

        with connect(test_client, alice) as ws_alice:
            ws_alice.receive_json()
            join(ws_alice, chat_id)
            ws_alice.send_json({"action": "send_message", "chatId": chat_id, "content": "read me"})
            message_id = ws_alice.receive_json()["message"]["id"]

            with connect(test_client, bob) as ws_bob:
                ws_bob.receive_json()
                ws_alice.receive_json()  # bob online
                join(ws_bob, chat_id)

                ws_bob.send_json({"action": "mark_read", "messageId": message_id, "chatId": chat_id})

                expected = {"type": "message_updated", "messageId": message_id, "chatId": chat_id, "isRead": True}
                assert ws_alice.receive_json() == expected
                assert ws_bob.receive_json() == expected


class TestAdminToggle:

    def test_admin_toggles_registration(
        self, test_client: TestClient, test_db: Session, admin_user: User
    ):
        with connect(test_client, admin_user) as ws:
            ws.receive_json()
            ws.send_json({"action": "admin_toggle_registration", "enabled": False})

            assert ws.receive_json() == {"type": "registration_toggled", "enabled": False}

        test_db.expire_all()
        assert is_registration_enabled(test_db) is False

    def test_non_admin_cannot_toggle(self, test_client: TestClient, test_db: Session, seed_test_users: list[User]):
        with connect(test_client, seed_test_users[0]) as ws:
            ws.receive_json()
            ws.send_json({"action": "admin_toggle_registration", "enabled": False})
            event = ws.receive_json()

        assert event["code"] == "FORBIDDEN"
        assert is_registration_enabled(test_db) is True


class TestSessionLifetime:

    def test_idle_socket_holds_no_database_session(
        self, test_client: TestClient, seed_test_users: list[User], chat_id: int, monkeypatch
    ):
        opened = []

        def tracking_session_factory():
            session = SessionLocal()
            opened.append(session)
            return session

        monkeypatch.setattr(api.realtime, "SessionLocal", tracking_session_factory)

        with connect(test_client, seed_test_users[0]) as ws:
            ws.receive_json()
            assert join(ws, chat_id)["type"] == "joined"

            # Handshake, presence and join each used a session of their own
            assert len(opened) == 3
            assert not any(session.in_transaction() for session in opened)
