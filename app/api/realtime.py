"""
Realtime gateway: the /ws endpoint and the events it pushes.

Clients authenticate with ``/ws?token=<jwt>``. Frames are JSON objects:
clients send ``{"action": ...}``, the server sends ``{"type": ...}``.
The database stays the system of record; this module only fans events out
to connections that joined a chat's room.
"""
import json
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api.dependencies import validate_websocket_token
from api.metrics import (
    messages_created_total, messages_duplicates_suppressed_total,
    message_send_duration_seconds, websocket_connections_rejected_total,
    websocket_messages_received_total
)
from api.schemas import MessageCreate, MessageResponse, WSError
from api.websocket_manager import connection_manager
from core.audit_logger import audit_logger
from core.exceptions import ChatAPIError, Forbidden, ValidationFailed
from db.database import SessionLocal
from db.repository import Repository
from services import message_service
from services.registration import set_registration_enabled

logger = logging.getLogger(__name__)

router = APIRouter()


# Event builders (server -> client)
def build_event(event_type: str, **fields: Any) -> dict:
    return {"type": event_type, **fields}


def message_payload(formatted: dict) -> dict:
    """camelCase JSON form of a formatted message."""
    return MessageResponse.model_validate(formatted).model_dump(mode="json", by_alias=True)


def new_message_event(formatted: dict) -> dict:
    return build_event("new_message", chatId=formatted["chat_id"], message=message_payload(formatted))


def message_updated_event(message_id: UUID, chat_id: int, is_read: bool = True) -> dict:
    return build_event("message_updated", messageId=str(message_id), chatId=chat_id, isRead=is_read)


def message_deleted_event(message_id: UUID, chat_id: int) -> dict:
    return build_event("message_deleted", messageId=str(message_id), chatId=chat_id)


def presence_event(user_id: int, status: str) -> dict:
    return build_event("presence", userId=user_id, status=status, timestamp=datetime.utcnow().isoformat())


def registration_event(enabled: bool) -> dict:
    return build_event("registration_toggled", enabled=enabled)


def error_event(message: str, code: str) -> dict:
    return WSError(message=message, code=code).model_dump(by_alias=True)


def _run_with_session(work: Callable[[Session], Any]) -> Any:
    db = SessionLocal()
    try:
        return work(db)
    finally:
        db.close()


async def run_in_session(work: Callable[[Session], Any]) -> Any:
    """
    Run blocking database work on its own short-lived session in the threadpool.

    A socket can stay open for hours, so it never holds a session (or a pooled
    connection) between frames.
    """
    return await run_in_threadpool(_run_with_session, work)


async def mark_user_offline(user_id: int) -> None:
    """Persist offline presence and tell everyone still connected."""
    await run_in_session(lambda db: Repository(db).set_user_presence(user_id, False))
    await connection_manager.broadcast(presence_event(user_id, "offline"))
    logger.info(f"User {user_id} is offline")


connection_manager.on_user_offline = mark_user_offline


# Frame helpers
def _frame_value(frame: dict, camel: str, snake: str) -> Any:
    value = frame.get(camel)
    if value is None:
        value = frame.get(snake)
    return value


def _chat_id(frame: dict) -> int:
    value = _frame_value(frame, "chatId", "chat_id")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed("chatId is required")


def _message_id(frame: dict) -> UUID:
    value = _frame_value(frame, "messageId", "message_id")
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationFailed("messageId is required")


# Action handlers (client -> server)
async def handle_join_chat(websocket: WebSocket, user_id: int, frame: dict) -> None:
    chat_id = _chat_id(frame)
    is_member = await run_in_session(lambda db: Repository(db).is_chat_participant(chat_id, user_id))
    if not is_member:
        raise Forbidden("You are not a participant of this chat")
    connection_manager.join_room(websocket, chat_id)
    await websocket.send_json(build_event("joined", chatId=chat_id))


async def handle_leave_chat(websocket: WebSocket, user_id: int, frame: dict) -> None:
    chat_id = _chat_id(frame)
    connection_manager.leave_room(websocket, chat_id)
    await websocket.send_json(build_event("left", chatId=chat_id))


async def handle_send_message(websocket: WebSocket, user_id: int, frame: dict) -> None:
    """
    Persist and fan out a message. A repeat of the same content within the
    duplicate window (or of the same clientMessageId) is dropped silently.
    """
    chat_id = _chat_id(frame)
    try:
        payload = MessageCreate.model_validate(frame)
    except ValidationError as e:
        raise ValidationFailed("Invalid message", errors=e.errors(include_url=False, include_context=False))

    def persist(db: Session):
        requester = Repository(db).get_user_by_id(user_id)
        message, created = message_service.send_message(
            db,
            requester=requester,
            chat_id=chat_id,
            content=payload.content,
            message_type=payload.type,
            file_url=payload.file_url,
            file_name=payload.file_name,
            file_size=payload.file_size,
            file_type=payload.file_type,
            client_message_id=payload.client_message_id,
            detect_duplicates=True
        )
        return message_service.format_message(message), created, message.chat.type.value

    started = time.perf_counter()
    try:
        formatted, created, chat_type = await run_in_session(persist)
    except ChatAPIError:
        raise
    except Exception as e:
        logger.error(f"Realtime send failed for user {user_id} in chat {chat_id}: {e}", exc_info=True)
        await websocket.send_json(error_event("Failed to send message", "SEND_FAILED"))
        return
    finally:
        message_send_duration_seconds.labels(source="websocket", instance="api").observe(time.perf_counter() - started)

    if not created:
        messages_duplicates_suppressed_total.labels(source="websocket", instance="api").inc()
        return

    messages_created_total.labels(chat_type=chat_type, source="websocket", instance="api").inc()
    await connection_manager.send_to_room(chat_id, new_message_event(formatted))


async def _relay_typing(event_type: str, websocket: WebSocket, user_id: int, frame: dict) -> None:
    chat_id = _chat_id(frame)
    if not connection_manager.is_in_room(websocket, chat_id):
        raise Forbidden("Join the chat before sending typing events")
    await connection_manager.send_to_room(
        chat_id,
        build_event(event_type, chatId=chat_id, userId=user_id),
        exclude=websocket
    )


async def handle_typing_start(websocket: WebSocket, user_id: int, frame: dict) -> None:
    await _relay_typing("typing_start", websocket, user_id, frame)


async def handle_typing_stop(websocket: WebSocket, user_id: int, frame: dict) -> None:
    await _relay_typing("typing_stop", websocket, user_id, frame)


async def handle_mark_read(websocket: WebSocket, user_id: int, frame: dict) -> None:
    message_id = _message_id(frame)

    def read(db: Session):
        requester = Repository(db).get_user_by_id(user_id)
        message, _ = message_service.mark_read(db, requester=requester, message_id=message_id)
        return message.chat_id

    chat_id = await run_in_session(read)
    await connection_manager.send_to_room(chat_id, message_updated_event(message_id, chat_id))


async def handle_admin_toggle_registration(websocket: WebSocket, user_id: int, frame: dict) -> None:
    """Admin flag is re-read from the database, never trusted from the session."""

    def toggle(db: Session) -> bool:
        requester = Repository(db).get_user_by_id(user_id)
        if not requester or not requester.is_admin:
            audit_logger.log_authorization_denied(
                user_id=str(user_id),
                resource="registration",
                action="admin_toggle_registration",
                reason="admin access required"
            )
            raise Forbidden("Admin access required")
        return set_registration_enabled(db, bool(frame.get("enabled")))

    enabled = await run_in_session(toggle)
    audit_logger.log_admin_action(
        user_id=str(user_id),
        action="enable_registration" if enabled else "disable_registration"
    )
    await connection_manager.broadcast(registration_event(enabled))


async def handle_pong(websocket: WebSocket, user_id: int, frame: dict) -> None:
    await connection_manager.update_heartbeat(websocket)


ACTION_HANDLERS: Dict[str, Callable] = {
    "join_chat": handle_join_chat,
    "leave_chat": handle_leave_chat,
    "send_message": handle_send_message,
    "typing_start": handle_typing_start,
    "typing_stop": handle_typing_stop,
    "mark_read": handle_mark_read,
    "admin_toggle_registration": handle_admin_toggle_registration,
    "pong": handle_pong,
}


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token for authentication")
):
    """
    WebSocket endpoint for realtime chat delivery.

    Connection Flow:
        1. Client connects with token: ws://host/ws?token={jwt}
        2. Server validates token; an invalid token closes the socket with
           code 4001 before it is accepted
        3. Client joins rooms: {"action": "join_chat", "chatId": 1}
        4. Server pushes new_message, typing_*, message_updated,
           message_deleted, presence and registration_toggled events
        5. Server pings every 30s; connections silent for 40s are closed

    Each frame gets its own database session, released before the next
    frame is awaited.

    Client Actions:
        - join_chat / leave_chat: {"chatId": 1}
        - send_message: {"chatId": 1, "content": "hi", "type": "text", "clientMessageId": "..."}
        - typing_start / typing_stop: {"chatId": 1}
        - mark_read: {"messageId": "<uuid>", "chatId": 1}
        - admin_toggle_registration: {"enabled": false}
        - pong

    Error Codes:
        - 4001: Authentication failed (missing or invalid token)
        - 4002: Connection limit reached (max 5 per user)
        - 1001: Connection timeout (no heartbeat)
    """
    user = await run_in_session(lambda db: validate_websocket_token(token, db))
    if not user:
        logger.warning("WebSocket authentication failed")
        websocket_connections_rejected_total.labels(reason="auth", instance="api").inc()
        await websocket.close(code=4001, reason="Authentication failed")
        return

    user_id = user.id
    connected = await connection_manager.connect(websocket, user_id)
    if not connected:
        websocket_connections_rejected_total.labels(reason="limit", instance="api").inc()
        await websocket.close(code=4002, reason="Connection limit reached")
        return

    try:
        await run_in_session(lambda db: Repository(db).set_user_presence(user_id, True))
        await websocket.send_json(build_event(
            "connected",
            userId=user_id,
            name=user.name,
            timestamp=datetime.utcnow().isoformat()
        ))
        await connection_manager.broadcast(presence_event(user_id, "online"), exclude=websocket)

        while True:
            data = await websocket.receive_text()
            await connection_manager.update_heartbeat(websocket)

            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json(error_event("Invalid JSON format", "INVALID_JSON"))
                continue
            if not isinstance(frame, dict):
                await websocket.send_json(error_event("Frame must be a JSON object", "INVALID_JSON"))
                continue

            action = frame.get("action")
            handler = ACTION_HANDLERS.get(action)
            if handler is None:
                await websocket.send_json(error_event(f"Unknown action: {action}", "INVALID_ACTION"))
                continue

            websocket_messages_received_total.labels(action=action, instance="api").inc()
            try:
                await handler(websocket, user_id, frame)
            except ChatAPIError as e:
                await websocket.send_json(error_event(e.message, e.code))
            except WebSocketDisconnect:
                raise
            except Exception as e:
                logger.error(f"Error processing {action} for user {user_id}: {e}", exc_info=True)
                await websocket.send_json(error_event("Internal server error", "INTERNAL_ERROR"))

    except WebSocketDisconnect:
        logger.info(f"User {user_id} disconnected from WebSocket")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}", exc_info=True)
    finally:
        await connection_manager.drop(websocket)
