"""
Message endpoints.
Send, list, read receipts, expiry metadata and soft delete. Every write
that other participants should see is also pushed to the chat's room.
"""
import json
import logging
import time
from typing import List
from uuid import UUID
from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile as StarletteUploadFile

from api.dependencies import get_db, get_current_user
from api.files import message_type_for, store_upload
from api.metrics import (
    messages_created_total, messages_duplicates_suppressed_total,
    message_send_duration_seconds
)
from api.realtime import message_deleted_event, message_updated_event, new_message_event
from api.schemas import (
    MessageCreate, MessageDeleteResult, MessageExpiryResponse,
    MessageReadResult, MessageResponse
)
from api.websocket_manager import connection_manager
from core.exceptions import ValidationFailed
from db.models import User
from services import message_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["Messages"])


async def _parse_send_request(request: Request) -> MessageCreate:
    """
    Build a MessageCreate from a JSON body or from multipart form data.

    A multipart ``file`` part is stored like an upload and referenced by
    the message.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data") or content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        fields = {key: value for key, value in form.items() if not isinstance(value, StarletteUploadFile)}
        upload = form.get("file")
        if isinstance(upload, StarletteUploadFile) and upload.filename:
            stored = await run_in_threadpool(store_upload, upload)
            fields.update({
                "fileUrl": stored["url"],
                "fileName": stored["original_name"],
                "fileSize": stored["size"],
                "fileType": stored["mimetype"],
            })
            fields.setdefault("type", message_type_for(stored["mimetype"]).value)
        body = fields
    else:
        raw = await request.body()
        try:
            body = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            raise ValidationFailed("Invalid JSON body")
        if not isinstance(body, dict):
            raise ValidationFailed("Request body must be a JSON object")

    try:
        return MessageCreate.model_validate(body)
    except ValidationError as e:
        raise ValidationFailed("Validation failed", errors=e.errors(include_url=False, include_context=False))


@router.get("/chats/{chat_id}/messages", response_model=List[MessageResponse])
def list_messages(
    chat_id: int,
    page: int = Query(1, ge=1, description="Page number, newest page first"),
    limit: int = Query(message_service.DEFAULT_PAGE_SIZE, ge=1, le=message_service.MAX_PAGE_SIZE),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    One page of messages in chronological order.

    Soft-deleted and expired messages are never returned. Page 1 holds the
    most recent ``limit`` messages, oldest first.

    Raises:
        NotFound: 404 if the chat does not exist or the caller is not a participant
    """
    return message_service.list_messages(
        db,
        requester=current_user,
        chat_id=chat_id,
        page=page,
        limit=limit
    )


@router.post("/chats/{chat_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: int,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Send a message to a chat.

    Accepts JSON, optionally referencing a file uploaded through
    /api/files/upload, or multipart form data with a ``file`` part.

    Returns:
        201 with the stored message; 200 with the earlier message when
        ``clientMessageId`` repeats one already sent

    Raises:
        NotFound: 404 if the chat does not exist or the caller is not a participant
        ValidationFailed: 400 if neither content nor file is given, or content exceeds 2000 chars

    Example:
        POST /api/messages/chats/1/messages
        {"content": "hello", "type": "text"}
    """
    payload = await _parse_send_request(request)

    def persist():
        message, created = message_service.send_message(
            db,
            requester=current_user,
            chat_id=chat_id,
            content=payload.content,
            message_type=payload.type,
            file_url=payload.file_url,
            file_name=payload.file_name,
            file_size=payload.file_size,
            file_type=payload.file_type,
            client_message_id=payload.client_message_id
        )
        return message_service.format_message(message), created, message.chat.type.value

    started = time.perf_counter()
    formatted, created, chat_type = await run_in_threadpool(persist)
    message_send_duration_seconds.labels(source="rest", instance="api").observe(time.perf_counter() - started)

    if not created:
        messages_duplicates_suppressed_total.labels(source="rest", instance="api").inc()
        response.status_code = status.HTTP_200_OK
        return formatted

    messages_created_total.labels(chat_type=chat_type, source="rest", instance="api").inc()
    await connection_manager.send_to_room(chat_id, new_message_event(formatted))
    return formatted


@router.put("/messages/{message_id}/read", response_model=MessageReadResult)
def mark_message_read(
    message_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Mark a message as read by the caller. Repeating the call is a no-op.

    Raises:
        NotFound: 404 if the message does not exist
        Forbidden: 403 if the caller is not a participant of its chat
    """
    message, _ = message_service.mark_read(db, requester=current_user, message_id=message_id)
    background_tasks.add_task(
        connection_manager.send_to_room,
        message.chat_id,
        message_updated_event(message.id, message.chat_id)
    )
    return {"message": "Message marked as read", "message_id": message.id, "is_read": True}


@router.get("/messages/{message_id}/expiry", response_model=MessageExpiryResponse)
def message_expiry(
    message_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Expiry timestamp, whole days left (rounded up) and expired flag."""
    return message_service.expiry_info(db, requester=current_user, message_id=message_id)


@router.delete("/messages/{message_id}", response_model=MessageDeleteResult)
def delete_message(
    message_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Soft-delete one of the caller's own messages.

    Only allowed in chats whose ``allowDelete`` setting is on. The message
    disappears from listings at once and is purged at its expiry.

    Raises:
        NotFound: 404 if the message does not exist
        Forbidden: 403 if the caller is not its sender or deletion is disabled
    """
    message = message_service.delete_message(db, requester=current_user, message_id=message_id)
    background_tasks.add_task(
        connection_manager.send_to_room,
        message.chat_id,
        message_deleted_event(message.id, message.chat_id)
    )
    return {"message": "Message deleted", "message_id": message.id, "chat_id": message.chat_id}
