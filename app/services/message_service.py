"""
Message pipeline: send, list, read receipts, expiry and soft delete.

Messages carry an absolute expiry. Every read path and the purge worker
treat ``expires_at <= now`` as expired.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import Forbidden, NotFound, ValidationFailed
from db.models import Chat, Message, MessageType, User, default_expiry
from db.repository import Repository

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 2000
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50


def days_until_expiry(expires_at: Optional[datetime], now: Optional[datetime] = None) -> Optional[int]:
    """Whole days left before expiry, rounded up (negative once expired)."""
    if expires_at is None:
        return None
    remaining = (expires_at - (now or datetime.utcnow())).total_seconds()
    return math.ceil(remaining / 86400)


def format_message(message: Message, now: Optional[datetime] = None) -> dict:
    """Sender-enriched representation of a message."""
    sender = message.sender
    return {
        "id": message.id,
        "chat_id": message.chat_id,
        "sender_id": message.sender_id,
        "sender_name": sender.name if sender else None,
        "sender_avatar": sender.avatar if sender else None,
        "content": message.content,
        "type": message.type,
        "file_url": message.file_url,
        "file_name": message.file_name,
        "file_size": message.file_size,
        "timestamp": message.created_at,
        "is_read": message.is_read,
        "is_encrypted": message.is_encrypted,
        "expires_at": message.expires_at,
        "days_until_expiry": days_until_expiry(message.expires_at, now),
    }


def _participant_chat(repo: Repository, chat_id: int, user_id: int) -> Chat:
    chat = repo.get_chat_for_participant(chat_id, user_id)
    if not chat:
        raise NotFound("Chat not found")
    return chat


def _accessible_message(repo: Repository, message_id: UUID, user_id: int) -> Message:
    message = repo.get_message_by_id(message_id)
    if not message:
        raise NotFound("Message not found")
    if not repo.is_chat_participant(message.chat_id, user_id):
        raise Forbidden("Access denied")
    return message


def send_message(
    db: Session,
    *,
    requester: User,
    chat_id: int,
    content: str = "",
    message_type: MessageType = MessageType.TEXT,
    file_url: Optional[str] = None,
    file_name: Optional[str] = None,
    file_size: Optional[int] = None,
    file_type: Optional[str] = None,
    client_message_id: Optional[str] = None,
    detect_duplicates: bool = False
) -> Tuple[Message, bool]:
    """
    Persist a message and advance the chat's last-message pointer.

    Both writes are committed in one transaction.

    Args:
        detect_duplicates: drop identical content from the same sender sent
            within the duplicate window (realtime path)

    Returns:
        (message, created) - created is False when the send was recognised
        as a duplicate and the earlier message is returned instead

    Raises:
        NotFound: chat absent or requester not a participant
        ValidationFailed: empty message or content too long
    """
    content = (content or "").strip()
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationFailed("Message too long")
    if not content and not file_url:
        raise ValidationFailed("Message content or file is required")

    repo = Repository(db)
    chat = _participant_chat(repo, chat_id, requester.id)
    now = datetime.utcnow()

    if client_message_id:
        existing = repo.get_message_by_client_id(requester.id, client_message_id)
        if existing:
            logger.info(f"Duplicate send suppressed: client id {client_message_id} from user {requester.id}")
            return existing, False
    elif detect_duplicates:
        since = now - timedelta(seconds=settings.duplicate_window_seconds)
        existing = repo.find_recent_duplicate(chat.id, requester.id, content, since)
        if existing:
            logger.info(f"Duplicate send suppressed: user {requester.id} chat {chat.id} within {settings.duplicate_window_seconds}s")
            return existing, False

    expiry_minutes = chat.merged_settings().get("messageExpiry")
    try:
        message = repo.add_message(
            chat=chat,
            sender_id=requester.id,
            content=content,
            message_type=message_type,
            expires_at=default_expiry(now, settings.message_ttl_days, expiry_minutes),
            created_at=now,
            file_url=file_url,
            file_name=file_name,
            file_size=file_size,
            file_type=file_type,
            client_message_id=client_message_id
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        if not client_message_id:
            raise
        existing = repo.get_message_by_client_id(requester.id, client_message_id)
        if existing is None:
            raise
        return existing, False

    db.refresh(message)
    logger.info(f"Message {message.id} stored in chat {chat.id} by user {requester.id}")
    return message, True


def list_messages(
    db: Session,
    *,
    requester: User,
    chat_id: int,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE
) -> List[dict]:
    """
    One page of visible messages, oldest first.

    Pages are counted over newest-first order, so page 1 holds the latest
    ``limit`` messages.
    """
    if page < 1:
        raise ValidationFailed("page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationFailed(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    repo = Repository(db)
    chat = _participant_chat(repo, chat_id, requester.id)
    now = datetime.utcnow()
    messages = repo.get_visible_messages(chat.id, now, limit=limit, offset=(page - 1) * limit)
    return [format_message(m, now) for m in reversed(messages)]


def mark_read(db: Session, *, requester: User, message_id: UUID) -> Tuple[Message, bool]:
    """
    Add the requester's read receipt. Repeats are a no-op.

    Returns:
        (message, created) - created is False when the receipt already existed
    """
    repo = Repository(db)
    message = _accessible_message(repo, message_id, requester.id)
    if message.is_deleted or message.is_expired():
        raise NotFound("Message not found")

    created = repo.add_read_receipt(message, requester.id)
    if created:
        logger.info(f"Message {message.id} read by user {requester.id}")
    return message, created


def expiry_info(db: Session, *, requester: User, message_id: UUID) -> dict:
    """Expiry metadata; isExpired does not consider soft deletion."""
    message = _accessible_message(Repository(db), message_id, requester.id)
    now = datetime.utcnow()
    return {
        "message_id": message.id,
        "expires_at": message.expires_at,
        "days_until_expiry": days_until_expiry(message.expires_at, now),
        "is_expired": message.is_expired(now),
    }


def delete_message(db: Session, *, requester: User, message_id: UUID) -> Message:
    """
    Soft-delete a message. Only its sender may do so, and only in chats
    whose ``allowDelete`` setting is on.
    """
    repo = Repository(db)
    message = _accessible_message(repo, message_id, requester.id)
    if message.sender_id != requester.id:
        raise Forbidden("Only the sender can delete this message")
    if not message.chat.merged_settings().get("allowDelete"):
        raise Forbidden("Message deletion is disabled for this chat")
    if message.is_deleted:
        return message

    message = repo.soft_delete_message(message)
    logger.info(f"Message {message.id} soft-deleted by user {requester.id}")
    return message
