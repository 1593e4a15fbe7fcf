"""Chat lifecycle: personal/group creation, listing and settings."""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.audit_logger import audit_logger
from core.exceptions import Forbidden, NotFound, ValidationFailed
from db.models import Chat, ChatType, Message, User, personal_pair_key
from db.repository import Repository

logger = logging.getLogger(__name__)


def _participant_view(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "avatar": user.avatar,
        "is_online": user.is_online,
        "last_seen": user.last_seen,
    }


def _last_message_view(message: Optional[Message]) -> Optional[dict]:
    if message is None or message.is_deleted or message.is_expired():
        return None
    return {
        "id": message.id,
        "content": message.content,
        "type": message.type,
        "sender_id": message.sender_id,
        "sender_name": message.sender.name if message.sender else None,
        "timestamp": message.created_at,
    }


def format_chat(chat: Chat, viewer_id: int) -> dict:
    """
    Chat as seen by viewer_id.

    Personal chats take the other participant's name and avatar instead of
    the stored ones.
    """
    participants = chat.participants
    name = chat.name
    avatar = chat.avatar
    if chat.type == ChatType.PERSONAL:
        others = [p for p in participants if p.id != viewer_id]
        if others:
            name = others[0].name
            avatar = others[0].avatar
        else:
            name = "Unknown User"

    return {
        "id": chat.id,
        "name": name,
        "type": chat.type,
        "participants": [_participant_view(p) for p in participants],
        "last_message": _last_message_view(chat.last_message),
        "last_message_time": chat.last_message_time,
        "is_encrypted": chat.is_encrypted,
        "avatar": avatar,
        "settings": chat.merged_settings(),
        "created_by": chat.created_by,
        "created_at": chat.created_at,
    }


def create_personal_chat(db: Session, *, requester: User, target_id: int) -> Tuple[Chat, bool]:
    """
    Get or create the personal chat between requester and target_id.

    Returns:
        (chat, created) - created is False when the chat already existed

    Raises:
        NotFound: target user does not exist
        ValidationFailed: target is the requester
    """
    repo = Repository(db)
    target = repo.get_user_by_id(target_id)
    if not target:
        raise NotFound("User not found")
    if target.id == requester.id:
        raise ValidationFailed("Cannot create a chat with yourself")

    pair_key = personal_pair_key(requester.id, target.id)
    existing = repo.find_personal_chat(pair_key)
    if existing:
        return existing, False

    try:
        chat = repo.add_chat(
            name=target.name,
            chat_type=ChatType.PERSONAL,
            created_by=requester.id,
            participant_ids=[requester.id, target.id],
            pair_key=pair_key
        )
        db.commit()
    except IntegrityError:
        # A concurrent request created the same pair first
        db.rollback()
        existing = repo.find_personal_chat(pair_key)
        if existing is None:
            raise
        logger.info(f"Personal chat {pair_key} created concurrently, returning chat {existing.id}")
        return existing, False

    db.refresh(chat)
    logger.info(f"Personal chat {chat.id} created between users {requester.id} and {target.id}")
    return chat, True


def create_group_chat(db: Session, *, requester: User, name: str, participant_ids: List[int]) -> Chat:
    """
    Create a group chat. The requester is always a participant.

    Raises:
        ValidationFailed: empty name, no other participant, or unknown participant ids
    """
    name = (name or "").strip()
    if not name or len(name) > 100:
        raise ValidationFailed("Group name required")

    others = []
    for user_id in participant_ids:
        if user_id != requester.id and user_id not in others:
            others.append(user_id)
    if not others:
        raise ValidationFailed("At least one participant required")

    repo = Repository(db)
    if len(repo.get_users_by_ids(others)) != len(others):
        raise ValidationFailed("One or more participants not found")

    chat = repo.add_chat(
        name=name,
        chat_type=ChatType.GROUP,
        created_by=requester.id,
        participant_ids=[requester.id] + others
    )
    db.commit()
    db.refresh(chat)
    logger.info(f"Group chat {chat.id} created by user {requester.id} with {len(others) + 1} participants")
    return chat


def list_chats(db: Session, *, requester: User) -> List[dict]:
    """Chats of the requester, most recent activity first."""
    chats = Repository(db).get_user_chats(requester.id)
    return [format_chat(chat, requester.id) for chat in chats]


def get_chat(db: Session, *, requester: User, chat_id: int) -> Chat:
    """
    Raises:
        NotFound: chat does not exist or requester is not a participant
    """
    chat = Repository(db).get_chat_for_participant(chat_id, requester.id)
    if not chat:
        raise NotFound("Chat not found")
    return chat


def update_settings(db: Session, *, requester: User, chat_id: int, partial: dict) -> Chat:
    """
    Merge partial settings over the chat's current ones. Creator only.

    Raises:
        NotFound: chat does not exist or requester is not a participant
        Forbidden: requester did not create the chat
    """
    chat = get_chat(db, requester=requester, chat_id=chat_id)
    if chat.created_by != requester.id:
        audit_logger.log_authorization_denied(
            user_id=str(requester.id),
            resource=f"chat:{chat.id}",
            action="update_settings",
            reason="not chat creator"
        )
        raise Forbidden("Only chat creator can update settings")

    chat = Repository(db).update_chat_settings(chat, partial)
    logger.info(f"Chat {chat.id} settings updated by user {requester.id}: {sorted(partial)}")
    return chat
