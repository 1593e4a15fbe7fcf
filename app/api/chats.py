"""
Chat endpoints.
Listing, personal/group creation, detail and creator-only settings.
"""
import logging
from typing import List
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_current_user
from api.schemas import (
    ChatResponse, ChatSettingsResult, ChatSettingsUpdate,
    GroupChatCreate, PersonalChatCreate
)
from db.models import User
from services import chat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["Chats"])


@router.get("", response_model=List[ChatResponse])
def list_chats(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """
    List the caller's chats, most recent activity first.

    Personal chats are named after the other participant.
    """
    return chat_service.list_chats(db, requester=current_user)


@router.post("/personal", response_model=ChatResponse)
def create_personal_chat(
    request_body: PersonalChatCreate,
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get or create the personal chat with another user.

    Calling it again, from either side, returns the same chat.

    Returns:
        201 with the new chat, or 200 with the existing one

    Raises:
        NotFound: 404 if the other user does not exist
        ValidationFailed: 400 if the other user is the caller

    Example:
        POST /api/chats/personal
        {"userId": 2}
    """
    chat, created = chat_service.create_personal_chat(
        db,
        requester=current_user,
        target_id=request_body.user_id
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return chat_service.format_chat(chat, current_user.id)


@router.post("/group", response_model=ChatResponse, status_code=status.HTTP_201_CREATED)
def create_group_chat(
    request_body: GroupChatCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Create a group chat. The caller is added as a participant.

    Raises:
        ValidationFailed: 400 if no other participant is named or an id is unknown

    Example:
        POST /api/chats/group
        {"name": "Project Team", "participants": [2, 3]}
    """
    chat = chat_service.create_group_chat(
        db,
        requester=current_user,
        name=request_body.name,
        participant_ids=request_body.participants
    )
    return chat_service.format_chat(chat, current_user.id)


@router.get("/{chat_id}", response_model=ChatResponse)
def get_chat(chat_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    chat = chat_service.get_chat(db, requester=current_user, chat_id=chat_id)
    return chat_service.format_chat(chat, current_user.id)


@router.put("/{chat_id}/settings", response_model=ChatSettingsResult)
def update_chat_settings(
    chat_id: int,
    request_body: ChatSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Merge new settings over the chat's current ones. Creator only.

    Keys absent from the request keep their value.

    Raises:
        NotFound: 404 if the caller is not a participant
        Forbidden: 403 if the caller did not create the chat

    Example:
        PUT /api/chats/1/settings
        {"settings": {"allowDelete": true, "messageExpiry": 60}}
    """
    partial = request_body.settings.model_dump(by_alias=True, exclude_unset=True)
    chat = chat_service.update_settings(db, requester=current_user, chat_id=chat_id, partial=partial)
    return {"message": "Settings updated successfully", "settings": chat.merged_settings()}
