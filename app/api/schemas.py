"""
Pydantic schemas for request/response validation.
Defines all data transfer objects (DTOs) for the API.

Responses are serialized with camelCase keys (``chatId``, ``lastMessage``);
requests accept either camelCase or snake_case field names.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic.alias_generators import to_camel
from db.models import ChatType, MessageType

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CamelModel(BaseModel):
    """Base schema with the camelCase wire contract."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True
    )


# Authentication Schemas
class RegisterRequest(CamelModel):
    """
    Public registration request.

    Example:
        ```json
        {
            "name": "Alice",
            "email": "alice@example.com",
            "password": "secret123"
        }
        ```
    """
    name: str = Field(..., min_length=1, max_length=50, description="Display name")
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=255, description="Unique email address")
    password: str = Field(..., min_length=6, description="Plain password, at least 6 characters")

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class LoginRequest(CamelModel):
    email: str = Field(..., min_length=1, description="Account email")
    password: str = Field(..., min_length=1, description="Account password")

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class UserResponse(CamelModel):
    """
    Public user representation. Never carries the password hash.

    Attributes:
        id: User identifier
        name: Display name
        email: Account email
        avatar: Optional avatar reference
        is_online: Presence flag
        last_seen: Last presence change (UTC)
        is_admin: Admin flag
        settings: Free-form user preferences
        created_at: Account creation timestamp (UTC)
    """
    id: int
    name: str
    email: str
    avatar: Optional[str] = None
    is_online: bool
    last_seen: datetime
    is_admin: bool
    settings: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AuthResponse(CamelModel):
    """Issued token plus the authenticated user."""
    token: str = Field(..., description="JWT access token")
    expires_at: datetime = Field(..., description="Token expiration (UTC)")
    user: UserResponse


class RegistrationStatus(CamelModel):
    enabled: bool


class MessageResult(CamelModel):
    """Plain acknowledgement body."""
    message: str


class AdminUserCreate(RegisterRequest):
    """Account creation by an admin; bypasses the registration toggle."""
    is_admin: bool = Field(False, description="Create the account as admin")


# User Schemas
class StatusUpdate(CamelModel):
    is_online: bool


class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    avatar: Optional[str] = Field(None, max_length=500)
    settings: Optional[Dict[str, Any]] = None


class AdminPromoteRequest(CamelModel):
    user_id: int = Field(..., description="User to promote to admin")


class AdminStatusResponse(CamelModel):
    is_admin: bool


class AdminStatsResponse(CamelModel):
    """Aggregate statistics for the admin dashboard."""
    total_users: int
    online_users: int
    admin_users: int
    today_users: int
    total_chats: int
    total_messages: int
    registration_enabled: bool


# Chat Schemas
class ChatSettings(CamelModel):
    """
    Per-chat permission bundle.

    Attributes:
        allow_copy: Participants may copy message content
        allow_share: Participants may share messages outside the chat
        allow_delete: Senders may delete their own messages
        allow_screenshot: Clients may allow screenshots
        message_expiry: Expiry override in minutes for new messages (null = default TTL)
    """
    allow_copy: bool = False
    allow_share: bool = False
    allow_delete: bool = False
    allow_screenshot: bool = False
    message_expiry: Optional[int] = Field(None, ge=1)


class ChatSettingsPatch(CamelModel):
    """
    Partial settings; only keys present in the request are merged.

    The permission flags must be booleans when given. Only messageExpiry
    accepts null, which restores the default TTL.
    """
    allow_copy: bool = False
    allow_share: bool = False
    allow_delete: bool = False
    allow_screenshot: bool = False
    message_expiry: Optional[int] = Field(None, ge=1)


class ChatSettingsUpdate(CamelModel):
    """
    Request body for PUT /chats/{id}/settings.

    Example:
        ```json
        {"settings": {"allowDelete": true}}
        ```
    """
    settings: ChatSettingsPatch


class ChatSettingsResult(CamelModel):
    message: str
    settings: ChatSettings


class PersonalChatCreate(CamelModel):
    user_id: int = Field(..., description="The other participant")


class GroupChatCreate(CamelModel):
    """
    Request schema for creating a group chat.

    The requester is added implicitly; ``participants`` must name at least
    one other user.

    Example:
        ```json
        {"name": "Project Team", "participants": [2, 3]}
        ```
    """
    name: str = Field(..., min_length=1, max_length=100, description="Group name")
    participants: List[int] = Field(..., min_length=1, description="User IDs to add")

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Group name required")
        return value


class ParticipantResponse(CamelModel):
    id: int
    name: str
    email: str
    avatar: Optional[str] = None
    is_online: bool
    last_seen: datetime


class LastMessagePreview(CamelModel):
    id: UUID
    content: str
    type: MessageType
    sender_id: int
    sender_name: Optional[str] = None
    timestamp: datetime


class ChatResponse(CamelModel):
    """
    Chat as seen by one participant.

    For personal chats ``name`` and ``avatar`` are those of the other
    participant.
    """
    id: int
    name: str
    type: ChatType
    participants: List[ParticipantResponse]
    last_message: Optional[LastMessagePreview] = None
    last_message_time: datetime
    is_encrypted: bool
    avatar: Optional[str] = None
    settings: ChatSettings
    created_by: int
    created_at: datetime


# Message Schemas
class MessageCreate(CamelModel):
    """
    Request schema for sending a message.

    Either ``content`` or a file reference (``fileUrl``, from a prior upload)
    is required.

    Example:
        ```json
        {"content": "hello", "type": "text", "clientMessageId": "c-123"}
        ```
    """
    content: str = Field("", description="Message text, at most 2000 characters")
    type: MessageType = Field(MessageType.TEXT, description="Payload kind")
    file_url: Optional[str] = Field(None, max_length=500)
    file_name: Optional[str] = Field(None, max_length=255)
    file_size: Optional[int] = Field(None, ge=0)
    file_type: Optional[str] = Field(None, max_length=100)
    client_message_id: Optional[str] = Field(None, min_length=1, max_length=64, description="Client idempotency key")

    @field_validator("content")
    @classmethod
    def strip_content(cls, value: Optional[str]) -> str:
        return (value or "").strip()


class MessageResponse(CamelModel):
    """
    Sender-enriched message representation.

    Attributes:
        id: Message UUID
        chat_id: Owning chat
        sender_id: Sender user ID
        sender_name: Sender display name
        sender_avatar: Sender avatar reference
        content: Message text
        type: Payload kind
        file_url: Download path of an attached file
        file_name: Original name of the attached file
        file_size: Size in bytes of the attached file
        timestamp: Creation timestamp (UTC)
        is_read: True once any participant read it
        is_encrypted: Encryption label
        expires_at: Absolute expiry (UTC)
        days_until_expiry: Whole days until expiry, rounded up
    """
    id: UUID
    chat_id: int
    sender_id: int
    sender_name: Optional[str] = None
    sender_avatar: Optional[str] = None
    content: str
    type: MessageType
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    timestamp: datetime
    is_read: bool
    is_encrypted: bool
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None


class MessageReadResult(CamelModel):
    message: str
    message_id: UUID
    is_read: bool


class MessageExpiryResponse(CamelModel):
    message_id: UUID
    expires_at: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    is_expired: bool


class MessageDeleteResult(CamelModel):
    message: str
    message_id: UUID
    chat_id: int


# File Schemas
class FileUploadResponse(CamelModel):
    """
    Stored upload.

    Example:
        ```json
        {
            "filename": "file-1718000000000-123456789.png",
            "originalName": "photo.png",
            "size": 2048,
            "mimetype": "image/png",
            "url": "/api/files/file-1718000000000-123456789.png"
        }
        ```
    """
    filename: str
    original_name: str
    size: int
    mimetype: str
    url: str


class FileInfoResponse(CamelModel):
    filename: str
    size: int
    content_type: Optional[str] = None
    modified: Optional[datetime] = None


# WebSocket Schemas
class WSError(CamelModel):
    """Error event pushed to a websocket client."""
    type: str = "error"
    message: str
    code: str
