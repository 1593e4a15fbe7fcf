"""
SQLAlchemy ORM models for the SecureChat database.
Defines all entities: User, Chat, ChatParticipant, Message, MessageRead,
SystemSetting.
"""
import enum
import uuid
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text,
    BigInteger, Boolean, Enum as SQLEnum, JSON, Uuid, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from db.database import Base


# ENUM Types
class ChatType(str, enum.Enum):
    """Type of chat."""
    PERSONAL = "personal"
    GROUP = "group"


class MessageType(str, enum.Enum):
    """Kind of message payload."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"


# All permissions are denied until the chat creator turns them on
DEFAULT_CHAT_SETTINGS = {
    "allowCopy": False,
    "allowShare": False,
    "allowDelete": False,
    "allowScreenshot": False,
    "messageExpiry": None,  # minutes
}


def default_chat_settings() -> dict:
    return dict(DEFAULT_CHAT_SETTINGS)


def personal_pair_key(user_a: int, user_b: int) -> str:
    """Order-insensitive key identifying the personal chat between two users."""
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


# Models
class User(Base):
    """User entity - represents system users."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(50), nullable=False)
    password = Column(String(100), nullable=False)
    is_online = Column(Boolean, default=False, nullable=False)
    last_seen = Column(DateTime, default=datetime.utcnow, nullable=False)
    is_admin = Column(Boolean, default=False, nullable=False)
    avatar = Column(String(500), nullable=True)
    settings = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    chat_memberships = relationship("ChatParticipant", back_populates="user")
    messages = relationship("Message", back_populates="sender")


class Chat(Base):
    """Chat entity - a personal (two users) or group conversation."""
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    type = Column(SQLEnum(ChatType), nullable=False)
    # Weak reference: resolved by lookup, never cascades
    last_message_id = Column(Uuid, nullable=True)
    last_message_time = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    is_encrypted = Column(Boolean, default=True, nullable=False)
    avatar = Column(String(500), nullable=True)
    settings = Column(JSON, default=default_chat_settings, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    # "<low_user_id>:<high_user_id>" for personal chats, NULL for groups
    pair_key = Column(String(50), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    members = relationship(
        "ChatParticipant",
        back_populates="chat",
        cascade="all, delete-orphan",
        order_by="ChatParticipant.id"
    )
    creator = relationship("User", foreign_keys=[created_by])
    messages = relationship("Message", back_populates="chat")
    last_message = relationship(
        "Message",
        primaryjoin="foreign(Chat.last_message_id) == Message.id",
        viewonly=True,
        uselist=False
    )

    @property
    def participant_ids(self) -> List[int]:
        return [member.user_id for member in self.members]

    @property
    def participants(self) -> List[User]:
        return [member.user for member in self.members]

    def has_participant(self, user_id: int) -> bool:
        return user_id in self.participant_ids

    def merged_settings(self) -> dict:
        """Stored settings over the defaults, so missing keys read as denied."""
        merged = default_chat_settings()
        merged.update(self.settings or {})
        return merged


class ChatParticipant(Base):
    """Junction table between chats and users."""
    __tablename__ = "chat_participants"
    __table_args__ = (
        UniqueConstraint("chat_id", "user_id", name="uq_chat_participant"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    chat = relationship("Chat", back_populates="members")
    user = relationship("User", back_populates="chat_memberships")


class Message(Base):
    """Message entity - expires and is purged at expires_at."""
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_chat_created", "chat_id", "created_at"),
        UniqueConstraint("sender_id", "client_message_id", name="uq_message_client_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    type = Column(SQLEnum(MessageType), default=MessageType.TEXT, nullable=False)
    file_url = Column(String(500), nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    file_type = Column(String(100), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    is_encrypted = Column(Boolean, default=True, nullable=False)
    client_message_id = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    chat = relationship("Chat", back_populates="messages")
    sender = relationship("User", back_populates="messages")
    read_by = relationship(
        "MessageRead",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageRead.read_at"
    )

    @property
    def status(self) -> str:
        if self.is_deleted:
            return "deleted"
        if self.is_expired():
            return "expired"
        return "active"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """expires_at <= now is expired; the purge worker uses the same boundary."""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.utcnow())

    def has_been_read_by(self, user_id: int) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_by)


def default_expiry(now: datetime, ttl_days: int, expiry_minutes: Optional[int] = None) -> datetime:
    """Absolute expiry for a message created at ``now``."""
    if expiry_minutes:
        return now + timedelta(minutes=expiry_minutes)
    return now + timedelta(days=ttl_days)


class MessageRead(Base):
    """Read receipt - one per (message, reader)."""
    __tablename__ = "message_reads"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_message_reader"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Uuid, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    read_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    message = relationship("Message", back_populates="read_by")


class SystemSetting(Base):
    """Process-wide configuration shared by every API instance."""
    __tablename__ = "system_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
