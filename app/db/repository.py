"""
Repository layer for database operations.
Provides high-level methods for common database queries and operations.

Helpers that take part in a multi-record operation (message send, purge)
only flush; the caller owns the transaction boundary.
"""
from datetime import datetime
from typing import Any, Iterable, List, Optional
from uuid import UUID
from sqlalchemy import or_, func
from sqlalchemy.orm import Session
from db.models import (
    User, Chat, ChatParticipant, Message, MessageRead, SystemSetting,
    ChatType, MessageType, default_chat_settings
)


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # User operations
    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        is_admin: bool = False
    ) -> User:
        """Create a new user."""
        user = User(
            email=email.lower(),
            name=name,
            password=password_hash,
            is_admin=is_admin,
            settings={}
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email (case-insensitive)."""
        return self.db.query(User).filter(User.email == email.lower()).first()

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_users_by_ids(self, user_ids: Iterable[int]) -> List[User]:
        """Get every user whose id is in user_ids."""
        ids = list(user_ids)
        if not ids:
            return []
        return self.db.query(User).filter(User.id.in_(ids)).all()

    def list_users_for_directory(self) -> List[User]:
        """Online users first, then most recently seen."""
        return self.db.query(User).order_by(
            User.is_online.desc(),
            User.last_seen.desc()
        ).all()

    def list_users_newest_first(self) -> List[User]:
        return self.db.query(User).order_by(User.created_at.desc(), User.id.desc()).all()

    def set_user_presence(self, user_id: int, is_online: bool) -> Optional[User]:
        """Update presence flag and stamp last_seen."""
        user = self.get_user_by_id(user_id)
        if not user:
            return None
        user.is_online = is_online
        user.last_seen = datetime.utcnow()
        self.db.commit()
        self.db.refresh(user)
        return user

    def touch_last_seen(self, user: User) -> User:
        user.last_seen = datetime.utcnow()
        self.db.commit()
        self.db.refresh(user)
        return user

    def update_user_profile(
        self,
        user: User,
        name: Optional[str] = None,
        avatar: Optional[str] = None,
        settings: Optional[dict] = None
    ) -> User:
        """Apply the provided profile fields; None leaves a field untouched."""
        if name is not None:
            user.name = name
        if avatar is not None:
            user.avatar = avatar
        if settings is not None:
            merged = dict(user.settings or {})
            merged.update(settings)
            user.settings = merged
        self.db.commit()
        self.db.refresh(user)
        return user

    def set_admin(self, user: User, is_admin: bool) -> User:
        user.is_admin = is_admin
        self.db.commit()
        self.db.refresh(user)
        return user

    # Chat operations
    def get_chat_for_participant(self, chat_id: int, user_id: int) -> Optional[Chat]:
        """Get chat only if user_id participates in it."""
        return self.db.query(Chat).join(ChatParticipant).filter(
            Chat.id == chat_id,
            ChatParticipant.user_id == user_id
        ).first()

    def find_personal_chat(self, pair_key: str) -> Optional[Chat]:
        return self.db.query(Chat).filter(
            Chat.type == ChatType.PERSONAL,
            Chat.pair_key == pair_key
        ).first()

    def add_chat(
        self,
        name: str,
        chat_type: ChatType,
        created_by: int,
        participant_ids: List[int],
        pair_key: Optional[str] = None,
        is_encrypted: bool = True
    ) -> Chat:
        """
        Stage a chat and its participant rows.

        Does NOT commit - the caller decides whether the insert wins.
        """
        chat = Chat(
            name=name,
            type=chat_type,
            created_by=created_by,
            pair_key=pair_key,
            is_encrypted=is_encrypted,
            settings=default_chat_settings(),
            last_message_time=datetime.utcnow()
        )
        for user_id in participant_ids:
            chat.members.append(ChatParticipant(user_id=user_id))
        self.db.add(chat)
        self.db.flush()
        return chat

    def get_user_chats(self, user_id: int) -> List[Chat]:
        """Chats containing user_id, most recent activity first."""
        return self.db.query(Chat).join(ChatParticipant).filter(
            ChatParticipant.user_id == user_id
        ).order_by(Chat.last_message_time.desc(), Chat.id.desc()).all()

    def is_chat_participant(self, chat_id: int, user_id: int) -> bool:
        """Check if user is a participant of chat."""
        member = self.db.query(ChatParticipant).filter(
            ChatParticipant.chat_id == chat_id,
            ChatParticipant.user_id == user_id
        ).first()
        return member is not None

    def update_chat_settings(self, chat: Chat, partial: dict) -> Chat:
        """Shallow merge partial over the chat's current settings."""
        merged = chat.merged_settings()
        merged.update(partial)
        chat.settings = merged
        self.db.commit()
        self.db.refresh(chat)
        return chat

    # Message operations
    def add_message(
        self,
        chat: Chat,
        sender_id: int,
        content: str,
        message_type: MessageType,
        expires_at: datetime,
        created_at: datetime,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        file_type: Optional[str] = None,
        client_message_id: Optional[str] = None
    ) -> Message:
        """
        Stage a message and move the chat's last-message pointer to it.

        Does NOT commit - message and pointer are committed together by the caller.
        """
        message = Message(
            chat_id=chat.id,
            sender_id=sender_id,
            content=content,
            type=message_type,
            file_url=file_url,
            file_name=file_name,
            file_size=file_size,
            file_type=file_type,
            client_message_id=client_message_id,
            expires_at=expires_at,
            created_at=created_at,
            updated_at=created_at
        )
        self.db.add(message)
        self.db.flush()

        chat.last_message_id = message.id
        chat.last_message_time = created_at
        return message

    def get_message_by_id(self, message_id: UUID) -> Optional[Message]:
        """Get message by ID."""
        return self.db.query(Message).filter(Message.id == message_id).first()

    def get_visible_messages(
        self,
        chat_id: int,
        now: datetime,
        limit: int = 50,
        offset: int = 0
    ) -> List[Message]:
        """Non-deleted, unexpired messages of a chat, newest first."""
        return self.db.query(Message).filter(
            Message.chat_id == chat_id,
            Message.is_deleted.is_(False),
            or_(Message.expires_at.is_(None), Message.expires_at > now)
        ).order_by(
            Message.created_at.desc(), Message.id.desc()
        ).offset(offset).limit(limit).all()

    def find_recent_duplicate(
        self,
        chat_id: int,
        sender_id: int,
        content: str,
        since: datetime
    ) -> Optional[Message]:
        """Same sender, same chat, identical content, created at or after since."""
        return self.db.query(Message).filter(
            Message.chat_id == chat_id,
            Message.sender_id == sender_id,
            Message.content == content,
            Message.created_at >= since
        ).order_by(Message.created_at.desc()).first()

    def get_message_by_client_id(self, sender_id: int, client_message_id: str) -> Optional[Message]:
        return self.db.query(Message).filter(
            Message.sender_id == sender_id,
            Message.client_message_id == client_message_id
        ).first()

    def add_read_receipt(self, message: Message, user_id: int) -> bool:
        """
        Record that user_id read message.

        Returns:
            True if a receipt was created, False if the reader already had one
        """
        if message.has_been_read_by(user_id):
            return False
        message.read_by.append(MessageRead(user_id=user_id, read_at=datetime.utcnow()))
        message.is_read = True
        self.db.commit()
        self.db.refresh(message)
        return True

    def soft_delete_message(self, message: Message) -> Message:
        message.is_deleted = True
        message.deleted_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(message)
        return message

    # Purge operations
    def get_expired_message_ids(self, now: datetime, limit: int = 1000) -> List[UUID]:
        """Ids of messages with expires_at <= now, soft-deleted or not."""
        rows = self.db.query(Message.id).filter(
            Message.expires_at.isnot(None),
            Message.expires_at <= now
        ).order_by(Message.expires_at).limit(limit).all()
        return [row[0] for row in rows]

    def delete_messages(self, message_ids: List[UUID]) -> dict:
        """
        Remove messages, their read receipts and any chat pointers to them.

        Does NOT commit - the purge commits the batch as one unit.
        """
        if not message_ids:
            return {"messages": 0, "receipts": 0, "chats": 0}

        chats = self.db.query(Chat).filter(
            Chat.last_message_id.in_(message_ids)
        ).update({Chat.last_message_id: None}, synchronize_session=False)

        receipts = self.db.query(MessageRead).filter(
            MessageRead.message_id.in_(message_ids)
        ).delete(synchronize_session=False)

        messages = self.db.query(Message).filter(
            Message.id.in_(message_ids)
        ).delete(synchronize_session=False)

        return {"messages": messages, "receipts": receipts, "chats": chats}

    # Statistics
    def count_users(self) -> int:
        return self.db.query(func.count(User.id)).scalar()

    def count_online_users(self) -> int:
        return self.db.query(func.count(User.id)).filter(User.is_online.is_(True)).scalar()

    def count_admin_users(self) -> int:
        return self.db.query(func.count(User.id)).filter(User.is_admin.is_(True)).scalar()

    def count_users_created_since(self, since: datetime) -> int:
        return self.db.query(func.count(User.id)).filter(User.created_at >= since).scalar()

    def count_chats(self) -> int:
        return self.db.query(func.count(Chat.id)).scalar()

    def count_messages(self) -> int:
        return self.db.query(func.count(Message.id)).scalar()

    # System settings
    def get_setting(self, key: str, default: Any = None) -> Any:
        row = self.db.query(SystemSetting).filter(SystemSetting.key == key).first()
        if row is None:
            return default
        return row.value

    def set_setting(self, key: str, value: Any) -> SystemSetting:
        """Insert or update a system setting."""
        row = self.db.query(SystemSetting).filter(SystemSetting.key == key).first()
        if row is None:
            row = SystemSetting(key=key, value=value)
            self.db.add(row)
        else:
            row.value = value
            row.updated_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(row)
        return row
