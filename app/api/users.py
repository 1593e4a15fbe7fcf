"""
User directory and profile endpoints.
"""
import logging
from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_current_user, require_admin
from api.schemas import AdminUserCreate, MessageResult, ProfileUpdate, StatusUpdate, UserResponse
from core.audit_logger import audit_logger
from core.exceptions import Conflict
from core.logging_config import request_id_var
from core.security import hash_password
from db.models import User
from db.repository import Repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("", response_model=List[UserResponse])
def list_users(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """All users, online first, then most recently seen."""
    return Repository(db).list_users_for_directory()


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    request_body: AdminUserCreate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Create an account on someone's behalf. Admin only.

    Works while public registration is disabled.

    Raises:
        Conflict: 400 if the email is already registered
    """
    repository = Repository(db)
    if repository.get_user_by_email(request_body.email):
        raise Conflict("User already exists")

    try:
        user = repository.create_user(
            email=request_body.email,
            name=request_body.name,
            password_hash=hash_password(request_body.password),
            is_admin=request_body.is_admin
        )
    except IntegrityError:
        db.rollback()
        raise Conflict("User already exists")

    audit_logger.log_admin_action(
        user_id=str(admin.id),
        action="create_user",
        target=str(user.id),
        request_id=request_id_var.get()
    )
    return user


@router.put("/status", response_model=MessageResult)
def update_status(
    request_body: StatusUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    Repository(db).set_user_presence(current_user.id, request_body.is_online)
    return {"message": "Status updated successfully"}


@router.get("/profile", response_model=UserResponse)
def get_profile(current_user: User = Depends(get_current_user)):
    return current_user


@router.put("/profile", response_model=UserResponse)
def update_profile(
    request_body: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update name, avatar and/or settings. Omitted fields are left unchanged;
    settings are merged over the stored ones.
    """
    name = request_body.name.strip() if request_body.name else None
    return Repository(db).update_user_profile(
        current_user,
        name=name or None,
        avatar=request_body.avatar,
        settings=request_body.settings
    )
