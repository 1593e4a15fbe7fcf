"""
Admin endpoints.
Admin status, user management, the registration toggle and statistics.
Every admin check re-reads the flag from the database.
"""
import logging
from datetime import datetime
from typing import List
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from api.dependencies import get_db, get_current_user, require_admin
from api.realtime import registration_event
from api.schemas import (
    AdminPromoteRequest, AdminStatsResponse, AdminStatusResponse,
    MessageResult, RegistrationStatus, UserResponse
)
from api.websocket_manager import connection_manager
from core.audit_logger import audit_logger
from core.exceptions import Conflict
from core.logging_config import request_id_var
from db.models import User
from db.repository import Repository
from services.registration import is_registration_enabled, set_registration_enabled

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/status", response_model=AdminStatusResponse)
def admin_status(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    db.refresh(current_user)
    return {"is_admin": current_user.is_admin}


@router.get("/users", response_model=List[UserResponse])
def list_users(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    """All users, newest account first."""
    return Repository(db).list_users_newest_first()


@router.post("/users", response_model=MessageResult)
def promote_user(
    request_body: AdminPromoteRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """
    Grant admin rights to a user.

    Raises:
        HTTPException: 404 if the user does not exist
        Conflict: 400 if the user is already an admin
    """
    repository = Repository(db)
    user = repository.get_user_by_id(request_body.user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if user.is_admin:
        raise Conflict("User is already an admin")

    repository.set_admin(user, True)
    audit_logger.log_admin_action(
        user_id=str(admin.id),
        action="promote_admin",
        target=str(user.id),
        request_id=request_id_var.get()
    )
    return {"message": "User added as admin successfully"}


@router.delete("/users/{user_id}", response_model=MessageResult)
def demote_user(user_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    """
    Revoke admin rights from a user. Admins cannot demote themselves.

    Raises:
        HTTPException: 400 if the target is the caller
        Conflict: 400 if the target is not an admin
        HTTPException: 404 if the user does not exist
    """
    if user_id == admin.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot remove yourself as admin")

    repository = Repository(db)
    user = repository.get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if not user.is_admin:
        raise Conflict("User is not an admin")

    repository.set_admin(user, False)
    audit_logger.log_admin_action(
        user_id=str(admin.id),
        action="demote_admin",
        target=str(user.id),
        request_id=request_id_var.get()
    )
    return {"message": "Admin privileges removed successfully"}


@router.get("/registration/status", response_model=RegistrationStatus)
def registration_status(db: Session = Depends(get_db)):
    """Public: whether registration is open."""
    return {"enabled": is_registration_enabled(db)}


def _toggle_registration(enabled: bool, admin: User, db: Session, background_tasks: BackgroundTasks) -> None:
    set_registration_enabled(db, enabled)
    audit_logger.log_admin_action(
        user_id=str(admin.id),
        action="enable_registration" if enabled else "disable_registration",
        request_id=request_id_var.get()
    )
    background_tasks.add_task(connection_manager.broadcast, registration_event(enabled))


@router.post("/registration/enable", response_model=MessageResult)
def enable_registration(
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    _toggle_registration(True, admin, db, background_tasks)
    return {"message": "Registration enabled successfully"}


@router.post("/registration/disable", response_model=MessageResult)
def disable_registration(
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    _toggle_registration(False, admin, db, background_tasks)
    return {"message": "Registration disabled successfully"}


@router.get("/stats", response_model=AdminStatsResponse)
def stats(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    """
    Aggregate statistics.

    ``todayUsers`` counts accounts created since 00:00 UTC.
    """
    repository = Repository(db)
    start_of_day = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    return {
        "total_users": repository.count_users(),
        "online_users": repository.count_online_users(),
        "admin_users": repository.count_admin_users(),
        "today_users": repository.count_users_created_since(start_of_day),
        "total_chats": repository.count_chats(),
        "total_messages": repository.count_messages(),
        "registration_enabled": is_registration_enabled(db),
    }
