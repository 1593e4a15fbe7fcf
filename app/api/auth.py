"""
Authentication endpoints.
Registration, login and the public registration status probe.
Includes audit logging for security events.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from api.dependencies import get_db, client_ip
from api.metrics import auth_requests_total
from api.schemas import AuthResponse, LoginRequest, RegisterRequest, RegistrationStatus, UserResponse
from db.models import User
from db.repository import Repository
from core.security import create_access_token, hash_password, verify_password
from core.audit_logger import audit_logger
from core.exceptions import Conflict
from core.logging_config import request_id_var
from services.registration import is_registration_enabled

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def issue_auth_response(user: User) -> AuthResponse:
    token = create_access_token(user.id)
    return AuthResponse(
        token=token["token"],
        expires_at=token["expires_at"],
        user=UserResponse.model_validate(user)
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(request_body: RegisterRequest, request: Request, db: Session = Depends(get_db)):
    """
    Create an account and return a token for it.

    Args:
        request_body: name, email and password
        request: FastAPI Request for IP and request_id
        db: Database session

    Returns:
        AuthResponse with token and user

    Raises:
        HTTPException: 403 if registration is disabled
        Conflict: 400 if the email is already registered

    Example:
        POST /api/auth/register
        {
            "name": "Alice",
            "email": "alice@example.com",
            "password": "secret123"
        }
    """
    ip_address = client_ip(request)
    request_id = request_id_var.get()

    if not is_registration_enabled(db):
        audit_logger.log_registration(
            email=request_body.email,
            ip_address=ip_address,
            request_id=request_id,
            success=False,
            reason="registration disabled"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Registration is currently disabled"
        )

    repository = Repository(db)
    if repository.get_user_by_email(request_body.email):
        audit_logger.log_registration(
            email=request_body.email,
            ip_address=ip_address,
            request_id=request_id,
            success=False,
            reason="duplicate email"
        )
        raise Conflict("User already exists")

    try:
        user = repository.create_user(
            email=request_body.email,
            name=request_body.name,
            password_hash=hash_password(request_body.password)
        )
    except IntegrityError:
        db.rollback()
        raise Conflict("User already exists")

    audit_logger.log_registration(
        email=user.email,
        ip_address=ip_address,
        request_id=request_id,
        user_id=str(user.id)
    )
    auth_requests_total.labels(type="register", status="success", instance="api").inc()
    logger.info(f"User {user.id} registered")
    return issue_auth_response(user)


@router.post("/login", response_model=AuthResponse)
def login(request_body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """
    Exchange email and password for a token.

    Raises:
        HTTPException: 401 if credentials are invalid
    """
    ip_address = client_ip(request)
    request_id = request_id_var.get()
    repository = Repository(db)

    user = repository.get_user_by_email(request_body.email)
    if not user or not verify_password(request_body.password, user.password):
        logger.warning(f"Failed login attempt for email: {request_body.email}")
        audit_logger.log_auth_failure(
            email=request_body.email,
            ip_address=ip_address,
            request_id=request_id,
            reason="Invalid email or password"
        )
        auth_requests_total.labels(type="login", status="failure", instance="api").inc()
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    user = repository.touch_last_seen(user)
    audit_logger.log_auth_success(
        user_id=str(user.id),
        email=user.email,
        ip_address=ip_address,
        request_id=request_id
    )
    auth_requests_total.labels(type="login", status="success", instance="api").inc()
    return issue_auth_response(user)


@router.get("/registration-status", response_model=RegistrationStatus)
def registration_status(db: Session = Depends(get_db)):
    """Whether public registration is currently open. No authentication."""
    return RegistrationStatus(enabled=is_registration_enabled(db))
