"""
Dependency injection functions for FastAPI.
Provides database sessions and authentication dependencies.
"""
from typing import Generator, Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from db.database import SessionLocal
from db.repository import Repository
from db.models import User
from core.security import decode_access_token
from core.audit_logger import audit_logger
from core.logging_config import request_id_var

# auto_error=False so a missing header is reported as 401, not FastAPI's 403
security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def user_from_token(token: str, db: Session) -> Optional[User]:
    """Resolve a JWT to its user, or None if the token or user is invalid."""
    payload = decode_access_token(token)
    if not payload:
        return None
    return Repository(db).get_user_by_id(payload["user_id"])


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    JWT authentication dependency.
    Validates the Bearer token signature and expiry and loads its user.

    Args:
        request: Incoming request (for audit context)
        credentials: HTTP Bearer token (JWT) from Authorization header
        db: Database session

    Returns:
        Authenticated User object

    Raises:
        HTTPException: 401 if no token was sent, 403 if the token is
            invalid, expired, or names an unknown user
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = user_from_token(credentials.credentials, db)
    if not user:
        audit_logger.log_token_invalid(
            ip_address=client_ip(request),
            request_id=request_id_var.get(),
            reason="invalid, expired or orphaned token",
            endpoint=request.url.path
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or expired token"
        )

    return user


def require_admin(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> User:
    """
    Admin gate. The admin flag is re-read from the database on every
    request, never taken from the token.

    Raises:
        HTTPException: 403 if the user is not an admin
    """
    db.refresh(current_user)
    if not current_user.is_admin:
        audit_logger.log_authorization_denied(
            user_id=str(current_user.id),
            resource=request.url.path,
            action=request.method,
            reason="admin access required",
            ip_address=client_ip(request),
            request_id=request_id_var.get()
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


def validate_websocket_token(token: Optional[str], db: Session) -> Optional[User]:
    """
    Validate JWT token for WebSocket connections.

    Used by the WebSocket endpoint to authenticate users via query parameter
    token. Returns None instead of raising so the handshake can be refused
    with a close code.

    Args:
        token: JWT token from WebSocket query parameter
        db: Database session

    Returns:
        User if token is valid, None otherwise
    """
    if not token:
        return None
    return user_from_token(token, db)
