"""
Security utilities for password hashing and JWT tokens.
Uses bcrypt for secure password hashing.
Uses python-jose for JWT token generation and validation.
"""
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import bcrypt
from jose import jwt, JWTError
from core.config import settings


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password to hash

    Returns:
        Hashed password as a string
    """
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        plain_password: Plain text password to verify
        hashed_password: Previously hashed password

    Returns:
        True if password matches, False otherwise
    """
    password_bytes = plain_password.encode('utf-8')
    hashed_bytes = hashed_password.encode('utf-8')
    try:
        return bcrypt.checkpw(password_bytes, hashed_bytes)
    except ValueError:
        # Malformed stored hash
        return False


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> Dict[str, Any]:
    """
    Create a signed JWT access token for a user.

    The token carries only the user identity. Admin rights are resolved
    from the database on every request, never from the token.

    Args:
        user_id: User ID to encode in the token
        expires_delta: Optional override of the configured lifetime

    Returns:
        Dictionary with token, expires_at, issued_at
    """
    now = datetime.utcnow()
    expires_at = now + (expires_delta or timedelta(hours=settings.token_expiry_hours))

    payload = {
        "user_id": user_id,
        "iat": now,
        "exp": expires_at,
        "type": "access"
    }

    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    return {
        "token": token,
        "expires_at": expires_at,
        "issued_at": now
    }


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a JWT access token.

    Signature and expiry are both checked by python-jose.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    if payload.get("type") != "access" or not payload.get("user_id"):
        return None

    return payload
