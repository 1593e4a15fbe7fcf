"""
Audit logging for security events.
Logs login outcomes, registrations, admin actions, authorization denials
and rate limit violations for forensics.
"""
import logging
import json
from datetime import datetime
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger("audit")


class AuditEventType(str, Enum):
    """Types of security audit events."""
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    USER_REGISTERED = "user_registered"
    REGISTRATION_REJECTED = "registration_rejected"
    TOKEN_INVALID = "token_invalid"
    AUTHZ_DENIED = "authorization_denied"
    ADMIN_ACTION = "admin_action"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"


class AuditLogger:
    """
    Security audit logger.

    Each event is logged with timestamp, event type, user identifier,
    source IP address, request id and additional metadata.
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        request_id: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        audit_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "email": email,
            "ip_address": ip_address,
            "request_id": request_id,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING

        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | "
            f"user={user_id} | email={email} | ip={ip_address} | "
            f"success={success} | {json.dumps(audit_entry, default=str)}"
        )

    @staticmethod
    def log_auth_success(user_id: str, email: str, ip_address: str, request_id: str) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_SUCCESS,
            user_id=user_id,
            email=email,
            ip_address=ip_address,
            request_id=request_id
        )

    @staticmethod
    def log_auth_failure(email: Optional[str], ip_address: str, request_id: str, reason: str) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_FAILURE,
            email=email,
            ip_address=ip_address,
            request_id=request_id,
            success=False,
            error_message=reason
        )

    @staticmethod
    def log_registration(
        email: str,
        ip_address: str,
        request_id: str,
        user_id: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None
    ) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.USER_REGISTERED if success else AuditEventType.REGISTRATION_REJECTED,
            user_id=user_id,
            email=email,
            ip_address=ip_address,
            request_id=request_id,
            success=success,
            error_message=reason
        )

    @staticmethod
    def log_token_invalid(ip_address: str, request_id: str, reason: str, endpoint: Optional[str] = None) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.TOKEN_INVALID,
            ip_address=ip_address,
            request_id=request_id,
            success=False,
            metadata={"endpoint": endpoint},
            error_message=reason
        )

    @staticmethod
    def log_admin_action(user_id: str, action: str, target: Optional[str] = None, request_id: Optional[str] = None) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.ADMIN_ACTION,
            user_id=user_id,
            request_id=request_id,
            metadata={"action": action, "target": target}
        )

    @staticmethod
    def log_authorization_denied(
        user_id: str,
        resource: str,
        action: str,
        reason: str,
        ip_address: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            ip_address=ip_address,
            request_id=request_id,
            success=False,
            metadata={"resource": resource, "action": action},
            error_message=reason
        )

    @staticmethod
    def log_rate_limit_exceeded(
        user_id: Optional[str],
        ip_address: str,
        request_id: str,
        endpoint: str,
        limit: int,
        window_seconds: int
    ) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.RATE_LIMIT_EXCEEDED,
            user_id=user_id,
            ip_address=ip_address,
            request_id=request_id,
            success=False,
            metadata={
                "endpoint": endpoint,
                "limit": limit,
                "window_seconds": window_seconds
            },
            error_message=f"Rate limit exceeded: {limit} requests per {window_seconds}s"
        )


# Global audit logger instance
audit_logger = AuditLogger()
