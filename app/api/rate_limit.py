"""
Rate limiting middleware for FastAPI.
Implements sliding window rate limiting using Redis with audit logging.
"""
import logging
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from core.audit_logger import audit_logger
from core.config import settings
from core.logging_config import request_id_var
from core.security import decode_access_token
from services.redis_client import get_rate_limiter

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting middleware using Redis sliding window algorithm.

    Applies to state-changing requests (POST, PUT, PATCH, DELETE) under
    /api. Default limit: 100 requests per 15 minutes per user, or per
    client IP for anonymous callers. Fails open when Redis is unavailable.
    """

    API_PREFIX = "/api/"

    # HTTP methods subject to rate limiting
    RATE_LIMITED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

    def _identifier(self, request: Request) -> str:
        """user:<id> from a valid bearer token, otherwise ip:<address>."""
        authorization = request.headers.get("Authorization", "")
        if authorization.startswith("Bearer "):
            payload = decode_access_token(authorization[len("Bearer "):])
            if payload:
                return f"user:{payload['user_id']}"
        return f"ip:{request.client.host if request.client else 'unknown'}"

    async def dispatch(self, request: Request, call_next):
        """
        Apply rate limiting to requests.

        Args:
            request: Incoming HTTP request
            call_next: Next middleware/handler

        Returns:
            Response or 429 Too Many Requests
        """
        if not settings.rate_limit_enabled:
            return await call_next(request)

        if not request.url.path.startswith(self.API_PREFIX):
            return await call_next(request)

        if request.method not in self.RATE_LIMITED_METHODS:
            return await call_next(request)

        identifier = self._identifier(request)
        rate_limiter = get_rate_limiter()

        try:
            allowed = rate_limiter.is_allowed(identifier)
            retry_after = 0 if allowed else rate_limiter.retry_after(identifier)
        except Exception as e:
            # Fail open (allow request) when Redis or its circuit breaker fails
            logger.warning(f"Rate limiting unavailable, allowing request: {e}")
            return await call_next(request)

        if not allowed:
            logger.warning(
                f"Rate limit exceeded for {identifier} on {request.url.path} "
                f"(method={request.method})"
            )
            audit_logger.log_rate_limit_exceeded(
                user_id=identifier[len("user:"):] if identifier.startswith("user:") else None,
                ip_address=request.client.host if request.client else "unknown",
                request_id=request_id_var.get(),
                endpoint=request.url.path,
                limit=rate_limiter.max_requests,
                window_seconds=rate_limiter.window_seconds
            )
            retry_after = retry_after or rate_limiter.window_seconds
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"message": "Too many requests, please try again later."},
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(rate_limiter.max_requests),
                    "X-RateLimit-Remaining": "0"
                }
            )

        return await call_next(request)
