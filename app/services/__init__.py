"""Services package initialization."""
from services.minio_client import MinIOClient
from services.redis_client import RateLimiter

__all__ = ["MinIOClient", "RateLimiter"]
