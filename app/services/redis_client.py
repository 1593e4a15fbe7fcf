"""
Redis client for rate limiting.
Provides connection pooling and a sliding-window rate limiter.
Redis calls run through a circuit breaker so an outage degrades quickly.
"""
import os
import time
import logging
import uuid
from typing import Optional
from redis import Redis, ConnectionPool
import pybreaker
from core.config import settings

logger = logging.getLogger(__name__)

# Circuit breaker for Redis
redis_circuit_breaker = pybreaker.CircuitBreaker(
    fail_max=3,  # Open circuit after 3 failures
    reset_timeout=15,  # Try half-open after 15 seconds
    name="redis_client"
)

REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))

# Create connection pool (reusable across requests)
_redis_pool = None


def get_redis_pool() -> ConnectionPool:
    """
    Get or create Redis connection pool.

    Returns:
        Redis connection pool
    """
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = ConnectionPool.from_url(
            settings.redis_url,
            max_connections=REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2
        )
        logger.info(f"Created Redis connection pool: {settings.redis_url}")
    return _redis_pool


def get_redis_client() -> Redis:
    """
    Get a Redis client from the connection pool.

    Returns:
        Redis client instance
    """
    return Redis(connection_pool=get_redis_pool())


class RateLimiter:
    """
    Sliding window rate limiter using Redis sorted sets.

    Each request is a member scored by its timestamp; members older than the
    window are trimmed before counting.
    """

    def __init__(self, max_requests: int = 100, window_seconds: int = 900, client: Optional[Redis] = None):
        self.client = client or get_redis_client()
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def _key(self, identifier: str, scope: str) -> str:
        return f"rate_limit:{scope}:{identifier}"

    @redis_circuit_breaker
    def is_allowed(self, identifier: str, scope: str = "api") -> bool:
        """
        Check if request is allowed under rate limit, and count it if so.

        Args:
            identifier: Rate limit subject ("user:<id>" or "ip:<address>")
            scope: Limit namespace (separate counters per scope)

        Returns:
            True if request is allowed, False if rate limit exceeded

        Raises:
            redis.RedisError: On Redis failure (counted by the circuit breaker)
            pybreaker.CircuitBreakerError: If circuit is open (Redis unavailable)
        """
        key = self._key(identifier, scope)
        now = time.time()
        window_start = now - self.window_seconds

        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, 0, window_start)
        pipe.zcard(key)
        _, request_count = pipe.execute()

        if request_count >= self.max_requests:
            return False

        # Unique member so two requests in the same instant both count
        self.client.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        self.client.expire(key, self.window_seconds)
        return True

    @redis_circuit_breaker
    def retry_after(self, identifier: str, scope: str = "api") -> int:
        """Seconds until the oldest request in the window falls out of it."""
        key = self._key(identifier, scope)
        oldest = self.client.zrange(key, 0, 0, withscores=True)
        if not oldest:
            return 0
        _, score = oldest[0]
        return max(1, int(score + self.window_seconds - time.time()) + 1)


def ping_redis() -> bool:
    """Readiness probe helper; never raises."""
    try:
        return bool(get_redis_client().ping())
    except Exception as e:
        logger.warning(f"Redis ping failed: {e}")
        return False


# Global instance (lazy-initialized)
_rate_limiter = None


def get_rate_limiter() -> RateLimiter:
    """Get global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter(
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds
        )
    return _rate_limiter
