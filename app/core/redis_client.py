"""Redis client configuration and rate limiting."""

from redis import asyncio as aioredis
from structlog import get_logger

from app.config import settings

logger = get_logger(__name__)

# Global Redis client instance
_redis_client: aioredis.Redis | None = None


def get_redis_client() -> aioredis.Redis:
    """
    Get or create Redis client instance.

    Returns:
        Redis client instance
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _redis_client


async def check_redis_connection() -> bool:
    """
    Check if Redis connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        client = get_redis_client()
        await client.ping()
        return True
    except Exception:
        return False


async def close_redis_connection() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


class RateLimiter:
    """Fixed-window request counter backed by Redis."""

    def __init__(self, redis_client: aioredis.Redis):
        """Initialize rate limiter with Redis client."""
        self.redis = redis_client

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window: int = 60,
    ) -> bool:
        """
        Check if rate limit is exceeded.

        Args:
            key: Rate limit key (e.g., client IP)
            limit: Maximum number of requests
            window: Time window in seconds

        Returns:
            True if within limit, False if exceeded
        """
        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, window)
            return count <= limit
        except Exception as e:
            # Fail open: an unavailable Redis must not lock users out
            logger.warning("rate_limiter_unavailable", key=key, error=str(e))
            return True
