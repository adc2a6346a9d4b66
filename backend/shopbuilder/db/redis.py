"""Shared Redis connection pool.

Redis is the durable job store backend. It is optional: when ``redis_url`` is
empty or the server is unreachable at startup, ``get_redis_or_none()`` returns
None and jobs live in the in-process fallback map only.
"""

import redis.asyncio as redis
import structlog

from shopbuilder.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> bool:
    """Initialize the shared Redis connection pool.

    Returns:
        True if Redis is configured and reachable, False otherwise.
    """
    global _redis

    if _redis is not None:
        return True

    settings = get_settings()
    redis_url = url if url is not None else settings.redis_url
    if not redis_url:
        logger.warning("redis_not_configured", fallback="in_memory_job_store")
        return False

    client = redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
    )

    # Verify connectivity
    try:
        await client.ping()
    except Exception as e:
        logger.warning("redis_unreachable", error=str(e), fallback="in_memory_job_store")
        await client.aclose()
        return False

    _redis = client
    return True


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis_or_none() -> redis.Redis | None:
    """Return the shared Redis client, or None when the durable store is disabled."""
    return _redis
