"""Database package: shared Redis pool for the durable job store."""

from shopbuilder.db.redis import close_redis, get_redis_or_none, init_redis

__all__ = [
    "close_redis",
    "get_redis_or_none",
    "init_redis",
]
