"""
Redis connection.

Redis is only used for rate limiting the public checkout and license
endpoints; the engine's correctness never depends on it.

@lru_cache keeps a single client (and its connection pool) per process.
"""
from __future__ import annotations

from functools import lru_cache

import redis

from storefront.core.config import settings


@lru_cache(maxsize=1)
def get_redis() -> redis.Redis:
    """
    Process-wide Redis client.

    decode_responses=True returns str instead of bytes.
    """
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
        password=settings.REDIS_PASSWORD,
        decode_responses=True,
        socket_timeout=0.5,
        socket_connect_timeout=0.5,
    )
