"""
Fixed-window rate limiting on Redis.

Keys are scoped per (client ip, product, version) for checkout creation and
per (client ip, license key) for activation/validation. When Redis is
unreachable the limiter fails open: rate limiting guards against spikes, it
is not part of the transactional core.
"""
from __future__ import annotations

import logging
import time

import redis

from storefront.core.config import settings
from storefront.core.redis import get_redis

logger = logging.getLogger(__name__)


def _window_key(scope: str, parts: tuple[str, ...], window_seconds: int, now: float) -> str:
    window = int(now // window_seconds)
    return "rl:" + ":".join((scope, *parts, str(window)))


def hit(
    scope: str,
    *parts: str,
    limit: int,
    window_seconds: int | None = None,
    now: float | None = None,
) -> bool:
    """
    Count one request and report whether it is within the limit.

    Args:
        scope: limiter name, e.g. "checkout"
        parts: key components (client ip, product slug, ...)
        limit: allowed requests per window
        window_seconds: window length, defaults to RATE_LIMIT_WINDOW_SECONDS
        now: epoch seconds, for tests

    Returns:
        True if the request is allowed
    """
    if not settings.RATE_LIMIT_ENABLED:
        return True
    window_seconds = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
    now = time.time() if now is None else now
    key = _window_key(scope, parts, window_seconds, now)
    try:
        client = get_redis()
        pipe = client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        count, _ = pipe.execute()
    except redis.RedisError as e:
        logger.warning(f"Rate limiter unavailable, allowing request: {e}")
        return True
    return int(count) <= limit
