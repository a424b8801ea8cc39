"""Redis connection and the self-service rate limiter.

Redis is optional.  When ``REDIS_URL`` is unset or the server cannot be
reached, ``get_redis`` returns ``None`` and callers fall back to their
in-process behaviour.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis

from config import REDIS_URL, SELF_SERVICE_RATE_LIMIT, SELF_SERVICE_RATE_WINDOW

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get the shared Redis client if configured and reachable."""
    global _redis_client
    if not REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            return None
        _redis_client = client

    return _redis_client


def check_rate_limit(
    subject: str,
    action: str,
    limit: int = SELF_SERVICE_RATE_LIMIT,
    window: int = SELF_SERVICE_RATE_WINDOW,
    client: Optional[redis.Redis] = None,
) -> bool:
    """Return True if ``subject`` may perform ``action`` now, False if throttled."""
    client = client if client is not None else get_redis()
    if client is None:
        return True  # no shared counter without Redis

    key = f"rate_limit:{action}:{subject}"
    try:
        current = client.get(key)
        if current is None:
            client.setex(key, window, 1)
            return True
        if int(current) < limit:
            client.incr(key)
            return True
        return False
    except redis.RedisError as e:
        logger.warning("Redis rate limit error: %s", e)
        return True
