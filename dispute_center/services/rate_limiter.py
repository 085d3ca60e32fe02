# =============================================================================
# Rate Limiting — Redis Sliding Window and Inbox Fetch Throttle
# =============================================================================
#
# Two independent limits, both in Redis db 2 (db 0/1 belong to Celery):
#
# 1. check_rate_limit(api_key)
#    Per API key sliding window over 60 s using a sorted set: each request
#    adds its timestamp, entries older than the window are pruned, and
#    the remaining count is compared with the key's limit.
#
# 2. check_fetch_interval(user_email)
#    Minimum gap between inbox listings per user, since each listing fans
#    out into a dozen Gmail calls. Implemented as SET NX PX: the key
#    exists exactly while the user must wait, and its PTTL is the wait.
#
# If Redis is unreachable both checks log a warning and let the request
# through; a Redis outage must not take the API down with it.
# =============================================================================

from __future__ import annotations

import logging
import time

from fastapi import HTTPException

from dispute_center.config import settings
from dispute_center.db.models import ApiKey

logger = logging.getLogger(__name__)

# Lazy Redis connection
_redis_client = None


def _get_rate_limit_redis():
    """Lazily create and cache the async Redis client for rate limiting."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(
            settings.rate_limit_redis_url,
            decode_responses=True,
        )
    return _redis_client


async def check_rate_limit(api_key: ApiKey | None) -> None:
    """
    Enforce the per-key request budget.

    Raises:
        HTTPException 429: Limit exceeded (with a Retry-After header).

    No-op when auth is disabled (api_key is None) or Redis is down.
    """
    if api_key is None:
        return

    limit = api_key.rate_limit_rpm or settings.rate_limit_rpm
    redis_key = f"ratelimit:apikey:{api_key.id}"
    window_seconds = 60

    try:
        r = _get_rate_limit_redis()
        now = time.time()

        pipe = r.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - window_seconds)
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {str(now): now})
        pipe.expire(redis_key, window_seconds + 10)
        results = await pipe.execute()

        current_count = results[1]  # zcard result

        if current_count >= limit:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Limit: {limit} requests/minute.",
                headers={"Retry-After": str(window_seconds)},
            )

    except HTTPException:
        raise
    except Exception as e:
        logger.warning(
            "Rate limiter unavailable (Redis error): %s. Allowing request through.",
            e,
        )


async def check_fetch_interval(user_email: str, interval_ms: int | None = None) -> None:
    """
    Allow at most one inbox listing per user every `interval_ms`.

    Raises:
        HTTPException 429: detail carries `retry_after_ms`, the wait left.
    """
    interval = settings.inbox_min_interval_ms if interval_ms is None else interval_ms
    if interval <= 0:
        return

    redis_key = f"inbox:lastfetch:{user_email}"

    try:
        r = _get_rate_limit_redis()
        acquired = await r.set(redis_key, str(int(time.time() * 1000)), nx=True, px=interval)
        if acquired:
            return

        remaining = await r.pttl(redis_key)
        retry_after_ms = remaining if remaining and remaining > 0 else interval
        raise HTTPException(
            status_code=429,
            detail={"error": "Rate limit exceeded", "retry_after_ms": retry_after_ms},
            headers={"Retry-After": str(max(1, -(-retry_after_ms // 1000)))},
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.warning(
            "Inbox fetch throttle unavailable (Redis error): %s. Allowing fetch.",
            e,
        )
