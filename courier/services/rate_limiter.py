"""Redis-backed sliding-window limiter for login attempts."""

import time
from typing import Optional, Tuple

import redis.asyncio as redis

from courier.core.config import settings
from courier.core.errors import RateLimitError

# Singleton Redis client (lazy)
_redis_client: Optional[redis.Redis] = None


def _get_redis() -> redis.Redis:
    """Return a cached Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=False,
            socket_connect_timeout=2,
        )
    return _redis_client


async def check_rate_limit(key: str, max_requests: int, window_seconds: int) -> Tuple[bool, int]:
    """
    Sliding-window rate limit using a Redis sorted set per key.

    Returns (allowed, retry_after_seconds).
    Fail-open if Redis is unavailable.
    """
    redis_client = _get_redis()
    now = time.time()
    window_start = now - window_seconds
    bucket = f"rate:{key}"

    try:
        # Remove entries outside window
        await redis_client.zremrangebyscore(bucket, 0, window_start)

        current = await redis_client.zcard(bucket)
        if current >= max_requests:
            # Oldest timestamp determines retry-after
            oldest = await redis_client.zrange(bucket, 0, 0, withscores=True)
            oldest_ts = oldest[0][1] if oldest else now
            retry_after = max(1, int(window_seconds - (now - oldest_ts)))
            return False, retry_after

        # Record this request and set TTL to bound memory
        await redis_client.zadd(bucket, {f"{now:.6f}": now})
        await redis_client.expire(bucket, window_seconds)
        return True, 0
    except (redis.RedisError, OSError):
        # Fail-open to avoid hard outages if Redis is down
        return True, 0


async def enforce_login_rate_limit(client_key: str) -> None:
    """Raise RateLimitError if this client exceeded the login attempt budget."""
    allowed, retry_after = await check_rate_limit(
        f"login:{client_key}",
        settings.LOGIN_RATE_LIMIT_MAX,
        settings.LOGIN_RATE_LIMIT_WINDOW_SECONDS,
    )
    if not allowed:
        raise RateLimitError(
            retry_after,
            "Too many login attempts. Please try again later.",
        )
