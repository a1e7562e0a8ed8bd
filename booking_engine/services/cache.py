"""Redis key-value client utilities."""

from typing import Any, Optional

import redis.asyncio as redis

DEFAULT_SOCKET_TIMEOUT_SECONDS = 2.0


def create_redis_client(url: str) -> "redis.Redis":
    """Build an asyncio Redis client that returns ``str`` values."""

    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=DEFAULT_SOCKET_TIMEOUT_SECONDS,
        socket_timeout=DEFAULT_SOCKET_TIMEOUT_SECONDS,
    )


async def cache_set(client: "redis.Redis", key: str, value: Any, ex: Optional[int] = None) -> bool:
    """Set a value in Redis with optional expiration."""

    return bool(await client.set(name=key, value=value, ex=ex))


async def cache_get(client: "redis.Redis", key: str) -> Optional[str]:
    """Get a value from Redis by key."""

    return await client.get(name=key)


async def incr_with_ttl(client: "redis.Redis", key: str, ttl_seconds: int) -> int:
    """Increment a counter, starting its expiry on first increment."""

    count = int(await client.incr(key))
    if count == 1:
        await client.expire(key, ttl_seconds)
    return count
