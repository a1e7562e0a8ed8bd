"""Token-owned distributed locks on top of Redis."""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

LOGGER = logging.getLogger(__name__)

LOCK_PREFIX = "booking:lock:"
STALE_LOCK_PATTERN = "*:lock:*"

# Extend expiry only while the caller still owns the key.
RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
else
    return 0
end
"""

# Delete only while the caller still owns the key.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def lock_key(name: str) -> str:
    """Return the namespaced store key for a lock name."""

    if name.startswith(LOCK_PREFIX):
        return name
    return f"{LOCK_PREFIX}{name}"


class DistributedLock:
    """Atomic acquire / renew / release against a shared Redis."""

    def __init__(self, client: "redis.Redis") -> None:
        self._client = client
        self._renew_script = client.register_script(RENEW_SCRIPT)
        self._release_script = client.register_script(RELEASE_SCRIPT)

    async def acquire(self, key: str, owner_token: str, ttl_seconds: int) -> bool:
        """Set the key if absent. Store errors fail closed."""

        try:
            acquired = await self._client.set(key, owner_token, nx=True, ex=ttl_seconds)
        except RedisError as exc:
            LOGGER.warning("Lock acquire failed for %s: %s", key, exc)
            return False
        return bool(acquired)

    async def renew(self, key: str, owner_token: str, ttl_seconds: int) -> bool:
        try:
            renewed = await self._renew_script(keys=[key], args=[owner_token, ttl_seconds])
        except RedisError as exc:
            LOGGER.warning("Lock renew failed for %s: %s", key, exc)
            return False
        return bool(renewed)

    async def release(self, key: str, owner_token: str) -> bool:
        """Delete the key if still owned. Expiry cleans up when the store is unreachable."""

        try:
            released = await self._release_script(keys=[key], args=[owner_token])
        except RedisError as exc:
            LOGGER.warning("Lock release failed for %s, leaving it to expire: %s", key, exc)
            return False
        if not released:
            LOGGER.info("Lock %s was no longer owned by %s at release", key, owner_token)
        return bool(released)

    async def owner(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def sweep_stale(self, max_age_seconds: int) -> int:
        """Remove lock keys left behind by crashed owners.

        A lock written by this module always carries an expiry no longer than
        its task's TTL. Keys with no expiry at all, or with more remaining
        life than ``max_age_seconds``, cannot belong to a live owner and are
        deleted.
        """

        removed = 0
        async for key in self._client.scan_iter(match=STALE_LOCK_PATTERN, count=100):
            ttl = await self._client.ttl(key)
            if ttl == -1 or ttl > max_age_seconds:
                await self._client.delete(key)
                removed += 1
                LOGGER.warning("Removed stale lock %s (ttl=%s)", key, ttl)
        if removed:
            LOGGER.info("Stale lock sweep removed %s key(s)", removed)
        return removed
