"""Run a coroutine while holding a renewed distributed lock."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Optional, Union

from booking_engine.errors import LockNotAcquiredError
from booking_engine.services.locks import DistributedLock, lock_key

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockPreset:
    name: str
    ttl_seconds: int
    renewal_interval_seconds: float


STALE_CHECK_LOCK = LockPreset("stale-check", 300, 60.0)
SIDE_EFFECT_RETRY_LOCK = LockPreset("side-effect-retry", 120, 30.0)
RETENTION_CLEANUP_LOCK = LockPreset("retention-cleanup", 600, 120.0)
WEEKLY_MAILING_LOCK = LockPreset("weekly-mailing", 600, 120.0)


class LockContext:
    """Handed to the task so it can stop before destructive steps once the lock is gone."""

    def __init__(self, key: str, owner_token: str) -> None:
        self.key = key
        self.owner_token = owner_token
        self._lost = asyncio.Event()

    def is_lock_valid(self) -> bool:
        return not self._lost.is_set()

    def mark_lost(self) -> None:
        self._lost.set()

    async def wait_lost(self) -> None:
        await self._lost.wait()


@dataclass(frozen=True)
class NotAcquired:
    """Another owner holds the lock. An expected outcome, not a failure."""

    key: str
    acquired: ClassVar[bool] = False


@dataclass(frozen=True)
class Acquired:
    key: str
    result: Any = None
    error: Optional[BaseException] = None
    lock_lost: bool = False
    acquired: ClassVar[bool] = True


LockedTaskResult = Union[NotAcquired, Acquired]
LockedTask = Callable[[LockContext], Awaitable[Any]]


class LockedTaskRunner:
    """Acquire, run exclusively, renew periodically, always release."""

    def __init__(
        self,
        lock: DistributedLock,
        *,
        name: str,
        ttl_seconds: int,
        renewal_interval_seconds: float,
        instance_id: str = "",
    ) -> None:
        if renewal_interval_seconds <= 0 or renewal_interval_seconds >= ttl_seconds:
            raise ValueError("renewal interval must be positive and shorter than the TTL")
        self._lock = lock
        self.name = name
        self.key = lock_key(name)
        self.ttl_seconds = ttl_seconds
        self.renewal_interval_seconds = renewal_interval_seconds
        self.instance_id = instance_id or uuid.uuid4().hex[:8]

    @classmethod
    def from_preset(cls, lock: DistributedLock, preset: LockPreset, *, instance_id: str = "") -> "LockedTaskRunner":
        return cls(
            lock,
            name=preset.name,
            ttl_seconds=preset.ttl_seconds,
            renewal_interval_seconds=preset.renewal_interval_seconds,
            instance_id=instance_id,
        )

    async def run(self, task: LockedTask) -> LockedTaskResult:
        """Run ``task`` if the lock can be taken.

        Errors raised by the task are captured on the returned ``Acquired``
        result rather than propagated. Cancellation still propagates, after
        the renewal loop is stopped and the lock released.
        """

        owner_token = f"{self.instance_id}:{uuid.uuid4().hex}"
        if not await self._lock.acquire(self.key, owner_token, self.ttl_seconds):
            LOGGER.debug("Lock %s held elsewhere, skipping", self.key)
            return NotAcquired(key=self.key)

        context = LockContext(self.key, owner_token)
        renewal = asyncio.create_task(
            self._renew_until_lost(context),
            name=f"lock-renewal:{self.name}",
        )
        result: Any = None
        error: Optional[BaseException] = None
        try:
            result = await task(context)
        except Exception as exc:
            LOGGER.exception("Task under lock %s failed", self.key)
            error = exc
        finally:
            renewal.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await renewal
            await self._lock.release(self.key, owner_token)

        return Acquired(
            key=self.key,
            result=result,
            error=error,
            lock_lost=not context.is_lock_valid(),
        )

    async def run_exclusive(self, task: LockedTask) -> Any:
        """Like ``run`` but raises when the lock is taken or the task failed."""

        outcome = await self.run(task)
        if isinstance(outcome, NotAcquired):
            raise LockNotAcquiredError(outcome.key)
        if outcome.error is not None:
            raise outcome.error
        return outcome.result

    async def _renew_until_lost(self, context: LockContext) -> None:
        while True:
            await asyncio.sleep(self.renewal_interval_seconds)
            renewed = await self._lock.renew(self.key, context.owner_token, self.ttl_seconds)
            if not renewed:
                LOGGER.warning("Lost lock %s; signalling task to stop", self.key)
                context.mark_lost()
                return
