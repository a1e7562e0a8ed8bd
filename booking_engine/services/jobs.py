"""Periodic background jobs.

Each job runs under its own ``LockedTaskRunner`` so at most one instance in
the cluster executes it at a time. A failing iteration is logged and the
next one runs on schedule.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis
from sqlalchemy import and_, delete, func, or_, select, update

from booking_engine.errors import SideEffectDeliveryError
from booking_engine.models import Appointment, SideEffect
from booking_engine.models.appointment import ACTIVE_STATUSES
from booking_engine.models.base import utcnow
from booking_engine.services import conversation_state
from booking_engine.services.cache import cache_get, cache_set
from booking_engine.services.checkpoint import ConversationStage, derive_checkpoint, mark_stalled
from booking_engine.services.circuit_breaker import SLACK_API, CircuitBreakerRegistry
from booking_engine.services.db import Database
from booking_engine.services.locked_task import (
    RETENTION_CLEANUP_LOCK,
    SIDE_EFFECT_RETRY_LOCK,
    STALE_CHECK_LOCK,
    WEEKLY_MAILING_LOCK,
    Acquired,
    LockContext,
    LockedTask,
    LockedTaskResult,
    LockedTaskRunner,
    LockPreset,
)
from booking_engine.services.locks import DistributedLock
from booking_engine.services.side_effects import FINISHED_STATUSES, SideEffectDispatcher, Sender
from booking_engine.utils.config import Settings

LOGGER = logging.getLogger(__name__)

STALE_SCAN_BATCH_SIZE = 100
WEEKLY_MAILING_LAST_SEND_KEY = "weekly-mailing:last-send-date"


@dataclass
class ScheduledJob:
    name: str
    runner: LockedTaskRunner
    handler: LockedTask
    interval_seconds: float


class JobScheduler:
    """Owns the job loops; started and stopped by the application lifespan."""

    def __init__(self, lock: DistributedLock, *, instance_id: str = "") -> None:
        self._lock = lock
        self._instance_id = instance_id
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: List[asyncio.Task] = []
        self._shutdown = asyncio.Event()

    @property
    def job_names(self) -> List[str]:
        return sorted(self._jobs)

    def register(self, preset: LockPreset, handler: LockedTask, *, interval_seconds: float) -> None:
        runner = LockedTaskRunner.from_preset(self._lock, preset, instance_id=self._instance_id)
        self._jobs[preset.name] = ScheduledJob(preset.name, runner, handler, interval_seconds)

    async def run_once(self, name: str) -> LockedTaskResult:
        job = self._get(name)
        return await job.runner.run(job.handler)

    async def trigger(self, name: str) -> Any:
        """Manual run; raises ``LockNotAcquiredError`` when another run holds the lock."""

        job = self._get(name)
        return await job.runner.run_exclusive(job.handler)

    def start(self) -> None:
        self._shutdown.clear()
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job:{job.name}"))
        LOGGER.info("Started %s background job(s)", len(self._tasks))

    async def stop(self, timeout: float) -> None:
        """Signal loops to exit, wait up to ``timeout``, then cancel stragglers."""

        self._shutdown.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def _get(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        return job

    async def _loop(self, job: ScheduledJob) -> None:
        while not self._shutdown.is_set():
            try:
                outcome = await job.runner.run(job.handler)
                if isinstance(outcome, Acquired):
                    if outcome.error is not None:
                        LOGGER.error("Job %s failed: %s", job.name, outcome.error)
                    else:
                        LOGGER.debug("Job %s finished: %s", job.name, outcome.result)
            except Exception:
                LOGGER.exception("Job %s iteration crashed", job.name)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._shutdown.wait(), timeout=job.interval_seconds)


class MaintenanceJobs:
    """Handlers for the periodic jobs. Each takes the lock context it runs under."""

    def __init__(
        self,
        db: Database,
        *,
        dispatcher: SideEffectDispatcher,
        registry: CircuitBreakerRegistry,
        redis_client: "redis.Redis",
        slack: Sender,
        stale_threshold_hours: int = 48,
        retention_days: int = 30,
        mailing_weekday: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._dispatcher = dispatcher
        self._registry = registry
        self._redis = redis_client
        self._slack = slack
        self.stale_threshold = timedelta(hours=stale_threshold_hours)
        self.retention = timedelta(days=retention_days)
        self.mailing_weekday = mailing_weekday
        self._clock = clock

    def register_all(self, scheduler: JobScheduler, settings: Settings) -> None:
        scheduler.register(
            STALE_CHECK_LOCK,
            self.scan_stale_conversations,
            interval_seconds=settings.stale_check_interval_seconds,
        )
        scheduler.register(
            SIDE_EFFECT_RETRY_LOCK,
            self.retry_side_effects,
            interval_seconds=settings.side_effect_retry_interval_seconds,
        )
        scheduler.register(
            RETENTION_CLEANUP_LOCK,
            self.cleanup_retention,
            interval_seconds=settings.retention_cleanup_interval_seconds,
        )
        scheduler.register(
            WEEKLY_MAILING_LOCK,
            self.send_weekly_summary,
            interval_seconds=settings.weekly_mailing_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Stale conversations
    # ------------------------------------------------------------------
    async def scan_stale_conversations(self, ctx: LockContext) -> int:
        """Flag active negotiations with no activity past the threshold."""

        now = self._clock()
        cutoff = now - self.stale_threshold
        async with self._db.session() as session:
            ids = (
                await session.scalars(
                    select(Appointment.id)
                    .where(
                        Appointment.status.in_(ACTIVE_STATUSES),
                        Appointment.is_stale.is_(False),
                        or_(
                            Appointment.last_activity_at < cutoff,
                            and_(
                                Appointment.last_activity_at.is_(None),
                                Appointment.created_at < cutoff,
                            ),
                        ),
                    )
                    .order_by(Appointment.id)
                    .limit(STALE_SCAN_BATCH_SIZE)
                )
            ).all()

        flagged = 0
        for appointment_id in ids:
            if not ctx.is_lock_valid():
                LOGGER.warning("Stale scan lost its lock after %s appointment(s)", flagged)
                break
            if await self._mark_stale(appointment_id, now):
                flagged += 1
        if flagged:
            LOGGER.info("Flagged %s stale conversation(s)", flagged)
        return flagged

    async def _mark_stale(self, appointment_id: int, now: datetime) -> bool:
        async with self._db.session() as session:
            appointment = await session.get(Appointment, appointment_id)
            if appointment is None or appointment.is_stale:
                return False
            state = conversation_state.load_state(appointment.conversation_state)
            checkpoint = conversation_state.current_checkpoint(state)
            if checkpoint is None:
                checkpoint = derive_checkpoint(
                    status=appointment.status,
                    facts=conversation_state.current_facts(state),
                    message_count=appointment.message_count,
                    now=now,
                )
            state["checkpoint"] = mark_stalled(checkpoint, now).model_dump(mode="json")
            result = await session.execute(
                update(Appointment)
                .where(
                    Appointment.id == appointment_id,
                    Appointment.version == appointment.version,
                )
                .values(
                    is_stale=True,
                    conversation_state=state,
                    checkpoint_stage=ConversationStage.STALLED.value,
                    version=appointment.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                LOGGER.info("Appointment %s changed during stale scan; skipping", appointment_id)
                return False
        return True

    # ------------------------------------------------------------------
    # Side-effect retry
    # ------------------------------------------------------------------
    async def retry_side_effects(self, ctx: LockContext) -> int:
        return await self._dispatcher.retry_pending(ctx)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    async def cleanup_retention(self, ctx: LockContext) -> int:
        """Purge finished outbox rows past retention. Appointments are never deleted here."""

        cutoff = self._clock() - self.retention
        if not ctx.is_lock_valid():
            LOGGER.warning("Retention cleanup skipped: lock lost before delete")
            return 0
        async with self._db.session() as session:
            result = await session.execute(
                delete(SideEffect)
                .where(
                    SideEffect.status.in_(FINISHED_STATUSES),
                    SideEffect.created_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
        removed = result.rowcount or 0
        if removed:
            LOGGER.info("Retention cleanup removed %s side-effect row(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Weekly summary
    # ------------------------------------------------------------------
    async def send_weekly_summary(self, ctx: LockContext) -> Optional[Dict[str, int]]:
        """Post status counts to Slack once per week, on the configured weekday."""

        now = self._clock()
        if now.weekday() != self.mailing_weekday:
            return None
        today = now.date().isoformat()
        if await cache_get(self._redis, WEEKLY_MAILING_LAST_SEND_KEY) == today:
            LOGGER.debug("Weekly summary already sent for %s", today)
            return None

        async with self._db.session() as session:
            rows = (
                await session.execute(
                    select(Appointment.status, func.count(Appointment.id)).group_by(Appointment.status)
                )
            ).all()
        counts = {status: int(count) for status, count in rows}

        if not ctx.is_lock_valid():
            LOGGER.warning("Weekly summary aborted: lock lost before sending")
            return None
        lines = [f"• {status}: {count}" for status, count in sorted(counts.items())] or ["• no appointments"]
        payload = {"text": f"Weekly appointment summary ({today})\n" + "\n".join(lines)}
        breaker = self._registry.get_or_create(SLACK_API)
        delivered = await breaker.call(self._slack.send, payload)
        if not delivered:
            raise SideEffectDeliveryError("Weekly summary delivery was rejected by Slack")
        await cache_set(self._redis, WEEKLY_MAILING_LAST_SEND_KEY, today, ex=8 * 24 * 3600)
        return counts
