"""Transactional outbox for notifications triggered by lifecycle transitions.

Effects are written in the same transaction as the status change that
causes them and delivered afterwards, so a crash between commit and send
leaves a pending row for the retry job instead of a lost notification.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.errors import CircuitOpenError, SideEffectDeliveryError
from booking_engine.models import SideEffect
from booking_engine.models.base import utcnow
from booking_engine.services.circuit_breaker import GMAIL_API, NOTION_API, SLACK_API, CircuitBreakerRegistry
from booking_engine.services.db import Database
from booking_engine.services.locked_task import LockContext
from booking_engine.services.tracking_code import prepend_to_subject

LOGGER = logging.getLogger(__name__)

SLACK_NOTIFICATION = "slack_notification"
CLIENT_EMAIL = "client_email"
THERAPIST_EMAIL = "therapist_email"
NOTION_SYNC = "notion_user_sync"

EFFECT_BREAKERS: Dict[str, str] = {
    SLACK_NOTIFICATION: SLACK_API,
    CLIENT_EMAIL: GMAIL_API,
    THERAPIST_EMAIL: GMAIL_API,
    NOTION_SYNC: NOTION_API,
}

EFFECT_PLAN: Dict[str, Tuple[str, ...]] = {
    "created": (SLACK_NOTIFICATION, NOTION_SYNC),
    "confirmed": (SLACK_NOTIFICATION, NOTION_SYNC),
    "cancelled": (SLACK_NOTIFICATION, NOTION_SYNC),
    "completed": (SLACK_NOTIFICATION, NOTION_SYNC),
    "session_held": (NOTION_SYNC,),
    "rescheduled": (SLACK_NOTIFICATION,),
}
EMAIL_PLAN: Dict[str, Tuple[str, ...]] = {
    "confirmed": (CLIENT_EMAIL, THERAPIST_EMAIL),
    "cancelled": (CLIENT_EMAIL, THERAPIST_EMAIL),
    "rescheduled": (CLIENT_EMAIL, THERAPIST_EMAIL),
    "feedback_requested": (CLIENT_EMAIL,),
}
EMAIL_SUBJECTS: Dict[Tuple[str, str], str] = {
    (CLIENT_EMAIL, "confirmed"): "Your therapy session is confirmed",
    (THERAPIST_EMAIL, "confirmed"): "Session confirmed with your client",
    (CLIENT_EMAIL, "cancelled"): "Your therapy session has been cancelled",
    (THERAPIST_EMAIL, "cancelled"): "Session cancelled",
    (CLIENT_EMAIL, "rescheduled"): "Your therapy session has been rescheduled",
    (THERAPIST_EMAIL, "rescheduled"): "Session rescheduled",
    (CLIENT_EMAIL, "feedback_requested"): "How was your session?",
}

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
ABANDONED = "abandoned"
RETRYABLE_STATUSES = (PENDING, FAILED)
FINISHED_STATUSES = (COMPLETED, ABANDONED)

MAX_ATTEMPTS = 5
MIN_RETRY_INTERVAL_SECONDS = 60
RETRY_BATCH_SIZE = 50


class Sender(Protocol):
    async def send(self, payload: Dict[str, Any]) -> bool: ...


@dataclass(frozen=True)
class TransitionContext:
    """What the payload builders need to know about a committed transition."""

    appointment_id: int
    transition: str
    previous_status: Optional[str]
    new_status: str
    source: str
    version: int
    tracking_code: Optional[str] = None
    client_email: Optional[str] = None
    client_name: Optional[str] = None
    therapist_email: Optional[str] = None
    therapist_name: Optional[str] = None
    confirmed_datetime: Optional[str] = None
    reason: Optional[str] = None


def side_effect_key(appointment_id: int, transition: str, effect_type: str) -> str:
    raw = f"{appointment_id}:{transition}:{effect_type}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def plan_effects(transition: str, *, send_emails: bool) -> List[str]:
    effects = list(EFFECT_PLAN.get(transition, ()))
    if send_emails:
        effects.extend(EMAIL_PLAN.get(transition, ()))
    return effects


def build_payload(effect_type: str, ctx: TransitionContext) -> Dict[str, Any]:
    if effect_type == SLACK_NOTIFICATION:
        label = ctx.tracking_code or f"#{ctx.appointment_id}"
        if ctx.previous_status:
            text = f"Appointment {label}: {ctx.previous_status} → {ctx.new_status} ({ctx.source})"
        else:
            text = f"New appointment request {label} ({ctx.new_status})"
        if ctx.reason:
            text += f"\nReason: {ctx.reason}"
        return {"text": text}
    if effect_type == NOTION_SYNC:
        return {
            "email": ctx.client_email,
            "status": ctx.new_status,
            "tracking_code": ctx.tracking_code,
        }
    if effect_type in (CLIENT_EMAIL, THERAPIST_EMAIL):
        to_client = effect_type == CLIENT_EMAIL
        subject = EMAIL_SUBJECTS.get((effect_type, ctx.transition), "Appointment update")
        return {
            "to": ctx.client_email if to_client else ctx.therapist_email,
            "subject": prepend_to_subject(subject, ctx.tracking_code),
            "template": f"{ctx.transition}_{'client' if to_client else 'therapist'}",
            "context": {
                "client_name": ctx.client_name,
                "therapist_name": ctx.therapist_name,
                "confirmed_datetime": ctx.confirmed_datetime,
                "tracking_code": ctx.tracking_code,
                "reason": ctx.reason,
            },
        }
    raise ValueError(f"Unknown side effect type: {effect_type}")


async def enqueue_effects(
    session: AsyncSession,
    ctx: TransitionContext,
    effect_types: Iterable[str],
) -> List[int]:
    """Write outbox rows inside the caller's transaction; returns their ids."""

    transition_label = f"{ctx.transition}@v{ctx.version}"
    rows: List[SideEffect] = []
    for effect_type in effect_types:
        key = side_effect_key(ctx.appointment_id, transition_label, effect_type)
        existing = await session.scalar(select(SideEffect.id).where(SideEffect.idempotency_key == key))
        if existing is not None:
            continue
        row = SideEffect(
            appointment_id=ctx.appointment_id,
            idempotency_key=key,
            transition=transition_label,
            effect_type=effect_type,
            payload=build_payload(effect_type, ctx),
            status=PENDING,
        )
        session.add(row)
        rows.append(row)
    await session.flush()
    return [row.id for row in rows]


class SideEffectDispatcher:
    """Delivers outbox rows through their circuit breakers."""

    def __init__(
        self,
        db: Database,
        registry: CircuitBreakerRegistry,
        senders: Mapping[str, Sender],
        *,
        max_attempts: int = MAX_ATTEMPTS,
        min_retry_interval_seconds: int = MIN_RETRY_INTERVAL_SECONDS,
        batch_size: int = RETRY_BATCH_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._registry = registry
        self._senders = dict(senders)
        self.max_attempts = max_attempts
        self.min_retry_interval = timedelta(seconds=min_retry_interval_seconds)
        self.batch_size = batch_size
        self._clock = clock
        self._tasks: Set[asyncio.Task] = set()

    # ---------------------------------------------------------------------
    # Scheduling
    # ---------------------------------------------------------------------
    def schedule(self, effect_ids: Iterable[int]) -> Optional[asyncio.Task]:
        """Deliver in the background; the caller does not wait."""

        ids = list(effect_ids)
        if not ids:
            return None
        task = asyncio.create_task(self._process_many(ids), name=f"side-effects:{ids[0]}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Side-effect delivery task crashed: %s", exc, exc_info=exc)

    async def drain(self, timeout: float) -> int:
        """Wait up to ``timeout`` for in-flight deliveries, cancel the rest."""

        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            LOGGER.warning("Cancelled %s side-effect task(s) at shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)

    async def _process_many(self, ids: List[int]) -> None:
        for effect_id in ids:
            await self.process(effect_id)

    # ---------------------------------------------------------------------
    # Delivery
    # ---------------------------------------------------------------------
    async def process(self, effect_id: int) -> Optional[str]:
        """Attempt one delivery and record the outcome. Returns the new status."""

        async with self._db.session() as session:
            effect = await session.get(SideEffect, effect_id)
            if effect is None or effect.status not in RETRYABLE_STATUSES:
                return effect.status if effect is not None else None
            effect_type = effect.effect_type
            payload = dict(effect.payload)

        sender = self._senders.get(effect_type)
        if sender is None:
            return await self._record(effect_id, ok=False, error=f"no sender for {effect_type}")

        breaker = self._registry.get_or_create(EFFECT_BREAKERS.get(effect_type, effect_type))
        try:
            await breaker.call(self._deliver, sender, effect_type, payload)
        except CircuitOpenError as exc:
            LOGGER.info("Deferring side effect %s: %s", effect_id, exc)
            return PENDING
        except Exception as exc:
            LOGGER.warning("Side effect %s (%s) failed: %s", effect_id, effect_type, exc)
            return await self._record(effect_id, ok=False, error=str(exc) or type(exc).__name__)
        return await self._record(effect_id, ok=True)

    @staticmethod
    async def _deliver(sender: Sender, effect_type: str, payload: Dict[str, Any]) -> None:
        if not await sender.send(payload):
            raise SideEffectDeliveryError(f"{effect_type} delivery reported failure")

    async def _record(self, effect_id: int, *, ok: bool, error: Optional[str] = None) -> str:
        now = self._clock()
        async with self._db.session() as session:
            effect = await session.get(SideEffect, effect_id)
            effect.attempts += 1
            effect.last_attempt_at = now
            if ok:
                effect.status = COMPLETED
                effect.completed_at = now
                effect.last_error = None
            else:
                effect.last_error = (error or "")[:1000]
                effect.status = ABANDONED if effect.attempts >= self.max_attempts else FAILED
                if effect.status == ABANDONED:
                    LOGGER.error(
                        "Abandoning side effect %s after %s attempts",
                        effect_id,
                        effect.attempts,
                    )
            return effect.status

    async def retry_pending(self, ctx: Optional[LockContext] = None) -> int:
        """Re-attempt failed or orphaned effects; run under the retry lock."""

        now = self._clock()
        cutoff = now - self.min_retry_interval
        async with self._db.session() as session:
            ids = (
                await session.scalars(
                    select(SideEffect.id)
                    .where(
                        SideEffect.status.in_(RETRYABLE_STATUSES),
                        SideEffect.attempts < self.max_attempts,
                        SideEffect.created_at <= cutoff,
                        or_(
                            SideEffect.last_attempt_at.is_(None),
                            SideEffect.last_attempt_at <= cutoff,
                        ),
                    )
                    .order_by(SideEffect.created_at, SideEffect.id)
                    .limit(self.batch_size)
                )
            ).all()

        processed = 0
        for effect_id in ids:
            if ctx is not None and not ctx.is_lock_valid():
                LOGGER.warning("Retry lock lost after %s effect(s); stopping", processed)
                break
            await self.process(effect_id)
            processed += 1
        if processed:
            LOGGER.info("Retried %s side effect(s)", processed)
        return processed

    async def pending_count(self) -> int:
        async with self._db.session() as session:
            count = await session.scalar(
                select(func.count(SideEffect.id)).where(SideEffect.status.in_(RETRYABLE_STATUSES))
            )
        return int(count or 0)

