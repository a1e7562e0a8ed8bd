"""Appointment lifecycle service.

Every status change goes through ``AppointmentLifecycle.update_status``. The
write is conditioned on the version read at load time, so a caller holding a
stale copy always loses with ``ConcurrentModificationError`` and must
re-read. Notifications are written to the outbox in the same transaction and
delivered after commit; their failure never rolls back a transition.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking_engine.errors import (
    AppointmentNotFoundError,
    ConcurrentModificationError,
    HumanControlError,
    InvalidTransitionError,
    ValidationError,
)
from booking_engine.models import Appointment
from booking_engine.models.appointment import APPOINTMENT_STATUSES
from booking_engine.models.base import utcnow
from booking_engine.services import conversation_state
from booking_engine.services.booking_status import TherapistBookingStatus
from booking_engine.services.checkpoint import checkpoint_summary
from booking_engine.services.db import Database
from booking_engine.services.events import StatusChangedEvent, StatusEventBus
from booking_engine.services.side_effects import (
    SideEffectDispatcher,
    TransitionContext,
    enqueue_effects,
    plan_effects,
)

LOGGER = logging.getLogger(__name__)


class TransitionSource(str, Enum):
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"
    FEEDBACK_SYNC = "feedback_sync"


ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"contacted", "negotiating", "cancelled"}),
    "contacted": frozenset({"negotiating", "confirmed", "cancelled"}),
    "negotiating": frozenset({"confirmed", "cancelled"}),
    # Corrections out of "confirmed" or "cancelled" go through with a warning.
    "confirmed": frozenset(APPOINTMENT_STATUSES) - {"confirmed"},
    "session_held": frozenset({"feedback_requested", "completed", "cancelled"}),
    "feedback_requested": frozenset({"completed", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(APPOINTMENT_STATUSES) - {"cancelled"},
}

# Forward moves out of "confirmed" are the normal post-session flow.
_CONFIRMED_FORWARD = frozenset({"cancelled", "session_held", "completed"})

CONFIRMED_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %I:%M %p",
    "%d/%m/%Y %H:%M",
    "%d %B %Y %H:%M",
    "%d %B %Y %I:%M %p",
    "%B %d, %Y %I:%M %p",
    "%A, %B %d, %Y at %I:%M %p",
    "%A %d %B %Y at %I:%M %p",
)


class TransitionResult(BaseModel):
    success: bool = True
    skipped: bool = False
    appointment_id: int
    previous_status: str
    new_status: str
    warning: Optional[str] = None
    version: int


def is_transition_allowed(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition_warning(current: str, target: str) -> Optional[str]:
    if current == "confirmed" and target not in _CONFIRMED_FORWARD:
        return f"Changed from confirmed to {target}. This may require manual cleanup."
    if current == "cancelled":
        return f"Restored cancelled appointment to {target}. Verify this is intentional."
    return None


def parse_confirmed_datetime(raw: Optional[str]) -> Optional[datetime]:
    """Best-effort parse of the free-text confirmed time.

    The raw string is the record of what was agreed; this parsed value is
    advisory and ``None`` whenever the text is not recognised. Naive values
    are taken as UTC.
    """

    if not raw or not raw.strip():
        return None
    text = " ".join(raw.strip().split())
    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in CONFIRMED_DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        LOGGER.debug("Could not parse confirmed datetime %r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def cancellation_note(now: datetime, reason: Optional[str], cancelled_by: str, existing: Optional[str]) -> str:
    note = (
        f"[CANCELLED {now.isoformat()}] Reason: {reason or 'Not specified'}. "
        f"Cancelled by: {cancelled_by}"
    )
    return f"{note}\n\n{existing}" if existing else note


class AppointmentLifecycle:
    """Validates and executes appointment status transitions."""

    def __init__(
        self,
        db: Database,
        *,
        booking_status: TherapistBookingStatus,
        dispatcher: SideEffectDispatcher,
        events: StatusEventBus,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._booking_status = booking_status
        self._dispatcher = dispatcher
        self._events = events
        self._clock = clock

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    async def update_status(
        self,
        appointment_id: int,
        target_status: str,
        *,
        source: TransitionSource | str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        confirmed_datetime: Optional[str] = None,
        send_emails: bool = True,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        source = TransitionSource(source)
        if target_status not in APPOINTMENT_STATUSES:
            raise ValidationError(f"Unknown status: {target_status}")
        now = self._clock()

        async with self._db.session() as session:
            appointment = await self._load(session, appointment_id)
            loaded_version = appointment.version
            current = appointment.status

            if target_status == current:
                LOGGER.debug("Appointment %s already %s; skipping", appointment_id, current)
                return TransitionResult(
                    skipped=True,
                    appointment_id=appointment_id,
                    previous_status=current,
                    new_status=current,
                    version=loaded_version,
                )

            self._check_version(appointment, expected_version)
            self._check_control(appointment, source)
            if not is_transition_allowed(current, target_status):
                raise InvalidTransitionError(current, target_status)

            values: Dict[str, Any] = {"status": target_status}
            raw_datetime = (confirmed_datetime or "").strip() or None
            if target_status == "confirmed":
                raw_datetime = raw_datetime or (appointment.confirmed_datetime_raw or "").strip() or None
                if not raw_datetime:
                    raise ValidationError("A confirmed date and time is required to confirm an appointment")
                values.update(
                    confirmed_datetime_raw=raw_datetime,
                    confirmed_datetime_parsed=parse_confirmed_datetime(raw_datetime),
                    confirmed_at=now,
                )
            if target_status == "cancelled":
                values["notes"] = cancellation_note(
                    now, reason, actor_id or source.value, appointment.notes
                )

            message = f"Status changed from {current} to {target_status}"
            if reason:
                message += f". Reason: {reason}"
            values.update(
                self._conversation_values(
                    appointment,
                    status=target_status,
                    now=now,
                    audit=(source, actor_id, message),
                    last_action="cancellation_processed" if target_status == "cancelled" else None,
                )
            )

            new_version = await self._versioned_write(session, appointment_id, loaded_version, values, now)
            await self._booking_status.recalculate(session, appointment.therapist_id, now)
            effect_ids = await enqueue_effects(
                session,
                self._context(
                    appointment,
                    transition=target_status,
                    previous_status=current,
                    new_status=target_status,
                    source=source,
                    version=new_version,
                    confirmed_datetime=values.get("confirmed_datetime_raw", appointment.confirmed_datetime_raw),
                    reason=reason,
                ),
                plan_effects(target_status, send_emails=send_emails),
            )
            tracking_code = appointment.tracking_code

        warning = transition_warning(current, target_status)
        LOGGER.info(
            "Appointment %s: %s -> %s (source=%s actor=%s)",
            appointment_id,
            current,
            target_status,
            source.value,
            actor_id,
        )
        if warning:
            LOGGER.warning("Appointment %s: %s", appointment_id, warning)
        self._after_commit(effect_ids, appointment_id, current, target_status, source, tracking_code)
        return TransitionResult(
            appointment_id=appointment_id,
            previous_status=current,
            new_status=target_status,
            warning=warning,
            version=new_version,
        )

    async def update_confirmed_datetime(
        self,
        appointment_id: int,
        confirmed_datetime: str,
        *,
        source: TransitionSource | str,
        actor_id: Optional[str] = None,
        send_emails: bool = True,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """Edit the agreed time; on a confirmed appointment this is a reschedule."""

        source = TransitionSource(source)
        raw = (confirmed_datetime or "").strip()
        if not raw:
            raise ValidationError("confirmed_datetime must not be empty")
        now = self._clock()

        async with self._db.session() as session:
            appointment = await self._load(session, appointment_id)
            loaded_version = appointment.version
            self._check_version(appointment, expected_version)
            self._check_control(appointment, source)
            status = appointment.status
            if status in ("completed", "cancelled"):
                raise ValidationError(f"Cannot change the time of a {status} appointment")
            if raw == (appointment.confirmed_datetime_raw or ""):
                return TransitionResult(
                    skipped=True,
                    appointment_id=appointment_id,
                    previous_status=status,
                    new_status=status,
                    version=loaded_version,
                )

            rescheduled = status == "confirmed"
            values: Dict[str, Any] = {
                "confirmed_datetime_raw": raw,
                "confirmed_datetime_parsed": parse_confirmed_datetime(raw),
            }
            if rescheduled:
                values["confirmed_at"] = now
            previous_raw = appointment.confirmed_datetime_raw or "unset"
            values.update(
                self._conversation_values(
                    appointment,
                    status=status,
                    now=now,
                    audit=(source, actor_id, f"Session time changed from {previous_raw} to {raw}"),
                    last_action="reschedule_confirmed" if rescheduled else None,
                )
            )
            new_version = await self._versioned_write(session, appointment_id, loaded_version, values, now)
            effect_ids = []
            if rescheduled:
                effect_ids = await enqueue_effects(
                    session,
                    self._context(
                        appointment,
                        transition="rescheduled",
                        previous_status=status,
                        new_status=status,
                        source=source,
                        version=new_version,
                        confirmed_datetime=raw,
                    ),
                    plan_effects("rescheduled", send_emails=send_emails),
                )
            tracking_code = appointment.tracking_code

        LOGGER.info("Appointment %s time set to %r (source=%s)", appointment_id, raw, source.value)
        if rescheduled:
            self._dispatcher.schedule(effect_ids)
            self._events.publish(
                StatusChangedEvent(
                    appointment_id=appointment_id,
                    previous_status=status,
                    new_status=status,
                    source=source.value,
                    tracking_code=tracking_code,
                )
            )
        return TransitionResult(
            appointment_id=appointment_id,
            previous_status=status,
            new_status=status,
            version=new_version,
        )

    # ------------------------------------------------------------------
    # Human control and transcript
    # ------------------------------------------------------------------
    async def set_human_control(
        self,
        appointment_id: int,
        enabled: bool,
        *,
        actor_id: str,
        expected_version: Optional[int] = None,
    ) -> int:
        """Pause or resume the AI agent for one appointment. Returns the new version."""

        now = self._clock()
        async with self._db.session() as session:
            appointment = await self._load(session, appointment_id)
            loaded_version = appointment.version
            self._check_version(appointment, expected_version)
            if appointment.human_control_enabled == enabled:
                return loaded_version
            values: Dict[str, Any] = {
                "human_control_enabled": enabled,
                "human_control_taken_by": actor_id if enabled else None,
            }
            values.update(
                self._conversation_values(
                    appointment,
                    status=appointment.status,
                    now=now,
                    audit=(
                        TransitionSource.ADMIN,
                        actor_id,
                        "Human control enabled" if enabled else "Human control released to the agent",
                    ),
                )
            )
            new_version = await self._versioned_write(session, appointment_id, loaded_version, values, now)
        LOGGER.info("Appointment %s human control=%s by %s", appointment_id, enabled, actor_id)
        return new_version

    async def append_message(
        self,
        appointment_id: int,
        *,
        role: str,
        content: str,
        sender: Optional[str] = None,
        last_action: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Record a transcript message and refresh the derived checkpoint and facts."""

        now = self._clock()
        async with self._db.session() as session:
            appointment = await self._load(session, appointment_id)
            loaded_version = appointment.version
            self._check_version(appointment, expected_version)
            if role == "agent" and appointment.human_control_enabled:
                raise HumanControlError("Agent messages are paused while a human has control")

            state = conversation_state.load_state(appointment.conversation_state)
            state = conversation_state.append_message(
                state, role=role, content=content, timestamp=now, sender=sender
            )
            state = conversation_state.recompute(
                state,
                status=appointment.status,
                now=now,
                therapist_email=appointment.therapist.email,
                last_action=last_action,
            )
            conversation_state.enforce_size(state)
            values = {
                "conversation_state": state,
                "last_activity_at": now,
                "is_stale": False,
                **conversation_state.health_fields(state),
            }
            new_version = await self._versioned_write(session, appointment_id, loaded_version, values, now)

        checkpoint = conversation_state.current_checkpoint(state)
        return {
            "appointment_id": appointment_id,
            "version": new_version,
            "checkpoint": checkpoint_summary(checkpoint),
            "facts": state["facts"],
        }

    async def admin_update(
        self,
        appointment_id: int,
        *,
        actor_id: str,
        status: Optional[str] = None,
        confirmed_datetime: Optional[str] = None,
        reason: Optional[str] = None,
        send_emails: bool = False,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """Manual edit from the admin dashboard; requires human control."""

        if status is None and confirmed_datetime is None:
            raise ValidationError("Nothing to update")

        result: Optional[TransitionResult] = None
        if status is not None:
            result = await self.update_status(
                appointment_id,
                status,
                source=TransitionSource.ADMIN,
                actor_id=actor_id,
                reason=reason,
                confirmed_datetime=confirmed_datetime,
                send_emails=send_emails,
                expected_version=expected_version,
            )
        date_handled = status == "confirmed" and result is not None and not result.skipped
        if confirmed_datetime is not None and not date_handled:
            date_result = await self.update_confirmed_datetime(
                appointment_id,
                confirmed_datetime,
                source=TransitionSource.ADMIN,
                actor_id=actor_id,
                send_emails=send_emails,
                expected_version=expected_version if result is None or result.skipped else result.version,
            )
            if result is None or result.skipped:
                return date_result
            result = result.model_copy(update={"version": date_result.version})
        return result

    async def get_checkpoint(self, appointment_id: int) -> Dict[str, Any]:
        async with self._db.session() as session:
            appointment = await self._load(session, appointment_id)
        state = conversation_state.load_state(appointment.conversation_state)
        checkpoint = conversation_state.current_checkpoint(state)
        return {
            "appointment_id": appointment_id,
            "status": appointment.status,
            "version": appointment.version,
            "checkpoint": checkpoint_summary(checkpoint) if checkpoint else None,
            "facts": state["facts"],
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _load(self, session: AsyncSession, appointment_id: int) -> Appointment:
        appointment = (
            await session.scalars(
                select(Appointment)
                .options(selectinload(Appointment.client), selectinload(Appointment.therapist))
                .where(Appointment.id == appointment_id)
            )
        ).first()
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment

    @staticmethod
    def _check_version(appointment: Appointment, expected_version: Optional[int]) -> None:
        if expected_version is not None and expected_version != appointment.version:
            raise ConcurrentModificationError(
                f"Appointment {appointment.id} is at version {appointment.version}, "
                f"caller expected {expected_version}"
            )

    @staticmethod
    def _check_control(appointment: Appointment, source: TransitionSource) -> None:
        if source is TransitionSource.ADMIN and not appointment.human_control_enabled:
            raise HumanControlError("Enable human control before editing this appointment")
        if source is TransitionSource.AGENT and appointment.human_control_enabled:
            raise HumanControlError("The agent cannot change an appointment under human control")

    def _conversation_values(
        self,
        appointment: Appointment,
        *,
        status: str,
        now: datetime,
        audit: tuple,
        last_action: Optional[str] = None,
    ) -> Dict[str, Any]:
        source, actor_id, message = audit
        role = "admin" if source is TransitionSource.ADMIN else "system"
        state = conversation_state.load_state(appointment.conversation_state)
        state = conversation_state.append_message(
            state,
            role=role,
            content=conversation_state.audit_line(source.value, actor_id, message),
            timestamp=now,
        )
        state = conversation_state.recompute(
            state,
            status=status,
            now=now,
            therapist_email=appointment.therapist.email,
            last_action=last_action,
        )
        conversation_state.enforce_size(state)
        return {
            "conversation_state": state,
            "is_stale": False,
            **conversation_state.health_fields(state),
        }

    @staticmethod
    async def _versioned_write(
        session: AsyncSession,
        appointment_id: int,
        loaded_version: int,
        values: Dict[str, Any],
        now: datetime,
    ) -> int:
        new_version = loaded_version + 1
        result = await session.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.version == loaded_version)
            .values(**values, version=new_version, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Appointment {appointment_id} changed since version {loaded_version}; re-read and retry"
            )
        return new_version

    @staticmethod
    def _context(appointment: Appointment, **kwargs: Any) -> TransitionContext:
        source = kwargs.pop("source")
        return TransitionContext(
            appointment_id=appointment.id,
            source=source.value,
            tracking_code=appointment.tracking_code,
            client_email=appointment.client.email,
            client_name=appointment.client.name,
            therapist_email=appointment.therapist.email,
            therapist_name=appointment.therapist.name,
            **kwargs,
        )

    def _after_commit(
        self,
        effect_ids,
        appointment_id: int,
        previous: str,
        new: str,
        source: TransitionSource,
        tracking_code: Optional[str],
    ) -> None:
        self._dispatcher.schedule(effect_ids)
        self._events.publish(
            StatusChangedEvent(
                appointment_id=appointment_id,
                previous_status=previous,
                new_status=new,
                source=source.value,
                tracking_code=tracking_code,
            )
        )
