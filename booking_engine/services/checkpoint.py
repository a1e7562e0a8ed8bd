"""Coarse negotiation checkpoints derived from status, facts and transcript size."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel

from booking_engine.models.base import as_utc
from booking_engine.services.facts import ConversationFacts

LOGGER = logging.getLogger(__name__)

RECOVERY_THRESHOLD_HOURS = 48


class ConversationStage(str, Enum):
    INITIAL_CONTACT = "initial_contact"
    AWAITING_THERAPIST_AVAILABILITY = "awaiting_therapist_availability"
    AWAITING_USER_SLOT_SELECTION = "awaiting_user_slot_selection"
    AWAITING_THERAPIST_CONFIRMATION = "awaiting_therapist_confirmation"
    AWAITING_MEETING_LINK = "awaiting_meeting_link"
    CONFIRMED = "confirmed"
    RESCHEDULING = "rescheduling"
    CANCELLED = "cancelled"
    STALLED = "stalled"


# Progress indicator only; never consulted for behaviour.
STAGE_COMPLETION_PERCENTAGE: Dict[ConversationStage, int] = {
    ConversationStage.INITIAL_CONTACT: 10,
    ConversationStage.AWAITING_THERAPIST_AVAILABILITY: 20,
    ConversationStage.AWAITING_USER_SLOT_SELECTION: 40,
    ConversationStage.AWAITING_THERAPIST_CONFIRMATION: 60,
    ConversationStage.AWAITING_MEETING_LINK: 80,
    ConversationStage.CONFIRMED: 100,
    ConversationStage.RESCHEDULING: 50,
    ConversationStage.CANCELLED: 0,
    ConversationStage.STALLED: 0,
}

STAGE_DESCRIPTIONS: Dict[ConversationStage, str] = {
    ConversationStage.INITIAL_CONTACT: "Request received, therapist not yet contacted",
    ConversationStage.AWAITING_THERAPIST_AVAILABILITY: "Waiting for the therapist to share availability",
    ConversationStage.AWAITING_USER_SLOT_SELECTION: "Waiting for the client to pick a slot",
    ConversationStage.AWAITING_THERAPIST_CONFIRMATION: "Waiting for the therapist to confirm the chosen slot",
    ConversationStage.AWAITING_MEETING_LINK: "Slot agreed, meeting link not yet shared",
    ConversationStage.CONFIRMED: "Session confirmed",
    ConversationStage.RESCHEDULING: "Session is being rescheduled",
    ConversationStage.CANCELLED: "Appointment cancelled",
    ConversationStage.STALLED: "No progress for an extended period",
}

PENDING_ACTIONS: Dict[ConversationStage, Optional[str]] = {
    ConversationStage.INITIAL_CONTACT: "Send the initial email to the therapist",
    ConversationStage.AWAITING_THERAPIST_AVAILABILITY: "Follow up with the therapist for availability",
    ConversationStage.AWAITING_USER_SLOT_SELECTION: "Ask the client to choose one of the proposed times",
    ConversationStage.AWAITING_THERAPIST_CONFIRMATION: "Ask the therapist to confirm the selected time",
    ConversationStage.AWAITING_MEETING_LINK: "Share the meeting link with both parties",
    ConversationStage.CONFIRMED: None,
    ConversationStage.RESCHEDULING: "Collect new availability from the therapist",
    ConversationStage.CANCELLED: None,
    ConversationStage.STALLED: "Review the conversation and contact the parties manually",
}

ACTION_STAGE_MAP: Dict[str, ConversationStage] = {
    "initial_email_sent": ConversationStage.AWAITING_THERAPIST_AVAILABILITY,
    "therapist_availability_received": ConversationStage.AWAITING_USER_SLOT_SELECTION,
    "availability_sent_to_client": ConversationStage.AWAITING_USER_SLOT_SELECTION,
    "client_slot_selected": ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
    "slot_sent_to_therapist": ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
    "therapist_confirmed": ConversationStage.AWAITING_MEETING_LINK,
    "meeting_link_sent": ConversationStage.CONFIRMED,
    "confirmation_emails_sent": ConversationStage.CONFIRMED,
    "reschedule_requested": ConversationStage.RESCHEDULING,
    "reschedule_confirmed": ConversationStage.CONFIRMED,
    "cancellation_processed": ConversationStage.CANCELLED,
    "marked_stalled": ConversationStage.STALLED,
}

_ANY: FrozenSet[ConversationStage] = frozenset(ConversationStage)

VALID_STAGE_TRANSITIONS: Dict[ConversationStage, FrozenSet[ConversationStage]] = {
    ConversationStage.INITIAL_CONTACT: frozenset(
        {
            ConversationStage.AWAITING_THERAPIST_AVAILABILITY,
            ConversationStage.AWAITING_USER_SLOT_SELECTION,
            ConversationStage.CANCELLED,
            ConversationStage.STALLED,
        }
    ),
    ConversationStage.AWAITING_THERAPIST_AVAILABILITY: frozenset(
        {
            ConversationStage.AWAITING_USER_SLOT_SELECTION,
            ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
            ConversationStage.CANCELLED,
            ConversationStage.STALLED,
        }
    ),
    ConversationStage.AWAITING_USER_SLOT_SELECTION: frozenset(
        {
            ConversationStage.AWAITING_THERAPIST_AVAILABILITY,
            ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
            ConversationStage.CONFIRMED,
            ConversationStage.CANCELLED,
            ConversationStage.STALLED,
        }
    ),
    ConversationStage.AWAITING_THERAPIST_CONFIRMATION: frozenset(
        {
            ConversationStage.AWAITING_USER_SLOT_SELECTION,
            ConversationStage.AWAITING_MEETING_LINK,
            ConversationStage.CONFIRMED,
            ConversationStage.CANCELLED,
            ConversationStage.STALLED,
        }
    ),
    ConversationStage.AWAITING_MEETING_LINK: frozenset(
        {ConversationStage.CONFIRMED, ConversationStage.CANCELLED, ConversationStage.STALLED}
    ),
    ConversationStage.CONFIRMED: frozenset(
        {ConversationStage.RESCHEDULING, ConversationStage.CANCELLED}
    ),
    ConversationStage.RESCHEDULING: frozenset(
        {
            ConversationStage.AWAITING_USER_SLOT_SELECTION,
            ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
            ConversationStage.CONFIRMED,
            ConversationStage.CANCELLED,
            ConversationStage.STALLED,
        }
    ),
    ConversationStage.CANCELLED: _ANY,
    ConversationStage.STALLED: _ANY,
}

TERMINAL_STAGES = frozenset({ConversationStage.CONFIRMED, ConversationStage.CANCELLED})
_CONFIRMED_STATUSES = {"confirmed", "session_held", "feedback_requested", "completed"}
_CLOSED_STATUSES = frozenset({"cancelled", "completed"})


class ConversationCheckpoint(BaseModel):
    stage: ConversationStage
    last_action: Optional[str] = None
    pending_action: Optional[str] = None
    updated_at: datetime


def stage_from_action(action: Optional[str]) -> Optional[ConversationStage]:
    if not action:
        return None
    return ACTION_STAGE_MAP.get(action)


def is_valid_stage_transition(current: ConversationStage, target: ConversationStage) -> bool:
    return current == target or target in VALID_STAGE_TRANSITIONS.get(current, frozenset())


def infer_stage(
    status: str,
    facts: ConversationFacts,
    message_count: int,
    *,
    is_stale: bool = False,
) -> ConversationStage:
    """Map appointment status plus transcript evidence onto a stage."""

    if status == "cancelled":
        return ConversationStage.CANCELLED
    if status in _CONFIRMED_STATUSES:
        return ConversationStage.CONFIRMED
    if is_stale:
        return ConversationStage.STALLED
    if status == "pending" or message_count == 0:
        return ConversationStage.INITIAL_CONTACT
    if status == "negotiating":
        if facts.confirmed_time and not facts.meeting_link_shared:
            return ConversationStage.AWAITING_MEETING_LINK
        if facts.selected_time:
            return ConversationStage.AWAITING_THERAPIST_CONFIRMATION
    if facts.therapist_availability_received or facts.proposed_times:
        return ConversationStage.AWAITING_USER_SLOT_SELECTION
    return ConversationStage.AWAITING_THERAPIST_AVAILABILITY


def derive_checkpoint(
    *,
    status: str,
    facts: ConversationFacts,
    message_count: int,
    now: datetime,
    last_action: Optional[str] = None,
    previous: Optional[ConversationCheckpoint] = None,
    is_stale: bool = False,
) -> ConversationCheckpoint:
    """Recompute the checkpoint. An explicit agent action outranks inference."""

    stage = stage_from_action(last_action)
    if stage is None and status == "confirmed" and previous is not None:
        # Rescheduling holds until an action settles the new time.
        if previous.stage is ConversationStage.RESCHEDULING:
            stage = previous.stage
    if stage is None or status in _CLOSED_STATUSES:
        stage = infer_stage(status, facts, message_count, is_stale=is_stale)
    if previous is not None and not is_valid_stage_transition(previous.stage, stage):
        LOGGER.warning(
            "Unexpected checkpoint move %s -> %s (status=%s)",
            previous.stage.value,
            stage.value,
            status,
        )
    return ConversationCheckpoint(
        stage=stage,
        last_action=last_action or (previous.last_action if previous else None),
        pending_action=PENDING_ACTIONS[stage],
        updated_at=now,
    )


def needs_recovery(
    checkpoint: ConversationCheckpoint,
    now: datetime,
    threshold_hours: int = RECOVERY_THRESHOLD_HOURS,
) -> bool:
    if checkpoint.stage in TERMINAL_STAGES:
        return False
    return now - as_utc(checkpoint.updated_at) >= timedelta(hours=threshold_hours)


def mark_stalled(checkpoint: ConversationCheckpoint, now: datetime) -> ConversationCheckpoint:
    return ConversationCheckpoint(
        stage=ConversationStage.STALLED,
        last_action="marked_stalled",
        pending_action=PENDING_ACTIONS[ConversationStage.STALLED],
        updated_at=now,
    )


def checkpoint_summary(checkpoint: ConversationCheckpoint) -> Dict[str, Any]:
    """Admin-facing view of a checkpoint."""

    return {
        "stage": checkpoint.stage.value,
        "description": STAGE_DESCRIPTIONS[checkpoint.stage],
        "completion_percentage": STAGE_COMPLETION_PERCENTAGE[checkpoint.stage],
        "last_action": checkpoint.last_action,
        "pending_action": checkpoint.pending_action,
        "updated_at": checkpoint.updated_at.isoformat(),
    }
