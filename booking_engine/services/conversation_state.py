"""Helpers for the versioned conversation-state document stored on appointments."""

from __future__ import annotations

import json
import logging
from copy import deepcopy
from datetime import datetime
from typing import Any, Dict, List, Optional

from booking_engine.errors import ConversationStateTooLargeError, ValidationError
from booking_engine.services.checkpoint import ConversationCheckpoint, derive_checkpoint
from booking_engine.services.facts import ConversationFacts, extract_facts

LOGGER = logging.getLogger(__name__)

STATE_VERSION = 1
MAX_STATE_BYTES = 500 * 1024
MESSAGE_ROLES = {"client", "therapist", "agent", "admin", "system"}

DEFAULT_STATE: Dict[str, Any] = {
    "version": STATE_VERSION,
    "messages": [],
    "checkpoint": None,
    "facts": {},
}


def new_state() -> Dict[str, Any]:
    """Return an isolated copy of the empty document."""

    return deepcopy(DEFAULT_STATE)


def load_state(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalise a stored document, upgrading unversioned transcripts."""

    if not raw:
        return new_state()
    state = new_state()
    for key in ("messages", "checkpoint", "facts"):
        if raw.get(key) is not None:
            state[key] = deepcopy(raw[key])
    if not isinstance(state["messages"], list):
        raise ValidationError("conversation_state.messages must be a list")
    return state


def append_message(
    state: Dict[str, Any],
    *,
    role: str,
    content: str,
    timestamp: datetime,
    sender: Optional[str] = None,
) -> Dict[str, Any]:
    if role not in MESSAGE_ROLES:
        raise ValidationError(f"Unknown message role: {role}")
    if not content or not content.strip():
        raise ValidationError("Message content must not be empty")
    updated = deepcopy(state)
    entry: Dict[str, Any] = {
        "role": role,
        "content": content.strip(),
        "timestamp": timestamp.isoformat(),
    }
    if sender:
        entry["sender"] = sender
    updated["messages"].append(entry)
    return updated


def audit_line(source: str, actor_id: Optional[str], message: str) -> str:
    """Transcript line recording who changed the appointment."""

    if source == "admin":
        return f"[Admin: {actor_id or 'unknown'}] {message}"
    return f"[System: {source}] {message}"


def current_checkpoint(state: Dict[str, Any]) -> Optional[ConversationCheckpoint]:
    raw = state.get("checkpoint")
    if not raw:
        return None
    return ConversationCheckpoint.model_validate(raw)


def current_facts(state: Dict[str, Any]) -> ConversationFacts:
    return ConversationFacts.model_validate(state.get("facts") or {})


def conversational_messages(state: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Messages exchanged with the parties, excluding audit lines."""

    return [m for m in state["messages"] if m.get("role") not in {"system", "admin"}]


def recompute(
    state: Dict[str, Any],
    *,
    status: str,
    now: datetime,
    therapist_email: Optional[str] = None,
    last_action: Optional[str] = None,
    is_stale: bool = False,
) -> Dict[str, Any]:
    """Refresh the derived ``facts`` and ``checkpoint`` sections."""

    updated = deepcopy(state)
    messages = conversational_messages(updated)
    facts = extract_facts(messages, therapist_email=therapist_email)
    checkpoint = derive_checkpoint(
        status=status,
        facts=facts,
        message_count=len(messages),
        now=now,
        last_action=last_action,
        previous=current_checkpoint(updated),
        is_stale=is_stale,
    )
    updated["version"] = STATE_VERSION
    updated["facts"] = facts.model_dump(mode="json")
    updated["checkpoint"] = checkpoint.model_dump(mode="json")
    return updated


def state_size(state: Dict[str, Any]) -> int:
    return len(json.dumps(state, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def enforce_size(state: Dict[str, Any], limit: int = MAX_STATE_BYTES) -> int:
    """Reject documents over the cap instead of truncating them."""

    size = state_size(state)
    if size > limit:
        LOGGER.warning("Rejecting conversation state of %s bytes (limit %s)", size, limit)
        raise ConversationStateTooLargeError(size, limit)
    return size


def health_fields(state: Dict[str, Any]) -> Dict[str, Any]:
    """Denormalised columns written next to the document."""

    checkpoint = current_checkpoint(state)
    return {
        "checkpoint_stage": checkpoint.stage.value if checkpoint else None,
        "message_count": len(conversational_messages(state)),
    }
