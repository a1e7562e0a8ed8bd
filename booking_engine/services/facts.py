"""Structured facts extracted from a negotiation transcript."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

MAX_PROPOSED_TIMES = 10
MAX_BLOCKERS = 5

_DAYS = (
    r"monday|tuesday|wednesday|thursday|friday|saturday|sunday"
    r"|mon|tues|tue|wed|thurs|thur|thu|fri|sat|sun"
)
_MONTHS = (
    r"january|february|march|april|may|june|july|august|september|october|november|december"
    r"|jan|feb|mar|apr|jun|jul|aug|sept|sep|oct|nov|dec"
)
_TIME = r"(?:\d{1,2}(?::\d{2})?\s*(?:am|pm)|\d{1,2}:\d{2})\b"
_AT = r"(?:,?\s+(?:at\s+|@\s*)?|\s*@\s*)"

TIME_PATTERNS = (
    # Monday at 10am / Tue 14:30
    re.compile(rf"\b(?:{_DAYS})\b{_AT}{_TIME}", re.IGNORECASE),
    # 4th March at 10:00 / March 4 3pm
    re.compile(
        rf"\b(?:\d{{1,2}}(?:st|nd|rd|th)?\s+(?:{_MONTHS})|(?:{_MONTHS})\s+\d{{1,2}}(?:st|nd|rd|th)?)\b{_AT}{_TIME}",
        re.IGNORECASE,
    ),
    # tomorrow at 9am / next friday 2pm
    re.compile(rf"\b(?:today|tomorrow|next\s+(?:{_DAYS}|week))\b{_AT}{_TIME}", re.IGNORECASE),
    # 2025-03-04 10:00
    re.compile(r"\b\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}\b"),
)

SELECTION_PATTERNS = (
    re.compile(
        r"\b(?:i'?ll take|i'?d like|i would like|let'?s (?:go with|do)|works (?:best )?for me"
        r"|i (?:choose|pick|prefer)|please book|book me|i can do)\b",
        re.IGNORECASE,
    ),
)
OPTION_PATTERN = re.compile(r"\b(?:option|slot|number)\s*#?\s*(\d{1,2})\b", re.IGNORECASE)

CONFIRMATION_PATTERNS = (
    re.compile(
        r"\b(?:confirmed|confirm(?:ing)? the|works for me|see you (?:then|on)"
        r"|booked (?:in|it)|looking forward to (?:it|meeting|seeing))\b",
        re.IGNORECASE,
    ),
)

BLOCKER_PATTERNS = (
    re.compile(
        r"\b(?:not available|unavailable|can'?t make|cannot make|fully booked|no availability"
        r"|on (?:holiday|vacation|leave)|away until)\b",
        re.IGNORECASE,
    ),
)

MEETING_LINK_PATTERNS = (
    re.compile(r"https?://(?:[\w-]+\.)?zoom\.us/j/[\w?=&./-]+", re.IGNORECASE),
    re.compile(r"https?://teams\.microsoft\.com/l/meetup-join/[\w%?=&./-]+", re.IGNORECASE),
    re.compile(r"https?://meet\.google\.com/[a-z]{3}-[a-z]{4}-[a-z]{3}", re.IGNORECASE),
)


class ConversationFacts(BaseModel):
    """Last-write-wins facts derived from the transcript."""

    proposed_times: List[str] = Field(default_factory=list)
    selected_time: Optional[str] = None
    confirmed_time: Optional[str] = None
    meeting_link: Optional[str] = None
    meeting_link_shared: bool = False
    therapist_availability_received: bool = False
    blockers: List[str] = Field(default_factory=list)


def _normalize_time(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip(" ,")


def find_times(text: str) -> List[str]:
    """Return time mentions in the order they appear in ``text``."""

    spans = []
    for pattern in TIME_PATTERNS:
        for match in pattern.finditer(text):
            spans.append((match.start(), match.end(), _normalize_time(match.group(0))))
    # Longest match wins where patterns overlap ("next friday 2pm" vs "friday 2pm").
    spans.sort(key=lambda item: (item[0], -item[1]))
    times: List[str] = []
    last_end = -1
    for start, end, value in spans:
        if start < last_end:
            continue
        last_end = end
        if value.lower() not in (t.lower() for t in times):
            times.append(value)
    return times


def _append_unique(values: List[str], value: str, limit: int) -> List[str]:
    kept = [item for item in values if item.lower() != value.lower()]
    kept.append(value)
    return kept[-limit:]


def _matches(patterns: Iterable[re.Pattern], text: str) -> Optional[re.Match]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def _role_of(message: Mapping[str, Any], therapist_email: Optional[str]) -> str:
    role = str(message.get("role") or "").lower()
    if role:
        return role
    sender = str(message.get("sender") or "").lower()
    if therapist_email and sender == therapist_email.lower():
        return "therapist"
    return "client"


def extract_facts(
    messages: Iterable[Mapping[str, Any]],
    *,
    therapist_email: Optional[str] = None,
) -> ConversationFacts:
    """Scan the transcript in order; later messages overwrite earlier facts.

    Selections are only read from client messages and confirmations only
    from therapist messages.
    """

    facts = ConversationFacts()
    for message in messages:
        content = str(message.get("content") or "")
        if not content:
            continue
        role = _role_of(message, therapist_email)
        times = find_times(content)

        if role in {"therapist", "agent"}:
            for value in times:
                facts.proposed_times = _append_unique(facts.proposed_times, value, MAX_PROPOSED_TIMES)
            if role == "therapist" and times:
                facts.therapist_availability_received = True

        if role == "client" and (
            _matches(SELECTION_PATTERNS, content) or OPTION_PATTERN.search(content)
        ):
            selected = _selected_time(content, times, facts.proposed_times)
            if selected:
                facts.selected_time = selected

        if role == "therapist" and _matches(CONFIRMATION_PATTERNS, content):
            confirmed = (times[0] if times else None) or facts.selected_time or (
                facts.proposed_times[-1] if facts.proposed_times else None
            )
            if confirmed:
                facts.confirmed_time = confirmed

        for pattern in MEETING_LINK_PATTERNS:
            link = pattern.search(content)
            if link:
                facts.meeting_link = link.group(0)
                facts.meeting_link_shared = True

        blocker = _matches(BLOCKER_PATTERNS, content)
        if blocker:
            facts.blockers = _append_unique(facts.blockers, blocker.group(0).lower(), MAX_BLOCKERS)
    return facts


def _selected_time(content: str, times: List[str], proposed: List[str]) -> Optional[str]:
    if times:
        return times[0]
    option = OPTION_PATTERN.search(content)
    if option:
        index = int(option.group(1)) - 1
        if 0 <= index < len(proposed):
            return proposed[index]
    return None


def facts_to_dict(facts: ConversationFacts) -> Dict[str, Any]:
    return facts.model_dump(mode="json")
