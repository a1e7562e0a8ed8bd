"""Duplicate-request suppression for public creation endpoints."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.models import Appointment
from booking_engine.models.base import utcnow

LOGGER = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 300
KEY_LENGTH = 32
ATTEMPT_KEY_PREFIX = "booking:attempts:"


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:KEY_LENGTH]


class IdempotencyGuard:
    """Collapses retries of the same creation request inside a time window.

    The derived key covers ``(requester, counterparty, time bucket)``. It is a
    fast pre-check only; the creation transaction still performs the
    authoritative duplicate check for different concurrent requests.
    """

    def __init__(
        self,
        *,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def derive_key(self, requester: str, counterparty: str, now: Optional[datetime] = None) -> str:
        moment = now or self._clock()
        window_ms = self.window_seconds * 1000
        bucket = int(moment.timestamp() * 1000) // window_ms
        return _digest(f"{requester.strip().lower()}:{counterparty.strip().lower()}:{bucket}")

    def attempt_key(self, requester: str) -> str:
        return f"{ATTEMPT_KEY_PREFIX}{_digest(requester.strip().lower())}"

    async def find_recent(self, session: AsyncSession, key: str) -> Optional[Appointment]:
        """Return the appointment created with ``key`` inside the window, if any."""

        cutoff = self._clock() - timedelta(seconds=self.window_seconds)
        stmt = (
            select(Appointment)
            .where(
                Appointment.idempotency_key == key,
                Appointment.created_at >= cutoff,
            )
            .order_by(Appointment.created_at.desc())
            .limit(1)
        )
        existing = (await session.scalars(stmt)).first()
        if existing is not None:
            LOGGER.info("Idempotency key %s matched appointment %s", key, existing.id)
        return existing
