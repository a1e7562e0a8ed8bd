"""Therapist capacity and freeze state."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.models import Appointment, Therapist
from booking_engine.models.appointment import ACTIVE_STATUSES

LOGGER = logging.getLogger(__name__)

BOOKED_STATUSES = ("confirmed",)


class TherapistBookingStatus:
    """Keeps the denormalized capacity columns on ``Therapist`` in step.

    A therapist stops accepting new requests once the number of active
    negotiations reaches the limit (the therapist is then "frozen"), or while
    they hold a confirmed booking.
    """

    def __init__(self, *, max_active_requests: int = 1) -> None:
        self.max_active_requests = max(1, max_active_requests)

    def can_accept(self, therapist: Therapist) -> Tuple[bool, Optional[str]]:
        if therapist.has_confirmed_booking:
            return False, "has confirmed booking"
        if therapist.active_request_count >= self.max_active_requests:
            return False, "frozen with active requests"
        return True, None

    def record_request(self, therapist: Therapist, now: datetime) -> None:
        therapist.active_request_count += 1
        if therapist.active_request_count >= self.max_active_requests and therapist.frozen_at is None:
            therapist.frozen_at = now
            LOGGER.info("Therapist %s frozen at %s", therapist.public_id, now.isoformat())

    async def recalculate(self, session: AsyncSession, therapist_id: int, now: datetime) -> Therapist:
        """Rebuild the capacity columns from the therapist's appointments."""

        therapist = await session.get(Therapist, therapist_id)
        if therapist is None:
            raise LookupError(f"Therapist {therapist_id} does not exist")
        active = await session.scalar(
            select(func.count(Appointment.id)).where(
                Appointment.therapist_id == therapist_id,
                Appointment.status.in_(ACTIVE_STATUSES),
            )
        )
        booked = await session.scalar(
            select(func.count(Appointment.id)).where(
                Appointment.therapist_id == therapist_id,
                Appointment.status.in_(BOOKED_STATUSES),
            )
        )
        therapist.active_request_count = int(active or 0)
        therapist.has_confirmed_booking = bool(booked)
        if therapist.active_request_count >= self.max_active_requests:
            therapist.frozen_at = therapist.frozen_at or now
        else:
            therapist.frozen_at = None
        await session.flush()
        return therapist
