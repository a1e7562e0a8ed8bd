"""Creation of new appointment requests."""

from __future__ import annotations

import logging
import secrets
from typing import Optional

import redis.asyncio as redis
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_engine.errors import (
    DuplicateRequestError,
    RateLimitExceededError,
    TherapistUnavailableError,
    ValidationError,
)
from booking_engine.models import Appointment, Client, Therapist
from booking_engine.models.appointment import ACTIVE_STATUSES
from booking_engine.services import conversation_state
from booking_engine.services.booking_status import TherapistBookingStatus
from booking_engine.services.cache import incr_with_ttl
from booking_engine.services.db import Database
from booking_engine.services.events import StatusChangedEvent, StatusEventBus
from booking_engine.services.idempotency import IdempotencyGuard
from booking_engine.services.side_effects import (
    SideEffectDispatcher,
    TransitionContext,
    enqueue_effects,
    plan_effects,
)
from booking_engine.services.tracking_code import next_code

LOGGER = logging.getLogger(__name__)

PUBLIC_ID_DIGITS = 10


class AppointmentRequest(BaseModel):
    """Inbound request from the public booking form."""

    client_email: str = Field(min_length=3, max_length=255)
    client_name: Optional[str] = Field(default=None, max_length=255)
    therapist_email: str = Field(min_length=3, max_length=255)
    therapist_name: Optional[str] = Field(default=None, max_length=255)
    message: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=64)

    @field_validator("client_email", "therapist_email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        value = value.strip().lower()
        if "@" not in value:
            raise ValueError("must be an email address")
        return value


class CreationResult(BaseModel):
    appointment_id: int
    tracking_code: Optional[str] = None
    status: str
    deduplicated: bool = False
    version: Optional[int] = None


def _new_public_id() -> str:
    low = 10 ** (PUBLIC_ID_DIGITS - 1)
    return str(low + secrets.randbelow(9 * low))


class AppointmentRequestService:
    """Creates appointments, collapsing duplicates.

    The idempotency key is checked first as a cheap pre-check. Everything
    that must agree with concurrent requests (duplicate detection, therapist
    capacity, tracking-code allocation, the insert and the freeze update)
    happens in one SERIALIZABLE transaction.
    """

    def __init__(
        self,
        db: Database,
        *,
        guard: IdempotencyGuard,
        booking_status: TherapistBookingStatus,
        dispatcher: SideEffectDispatcher,
        events: StatusEventBus,
        redis_client: Optional["redis.Redis"] = None,
        max_active_threads_per_client: int = 2,
        max_requests_per_window: int = 10,
    ) -> None:
        self._db = db
        self._guard = guard
        self._booking_status = booking_status
        self._dispatcher = dispatcher
        self._events = events
        self._redis = redis_client
        self.max_active_threads_per_client = max_active_threads_per_client
        self.max_requests_per_window = max_requests_per_window

    async def create(self, request: AppointmentRequest) -> CreationResult:
        """Create the appointment or raise ``DuplicateRequestError`` naming the prior one."""

        if request.client_email == request.therapist_email:
            raise ValidationError("Client and therapist must be different people")
        await self._check_rate(request.client_email)

        key = request.idempotency_key or self._guard.derive_key(
            request.client_email, request.therapist_email
        )
        async with self._db.session() as session:
            existing = await self._guard.find_recent(session, key)
            if existing is not None:
                raise DuplicateRequestError(
                    existing.id, existing.status, "idempotency_key", existing.tracking_code
                )

        now = self._guard.now()
        async with self._db.serializable() as session:
            client = await self._get_or_create_client(session, request)
            therapist = await self._get_or_create_therapist(session, request)

            duplicate = (
                await session.scalars(
                    select(Appointment)
                    .where(
                        Appointment.client_id == client.id,
                        Appointment.therapist_id == therapist.id,
                        Appointment.status.in_(ACTIVE_STATUSES),
                    )
                    .order_by(Appointment.created_at)
                    .limit(1)
                )
            ).first()
            if duplicate is not None:
                raise DuplicateRequestError(
                    duplicate.id, duplicate.status, "active_request", duplicate.tracking_code
                )

            active_threads = await session.scalar(
                select(func.count(Appointment.id)).where(
                    Appointment.client_id == client.id,
                    Appointment.status.in_(ACTIVE_STATUSES),
                )
            )
            if (active_threads or 0) >= self.max_active_threads_per_client:
                raise RateLimitExceededError(
                    f"Client already has {active_threads} active requests"
                )

            accepted, reason = self._booking_status.can_accept(therapist)
            if not accepted:
                raise TherapistUnavailableError(therapist.public_id, reason or "unavailable")

            tracking_code = await next_code(session, client.public_id, therapist.public_id)

            state = conversation_state.new_state()
            if request.message:
                state = conversation_state.append_message(
                    state,
                    role="client",
                    content=request.message,
                    timestamp=now,
                    sender=request.client_email,
                )
            state = conversation_state.recompute(
                state, status="pending", now=now, therapist_email=therapist.email
            )
            conversation_state.enforce_size(state)

            appointment = Appointment(
                client_id=client.id,
                therapist_id=therapist.id,
                status="pending",
                tracking_code=tracking_code,
                idempotency_key=key,
                conversation_state=state,
                last_activity_at=now,
                created_at=now,
                updated_at=now,
                version=1,
                **conversation_state.health_fields(state),
            )
            session.add(appointment)
            await session.flush()

            self._booking_status.record_request(therapist, now)
            effect_ids = await enqueue_effects(
                session,
                TransitionContext(
                    appointment_id=appointment.id,
                    transition="created",
                    previous_status=None,
                    new_status="pending",
                    source="system",
                    version=1,
                    tracking_code=tracking_code,
                    client_email=client.email,
                    client_name=client.name,
                    therapist_email=therapist.email,
                    therapist_name=therapist.name,
                ),
                plan_effects("created", send_emails=False),
            )
            appointment_id = appointment.id

        LOGGER.info(
            "Created appointment %s (%s) for client %s with therapist %s",
            appointment_id,
            tracking_code,
            client.public_id,
            therapist.public_id,
        )
        self._dispatcher.schedule(effect_ids)
        self._events.publish(
            StatusChangedEvent(
                appointment_id=appointment_id,
                previous_status=None,
                new_status="pending",
                source="system",
                tracking_code=tracking_code,
            )
        )
        return CreationResult(
            appointment_id=appointment_id,
            tracking_code=tracking_code,
            status="pending",
            version=1,
        )

    async def _check_rate(self, client_email: str) -> None:
        if self._redis is None:
            return
        attempts = await incr_with_ttl(
            self._redis, self._guard.attempt_key(client_email), self._guard.window_seconds
        )
        if attempts > self.max_requests_per_window:
            LOGGER.warning("Rate limit hit for %s (%s attempts)", client_email, attempts)
            raise RateLimitExceededError("Too many booking attempts, please wait a few minutes")

    @staticmethod
    async def _get_or_create_client(session: AsyncSession, request: AppointmentRequest) -> Client:
        client = (
            await session.scalars(select(Client).where(Client.email == request.client_email))
        ).first()
        if client is None:
            client = Client(
                public_id=_new_public_id(),
                email=request.client_email,
                name=request.client_name,
            )
            session.add(client)
            await session.flush()
        elif request.client_name and not client.name:
            client.name = request.client_name
        return client

    @staticmethod
    async def _get_or_create_therapist(session: AsyncSession, request: AppointmentRequest) -> Therapist:
        therapist = (
            await session.scalars(select(Therapist).where(Therapist.email == request.therapist_email))
        ).first()
        if therapist is None:
            therapist = Therapist(
                public_id=_new_public_id(),
                email=request.therapist_email,
                name=request.therapist_name,
                active_request_count=0,
                has_confirmed_booking=False,
            )
            session.add(therapist)
            await session.flush()
        return therapist
