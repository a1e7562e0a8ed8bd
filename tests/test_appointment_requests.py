"""Tests for creating appointment requests."""

import pytest
from sqlalchemy import func, select

from booking_engine.errors import (
    DuplicateRequestError,
    RateLimitExceededError,
    TherapistUnavailableError,
    ValidationError,
)
from booking_engine.models import Appointment, SideEffect, Therapist
from booking_engine.services.appointment_requests import AppointmentRequest, AppointmentRequestService
from booking_engine.services.booking_status import TherapistBookingStatus
from booking_engine.services.idempotency import IdempotencyGuard
from booking_engine.services.lifecycle import AppointmentLifecycle


pytestmark = pytest.mark.anyio


@pytest.fixture
def booking_status():
    return TherapistBookingStatus(max_active_requests=1)


@pytest.fixture
def service(database, dispatcher, events, redis_client, clock, booking_status):
    return AppointmentRequestService(
        database,
        guard=IdempotencyGuard(window_seconds=300, clock=clock),
        booking_status=booking_status,
        dispatcher=dispatcher,
        events=events,
        redis_client=redis_client,
        max_active_threads_per_client=2,
        max_requests_per_window=10,
    )


@pytest.fixture
def lifecycle(database, dispatcher, events, booking_status):
    return AppointmentLifecycle(database, booking_status=booking_status, dispatcher=dispatcher, events=events)


def _request(client="sam@example.com", therapist="dr.lee@example.com", **extra) -> AppointmentRequest:
    return AppointmentRequest(client_email=client, therapist_email=therapist, **extra)


async def _count(database, model) -> int:
    async with database.session() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def test_creates_pending_appointment_with_tracking_code(service, database, senders, dispatcher) -> None:
    result = await service.create(
        _request(client="Sam@Example.com", client_name="Sam", message="Hi, I'd like a session next week")
    )
    await dispatcher.drain(5)

    assert result.status == "pending"
    assert result.deduplicated is False
    assert result.tracking_code.startswith("SPL-")
    assert result.tracking_code.endswith("-1")

    async with database.session() as session:
        row = await session.get(Appointment, result.appointment_id)
        therapist = await session.get(Therapist, row.therapist_id)
        effects = (await session.scalars(select(SideEffect))).all()
    assert row.conversation_state["messages"][0]["sender"] == "sam@example.com"
    assert row.checkpoint_stage == "initial_contact"
    assert therapist.active_request_count == 1
    assert therapist.frozen_at is not None
    assert {e.effect_type for e in effects} == {"slack_notification", "notion_user_sync"}
    assert all(e.status == "completed" for e in effects)
    assert senders["slack_notification"].payloads[0]["text"].startswith("New appointment request SPL-")


async def test_retry_within_window_returns_existing(service, database, clock) -> None:
    first = await service.create(_request())
    clock.advance(seconds=60)

    with pytest.raises(DuplicateRequestError) as excinfo:
        await service.create(_request(client="SAM@example.com"))

    assert excinfo.value.appointment_id == first.appointment_id
    assert excinfo.value.reason == "idempotency_key"
    assert excinfo.value.tracking_code == first.tracking_code
    assert await _count(database, Appointment) == 1


async def test_active_pair_is_deduplicated_after_window(service, database, clock) -> None:
    first = await service.create(_request())
    clock.advance(seconds=400)

    with pytest.raises(DuplicateRequestError) as excinfo:
        await service.create(_request())

    assert excinfo.value.reason == "active_request"
    assert excinfo.value.appointment_id == first.appointment_id
    assert await _count(database, Appointment) == 1


async def test_new_request_allowed_after_cancel_and_window(service, lifecycle, database, clock) -> None:
    first = await service.create(_request())
    await lifecycle.update_status(first.appointment_id, "cancelled", source="system", reason="client changed mind")
    clock.advance(seconds=301)

    second = await service.create(_request())

    assert second.appointment_id != first.appointment_id
    assert second.tracking_code.endswith("-2")
    assert second.tracking_code.rsplit("-", 1)[0] == first.tracking_code.rsplit("-", 1)[0]


async def test_frozen_therapist_rejects_other_clients(service, lifecycle) -> None:
    first = await service.create(_request(client="a@example.com"))

    with pytest.raises(TherapistUnavailableError):
        await service.create(_request(client="b@example.com"))

    await lifecycle.update_status(first.appointment_id, "cancelled", source="system")
    result = await service.create(_request(client="b@example.com"))
    assert result.status == "pending"


async def test_client_active_thread_limit(service) -> None:
    await service.create(_request(therapist="one@example.com"))
    await service.create(_request(therapist="two@example.com"))

    with pytest.raises(RateLimitExceededError):
        await service.create(_request(therapist="three@example.com"))


async def test_attempt_rate_limit(service) -> None:
    service.max_requests_per_window = 2
    await service.create(_request())
    with pytest.raises(DuplicateRequestError):
        await service.create(_request())

    with pytest.raises(RateLimitExceededError):
        await service.create(_request())


async def test_rejects_self_booking(service) -> None:
    with pytest.raises(ValidationError):
        await service.create(_request(client="x@example.com", therapist="X@example.com"))


def test_request_model_normalises_emails() -> None:
    request = _request(client="  Sam@Example.COM ")

    assert request.client_email == "sam@example.com"
    with pytest.raises(ValueError):
        _request(client="not-an-email")
