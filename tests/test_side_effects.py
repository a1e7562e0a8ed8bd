"""Tests for the notification outbox and its dispatcher."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from booking_engine.models import SideEffect
from booking_engine.models.base import utcnow
from booking_engine.services.circuit_breaker import GMAIL_API, SLACK_API, CircuitBreakerRegistry, CircuitState
from booking_engine.services.side_effects import (
    ABANDONED,
    CLIENT_EMAIL,
    COMPLETED,
    EFFECT_BREAKERS,
    FAILED,
    PENDING,
    SLACK_NOTIFICATION,
    THERAPIST_EMAIL,
    SideEffectDispatcher,
    TransitionContext,
    build_payload,
    enqueue_effects,
    plan_effects,
)

pytestmark = pytest.mark.anyio


def _ctx(appointment_id: int, **overrides) -> TransitionContext:
    values = dict(
        appointment_id=appointment_id,
        transition="confirmed",
        previous_status="negotiating",
        new_status="confirmed",
        source="agent",
        version=3,
        tracking_code="SPL-0001-0001-1",
        client_email="client1@example.com",
        therapist_email="therapist1@example.com",
        confirmed_datetime="2025-03-10 14:00",
    )
    values.update(overrides)
    return TransitionContext(**values)


async def _enqueue(database, ctx, effect_types):
    async with database.session() as session:
        return await enqueue_effects(session, ctx, effect_types)


async def _effect(database, effect_id) -> SideEffect:
    async with database.session() as session:
        return await session.get(SideEffect, effect_id)


class LaterClock:
    def __init__(self) -> None:
        self.offset = timedelta()

    def __call__(self):
        return utcnow() + self.offset


def test_plan_effects_respects_email_flag() -> None:
    assert plan_effects("confirmed", send_emails=False) == ["slack_notification", "notion_user_sync"]
    assert "client_email" in plan_effects("confirmed", send_emails=True)
    assert plan_effects("contacted", send_emails=True) == []


def test_email_payload_carries_tracking_code() -> None:
    payload = build_payload(CLIENT_EMAIL, _ctx(1))

    assert payload["to"] == "client1@example.com"
    assert payload["subject"] == "[SPL-0001-0001-1] Your therapy session is confirmed"
    assert payload["template"] == "confirmed_client"


async def test_enqueue_is_idempotent_per_transition_version(database, make_appointment) -> None:
    appointment_id = await make_appointment("confirmed")
    ctx = _ctx(appointment_id)

    first = await _enqueue(database, ctx, [SLACK_NOTIFICATION, CLIENT_EMAIL])
    again = await _enqueue(database, ctx, [SLACK_NOTIFICATION, CLIENT_EMAIL])
    later = await _enqueue(database, _ctx(appointment_id, version=5), [SLACK_NOTIFICATION])

    assert len(first) == 2
    assert again == []
    assert len(later) == 1


async def test_successful_delivery_marks_completed(database, make_appointment, dispatcher, senders) -> None:
    appointment_id = await make_appointment("confirmed")
    (effect_id,) = await _enqueue(database, _ctx(appointment_id), [SLACK_NOTIFICATION])

    status = await dispatcher.process(effect_id)

    effect = await _effect(database, effect_id)
    assert status == COMPLETED
    assert effect.attempts == 1
    assert effect.completed_at is not None
    assert senders[SLACK_NOTIFICATION].payloads[0]["text"].startswith("Appointment SPL-0001-0001-1")
    # Finished rows are not delivered twice.
    assert await dispatcher.process(effect_id) == COMPLETED
    assert len(senders[SLACK_NOTIFICATION].payloads) == 1


async def test_failure_is_recorded_then_abandoned(database, make_appointment, make_sender) -> None:
    appointment_id = await make_appointment("confirmed")
    sender = make_sender([False, ConnectionError("smtp down"), False])
    dispatcher = SideEffectDispatcher(
        database,
        CircuitBreakerRegistry(),
        {CLIENT_EMAIL: sender},
        max_attempts=3,
    )
    (effect_id,) = await _enqueue(database, _ctx(appointment_id), [CLIENT_EMAIL])

    assert await dispatcher.process(effect_id) == FAILED
    assert await dispatcher.process(effect_id) == FAILED
    effect = await _effect(database, effect_id)
    assert effect.last_error == "smtp down"
    assert await dispatcher.process(effect_id) == ABANDONED
    assert await dispatcher.pending_count() == 0


async def test_open_circuit_defers_without_counting_attempt(database, make_appointment, make_sender) -> None:
    appointment_id = await make_appointment("confirmed")
    registry = CircuitBreakerRegistry()
    breaker = registry.get_or_create(GMAIL_API, failure_threshold=1, reset_timeout=300)
    sender = make_sender([False])
    dispatcher = SideEffectDispatcher(database, registry, {CLIENT_EMAIL: sender, THERAPIST_EMAIL: sender})
    first, second = await _enqueue(database, _ctx(appointment_id), [CLIENT_EMAIL, THERAPIST_EMAIL])

    assert await dispatcher.process(first) == FAILED
    assert breaker.state is CircuitState.OPEN
    assert await dispatcher.process(second) == PENDING
    effect = await _effect(database, second)
    assert effect.attempts == 0
    assert len(sender.payloads) == 1


async def test_retry_pending_picks_up_due_rows(database, make_appointment, make_sender) -> None:
    """Only rows older than the retry interval are retried."""

    appointment_id = await make_appointment("confirmed")
    clock = LaterClock()
    sender = make_sender()
    dispatcher = SideEffectDispatcher(
        database,
        CircuitBreakerRegistry(),
        {SLACK_NOTIFICATION: sender},
        min_retry_interval_seconds=60,
        clock=clock,
    )
    (effect_id,) = await _enqueue(database, _ctx(appointment_id), [SLACK_NOTIFICATION])

    assert await dispatcher.retry_pending() == 0

    clock.offset = timedelta(minutes=5)
    assert await dispatcher.retry_pending() == 1
    assert (await _effect(database, effect_id)).status == COMPLETED


async def test_scheduled_delivery_drains_on_shutdown(database, make_appointment, dispatcher, senders) -> None:
    appointment_id = await make_appointment("confirmed")
    ids = await _enqueue(database, _ctx(appointment_id), [SLACK_NOTIFICATION, CLIENT_EMAIL])

    task = dispatcher.schedule(ids)
    assert task is not None
    assert await dispatcher.drain(5) == 0

    async with database.session() as session:
        statuses = (await session.scalars(select(SideEffect.status))).all()
    assert statuses == [COMPLETED, COMPLETED]
    assert dispatcher.schedule([]) is None


def test_slack_breaker_mapping() -> None:
    assert EFFECT_BREAKERS[SLACK_NOTIFICATION] == SLACK_API
