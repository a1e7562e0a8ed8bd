"""Tests for the periodic maintenance jobs and their scheduler."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from booking_engine.errors import LockNotAcquiredError, SideEffectDeliveryError
from booking_engine.models import Appointment, SideEffect
from booking_engine.services.circuit_breaker import CircuitBreakerRegistry
from booking_engine.services.jobs import WEEKLY_MAILING_LAST_SEND_KEY, JobScheduler, MaintenanceJobs
from booking_engine.services.locked_task import STALE_CHECK_LOCK, LockContext, LockPreset
from booking_engine.services.locks import DistributedLock


pytestmark = pytest.mark.anyio


@pytest.fixture
def slack(make_sender):
    return make_sender()


@pytest.fixture
def jobs(database, dispatcher, redis_client, slack, clock):
    return MaintenanceJobs(
        database,
        dispatcher=dispatcher,
        registry=CircuitBreakerRegistry(),
        redis_client=redis_client,
        slack=slack,
        stale_threshold_hours=48,
        retention_days=30,
        mailing_weekday=0,
        clock=clock,
    )


def _ctx() -> LockContext:
    return LockContext("booking:lock:test", "node-1:token")


async def test_stale_scan_flags_only_idle_active_conversations(jobs, database, make_appointment, clock) -> None:
    idle = await make_appointment("negotiating", last_activity_at=clock() - timedelta(hours=72))
    fresh = await make_appointment("negotiating", last_activity_at=clock() - timedelta(hours=2))
    never_touched = await make_appointment("pending", created_at=clock() - timedelta(days=5))
    booked = await make_appointment("confirmed", last_activity_at=clock() - timedelta(hours=72))

    flagged = await jobs.scan_stale_conversations(_ctx())

    assert flagged == 2
    async with database.session() as session:
        rows = {
            row.id: row
            for row in (await session.scalars(select(Appointment))).all()
        }
    assert rows[idle].is_stale and rows[idle].checkpoint_stage == "stalled"
    assert rows[idle].version == 2
    assert rows[idle].conversation_state["checkpoint"]["last_action"] == "marked_stalled"
    assert rows[never_touched].is_stale
    assert not rows[fresh].is_stale
    assert not rows[booked].is_stale

    # Already-flagged rows are not touched again.
    assert await jobs.scan_stale_conversations(_ctx()) == 0


async def test_stale_scan_stops_when_lock_lost(jobs, make_appointment, clock) -> None:
    await make_appointment("negotiating", last_activity_at=clock() - timedelta(hours=72))
    ctx = _ctx()
    ctx.mark_lost()

    assert await jobs.scan_stale_conversations(ctx) == 0


async def test_retention_removes_only_old_finished_rows(jobs, database, make_appointment, clock) -> None:
    appointment_id = await make_appointment("completed")
    old = clock() - timedelta(days=40)
    async with database.session() as session:
        session.add_all(
            [
                SideEffect(appointment_id=appointment_id, idempotency_key="a", transition="x@v1",
                           effect_type="slack_notification", payload={}, status="completed", created_at=old),
                SideEffect(appointment_id=appointment_id, idempotency_key="b", transition="x@v1",
                           effect_type="slack_notification", payload={}, status="abandoned", created_at=old),
                SideEffect(appointment_id=appointment_id, idempotency_key="c", transition="x@v1",
                           effect_type="slack_notification", payload={}, status="pending", created_at=old),
                SideEffect(appointment_id=appointment_id, idempotency_key="d", transition="x@v1",
                           effect_type="slack_notification", payload={}, status="completed", created_at=clock()),
            ]
        )

    removed = await jobs.cleanup_retention(_ctx())

    assert removed == 2
    async with database.session() as session:
        keys = sorted((await session.scalars(select(SideEffect.idempotency_key))).all())
        appointments = await session.scalar(select(func.count(Appointment.id)))
    assert keys == ["c", "d"]
    assert appointments == 1


async def test_weekly_summary_sends_once_per_day(jobs, make_appointment, slack, redis_client, clock) -> None:
    await make_appointment("pending")
    await make_appointment("confirmed")

    counts = await jobs.send_weekly_summary(_ctx())

    assert counts == {"pending": 1, "confirmed": 1}
    assert "Weekly appointment summary (2025-03-03)" in slack.payloads[0]["text"]
    assert await redis_client.get(WEEKLY_MAILING_LAST_SEND_KEY) == "2025-03-03"

    assert await jobs.send_weekly_summary(_ctx()) is None
    assert len(slack.payloads) == 1

    clock.advance(days=1)
    assert await jobs.send_weekly_summary(_ctx()) is None


async def test_weekly_summary_rejection_is_retried_next_run(jobs, slack, redis_client) -> None:
    slack.outcomes = [False]

    with pytest.raises(SideEffectDeliveryError):
        await jobs.send_weekly_summary(_ctx())

    assert await redis_client.get(WEEKLY_MAILING_LAST_SEND_KEY) is None
    assert await jobs.send_weekly_summary(_ctx()) == {}


async def test_trigger_refuses_when_another_run_holds_lock(redis_client) -> None:
    scheduler = JobScheduler(DistributedLock(redis_client), instance_id="node-1")

    async def handler(ctx):
        return "done"

    scheduler.register(STALE_CHECK_LOCK, handler, interval_seconds=60)

    assert await scheduler.trigger("stale-check") == "done"
    await redis_client.set("booking:lock:stale-check", "node-2:token", ex=60)
    with pytest.raises(LockNotAcquiredError):
        await scheduler.trigger("stale-check")
    with pytest.raises(KeyError):
        await scheduler.trigger("no-such-job")


async def test_scheduler_loops_until_stopped(redis_client) -> None:
    scheduler = JobScheduler(DistributedLock(redis_client), instance_id="node-1")
    runs = []

    async def handler(ctx):
        runs.append(ctx.owner_token)
        if len(runs) == 1:
            raise RuntimeError("first run fails")

    scheduler.register(LockPreset("tick", 5, 1.0), handler, interval_seconds=0.05)
    scheduler.start()
    await asyncio.sleep(0.3)
    await scheduler.stop(1)

    assert len(runs) >= 2
    assert scheduler.job_names == ["tick"]
    assert await redis_client.exists("booking:lock:tick") == 0
