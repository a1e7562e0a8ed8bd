"""Tests for tracking-code allocation, parsing and repair."""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from booking_engine.errors import ConcurrentModificationError
from booking_engine.models import Appointment, Client, Therapist
from booking_engine.services.tracking_code import (
    TrackingCodeRepair,
    build_prefix,
    extract_tracking_code,
    next_code,
    next_sequence,
    prepend_to_subject,
)


def test_prefix_uses_last_four_digits() -> None:
    assert build_prefix("1000004821", "2000000937") == "SPL-4821-0937-"


def test_short_ids_get_random_four_digits() -> None:
    prefix = build_prefix("12", "2000000937")

    assert prefix.startswith("SPL-")
    assert len(prefix.split("-")[1]) == 4
    assert prefix.endswith("-0937-")


def test_next_sequence_ignores_foreign_and_malformed_codes() -> None:
    prefix = "SPL-4821-0937-"
    codes = ["SPL-4821-0937-1", "spl-4821-0937-4", "SPL-4821-0937-x", "SPL-1111-0937-9"]

    assert next_sequence(codes, prefix) == 5
    assert next_sequence([], prefix) == 1


def test_extract_prefers_structured_codes() -> None:
    assert extract_tracking_code("Re: [spl-4821-0937-3] Session times") == "SPL-4821-0937-3"
    assert extract_tracking_code("Re: SPL42 follow up, see SPL-1234-5678-2") == "SPL-1234-5678-2"
    assert extract_tracking_code("Old thread SPL42") == "SPL42"
    assert extract_tracking_code("No code here") is None
    assert extract_tracking_code(None) is None


def test_prepend_to_subject_is_idempotent() -> None:
    subject = prepend_to_subject("Your session is confirmed", "SPL-4821-0937-3")

    assert subject == "[SPL-4821-0937-3] Your session is confirmed"
    assert prepend_to_subject(subject, "SPL-4821-0937-3") == subject
    assert prepend_to_subject("Hello", None) == "Hello"


async def _seed_pair(database):
    async with database.session() as session:
        client = Client(public_id="1000004821", email="c@example.com")
        therapist = Therapist(
            public_id="2000000937",
            email="t@example.com",
            active_request_count=0,
            has_confirmed_booking=False,
        )
        session.add_all([client, therapist])
        await session.flush()
        return client.id, therapist.id


async def _insert(database, client_id, therapist_id, code, status="completed"):
    async with database.session() as session:
        row = Appointment(
            client_id=client_id,
            therapist_id=therapist_id,
            status=status,
            tracking_code=code,
            version=1,
        )
        session.add(row)
        await session.flush()
        return row.id


@pytest.mark.anyio
async def test_next_code_increments_per_pair(database) -> None:
    client_id, therapist_id = await _seed_pair(database)
    await _insert(database, client_id, therapist_id, "SPL-4821-0937-1")
    await _insert(database, client_id, therapist_id, "SPL-4821-0937-2")

    async with database.serializable() as session:
        code = await next_code(session, "1000004821", "2000000937")

    assert code == "SPL-4821-0937-3"


@pytest.mark.anyio
async def test_concurrent_allocation_yields_distinct_codes(database) -> None:
    """Each allocation runs in its own serializable transaction; losers retry."""

    client_id, therapist_id = await _seed_pair(database)

    async def allocate() -> str:
        for _ in range(10):
            try:
                async with database.serializable() as session:
                    code = await next_code(session, "1000004821", "2000000937")
                    session.add(
                        Appointment(
                            client_id=client_id,
                            therapist_id=therapist_id,
                            status="completed",
                            tracking_code=code,
                            version=1,
                        )
                    )
                    await session.flush()
                return code
            except ConcurrentModificationError:
                await asyncio.sleep(0.01)
        raise AssertionError("allocation kept conflicting")

    codes = await asyncio.gather(*(allocate() for _ in range(5)))

    assert len(set(codes)) == 5
    assert sorted(codes) == [f"SPL-4821-0937-{n}" for n in range(1, 6)]


@pytest.mark.anyio
async def test_repairs_missing_legacy_and_duplicate_codes(database) -> None:
    client_id, therapist_id = await _seed_pair(database)
    missing = await _insert(database, client_id, therapist_id, None)
    legacy = await _insert(database, client_id, therapist_id, "SPL77")
    original = await _insert(database, client_id, therapist_id, "spl-4821-0937-1")
    copy = await _insert(database, client_id, therapist_id, "SPL-4821-0937-1")

    repair = TrackingCodeRepair(database)
    legacy_report = await repair.migrate_legacy()
    duplicate_report = await repair.fix_duplicates()
    backfill_report = await repair.backfill_missing()

    assert legacy_report.changed == 1
    assert duplicate_report.changed == 1
    assert backfill_report.changed == 1
    assert not (legacy_report.errors or duplicate_report.errors or backfill_report.errors)

    async with database.session() as session:
        rows = {
            row.id: row
            for row in (
                await session.scalars(
                    select(Appointment).options(selectinload(Appointment.client))
                )
            ).all()
        }
    codes = [row.tracking_code for row in rows.values()]
    assert len(set(codes)) == len(codes)
    assert all(code and code.startswith("SPL-4821-0937-") for code in codes)
    assert rows[original].tracking_code == "SPL-4821-0937-1"
    assert rows[original].version == 1
    assert rows[copy].version == 2
    assert rows[legacy].version == 2
    assert rows[missing].version == 2

    # Second run has nothing left to do.
    assert (await repair.fix_duplicates()).changed == 0
    assert (await repair.backfill_missing()).processed == 0
