"""Tracking codes that tie inbound email to an appointment.

Codes look like ``SPL-4821-0937-3``: the last four digits of the client's
public id, the last four of the therapist's, and a per-pair sequence. They go
into email subjects so a reply can be matched before any provider thread id
is known.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking_engine.errors import BookingEngineError
from booking_engine.models import Appointment
from booking_engine.models.base import utcnow
from booking_engine.services.db import Database

LOGGER = logging.getLogger(__name__)

CODE_PREFIX = "SPL"
STRUCTURED_CODE_RE = re.compile(r"\bSPL-(\d{4})-(\d{4})-(\d+)\b", re.IGNORECASE)
LEGACY_CODE_RE = re.compile(r"\bSPL(\d+)\b", re.IGNORECASE)


def _last4(identifier: object) -> str:
    digits = re.sub(r"\D", "", str(identifier or ""))
    if len(digits) < 4:
        return f"{random.randint(1000, 9999)}"
    return digits[-4:]


def build_prefix(requester_id: object, counterparty_id: object) -> str:
    return f"{CODE_PREFIX}-{_last4(requester_id)}-{_last4(counterparty_id)}-"


def parse_sequence(code: str, prefix: str) -> Optional[int]:
    if not code.upper().startswith(prefix.upper()):
        return None
    tail = code[len(prefix):]
    return int(tail) if tail.isdigit() else None


def next_sequence(codes: Iterable[str], prefix: str) -> int:
    sequences = [seq for seq in (parse_sequence(code, prefix) for code in codes) if seq]
    return max(sequences, default=0) + 1


async def next_code(session: AsyncSession, requester_id: object, counterparty_id: object) -> str:
    """Allocate the next code for the pair.

    Must run inside the SERIALIZABLE transaction that inserts the row
    consuming the code; otherwise two callers can read the same maximum.
    """

    prefix = build_prefix(requester_id, counterparty_id)
    stmt = select(Appointment.tracking_code).where(
        Appointment.tracking_code.like(f"{prefix}%")
    )
    existing = [code for code in (await session.scalars(stmt)).all() if code]
    return f"{prefix}{next_sequence(existing, prefix)}"


def extract_tracking_code(text: Optional[str]) -> Optional[str]:
    """Find a tracking code in a subject or body; structured codes win over legacy ones."""

    if not text:
        return None
    match = STRUCTURED_CODE_RE.search(text)
    if match:
        return match.group(0).upper()
    match = LEGACY_CODE_RE.search(text)
    if match:
        return match.group(0).upper()
    return None


def format_for_subject(code: str) -> str:
    return f"[{code}]"


def prepend_to_subject(subject: str, code: Optional[str]) -> str:
    if not code or code.lower() in subject.lower():
        return subject
    return f"{format_for_subject(code)} {subject}".strip()


# ---------------------------------------------------------------------------
# Repair routines
# ---------------------------------------------------------------------------
@dataclass
class RepairReport:
    processed: int = 0
    changed: int = 0
    errors: List[str] = field(default_factory=list)


class TrackingCodeRepair:
    """Idempotent maintenance over stored tracking codes.

    Every row is repaired in its own SERIALIZABLE transaction, so a run
    interrupted halfway can simply be started again.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def backfill_missing(self) -> RepairReport:
        async with self._db.session() as session:
            ids = (
                await session.scalars(
                    select(Appointment.id)
                    .where(Appointment.tracking_code.is_(None))
                    .order_by(Appointment.created_at, Appointment.id)
                )
            ).all()
        return await self._reassign_each(ids, lambda code: code is None)

    async def migrate_legacy(self) -> RepairReport:
        async with self._db.session() as session:
            ids = (
                await session.scalars(
                    select(Appointment.id)
                    .where(
                        Appointment.tracking_code.is_not(None),
                        Appointment.tracking_code.not_like("%-%"),
                    )
                    .order_by(Appointment.created_at, Appointment.id)
                )
            ).all()
        return await self._reassign_each(ids, lambda code: bool(code) and "-" not in code)

    async def fix_duplicates(self) -> RepairReport:
        """Keep the oldest holder of each duplicated code and regenerate the rest.

        Codes are compared case-insensitively; the kept code is normalised to
        upper case.
        """

        report = RepairReport()
        normalized = func.upper(Appointment.tracking_code)
        async with self._db.session() as session:
            duplicated = (
                await session.scalars(
                    select(normalized)
                    .where(Appointment.tracking_code.is_not(None))
                    .group_by(normalized)
                    .having(func.count(Appointment.id) > 1)
                )
            ).all()

        for code in duplicated:
            report.processed += 1
            try:
                async with self._db.serializable() as session:
                    rows = (
                        await session.scalars(
                            select(Appointment)
                            .options(
                                selectinload(Appointment.client),
                                selectinload(Appointment.therapist),
                            )
                            .where(normalized == code)
                            .order_by(Appointment.created_at, Appointment.id)
                        )
                    ).all()
                    if len(rows) < 2:
                        continue
                    keeper, *others = rows
                    for row in others:
                        row.tracking_code = None
                    await session.flush()
                    keeper.tracking_code = keeper.tracking_code.upper()
                    await session.flush()
                    for row in others:
                        row.tracking_code = await next_code(
                            session, row.client.public_id, row.therapist.public_id
                        )
                        self._touch(row)
                        await session.flush()
                        LOGGER.info(
                            "Reassigned duplicate code %s on appointment %s to %s",
                            code,
                            row.id,
                            row.tracking_code,
                        )
                    report.changed += len(others)
            except (BookingEngineError, SQLAlchemyError) as exc:
                LOGGER.error("Failed to repair duplicate code %s: %s", code, exc)
                report.errors.append(f"{code}: {exc}")
        return report

    async def _reassign_each(self, ids: Iterable[int], needs_repair) -> RepairReport:
        report = RepairReport()
        for appointment_id in ids:
            report.processed += 1
            try:
                async with self._db.serializable() as session:
                    row = await session.get(
                        Appointment,
                        appointment_id,
                        options=[
                            selectinload(Appointment.client),
                            selectinload(Appointment.therapist),
                        ],
                    )
                    if row is None or not needs_repair(row.tracking_code):
                        continue
                    previous = row.tracking_code
                    row.tracking_code = await next_code(
                        session, row.client.public_id, row.therapist.public_id
                    )
                    self._touch(row)
                    report.changed += 1
                    LOGGER.info(
                        "Tracking code for appointment %s: %s -> %s",
                        appointment_id,
                        previous,
                        row.tracking_code,
                    )
            except (BookingEngineError, SQLAlchemyError) as exc:
                LOGGER.error("Failed to repair appointment %s: %s", appointment_id, exc)
                report.errors.append(f"{appointment_id}: {exc}")
        return report

    @staticmethod
    def _touch(row: Appointment) -> None:
        row.version += 1
        row.updated_at = utcnow()
