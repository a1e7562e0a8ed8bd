"""Shared fixtures: SQLite database, in-memory Redis and a wired service container."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from booking_engine.models import Appointment, Client, Therapist
from booking_engine.services.circuit_breaker import CircuitBreakerRegistry
from booking_engine.services.container import ServiceContainer, build_container
from booking_engine.services.db import Database
from booking_engine.services.events import StatusEventBus
from booking_engine.services.side_effects import (
    CLIENT_EMAIL,
    NOTION_SYNC,
    SLACK_NOTIFICATION,
    THERAPIST_EMAIL,
    SideEffectDispatcher,
)
from booking_engine.utils.config import Settings


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 3, 3, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """Sender double that records payloads and answers from a script."""

    def __init__(self, outcomes: Optional[List[Any]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.payloads: List[Dict[str, Any]] = []

    async def send(self, payload: Dict[str, Any]) -> bool:
        self.payloads.append(payload)
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}",
        redis_url="redis://localhost:6379/15",
        instance_id="test-instance",
        use_stub_integrations=True,
        jobs_enabled=False,
        shutdown_grace_seconds=2.0,
    )


@pytest.fixture
def redis_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
async def redis_client(redis_server: FakeServer) -> AsyncIterator[FakeRedis]:
    client = FakeRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def database(settings: Settings) -> AsyncIterator[Database]:
    db = Database(settings.database_url)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_sender() -> Callable[..., RecordingSender]:
    return RecordingSender


@pytest.fixture
def senders() -> Dict[str, RecordingSender]:
    email = RecordingSender()
    return {
        SLACK_NOTIFICATION: RecordingSender(),
        CLIENT_EMAIL: email,
        THERAPIST_EMAIL: email,
        NOTION_SYNC: RecordingSender(),
    }


@pytest.fixture
async def dispatcher(
    database: Database, senders: Dict[str, RecordingSender]
) -> AsyncIterator[SideEffectDispatcher]:
    dispatcher = SideEffectDispatcher(database, CircuitBreakerRegistry(), senders)
    yield dispatcher
    await dispatcher.drain(5)


@pytest.fixture
def events() -> StatusEventBus:
    return StatusEventBus()


@pytest.fixture
async def container(settings: Settings, redis_server: FakeServer) -> AsyncIterator[ServiceContainer]:
    client = FakeRedis(server=redis_server, decode_responses=True)
    services = build_container(settings, redis_client=client)
    await services.start()
    yield services
    await services.stop()


@pytest.fixture
def make_appointment(database: Database) -> Callable[..., Any]:
    """Insert a client, a therapist and one appointment between them."""

    counter = itertools.count(1)

    async def _make(
        status: str = "pending",
        *,
        human_control: bool = False,
        confirmed_datetime: Optional[str] = None,
        tracking_code: Optional[str] = "",
        created_at: Optional[datetime] = None,
        last_activity_at: Optional[datetime] = None,
        conversation: Optional[Dict[str, Any]] = None,
    ) -> int:
        n = next(counter)
        async with database.session() as session:
            client = Client(public_id=f"10000{n:05d}", email=f"client{n}@example.com", name=f"Client {n}")
            therapist = Therapist(
                public_id=f"20000{n:05d}",
                email=f"therapist{n}@example.com",
                name=f"Dr Therapist {n}",
                active_request_count=0,
                has_confirmed_booking=False,
            )
            session.add_all([client, therapist])
            await session.flush()
            created = created_at or datetime.now(timezone.utc)
            appointment = Appointment(
                client_id=client.id,
                therapist_id=therapist.id,
                status=status,
                tracking_code=f"SPL-{n:04d}-{n:04d}-1" if tracking_code == "" else tracking_code,
                human_control_enabled=human_control,
                human_control_taken_by="admin-1" if human_control else None,
                confirmed_datetime_raw=confirmed_datetime,
                conversation_state=conversation,
                last_activity_at=last_activity_at,
                created_at=created,
                updated_at=created,
                version=1,
            )
            session.add(appointment)
            await session.flush()
            return appointment.id

    return _make
