"""Tests for the per-dependency circuit breaker."""

import asyncio

import pytest

from booking_engine.errors import CircuitOpenError
from booking_engine.services.circuit_breaker import (
    GMAIL_API,
    SLACK_API,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    build_registry,
)
from booking_engine.utils.config import Settings


pytestmark = pytest.mark.anyio


class TickClock:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


async def _ok():
    return "ok"


async def _fail():
    raise ConnectionError("upstream down")


async def _trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(_fail)


async def test_opens_after_consecutive_failures_and_rejects() -> None:
    clock = TickClock()
    breaker = CircuitBreaker("dep", failure_threshold=2, reset_timeout=30, clock=clock)
    calls = 0

    async def counted():
        nonlocal calls
        calls += 1
        return "ok"

    await _trip(breaker, 2)
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(counted)
    assert calls == 0
    assert excinfo.value.retry_after == pytest.approx(30)
    assert breaker.stats().rejected_requests == 1


async def test_success_resets_failure_count_while_closed() -> None:
    breaker = CircuitBreaker("dep", failure_threshold=2, clock=TickClock())

    await _trip(breaker, 1)
    assert await breaker.call(_ok) == "ok"
    await _trip(breaker, 1)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats().consecutive_failures == 1


async def test_half_open_admits_a_single_probe() -> None:
    """While one probe is outstanding every other caller is rejected."""

    clock = TickClock()
    breaker = CircuitBreaker(
        "dep", failure_threshold=2, reset_timeout=30, success_threshold=2, clock=clock
    )
    await _trip(breaker, 2)
    clock.value += 31

    release = asyncio.Event()

    async def slow_probe():
        await release.wait()
        return "probe"

    probe = asyncio.create_task(breaker.call(slow_probe))
    await asyncio.sleep(0)
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.stats().half_open_probe_in_flight is True

    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)

    release.set()
    assert await probe == "probe"
    assert breaker.state is CircuitState.HALF_OPEN

    assert await breaker.call(_ok) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.stats().consecutive_failures == 0


async def test_failed_probe_reopens_with_fresh_timeout() -> None:
    clock = TickClock()
    breaker = CircuitBreaker("dep", failure_threshold=1, reset_timeout=10, clock=clock)
    await _trip(breaker, 1)
    clock.value += 11

    await _trip(breaker, 1)
    assert breaker.state is CircuitState.OPEN

    clock.value += 5
    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)


async def test_reset_closes_circuit() -> None:
    breaker = CircuitBreaker("dep", failure_threshold=1, clock=TickClock())
    await _trip(breaker, 1)

    breaker.reset()

    assert breaker.state is CircuitState.CLOSED
    assert await breaker.call(_ok) == "ok"


async def test_registry_reuses_breakers_and_reports_open() -> None:
    registry = CircuitBreakerRegistry(clock=TickClock())
    slack = registry.get_or_create(SLACK_API, failure_threshold=1)

    assert registry.get_or_create(SLACK_API) is slack
    assert registry.any_open() is False

    await _trip(slack, 1)

    assert registry.any_open() is True
    assert registry.all_stats()[SLACK_API].state is CircuitState.OPEN

    registry.reset_all()
    assert registry.any_open() is False


def test_build_registry_uses_settings() -> None:
    settings = Settings(_env_file=None, gmail_breaker_failures=7, gmail_breaker_reset_seconds=12.5)

    registry = build_registry(settings)
    gmail = registry.get(GMAIL_API)

    assert gmail is not None
    assert gmail.failure_threshold == 7
    assert gmail.reset_timeout == 12.5
    assert set(registry.all_stats()) == {"gmail-api", "llm-api", "notion-api", "slack-api"}
