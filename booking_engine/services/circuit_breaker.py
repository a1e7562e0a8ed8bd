"""Per-dependency circuit breakers.

Each process keeps its own view of a dependency's health; breaker state is
never shared between instances.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pydantic import BaseModel

from booking_engine.errors import CircuitOpenError
from booking_engine.utils.config import Settings

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

GMAIL_API = "gmail-api"
LLM_API = "llm-api"
NOTION_API = "notion-api"
SLACK_API = "slack-api"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerStats(BaseModel):
    """Diagnostic snapshot exposed on health endpoints."""

    name: str
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: Optional[float] = None
    last_success_at: Optional[float] = None
    total_requests: int
    rejected_requests: int
    half_open_probe_in_flight: bool
    failure_threshold: int
    reset_timeout: float
    success_threshold: int


class CircuitBreaker:
    """Failure isolation for a single external dependency."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout = reset_timeout
        self.success_threshold = max(1, success_threshold)
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_failure_at: Optional[float] = None
        self._last_success_at: Optional[float] = None
        self._total_requests = 0
        self._rejected_requests = 0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Invoke ``fn`` through the breaker.

        Raises ``CircuitOpenError`` without calling ``fn`` while the circuit is
        open, or while another HALF_OPEN probe is still outstanding.
        """

        self._total_requests += 1
        is_probe = self._admit()
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._record_failure(is_probe)
            raise
        finally:
            if is_probe:
                self._probe_in_flight = False
        self._record_success(is_probe)
        return result

    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            consecutive_successes=self._consecutive_successes,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
            total_requests=self._total_requests,
            rejected_requests=self._rejected_requests,
            half_open_probe_in_flight=self._probe_in_flight,
            failure_threshold=self.failure_threshold,
            reset_timeout=self.reset_timeout,
            success_threshold=self.success_threshold,
        )

    def reset(self) -> None:
        self._transition(CircuitState.CLOSED)
        self._last_failure_at = None
        self._probe_in_flight = False

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def _admit(self) -> bool:
        """Return True when the admitted call is the HALF_OPEN probe."""

        if self._state is CircuitState.OPEN:
            elapsed = self._clock() - (self._last_failure_at or 0.0)
            if elapsed < self.reset_timeout:
                self._reject(self.reset_timeout - elapsed)
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self._reject(None)
            self._probe_in_flight = True
            return True
        return False

    def _reject(self, retry_after: Optional[float]) -> None:
        self._rejected_requests += 1
        raise CircuitOpenError(self.name, retry_after)

    def _record_failure(self, is_probe: bool) -> None:
        self._last_failure_at = self._clock()
        self._consecutive_successes = 0
        if is_probe:
            LOGGER.warning("Circuit %s probe failed; reopening", self.name)
            self._transition(CircuitState.OPEN)
            return
        self._consecutive_failures += 1
        if (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            LOGGER.warning(
                "Circuit %s opened after %s consecutive failures",
                self.name,
                self._consecutive_failures,
            )
            self._transition(CircuitState.OPEN)

    def _record_success(self, is_probe: bool) -> None:
        self._last_success_at = self._clock()
        if is_probe:
            self._consecutive_successes += 1
            if self._consecutive_successes >= self.success_threshold:
                LOGGER.info("Circuit %s closed after successful probes", self.name)
                self._transition(CircuitState.CLOSED)
            return
        if self._state is CircuitState.CLOSED:
            self._consecutive_failures = 0

    def _transition(self, state: CircuitState) -> None:
        if state is not self._state:
            LOGGER.info("Circuit %s: %s -> %s", self.name, self._state.value, state.value)
        self._state = state
        if state is CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._consecutive_successes = 0
        elif state is CircuitState.OPEN:
            self._consecutive_successes = 0


class CircuitBreakerRegistry:
    """Holds one breaker per dependency name."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, **options: Any) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            options.setdefault("clock", self._clock)
            breaker = CircuitBreaker(name, **options)
            self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def all_stats(self) -> Dict[str, CircuitBreakerStats]:
        return {name: breaker.stats() for name, breaker in self._breakers.items()}

    def any_open(self) -> bool:
        return any(b.state is CircuitState.OPEN for b in self._breakers.values())

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


def build_registry(settings: Settings, *, clock: Callable[[], float] = time.monotonic) -> CircuitBreakerRegistry:
    """Create the registry with one breaker per outbound dependency."""

    registry = CircuitBreakerRegistry(clock=clock)
    registry.get_or_create(
        GMAIL_API,
        failure_threshold=settings.gmail_breaker_failures,
        reset_timeout=settings.gmail_breaker_reset_seconds,
        success_threshold=settings.gmail_breaker_successes,
    )
    registry.get_or_create(
        LLM_API,
        failure_threshold=settings.llm_breaker_failures,
        reset_timeout=settings.llm_breaker_reset_seconds,
        success_threshold=settings.llm_breaker_successes,
    )
    registry.get_or_create(
        NOTION_API,
        failure_threshold=settings.notion_breaker_failures,
        reset_timeout=settings.notion_breaker_reset_seconds,
        success_threshold=settings.notion_breaker_successes,
    )
    registry.get_or_create(
        SLACK_API,
        failure_threshold=settings.slack_breaker_failures,
        reset_timeout=settings.slack_breaker_reset_seconds,
        success_threshold=settings.slack_breaker_successes,
    )
    return registry
