from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from time import monotonic
from typing import Any, TypeVar

from app.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class BreakerStats:
    state: BreakerState
    failures: int
    successes: int
    total_requests: int
    total_failures: int
    total_successes: int
    last_failure_time: float | None
    last_success_time: float | None

    def as_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


class CircuitBreakerError(RuntimeError):
    code = "circuit_open"

    def __init__(self, name: str, state: BreakerState, stats: BreakerStats) -> None:
        super().__init__(f"circuit {name} is {state.value}; dependency unavailable")
        self.name = name
        self.state = state
        self.stats = stats


class CircuitBreaker:
    """Consecutive-failure breaker guarding one external dependency.

    CLOSED opens after ``threshold`` consecutive failures. OPEN rejects without calling through
    until more than ``open_timeout`` seconds have passed since the last failure, then admits the
    next call as a HALF_OPEN trial. Any HALF_OPEN failure reopens. A HALF_OPEN success closes the
    circuit once at least ``reset_timeout`` seconds separate it from the last failure.
    """

    def __init__(
        self,
        name: str,
        *,
        threshold: int = 5,
        open_timeout: float = 60.0,
        reset_timeout: float = 10.0,
        clock: Callable[[], float] = monotonic,
        on_state_change: Callable[[BreakerState, BreakerState], None] | None = None,
    ) -> None:
        self.name = name
        self.threshold = threshold
        self.open_timeout = open_timeout
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._on_state_change = on_state_change
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._successes = 0
        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._last_failure_time: float | None = None
        self._last_success_time: float | None = None

    @property
    def state(self) -> BreakerState:
        return self._state

    def stats(self) -> BreakerStats:
        return BreakerStats(
            state=self._state,
            failures=self._failures,
            successes=self._successes,
            total_requests=self._total_requests,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
        )

    def is_available(self) -> bool:
        return self._state is not BreakerState.OPEN or self._open_timeout_elapsed()

    def reset(self) -> None:
        self._transition(BreakerState.CLOSED)
        self._failures = 0
        self._successes = 0
        self._last_failure_time = None
        self._last_success_time = None

    async def execute(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        self._total_requests += 1
        if self._state is BreakerState.OPEN:
            if not self._open_timeout_elapsed():
                raise CircuitBreakerError(self.name, self._state, self.stats())
            self._transition(BreakerState.HALF_OPEN)

        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _open_timeout_elapsed(self) -> bool:
        return self._clock() - (self._last_failure_time or 0.0) > self.open_timeout

    def _record_success(self) -> None:
        now = self._clock()
        self._failures = 0
        self._successes += 1
        self._total_successes += 1
        self._last_success_time = now
        if self._state is BreakerState.HALF_OPEN and now - (self._last_failure_time or 0.0) >= self.reset_timeout:
            self._transition(BreakerState.CLOSED)

    def _record_failure(self) -> None:
        self._failures += 1
        self._successes = 0
        self._total_failures += 1
        self._last_failure_time = self._clock()
        if self._state is BreakerState.CLOSED and self._failures >= self.threshold:
            self._transition(BreakerState.OPEN)
        elif self._state is BreakerState.HALF_OPEN:
            self._transition(BreakerState.OPEN)

    def _transition(self, new_state: BreakerState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        if new_state is BreakerState.CLOSED:
            self._failures = 0
            self._successes = 0
        log = logger.warning if new_state is BreakerState.OPEN else logger.info
        log("circuit breaker transition name=%s from=%s to=%s", self.name, old_state.value, new_state.value)
        if self._on_state_change is not None:
            self._on_state_change(old_state, new_state)


class BreakerRegistry:
    """One shared breaker per dependency name for the lifetime of the process."""

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = monotonic) -> None:
        self.settings = settings
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                threshold=self.settings.breaker_threshold,
                open_timeout=self.settings.breaker_open_timeout_seconds,
                reset_timeout=self.settings.breaker_reset_timeout_seconds,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> dict[str, dict]:
        return {name: breaker.stats().as_dict() for name, breaker in self._breakers.items()}
