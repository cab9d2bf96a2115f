"""
Circuit breaker for outbound payment provider calls.

After `failure_threshold` consecutive failures the breaker opens and rejects calls
without touching the provider. Once `cooldown_seconds` have passed it lets calls
through again (half-open); `success_threshold` successes close it, one failure
re-opens it.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, TypeVar

from .logging_config import get_logger
from .metrics import circuit_breaker_state

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


GAUGE_VALUES = {CircuitState.CLOSED: 0, CircuitState.OPEN: 1, CircuitState.HALF_OPEN: 2}


@dataclass
class BreakerCounters:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    rejections: int = 0
    failure_streak: int = 0
    times_opened: int = 0
    last_failure_at: float | None = None


class CircuitOpenError(Exception):
    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit breaker '{name}' is open; retry in {retry_in:.0f}s")
        self.name = name
        self.retry_in = retry_in


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        success_threshold: int = 1,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.success_threshold = success_threshold
        self.enabled = enabled
        self.counters = BreakerCounters()
        self._clock = clock
        self._lock = Lock()
        self._state = CircuitState.CLOSED
        self._opened_at = 0.0
        self._trial_successes = 0
        self._publish()

    # ---------- state ----------

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._expire_cooldown()
            return self._state

    def _expire_cooldown(self) -> None:
        if self._state is CircuitState.OPEN and self._remaining_cooldown() <= 0:
            self._move_to(CircuitState.HALF_OPEN)

    def _remaining_cooldown(self) -> float:
        return self.cooldown_seconds - (self._clock() - self._opened_at)

    def _move_to(self, state: CircuitState) -> None:
        previous, self._state = self._state, state
        self._trial_successes = 0
        if state is CircuitState.OPEN:
            self._opened_at = self._clock()
            self.counters.times_opened += 1
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_streak=self.counters.failure_streak,
            )
        elif state is CircuitState.CLOSED:
            self.counters.failure_streak = 0
            if previous is not CircuitState.CLOSED:
                logger.info("circuit_breaker_closed", circuit=self.name)
        else:
            logger.info("circuit_breaker_half_open", circuit=self.name)
        self._publish()

    def _publish(self) -> None:
        circuit_breaker_state.labels(circuit_name=self.name).set(GAUGE_VALUES[self._state])

    # ---------- bookkeeping ----------

    def allow(self) -> None:
        """Raise CircuitOpenError when calls are currently being rejected."""
        with self._lock:
            self._expire_cooldown()
            if self._state is CircuitState.OPEN:
                self.counters.rejections += 1
                raise CircuitOpenError(self.name, max(0.0, self._remaining_cooldown()))

    def record_success(self) -> None:
        with self._lock:
            self.counters.calls += 1
            self.counters.successes += 1
            self.counters.failure_streak = 0
            if self._state is CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.success_threshold:
                    self._move_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self.counters.calls += 1
            self.counters.failures += 1
            self.counters.failure_streak += 1
            self.counters.last_failure_at = self._clock()
            if self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED
                and self.counters.failure_streak >= self.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    def reset(self) -> None:
        with self._lock:
            self._move_to(CircuitState.CLOSED)

    # ---------- guarded calls ----------

    async def call_async(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await `func` under the breaker; the lock is never held across the await."""
        if not self.enabled:
            return await func(*args, **kwargs)
        self.allow()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


_registry: dict[str, CircuitBreaker] = {}
_registry_lock = Lock()


def get_circuit_breaker(name: str = "payments") -> CircuitBreaker:
    with _registry_lock:
        breaker = _registry.get(name)
        if breaker is None:
            breaker = _registry[name] = CircuitBreaker(name)
        return breaker


__all__ = [
    "BreakerCounters",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "get_circuit_breaker",
]
