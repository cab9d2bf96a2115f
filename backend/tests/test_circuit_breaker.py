"""Circuit breaker around payment provider calls."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from backend.app.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    get_circuit_breaker,
)
from backend.app.metrics import circuit_breaker_state


class ProviderDown(RuntimeError):
    """Stand-in for a failing provider call."""


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _breaker(clock, **options) -> CircuitBreaker:
    options.setdefault("failure_threshold", 3)
    options.setdefault("cooldown_seconds", 30)
    return CircuitBreaker("payments-test", clock=clock, **options)


def _fail(breaker: CircuitBreaker, times: int = 1) -> None:
    failing = AsyncMock(side_effect=ProviderDown("503"))
    for _ in range(times):
        with pytest.raises(ProviderDown):
            asyncio.run(breaker.call_async(failing))


def _succeed(breaker: CircuitBreaker, result=None):
    return asyncio.run(breaker.call_async(AsyncMock(return_value=result)))


class TestCircuitBreaker:
    def test_defaults(self):
        breaker = CircuitBreaker("defaults")
        assert breaker.failure_threshold == 5
        assert breaker.cooldown_seconds == 60.0
        assert breaker.state is CircuitState.CLOSED

    def test_awaits_and_passes_arguments_through(self, clock):
        breaker = _breaker(clock)
        func = AsyncMock(return_value={"id": "cs_1"})

        result = asyncio.run(breaker.call_async(func, "sessions", timeout=5))

        assert result == {"id": "cs_1"}
        func.assert_awaited_once_with("sessions", timeout=5)
        assert breaker.counters.successes == 1

    def test_opens_after_consecutive_failures(self, clock):
        breaker = _breaker(clock)

        _fail(breaker, 2)
        assert breaker.state is CircuitState.CLOSED
        _fail(breaker)

        assert breaker.state is CircuitState.OPEN
        assert breaker.counters.failure_streak == 3
        assert breaker.counters.times_opened == 1

    def test_success_resets_failure_streak(self, clock):
        breaker = _breaker(clock, failure_threshold=2)
        _fail(breaker)
        _succeed(breaker)
        _fail(breaker)
        assert breaker.state is CircuitState.CLOSED

    def test_open_circuit_rejects_without_awaiting(self, clock):
        breaker = _breaker(clock, failure_threshold=1)
        _fail(breaker)
        clock.advance(10)
        func = AsyncMock()

        with pytest.raises(CircuitOpenError, match="'payments-test' is open") as exc_info:
            asyncio.run(breaker.call_async(func))

        func.assert_not_awaited()
        assert exc_info.value.retry_in == pytest.approx(20)
        assert breaker.counters.rejections == 1

    def test_half_open_after_cooldown_then_closes(self, clock):
        breaker = _breaker(clock, failure_threshold=1)
        _fail(breaker)

        clock.advance(30)
        assert breaker.state is CircuitState.HALF_OPEN

        assert _succeed(breaker, "ok") == "ok"
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_needs_enough_trial_successes(self, clock):
        breaker = _breaker(clock, failure_threshold=1, success_threshold=2)
        _fail(breaker)
        clock.advance(31)

        _succeed(breaker)
        assert breaker.state is CircuitState.HALF_OPEN
        _succeed(breaker)
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_failure_reopens(self, clock):
        breaker = _breaker(clock, failure_threshold=2)
        _fail(breaker, 2)
        clock.advance(30)
        assert breaker.state is CircuitState.HALF_OPEN

        _fail(breaker)

        assert breaker.state is CircuitState.OPEN
        assert breaker.counters.times_opened == 2

    def test_reset_closes(self, clock):
        breaker = _breaker(clock, failure_threshold=1)
        _fail(breaker)
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.counters.failure_streak == 0

    def test_disabled_breaker_never_opens(self, clock):
        breaker = _breaker(clock, failure_threshold=1, enabled=False)
        _fail(breaker, 4)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.counters.failures == 0

    def test_state_is_exported_as_gauge(self, clock):
        breaker = CircuitBreaker("gauge-test", failure_threshold=1, clock=clock)
        gauge = circuit_breaker_state.labels(circuit_name="gauge-test")
        _fail(breaker)
        assert gauge._value.get() == 1
        clock.advance(60)
        assert breaker.state is CircuitState.HALF_OPEN
        assert gauge._value.get() == 2
        breaker.reset()
        assert gauge._value.get() == 0

    def test_named_breakers_are_shared(self):
        assert get_circuit_breaker("payments") is get_circuit_breaker("payments")
        assert get_circuit_breaker("payments") is not get_circuit_breaker("auth0")
