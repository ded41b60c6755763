"""
Unit tests for the circuit breaker guarding the reasoning oracle.
"""
import asyncio

import pytest

from gradpilot.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def succeed():
    return "success"


async def fail():
    raise RuntimeError("upstream error")


async def _fail_times(cb: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        with pytest.raises(RuntimeError):
            await cb.call_async(fail)


@pytest.mark.asyncio
async def test_circuit_breaker_closed_state():
    """Successful calls pass through a closed breaker."""
    cb = CircuitBreaker("test", failure_threshold=0.5, time_window_seconds=60)

    assert cb.state == CircuitState.CLOSED
    assert await cb.call_async(succeed) == "success"


@pytest.mark.asyncio
async def test_circuit_breaker_needs_minimum_requests():
    """Failures below the minimum request count never open the circuit."""
    cb = CircuitBreaker("test", min_requests_for_threshold=5, clock=FakeClock())

    await _fail_times(cb, 4)

    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_circuit_breaker_opens_on_error_rate():
    """Reaching the error-rate threshold opens the circuit and rejects calls."""
    clock = FakeClock()
    cb = CircuitBreaker(
        "test",
        failure_threshold=0.5,
        min_requests_for_threshold=4,
        clock=clock,
    )

    await cb.call_async(succeed)
    await cb.call_async(succeed)
    await _fail_times(cb, 2)

    assert cb.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        await cb.call_async(succeed)


@pytest.mark.asyncio
async def test_circuit_breaker_old_failures_leave_window():
    """Failures older than the time window are not counted."""
    clock = FakeClock()
    cb = CircuitBreaker(
        "test",
        time_window_seconds=60,
        min_requests_for_threshold=4,
        clock=clock,
    )

    await _fail_times(cb, 3)
    clock.advance(61)
    await cb.call_async(succeed)

    assert cb.state == CircuitState.CLOSED
    assert cb.get_metrics()["recent_requests"] == 1


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_recovery():
    """After the open period, successful trial calls close the circuit."""
    clock = FakeClock()
    cb = CircuitBreaker(
        "test",
        min_requests_for_threshold=2,
        open_duration_seconds=30,
        half_open_successes_to_close=2,
        clock=clock,
    )
    await _fail_times(cb, 2)
    assert cb.state == CircuitState.OPEN

    clock.advance(30)
    assert cb.state == CircuitState.HALF_OPEN

    await cb.call_async(succeed)
    assert cb.state == CircuitState.HALF_OPEN
    await cb.call_async(succeed)
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_circuit_breaker_failed_trial_call_reopens():
    """A failing trial call sends the circuit straight back to open."""
    clock = FakeClock()
    cb = CircuitBreaker("test", min_requests_for_threshold=2, clock=clock)
    await _fail_times(cb, 2)
    clock.advance(cb.open_duration_seconds)

    await _fail_times(cb, 1)

    assert cb.state == CircuitState.OPEN


class KeyRejected(Exception):
    pass


async def reject():
    raise KeyRejected("quota exceeded for this key")


@pytest.mark.asyncio
async def test_circuit_breaker_excluded_exceptions_count_as_answers():
    """Excluded exceptions propagate but never trip the breaker."""
    cb = CircuitBreaker(
        "test",
        min_requests_for_threshold=2,
        excluded_exceptions=(KeyRejected,),
        clock=FakeClock(),
    )

    for _ in range(10):
        with pytest.raises(KeyRejected):
            await cb.call_async(reject)

    assert cb.state == CircuitState.CLOSED
    assert cb.get_metrics()["recent_failures"] == 0
    assert await cb.call_async(succeed) == "success"


@pytest.mark.asyncio
async def test_circuit_breaker_cancelled_half_open_call_frees_slot():
    """Cancelling the single half-open call lets the next call through."""
    clock = FakeClock()
    cb = CircuitBreaker(
        "test", min_requests_for_threshold=2, half_open_successes_to_close=1, clock=clock
    )
    await _fail_times(cb, 2)
    clock.advance(cb.open_duration_seconds)

    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(cb.call_async(hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert cb.state == CircuitState.HALF_OPEN
    assert await cb.call_async(succeed) == "success"
    assert cb.state == CircuitState.CLOSED


def test_circuit_breaker_metrics():
    """Metrics snapshot exposes state and recent error rate."""
    cb = CircuitBreaker("test")

    metrics = cb.get_metrics()
    assert metrics["name"] == "test"
    assert metrics["state"] == "closed"
    assert metrics["recent_requests"] == 0
    assert metrics["recent_failures"] == 0
    assert metrics["error_rate"] == 0.0
