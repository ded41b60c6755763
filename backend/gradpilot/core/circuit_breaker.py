"""
Circuit breaker for the reasoning oracle.

- Opens when the error rate over ``time_window_seconds`` reaches
  ``failure_threshold`` (after at least ``min_requests_for_threshold`` calls)
- Stays open for ``open_duration_seconds``, rejecting calls immediately
- Half-open: lets trial calls through one at a time;
  ``half_open_successes_to_close`` consecutive successes close it, any failure
  reopens it
- Exceptions listed in ``excluded_exceptions`` mean the dependency answered
  (e.g. it rejected one credential) and count as successes
- A cancelled call is not counted; a cancelled trial call frees the
  half-open slot
"""
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple, Type

from gradpilot.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when the circuit is open and the call is rejected."""
    pass


class CircuitBreaker:
    """Error-rate circuit breaker guarding async calls to an external dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,
        time_window_seconds: int = 60,
        open_duration_seconds: int = 30,
        min_requests_for_threshold: int = 10,
        half_open_successes_to_close: int = 3,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.time_window_seconds = time_window_seconds
        self.open_duration_seconds = open_duration_seconds
        self.min_requests_for_threshold = min_requests_for_threshold
        self.half_open_successes_to_close = half_open_successes_to_close
        self.excluded_exceptions = tuple(excluded_exceptions)
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._history: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._trial_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def _refresh(self, now: float) -> None:
        cutoff = now - self.time_window_seconds
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and now - self._opened_at >= self.open_duration_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            self._trial_successes = 0
            logger.info("circuit_breaker_half_open", circuit_breaker=self.name)

    def _open(self, now: float, **context: Any) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._history.clear()
        logger.warning("circuit_breaker_opened", circuit_breaker=self.name, **context)

    def _admit(self) -> None:
        with self._lock:
            self._refresh(self._clock())
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker {self.name} is OPEN. Service unavailable."
                )
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker {self.name} is HALF_OPEN. Trial call already in flight."
                    )
                self._trial_in_flight = True

    def _record(self, success: bool) -> None:
        now = self._clock()
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                if not success:
                    self._open(now, reason="trial_call_failed")
                    return
                self._trial_successes += 1
                if self._trial_successes >= self.half_open_successes_to_close:
                    self._state = CircuitState.CLOSED
                    self._opened_at = None
                    logger.info("circuit_breaker_closed", circuit_breaker=self.name)
                return

            self._history.append((now, success))
            total = len(self._history)
            if total < self.min_requests_for_threshold:
                return
            failures = sum(1 for _, ok in self._history if not ok)
            error_rate = failures / total
            if error_rate >= self.failure_threshold:
                self._open(now, error_rate=error_rate, failures=failures, total=total)

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: when the call is rejected without executing.
        """
        self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.excluded_exceptions:
            self._record(True)
            raise
        except Exception:
            self._record(False)
            raise
        except BaseException:
            self._abandon()
            raise
        self._record(True)
        return result

    def _abandon(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def get_metrics(self) -> dict:
        """Snapshot for monitoring endpoints."""
        with self._lock:
            self._refresh(self._clock())
            failures = sum(1 for _, ok in self._history if not ok)
            total = len(self._history)
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total else 0.0,
                "opened_at": self._opened_at,
            }
