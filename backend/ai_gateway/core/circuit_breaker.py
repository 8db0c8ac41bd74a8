"""
Circuit breaker for provider calls.

- Opens after `failure_threshold` consecutive failures inside `monitor_window_seconds`
- While open, calls are rejected without touching the provider
- After `reset_timeout_seconds` a single trial call is admitted (half-open)
- Trial success closes the circuit, trial failure reopens it
"""
import time
from enum import Enum
from threading import Lock
from typing import Any, Callable, Optional

from ai_gateway.core.logging import get_logger
from ai_gateway.core.metrics import set_circuit_breaker_state

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject calls
    HALF_OPEN = "half_open"  # One trial call in flight


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Thread-safe; shared by every request routed to the same provider.
    `clock` returns seconds and is injectable for tests.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        monitor_window_seconds: float = 60.0,
        reset_timeout_seconds: float = 30.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.monitor_window_seconds = monitor_window_seconds
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock or time.monotonic

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._total_successes = 0
        self._total_failures = 0
        self._total_rejections = 0

        set_circuit_breaker_state(self.name, self._state.value)

    @property
    def state(self) -> CircuitState:
        """Get current circuit breaker state."""
        with self._lock:
            self._update_state()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def opened_at(self) -> Optional[float]:
        return self._opened_at

    def _set_state(self, state: CircuitState) -> None:
        self._state = state
        set_circuit_breaker_state(self.name, state.value)

    def _update_state(self) -> None:
        """Apply time-based transitions. Caller holds the lock."""
        now = self._clock()

        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and (now - self._opened_at) >= self.reset_timeout_seconds:
                self._set_state(CircuitState.HALF_OPEN)
                self._trial_in_flight = False
                logger.info(
                    "circuit_breaker_half_open",
                    circuit_breaker=self.name,
                    state="half_open",
                )

        elif self._state == CircuitState.CLOSED:
            # A streak only counts while its failures stay inside the window.
            if (
                self._last_failure_at is not None
                and (now - self._last_failure_at) > self.monitor_window_seconds
            ):
                self._consecutive_failures = 0
                self._last_failure_at = None

    def allow_request(self) -> bool:
        """
        Reserve permission to call the protected operation.

        In half-open state only the first caller gets the trial slot.
        """
        with self._lock:
            self._update_state()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            self._total_rejections += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            self._total_successes += 1
            if self._state == CircuitState.HALF_OPEN:
                logger.info(
                    "circuit_breaker_closed",
                    circuit_breaker=self.name,
                )
            self._set_state(CircuitState.CLOSED)
            self._consecutive_failures = 0
            self._last_failure_at = None
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._update_state()
            now = self._clock()
            self._total_failures += 1

            if self._state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN)
                self._opened_at = now
                self._trial_in_flight = False
                logger.warning(
                    "circuit_breaker_reopened",
                    circuit_breaker=self.name,
                )
                return

            if self._state == CircuitState.OPEN:
                return

            self._consecutive_failures += 1
            self._last_failure_at = now
            if self._consecutive_failures >= self.failure_threshold:
                self._set_state(CircuitState.OPEN)
                self._opened_at = now
                logger.warning(
                    "circuit_breaker_opened",
                    circuit_breaker=self.name,
                    consecutive_failures=self._consecutive_failures,
                    reset_timeout_seconds=self.reset_timeout_seconds,
                )

    def release_trial(self) -> None:
        """Give back a half-open trial slot when the call never reached the provider."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._set_state(CircuitState.CLOSED)
            self._consecutive_failures = 0
            self._last_failure_at = None
            self._opened_at = None
            self._trial_in_flight = False

    def _reject(self) -> "CircuitBreakerOpenError":
        return CircuitBreakerOpenError(
            f"Circuit breaker {self.name} is {self._state.value.upper()}. Service unavailable.",
            name=self.name,
        )

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute a function with circuit breaker protection (sync).

        Raises:
            CircuitBreakerOpenError: If the circuit rejects the call
        """
        if not self.allow_request():
            raise self._reject()

        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    async def call_async(self, func: Callable, *args, **kwargs) -> Any:
        """
        Execute an async function with circuit breaker protection.

        Cancellation is not counted as a provider failure.

        Raises:
            CircuitBreakerOpenError: If the circuit rejects the call
        """
        if not self.allow_request():
            raise self._reject()

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            self.release_trial()
            raise
        self.record_success()
        return result

    def get_metrics(self) -> dict:
        """Get circuit breaker metrics for monitoring."""
        with self._lock:
            self._update_state()
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self.failure_threshold,
                "opened_at": self._opened_at,
                "total_successes": self._total_successes,
                "total_failures": self._total_failures,
                "total_rejections": self._total_rejections,
            }


class CircuitBreakerOpenError(Exception):
    """Raised when circuit breaker is open and request is rejected."""

    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name
