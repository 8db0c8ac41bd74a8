"""
Error classification, retry policy and error tracking.

Upstream failures are mapped onto a closed taxonomy (`ErrorCode`) through
an explicit status/signal/exception table. Each code carries a fixed
`retryable` flag that drives `RetryPolicy`.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

import httpx
from pydantic import ValidationError

from ai_gateway.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from ai_gateway.core.logging import get_logger
from ai_gateway.core.metrics import record_gateway_error, record_retry
from ai_gateway.services.ai.providers.base import ProviderError
from ai_gateway.services.ai.schema import RetryConfig

logger = get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


class ErrorCode(str, Enum):
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    TIMEOUT = "TIMEOUT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    MODEL_OVERLOADED = "MODEL_OVERLOADED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RETRYABLE_CODES = frozenset({
    ErrorCode.RATE_LIMIT_EXCEEDED,
    ErrorCode.TIMEOUT,
    ErrorCode.MODEL_OVERLOADED,
    ErrorCode.PROVIDER_UNAVAILABLE,
})

ERROR_MESSAGES: Dict[ErrorCode, str] = {
    ErrorCode.RATE_LIMIT_EXCEEDED: "Too many requests. Please wait a moment before trying again.",
    ErrorCode.TIMEOUT: "The request took too long to complete. Please try again.",
    ErrorCode.AUTHENTICATION_FAILED: "Authentication with the AI provider failed.",
    ErrorCode.INVALID_INPUT: "The request could not be processed. Please check your input.",
    ErrorCode.MODEL_OVERLOADED: "The AI service is experiencing high demand. Please try again shortly.",
    ErrorCode.INSUFFICIENT_CREDITS: "AI service credits have been exhausted.",
    ErrorCode.PROVIDER_UNAVAILABLE: "The AI service is temporarily unavailable. Please try again later.",
    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Please try again.",
}

STATUS_CODES: Dict[int, ErrorCode] = {
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    408: ErrorCode.TIMEOUT,
    504: ErrorCode.TIMEOUT,
    401: ErrorCode.AUTHENTICATION_FAILED,
    403: ErrorCode.AUTHENTICATION_FAILED,
    400: ErrorCode.INVALID_INPUT,
    404: ErrorCode.INVALID_INPUT,
    413: ErrorCode.INVALID_INPUT,
    422: ErrorCode.INVALID_INPUT,
    402: ErrorCode.INSUFFICIENT_CREDITS,
    503: ErrorCode.MODEL_OVERLOADED,
    529: ErrorCode.MODEL_OVERLOADED,
    500: ErrorCode.PROVIDER_UNAVAILABLE,
    502: ErrorCode.PROVIDER_UNAVAILABLE,
}

SIGNAL_CODES: Dict[str, ErrorCode] = {
    "rate_limit": ErrorCode.RATE_LIMIT_EXCEEDED,
    "timeout": ErrorCode.TIMEOUT,
    "auth": ErrorCode.AUTHENTICATION_FAILED,
    "invalid_request": ErrorCode.INVALID_INPUT,
    "overloaded": ErrorCode.MODEL_OVERLOADED,
    "credits": ErrorCode.INSUFFICIENT_CREDITS,
    "unavailable": ErrorCode.PROVIDER_UNAVAILABLE,
}

RETRY_PRESETS: Dict[str, RetryConfig] = {
    "default": RetryConfig(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=10.0, backoff_multiplier=2.0),
    "aggressive": RetryConfig(max_attempts=5, base_delay_seconds=0.5, max_delay_seconds=8.0, backoff_multiplier=2.0),
    "conservative": RetryConfig(max_attempts=2, base_delay_seconds=2.0, max_delay_seconds=15.0, backoff_multiplier=3.0),
    "rate_limit": RetryConfig(max_attempts=3, base_delay_seconds=5.0, max_delay_seconds=60.0, backoff_multiplier=2.0),
}


class AIGatewayError(Exception):
    """
    Typed gateway failure surfaced to callers.

    Attributes:
        code: Member of the closed error taxonomy
        message: Human readable message
        retryable: Whether the caller may retry
        reset_time: Epoch seconds after which a rate-limited caller may retry
        details: Machine readable context (provider, status code, scope, ...)
    """

    def __init__(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        *,
        reset_time: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        self.reset_time = reset_time
        self.details = details or {}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    @property
    def circuit_open(self) -> bool:
        return bool(self.details.get("circuit_open"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "reset_time": self.reset_time,
        }

    def __repr__(self) -> str:
        return f"AIGatewayError(code={self.code.value!r}, message={self.message!r})"


def classify_status(status_code: int) -> ErrorCode:
    """Map an upstream HTTP status onto the taxonomy."""
    if status_code in STATUS_CODES:
        return STATUS_CODES[status_code]
    if status_code >= 500:
        return ErrorCode.PROVIDER_UNAVAILABLE
    return ErrorCode.UNKNOWN_ERROR


def classify_error(exc: BaseException) -> AIGatewayError:
    """
    Convert any failure raised while serving a request into an AIGatewayError.

    Signals from a ProviderError take precedence over its status code.
    """
    if isinstance(exc, AIGatewayError):
        return exc

    if isinstance(exc, ProviderError):
        details: Dict[str, Any] = {"provider": exc.provider, "status_code": exc.status_code}
        if exc.signal and exc.signal in SIGNAL_CODES:
            code = SIGNAL_CODES[exc.signal]
        elif exc.status_code is not None:
            code = classify_status(exc.status_code)
        else:
            code = ErrorCode.UNKNOWN_ERROR
        return AIGatewayError(code, details=details)

    if isinstance(exc, CircuitBreakerOpenError):
        return AIGatewayError(
            ErrorCode.PROVIDER_UNAVAILABLE,
            details={"circuit_open": True, "breaker": exc.name},
        )

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return AIGatewayError(ErrorCode.TIMEOUT, details={"error_type": type(exc).__name__})

    if isinstance(exc, httpx.HTTPStatusError):
        return AIGatewayError(
            classify_status(exc.response.status_code),
            details={"status_code": exc.response.status_code},
        )

    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
        return AIGatewayError(ErrorCode.PROVIDER_UNAVAILABLE, details={"error_type": type(exc).__name__})

    if isinstance(exc, (ValidationError, ValueError)):
        return AIGatewayError(ErrorCode.INVALID_INPUT, details={"error_type": type(exc).__name__})

    return AIGatewayError(
        ErrorCode.UNKNOWN_ERROR,
        details={"error_type": type(exc).__name__, "error": str(exc)},
    )


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Delay before retrying after `attempt` (1-based) failed.

    delay = min(max_delay, base_delay * multiplier^(attempt-1)), randomized by +/-25%.
    """
    base = min(
        config.max_delay_seconds,
        config.base_delay_seconds * (config.backoff_multiplier ** (attempt - 1)),
    )
    jitter = base * JITTER_RATIO * (2.0 * rng() - 1.0)
    return max(0.0, base + jitter)


class RetryPolicy:
    """
    Bounded exponential-backoff retries, optionally guarded by a circuit breaker.

    The operation receives the 1-based attempt number. Retries stop when the
    attempt budget is spent, the error is not retryable or the breaker is open.
    Cancellation propagates immediately and never counts against the breaker.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        operation: str = "provider_call",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config or RETRY_PRESETS["default"]
        self.operation = operation
        self._sleep = sleep
        self._rng = rng

    async def _attempt(
        self,
        fn: Callable[[int], Awaitable[T]],
        attempt: int,
        breaker: Optional[CircuitBreaker],
    ) -> T:
        if breaker is None:
            return await fn(attempt)

        if not breaker.allow_request():
            raise AIGatewayError(
                ErrorCode.PROVIDER_UNAVAILABLE,
                details={"circuit_open": True, "breaker": breaker.name},
            )

        try:
            result = await fn(attempt)
        except asyncio.CancelledError:
            breaker.release_trial()
            raise
        except Exception as exc:
            error = classify_error(exc)
            # Caller-side failures say nothing about provider health.
            if error.retryable or error.code == ErrorCode.UNKNOWN_ERROR:
                breaker.record_failure()
            else:
                breaker.release_trial()
            raise
        breaker.record_success()
        return result

    async def execute(
        self,
        fn: Callable[[int], Awaitable[T]],
        *,
        breaker: Optional[CircuitBreaker] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> T:
        """
        Run `fn` until it succeeds or the policy gives up.

        Raises:
            AIGatewayError: Classified error of the last failed attempt
        """
        context = context or {}
        max_attempts = self.config.max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                return await self._attempt(fn, attempt, breaker)
            except asyncio.CancelledError:
                logger.info("retry_cancelled", operation=self.operation, attempt=attempt, **context)
                raise
            except Exception as exc:
                error = classify_error(exc)
                error.details["attempts"] = attempt

                if not error.retryable or error.circuit_open or attempt >= max_attempts:
                    logger.warning(
                        "retry_giving_up",
                        operation=self.operation,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        code=error.code.value,
                        retryable=error.retryable,
                        error=str(exc),
                        error_type=type(exc).__name__,
                        **context,
                    )
                    if error is exc:
                        raise
                    raise error from exc

                delay = compute_backoff_delay(attempt, self.config, self._rng)
                record_retry(self.operation)
                logger.warning(
                    "retry_scheduled",
                    operation=self.operation,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=round(delay, 3),
                    code=error.code.value,
                    **context,
                )
                await self._sleep(delay)

        # Unreachable: the loop either returns or raises.
        raise AIGatewayError(ErrorCode.UNKNOWN_ERROR)


async def with_retry(
    fn: Callable[[int], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    *,
    preset: str = "default",
    breaker: Optional[CircuitBreaker] = None,
    operation: str = "provider_call",
) -> T:
    """Convenience wrapper: run `fn` under a RetryPolicy built from `config` or a preset."""
    policy = RetryPolicy(config or RETRY_PRESETS[preset], operation=operation)
    return await policy.execute(fn, breaker=breaker)


@dataclass
class ErrorRecord:
    """Aggregated occurrences of one error code for one operation."""
    code: ErrorCode
    operation: str
    retryable: bool
    first_seen: float
    last_seen: float
    count: int = 0
    affected_users: Set[str] = field(default_factory=set)
    affected_agents: Set[str] = field(default_factory=set)
    last_message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "operation": self.operation,
            "retryable": self.retryable,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "count": self.count,
            "affected_users": len(self.affected_users),
            "affected_agents": sorted(self.affected_agents),
            "last_message": self.last_message,
        }


ErrorCallback = Callable[[AIGatewayError, Dict[str, Any]], Any]

_RECOMMENDATIONS: Dict[ErrorCode, str] = {
    ErrorCode.RATE_LIMIT_EXCEEDED: "Implement request queuing or raise rate limits for heavy users",
    ErrorCode.TIMEOUT: "Increase provider timeouts or reduce max_tokens for slow agents",
    ErrorCode.AUTHENTICATION_FAILED: "Verify provider API keys and their permissions",
    ErrorCode.INVALID_INPUT: "Add input validation before requests reach the gateway",
    ErrorCode.MODEL_OVERLOADED: "Route more traffic to fallback models during peak demand",
    ErrorCode.INSUFFICIENT_CREDITS: "Top up provider credits and tighten budget alerts",
    ErrorCode.PROVIDER_UNAVAILABLE: "Check provider status and fallback model coverage",
    ErrorCode.UNKNOWN_ERROR: "Inspect logs for unexpected exceptions and add explicit handling",
}


class ErrorTracker:
    """
    Rolling aggregation of classified errors.

    Records are keyed by `code:operation`; `cleanup()` drops records that
    have not been seen within the retention period.
    """

    def __init__(
        self,
        retention_seconds: float = 7 * 24 * 60 * 60,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock or time.time
        self._records: Dict[str, ErrorRecord] = {}
        self._callbacks: List[ErrorCallback] = []
        self._lock = Lock()

    def register_callback(self, callback: ErrorCallback) -> None:
        self._callbacks.append(callback)

    def record(
        self,
        error: AIGatewayError,
        *,
        operation: str = "process",
        user_id: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> ErrorRecord:
        now = self._clock()
        key = f"{error.code.value}:{operation}"

        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = ErrorRecord(
                    code=error.code,
                    operation=operation,
                    retryable=error.retryable,
                    first_seen=now,
                    last_seen=now,
                )
                self._records[key] = record
            record.count += 1
            record.last_seen = now
            record.last_message = error.message
            if user_id:
                record.affected_users.add(user_id)
            if agent_type:
                record.affected_agents.add(agent_type)

        record_gateway_error(error.code.value)

        context = {"operation": operation, "user_id": user_id, "agent_type": agent_type}
        for callback in list(self._callbacks):
            try:
                callback(error, context)
            except Exception as e:
                logger.warning(
                    "error_callback_failed",
                    callback=getattr(callback, "__name__", repr(callback)),
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return record

    def get_records(self) -> List[ErrorRecord]:
        with self._lock:
            return list(self._records.values())

    def get_error_stats(self) -> Dict[str, Any]:
        records = self.get_records()
        now = self._clock()
        by_code: Dict[str, int] = {}
        by_agent: Dict[str, int] = {}
        retryable = 0
        non_retryable = 0
        for record in records:
            by_code[record.code.value] = by_code.get(record.code.value, 0) + record.count
            for agent in record.affected_agents:
                by_agent[agent] = by_agent.get(agent, 0) + record.count
            if record.retryable:
                retryable += record.count
            else:
                non_retryable += record.count

        top = sorted(records, key=lambda r: r.count, reverse=True)[:5]
        return {
            "total_errors": retryable + non_retryable,
            "by_code": by_code,
            "by_agent": by_agent,
            "retryable": retryable,
            "non_retryable": non_retryable,
            "active_codes_last_hour": sorted(
                {r.code.value for r in records if now - r.last_seen <= 60 * 60}
            ),
            "top_errors": [r.to_dict() for r in top],
        }

    def get_detailed_report(self) -> Dict[str, Any]:
        stats = self.get_error_stats()
        ordered = sorted(stats["by_code"].items(), key=lambda item: item[1], reverse=True)
        recommendations = [_RECOMMENDATIONS[ErrorCode(code)] for code, _ in ordered]
        if stats["total_errors"] and stats["non_retryable"] > stats["retryable"]:
            recommendations.append("Most errors are not retryable; review request validation and credentials")
        return {
            "stats": stats,
            "records": [r.to_dict() for r in sorted(self.get_records(), key=lambda r: r.last_seen, reverse=True)],
            "recommendations": recommendations,
        }

    def cleanup(self) -> int:
        cutoff = self._clock() - self.retention_seconds
        with self._lock:
            stale = [key for key, record in self._records.items() if record.last_seen < cutoff]
            for key in stale:
                del self._records[key]
        if stale:
            logger.info("error_records_cleaned", removed=len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
