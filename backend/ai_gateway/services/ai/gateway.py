"""
Top-level gateway context.

`AIGateway` owns one instance of every component (error tracker, rate
limiter, semantic cache, cost optimizer, provider manager) together with
the periodic maintenance tasks, and exposes `submit()` / `process_batch()`
to callers. There is no module-level state: tests build a fresh gateway.
"""
import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from ai_gateway.core.config import GatewaySettings
from ai_gateway.core.logging import gateway_request_context, get_logger
from ai_gateway.core.tasks import PeriodicTask
from ai_gateway.services.ai.catalog import get_provider_config
from ai_gateway.services.ai.cost_optimizer import CostOptimizer
from ai_gateway.services.ai.errors import AIGatewayError, ErrorCode, ErrorTracker, classify_error
from ai_gateway.services.ai.provider_manager import ProviderManager
from ai_gateway.services.ai.providers import (
    AnthropicTransport,
    FakeTransport,
    OpenAITransport,
    ProviderTransport,
)
from ai_gateway.services.ai.rate_limiter import RateLimiter
from ai_gateway.services.ai.schema import AIRequest, AIResponse
from ai_gateway.services.ai.semantic_cache import SemanticCache

logger = get_logger(__name__)

DEGRADED_ERROR_RATE = 0.25
MIN_REQUESTS_FOR_ERROR_RATE = 4


@dataclass
class Interaction:
    request: AIRequest
    response: AIResponse
    processing_time_ms: float
    tokens_used: int
    cost_cents: float
    cache_hit: bool
    recorded_at: float = field(default_factory=time.time)


class InteractionRecorder(Protocol):
    """Persistence collaborator; `record` may be sync or async."""

    def record(self, interaction: Interaction) -> Any:
        ...


class InMemoryInteractionRecorder:
    """Keeps the most recent interactions in memory."""

    def __init__(self, max_items: int = 1000):
        self._items: Deque[Interaction] = deque(maxlen=max_items)

    def record(self, interaction: Interaction) -> None:
        self._items.append(interaction)

    @property
    def interactions(self) -> List[Interaction]:
        return list(self._items)

    def for_user(self, user_id: str) -> List[Interaction]:
        return [i for i in self._items if i.request.user_id == user_id]


@dataclass
class BatchResult:
    request_id: str
    response: Optional[AIResponse] = None
    error: Optional[AIGatewayError] = None

    @property
    def ok(self) -> bool:
        return self.response is not None


def build_transports(settings: GatewaySettings) -> Dict[str, ProviderTransport]:
    """Fake transports when configured (or when no keys exist), else one HTTP transport per key."""
    if settings.use_fake_providers:
        transports: Dict[str, ProviderTransport] = {}
        for name in ("claude", "openai"):
            provider = get_provider_config(name)
            transports[name] = FakeTransport(name, latency_ms=provider.base_latency_ms if provider else 50.0)
        return transports

    transports = {}
    if settings.anthropic_api_key:
        transports["claude"] = AnthropicTransport(
            settings.anthropic_api_key,
            api_base=settings.anthropic_api_base,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    if settings.openai_api_key:
        transports["openai"] = OpenAITransport(
            settings.openai_api_key,
            api_base=settings.openai_api_base,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    return transports


class AIGateway:
    """
    Owns the gateway components and their background maintenance.

    Args:
        settings: Gateway configuration
        transports: Provider transports; built from settings when omitted
        clock: Epoch-seconds clock shared by every component
        recorder: Interaction persistence collaborator
        sleep: Retry backoff sleep (injectable for tests)
        rng: Retry jitter source
    """

    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        transports: Optional[Dict[str, ProviderTransport]] = None,
        clock: Optional[Callable[[], float]] = None,
        recorder: Optional[InteractionRecorder] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.settings = settings or GatewaySettings()
        self._clock = clock or time.time
        self.recorder = recorder if recorder is not None else InMemoryInteractionRecorder()

        s = self.settings
        self.error_tracker = ErrorTracker(
            retention_seconds=s.error_retention_days * 24 * 60 * 60,
            clock=self._clock,
        )
        self.rate_limiter = RateLimiter(
            strategy=s.rate_limit_strategy,
            retention_seconds=s.rate_limit_retention_seconds,
            clock=self._clock,
        )
        self.cache = SemanticCache(
            max_size=s.cache_max_size,
            default_ttl_seconds=s.cache_default_ttl_seconds,
            similarity_threshold=s.cache_similarity_threshold,
            dimensions=s.cache_embedding_dimensions,
            cross_user=s.cache_cross_user_lookup,
            clock=self._clock,
        )
        self.cost_optimizer = CostOptimizer(
            clock=self._clock,
            peak_hours=(s.peak_hours_start, s.peak_hours_end),
        )
        self.provider_manager = ProviderManager(
            transports if transports is not None else build_transports(s),
            cache=self.cache,
            rate_limiter=self.rate_limiter,
            cost_optimizer=self.cost_optimizer,
            error_tracker=self.error_tracker,
            request_timeout_seconds=s.provider_timeout_seconds,
            health_check_failure_threshold=s.health_check_failure_threshold,
            breaker_failure_threshold=s.breaker_failure_threshold,
            breaker_monitor_window_seconds=s.breaker_monitor_window_seconds,
            breaker_reset_timeout_seconds=s.breaker_reset_timeout_seconds,
            clock=self._clock,
            sleep=sleep or asyncio.sleep,
            rng=rng,
        )
        self.cost_optimizer.latency_lookup = self.provider_manager.get_smoothed_latency

        self.tasks: List[PeriodicTask] = [
            PeriodicTask("cache_sweep", s.cache_cleanup_interval_seconds, self.cache.sweep_expired),
            PeriodicTask("rate_limit_cleanup", s.rate_limit_cleanup_interval_seconds, self.rate_limiter.cleanup),
            PeriodicTask("error_cleanup", s.error_cleanup_interval_seconds, self.error_tracker.cleanup),
            PeriodicTask("cost_cleanup", s.cost_cleanup_interval_seconds, self.cost_optimizer.cleanup),
            PeriodicTask("provider_health_check", s.health_check_interval_seconds, self.provider_manager.run_health_checks),
        ]
        self._started = False
        self._requests = 0
        self._failures = 0

    @property
    def transports(self) -> Dict[str, ProviderTransport]:
        return self.provider_manager.transports

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        for task in self.tasks:
            task.start()
        self._started = True
        logger.info(
            "ai_gateway_started",
            providers=sorted(self.transports),
            rate_limit_strategy=self.rate_limiter.strategy,
            tasks=[t.name for t in self.tasks],
        )

    async def stop(self) -> None:
        """Stop every periodic task and close provider transports."""
        for task in self.tasks:
            await task.stop()
        for name, transport in self.transports.items():
            try:
                await transport.aclose()
            except Exception as e:
                logger.warning(
                    "provider_transport_close_failed",
                    provider=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        if self._started:
            logger.info("ai_gateway_stopped", requests=self._requests, failures=self._failures)
        self._started = False

    async def __aenter__(self) -> "AIGateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _record(self, request: AIRequest, response: AIResponse) -> None:
        interaction = Interaction(
            request=request,
            response=response,
            processing_time_ms=response.processing_time_ms,
            tokens_used=response.tokens_used,
            cost_cents=response.cost_cents,
            cache_hit=response.cache_hit,
            recorded_at=self._clock(),
        )
        try:
            result = self.recorder.record(interaction)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(
                "interaction_record_failed",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def submit(self, request: AIRequest) -> AIResponse:
        """
        Process one request and record the interaction.

        Raises:
            AIGatewayError: Typed failure from the provider manager
        """
        self._requests += 1
        with gateway_request_context(request.user_id, request.agent_type.value):
            try:
                response = await self.provider_manager.process(request)
            except AIGatewayError:
                self._failures += 1
                raise
            await self._record(request, response)
            return response

    async def process_batch(
        self,
        requests: List[AIRequest],
        max_concurrency: Optional[int] = None,
        fail_fast: bool = False,
    ) -> List[BatchResult]:
        """
        Process requests concurrently, at most `max_concurrency` at a time.

        Results keep the input order. With `fail_fast` the first failure
        cancels the remaining requests and is raised.

        Raises:
            AIGatewayError: INVALID_INPUT when the batch is too large, or the
                first failure when `fail_fast` is set
        """
        if len(requests) > self.settings.max_batch_size:
            raise AIGatewayError(
                ErrorCode.INVALID_INPUT,
                f"Batch size {len(requests)} exceeds the maximum of {self.settings.max_batch_size}",
                details={"max_batch_size": self.settings.max_batch_size},
            )
        if not requests:
            return []

        semaphore = asyncio.Semaphore(max_concurrency or self.settings.max_concurrent_requests)

        async def run(request: AIRequest) -> AIResponse:
            async with semaphore:
                return await self.submit(request)

        tasks = [asyncio.ensure_future(run(r)) for r in requests]

        if fail_fast:
            try:
                responses = await asyncio.gather(*tasks)
            except Exception:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
            return [BatchResult(request_id=r.id, response=resp) for r, resp in zip(requests, responses)]

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        results = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, AIResponse):
                results.append(BatchResult(request_id=request.id, response=outcome))
            elif isinstance(outcome, Exception):
                results.append(BatchResult(request_id=request.id, error=classify_error(outcome)))
            else:
                raise outcome
        logger.info(
            "ai_batch_completed",
            size=len(requests),
            succeeded=sum(1 for r in results if r.ok),
            failed=sum(1 for r in results if not r.ok),
        )
        return results

    def get_health_status(self) -> Dict[str, Any]:
        """
        Overall status: `unhealthy` when no provider is available, `degraded`
        when some provider is unavailable or the error rate is high, else `healthy`.
        """
        providers = self.provider_manager.get_provider_status()
        available = [name for name, p in providers.items() if p["available"]]
        error_rate = self._failures / self._requests if self._requests else 0.0

        if not available:
            status = "unhealthy"
        elif len(available) < len(providers) or (
            self._requests >= MIN_REQUESTS_FOR_ERROR_RATE and error_rate > DEGRADED_ERROR_RATE
        ):
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "started": self._started,
            "providers": providers,
            "requests": self._requests,
            "failures": self._failures,
            "error_rate": round(error_rate, 4),
            "cache": self.cache.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
            "errors": self.error_tracker.get_error_stats(),
            "tasks": {t.name: {"running": t.running, "runs": t.runs, "failures": t.failures} for t in self.tasks},
        }
