"""
Provider manager: the request orchestrator.

For each request:
1. Semantic cache lookup (hit returns a zero-cost clone)
2. Rate limiting across global, user-tier and agent scopes
3. Cost optimization (binding on model and token ceiling)
4. Model selection, skipping unhealthy providers and open circuit breakers
5. Provider call under the agent's retry policy and a per-provider breaker
6. On exhausted retries the provider is marked unhealthy and one fallback
   model on another healthy provider is tried before the error surfaces

Cache and optimizer failures degrade to a live, unoptimized call.
"""
import asyncio
import json
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from ai_gateway.core.circuit_breaker import CircuitBreaker, CircuitState
from ai_gateway.core.logging import get_logger
from ai_gateway.core.metrics import (
    record_ai_request,
    record_provider_call,
    record_tokens_and_cost,
    set_provider_health,
)
from ai_gateway.core.tracing import get_tracer, record_exception, set_span_attribute
from ai_gateway.services.ai.catalog import (
    get_agent_config,
    get_model,
    get_provider_config,
    is_suitable_model,
    models_for_agent,
)
from ai_gateway.services.ai.cost_optimizer import CostOptimizer
from ai_gateway.services.ai.errors import (
    AIGatewayError,
    ErrorCode,
    ErrorTracker,
    RetryPolicy,
    classify_error,
)
from ai_gateway.services.ai.providers.base import ProviderTransport
from ai_gateway.services.ai.rate_limiter import RateLimiter
from ai_gateway.services.ai.schema import (
    AgentConfig,
    AIModel,
    AIRequest,
    AIResponse,
    ProviderRequest,
    ProviderResponse,
)
from ai_gateway.services.ai.semantic_cache import SemanticCache

logger = get_logger(__name__)

LATENCY_SMOOTHING = 0.3
AGGRESSIVE_CACHE_TTL_MULTIPLIER = 2.0
_WHITESPACE = re.compile(r"\s+")


@dataclass
class ProviderHealth:
    """Advisory health of one provider; concurrent updates may be lost."""
    name: str
    smoothed_latency_ms: float
    healthy: bool = True
    last_checked: Optional[float] = None
    consecutive_check_failures: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "smoothed_latency_ms": round(self.smoothed_latency_ms, 2),
            "last_checked": self.last_checked,
            "consecutive_check_failures": self.consecutive_check_failures,
            "last_error": self.last_error,
        }


def _compress(value: Any) -> Any:
    if isinstance(value, str):
        return _WHITESPACE.sub(" ", value).strip()
    if isinstance(value, dict):
        return {k: _compress(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_compress(v) for v in value]
    return value


def build_prompt(request: AIRequest) -> str:
    """Prompt is the request's input data as JSON; compressed requests drop redundant whitespace."""
    if request.compress_input:
        return json.dumps(_compress(request.input_data), sort_keys=True, separators=(",", ":"), default=str)
    return json.dumps(request.input_data, sort_keys=True, default=str)


def parse_output(content: str, request: AIRequest, provider: str, model: str) -> Any:
    try:
        return json.loads(content)
    except (TypeError, ValueError):
        return {
            "content": content,
            "agent_type": request.agent_type.value,
            "provider": provider,
            "model": model,
        }


def calculate_confidence(content: str, processing_time_ms: float, model: AIModel) -> float:
    """
    Bounded confidence in [0.8, 1.0] from model capability, response size and latency.
    """
    confidence = 0.8 + 0.1 * min(1.0, len(model.strengths) / 4)
    if len(content) > 500:
        confidence += 0.05
    if len(content) > 1000:
        confidence += 0.05
    if processing_time_ms > 2000:
        confidence += 0.05
    return min(confidence, 1.0)


class ProviderManager:
    """
    Orchestrates cache, rate limiter, optimizer and provider calls.

    Args:
        transports: Provider name -> transport
        cache: Semantic response cache
        rate_limiter: Admission control
        cost_optimizer: Request shaping and cost ledger
        error_tracker: Aggregated error records
        request_timeout_seconds: Hard deadline per provider call
        health_check_failure_threshold: Failed probes before a provider is marked unhealthy
        clock: Epoch-seconds clock for breakers and health timestamps
        sleep: Awaitable used for retry backoff (injectable for tests)
        rng: Jitter source in [0, 1)
    """

    def __init__(
        self,
        transports: Dict[str, ProviderTransport],
        *,
        cache: SemanticCache,
        rate_limiter: RateLimiter,
        cost_optimizer: CostOptimizer,
        error_tracker: ErrorTracker,
        request_timeout_seconds: float = 30.0,
        health_check_failure_threshold: int = 3,
        breaker_failure_threshold: int = 5,
        breaker_monitor_window_seconds: float = 60.0,
        breaker_reset_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.transports = dict(transports)
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.cost_optimizer = cost_optimizer
        self.error_tracker = error_tracker
        self.request_timeout_seconds = request_timeout_seconds
        self.health_check_failure_threshold = health_check_failure_threshold
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._health: Dict[str, ProviderHealth] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        for name in self.transports:
            provider = get_provider_config(name)
            self._health[name] = ProviderHealth(
                name=name,
                smoothed_latency_ms=provider.base_latency_ms if provider else 3000.0,
            )
            self._breakers[name] = CircuitBreaker(
                name=f"provider:{name}",
                failure_threshold=breaker_failure_threshold,
                monitor_window_seconds=breaker_monitor_window_seconds,
                reset_timeout_seconds=breaker_reset_timeout_seconds,
                clock=clock,
            )
            set_provider_health(name, True)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_breaker(self, provider: str) -> CircuitBreaker:
        return self._breakers[provider]

    def get_smoothed_latency(self, provider: str) -> Optional[float]:
        health = self._health.get(provider)
        return health.smoothed_latency_ms if health else None

    def is_provider_available(self, provider: str) -> bool:
        health = self._health.get(provider)
        if health is None or not health.healthy:
            return False
        return self._breakers[provider].state != CircuitState.OPEN

    def mark_unhealthy(self, provider: str, reason: Optional[str] = None) -> None:
        health = self._health.get(provider)
        if health is None:
            return
        was_healthy = health.healthy
        health.healthy = False
        health.last_error = reason
        set_provider_health(provider, False)
        if was_healthy:
            logger.warning("provider_marked_unhealthy", provider=provider, reason=reason)

    def _record_success(self, provider: str, latency_ms: float) -> None:
        health = self._health[provider]
        health.smoothed_latency_ms = (
            (1 - LATENCY_SMOOTHING) * health.smoothed_latency_ms + LATENCY_SMOOTHING * latency_ms
        )
        if not health.healthy:
            logger.info("provider_recovered", provider=provider, source="request")
        health.healthy = True
        health.last_error = None
        health.consecutive_check_failures = 0
        set_provider_health(provider, True)

    async def _probe(self, name: str, transport: ProviderTransport) -> bool:
        try:
            return bool(await asyncio.wait_for(transport.health_check(), timeout=self.request_timeout_seconds))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "provider_health_check_error",
                provider=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def run_health_checks(self) -> Dict[str, bool]:
        """
        Probe every transport concurrently.

        A provider is marked unhealthy after `health_check_failure_threshold`
        consecutive failed probes; a single successful probe restores it.

        Returns:
            Provider name -> current health
        """
        names = list(self.transports)
        results = await asyncio.gather(*(self._probe(n, self.transports[n]) for n in names))
        now = self._clock()

        for name, ok in zip(names, results):
            health = self._health[name]
            health.last_checked = now
            if ok:
                if not health.healthy:
                    logger.info("provider_recovered", provider=name, source="health_check")
                health.consecutive_check_failures = 0
                health.healthy = True
                health.last_error = None
                set_provider_health(name, True)
                continue

            health.consecutive_check_failures += 1
            logger.warning(
                "provider_health_check_failed",
                provider=name,
                consecutive_failures=health.consecutive_check_failures,
                threshold=self.health_check_failure_threshold,
            )
            if health.consecutive_check_failures >= self.health_check_failure_threshold:
                self.mark_unhealthy(name, reason="health_check_failed")

        return {name: self._health[name].healthy for name in names}

    def get_provider_status(self) -> Dict[str, Dict[str, Any]]:
        status = {}
        for name, health in self._health.items():
            entry = health.to_dict()
            entry["available"] = self.is_provider_available(name)
            entry["circuit_breaker"] = self._breakers[name].get_metrics()
            status[name] = entry
        return status

    # ------------------------------------------------------------------
    # Model selection
    # ------------------------------------------------------------------

    def _candidate_models(self, request: AIRequest) -> List[AIModel]:
        config = get_agent_config(request.agent_type)
        ids: List[str] = []
        # Hints naming a model the agent cannot run on are ignored
        if is_suitable_model(request.model_hint, request.agent_type):
            ids.append(request.model_hint)
        ids.extend([config.default_model, config.fallback_model])
        ids.extend(m.id for m in models_for_agent(request.agent_type))

        seen = set()
        candidates = []
        for model_id in ids:
            model = get_model(model_id)
            if model is None or model.id in seen:
                continue
            seen.add(model.id)
            candidates.append(model)
        return candidates

    def select_model(self, request: AIRequest, exclude: Iterable[str] = ()) -> AIModel:
        """
        First available model: the optimizer's hint, then the agent default,
        its configured fallback and finally every model recommended for the agent.

        Raises:
            AIGatewayError: PROVIDER_UNAVAILABLE when no candidate has a healthy provider
        """
        excluded = set(exclude)
        for model in self._candidate_models(request):
            if model.id in excluded:
                continue
            if model.provider in self.transports and self.is_provider_available(model.provider):
                return model
        raise AIGatewayError(
            ErrorCode.PROVIDER_UNAVAILABLE,
            details={"agent_type": request.agent_type.value, "reason": "no_healthy_provider"},
        )

    def select_cost_effective_model(self, agent_type, priority: str = "cost") -> AIModel:
        """Best-scoring model for the agent among providers that are currently available."""
        candidates = [
            m for m in models_for_agent(agent_type)
            if m.provider in self.transports and self.is_provider_available(m.provider)
        ]
        if not candidates:
            raise AIGatewayError(
                ErrorCode.PROVIDER_UNAVAILABLE,
                details={"agent_type": getattr(agent_type, "value", agent_type), "reason": "no_healthy_provider"},
            )
        return self.cost_optimizer.select_cost_effective_model(agent_type, priority, candidates=candidates)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _build_provider_request(self, request: AIRequest, model: AIModel, config: AgentConfig) -> ProviderRequest:
        context = None
        if request.context and request.context.conversation_history:
            context = [f"{m.role}: {m.content}" for m in request.context.conversation_history]
        return ProviderRequest(
            prompt=build_prompt(request),
            model=model.id,
            max_tokens=min(request.max_tokens or config.max_tokens, model.max_tokens),
            temperature=request.temperature if request.temperature is not None else config.temperature,
            system_prompt=config.system_prompt,
            context=context,
        )

    async def _call_provider(self, request: AIRequest, model: AIModel) -> ProviderResponse:
        config = get_agent_config(request.agent_type)
        transport = self.transports[model.provider]
        provider_request = self._build_provider_request(request, model, config)
        retry_kwargs = {"operation": "provider_call", "sleep": self._sleep}
        if self._rng is not None:
            retry_kwargs["rng"] = self._rng
        policy = RetryPolicy(config.retry, **retry_kwargs)
        tracer = get_tracer()

        async def attempt(number: int) -> ProviderResponse:
            with tracer.start_as_current_span("provider.call"):
                set_span_attribute("ai.provider", model.provider)
                set_span_attribute("ai.model", model.id)
                set_span_attribute("ai.attempt", number)
                started = time.perf_counter()
                try:
                    response = await asyncio.wait_for(
                        transport.call(provider_request),
                        timeout=self.request_timeout_seconds,
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    record_exception(e)
                    record_provider_call(model.provider, model.id, False, time.perf_counter() - started)
                    raise
                record_provider_call(model.provider, model.id, True, time.perf_counter() - started)
                return response

        return await policy.execute(
            attempt,
            breaker=self._breakers[model.provider],
            context={"provider": model.provider, "model": model.id, "request_id": request.id},
        )

    def _build_response(
        self,
        request: AIRequest,
        model: AIModel,
        provider_response: ProviderResponse,
        started: float,
        warnings: List[str],
    ) -> AIResponse:
        content = provider_response.content
        tokens = provider_response.tokens_used or max(1, math.ceil(len(content) / 4))
        cost_cents = tokens * model.cost_per_token * 100.0
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        provider_latency_ms = provider_response.processing_time_ms or elapsed_ms

        self._record_success(model.provider, provider_latency_ms)
        record_tokens_and_cost(model.provider, model.id, tokens, cost_cents)

        warnings = list(warnings)
        if request.deferred:
            warnings.append("deferred: request was eligible for batched execution but ran immediately")
        try:
            alerts = self.cost_optimizer.record_cost(request.user_id, cost_cents, request.agent_type, model.id)
        except Exception as e:
            logger.warning(
                "cost_ledger_update_failed",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            alerts = []
        for alert in alerts:
            warnings.append(
                f"budget_{alert.level}: {alert.period} spend at {alert.utilization_pct:.0f}% of ${alert.limit:.2f}"
            )

        return AIResponse(
            request_id=request.id,
            output=parse_output(content, request, model.provider, model.id),
            tokens_used=tokens,
            processing_time_ms=elapsed_ms,
            cost_cents=cost_cents,
            cache_hit=False,
            confidence=calculate_confidence(content, provider_latency_ms, model),
            provider=model.provider,
            model=model.id,
            warnings=warnings,
        )

    def _cache_response(self, request: AIRequest, response: AIResponse) -> None:
        config = get_agent_config(request.agent_type)
        if not config.cache_enabled:
            return
        ttl = config.cache_ttl_seconds
        if request.aggressive_caching:
            ttl *= AGGRESSIVE_CACHE_TTL_MULTIPLIER
        try:
            self.cache.put(request, response, ttl_seconds=ttl)
        except Exception as e:
            logger.warning(
                "cache_store_failed",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__,
            )

    def _lookup_cache(self, request: AIRequest) -> Optional[AIResponse]:
        if not get_agent_config(request.agent_type).cache_enabled:
            return None
        try:
            hit = self.cache.lookup(request)
        except Exception as e:
            logger.warning(
                "cache_lookup_failed",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        return hit.response if hit else None

    def _optimize(self, request: AIRequest):
        try:
            result = self.cost_optimizer.optimize(request)
            shaped = result.optimized_request
            if shaped.agent_type != request.agent_type or shaped.user_id != request.user_id:
                raise ValueError("optimization changed request ownership")
            return shaped, list(result.warnings)
        except Exception as e:
            logger.warning(
                "cost_optimization_failed",
                request_id=request.id,
                error=str(e),
                error_type=type(e).__name__,
                message="Continuing with the unoptimized request.",
            )
            return request, []

    async def _execute(self, request: AIRequest, started: float) -> AIResponse:
        cached = self._lookup_cache(request)
        if cached is not None:
            record_ai_request(request.agent_type.value, "cache_hit", time.perf_counter() - started)
            logger.info(
                "ai_request_cache_hit",
                request_id=request.id,
                user_id=request.user_id,
                agent_type=request.agent_type.value,
            )
            return cached

        admission = self.rate_limiter.check_and_consume(request)
        if not admission.allowed:
            raise AIGatewayError(
                ErrorCode.RATE_LIMIT_EXCEEDED,
                reset_time=admission.reset_time,
                details={"scope": admission.scope, "limit": admission.limit},
            )

        shaped, warnings = self._optimize(request)
        model = self.select_model(shaped)
        set_span_attribute("ai.model", model.id)

        try:
            provider_response = await self._call_provider(shaped, model)
        except AIGatewayError as error:
            if not error.retryable:
                raise
            self.mark_unhealthy(model.provider, reason=error.code.value)
            try:
                fallback = self.select_model(shaped, exclude={model.id})
            except AIGatewayError:
                raise error
            logger.warning(
                "provider_fallback",
                request_id=request.id,
                failed_provider=model.provider,
                failed_model=model.id,
                fallback_provider=fallback.provider,
                fallback_model=fallback.id,
                code=error.code.value,
            )
            model = fallback
            set_span_attribute("ai.fallback_model", model.id)
            try:
                provider_response = await self._call_provider(shaped, model)
            except AIGatewayError as fallback_error:
                if fallback_error.retryable:
                    self.mark_unhealthy(model.provider, reason=fallback_error.code.value)
                raise
            warnings.append(f"fallback: served by {model.id} after the primary model failed")

        response = self._build_response(shaped, model, provider_response, started, warnings)
        self._cache_response(request, response)
        record_ai_request(request.agent_type.value, "success", time.perf_counter() - started)
        logger.info(
            "ai_request_completed",
            request_id=request.id,
            user_id=request.user_id,
            agent_type=request.agent_type.value,
            provider=response.provider,
            model=response.model,
            tokens_used=response.tokens_used,
            cost_cents=round(response.cost_cents, 6),
            processing_time_ms=round(response.processing_time_ms, 2),
        )
        return response

    async def process(self, request: AIRequest) -> AIResponse:
        """
        Fulfil a request end to end.

        Returns:
            Complete AIResponse (a zero-cost clone on cache hits)

        Raises:
            AIGatewayError: Typed failure; nothing partial is ever returned
        """
        started = time.perf_counter()
        agent = request.agent_type.value
        tracer = get_tracer()
        with tracer.start_as_current_span("ai.process"):
            set_span_attribute("ai.request_id", request.id)
            set_span_attribute("ai.agent_type", agent)
            try:
                return await self._execute(request, started)
            except asyncio.CancelledError:
                logger.info("ai_request_cancelled", request_id=request.id, agent_type=agent)
                raise
            except Exception as exc:
                error = classify_error(exc)
                record_exception(error)
                outcome = "rate_limited" if error.code == ErrorCode.RATE_LIMIT_EXCEEDED else "error"
                record_ai_request(agent, outcome, time.perf_counter() - started)
                self.error_tracker.record(error, operation="process", user_id=request.user_id, agent_type=agent)
                logger.warning(
                    "ai_request_failed",
                    request_id=request.id,
                    user_id=request.user_id,
                    agent_type=agent,
                    code=error.code.value,
                    retryable=error.retryable,
                    error=error.message,
                )
                if error is exc:
                    raise
                raise error from exc
