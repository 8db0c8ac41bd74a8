"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: HTTP rate, errors, duration
- Gateway Metrics: AI requests, cache hits/misses, rate-limit denials
- Provider Metrics: calls, latency, health, tokens and cost
- Resilience Metrics: classified errors, retries, circuit breaker state
- Cost Metrics: optimization rules applied, budget alerts
- Resource Metrics: CPU, memory

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
import psutil
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

from ai_gateway.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry,
)

# ============================================================================
# GATEWAY METRICS
# ============================================================================

ai_requests_total = Counter(
    "ai_requests_total",
    "Total number of gateway requests by outcome",
    ["agent_type", "outcome"],  # outcome: "success", "cache_hit", "error"
    registry=registry,
)

ai_request_duration_seconds = Histogram(
    "ai_request_duration_seconds",
    "End-to-end gateway request latency in seconds",
    ["agent_type"],
    buckets=[0.001, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=registry,
)

ai_cache_hits_total = Counter(
    "ai_cache_hits_total",
    "Total number of semantic cache hits",
    ["agent_type", "match"],  # match: "exact", "semantic"
    registry=registry,
)

ai_cache_misses_total = Counter(
    "ai_cache_misses_total",
    "Total number of semantic cache misses",
    ["agent_type"],
    registry=registry,
)

ai_cache_evictions_total = Counter(
    "ai_cache_evictions_total",
    "Total number of cache entries removed",
    ["reason"],  # "capacity", "expired", "invalidated"
    registry=registry,
)

ai_cache_size = Gauge(
    "ai_cache_size",
    "Current number of semantic cache entries",
    registry=registry,
)

ai_rate_limit_denials_total = Counter(
    "ai_rate_limit_denials_total",
    "Total number of requests denied by the rate limiter",
    ["scope"],  # "global", "user", "agent"
    registry=registry,
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

ai_provider_calls_total = Counter(
    "ai_provider_calls_total",
    "Total number of provider invocations",
    ["provider", "model", "status"],  # status: "success", "error"
    registry=registry,
)

ai_provider_latency_seconds = Histogram(
    "ai_provider_latency_seconds",
    "Provider call latency in seconds",
    ["provider"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 30.0],
    registry=registry,
)

ai_provider_healthy = Gauge(
    "ai_provider_healthy",
    "Whether a provider is considered healthy (1 = healthy, 0 = unhealthy)",
    ["provider"],
    registry=registry,
)

ai_tokens_total = Counter(
    "ai_tokens_total",
    "Total number of tokens consumed",
    ["provider", "model"],
    registry=registry,
)

ai_cost_cents_total = Counter(
    "ai_cost_cents_total",
    "Total provider cost in cents",
    ["provider", "model"],
    registry=registry,
)

# ============================================================================
# RESILIENCE METRICS
# ============================================================================

ai_errors_total = Counter(
    "ai_errors_total",
    "Total number of classified gateway errors",
    ["code"],
    registry=registry,
)

ai_retries_total = Counter(
    "ai_retries_total",
    "Total number of retry attempts",
    ["operation"],
    registry=registry,
)

ai_circuit_breaker_state = Gauge(
    "ai_circuit_breaker_state",
    "Circuit breaker state (0 = closed, 1 = half-open, 2 = open)",
    ["name"],
    registry=registry,
)

# ============================================================================
# COST METRICS
# ============================================================================

ai_optimizations_applied_total = Counter(
    "ai_optimizations_applied_total",
    "Total number of cost optimization rules applied",
    ["rule"],
    registry=registry,
)

ai_budget_alerts_total = Counter(
    "ai_budget_alerts_total",
    "Total number of budget alerts raised",
    ["level", "period"],
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)

_BREAKER_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Replaces dynamic segments with placeholders to avoid high cardinality.

    Examples:
        /admin/costs/user123 -> /admin/costs/{user_id}
        /ai/process?debug=1 -> /ai/process
    """
    if "?" in path:
        path = path.split("?")[0]

    if path.startswith("/admin/costs/"):
        return "/admin/costs/{user_id}"

    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Record HTTP request metrics (RED metrics).

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request path (normalized here)
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_ai_request(agent_type: str, outcome: str, duration_seconds: float) -> None:
    ai_requests_total.labels(agent_type=agent_type, outcome=outcome).inc()
    ai_request_duration_seconds.labels(agent_type=agent_type).observe(duration_seconds)


def record_cache_hit(agent_type: str, match: str = "exact") -> None:
    """
    Record a semantic cache hit.

    Args:
        agent_type: Agent type of the request
        match: "exact" for fingerprint matches, "semantic" for similarity matches
    """
    ai_cache_hits_total.labels(agent_type=agent_type, match=match).inc()


def record_cache_miss(agent_type: str) -> None:
    ai_cache_misses_total.labels(agent_type=agent_type).inc()


def record_cache_eviction(reason: str, count: int = 1) -> None:
    if count > 0:
        ai_cache_evictions_total.labels(reason=reason).inc(count)


def update_cache_size(size: int) -> None:
    ai_cache_size.set(size)


def record_rate_limit_denial(scope: str) -> None:
    ai_rate_limit_denials_total.labels(scope=scope).inc()


def record_provider_call(
    provider: str,
    model: str,
    success: bool,
    duration_seconds: float,
) -> None:
    """
    Record a single provider invocation (one retry attempt).

    Args:
        provider: Provider name (e.g. "claude", "openai")
        model: Model id
        success: Whether the call returned a response
        duration_seconds: Wall-clock time of the attempt
    """
    ai_provider_calls_total.labels(
        provider=provider,
        model=model,
        status="success" if success else "error",
    ).inc()
    ai_provider_latency_seconds.labels(provider=provider).observe(duration_seconds)


def record_tokens_and_cost(provider: str, model: str, tokens: int, cost_cents: float) -> None:
    if tokens > 0:
        ai_tokens_total.labels(provider=provider, model=model).inc(tokens)
    if cost_cents > 0:
        ai_cost_cents_total.labels(provider=provider, model=model).inc(cost_cents)


def set_provider_health(provider: str, healthy: bool) -> None:
    ai_provider_healthy.labels(provider=provider).set(1 if healthy else 0)


def record_gateway_error(code: str) -> None:
    ai_errors_total.labels(code=code).inc()


def record_retry(operation: str) -> None:
    ai_retries_total.labels(operation=operation).inc()


def set_circuit_breaker_state(name: str, state: str) -> None:
    """
    Publish a circuit breaker state.

    Args:
        name: Breaker name
        state: "closed", "half_open" or "open"
    """
    ai_circuit_breaker_state.labels(name=name).set(_BREAKER_STATE_VALUES.get(state, 0))


def record_optimization(rule: str) -> None:
    ai_optimizations_applied_total.labels(rule=rule).inc()


def record_budget_alert(level: str, period: str) -> None:
    ai_budget_alerts_total.labels(level=level, period=period).inc()


def update_resource_metrics() -> None:
    """
    Update system resource metrics (CPU, memory).

    Called on-demand when metrics are scraped.
    """
    try:
        system_cpu_usage_percent.set(psutil.cpu_percent(interval=None))
        system_memory_usage_bytes.set(psutil.virtual_memory().used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """
    Get Prometheus metrics in text format.

    Returns:
        Prometheus metrics text format
    """
    update_resource_metrics()

    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
