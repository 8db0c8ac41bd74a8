"""
Pre-flight cost optimization and budget tracking.

Rules are evaluated in descending priority and are cumulative:

| priority | rule                      | condition                               | action                         | savings |
|----------|---------------------------|-----------------------------------------|--------------------------------|---------|
| 9        | free_tier_cost_control    | free tier and monthly spend > $5        | cheaper model                  | 40%     |
| 8        | high_volume               | > 50 requests in the last hour          | aggressive caching, <=500 tok  | 30%     |
| 7        | non_urgent_batching       | batch urgency                           | deferred execution             | 25%     |
| 6        | large_input_compression   | input JSON > 5000 chars                 | prompt compression             | 20%     |
| 5        | off_peak_processing       | off-peak and not immediate              | cheaper model                  | 15%     |

Optimization may change the model, token ceiling and execution flags of a
request; it never changes its agent type or owner. Budget alerts are
advisory and never block a request.
"""
import math
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from ai_gateway.core.logging import get_logger
from ai_gateway.core.metrics import record_budget_alert, record_optimization
from ai_gateway.services.ai.catalog import (
    AI_MODELS,
    cheaper_alternatives,
    get_agent_config,
    get_model,
    get_provider_config,
    is_suitable_model,
    models_for_agent,
)
from ai_gateway.services.ai.rate_limiter import resolve_user_tier
from ai_gateway.services.ai.schema import AgentType, AIModel, AIRequest, Priority, Urgency, UserTier
from ai_gateway.services.ai.semantic_cache import canonical_input

logger = get_logger(__name__)

CHARS_PER_TOKEN = 4
DEFAULT_OUTPUT_TOKENS = 1000
LARGE_INPUT_CHARS = 5000
HIGH_VOLUME_REQUESTS = 50
FREE_TIER_SPEND_THRESHOLD = 5.0  # dollars per month
REDUCED_MAX_TOKENS = 500
COMPRESSION_RATIO = 0.8
LEDGER_SIZE = 1000

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS
MONTH_SECONDS = 30 * DAY_SECONDS

PERIOD_SECONDS: Dict[str, int] = {
    "hourly": HOUR_SECONDS,
    "daily": DAY_SECONDS,
    "monthly": MONTH_SECONDS,
}

# Dollars per period.
BUDGETS: Dict[UserTier, Dict[str, float]] = {
    UserTier.FREE: {"hourly": 0.08, "daily": 2.0, "monthly": 20.0},
    UserTier.PREMIUM: {"hourly": 0.42, "daily": 10.0, "monthly": 100.0},
    UserTier.ENTERPRISE: {"hourly": 2.08, "daily": 50.0, "monthly": 1000.0},
}

PRIORITY_URGENCY: Dict[Priority, Urgency] = {
    Priority.HIGH: Urgency.IMMEDIATE,
    Priority.MEDIUM: Urgency.NORMAL,
    Priority.LOW: Urgency.BATCH,
}

ALERT_RECOMMENDATIONS: Dict[str, List[str]] = {
    "budget_exceeded": [
        "Consider upgrading your plan for higher limits",
        "Implement more aggressive caching",
        "Use lower-cost models for non-critical requests",
    ],
    "critical": [
        "Monitor usage closely",
        "Enable cost optimization features",
        "Consider batching non-urgent requests",
    ],
    "warning": [
        "Review recent usage patterns",
        "Consider optimizing high-cost operations",
    ],
}
_ALERT_RANK = {"warning": 1, "critical": 2, "budget_exceeded": 3}


@dataclass
class OptimizationContext:
    user_tier: UserTier
    monthly_spend: float  # dollars, last 30 days
    request_volume: int  # requests in the last hour, excluding the current one
    time_of_day: str  # "peak" or "off_peak"
    urgency: Urgency


@dataclass
class AppliedRule:
    name: str
    action: str
    expected_savings_pct: int
    recommendation: str
    risk: str


@dataclass
class OptimizationResult:
    optimized_request: AIRequest
    estimated_savings: float  # cents
    original_cost_cents: float
    optimized_cost_cents: float
    warnings: List[str] = field(default_factory=list)
    applied_rules: List[AppliedRule] = field(default_factory=list)

    @property
    def savings_percentage(self) -> float:
        if self.original_cost_cents <= 0:
            return 0.0
        return self.estimated_savings / self.original_cost_cents * 100.0


@dataclass
class BudgetAlert:
    level: str  # "warning", "critical", "budget_exceeded"
    period: str  # "hourly", "daily", "monthly"
    limit: float  # dollars
    current: float  # dollars
    utilization_pct: float
    recommendations: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "period": self.period,
            "limit": self.limit,
            "current": round(self.current, 6),
            "utilization_pct": round(self.utilization_pct, 2),
            "recommendations": list(self.recommendations),
        }


@dataclass
class LedgerEntry:
    timestamp: float
    cost_cents: float
    agent_type: str
    model: str


def estimate_input_tokens(request: AIRequest, compress: bool = False) -> int:
    tokens = math.ceil(len(canonical_input(request.input_data)) / CHARS_PER_TOKEN)
    if compress:
        tokens = math.ceil(tokens * COMPRESSION_RATIO)
    return tokens


def resolve_model(request: AIRequest) -> AIModel:
    """Model a request would run on: its hint when suitable for the agent, else the agent default."""
    if is_suitable_model(request.model_hint, request.agent_type):
        return get_model(request.model_hint)
    return get_model(get_agent_config(request.agent_type).default_model) or AI_MODELS[0]


def estimate_cost_cents(request: AIRequest, model: Optional[AIModel] = None) -> float:
    """(input tokens + max tokens) * cost per token, in cents."""
    model = model or resolve_model(request)
    output_tokens = request.max_tokens or get_agent_config(request.agent_type).max_tokens or DEFAULT_OUTPUT_TOKENS
    input_tokens = estimate_input_tokens(request, compress=request.compress_input)
    return (input_tokens + output_tokens) * model.cost_per_token * 100.0


class CostOptimizer:
    """
    Request shaping plus a rolling per-user cost ledger.

    Args:
        clock: Returns epoch seconds (injectable for tests)
        peak_hours: [start, end) UTC hours considered peak
        tier_resolver: Maps a user id to its subscription tier
        latency_lookup: Returns the current latency estimate (ms) of a provider
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        peak_hours: Tuple[int, int] = (9, 17),
        tier_resolver: Callable[[str], UserTier] = resolve_user_tier,
        budgets: Optional[Dict[UserTier, Dict[str, float]]] = None,
        latency_lookup: Optional[Callable[[str], Optional[float]]] = None,
    ):
        self._clock = clock or time.time
        self.peak_hours = peak_hours
        self._tier_resolver = tier_resolver
        self.budgets = budgets or BUDGETS
        self.latency_lookup = latency_lookup

        self._ledger: Dict[str, Deque[LedgerEntry]] = {}
        self._recent_requests: Dict[str, Deque[float]] = {}
        self._alert_levels: Dict[Tuple[str, str], str] = {}
        self._lock = Lock()

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def time_of_day(self, now: Optional[float] = None) -> str:
        hour = datetime.fromtimestamp(self._clock() if now is None else now, tz=timezone.utc).hour
        start, end = self.peak_hours
        return "peak" if start <= hour < end else "off_peak"

    def _note_request(self, user_id: str, now: float) -> int:
        """Record a request for volume tracking; returns the prior hour's count."""
        with self._lock:
            recent = self._recent_requests.setdefault(user_id, deque())
            while recent and recent[0] <= now - HOUR_SECONDS:
                recent.popleft()
            volume = len(recent)
            recent.append(now)
            return volume

    def get_spend(self, user_id: str, period: str) -> float:
        """Spend in dollars over the trailing period."""
        cutoff = self._clock() - PERIOD_SECONDS[period]
        with self._lock:
            entries = list(self._ledger.get(user_id, ()))
        return sum(e.cost_cents for e in entries if e.timestamp > cutoff) / 100.0

    def build_context(self, request: AIRequest) -> OptimizationContext:
        now = self._clock()
        volume = self._note_request(request.user_id, now)
        return OptimizationContext(
            user_tier=self._tier_resolver(request.user_id),
            monthly_spend=self.get_spend(request.user_id, "monthly"),
            request_volume=volume,
            time_of_day=self.time_of_day(now),
            urgency=PRIORITY_URGENCY[request.priority],
        )

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def _cheaper_model(self, request: AIRequest) -> Optional[AIModel]:
        current = resolve_model(request)
        candidates = cheaper_alternatives(current, request.agent_type)
        if not candidates:
            return None
        return self.select_cost_effective_model(request.agent_type, "cost", candidates=candidates)

    def optimize(
        self,
        request: AIRequest,
        context: Optional[OptimizationContext] = None,
    ) -> OptimizationResult:
        """
        Shape a request for cost. Returns the (possibly unchanged) request,
        estimated savings in cents and one warning per applied rule.
        """
        context = context or self.build_context(request)
        original_cost = estimate_cost_cents(request)
        optimized = request
        applied: List[AppliedRule] = []

        if context.user_tier == UserTier.FREE and context.monthly_spend > FREE_TIER_SPEND_THRESHOLD:
            cheaper = self._cheaper_model(optimized)
            if cheaper is not None:
                optimized = optimized.model_copy(update={"model_hint": cheaper.id})
                applied.append(AppliedRule(
                    name="free_tier_cost_control",
                    action="use_cheaper_model",
                    expected_savings_pct=40,
                    recommendation=f"Switched to {cheaper.name} for cost savings",
                    risk="cheaper model may reduce response quality",
                ))

        if context.request_volume > HIGH_VOLUME_REQUESTS:
            ceiling = optimized.max_tokens or get_agent_config(optimized.agent_type).max_tokens or DEFAULT_OUTPUT_TOKENS
            optimized = optimized.model_copy(update={
                "max_tokens": min(ceiling, REDUCED_MAX_TOKENS),
                "aggressive_caching": True,
            })
            applied.append(AppliedRule(
                name="high_volume",
                action="enable_aggressive_caching",
                expected_savings_pct=30,
                recommendation="Enabled aggressive caching and reduced token limit",
                risk=f"responses are capped at {REDUCED_MAX_TOKENS} tokens and may be truncated",
            ))

        if context.urgency == Urgency.BATCH:
            optimized = optimized.model_copy(update={"deferred": True})
            applied.append(AppliedRule(
                name="non_urgent_batching",
                action="batch_requests",
                expected_savings_pct=25,
                recommendation="Request marked for batch processing",
                risk="batched requests have higher latency",
            ))

        if len(canonical_input(request.input_data)) > LARGE_INPUT_CHARS:
            optimized = optimized.model_copy(update={"compress_input": True})
            applied.append(AppliedRule(
                name="large_input_compression",
                action="compress_prompt",
                expected_savings_pct=20,
                recommendation="Applied prompt compression to reduce token usage",
                risk="prompt compression may drop context and reduce response quality",
            ))

        if context.time_of_day == "off_peak" and context.urgency != Urgency.IMMEDIATE:
            cheaper = self._cheaper_model(optimized)
            if cheaper is not None:
                optimized = optimized.model_copy(update={"model_hint": cheaper.id})
                applied.append(AppliedRule(
                    name="off_peak_processing",
                    action="use_cheaper_model",
                    expected_savings_pct=15,
                    recommendation=f"Switched to {cheaper.name} during off-peak hours",
                    risk="cheaper model may reduce response quality",
                ))

        optimized_cost = estimate_cost_cents(optimized)
        if optimized.deferred:
            optimized_cost *= 0.75

        warnings = [
            f"{rule.name}: {rule.recommendation} (expected savings {rule.expected_savings_pct}%; {rule.risk})"
            for rule in applied
        ]
        for rule in applied:
            record_optimization(rule.name)

        if applied:
            logger.info(
                "cost_optimization_applied",
                request_id=request.id,
                rules=[r.name for r in applied],
                original_cost_cents=round(original_cost, 6),
                optimized_cost_cents=round(optimized_cost, 6),
                model_hint=optimized.model_hint,
            )

        return OptimizationResult(
            optimized_request=optimized,
            estimated_savings=max(0.0, original_cost - optimized_cost),
            original_cost_cents=original_cost,
            optimized_cost_cents=optimized_cost,
            warnings=warnings,
            applied_rules=applied,
        )

    def select_cost_effective_model(
        self,
        agent_type: AgentType,
        priority: str = "cost",
        candidates: Optional[Sequence[AIModel]] = None,
    ) -> AIModel:
        """
        Score candidate models on normalized cost, quality and latency.

        The dimension named by `priority` ("cost", "quality", "speed") weighs
        0.6; the others weigh cost 0.2, quality 0.3, speed 0.2. Provider
        reliability adds a 0.2-weighted bonus. Ties go to the cheaper model.
        """
        if priority not in ("cost", "quality", "speed"):
            raise ValueError(f"Unknown priority: {priority}")

        pool = list(candidates) if candidates is not None else models_for_agent(agent_type)
        if not pool:
            return AI_MODELS[0]

        def latency(model: AIModel) -> float:
            observed = self.latency_lookup(model.provider) if self.latency_lookup else None
            if observed:
                return observed
            provider = get_provider_config(model.provider)
            return provider.base_latency_ms if provider else 3000.0

        min_cost = min(m.cost_per_token for m in pool) or 1e-12
        min_latency = min(latency(m) for m in pool)
        weights = {"cost": 0.2, "quality": 0.3, "speed": 0.2}
        weights[priority] = 0.6

        def score(model: AIModel) -> float:
            cost_score = min_cost / model.cost_per_token if model.cost_per_token > 0 else 1.0
            speed_score = min_latency / latency(model)
            provider = get_provider_config(model.provider)
            reliability = provider.reliability if provider else 0.0
            return (
                weights["cost"] * cost_score
                + weights["quality"] * model.quality
                + weights["speed"] * speed_score
                + 0.2 * reliability
            )

        return sorted(pool, key=lambda m: (-round(score(m), 9), m.cost_per_token))[0]

    # ------------------------------------------------------------------
    # Ledger and budgets
    # ------------------------------------------------------------------

    def record_cost(
        self,
        user_id: str,
        cost_cents: float,
        agent_type: AgentType,
        model: str,
    ) -> List[BudgetAlert]:
        """Append to the user's ledger and return the budget alerts now in effect."""
        agent = agent_type.value if isinstance(agent_type, AgentType) else str(agent_type)
        with self._lock:
            ledger = self._ledger.setdefault(user_id, deque(maxlen=LEDGER_SIZE))
            ledger.append(LedgerEntry(self._clock(), cost_cents, agent, model))
        return self.check_budget(user_id)

    def check_budget(self, user_id: str) -> List[BudgetAlert]:
        tier = self._tier_resolver(user_id)
        alerts: List[BudgetAlert] = []
        for period, limit in self.budgets[tier].items():
            current = self.get_spend(user_id, period)
            utilization = current / limit * 100.0 if limit > 0 else 0.0
            if utilization >= 100:
                level = "budget_exceeded"
            elif utilization >= 80:
                level = "critical"
            elif utilization >= 60:
                level = "warning"
            else:
                self._alert_levels.pop((user_id, period), None)
                continue

            alerts.append(BudgetAlert(
                level=level,
                period=period,
                limit=limit,
                current=current,
                utilization_pct=utilization,
                recommendations=list(ALERT_RECOMMENDATIONS[level]),
            ))
            previous = self._alert_levels.get((user_id, period))
            if previous is None or _ALERT_RANK[level] > _ALERT_RANK[previous]:
                self._alert_levels[(user_id, period)] = level
                record_budget_alert(level, period)
                logger.warning(
                    "budget_alert",
                    user_id=user_id,
                    tier=tier.value,
                    level=level,
                    period=period,
                    limit=limit,
                    current=round(current, 6),
                    utilization_pct=round(utilization, 2),
                )
        return alerts

    def cleanup(self) -> int:
        """
        Prune per-user state that no window can see any more.

        Ledger entries older than a month, request timestamps older than an
        hour and alert levels whose period holds no spend are dropped, along
        with users left without any state.

        Returns:
            Number of users removed entirely
        """
        now = self._clock()
        with self._lock:
            before = set(self._ledger) | set(self._recent_requests)
            for user_id in list(self._ledger):
                ledger = self._ledger[user_id]
                while ledger and ledger[0].timestamp <= now - MONTH_SECONDS:
                    ledger.popleft()
                if not ledger:
                    del self._ledger[user_id]

            for user_id in list(self._recent_requests):
                recent = self._recent_requests[user_id]
                while recent and recent[0] <= now - HOUR_SECONDS:
                    recent.popleft()
                if not recent:
                    del self._recent_requests[user_id]

            for user_id, period in list(self._alert_levels):
                ledger = self._ledger.get(user_id)
                if not ledger or ledger[-1].timestamp <= now - PERIOD_SECONDS[period]:
                    del self._alert_levels[(user_id, period)]

            removed_users = len(before - (set(self._ledger) | set(self._recent_requests)))

        if removed_users:
            logger.info("cost_state_cleaned", removed_users=removed_users)
        return removed_users

    def analyze_spending(self, user_id: str, timeframe: str = "month") -> Dict[str, Any]:
        """Totals by agent and model, daily trend and a 30-day projection (all in cents)."""
        days = {"day": 1, "week": 7, "month": 30}.get(timeframe)
        if days is None:
            raise ValueError(f"Unknown timeframe: {timeframe}")
        now = self._clock()
        cutoff = now - days * DAY_SECONDS
        with self._lock:
            entries = [e for e in self._ledger.get(user_id, ()) if e.timestamp > cutoff]

        total = sum(e.cost_cents for e in entries)
        by_agent: Dict[str, float] = {}
        by_model: Dict[str, float] = {}
        for entry in entries:
            by_agent[entry.agent_type] = by_agent.get(entry.agent_type, 0.0) + entry.cost_cents
            by_model[entry.model] = by_model.get(entry.model, 0.0) + entry.cost_cents

        trend = []
        for offset in range(days - 1, -1, -1):
            day_end = now - offset * DAY_SECONDS
            day_start = day_end - DAY_SECONDS
            trend.append({
                "date": datetime.fromtimestamp(day_end, tz=timezone.utc).date().isoformat(),
                "cost_cents": sum(e.cost_cents for e in entries if day_start < e.timestamp <= day_end),
            })

        projected = total / days * 30
        recommendations: List[str] = []
        if projected > 5000:
            recommendations.append("Consider upgrading to enterprise plan for better rates")
        if by_agent:
            top_agent, top_cost = max(by_agent.items(), key=lambda item: item[1])
            if total > 0 and top_cost > total * 0.5:
                recommendations.append(f"{top_agent} accounts for over 50% of costs - optimize this agent's usage")
        recent = [day["cost_cents"] for day in trend[-7:]]
        if len(recent) > 1 and all(b >= a for a, b in zip(recent, recent[1:])) and recent[-1] > recent[0]:
            recommendations.append("Usage is trending upward - monitor spending closely")

        return {
            "user_id": user_id,
            "timeframe": timeframe,
            "total_cost_cents": total,
            "request_count": len(entries),
            "average_cost_cents": total / len(entries) if entries else 0.0,
            "cost_by_agent": by_agent,
            "cost_by_model": by_model,
            "trend": trend,
            "projected_monthly_cost_cents": projected,
            "recommendations": recommendations,
        }

    def get_efficiency_recommendations(self, user_id: str) -> Dict[str, List[str]]:
        tier = self._tier_resolver(user_id)
        monthly = self.get_spend(user_id, "monthly")
        with self._lock:
            recent = self._recent_requests.get(user_id, deque())
            volume = sum(1 for t in recent if t > self._clock() - HOUR_SECONDS)

        immediate: List[str] = []
        if tier == UserTier.FREE and monthly > 10:
            immediate.append("Consider upgrading to premium for better cost efficiency")
        if volume > 100:
            immediate.append("Enable request batching to reduce API overhead")
            immediate.append("Implement aggressive caching for repeated queries")
        if self.time_of_day() == "peak":
            immediate.append("Consider deferring non-urgent requests to off-peak hours")

        return {
            "immediate": immediate,
            "short_term": [
                "Analyze usage patterns to identify optimization opportunities",
                "Set up budget alerts to prevent overspending",
            ],
            "long_term": [
                "Pre-cache likely requests based on user behavior",
                "Evaluate local models for high-volume use cases",
            ],
        }
