"""
Tests for request cost shaping, model scoring and budget tracking.
"""
from unittest.mock import MagicMock

import pytest

from ai_gateway.services.ai import cost_optimizer as cost_module
from ai_gateway.services.ai.catalog import CLAUDE_HAIKU, CLAUDE_SONNET, GPT_4O, GPT_35_TURBO, get_model
from ai_gateway.services.ai.cost_optimizer import (
    CostOptimizer,
    OptimizationContext,
    estimate_cost_cents,
    estimate_input_tokens,
    resolve_model,
)
from ai_gateway.services.ai.schema import AgentType, AIRequest, Priority, Urgency, UserTier
from conftest import OFF_PEAK_TIME, FakeClock, make_request


def _context(**overrides):
    values = {
        "user_tier": UserTier.PREMIUM,
        "monthly_spend": 0.0,
        "request_volume": 0,
        "time_of_day": "peak",
        "urgency": Urgency.NORMAL,
    }
    values.update(overrides)
    return OptimizationContext(**values)


@pytest.fixture
def optimizer(clock):
    return CostOptimizer(clock=clock)


def test_estimate_cost_uses_agent_defaults():
    request = make_request()

    expected = (estimate_input_tokens(request) + 4000) * 0.000003 * 100

    assert estimate_cost_cents(request) == pytest.approx(expected)
    assert estimate_cost_cents(request, get_model(GPT_4O)) == pytest.approx(expected * 2.5 / 3)


def test_resolve_model_honours_only_suitable_hints():
    assert resolve_model(make_request(model_hint=GPT_4O)).id == GPT_4O
    assert resolve_model(make_request(model_hint=CLAUDE_HAIKU)).id == CLAUDE_SONNET
    assert resolve_model(make_request(model_hint="gpt-99")).id == CLAUDE_SONNET
    assert resolve_model(make_request(agent_type=AgentType.PROGRESS_TRACKER, model_hint=GPT_35_TURBO)).id == GPT_35_TURBO


def test_time_of_day_uses_utc_peak_hours(optimizer):
    assert optimizer.time_of_day() == "peak"
    assert optimizer.time_of_day(OFF_PEAK_TIME) == "off_peak"


def test_no_rules_for_plain_request(optimizer):
    request = make_request(user_id="premium_1")

    result = optimizer.optimize(request, _context())

    assert result.optimized_request is request
    assert result.applied_rules == []
    assert result.warnings == []
    assert result.estimated_savings == 0.0


def test_large_input_is_compressed(optimizer):
    request = AIRequest(
        user_id="premium_1",
        agent_type=AgentType.ASSESSMENT_ANALYST,
        input_data={"notes": "reflection " * 600},
    )

    result = optimizer.optimize(request)

    assert [r.name for r in result.applied_rules] == ["large_input_compression"]
    assert result.optimized_request.compress_input is True
    assert result.optimized_request.model_hint is None
    assert result.estimated_savings > 0
    assert result.optimized_cost_cents < result.original_cost_cents
    assert "prompt compression may drop context" in result.warnings[0]
    assert "expected savings 20%" in result.warnings[0]


def test_free_tier_over_threshold_gets_cheaper_model(optimizer):
    optimizer.record_cost("user_1", 600.0, AgentType.ASSESSMENT_ANALYST, CLAUDE_SONNET)
    request = make_request(user_id="user_1")

    result = optimizer.optimize(request)

    assert result.applied_rules[0].name == "free_tier_cost_control"
    assert result.optimized_request.model_hint == GPT_4O
    assert result.optimized_request.agent_type == request.agent_type
    assert result.optimized_request.user_id == request.user_id
    assert result.estimated_savings > 0


def test_high_volume_caps_tokens(optimizer):
    request = make_request(user_id="premium_1")

    result = optimizer.optimize(request, _context(request_volume=51))

    optimized = result.optimized_request
    assert optimized.max_tokens == 500
    assert optimized.aggressive_caching is True
    assert [r.name for r in result.applied_rules] == ["high_volume"]


def test_high_volume_counts_prior_hour(optimizer, clock):
    for _ in range(51):
        optimizer.build_context(make_request(user_id="premium_1"))
        clock.advance(1)

    assert optimizer.build_context(make_request(user_id="premium_1")).request_volume == 51
    clock.advance(3599)
    assert optimizer.build_context(make_request(user_id="premium_1")).request_volume == 1


def test_low_priority_is_deferred(optimizer):
    request = make_request(user_id="premium_1", priority=Priority.LOW)

    result = optimizer.optimize(request)

    assert result.optimized_request.deferred is True
    assert result.savings_percentage == pytest.approx(25.0)


def test_off_peak_downgrades_non_urgent(clock):
    clock.now = OFF_PEAK_TIME
    optimizer = CostOptimizer(clock=clock)

    normal = optimizer.optimize(make_request(user_id="premium_1"))
    urgent = optimizer.optimize(make_request(user_id="premium_1", priority=Priority.HIGH))

    assert normal.optimized_request.model_hint == GPT_4O
    assert normal.applied_rules[-1].name == "off_peak_processing"
    assert urgent.applied_rules == []


def test_off_peak_skipped_when_already_cheapest(clock):
    clock.now = OFF_PEAK_TIME
    optimizer = CostOptimizer(clock=clock)

    result = optimizer.optimize(make_request(user_id="premium_1", agent_type=AgentType.PROGRESS_TRACKER))

    assert result.applied_rules == []


def test_rules_are_cumulative(optimizer):
    request = make_request(user_id="premium_1", priority=Priority.LOW)

    result = optimizer.optimize(
        request,
        _context(request_volume=60, time_of_day="off_peak", urgency=Urgency.BATCH),
    )

    assert [r.name for r in result.applied_rules] == [
        "high_volume",
        "non_urgent_batching",
        "off_peak_processing",
    ]
    assert len(result.warnings) == 3
    optimized = result.optimized_request
    assert optimized.max_tokens == 500
    assert optimized.deferred is True
    assert optimized.model_hint == GPT_4O


class TestModelSelection:
    def test_priorities(self, optimizer):
        agent = AgentType.PROGRESS_TRACKER

        assert optimizer.select_cost_effective_model(agent, "cost").id == CLAUDE_HAIKU
        assert optimizer.select_cost_effective_model(agent, "quality").id == CLAUDE_HAIKU
        assert optimizer.select_cost_effective_model(agent, "speed").id == GPT_35_TURBO

    def test_observed_latency_changes_speed_ranking(self, clock):
        optimizer = CostOptimizer(clock=clock, latency_lookup=lambda p: 500.0 if p == "claude" else None)

        assert optimizer.select_cost_effective_model(AgentType.PROGRESS_TRACKER, "speed").id == CLAUDE_HAIKU

    def test_explicit_candidates(self, optimizer):
        candidates = [get_model(CLAUDE_SONNET), get_model(GPT_4O)]

        assert optimizer.select_cost_effective_model(AgentType.ASSESSMENT_ANALYST, "cost", candidates).id == GPT_4O

    def test_unknown_priority(self, optimizer):
        with pytest.raises(ValueError):
            optimizer.select_cost_effective_model(AgentType.LEARNING_COACH, "vibes")


class TestBudgets:
    def test_free_tier_alerts(self, optimizer):
        alerts = optimizer.record_cost("user_1", 130.0, AgentType.LEARNING_COACH, GPT_4O)

        assert [(a.level, a.period) for a in alerts] == [("budget_exceeded", "hourly"), ("warning", "daily")]
        assert alerts[0].recommendations[0] == "Consider upgrading your plan for higher limits"
        assert alerts[1].to_dict()["utilization_pct"] == 65.0

    def test_premium_tier_alerts(self, optimizer):
        alerts = optimizer.record_cost("premium_1", 30.0, AgentType.LEARNING_COACH, GPT_4O)

        assert [(a.level, a.period) for a in alerts] == [("warning", "hourly")]

    def test_alert_metric_only_on_escalation(self, optimizer, monkeypatch):
        recorded = MagicMock()
        monkeypatch.setattr(cost_module, "record_budget_alert", recorded)

        optimizer.record_cost("user_1", 5.0, AgentType.LEARNING_COACH, GPT_4O)
        optimizer.record_cost("user_1", 1.0, AgentType.LEARNING_COACH, GPT_4O)
        optimizer.record_cost("user_1", 1.0, AgentType.LEARNING_COACH, GPT_4O)

        assert [c.args for c in recorded.call_args_list] == [("warning", "hourly"), ("critical", "hourly")]

    def test_spend_windows(self, optimizer, clock):
        optimizer.record_cost("premium_1", 20.0, AgentType.LEARNING_COACH, GPT_4O)
        clock.advance(2 * 3600)
        optimizer.record_cost("premium_1", 10.0, AgentType.LEARNING_COACH, GPT_4O)

        assert optimizer.get_spend("premium_1", "hourly") == pytest.approx(0.10)
        assert optimizer.get_spend("premium_1", "daily") == pytest.approx(0.30)


class TestCleanup:
    def test_drops_idle_request_volume(self, optimizer, clock):
        optimizer.build_context(make_request(user_id="user_2"))
        clock.advance(3601)

        assert optimizer.cleanup() == 1
        assert optimizer.build_context(make_request(user_id="user_2")).request_volume == 0

    def test_stale_alert_levels_are_reset(self, optimizer, clock, monkeypatch):
        recorded = MagicMock()
        monkeypatch.setattr(cost_module, "record_budget_alert", recorded)
        optimizer.record_cost("user_1", 5.0, AgentType.LEARNING_COACH, GPT_4O)
        clock.advance(2 * 3600)

        assert optimizer.cleanup() == 0
        optimizer.record_cost("user_1", 5.0, AgentType.LEARNING_COACH, GPT_4O)

        assert [c.args for c in recorded.call_args_list] == [("warning", "hourly"), ("warning", "hourly")]

    def test_drops_ledger_older_than_a_month(self, optimizer, clock):
        optimizer.record_cost("premium_1", 10.0, AgentType.LEARNING_COACH, GPT_4O)
        clock.advance(30 * 24 * 3600 + 1)

        assert optimizer.cleanup() == 1
        assert optimizer.get_spend("premium_1", "monthly") == 0.0
        assert optimizer.analyze_spending("premium_1", "month")["total_cost_cents"] == 0.0

    def test_keeps_recent_state(self, optimizer, clock):
        optimizer.record_cost("premium_1", 10.0, AgentType.LEARNING_COACH, GPT_4O)
        clock.advance(3600)

        assert optimizer.cleanup() == 0
        assert optimizer.get_spend("premium_1", "daily") == pytest.approx(0.10)


class TestSpendingAnalysis:
    def test_week(self, optimizer, clock):
        optimizer.record_cost("premium_1", 10.0, AgentType.LEARNING_COACH, GPT_4O)
        clock.advance(24 * 3600)
        optimizer.record_cost("premium_1", 30.0, AgentType.ASSESSMENT_ANALYST, CLAUDE_SONNET)

        report = optimizer.analyze_spending("premium_1", "week")

        assert report["total_cost_cents"] == pytest.approx(40.0)
        assert report["request_count"] == 2
        assert report["average_cost_cents"] == pytest.approx(20.0)
        assert report["cost_by_agent"] == {"learning_coach": 10.0, "assessment_analyst": 30.0}
        assert report["cost_by_model"] == {GPT_4O: 10.0, CLAUDE_SONNET: 30.0}
        assert [d["cost_cents"] for d in report["trend"]] == [0, 0, 0, 0, 0, 10.0, 30.0]
        assert report["projected_monthly_cost_cents"] == pytest.approx(40.0 / 7 * 30)
        assert any("assessment_analyst accounts for over 50%" in r for r in report["recommendations"])
        assert any("trending upward" in r for r in report["recommendations"])

    def test_empty_ledger(self, optimizer):
        report = optimizer.analyze_spending("user_9", "day")

        assert report["total_cost_cents"] == 0
        assert report["average_cost_cents"] == 0.0
        assert len(report["trend"]) == 1
        assert report["recommendations"] == []

    def test_unknown_timeframe(self, optimizer):
        with pytest.raises(ValueError):
            optimizer.analyze_spending("user_1", "year")


def test_efficiency_recommendations(optimizer):
    optimizer.record_cost("user_1", 1200.0, AgentType.LEARNING_COACH, GPT_4O)

    recommendations = optimizer.get_efficiency_recommendations("user_1")

    assert "Consider upgrading to premium for better cost efficiency" in recommendations["immediate"]
    assert "Consider deferring non-urgent requests to off-peak hours" in recommendations["immediate"]
    assert len(recommendations["short_term"]) == 2
    assert len(recommendations["long_term"]) == 2


def test_fake_clock_is_peak():
    assert CostOptimizer(clock=FakeClock()).time_of_day() == "peak"
