"""
Tests for multi-scope admission control.
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from ai_gateway.services.ai.rate_limiter import (
    DAY,
    FIXED_WINDOW,
    MINUTE,
    SLIDING_WINDOW,
    TOKEN_BUCKET,
    RateLimiter,
    RateLimitRule,
    effective_limit,
    resolve_user_tier,
)
from ai_gateway.services.ai.schema import AgentType, Priority, UserTier
from conftest import FakeClock, make_request

COACH = AgentType.LEARNING_COACH
ANALYST = AgentType.ASSESSMENT_ANALYST


def test_resolve_user_tier():
    assert resolve_user_tier("enterprise_acme") == UserTier.ENTERPRISE
    assert resolve_user_tier("premium_42") == UserTier.PREMIUM
    assert resolve_user_tier("user_1") == UserTier.FREE


def test_effective_limit_is_at_least_one():
    assert effective_limit(RateLimitRule(30, MINUTE), Priority.LOW) == 15
    assert effective_limit(RateLimitRule(30, MINUTE), Priority.HIGH) == 45
    assert effective_limit(RateLimitRule(1, MINUTE), Priority.LOW) == 1


def test_unknown_strategy_is_rejected():
    with pytest.raises(ValueError):
        RateLimiter(strategy="leaky_bucket")


def test_free_user_daily_limit():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    request = make_request(user_id="user_1")

    results = [limiter.check_and_consume(request) for _ in range(21)]

    assert all(r.allowed for r in results[:20])
    denied = results[20]
    assert denied.allowed is False
    assert denied.scope == "user"
    assert denied.limit == 20
    assert denied.reset_time == clock.now + DAY


def test_denial_consumes_nothing():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, agent_limit=RateLimitRule(2, MINUTE))

    assert limiter.check_and_consume_for("user_1", COACH).allowed
    assert limiter.check_and_consume_for("user_1", COACH).allowed
    denied = limiter.check_and_consume_for("user_1", COACH)

    assert denied.allowed is False
    assert denied.scope == "agent"
    status = limiter.get_status("user_1", COACH)
    assert status["user"]["used"] == 2
    assert status["global"]["used"] == 2

    # Another agent type still has headroom and shares the user budget.
    assert limiter.check_and_consume_for("user_1", ANALYST).allowed
    assert limiter.get_status("user_1", ANALYST)["user"]["used"] == 3


def test_priority_scales_every_scope():
    limiter = RateLimiter(clock=FakeClock(), global_limit=RateLimitRule(10, MINUTE))

    low = [limiter.check_and_consume_for(f"premium_{i}", COACH, Priority.LOW) for i in range(6)]
    assert [r.allowed for r in low] == [True] * 5 + [False]
    assert low[-1].scope == "global"

    high = [limiter.check_and_consume_for(f"premium_{i}", COACH, Priority.HIGH) for i in range(11)]
    assert [r.allowed for r in high] == [True] * 10 + [False]


def test_limiting_scope_is_latest_reset():
    clock = FakeClock()
    limiter = RateLimiter(
        clock=clock,
        global_limit=RateLimitRule(2, MINUTE),
        tier_limits={
            UserTier.FREE: RateLimitRule(2, DAY),
            UserTier.PREMIUM: RateLimitRule(50, MINUTE),
            UserTier.ENTERPRISE: RateLimitRule(200, MINUTE),
        },
    )
    limiter.check_and_consume_for("user_1", COACH)
    limiter.check_and_consume_for("user_1", COACH)

    denied = limiter.check_and_consume_for("user_1", COACH)

    assert denied.scope == "user"
    assert denied.reset_time == clock.now + DAY


def test_sliding_window_never_exceeds_limit():
    clock = FakeClock()
    limiter = RateLimiter(strategy=SLIDING_WINDOW, clock=clock, agent_limit=RateLimitRule(3, MINUTE))
    start = clock.now
    admitted = []

    for _ in range(30):
        if limiter.check_and_consume_for("premium_1", COACH).allowed:
            admitted.append(clock.now)
        clock.advance(10)

    for t in admitted:
        in_window = [a for a in admitted if t - MINUTE < a <= t]
        assert len(in_window) <= 3
    assert admitted[:4] == [start, start + 10, start + 20, start + 60]


def test_sliding_window_reset_time():
    clock = FakeClock()
    limiter = RateLimiter(strategy=SLIDING_WINDOW, clock=clock, agent_limit=RateLimitRule(2, MINUTE))
    start = clock.now
    limiter.check_and_consume_for("premium_1", COACH)
    clock.advance(20)
    limiter.check_and_consume_for("premium_1", COACH)
    clock.advance(5)

    denied = limiter.check_and_consume_for("premium_1", COACH)

    assert denied.allowed is False
    assert denied.reset_time == start + MINUTE


def test_fixed_window_resets_on_boundary():
    clock = FakeClock()
    limiter = RateLimiter(strategy=FIXED_WINDOW, clock=clock, global_limit=RateLimitRule(3, MINUTE))
    start = clock.now

    results = [limiter.check_and_consume_for(f"premium_{i}", COACH) for i in range(4)]
    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[-1].reset_time == start + MINUTE

    clock.advance(MINUTE)
    assert limiter.check_and_consume_for("premium_9", COACH).allowed


def test_token_bucket_refills_gradually():
    clock = FakeClock()
    limiter = RateLimiter(strategy=TOKEN_BUCKET, clock=clock, agent_limit=RateLimitRule(4, MINUTE))
    start = clock.now

    results = [limiter.check_and_consume_for("premium_1", COACH) for _ in range(5)]
    assert [r.allowed for r in results] == [True] * 4 + [False]
    assert results[-1].reset_time == start + 15

    clock.advance(15)
    assert limiter.check_and_consume_for("premium_1", COACH).allowed
    assert not limiter.check_and_consume_for("premium_1", COACH).allowed


def test_get_status_does_not_consume():
    limiter = RateLimiter(clock=FakeClock())
    limiter.check_and_consume_for("premium_1", COACH)

    first = limiter.get_status("premium_1", COACH)
    second = limiter.get_status("premium_1", COACH)

    assert first == second
    assert first["user"]["used"] == 1
    assert first["user"]["remaining"] == 49
    assert first["agent"]["limited"] is False


def test_clear_limits_for_one_user():
    limiter = RateLimiter(clock=FakeClock(), agent_limit=RateLimitRule(1, MINUTE))
    limiter.check_and_consume_for("user_1", COACH)
    limiter.check_and_consume_for("user_1", ANALYST)
    limiter.check_and_consume_for("user_2", COACH)
    assert not limiter.check_and_consume_for("user_1", COACH).allowed

    removed = limiter.clear_limits("user_1")

    assert removed == 3
    assert limiter.check_and_consume_for("user_1", COACH).allowed
    assert not limiter.check_and_consume_for("user_2", COACH).allowed


def test_clear_all_limits():
    limiter = RateLimiter(clock=FakeClock())
    limiter.check_and_consume_for("user_1", COACH)

    assert limiter.clear_limits() == 3
    assert limiter.get_stats()["total_entries"] == 0


def test_cleanup_removes_idle_entries():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, retention_seconds=3600)
    limiter.check_and_consume_for("premium_1", COACH)
    clock.advance(1800)
    limiter.check_and_consume_for("premium_2", COACH)
    clock.advance(1900)

    # premium_1's entries are idle; global was touched by premium_2.
    assert limiter.cleanup() == 2
    assert limiter.get_stats()["entries_by_scope"] == {"global": 1, "user": 1, "agent": 1}


def test_cleanup_keeps_entries_whose_window_is_still_open():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, retention_seconds=3600)
    for _ in range(20):
        assert limiter.check_and_consume_for("user_1", COACH).allowed
    assert not limiter.check_and_consume_for("user_1", COACH).allowed

    clock.advance(2 * 3600)
    limiter.cleanup()

    result = limiter.check_and_consume_for("user_1", COACH)
    assert not result.allowed
    assert result.scope == "user"
    assert limiter.get_status("user_1", COACH)["user"]["used"] == 20


def test_cleanup_drops_daily_entry_after_its_window():
    clock = FakeClock()
    limiter = RateLimiter(clock=clock, retention_seconds=3600)
    limiter.check_and_consume_for("user_1", COACH)

    clock.advance(DAY + 1)

    assert limiter.cleanup() == 3
    assert limiter.get_stats()["total_entries"] == 0


def test_stats_track_denials():
    limiter = RateLimiter(clock=FakeClock(), agent_limit=RateLimitRule(1, MINUTE))
    limiter.check_and_consume_for("user_1", COACH)
    limiter.check_and_consume_for("user_1", COACH)

    stats = limiter.get_stats()

    assert stats["strategy"] == SLIDING_WINDOW
    assert stats["total_checks"] == 2
    assert stats["total_denied"] == 1
    assert stats["denials_by_scope"] == {"agent": 1}


@pytest.mark.parametrize("strategy", [SLIDING_WINDOW, FIXED_WINDOW, TOKEN_BUCKET])
def test_concurrent_admission_never_over_admits(strategy):
    limiter = RateLimiter(strategy=strategy, clock=FakeClock())

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: limiter.check_and_consume_for("user_1", COACH), range(60)))

    assert sum(1 for r in results if r.allowed) == 20
    assert limiter.get_status("user_1", COACH)["user"]["used"] == 20
