"""
Admission control for gateway requests.

Every request is checked against three scopes:
- global: shared by all users
- user: per user, limit depends on subscription tier
- agent: per (user, agent type)

Admission is all-or-nothing: budget is consumed from every scope or from
none. The check and the consumption happen under the shard locks of all
involved keys, acquired in a fixed order.

Strategies (one per deployment):
- token_bucket: refill floor(elapsed/window * max) tokens, capped at max
- sliding_window: timestamps newer than now - window, allowed iff count < max
- fixed_window: counter tied to floor(now/window), reset when the index advances

Priority scales the effective limit of every scope (low 0.5, medium 1.0, high 1.5).
"""
import math
import time
import zlib
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from ai_gateway.core.logging import get_logger
from ai_gateway.core.metrics import record_rate_limit_denial
from ai_gateway.services.ai.schema import AgentType, AIRequest, Priority, UserTier

logger = get_logger(__name__)

TOKEN_BUCKET = "token_bucket"
SLIDING_WINDOW = "sliding_window"
FIXED_WINDOW = "fixed_window"
STRATEGIES = (TOKEN_BUCKET, SLIDING_WINDOW, FIXED_WINDOW)

MINUTE = 60.0
DAY = 24 * 60 * 60.0


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_seconds: float


GLOBAL_LIMIT = RateLimitRule(max_requests=100, window_seconds=MINUTE)
AGENT_LIMIT = RateLimitRule(max_requests=30, window_seconds=MINUTE)
TIER_LIMITS: Dict[UserTier, RateLimitRule] = {
    UserTier.FREE: RateLimitRule(max_requests=20, window_seconds=DAY),
    UserTier.PREMIUM: RateLimitRule(max_requests=50, window_seconds=MINUTE),
    UserTier.ENTERPRISE: RateLimitRule(max_requests=200, window_seconds=MINUTE),
}
PRIORITY_MULTIPLIERS: Dict[Priority, float] = {
    Priority.LOW: 0.5,
    Priority.MEDIUM: 1.0,
    Priority.HIGH: 1.5,
}


def resolve_user_tier(user_id: str) -> UserTier:
    """Tier from the user id prefix (enterprise_*, premium_*); everyone else is free."""
    if user_id.startswith("enterprise_"):
        return UserTier.ENTERPRISE
    if user_id.startswith("premium_"):
        return UserTier.PREMIUM
    return UserTier.FREE


def effective_limit(rule: RateLimitRule, priority: Priority) -> int:
    return max(1, math.floor(rule.max_requests * PRIORITY_MULTIPLIERS[priority]))


@dataclass
class RateLimitResult:
    """
    Outcome of an admission check.

    On denial `scope` names the limiting scope and `reset_time` (epoch
    seconds) is when that scope admits again. On success `remaining` is the
    smallest headroom left across scopes.
    """
    allowed: bool
    remaining: int
    reset_time: float
    scope: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class RateLimitEntry:
    """Per-key limiter state; only the fields of the active strategy are used."""
    key: str
    scope: str
    last_activity: float
    window_seconds: float = 0.0
    tokens: float = 0.0
    last_refill: float = 0.0
    timestamps: Deque[float] = field(default_factory=deque)
    window_index: int = -1
    count: int = 0


@dataclass
class _Evaluation:
    scope: str
    key: str
    rule: RateLimitRule
    limit: int
    used: int
    reset_time: float

    @property
    def allowed(self) -> bool:
        return self.used < self.limit


class RateLimiter:
    """
    Multi-scope rate limiter with atomic check-and-consume.

    Args:
        strategy: token_bucket, sliding_window or fixed_window
        retention_seconds: Idle entries older than this are removed by cleanup()
        clock: Returns epoch seconds (injectable for tests)
        tier_resolver: Maps a user id to its subscription tier
        shards: Number of lock shards
    """

    def __init__(
        self,
        strategy: str = SLIDING_WINDOW,
        retention_seconds: float = 60 * 60,
        clock: Optional[Callable[[], float]] = None,
        tier_resolver: Callable[[str], UserTier] = resolve_user_tier,
        global_limit: RateLimitRule = GLOBAL_LIMIT,
        agent_limit: RateLimitRule = AGENT_LIMIT,
        tier_limits: Optional[Dict[UserTier, RateLimitRule]] = None,
        shards: int = 32,
    ):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown rate limit strategy: {strategy}")
        self.strategy = strategy
        self.retention_seconds = retention_seconds
        self._clock = clock or time.time
        self._tier_resolver = tier_resolver
        self.global_limit = global_limit
        self.agent_limit = agent_limit
        self.tier_limits = dict(tier_limits or TIER_LIMITS)

        self._entries: Dict[str, RateLimitEntry] = {}
        self._entries_lock = Lock()
        self._shards = [Lock() for _ in range(shards)]

        self._total_checks = 0
        self._total_denied = 0
        self._denials_by_scope: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Scope resolution
    # ------------------------------------------------------------------

    def _scopes(self, user_id: str, agent_type: AgentType) -> List[Tuple[str, str, RateLimitRule]]:
        agent = agent_type.value if isinstance(agent_type, AgentType) else str(agent_type)
        tier = self._tier_resolver(user_id)
        return [
            ("global", "global", self.global_limit),
            ("user", f"user:{user_id}", self.tier_limits[tier]),
            ("agent", f"agent:{user_id}:{agent}", self.agent_limit),
        ]

    def _shard_indexes(self, keys: List[str]) -> List[int]:
        return sorted({zlib.crc32(key.encode("utf-8")) % len(self._shards) for key in keys})

    def _get_entry(self, key: str, scope: str, rule: RateLimitRule, now: float) -> RateLimitEntry:
        with self._entries_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry(
                    key=key,
                    scope=scope,
                    last_activity=now,
                    window_seconds=rule.window_seconds,
                    tokens=float(rule.max_requests),
                    last_refill=now,
                )
                self._entries[key] = entry
            return entry

    def _peek_entry(self, key: str) -> Optional[RateLimitEntry]:
        with self._entries_lock:
            return self._entries.get(key)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _evaluate(
        self,
        scope: str,
        key: str,
        rule: RateLimitRule,
        limit: int,
        entry: Optional[RateLimitEntry],
        now: float,
    ) -> _Evaluation:
        """Current usage of a key. Normalizes the entry (refill/prune/roll) but never consumes."""
        window = rule.window_seconds

        if self.strategy == SLIDING_WINDOW:
            if entry is None:
                return _Evaluation(scope, key, rule, limit, 0, now + window)
            cutoff = now - window
            while entry.timestamps and entry.timestamps[0] <= cutoff:
                entry.timestamps.popleft()
            used = len(entry.timestamps)
            if used >= limit:
                # A slot frees up when the (used - limit + 1)-th oldest timestamp leaves the window.
                reset_time = entry.timestamps[used - limit] + window
            elif entry.timestamps:
                reset_time = entry.timestamps[0] + window
            else:
                reset_time = now + window
            return _Evaluation(scope, key, rule, limit, used, reset_time)

        if self.strategy == FIXED_WINDOW:
            index = math.floor(now / window)
            if entry is not None and entry.window_index != index:
                entry.window_index = index
                entry.count = 0
            used = entry.count if entry is not None else 0
            return _Evaluation(scope, key, rule, limit, used, (index + 1) * window)

        # Token bucket: capacity is the base limit, tokens may dip below zero
        # when a high-priority multiplier grants extra headroom.
        capacity = rule.max_requests
        refill_interval = window / capacity
        if entry is None:
            return _Evaluation(scope, key, rule, limit, 0, now)
        elapsed = now - entry.last_refill
        added = math.floor(elapsed / window * capacity)
        if added > 0:
            entry.tokens = min(float(capacity), entry.tokens + added)
            if entry.tokens >= capacity:
                entry.last_refill = now
            else:
                entry.last_refill += added * refill_interval
        used = int(math.ceil(capacity - entry.tokens))
        reset_time = now if entry.tokens >= capacity else entry.last_refill + refill_interval
        return _Evaluation(scope, key, rule, limit, used, reset_time)

    def _consume(self, entry: RateLimitEntry, now: float) -> None:
        entry.last_activity = now
        if self.strategy == SLIDING_WINDOW:
            entry.timestamps.append(now)
        elif self.strategy == FIXED_WINDOW:
            entry.count += 1
        else:
            entry.tokens -= 1

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_and_consume(self, request: AIRequest) -> RateLimitResult:
        """
        Atomically admit a request across every scope.

        Returns:
            RateLimitResult with allowed=False and the limiting scope when
            any scope is exhausted; nothing is consumed in that case.
        """
        return self.check_and_consume_for(request.user_id, request.agent_type, request.priority)

    def check_and_consume_for(
        self,
        user_id: str,
        agent_type: AgentType,
        priority: Priority = Priority.MEDIUM,
    ) -> RateLimitResult:
        scopes = self._scopes(user_id, agent_type)
        locks = [self._shards[i] for i in self._shard_indexes([key for _, key, _ in scopes])]

        for lock in locks:
            lock.acquire()
        try:
            now = self._clock()
            evaluations = []
            entries = []
            for scope, key, rule in scopes:
                entry = self._get_entry(key, scope, rule, now)
                entries.append(entry)
                evaluations.append(
                    self._evaluate(scope, key, rule, effective_limit(rule, priority), entry, now)
                )

            denied = [e for e in evaluations if not e.allowed]
            self._total_checks += 1
            if denied:
                limiting = max(denied, key=lambda e: e.reset_time)
                self._total_denied += 1
                self._denials_by_scope[limiting.scope] = self._denials_by_scope.get(limiting.scope, 0) + 1
                result = RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_time=limiting.reset_time,
                    scope=limiting.scope,
                    limit=limiting.limit,
                )
            else:
                for entry in entries:
                    self._consume(entry, now)
                tightest = min(evaluations, key=lambda e: e.limit - e.used)
                result = RateLimitResult(
                    allowed=True,
                    remaining=max(0, tightest.limit - tightest.used - 1),
                    reset_time=tightest.reset_time,
                    scope=tightest.scope,
                    limit=tightest.limit,
                )
        finally:
            for lock in reversed(locks):
                lock.release()

        if not result.allowed:
            record_rate_limit_denial(result.scope or "unknown")
            logger.warning(
                "rate_limit_exceeded",
                user_id=user_id,
                agent_type=getattr(agent_type, "value", agent_type),
                scope=result.scope,
                limit=result.limit,
                reset_time=result.reset_time,
            )
        return result

    def get_status(
        self,
        user_id: str,
        agent_type: AgentType,
        priority: Priority = Priority.MEDIUM,
    ) -> Dict[str, Dict[str, Any]]:
        """Non-consuming view of every scope that applies to the user and agent."""
        scopes = self._scopes(user_id, agent_type)
        locks = [self._shards[i] for i in self._shard_indexes([key for _, key, _ in scopes])]
        status: Dict[str, Dict[str, Any]] = {}

        for lock in locks:
            lock.acquire()
        try:
            now = self._clock()
            for scope, key, rule in scopes:
                limit = effective_limit(rule, priority)
                evaluation = self._evaluate(scope, key, rule, limit, self._peek_entry(key), now)
                status[scope] = {
                    "key": key,
                    "limit": limit,
                    "window_seconds": rule.window_seconds,
                    "used": evaluation.used,
                    "remaining": max(0, limit - evaluation.used),
                    "reset_time": evaluation.reset_time,
                    "limited": not evaluation.allowed,
                }
        finally:
            for lock in reversed(locks):
                lock.release()
        return status

    def clear_limits(self, user_id: Optional[str] = None) -> int:
        """Drop state for one user (user and agent scopes) or for everything."""
        with self._entries_lock:
            if user_id is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                keys = [
                    key for key in self._entries
                    if key == f"user:{user_id}" or key.startswith(f"agent:{user_id}:")
                ]
                for key in keys:
                    del self._entries[key]
                removed = len(keys)
        logger.info("rate_limits_cleared", user_id=user_id, removed=removed)
        return removed

    def _is_idle(self, entry: RateLimitEntry, now: float) -> bool:
        # An entry outlives retention while its window can still hold consumptions.
        return now - entry.last_activity > max(self.retention_seconds, entry.window_seconds)

    def cleanup(self) -> int:
        """Remove entries idle for longer than the retention period and their own window."""
        now = self._clock()
        with self._entries_lock:
            candidates = [key for key, entry in self._entries.items() if self._is_idle(entry, now)]

        removed = 0
        for key in candidates:
            # Same lock order as admission: shard first, then the entry map.
            with self._shards[self._shard_indexes([key])[0]]:
                with self._entries_lock:
                    entry = self._entries.get(key)
                    if entry is not None and self._is_idle(entry, self._clock()):
                        del self._entries[key]
                        removed += 1
        if removed:
            logger.info("rate_limit_entries_cleaned", removed=removed)
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._entries_lock:
            by_scope: Dict[str, int] = {"global": 0, "user": 0, "agent": 0}
            for entry in self._entries.values():
                by_scope[entry.scope] = by_scope.get(entry.scope, 0) + 1
            total_entries = len(self._entries)
        return {
            "strategy": self.strategy,
            "total_entries": total_entries,
            "entries_by_scope": by_scope,
            "total_checks": self._total_checks,
            "total_denied": self._total_denied,
            "denials_by_scope": dict(self._denials_by_scope),
        }
