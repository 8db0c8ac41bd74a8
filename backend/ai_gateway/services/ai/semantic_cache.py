"""
Semantic response cache.

Entries are keyed by `user_id:agent_type:md5(input)`. Lookup tries the
exact key first, then scans unexpired entries of the same agent type (and,
unless cross-user lookup is enabled, the same user) for the most similar
embedding at or above the similarity threshold.

Embeddings are a deterministic bag-of-words hash into a fixed-size vector,
L2-normalized, so cosine similarity is a dot product.

Capacity is enforced on insert: when full, the ~10% of entries with the
highest eviction score are removed in one pass,
    score = age/ttl + max(0, 1 - access_count/10) + days_since_last_access
Expiry is lazy on read plus a periodic `sweep_expired()`.
"""
import hashlib
import json
import math
import re
import time
import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from ai_gateway.core.logging import get_logger
from ai_gateway.core.metrics import (
    record_cache_eviction,
    record_cache_hit,
    record_cache_miss,
    update_cache_size,
)
from ai_gateway.services.ai.schema import AgentType, AIRequest, AIResponse

logger = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60
EVICTION_FRACTION = 0.1
_WORD_SPLIT = re.compile(r"\W+")


def canonical_input(input_data: Any) -> str:
    """Stable JSON rendering used for fingerprints and embeddings."""
    return json.dumps(input_data, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(input_data: Any) -> str:
    return hashlib.md5(canonical_input(input_data).encode("utf-8")).hexdigest()


def make_cache_key(user_id: str, agent_type: AgentType, input_data: Any) -> str:
    agent = agent_type.value if isinstance(agent_type, AgentType) else str(agent_type)
    return f"{user_id}:{agent}:{fingerprint(input_data)}"


def embed_text(text: str, dimensions: int = 100) -> np.ndarray:
    """
    Hash words longer than two characters into `dimensions` buckets and L2-normalize.

    Returns a zero vector for text without such words.
    """
    vector = np.zeros(dimensions, dtype=np.float64)
    words = [w for w in _WORD_SPLIT.split(text.lower()) if len(w) > 2]
    for word in words:
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimensions
        vector[bucket] += 1.0
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector /= norm
    return vector


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.dot(a, b) / norm)


@dataclass
class CacheEntry:
    key: str
    user_id: str
    agent_type: str
    response: AIResponse
    embedding: np.ndarray
    inserted_at: float
    ttl_seconds: float
    last_accessed_at: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl_seconds

    def eviction_score(self, now: float) -> float:
        age_ratio = (now - self.inserted_at) / self.ttl_seconds if self.ttl_seconds > 0 else 1.0
        frequency = max(0.0, 1.0 - self.access_count / 10.0)
        idle_days = (now - self.last_accessed_at) / DAY_SECONDS
        return age_ratio + frequency + idle_days


@dataclass
class CacheLookup:
    response: AIResponse
    match: str  # "exact" or "semantic"
    similarity: float
    key: str


class SemanticCache:
    """
    In-memory semantic cache shared by all concurrent requests.

    Args:
        max_size: Hard upper bound on entries after any insert
        default_ttl_seconds: TTL when `put` is called without one
        similarity_threshold: Minimum cosine similarity for a semantic hit
        dimensions: Embedding size
        cross_user: Allow semantic hits on other users' entries
        clock: Returns epoch seconds (injectable for tests)
    """

    def __init__(
        self,
        max_size: int = 10000,
        default_ttl_seconds: float = DAY_SECONDS,
        similarity_threshold: float = 0.85,
        dimensions: int = 100,
        cross_user: bool = False,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_size = max_size
        self.default_ttl_seconds = default_ttl_seconds
        self.similarity_threshold = similarity_threshold
        self.dimensions = dimensions
        self.cross_user = cross_user
        self._clock = clock or time.time

        self._entries: Dict[str, CacheEntry] = {}
        self._by_agent: Dict[str, Set[str]] = {}
        self._lock = Lock()

        self._stats: Dict[str, float] = {
            "exact_hits": 0,
            "semantic_hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
            "invalidations": 0,
            "similarity_sum": 0.0,
            "cost_saved_cents": 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Internal helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _remove(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            keys = self._by_agent.get(entry.agent_type)
            if keys is not None:
                keys.discard(key)
        return entry

    def _evict_batch(self, now: float) -> int:
        count = max(1, math.floor(self.max_size * EVICTION_FRACTION))
        ranked = sorted(
            self._entries.values(),
            key=lambda e: e.eviction_score(now),
            reverse=True,
        )
        for entry in ranked[:count]:
            self._remove(entry.key)
        evicted = min(count, len(ranked))
        self._stats["evictions"] += evicted
        return evicted

    def _insert(self, entry: CacheEntry, now: float) -> int:
        evicted = 0
        if entry.key not in self._entries and len(self._entries) >= self.max_size:
            evicted = self._evict_batch(now)
        self._remove(entry.key)
        self._entries[entry.key] = entry
        self._by_agent.setdefault(entry.agent_type, set()).add(entry.key)
        return evicted

    def _semantic_match(
        self,
        user_id: str,
        agent_type: str,
        query: np.ndarray,
        now: float,
    ) -> Tuple[Optional[CacheEntry], float, int]:
        candidates: List[CacheEntry] = []
        expired = 0
        for key in list(self._by_agent.get(agent_type, ())):
            entry = self._entries[key]
            if entry.is_expired(now):
                self._remove(key)
                expired += 1
                continue
            if not self.cross_user and entry.user_id != user_id:
                continue
            candidates.append(entry)

        if not candidates or not np.any(query):
            return None, 0.0, expired

        matrix = np.stack([c.embedding for c in candidates])
        similarities = matrix @ query
        best = int(np.argmax(similarities))
        best_similarity = float(similarities[best])
        if best_similarity >= self.similarity_threshold:
            return candidates[best], best_similarity, expired
        return None, best_similarity, expired

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def lookup(self, request: AIRequest) -> Optional[CacheLookup]:
        """Find a cached response for the request; None on miss."""
        agent = request.agent_type.value
        key = make_cache_key(request.user_id, request.agent_type, request.input_data)
        now = self._clock()
        expired = 0

        with self._lock:
            entry = self._entries.get(key)
            match = "exact"
            similarity = 1.0
            if entry is not None and entry.is_expired(now):
                self._remove(key)
                expired += 1
                entry = None

            if entry is None:
                query = embed_text(canonical_input(request.input_data), self.dimensions)
                entry, similarity, swept = self._semantic_match(request.user_id, agent, query, now)
                expired += swept
                match = "semantic"

            self._stats["expirations"] += expired
            if entry is None:
                self._stats["misses"] += 1
            else:
                entry.access_count += 1
                entry.last_accessed_at = now
                self._stats[f"{match}_hits"] += 1
                self._stats["cost_saved_cents"] += entry.response.cost_cents
                if match == "semantic":
                    self._stats["similarity_sum"] += similarity
                cached = entry.response
            size = len(self._entries)

        record_cache_eviction("expired", expired)
        update_cache_size(size)

        if entry is None:
            record_cache_miss(agent)
            return None

        record_cache_hit(agent, match)
        logger.debug("cache_hit", key=key, match=match, similarity=round(similarity, 4))
        response = cached.model_copy(
            update={
                "id": str(uuid.uuid4()),
                "request_id": request.id,
                "cache_hit": True,
                "cost_cents": 0.0,
                "processing_time_ms": 0.0,
                "warnings": [],
            }
        )
        return CacheLookup(response=response, match=match, similarity=similarity, key=entry.key)

    def get(self, request: AIRequest) -> Optional[AIResponse]:
        lookup = self.lookup(request)
        return lookup.response if lookup else None

    def put(self, request: AIRequest, response: AIResponse, ttl_seconds: Optional[float] = None) -> str:
        """Store a live response. Cache-hit clones are never stored."""
        key = make_cache_key(request.user_id, request.agent_type, request.input_data)
        if response.cache_hit:
            return key

        now = self._clock()
        entry = CacheEntry(
            key=key,
            user_id=request.user_id,
            agent_type=request.agent_type.value,
            response=response,
            embedding=embed_text(canonical_input(request.input_data), self.dimensions),
            inserted_at=now,
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds,
            last_accessed_at=now,
        )
        with self._lock:
            evicted = self._insert(entry, now)
            size = len(self._entries)

        if evicted:
            record_cache_eviction("capacity", evicted)
            logger.info("cache_evicted", evicted=evicted, size=size, max_size=self.max_size)
        update_cache_size(size)
        return key

    def invalidate(
        self,
        user_id: Optional[str] = None,
        agent_type: Optional[AgentType] = None,
        pattern: Optional[str] = None,
    ) -> int:
        """
        Remove every entry matching all given filters.

        Args:
            user_id: Owner of the entries
            agent_type: Agent type of the entries
            pattern: Substring of the cache key

        Raises:
            ValueError: If no filter is given (use clear() instead)
        """
        if user_id is None and agent_type is None and pattern is None:
            raise ValueError("invalidate requires user_id, agent_type or pattern")
        agent = agent_type.value if isinstance(agent_type, AgentType) else agent_type

        with self._lock:
            doomed = [
                entry.key for entry in self._entries.values()
                if (user_id is None or entry.user_id == user_id)
                and (agent is None or entry.agent_type == agent)
                and (pattern is None or pattern in entry.key)
            ]
            for key in doomed:
                self._remove(key)
            self._stats["invalidations"] += len(doomed)
            size = len(self._entries)

        record_cache_eviction("invalidated", len(doomed))
        update_cache_size(size)
        logger.info(
            "cache_invalidated",
            user_id=user_id,
            agent_type=agent,
            pattern=pattern,
            removed=len(doomed),
        )
        return len(doomed)

    def sweep_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                self._remove(key)
            self._stats["expirations"] += len(expired)
            size = len(self._entries)
        record_cache_eviction("expired", len(expired))
        update_cache_size(size)
        if expired:
            logger.info("cache_swept", removed=len(expired), size=size)
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_agent.clear()
        update_cache_size(0)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            hits = int(self._stats["exact_hits"] + self._stats["semantic_hits"])
            lookups = hits + int(self._stats["misses"])
            by_agent = {agent: len(keys) for agent, keys in self._by_agent.items() if keys}
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": hits,
                "misses": int(self._stats["misses"]),
                "hit_rate": hits / lookups if lookups else 0.0,
                "evictions": int(self._stats["evictions"]),
                "expirations": int(self._stats["expirations"]),
                "invalidations": int(self._stats["invalidations"]),
                "entries_by_agent": by_agent,
            }

    def get_efficiency_metrics(self) -> Dict[str, Any]:
        with self._lock:
            exact = int(self._stats["exact_hits"])
            semantic = int(self._stats["semantic_hits"])
            return {
                "exact_hits": exact,
                "semantic_hits": semantic,
                "semantic_hit_share": semantic / (exact + semantic) if (exact + semantic) else 0.0,
                "average_semantic_similarity": (
                    self._stats["similarity_sum"] / semantic if semantic else 0.0
                ),
                "estimated_cost_saved_cents": round(self._stats["cost_saved_cents"], 6),
            }

    def warmup(
        self,
        items: Iterable[Tuple[AIRequest, AIResponse]],
        ttl_seconds: Optional[float] = None,
    ) -> int:
        """Preload request/response pairs, e.g. answers to common first-time questions."""
        count = 0
        for request, response in items:
            self.put(request, response, ttl_seconds)
            count += 1
        logger.info("cache_warmed", entries=count)
        return count

    def export_entries(self) -> List[Dict[str, Any]]:
        """JSON-safe snapshot of unexpired entries."""
        now = self._clock()
        with self._lock:
            return [
                {
                    "key": e.key,
                    "user_id": e.user_id,
                    "agent_type": e.agent_type,
                    "response": e.response.model_dump(mode="json"),
                    "embedding": e.embedding.tolist(),
                    "inserted_at": e.inserted_at,
                    "ttl_seconds": e.ttl_seconds,
                    "access_count": e.access_count,
                    "last_accessed_at": e.last_accessed_at,
                }
                for e in self._entries.values()
                if not e.is_expired(now)
            ]

    def import_entries(self, items: Iterable[Dict[str, Any]]) -> int:
        """Load entries produced by export_entries(); expired entries are skipped."""
        now = self._clock()
        imported = 0
        evicted = 0
        with self._lock:
            for item in items:
                entry = CacheEntry(
                    key=item["key"],
                    user_id=item["user_id"],
                    agent_type=item["agent_type"],
                    response=AIResponse.model_validate(item["response"]),
                    embedding=np.asarray(item["embedding"], dtype=np.float64),
                    inserted_at=float(item["inserted_at"]),
                    ttl_seconds=float(item["ttl_seconds"]),
                    last_accessed_at=float(item.get("last_accessed_at", item["inserted_at"])),
                    access_count=int(item.get("access_count", 0)),
                )
                if entry.is_expired(now) or entry.embedding.shape != (self.dimensions,):
                    continue
                evicted += self._insert(entry, now)
                imported += 1
            size = len(self._entries)
        record_cache_eviction("capacity", evicted)
        update_cache_size(size)
        logger.info("cache_imported", imported=imported, size=size)
        return imported
