"""
Deterministic in-process provider used in development and tests.

Content is derived from the prompt (no randomness), so identical requests
produce identical responses. Failures, latency and health are scriptable.
"""
import asyncio
import hashlib
import json
import math
from collections import deque
from typing import Deque, List, Optional, Tuple

from ai_gateway.services.ai.catalog import get_model
from ai_gateway.services.ai.providers.base import ProviderError, ProviderTransport
from ai_gateway.services.ai.schema import ProviderRequest, ProviderResponse


def _stable_int(text: str, low: int, high: int) -> int:
    digest = int(hashlib.md5(text.encode("utf-8")).hexdigest(), 16)
    return low + digest % (high - low + 1)


def render_fake_content(prompt: str) -> str:
    """Keyword-branched JSON content that resembles each agent's output."""
    lowered = prompt.lower()

    if "assessment" in lowered or "score" in lowered:
        payload = {
            "score": _stable_int(prompt, 60, 99),
            "insights": [
                "Strong communication foundation detected",
                "Opportunity for growth in emotional regulation",
            ],
            "recommendations": ["Practice active listening exercises", "Engage in regular reflection"],
            "strengths": ["Communication", "Self-reflection", "Empathy"],
            "growth_areas": ["Conflict resolution", "Boundary setting"],
        }
    elif "learning" in lowered or "curriculum" in lowered:
        payload = {
            "path_name": "Communication Mastery",
            "modules": [
                {"title": "Active Listening Fundamentals", "estimated_minutes": 45},
                {"title": "Emotional Intelligence Development", "estimated_minutes": 60},
            ],
            "estimated_weeks": 4,
        }
    elif "progress" in lowered or "tracking" in lowered:
        payload = {
            "current_streak": _stable_int(prompt, 5, 24),
            "improvement_rate": f"+{_stable_int(prompt, 5, 29)}%",
            "milestones": ["First week completed"],
        }
    elif "conflict" in lowered or "communication" in lowered:
        payload = {
            "advice": "Name the feeling before the request, then ask one open question.",
            "scripts": ["I noticed ... and I felt ...", "What would help you right now?"],
        }
    else:
        payload = {
            "insight": "Small daily check-ins compound into lasting connection.",
            "action": "Share one appreciation with your partner today.",
        }
    return json.dumps(payload)


class FakeTransport(ProviderTransport):
    """
    Scriptable fake provider.

    Args:
        name: Provider name this fake stands in for
        latency_ms: Reported processing time
        delay_seconds: Real await before answering (for timeout tests)
        content: Fixed content; when None the content is rendered from the prompt
    """

    def __init__(
        self,
        name: str,
        latency_ms: float = 50.0,
        delay_seconds: float = 0.0,
        content: Optional[str] = None,
    ):
        self.name = name
        self.latency_ms = latency_ms
        self.delay_seconds = delay_seconds
        self.content = content
        self.calls: List[ProviderRequest] = []
        self.health_checks = 0
        self._failures: Deque[Tuple[Optional[int], Optional[str]]] = deque()
        self._always_fail: Optional[Tuple[Optional[int], Optional[str]]] = None
        self._healthy = True

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def fail_next(self, count: int = 1, status_code: Optional[int] = 503, signal: Optional[str] = None) -> None:
        """Queue `count` failures for the next calls."""
        for _ in range(count):
            self._failures.append((status_code, signal))

    def fail_always(self, status_code: Optional[int] = 503, signal: Optional[str] = None) -> None:
        self._always_fail = (status_code, signal)

    def recover(self) -> None:
        self._failures.clear()
        self._always_fail = None
        self._healthy = True

    def set_healthy(self, healthy: bool) -> None:
        self._healthy = healthy

    async def call(self, request: ProviderRequest) -> ProviderResponse:
        self.calls.append(request)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        failure = self._failures.popleft() if self._failures else self._always_fail
        if failure is not None:
            status_code, signal = failure
            raise ProviderError(
                f"{self.name} fake failure (status={status_code}, signal={signal})",
                self.name,
                status_code=status_code,
                signal=signal,
            )

        content = self.content if self.content is not None else render_fake_content(request.prompt)
        tokens = max(1, math.ceil(len(content) / 4)) + max(1, math.ceil(len(request.prompt) / 4))
        model = get_model(request.model)

        return ProviderResponse(
            content=content,
            tokens_used=tokens,
            processing_time_ms=self.latency_ms,
            cost=tokens * model.cost_per_token if model else 0.0,
            provider=self.name,
            model=request.model,
        )

    async def health_check(self) -> bool:
        self.health_checks += 1
        return self._healthy
