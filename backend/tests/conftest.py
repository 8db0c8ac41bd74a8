"""
Shared fixtures: a controllable clock, fake provider transports and a
gateway wired to both.
"""
import pytest

from ai_gateway.core.config import GatewaySettings
from ai_gateway.services.ai.gateway import AIGateway, InMemoryInteractionRecorder
from ai_gateway.services.ai.providers import FakeTransport
from ai_gateway.services.ai.schema import AgentType, AIRequest, AIResponse, Priority

# 2023-11-14 12:00:00 UTC (peak hours)
PEAK_TIME = 1_699_963_200.0
# 2023-11-14 02:00:00 UTC (off-peak)
OFF_PEAK_TIME = 1_699_927_200.0


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = PEAK_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_request(
    user_id: str = "user_1",
    agent_type: AgentType = AgentType.ASSESSMENT_ANALYST,
    topic: str = "listening",
    priority: Priority = Priority.MEDIUM,
    **kwargs,
) -> AIRequest:
    """Build a request whose input words are unique to `topic`."""
    return AIRequest(
        user_id=user_id,
        agent_type=agent_type,
        input_data={"prompt": f"{topic}_alpha {topic}_beta {topic}_gamma"},
        priority=priority,
        **kwargs,
    )


def make_response(request: AIRequest, cost_cents: float = 0.5, **kwargs) -> AIResponse:
    values = {
        "request_id": request.id,
        "output": {"insight": "stay curious"},
        "tokens_used": 100,
        "processing_time_ms": 120.0,
        "cost_cents": cost_cents,
        "cache_hit": False,
        "confidence": 0.9,
        "provider": "claude",
        "model": "claude-3-5-sonnet-20241022",
    }
    values.update(kwargs)
    return AIResponse(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def transports():
    return {
        "claude": FakeTransport("claude", latency_ms=1500),
        "openai": FakeTransport("openai", latency_ms=1000),
    }


@pytest.fixture
def settings():
    return GatewaySettings(use_fake_providers=True)


@pytest.fixture
def recorder():
    return InMemoryInteractionRecorder()


@pytest.fixture
def gateway(settings, transports, clock, recorder, sleep):
    return AIGateway(
        settings,
        transports=transports,
        clock=clock,
        recorder=recorder,
        sleep=sleep,
        rng=lambda: 0.5,
    )
