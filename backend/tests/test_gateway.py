"""
Tests for the gateway context: lifecycle, batch processing, health and
interaction recording.
"""
import asyncio

import pytest

from ai_gateway.core.config import GatewaySettings
from ai_gateway.services.ai.errors import AIGatewayError, ErrorCode
from ai_gateway.services.ai.gateway import AIGateway, InMemoryInteractionRecorder, Interaction, build_transports
from ai_gateway.services.ai.providers import AnthropicTransport, FakeTransport, OpenAITransport
from ai_gateway.services.ai.schema import AgentType
from conftest import make_request, make_response


def test_build_transports_fake():
    transports = build_transports(GatewaySettings(use_fake_providers=True))

    assert sorted(transports) == ["claude", "openai"]
    assert all(isinstance(t, FakeTransport) for t in transports.values())
    assert transports["claude"].latency_ms == 1500


def test_build_transports_real_keys():
    transports = build_transports(GatewaySettings(anthropic_api_key="sk-ant", openai_api_key="sk-oai"))

    assert isinstance(transports["claude"], AnthropicTransport)
    assert isinstance(transports["openai"], OpenAITransport)


def test_build_transports_only_configured_keys():
    transports = build_transports(GatewaySettings(openai_api_key="sk-oai"))

    assert list(transports) == ["openai"]


@pytest.mark.asyncio
async def test_start_and_stop_leave_no_tasks(gateway):
    await gateway.start()
    assert gateway.started
    assert all(t.running for t in gateway.tasks)
    names = {t.get_name() for t in asyncio.all_tasks()}
    assert "periodic:cache_sweep" in names

    await gateway.stop()

    assert not gateway.started
    assert not any(t.running for t in gateway.tasks)
    names = {t.get_name() for t in asyncio.all_tasks()}
    assert not any(name.startswith("periodic:") for name in names)


@pytest.mark.asyncio
async def test_start_is_idempotent(gateway):
    await gateway.start()
    await gateway.start()

    assert sum(1 for t in asyncio.all_tasks() if t.get_name() == "periodic:cache_sweep") == 1
    await gateway.stop()


@pytest.mark.asyncio
async def test_async_context_manager(settings, transports, clock):
    async with AIGateway(settings, transports=transports, clock=clock) as gateway:
        assert gateway.started
        response = await gateway.submit(make_request())
        assert response.provider == "claude"

    assert not gateway.started


@pytest.mark.asyncio
async def test_batch_preserves_order(gateway):
    requests = [make_request(topic=f"batch{i}") for i in range(4)]

    results = await gateway.process_batch(requests, max_concurrency=2)

    assert [r.request_id for r in results] == [r.id for r in requests]
    assert all(r.ok for r in results)
    assert [r.response.request_id for r in results] == [r.id for r in requests]


@pytest.mark.asyncio
async def test_batch_reports_individual_failures(gateway):
    for _ in range(20):
        gateway.rate_limiter.check_and_consume_for("user_x", AgentType.ASSESSMENT_ANALYST)
    requests = [
        make_request(topic="first"),
        make_request(user_id="user_x", topic="second"),
        make_request(topic="third"),
    ]

    results = await gateway.process_batch(requests)

    assert [r.ok for r in results] == [True, False, True]
    assert results[1].error.code == ErrorCode.RATE_LIMIT_EXCEEDED


@pytest.mark.asyncio
async def test_batch_fail_fast_raises(gateway):
    for _ in range(20):
        gateway.rate_limiter.check_and_consume_for("user_x", AgentType.ASSESSMENT_ANALYST)
    requests = [make_request(user_id="user_x", topic="second"), make_request(topic="first")]

    with pytest.raises(AIGatewayError) as exc_info:
        await gateway.process_batch(requests, fail_fast=True)

    assert exc_info.value.code == ErrorCode.RATE_LIMIT_EXCEEDED


@pytest.mark.asyncio
async def test_batch_size_limit(gateway):
    requests = [make_request(topic=f"item{i}") for i in range(gateway.settings.max_batch_size + 1)]

    with pytest.raises(AIGatewayError) as exc_info:
        await gateway.process_batch(requests)

    assert exc_info.value.code == ErrorCode.INVALID_INPUT


@pytest.mark.asyncio
async def test_empty_batch(gateway):
    assert await gateway.process_batch([]) == []


@pytest.mark.asyncio
async def test_batch_respects_concurrency(settings, clock):
    in_flight = 0
    peak = 0

    class CountingTransport(FakeTransport):
        async def call(self, request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await asyncio.sleep(0.01)
                return await super().call(request)
            finally:
                in_flight -= 1

    gateway = AIGateway(
        settings,
        transports={"claude": CountingTransport("claude"), "openai": FakeTransport("openai")},
        clock=clock,
    )
    requests = [make_request(topic=f"parallel{i}") for i in range(6)]

    results = await gateway.process_batch(requests, max_concurrency=2)

    assert all(r.ok for r in results)
    assert peak <= 2


def test_health_status_transitions(gateway):
    assert gateway.get_health_status()["status"] == "healthy"

    gateway.provider_manager.mark_unhealthy("claude")
    assert gateway.get_health_status()["status"] == "degraded"

    gateway.provider_manager.mark_unhealthy("openai")
    status = gateway.get_health_status()
    assert status["status"] == "unhealthy"
    assert status["providers"]["openai"]["available"] is False


@pytest.mark.asyncio
async def test_high_error_rate_degrades_health(gateway, transports):
    transports["claude"].fail_always(status_code=400)
    for i in range(4):
        with pytest.raises(AIGatewayError):
            await gateway.submit(make_request(topic=f"bad{i}"))

    status = gateway.get_health_status()

    assert status["status"] == "degraded"
    assert status["requests"] == 4
    assert status["failures"] == 4
    assert status["errors"]["by_code"] == {"INVALID_INPUT": 4}


def test_health_status_sections(gateway):
    status = gateway.get_health_status()

    assert set(status) >= {"status", "providers", "cache", "rate_limiter", "errors", "tasks"}
    assert set(status["tasks"]) == {
        "cache_sweep",
        "rate_limit_cleanup",
        "error_cleanup",
        "cost_cleanup",
        "provider_health_check",
    }


@pytest.mark.asyncio
async def test_recorder_failure_does_not_fail_request(settings, transports, clock):
    class BrokenRecorder:
        def record(self, interaction):
            raise RuntimeError("database unavailable")

    gateway = AIGateway(settings, transports=transports, clock=clock, recorder=BrokenRecorder())

    response = await gateway.submit(make_request())

    assert response.cache_hit is False


@pytest.mark.asyncio
async def test_async_recorder_is_awaited(settings, transports, clock):
    seen = []

    class AsyncRecorder:
        async def record(self, interaction):
            seen.append(interaction.tokens_used)

    gateway = AIGateway(settings, transports=transports, clock=clock, recorder=AsyncRecorder())

    response = await gateway.submit(make_request())

    assert seen == [response.tokens_used]


def test_in_memory_recorder_keeps_latest():
    recorder = InMemoryInteractionRecorder(max_items=2)
    for user in ("user_1", "user_2", "user_1"):
        request = make_request(user_id=user)
        recorder.record(Interaction(request, make_response(request), 120.0, 100, 0.5, False))

    assert [i.request.user_id for i in recorder.interactions] == ["user_2", "user_1"]
    assert len(recorder.for_user("user_1")) == 1


@pytest.mark.asyncio
async def test_maintenance_tasks_prune_idle_state(gateway, clock):
    await gateway.submit(make_request(user_id="user_1"))
    clock.advance(31 * 24 * 60 * 60)

    tasks = {t.name: t for t in gateway.tasks}
    await tasks["cost_cleanup"].run_once()
    await tasks["rate_limit_cleanup"].run_once()

    assert tasks["cost_cleanup"].runs == 1
    assert tasks["cost_cleanup"].failures == 0
    assert gateway.cost_optimizer.cleanup() == 0
    assert gateway.cost_optimizer.analyze_spending("user_1")["request_count"] == 0
    assert gateway.rate_limiter.get_stats()["total_entries"] == 0
