"""
HTTP tests for the gateway API: processing, batching, errors, admin,
health and metrics endpoints.
"""
import time
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from ai_gateway.main import app
from ai_gateway.routes.deps import get_gateway
from ai_gateway.services.ai.gateway import AIGateway
from ai_gateway.services.ai.providers import FakeTransport
from conftest import FakeClock


def _payload(topic="listening", user_id="user_1", **extra):
    body = {
        "user_id": user_id,
        "agent_type": "assessment_analyst",
        "input_data": {"prompt": f"{topic}_alpha {topic}_beta {topic}_gamma"},
    }
    body.update(extra)
    return body


@pytest.fixture
def api_gateway(settings):
    return AIGateway(
        settings,
        transports={"claude": FakeTransport("claude"), "openai": FakeTransport("openai")},
        clock=FakeClock(time.time()),
    )


@pytest.fixture
def client(api_gateway):
    app.state.gateway = api_gateway
    with TestClient(app) as test_client:
        yield test_client
    app.state.gateway = None


def test_basic_health(client):
    response = client.get("/health/")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "X-Trace-ID" in response.headers
    assert "X-Request-ID" in response.headers


def test_trace_id_is_propagated(client):
    response = client.get("/health/", headers={"X-Trace-ID": "trace-from-client"})

    assert response.headers["X-Trace-ID"] == "trace-from-client"


def test_gateway_health(client):
    response = client.get("/health/gateway")

    body = response.json()
    assert response.status_code == 200
    assert body["status"] == "healthy"
    assert body["started"] is True
    assert set(body["providers"]) == {"claude", "openai"}


def test_startup_starts_and_shutdown_stops_gateway(api_gateway):
    app.state.gateway = api_gateway
    try:
        with TestClient(app):
            assert api_gateway.started
        assert not api_gateway.started
    finally:
        app.state.gateway = None


def test_process_and_cache_hit(client):
    first = client.post("/ai/process", json=_payload())
    second = client.post("/ai/process", json=_payload())

    assert first.status_code == 200
    assert first.json()["cache_hit"] is False
    assert first.json()["cost_cents"] > 0
    assert second.status_code == 200
    assert second.json()["cache_hit"] is True
    assert second.json()["cost_cents"] == 0


def test_invalid_request_is_rejected(client):
    response = client.post("/ai/process", json={"user_id": "user_1", "agent_type": "fortune_teller"})

    assert response.status_code == 422


def test_rate_limited_request_has_retry_after(client):
    for i in range(20):
        assert client.post("/ai/process", json=_payload(topic=f"quota{i}")).status_code == 200

    response = client.post("/ai/process", json=_payload(topic="quota20"))

    assert response.status_code == 429
    body = response.json()
    assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["error"]["retryable"] is True
    assert int(response.headers["Retry-After"]) > 60 * 60


def test_provider_auth_failure_maps_to_401(client, api_gateway):
    api_gateway.transports["claude"].fail_next(1, status_code=401)
    api_gateway.transports["openai"].fail_next(1, status_code=401)

    response = client.post("/ai/process", json=_payload())

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTHENTICATION_FAILED"


def test_batch(client):
    response = client.post(
        "/ai/batch",
        json={"requests": [_payload(topic="batch_one"), _payload(topic="batch_two")], "max_concurrency": 2},
    )

    items = response.json()
    assert response.status_code == 200
    assert len(items) == 2
    assert all(item["response"] is not None and item["error"] is None for item in items)


def test_batch_item_errors_and_fail_fast(client, api_gateway):
    for _ in range(20):
        api_gateway.rate_limiter.check_and_consume_for("user_x", "assessment_analyst")
    requests = [_payload(topic="ok_item"), _payload(topic="limited", user_id="user_x")]

    partial = client.post("/ai/batch", json={"requests": requests})
    failed = client.post("/ai/batch", json={"requests": requests, "fail_fast": True})

    items = partial.json()
    assert items[0]["error"] is None
    assert items[1]["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert failed.status_code == 429


def test_empty_batch_is_rejected(client):
    assert client.post("/ai/batch", json={"requests": []}).status_code == 422


def test_oversized_batch_is_rejected(client):
    requests = [_payload(topic=f"big{i}") for i in range(11)]

    response = client.post("/ai/batch", json={"requests": requests})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_INPUT"


class TestAdmin:
    def test_cache_stats_and_invalidate(self, client):
        client.post("/ai/process", json=_payload())

        stats = client.get("/admin/cache/stats").json()
        assert stats["stats"]["size"] == 1

        missing_filter = client.post("/admin/cache/invalidate", json={})
        assert missing_filter.status_code == 400

        invalidated = client.post("/admin/cache/invalidate", json={"user_id": "user_1"})
        assert invalidated.json() == {"status": "invalidated", "removed": 1}

    def test_rate_limit_status_and_clear(self, client):
        client.post("/ai/process", json=_payload())

        status = client.get(
            "/admin/rate-limit/status",
            params={"user_id": "user_1", "agent_type": "assessment_analyst"},
        ).json()
        assert status["scopes"]["user"]["used"] == 1
        assert status["strategy"] == "sliding_window"

        cleared = client.delete("/admin/rate-limit", params={"user_id": "user_1"})
        assert cleared.json()["removed"] == 2

    def test_error_report(self, client, api_gateway):
        api_gateway.transports["claude"].fail_next(1, status_code=400)
        api_gateway.transports["openai"].fail_next(1, status_code=400)
        client.post("/ai/process", json=_payload())

        report = client.get("/admin/errors").json()

        assert report["stats"]["by_code"] == {"INVALID_INPUT": 1}
        assert report["recommendations"]

    def test_costs(self, client):
        client.post("/ai/process", json=_payload())

        body = client.get("/admin/costs/user_1", params={"timeframe": "week"}).json()

        assert body["spending"]["request_count"] == 1
        assert len(body["spending"]["trend"]) == 7
        assert body["budget_alerts"] == []
        assert set(body["recommendations"]) == {"immediate", "short_term", "long_term"}

    def test_costs_rejects_unknown_timeframe(self, client):
        assert client.get("/admin/costs/user_1", params={"timeframe": "year"}).status_code == 422


def test_metrics_endpoint(client):
    client.post("/ai/process", json=_payload())

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "ai_requests_total" in response.text
    assert response.headers["content-type"].startswith("text/plain")


def test_missing_gateway_is_503():
    request = SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace()))

    with pytest.raises(HTTPException) as exc_info:
        get_gateway(request)

    assert exc_info.value.status_code == 503
