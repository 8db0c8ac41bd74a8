"""
Tests for the HTTP provider transports against a mocked upstream.
"""
import httpx
import pytest

from ai_gateway.services.ai.catalog import CLAUDE_SONNET, GPT_4O
from ai_gateway.services.ai.errors import ErrorCode, classify_error
from ai_gateway.services.ai.providers import AnthropicTransport, OpenAITransport, ProviderError
from ai_gateway.services.ai.schema import ProviderRequest


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _request(model: str) -> ProviderRequest:
    return ProviderRequest(prompt='{"goal": "listen"}', model=model, max_tokens=200, system_prompt="Be brief")


@pytest.mark.asyncio
async def test_anthropic_response_is_parsed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers["x-api-key"]
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "Practice reflective listening."}],
                "usage": {"input_tokens": 30, "output_tokens": 70},
            },
        )

    transport = AnthropicTransport("sk-ant", client=_client(handler))
    response = await transport.call(_request(CLAUDE_SONNET))
    await transport.aclose()

    assert seen == {"url": "https://api.anthropic.com/v1/messages", "api_key": "sk-ant"}
    assert response.content == "Practice reflective listening."
    assert response.tokens_used == 100
    assert response.provider == "claude"
    assert response.cost > 0


@pytest.mark.asyncio
async def test_openai_response_is_parsed():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer sk-oai"
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": "Set one goal"}}], "usage": {"total_tokens": 42}},
        )

    transport = OpenAITransport("sk-oai", client=_client(handler))
    response = await transport.call(_request(GPT_4O))

    assert response.content == "Set one goal"
    assert response.tokens_used == 42


@pytest.mark.asyncio
async def test_error_status_is_carried():
    transport = OpenAITransport("sk-oai", client=_client(lambda request: httpx.Response(429, text="slow down")))

    with pytest.raises(ProviderError) as exc_info:
        await transport.call(_request(GPT_4O))

    assert exc_info.value.status_code == 429
    assert classify_error(exc_info.value).code == ErrorCode.RATE_LIMIT_EXCEEDED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    ["<html>502 Bad Gateway</html>", "[1, 2, 3]", ""],
)
async def test_malformed_success_body_is_retryable(body):
    transport = AnthropicTransport(
        "sk-ant",
        client=_client(lambda request: httpx.Response(200, text=body)),
    )

    with pytest.raises(ProviderError) as exc_info:
        await transport.call(_request(CLAUDE_SONNET))

    error = classify_error(exc_info.value)
    assert exc_info.value.signal == "unavailable"
    assert error.code == ErrorCode.PROVIDER_UNAVAILABLE
    assert error.retryable


@pytest.mark.asyncio
async def test_missing_key_fails_as_authentication():
    transport = AnthropicTransport(None, client=_client(lambda request: httpx.Response(200, json={})))

    with pytest.raises(ProviderError) as exc_info:
        await transport.call(_request(CLAUDE_SONNET))

    assert classify_error(exc_info.value).code == ErrorCode.AUTHENTICATION_FAILED
    assert not await transport.health_check()
