"""
HTTP transports for the Anthropic Messages API and OpenAI-compatible chat completions.

Both use a shared `httpx.AsyncClient` per transport with the configured
timeout. Non-2xx responses raise `ProviderError` with the upstream status.
"""
import time
from typing import Any, Dict, List, Optional

import httpx

from ai_gateway.core.logging import get_logger
from ai_gateway.services.ai.catalog import get_model
from ai_gateway.services.ai.providers.base import ProviderError, ProviderTransport
from ai_gateway.services.ai.schema import ProviderRequest, ProviderResponse

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class HTTPProviderTransport(ProviderTransport):
    """Shared plumbing for JSON-over-HTTP providers."""

    def __init__(
        self,
        name: str,
        api_base: str,
        api_key: Optional[str],
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.name = name
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise ProviderError(f"{self.name} API key not configured", self.name, status_code=401, signal="auth")

        response = await self._get_client().post(
            f"{self.api_base}{path}",
            headers=self._headers(),
            json=payload,
        )
        if response.status_code >= 400:
            logger.warning(
                "provider_http_error",
                provider=self.name,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ProviderError(
                f"{self.name} API error: {response.status_code} {response.text[:200]}",
                self.name,
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError:
            data = None
        # A 2xx without a JSON object is an upstream fault, not bad caller input
        if not isinstance(data, dict):
            logger.warning(
                "provider_malformed_response",
                provider=self.name,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ProviderError(
                f"{self.name} returned a malformed response body",
                self.name,
                status_code=response.status_code,
                signal="unavailable",
            )
        return data

    async def health_check(self) -> bool:
        return bool(self.api_key)

    def _cost(self, model_id: str, tokens: int) -> float:
        model = get_model(model_id)
        return tokens * model.cost_per_token if model else 0.0

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class AnthropicTransport(HTTPProviderTransport):
    """Anthropic Messages API."""

    def __init__(self, api_key: Optional[str], api_base: str = "https://api.anthropic.com/v1", **kwargs):
        super().__init__("claude", api_base, api_key, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    async def call(self, request: ProviderRequest) -> ProviderResponse:
        start = time.time()
        messages: List[Dict[str, str]] = []
        for line in request.context or []:
            role, _, content = line.partition(": ")
            messages.append({"role": "user" if role == "user" else "assistant", "content": content})
        messages.append({"role": "user", "content": request.prompt})

        payload: Dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": messages,
        }
        if request.system_prompt:
            payload["system"] = request.system_prompt

        data = await self._post("/messages", payload)

        blocks = data.get("content") or []
        content = blocks[0].get("text", "") if blocks else ""
        usage = data.get("usage") or {}
        tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)

        return ProviderResponse(
            content=content,
            tokens_used=tokens,
            processing_time_ms=(time.time() - start) * 1000.0,
            cost=self._cost(request.model, tokens),
            provider=self.name,
            model=request.model,
        )


class OpenAITransport(HTTPProviderTransport):
    """OpenAI-compatible /chat/completions API."""

    def __init__(self, api_key: Optional[str], api_base: str = "https://api.openai.com/v1", **kwargs):
        super().__init__("openai", api_base, api_key, **kwargs)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    async def call(self, request: ProviderRequest) -> ProviderResponse:
        start = time.time()
        messages: List[Dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        for line in request.context or []:
            role, _, content = line.partition(": ")
            messages.append({"role": "user" if role == "user" else "assistant", "content": content})
        messages.append({"role": "user", "content": request.prompt})

        data = await self._post(
            "/chat/completions",
            {
                "model": request.model,
                "messages": messages,
                "max_tokens": request.max_tokens,
                "temperature": request.temperature,
            },
        )

        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        tokens = int((data.get("usage") or {}).get("total_tokens") or 0)

        return ProviderResponse(
            content=content,
            tokens_used=tokens,
            processing_time_ms=(time.time() - start) * 1000.0,
            cost=self._cost(request.model, tokens),
            provider=self.name,
            model=request.model,
        )

    async def health_check(self) -> bool:
        if not self.api_key:
            return False
        response = await self._get_client().get(f"{self.api_base}/models", headers=self._headers())
        return response.status_code < 500
