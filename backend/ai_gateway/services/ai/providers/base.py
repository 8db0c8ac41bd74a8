"""
Uniform transport contract for AI providers.

Every provider implementation turns a `ProviderRequest` into a
`ProviderResponse` or raises `ProviderError` carrying the upstream status
code and/or a failure signal. Classification into the gateway error
taxonomy happens in `ai_gateway.services.ai.errors`, never here.
"""
from abc import ABC, abstractmethod
from typing import Optional

from ai_gateway.services.ai.schema import ProviderRequest, ProviderResponse


class ProviderError(Exception):
    """
    Failure reported by a provider transport.

    Args:
        message: Human readable description (may contain the upstream body)
        provider: Provider name
        status_code: Upstream HTTP status, when the failure came from a response
        signal: Transport-level signal ("rate_limit", "timeout", "overloaded",
            "auth", "invalid_request", "credits", "unavailable")
    """

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        signal: Optional[str] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.signal = signal


class ProviderTransport(ABC):
    """Abstract base class for provider transports."""

    name: str

    @abstractmethod
    async def call(self, request: ProviderRequest) -> ProviderResponse:
        """Invoke the provider. Raises ProviderError on upstream failure."""

    async def health_check(self) -> bool:
        """Lightweight reachability check. Transports without one report healthy."""
        return True

    async def aclose(self) -> None:
        """Release network resources."""
        return None
