from ai_gateway.services.ai.providers.base import ProviderError, ProviderTransport
from ai_gateway.services.ai.providers.fake import FakeTransport
from ai_gateway.services.ai.providers.http import AnthropicTransport, OpenAITransport

__all__ = [
    "AnthropicTransport",
    "FakeTransport",
    "OpenAITransport",
    "ProviderError",
    "ProviderTransport",
]
