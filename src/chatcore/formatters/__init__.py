"""Provider adapters, looked up by the channel ``type`` field."""

from typing import Dict

from ..errors import ChannelError, ErrorType
from .anthropic import AnthropicAdapter
from .base import GenerateRequest, GenerateResponse, HttpRequest, ProtocolAdapter, StreamChunk
from .gemini import GeminiAdapter
from .openai import OpenAIAdapter
from .openai_responses import OpenAIResponsesAdapter

ADAPTERS: Dict[str, ProtocolAdapter] = {
    "gemini": GeminiAdapter(),
    "openai": OpenAIAdapter(),
    "anthropic": AnthropicAdapter(),
    "openai-responses": OpenAIResponsesAdapter(),
}


def get_adapter(provider_type: str) -> ProtocolAdapter:
    adapter = ADAPTERS.get(provider_type)
    if adapter is None:
        raise ChannelError(ErrorType.CONFIG_ERROR, f"Unsupported provider type: {provider_type}")
    return adapter


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "GeminiAdapter",
    "GenerateRequest",
    "GenerateResponse",
    "HttpRequest",
    "OpenAIAdapter",
    "OpenAIResponsesAdapter",
    "ProtocolAdapter",
    "StreamChunk",
    "get_adapter",
]
