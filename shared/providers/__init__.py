"""Model client abstraction consumed by the agent workflow and the provider router."""

from .base_provider import (
    BaseModelClient,
    ChatRequest,
    ChatResponse,
    FinalChunk,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
    StreamChunk,
    StreamProtocolError,
    TokenChunk,
    consume_stream,
)

__all__ = [
    # Base classes
    "BaseModelClient",
    # Request / response types
    "ChatRequest",
    "ChatResponse",
    "TokenChunk",
    "FinalChunk",
    "StreamChunk",
    "consume_stream",
    # Error types
    "ProviderError",
    "ProviderConnectionError",
    "ProviderAuthError",
    "ProviderRateLimitError",
    "StreamProtocolError",
]
