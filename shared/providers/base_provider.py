"""Abstract base class for all model clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Union

from langchain_core.messages import AIMessage, BaseMessage

from tools.base import ToolDefinition


class ProviderError(Exception):
    """Base exception for provider errors."""
    pass


class ProviderConnectionError(ProviderError):
    """Raised when unable to connect to provider."""
    pass


class ProviderAuthError(ProviderError):
    """Raised when authentication fails."""
    pass


class ProviderRateLimitError(ProviderError):
    """Raised when rate limited by provider."""
    pass


class StreamProtocolError(ProviderError):
    """
    Raised when a model stream violates the chunk protocol.

    A stream must yield any number of token chunks followed by exactly
    one final chunk.
    """
    pass


@dataclass
class ChatRequest:
    """Request for chat completion."""
    messages: List[BaseMessage]
    tools: List[ToolDefinition] = field(default_factory=list)
    model: Optional[str] = None


@dataclass
class ChatResponse:
    """Response from chat completion."""
    message: AIMessage

    @property
    def tool_calls(self) -> list:
        return list(self.message.tool_calls)


@dataclass(frozen=True)
class TokenChunk:
    """Incremental assistant text."""
    text: str


@dataclass(frozen=True)
class FinalChunk:
    """Terminal chunk carrying the complete response."""
    response: ChatResponse


StreamChunk = Union[TokenChunk, FinalChunk]
TokenCallback = Callable[[str], Union[None, Awaitable[None]]]


async def consume_stream(
    chunks: AsyncIterator[StreamChunk],
    on_token: Optional[TokenCallback] = None,
) -> ChatResponse:
    """
    Drain a chunk stream and return its final response.

    Args:
        chunks: Stream produced by ``BaseModelClient.stream``
        on_token: Optional callback for each token (sync or async)

    Returns:
        The response carried by the single final chunk

    Raises:
        StreamProtocolError: Token after final, multiple finals, or no final
    """
    final: Optional[ChatResponse] = None
    async for chunk in chunks:
        if isinstance(chunk, FinalChunk):
            if final is not None:
                raise StreamProtocolError("Received multiple final chunks.")
            final = chunk.response
            continue
        if final is not None:
            raise StreamProtocolError("Received token after final chunk.")
        if on_token is not None:
            result = on_token(chunk.text)
            if result is not None:
                await result
    if final is None:
        raise StreamProtocolError("Missing final chunk.")
    return final


class BaseModelClient(ABC):
    """
    Abstract base class for model clients.

    Implementations stream token chunks followed by exactly one final chunk;
    ``complete()`` is derived by draining the stream.
    """

    @abstractmethod
    def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion.

        Args:
            request: ChatRequest with messages and tool definitions

        Yields:
            TokenChunk instances, then one FinalChunk

        Raises:
            ProviderError: If generation fails
        """

    async def complete(self, request: ChatRequest) -> ChatResponse:
        """
        Generate a single completion by draining ``stream``.

        Args:
            request: ChatRequest with messages and tool definitions

        Returns:
            ChatResponse with the assistant message
        """
        return await consume_stream(self.stream(request))
