"""Pluggable token counting for budget decisions."""

from abc import ABC, abstractmethod
from typing import Sequence

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from .messages import message_text, tool_call_arguments_json

CHARS_PER_TOKEN = 4


class BaseTokenizer(ABC):
    """Counts tokens for a sequence of messages."""

    @abstractmethod
    def count_tokens(self, messages: Sequence[BaseMessage]) -> int:
        ...


class ApproximateTokenizer(BaseTokenizer):
    """
    Character-based approximation (``chars // 4``, never below 1).

    Counts message content, name, tool_call_id and each tool call's
    id, name and serialized arguments.
    """

    def count_tokens(self, messages: Sequence[BaseMessage]) -> int:
        chars = 0
        for message in messages:
            chars += len(message_text(message))
            if message.name:
                chars += len(message.name)
            if isinstance(message, ToolMessage):
                chars += len(message.tool_call_id or "")
            if isinstance(message, AIMessage):
                for call in message.tool_calls:
                    chars += len(call.get("id") or "")
                    chars += len(call.get("name") or "")
                    chars += len(tool_call_arguments_json(call))
        return max(1, chars // CHARS_PER_TOKEN)
