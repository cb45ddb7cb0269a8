"""
Request budget planning and large tool-result eviction.

``plan_request`` turns the system prompt, the conversation window and the
tool definitions into a request that fits the hard token ceiling:

    1. Tool definitions alone must fit, otherwise ``BudgetExceededError``.
    2. The remaining message budget is ``limit - tool_cost - 1``.
    3. The system prompt is trimmed by binary search over a character
       prefix, then the oldest conversation messages are dropped one at a
       time until the whole request fits.
    4. If even the trimmed system message cannot fit with any
       conversation, only the trimmed system message is sent.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from langchain_core.messages import BaseMessage, SystemMessage

from tools.base import ToolDefinition
from tools.builtin.filesystem import FileSystemBackend, write_or_overwrite

from .tokenizer import BaseTokenizer, CHARS_PER_TOKEN

logger = logging.getLogger(__name__)

TOOL_RESULT_CHARS_PER_TOKEN = CHARS_PER_TOKEN
LARGE_TOOL_RESULTS_DIR = "/large_tool_results"
EVICTION_EXEMPT_TOOLS = frozenset(
    {"ls", "glob", "grep", "read_file", "edit_file", "write_file"}
)
_PREVIEW_SEPARATOR = "\n...\n"
_TOOL_BUDGET_MESSAGE_ID = "budget:tools"


class BudgetExceededError(Exception):
    """
    Raised when tool definitions alone do not fit the hard token ceiling.

    Attributes:
        request_hard_token_limit: Configured ceiling
        tool_token_count: Cost of the serialized tool definitions
        tool_count: Number of tool definitions
    """

    def __init__(self, request_hard_token_limit: int, tool_token_count: int, tool_count: int):
        self.request_hard_token_limit = request_hard_token_limit
        self.tool_token_count = tool_token_count
        self.tool_count = tool_count
        super().__init__(
            f"Tool definitions ({tool_count} tools, {tool_token_count} tokens) exceed "
            f"the request hard token limit of {request_hard_token_limit}"
        )

    def to_dict(self) -> dict:
        return {
            "error": "budget_exceeded",
            "request_hard_token_limit": self.request_hard_token_limit,
            "tool_token_count": self.tool_token_count,
            "tool_count": self.tool_count,
        }


@dataclass
class BudgetPlan:
    """Per-model-call request layout."""

    system_message: SystemMessage
    conversation: List[BaseMessage]
    request_messages: List[BaseMessage]
    tool_token_count: int = 0
    message_token_limit: Optional[int] = None
    exceeded: Optional[BudgetExceededError] = field(default=None, repr=False)

    def ensure_within_budget(self) -> None:
        if self.exceeded is not None:
            raise self.exceeded


def tool_definitions_message(tools: Sequence[ToolDefinition]) -> SystemMessage:
    payload = [
        {"name": tool.name, "description": tool.description, "parameters": tool.parameters}
        for tool in sorted(tools, key=lambda tool: tool.name)
    ]
    return SystemMessage(
        id=_TOOL_BUDGET_MESSAGE_ID,
        content=json.dumps(payload, sort_keys=True, separators=(",", ":")),
    )


def tool_token_cost(tools: Sequence[ToolDefinition], tokenizer: BaseTokenizer) -> int:
    if not tools:
        return 0
    return tokenizer.count_tokens([tool_definitions_message(tools)])


def trim_system_message(
    system_message: SystemMessage,
    budget: int,
    tokenizer: BaseTokenizer,
) -> SystemMessage:
    """
    Largest character prefix of the system prompt that fits ``budget``.

    Binary search runs over characters rather than tokens.
    """
    content = system_message.content if isinstance(system_message.content, str) else str(system_message.content)
    if tokenizer.count_tokens([system_message]) <= budget:
        return system_message

    low, high = 0, len(content)
    while low < high:
        mid = (low + high + 1) // 2
        candidate = SystemMessage(id=system_message.id, content=content[:mid])
        if tokenizer.count_tokens([candidate]) <= budget:
            low = mid
        else:
            high = mid - 1
    return SystemMessage(id=system_message.id, content=content[:low])


def request_messages_with_hard_limit(
    system_message: SystemMessage,
    conversation: Sequence[BaseMessage],
    limit: Optional[int],
    tokenizer: BaseTokenizer,
) -> List[BaseMessage]:
    if limit is None:
        return [system_message] + list(conversation)
    if limit <= 0:
        return [system_message]

    trimmed = trim_system_message(system_message, limit, tokenizer)
    window = list(conversation)
    while window:
        request = [trimmed] + window
        if tokenizer.count_tokens(request) <= limit:
            return request
        window.pop(0)
    return [trimmed]


def plan_request(
    system_message: SystemMessage,
    conversation: Sequence[BaseMessage],
    tools: Sequence[ToolDefinition],
    hard_limit: Optional[int],
    tokenizer: BaseTokenizer,
) -> BudgetPlan:
    """Build the BudgetPlan for one model call."""
    if hard_limit is None:
        return BudgetPlan(
            system_message=system_message,
            conversation=list(conversation),
            request_messages=[system_message] + list(conversation),
        )

    tool_cost = tool_token_cost(tools, tokenizer)
    if tool_cost >= hard_limit:
        logger.warning(
            f"Tool definitions cost {tool_cost} tokens, hard limit is {hard_limit}"
        )
        return BudgetPlan(
            system_message=system_message,
            conversation=[],
            request_messages=[],
            tool_token_count=tool_cost,
            message_token_limit=0,
            exceeded=BudgetExceededError(hard_limit, tool_cost, len(tools)),
        )

    message_limit = max(1, hard_limit - tool_cost - 1)
    request = request_messages_with_hard_limit(system_message, conversation, message_limit, tokenizer)
    if len(request) - 1 < len(conversation):
        logger.debug(
            f"Hard limit dropped {len(conversation) - (len(request) - 1)} oldest messages"
        )
    return BudgetPlan(
        system_message=request[0],
        conversation=list(request[1:]),
        request_messages=request,
        tool_token_count=tool_cost,
        message_token_limit=message_limit,
    )


# ── Large tool-result eviction ────────────────────────────────────────

def create_content_preview(content: str, max_chars: int) -> str:
    """Head/tail preview of ``content`` capped at ``max_chars``."""
    if len(content) <= max_chars:
        return content
    if max_chars <= len(_PREVIEW_SEPARATOR) + 32:
        return content[:max(0, max_chars)]
    budget = max_chars - len(_PREVIEW_SEPARATOR)
    head = budget // 2
    tail = budget - head
    preview = content[:head] + _PREVIEW_SEPARATOR + content[len(content) - tail:]
    return preview[:max_chars]


def eviction_path(tool_call_id: str) -> str:
    sanitized = tool_call_id.replace(".", "_").replace("/", "_").replace("\\", "_")
    return f"{LARGE_TOOL_RESULTS_DIR}/{sanitized}"


def should_evict(tool_name: str, content: str, filesystem: Optional[FileSystemBackend], token_limit: int) -> bool:
    if filesystem is None or token_limit <= 0:
        return False
    if tool_name in EVICTION_EXEMPT_TOOLS:
        return False
    return len(content) > token_limit * TOOL_RESULT_CHARS_PER_TOKEN


async def evict_large_tool_result(
    call: dict,
    content: str,
    filesystem: Optional[FileSystemBackend],
    token_limit: int,
) -> str:
    """
    Offload an oversized tool result and return the in-message replacement.

    Returns the content unchanged when eviction does not apply or the
    write fails.
    """
    if not should_evict(call.get("name", ""), content, filesystem, token_limit):
        return content

    call_id = call["id"]
    path = eviction_path(call_id)
    try:
        await write_or_overwrite(filesystem, path, content)
    except Exception as exc:
        logger.warning(f"Failed to evict tool result {call_id} to {path}: {exc}")
        return content

    preview = create_content_preview(content, token_limit * TOOL_RESULT_CHARS_PER_TOKEN)
    logger.info(f"Evicted {len(content)} chars of tool result {call_id} to {path}")
    return (
        f"Tool result too large (tool_call_id: {call_id}).\n"
        f"Full content was written to {path}. Read it with read_file using offset/limit.\n\n"
        f"Preview:\n{preview}"
    )
