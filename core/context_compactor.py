"""
Context compactor: keeps conversation history within a token budget.

Three independent mechanisms run before every model call:
    1. ``patch_dangling_tool_calls`` repairs assistant tool calls that never
       received a result (e.g. a run stopped mid-flight), so the log always
       alternates correctly before it is sent to a model.
    2. ``maybe_summarize`` offloads the oldest messages as markdown to the
       virtual filesystem once the history crosses a token trigger, and
       replaces them in-context with a single pointer note.
    3. ``CompactionPolicy.compact`` derives the window actually sent to the
       model (max messages / max tokens). It never rewrites the log.
"""

import logging
from typing import List, Literal, Optional, Sequence, Tuple

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    SystemMessage,
    ToolMessage,
)
from pydantic import BaseModel, ConfigDict, Field

from tools.builtin.filesystem import FileSystemBackend, append_file

from .messages import message_role, message_text, tool_message_id
from .tokenizer import BaseTokenizer

logger = logging.getLogger(__name__)

# ── Defaults ──────────────────────────────────────────────────────────
DEFAULT_HISTORY_PATH_PREFIX = "/conversation_history"
_SUMMARY_ID_PREFIX = "system:summary:"
_DANGLING_TEMPLATE = (
    "Tool call {name} with id {id} was cancelled - "
    "another message came in before it could be completed."
)
_SUMMARY_NOTE = (
    "Note: conversation has been summarized. "
    "Full prior history is available at {path}."
)


class CompactionPolicy(BaseModel):
    """
    Window policy applied to the message log before each model call.

    Modes:
        disabled: send the log as-is
        max_messages: keep the last ``limit`` messages
        max_tokens: drop oldest messages until the count fits ``limit``
    """

    model_config = ConfigDict(frozen=True)

    mode: Literal["disabled", "max_messages", "max_tokens"] = "disabled"
    limit: int = 0

    @classmethod
    def disabled(cls) -> "CompactionPolicy":
        return cls(mode="disabled")

    @classmethod
    def max_messages(cls, limit: int) -> "CompactionPolicy":
        return cls(mode="max_messages", limit=limit)

    @classmethod
    def max_tokens(cls, limit: int) -> "CompactionPolicy":
        return cls(mode="max_tokens", limit=limit)

    def compact(
        self,
        messages: Sequence[BaseMessage],
        tokenizer: BaseTokenizer,
    ) -> Optional[List[BaseMessage]]:
        """
        Return the compacted window, or None when nothing was dropped.

        The original sequence is never modified.
        """
        if self.mode == "disabled":
            return None
        if self.limit <= 0:
            return []

        if self.mode == "max_messages":
            if len(messages) <= self.limit:
                return None
            return list(messages[-self.limit:])

        window = list(messages)
        while window and tokenizer.count_tokens(window) > self.limit:
            window.pop(0)
        if len(window) == len(messages):
            return None
        logger.debug(f"Compaction dropped {len(messages) - len(window)} oldest messages")
        return window


class SummarizationPolicy(BaseModel):
    """
    Offload policy for long histories.

    Attributes:
        trigger_tokens: Summarize once the log exceeds this count (<= 0 disables)
        keep_last_messages: Messages kept verbatim after summarization
        history_path_prefix: Directory for offloaded history files
    """

    model_config = ConfigDict(frozen=True)

    trigger_tokens: int
    keep_last_messages: int = Field(default=6, ge=0)
    history_path_prefix: str = DEFAULT_HISTORY_PATH_PREFIX


# ── Dangling tool calls ───────────────────────────────────────────────

def patch_dangling_tool_calls(
    messages: Sequence[BaseMessage],
) -> Tuple[List[BaseMessage], bool]:
    """
    Synthesize a cancellation result for every unanswered tool call.

    Each synthesized ToolMessage is inserted right after the assistant
    message that issued the call.

    Returns:
        (patched messages, whether anything was inserted)
    """
    answered = {
        message.tool_call_id
        for message in messages
        if isinstance(message, ToolMessage)
    }

    patched: List[BaseMessage] = []
    changed = False
    for message in messages:
        patched.append(message)
        if not isinstance(message, AIMessage):
            continue
        for call in message.tool_calls:
            call_id = call.get("id")
            if not call_id or call_id in answered:
                continue
            patched.append(
                ToolMessage(
                    id=tool_message_id(call_id),
                    content=_DANGLING_TEMPLATE.format(name=call["name"], id=call_id),
                    name=call["name"],
                    tool_call_id=call_id,
                )
            )
            answered.add(call_id)
            changed = True

    if changed:
        logger.info(f"Patched {len(patched) - len(messages)} dangling tool calls")
    return patched, changed


# ── Summarization ─────────────────────────────────────────────────────

def thread_slug(thread_id: str) -> str:
    return thread_id.replace("/", "_").replace("\\", "_")


def history_path(policy: SummarizationPolicy, thread_id: str) -> str:
    prefix = policy.history_path_prefix.rstrip("/")
    return f"{prefix}/{thread_slug(thread_id)}.md"


def render_markdown(messages: Sequence[BaseMessage]) -> str:
    return "".join(
        f"### {message_role(message)}\n{message_text(message)}\n"
        for message in messages
    )


async def maybe_summarize(
    messages: Sequence[BaseMessage],
    policy: Optional[SummarizationPolicy],
    tokenizer: BaseTokenizer,
    filesystem: Optional[FileSystemBackend],
    thread_id: str,
) -> Optional[List[BaseMessage]]:
    """
    Offload older history when the log grows past the trigger.

    Algorithm:
        1. Skip unless a policy with a positive trigger and a filesystem
           are configured.
        2. Skip unless the count exceeds the trigger and there are more
           than ``keep_last_messages`` messages.
        3. Append the oldest ``len - keep_last`` messages as markdown to
           ``{prefix}/{thread_slug}.md`` (history is never overwritten).
           When the append does not land the log is left unchanged.
        4. Return ``[SystemMessage(note)] + last keep_last messages``.

    Returns:
        Rewritten log, or None when nothing was summarized.
    """
    if policy is None or filesystem is None or policy.trigger_tokens <= 0:
        return None
    if tokenizer.count_tokens(messages) <= policy.trigger_tokens:
        return None
    keep = policy.keep_last_messages
    if len(messages) <= keep:
        return None

    cut = len(messages) - keep
    evicted = list(messages[:cut])
    kept = list(messages[cut:])
    path = history_path(policy, thread_id)

    if not await append_file(filesystem, path, render_markdown(evicted)):
        logger.warning(f"History offload to {path} failed; keeping all {len(messages)} messages")
        return None
    logger.info(f"Summarized {len(evicted)} messages into {path}, keeping {len(kept)}")

    note = SystemMessage(
        id=_SUMMARY_ID_PREFIX + thread_slug(thread_id),
        content=_SUMMARY_NOTE.format(path=path),
    )
    return [note] + kept
