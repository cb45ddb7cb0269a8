"""
Message log reducer and deterministic message identities.

The ``messages`` channel of :class:`core.state.AgentState` is merged
exclusively through :func:`reduce_messages`. A write batch may:

- append a message with a new id,
- overwrite an existing message in place (same id, original position kept),
- delete a message (``RemoveMessage(id=...)``),
- reset the whole log (``RemoveMessage(id=REMOVE_ALL_MESSAGES)``).

User, assistant and system turn ids are content-addressed from the run/task
identity, so replaying a turn reproduces the same ids and the merge stays
idempotent across retried or duplicated writes.
"""

import hashlib
import json
import logging
import struct
import uuid
from typing import Iterable, List, Optional, Sequence, Union

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    RemoveMessage,
    SystemMessage,
    ToolMessage,
)
from langgraph.graph.message import REMOVE_ALL_MESSAGES

logger = logging.getLogger(__name__)

# ── Identity constants ────────────────────────────────────────────────
_ID_DOMAIN_TAG = b"HMSG1"
_ID_PREFIX = "msg:"
TOOL_MESSAGE_ID_PREFIX = "tool:"

MessageWrites = Union[BaseMessage, Sequence[BaseMessage], None]


class InvalidMessagesUpdate(ValueError):
    """
    Raised when a write batch cannot be merged into the message log.

    Attributes:
        message_id: Offending message id (if any)
    """

    def __init__(self, message: str, message_id: Optional[str] = None):
        self.message_id = message_id
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": "invalid_messages_update",
            "message": str(self),
            "message_id": self.message_id,
        }


def remove_all_marker() -> RemoveMessage:
    """Build the directive that discards every message already in the log."""
    return RemoveMessage(id=REMOVE_ALL_MESSAGES)


def is_remove_all(message: BaseMessage) -> bool:
    return isinstance(message, RemoveMessage) and message.id == REMOVE_ALL_MESSAGES


def _as_list(value: MessageWrites) -> List[BaseMessage]:
    if value is None:
        return []
    if isinstance(value, BaseMessage):
        return [value]
    return list(value)


def reduce_messages(left: MessageWrites, right: MessageWrites) -> List[BaseMessage]:
    """
    Merge a batch of proposed writes into a message log.

    Algorithm:
        1. Every write must carry an id.
        2. The last remove-all marker wins: the base log is discarded and
           only writes after that marker are considered.
        3. Surviving writes are applied in order. A known id is overwritten
           in place (and un-deleted if an earlier write removed it), a new id
           is appended, a ``RemoveMessage`` marks its target for deletion.
        4. Marked messages are dropped; directives never reach the output.

    The function is pure: neither input is mutated.

    Args:
        left: Current message log.
        right: Write batch (single message or sequence).

    Returns:
        New canonical message log.

    Raises:
        InvalidMessagesUpdate: On id-less writes or a remove of an unknown id.
    """
    base = _as_list(left)
    writes = _as_list(right)

    for write in writes:
        if not write.id:
            raise InvalidMessagesUpdate(
                f"Message write of type '{write.type}' is missing an id"
            )

    last_reset = None
    for index, write in enumerate(writes):
        if is_remove_all(write):
            last_reset = index
    if last_reset is not None:
        base = []
        writes = writes[last_reset + 1:]

    merged: List[BaseMessage] = list(base)
    index_by_id = {message.id: index for index, message in enumerate(merged)}
    deleted: set[str] = set()

    for write in writes:
        if isinstance(write, RemoveMessage):
            if write.id not in index_by_id:
                raise InvalidMessagesUpdate(
                    f"Attempting to delete a message with an id that doesn't exist ('{write.id}')",
                    message_id=write.id,
                )
            deleted.add(write.id)
            continue

        existing = index_by_id.get(write.id)
        if existing is None:
            index_by_id[write.id] = len(merged)
            merged.append(write)
        else:
            merged[existing] = write
            deleted.discard(write.id)

    if deleted:
        logger.debug(f"Removing {len(deleted)} messages from log")

    return [message for message in merged if message.id not in deleted]


# ── Deterministic ids ─────────────────────────────────────────────────

def _uint32(value: int) -> bytes:
    return struct.pack(">I", value & 0xFFFFFFFF)


def _digest(parts: Iterable[bytes]) -> str:
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part)
    return _ID_PREFIX + hasher.hexdigest()


def user_message_id(run_id: uuid.UUID, step_index: int) -> str:
    """Id of the user message that opens step ``step_index`` of ``run_id``."""
    return _digest([_ID_DOMAIN_TAG, run_id.bytes, _uint32(step_index), b"user", _uint32(0)])


def _task_scoped_id(task_id: str, role: bytes) -> str:
    return _digest([_ID_DOMAIN_TAG, task_id.encode("utf-8"), b"\x00", role, _uint32(0)])


def assistant_message_id(task_id: str) -> str:
    return _task_scoped_id(task_id, b"assistant")


def system_message_id(task_id: str) -> str:
    return _task_scoped_id(task_id, b"system")


def tool_message_id(tool_call_id: str) -> str:
    return TOOL_MESSAGE_ID_PREFIX + tool_call_id


# ── Role / content helpers ────────────────────────────────────────────

def message_role(message: BaseMessage) -> str:
    """Map a LangChain message class to its conversational role."""
    if isinstance(message, HumanMessage):
        return "user"
    if isinstance(message, AIMessage):
        return "assistant"
    if isinstance(message, SystemMessage):
        return "system"
    if isinstance(message, ToolMessage):
        return "tool"
    return message.type


def message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for item in content:
        if isinstance(item, str):
            parts.append(item)
        elif isinstance(item, dict) and item.get("type") == "text":
            parts.append(item.get("text", ""))
    return "".join(parts)


def tool_call_arguments_json(call: dict) -> str:
    """Serialize a tool call's arguments deterministically."""
    return json.dumps(call.get("args") or {}, sort_keys=True)
