"""
Harness event protocol (v1).

The externally observable, persisted contract of a harness session. It is
deliberately independent of the runtime's internal event shapes: every
envelope carries a protocol version, a per-session sequence number, the run
and session identity, and a payload discriminated by ``kind``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

PROTOCOL_VERSION = "v1"


class HarnessEventType(str, Enum):
    RUN_STARTED = "run_started"
    RUN_RESUMED = "run_resumed"
    RUN_INTERRUPTED = "run_interrupted"
    RUN_FINISHED = "run_finished"
    RUN_CANCELLED = "run_cancelled"
    ASSISTANT_DELTA = "assistant_delta"
    TOOL_REQUEST = "tool_request"
    TOOL_RESULT = "tool_result"
    TOOL_DENIED = "tool_denied"


class LifecycleState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    STOPPED = "stopped"


class AssistantDeltaPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["assistant_delta"] = "assistant_delta"
    delta: str


class ToolRequestPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_request"] = "tool_request"
    tool_call_id: str
    tool_name: str
    arguments_json: str


class ToolResultPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    tool_name: str
    success: bool


class ToolDeniedPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["tool_denied"] = "tool_denied"
    tool_call_id: str
    tool_name: str
    reason: str


class NoPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["none"] = "none"


HarnessPayload = Annotated[
    Union[AssistantDeltaPayload, ToolRequestPayload, ToolResultPayload, ToolDeniedPayload, NoPayload],
    Field(discriminator="kind"),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HarnessEventEnvelope(BaseModel):
    """
    One event of the harness protocol.

    Attributes:
        protocol_version: Always "v1"
        event_type: HarnessEventType
        sequence: Strictly increasing per session, starting at 1
        timestamp: UTC creation time
        run_id: Run the event belongs to
        session_id: Emitting harness session
        payload: Kind-discriminated payload
    """

    model_config = ConfigDict(frozen=True)

    protocol_version: Literal["v1"] = PROTOCOL_VERSION
    event_type: HarnessEventType
    sequence: int = Field(ge=1)
    timestamp: datetime = Field(default_factory=_utcnow)
    run_id: UUID
    session_id: str
    payload: HarnessPayload = Field(default_factory=NoPayload)
