"""
Agent state management following LangGraph patterns.

Provides the typed channel layout of the agent workflow and the immutable
run configuration. All message-log modifications flow through the
``reduce_messages`` reducer for predictable, idempotent graph behavior.
"""

from enum import Enum
from typing import Annotated, Optional, TypedDict

from langchain_core.messages import AnyMessage
from pydantic import BaseModel, ConfigDict, Field

from .approval import ToolApprovalPolicy, ToolRiskLevel, ToolSafetyPolicy
from .context_compactor import CompactionPolicy, SummarizationPolicy
from .messages import reduce_messages


def replace_todos(left: Optional[list[dict]], right: Optional[list[dict]]) -> list[dict]:
    """Last writer wins; parallel tool tasks never conflict on todos."""
    if right is None:
        return list(left or [])
    return list(right)


class AgentState(TypedDict, total=False):
    """
    Agent workflow channels.

    Attributes:
        messages: Canonical message log, merged through ``reduce_messages``
        llm_input_messages: Compacted window prepared by pre_model (None = use messages)
        pending_tool_calls: Tool calls issued by the last assistant message
        final_answer: Content of the last assistant message without tool calls
        todos: Planning list maintained by the write_todos tool
        approval_gate: Call ids the tools node already approved or denied
            before asking for approval
    """

    messages: Annotated[list[AnyMessage], reduce_messages]
    llm_input_messages: Optional[list[AnyMessage]]
    pending_tool_calls: list[dict]
    final_answer: Optional[str]
    todos: Annotated[list[dict], replace_todos]
    approval_gate: Optional[dict]


class ToolTaskState(TypedDict, total=False):
    """Isolated input handed to one parallel tool_execute task."""

    current_tool_call: dict
    todos: list[dict]


class Capability(str, Enum):
    """Feature gates for the built-in tool families."""

    PLANNING = "planning"
    FILESYSTEM = "filesystem"
    SHELL = "shell"
    SUBAGENTS = "subagents"


DEFAULT_CAPABILITIES = frozenset({Capability.PLANNING, Capability.FILESYSTEM})


class AgentConfig(BaseModel):
    """
    Immutable agent configuration.

    Attributes:
        model_name: Model identifier passed through on every ChatRequest
        capabilities: Enabled built-in tool families
        tool_approval_policy: Which tool calls need human approval
        tool_risk_level_overrides: Risk level per tool name
        mandatory_approval_risk_levels: Risk levels that always need approval
        default_tool_risk_level: Risk level of unknown tools
        compaction_policy: Window policy applied before every model call
        summarization_policy: Offload policy for long histories (None = off)
        request_hard_token_limit: Hard ceiling for one model request
        tool_result_eviction_token_limit: Evict tool results above this size
        additional_system_prompt: Appended to the base system prompt
        memory_sources: Filesystem paths rendered into the Memory section
        include_tool_list_in_system_prompt: Render the Tools section
        max_steps: Graph recursion limit per run attempt
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    model_name: str = Field(default="default")
    capabilities: frozenset[Capability] = Field(default=DEFAULT_CAPABILITIES)
    tool_approval_policy: ToolApprovalPolicy = Field(
        default_factory=lambda: ToolApprovalPolicy.allow_list(
            ["ls", "read_file", "glob", "grep", "read_todos", "write_todos"]
        )
    )
    tool_risk_level_overrides: dict[str, ToolRiskLevel] = Field(default_factory=dict)
    mandatory_approval_risk_levels: frozenset[ToolRiskLevel] = Field(default_factory=frozenset)
    default_tool_risk_level: ToolRiskLevel = ToolRiskLevel.READ_ONLY
    compaction_policy: CompactionPolicy = Field(
        default_factory=lambda: CompactionPolicy.max_tokens(12000)
    )
    summarization_policy: Optional[SummarizationPolicy] = None
    request_hard_token_limit: Optional[int] = Field(default=None, ge=1)
    tool_result_eviction_token_limit: int = Field(default=20000, ge=0)
    additional_system_prompt: Optional[str] = None
    memory_sources: tuple[str, ...] = ()
    include_tool_list_in_system_prompt: bool = True
    max_steps: int = Field(default=50, ge=1, le=10000)

    def has_capability(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def safety_policy(self) -> ToolSafetyPolicy:
        return ToolSafetyPolicy(
            approval_policy=self.tool_approval_policy,
            risk_level_overrides=dict(self.tool_risk_level_overrides),
            mandatory_approval_risk_levels=self.mandatory_approval_risk_levels,
            default_risk_level=self.default_tool_risk_level,
        )
