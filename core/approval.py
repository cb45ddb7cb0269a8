"""
Tool-approval protocol types.

A ``ToolApprovalPolicy`` decides which tool calls must be approved by a
human before the tools node spawns them. ``ToolSafetyPolicy`` layers a
risk level on every call and can make approval mandatory per level.
Persisted ``ToolApprovalRule``s (see ``approval_store``) pre-approve or
pre-deny calls by tool-name pattern before anyone is asked.

When approval is still required the graph raises a LangGraph interrupt
carrying a ``ToolApprovalRequest``; the caller answers with a
``ToolApprovalDecision`` through ``Command(resume=...)``.
"""

import fnmatch
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ApprovalMode = Literal["never", "always", "allow_list"]
DecisionKind = Literal["approved", "rejected", "per_tool"]
Verdict = Literal["approved", "rejected"]
ApprovalReason = Literal["mandatory_risk_level", "policy_always", "policy_not_allow_listed"]
RuleDecision = Literal["allow_once", "allow_always", "reject_always"]
PatternKind = Literal["exact", "prefix", "glob"]


class ToolApprovalPolicy(BaseModel):
    """
    Approval policy over tool names.

    Modes:
        never: no call requires approval
        always: every call requires approval
        allow_list: calls outside ``allowed_tools`` require approval
    """

    model_config = ConfigDict(frozen=True)

    mode: ApprovalMode = "never"
    allowed_tools: frozenset[str] = Field(default_factory=frozenset)

    @classmethod
    def never(cls) -> "ToolApprovalPolicy":
        return cls(mode="never")

    @classmethod
    def always(cls) -> "ToolApprovalPolicy":
        return cls(mode="always")

    @classmethod
    def allow_list(cls, tools: Iterable[str]) -> "ToolApprovalPolicy":
        return cls(mode="allow_list", allowed_tools=frozenset(tools))

    def requires_approval(self, tool_name: str) -> bool:
        if self.mode == "never":
            return False
        if self.mode == "always":
            return True
        return tool_name not in self.allowed_tools

    def requires_approval_for(self, tool_names: Iterable[str]) -> bool:
        return any(self.requires_approval(name) for name in tool_names)


class ToolApprovalDecision(BaseModel):
    """
    Resume value for a tool-approval interrupt.

    ``per_tool`` decisions map tool_call_id to a verdict; a call missing
    from the map is treated as rejected.
    """

    model_config = ConfigDict(frozen=True)

    kind: DecisionKind
    decisions: dict[str, Verdict] = Field(default_factory=dict)

    @classmethod
    def approved(cls) -> "ToolApprovalDecision":
        return cls(kind="approved")

    @classmethod
    def rejected(cls) -> "ToolApprovalDecision":
        return cls(kind="rejected")

    @classmethod
    def per_tool(cls, decisions: dict[str, Verdict]) -> "ToolApprovalDecision":
        return cls(kind="per_tool", decisions=dict(decisions))

    def decision_for(self, tool_call_id: str) -> Verdict:
        if self.kind == "per_tool":
            return self.decisions.get(tool_call_id, "rejected")
        return self.kind

    def rejected_ids(self, tool_call_ids: Iterable[str]) -> list[str]:
        return [call_id for call_id in tool_call_ids if self.decision_for(call_id) == "rejected"]

    @classmethod
    def coerce(cls, value: Union["ToolApprovalDecision", str, dict, None]) -> "ToolApprovalDecision":
        """Accept a decision, a bare verdict string, or its dumped dict."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(kind=value)
        if isinstance(value, dict):
            return cls.model_validate(value)
        raise ValueError(f"Unsupported tool approval decision: {value!r}")


class ToolCallSummary(BaseModel):
    """Tool call as presented to the approver."""

    model_config = ConfigDict(frozen=True)

    tool_call_id: str
    tool_name: str
    arguments_json: str


class ToolApprovalRequest(BaseModel):
    """Interrupt payload raised by the tools node."""

    kind: Literal["tool_approval_required"] = "tool_approval_required"
    run_id: Optional[str] = None
    tool_calls: list[ToolCallSummary]


class Interruption(BaseModel):
    """An outstanding approval request, scoped to one run."""

    model_config = ConfigDict(frozen=True)

    interrupt_id: str
    run_id: str
    tool_calls: tuple[ToolCallSummary, ...]
    reason: Optional[str] = None


# ── Safety assessment ─────────────────────────────────────────────────

class ToolRiskLevel(str, Enum):
    """Risk of running a tool, ordered from harmless to outward-facing."""

    READ_ONLY = "read_only"
    STATE_MUTATION = "state_mutation"
    MUTATION = "mutation"
    EXECUTION = "execution"
    NETWORK = "network"


BUILTIN_RISK_LEVELS: dict[str, ToolRiskLevel] = {
    "ls": ToolRiskLevel.READ_ONLY,
    "read_file": ToolRiskLevel.READ_ONLY,
    "glob": ToolRiskLevel.READ_ONLY,
    "grep": ToolRiskLevel.READ_ONLY,
    "read_todos": ToolRiskLevel.READ_ONLY,
    "write_todos": ToolRiskLevel.STATE_MUTATION,
    "write_file": ToolRiskLevel.MUTATION,
    "edit_file": ToolRiskLevel.MUTATION,
    "execute": ToolRiskLevel.EXECUTION,
    "task": ToolRiskLevel.EXECUTION,
}


class ToolSafetyAssessment(BaseModel):
    """Risk level and approval requirement of one tool call."""

    model_config = ConfigDict(frozen=True)

    tool_call_id: str
    tool_name: str
    risk_level: ToolRiskLevel
    requires_approval: bool
    reason: Optional[ApprovalReason] = None


class ToolSafetyPolicy(BaseModel):
    """
    Combines the approval policy with per-tool risk levels.

    A call whose risk level is in ``mandatory_approval_risk_levels`` always
    requires approval; otherwise the approval policy decides. Risk levels
    come from ``risk_level_overrides``, then the built-in table, then
    ``default_risk_level``.
    """

    model_config = ConfigDict(frozen=True)

    approval_policy: ToolApprovalPolicy = Field(default_factory=ToolApprovalPolicy.never)
    risk_level_overrides: dict[str, ToolRiskLevel] = Field(default_factory=dict)
    mandatory_approval_risk_levels: frozenset[ToolRiskLevel] = Field(default_factory=frozenset)
    default_risk_level: ToolRiskLevel = ToolRiskLevel.READ_ONLY

    def risk_level(self, tool_name: str) -> ToolRiskLevel:
        if tool_name in self.risk_level_overrides:
            return self.risk_level_overrides[tool_name]
        return BUILTIN_RISK_LEVELS.get(tool_name, self.default_risk_level)

    def assess(self, tool_calls: Iterable[Mapping[str, Any]]) -> list[ToolSafetyAssessment]:
        """Assess LangChain tool-call dicts (``name``/``id``) in order."""
        assessments = []
        for call in tool_calls:
            name = call["name"]
            risk = self.risk_level(name)
            reason: Optional[ApprovalReason] = None
            if risk in self.mandatory_approval_risk_levels:
                reason = "mandatory_risk_level"
            elif self.approval_policy.requires_approval(name):
                reason = "policy_always" if self.approval_policy.mode == "always" else "policy_not_allow_listed"
            assessments.append(
                ToolSafetyAssessment(
                    tool_call_id=call["id"],
                    tool_name=name,
                    risk_level=risk,
                    requires_approval=reason is not None,
                    reason=reason,
                )
            )
        return assessments


# ── Persisted approval rules ──────────────────────────────────────────

class ToolApprovalPattern(BaseModel):
    """
    Tool-name matcher.

    ``glob`` supports ``*`` and ``?``. More specific patterns win: exact
    over prefix over glob, then the longer value.
    """

    model_config = ConfigDict(frozen=True)

    kind: PatternKind
    value: str

    @classmethod
    def exact(cls, value: str) -> "ToolApprovalPattern":
        return cls(kind="exact", value=value)

    @classmethod
    def prefix(cls, value: str) -> "ToolApprovalPattern":
        return cls(kind="prefix", value=value)

    @classmethod
    def glob(cls, value: str) -> "ToolApprovalPattern":
        return cls(kind="glob", value=value)

    def matches(self, tool_name: str) -> bool:
        if self.kind == "exact":
            return tool_name == self.value
        if self.kind == "prefix":
            return tool_name.startswith(self.value)
        return fnmatch.fnmatchcase(tool_name, self.value)

    @property
    def specificity(self) -> int:
        base = {"exact": 3000, "prefix": 2000, "glob": 1000}[self.kind]
        return base + len(self.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolApprovalRule(BaseModel):
    """A standing decision for tool names matching ``pattern``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"rule:{uuid.uuid4()}")
    pattern: ToolApprovalPattern
    decision: RuleDecision
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


def rule_sort_key(rule: ToolApprovalRule) -> tuple:
    """Most specific first, then most recently updated, then id."""
    return (-rule.pattern.specificity, -rule.updated_at.timestamp(), rule.id)


class MatchedToolApprovalRule(BaseModel):
    """The rule that decided a tool call."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    decision: RuleDecision
