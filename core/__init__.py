"""
Core agent framework components following LangGraph patterns.

This module provides the foundational building blocks of the agent turn loop:
- State management with TypedDict and Annotated reducers
- Deterministic message ids and the message-log reducer
- Context budgeting (compaction, summarization, hard token limits)
- LangGraph workflow construction with tool approval interrupts
- Tool risk assessment, persisted approval rules and a signed audit trail
- SQLite checkpointing for conversation memory

Example:
    >>> from core import AgentConfig, AgentWorkflow, CheckpointManager
    >>> config = AgentConfig(model_name="local-model", max_steps=25)
    >>> workflow = AgentWorkflow(config, model=client, filesystem=backend)
    >>> async with CheckpointManager("memory.sqlite").checkpointer() as checkpointer:
    ...     app = workflow.compile(checkpointer)
"""

from .approval import (
    Interruption,
    ToolApprovalDecision,
    ToolApprovalPolicy,
    ToolApprovalPattern,
    ToolApprovalRequest,
    ToolApprovalRule,
    ToolCallSummary,
    ToolRiskLevel,
    ToolSafetyPolicy,
)
from .approval_store import ToolApprovalRuleStore, ToolAuditLog
from .budget import BudgetExceededError
from .checkpointing import CheckpointManager
from .config import ConfigLoader, load_config
from .context_compactor import CompactionPolicy, SummarizationPolicy
from .graph import AgentWorkflow, ModelClientMissingError
from .messages import InvalidMessagesUpdate, reduce_messages
from .state import AgentConfig, AgentState, Capability
from .tokenizer import ApproximateTokenizer, BaseTokenizer

__all__ = [
    "AgentConfig",
    "AgentState",
    "AgentWorkflow",
    "ApproximateTokenizer",
    "BaseTokenizer",
    "BudgetExceededError",
    "Capability",
    "CheckpointManager",
    "CompactionPolicy",
    "ConfigLoader",
    "Interruption",
    "InvalidMessagesUpdate",
    "ModelClientMissingError",
    "SummarizationPolicy",
    "ToolApprovalDecision",
    "ToolApprovalPattern",
    "ToolApprovalPolicy",
    "ToolApprovalRequest",
    "ToolApprovalRule",
    "ToolApprovalRuleStore",
    "ToolAuditLog",
    "ToolCallSummary",
    "ToolRiskLevel",
    "ToolSafetyPolicy",
    "load_config",
    "reduce_messages",
]

__version__ = "1.0.0"
