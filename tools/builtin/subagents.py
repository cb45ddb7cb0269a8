"""
Sub-agent delegation (the ``task`` tool).

A ``SubagentRegistry`` supplied by the host runs a delegated prompt in a
fresh agent context and returns its final answer.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

NOT_CONFIGURED = "Error: Subagent registry not configured."
DEFAULT_SUBAGENT_TYPE = "general-purpose"


class SubagentDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str


class SubagentFileReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    offset: Optional[int] = None
    limit: Optional[int] = None


class SubagentContext(BaseModel):
    """Extra context forwarded to the sub-agent."""

    objective: Optional[str] = None
    constraints: List[str] = Field(default_factory=list)
    acceptance_criteria: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    file_references: List[SubagentFileReference] = Field(default_factory=list)


class SubagentRequest(BaseModel):
    prompt: str
    subagent_type: str = DEFAULT_SUBAGENT_TYPE
    context: Optional[SubagentContext] = None


class SubagentResult(BaseModel):
    content: str


class SubagentRegistry(ABC):
    @abstractmethod
    def list_subagents(self) -> List[SubagentDescriptor]:
        ...

    @abstractmethod
    async def run(self, request: SubagentRequest) -> SubagentResult:
        ...


async def task(registry: Optional[SubagentRegistry], args: Dict[str, Any]) -> str:
    if registry is None:
        return NOT_CONFIGURED
    context = args.get("context")
    request = SubagentRequest(
        prompt=args["description"] if "description" in args else args["prompt"],
        subagent_type=args.get("subagent_type") or DEFAULT_SUBAGENT_TYPE,
        context=SubagentContext.model_validate(context) if context else None,
    )
    result = await registry.run(request)
    return result.content
