"""
Base types for the tool system.

- ``ToolDefinition`` describes a tool to the model (name, description,
  JSON-schema parameters).
- ``ToolResult`` is what an external registry returns from ``invoke``.
- ``ToolOutcome`` is what the executor hands back to the graph: text
  content for the tool message, a success flag, and channel updates
  (e.g. todos).
- ``ToolError`` is raised by registries and handlers; the executor turns
  it into an ``Error:`` tool message.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ToolDefinition:
    """
    Model-facing tool description.

    Attributes:
        name: Unique tool name
        description: Human-readable purpose
        parameters: JSON schema of the arguments object
    """

    name: str
    description: str
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @property
    def parameters_json_schema(self) -> str:
        return json.dumps(self.parameters, sort_keys=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass
class ToolResult:
    """
    Result of invoking an external tool.

    Attributes:
        content: Text placed into the tool message
        success: False when the tool reported a failure

    Example:
        >>> return ToolResult(content="3 rows updated")
    """

    content: str
    success: bool = True


@dataclass
class ToolOutcome:
    """Executor result for one tool call."""

    content: str
    success: bool = True
    updates: Dict[str, Any] = field(default_factory=dict)


class ToolError(Exception):
    """
    Tool execution error.

    Attributes:
        message: Error description
        tool_name: Name of tool that failed (optional)

    Example:
        >>> raise ToolError("Unknown tool", tool_name="web_search")
    """

    def __init__(self, message: str, tool_name: Optional[str] = None):
        self.message = message
        self.tool_name = tool_name
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {"status": "error", "error": self.message}
        if self.tool_name:
            result["tool"] = self.tool_name
        return result
