"""
Tool system for the agent workflow.

Built-in tool families (planning, filesystem, shell, subagents) and
externally registered tools share one name -> handler map in
``ToolExecutor``; external tools override built-ins on name collision.

Example:
    >>> from tools import LocalToolRegistry, ToolExecutor
    >>>
    >>> registry = LocalToolRegistry()
    >>>
    >>> @registry.register
    >>> def shout(text: str) -> str:
    ...     '''Upper-case the input.
    ...
    ...     Args:
    ...         text (str): Text to transform
    ...     '''
    ...     return text.upper()
    >>>
    >>> executor = ToolExecutor(capabilities=["planning"], registry=registry)
    >>> outcome = await executor.execute({"name": "shout", "args": {"text": "hi"}, "id": "c1"})
    >>> print(outcome.content)  # HI
"""

from .base import ToolDefinition, ToolError, ToolOutcome, ToolResult
from .executor import ToolExecutor
from .registry import LocalToolRegistry, ToolRegistry

__all__ = [
    "ToolDefinition",
    "ToolError",
    "ToolOutcome",
    "ToolResult",
    "ToolExecutor",
    "LocalToolRegistry",
    "ToolRegistry",
]

__version__ = "1.0.0"
