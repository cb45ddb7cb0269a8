"""
External tool registry.

Tools contributed by the host application (outside the built-in families)
are exposed to the agent through a ``ToolRegistry``: ``list_tools()``
describes them to the model and ``invoke(call)`` executes one call.
Invocation failures surface as ``ToolError``, never as silent empty
results.

``LocalToolRegistry`` registers plain Python functions (sync or async) and
extracts a JSON schema from their signature and Google-style docstring.
"""

import inspect
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .base import ToolDefinition, ToolError, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistry(ABC):
    """Interface the agent consumes for externally supplied tools."""

    @abstractmethod
    def list_tools(self) -> List[ToolDefinition]:
        ...

    @abstractmethod
    async def invoke(self, call: Dict[str, Any]) -> ToolResult:
        """
        Execute one tool call.

        Args:
            call: LangChain tool call dict ``{"name", "args", "id"}``

        Raises:
            ToolError: If the tool is unknown or fails
        """


class LocalToolRegistry(ToolRegistry):
    """
    Registry of Python function tools.

    Example:
        >>> registry = LocalToolRegistry()
        >>>
        >>> @registry.register
        >>> def lookup_ticket(ticket_id: str) -> str:
        ...     '''Fetch a ticket summary.
        ...
        ...     Args:
        ...         ticket_id (str): Ticket identifier
        ...     '''
        ...     return f"Ticket {ticket_id}: open"
        >>>
        >>> result = await registry.invoke({"name": "lookup_ticket", "args": {"ticket_id": "7"}, "id": "c1"})
    """

    def __init__(self):
        self.tools: Dict[str, Callable] = {}
        self.definitions: Dict[str, ToolDefinition] = {}
        self.tool_metadata: Dict[str, Dict[str, Any]] = {}

    def register(
        self,
        func: Optional[Callable] = None,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        """
        Decorator for registering Python functions as tools.

        Args:
            func: Function to register (when used as @register)
            name: Override tool name (default: function name)
            description: Override description (default: from docstring)
            parameters: Override the extracted JSON schema

        Returns:
            Decorated function or decorator
        """
        def decorator(f: Callable) -> Callable:
            tool_name = name or f.__name__
            try:
                definition = self._extract_definition(f, tool_name, description)
            except Exception as e:
                logger.error(f"Failed to register tool '{tool_name}': {e}")
                raise
            if parameters is not None:
                definition = ToolDefinition(tool_name, definition.description, parameters)

            self.tools[tool_name] = f
            self.definitions[tool_name] = definition
            self.tool_metadata[tool_name] = {
                "type": "function",
                "registered_at": datetime.now().isoformat(),
            }
            logger.info(
                f"Registered function tool '{tool_name}' with "
                f"{len(definition.parameters.get('properties', {}))} parameters"
            )
            return f

        if func is None:
            return decorator
        return decorator(func)

    def list_tools(self) -> List[ToolDefinition]:
        return [self.definitions[name] for name in sorted(self.definitions)]

    async def invoke(self, call: Dict[str, Any]) -> ToolResult:
        tool_name = call.get("name", "")
        func = self.tools.get(tool_name)
        if func is None:
            raise ToolError(f"Unknown tool: {tool_name}", tool_name=tool_name)

        logger.debug(f"Executing tool '{tool_name}' with args: {call.get('args')}")
        try:
            result = func(**(call.get("args") or {}))
            if inspect.isawaitable(result):
                result = await result
        except ToolError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error in '{tool_name}': {e}", exc_info=True)
            raise ToolError(str(e), tool_name=tool_name) from e

        return self._to_result(result)

    @staticmethod
    def _to_result(value: Any) -> ToolResult:
        if isinstance(value, ToolResult):
            return value
        if isinstance(value, str):
            return ToolResult(content=value)
        if value is None:
            return ToolResult(content="")
        return ToolResult(content=json.dumps(value, sort_keys=True, default=str))

    def _extract_definition(
        self,
        func: Callable,
        name: str,
        description: Optional[str] = None,
    ) -> ToolDefinition:
        """
        Extract tool schema from function signature and docstring.

        Follows Google-style docstring format with Args: and Returns: sections.
        """
        sig = inspect.signature(func)
        doc = inspect.getdoc(func) or ""

        properties: Dict[str, Any] = {}
        required: List[str] = []
        for param_name, param in sig.parameters.items():
            if param_name == "self":
                continue
            properties[param_name] = {
                "type": self._python_type_to_json_type(param.annotation),
                "description": self._extract_param_description(doc, param_name),
            }
            if param.default == inspect.Parameter.empty:
                required.append(param_name)

        return ToolDefinition(
            name=name,
            description=description or self._extract_description(doc),
            parameters={"type": "object", "properties": properties, "required": required},
        )

    def _extract_description(self, docstring: str) -> str:
        """Extract main description from docstring (before Args:)"""
        description = []
        for line in docstring.split("\n"):
            line = line.strip()
            if any(section in line for section in ["Args:", "Returns:", "Raises:", "Example:"]):
                break
            if line:
                description.append(line)
        return " ".join(description) if description else "No description provided"

    def _extract_param_description(self, docstring: str, param_name: str) -> str:
        """Extract parameter description from Args: section"""
        in_args = False
        for line in docstring.split("\n"):
            line = line.strip()
            if line.startswith("Args:"):
                in_args = True
                continue
            if not in_args:
                continue
            if any(section in line for section in ["Returns:", "Raises:", "Example:"]):
                break
            head, sep, rest = line.partition(":")
            if not sep:
                continue
            if head.split(" ", 1)[0] == param_name:
                return rest.strip()
        return ""

    def _python_type_to_json_type(self, python_type) -> str:
        """Convert Python type hints to JSON schema types"""
        if python_type == inspect.Parameter.empty:
            return "string"

        type_map = {
            str: "string",
            int: "integer",
            float: "number",
            bool: "boolean",
            list: "array",
            dict: "object",
        }
        if python_type in type_map:
            return type_map[python_type]

        origin = getattr(python_type, "__origin__", None)
        if origin in type_map:
            return type_map[origin]

        if isinstance(python_type, str):
            lower_type = python_type.lower()
            for py_type, json_type in type_map.items():
                if py_type.__name__.lower() in lower_type:
                    return json_type

        return "string"

    def __repr__(self) -> str:
        return f"<LocalToolRegistry: {len(self.tools)} tools>"

    def __len__(self) -> int:
        return len(self.tools)
