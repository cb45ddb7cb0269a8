"""
Tool executor: one name -> handler map for built-in and external tools.

Built-in handlers are registered per enabled capability; tools listed by
the external registry are registered afterwards and override built-ins on
name collision. The executor never raises: any failure becomes an
``Error:`` outcome the model can react to.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .base import ToolDefinition, ToolOutcome
from .builtin import definitions
from .builtin import filesystem as filesystem_tools
from .builtin import shell as shell_tools
from .builtin import subagents as subagent_tools
from .builtin import todos as todo_tools
from .registry import ToolRegistry

logger = logging.getLogger(__name__)

REGISTRY_MISSING = "Error: Tool registry missing."

Handler = Callable[[Dict[str, Any], List[Dict[str, Any]]], Awaitable[ToolOutcome]]


def _capability_names(capabilities: Iterable[Any]) -> set:
    return {getattr(capability, "value", capability) for capability in capabilities}


class ToolExecutor:
    """
    Resolves and runs tool calls.

    Args:
        capabilities: Enabled built-in families (Capability values)
        filesystem: Backend for the file tools
        shell: Backend for ``execute``
        subagents: Registry for ``task``
        registry: External tool registry
    """

    def __init__(
        self,
        capabilities: Iterable[Any],
        filesystem: Optional[filesystem_tools.FileSystemBackend] = None,
        shell: Optional[shell_tools.ShellBackend] = None,
        subagents: Optional[subagent_tools.SubagentRegistry] = None,
        registry: Optional[ToolRegistry] = None,
    ):
        self.capabilities = _capability_names(capabilities)
        self.filesystem = filesystem
        self.shell = shell
        self.subagents = subagents
        self.registry = registry
        self.handlers: Dict[str, Handler] = {}
        self._builtin_definitions: Dict[str, ToolDefinition] = {}
        self._register_builtins()
        self._external_definitions: Dict[str, ToolDefinition] = {}
        self._register_external()

    # ── Registration ──────────────────────────────────────────────────

    def _register_builtins(self) -> None:
        if "planning" in self.capabilities:
            self.handlers["write_todos"] = self._write_todos
            self.handlers["read_todos"] = self._read_todos
            for definition in definitions.PLANNING_TOOLS:
                self._builtin_definitions[definition.name] = definition

        if "filesystem" in self.capabilities:
            for definition in definitions.FILESYSTEM_TOOLS:
                self.handlers[definition.name] = self._filesystem_handler(
                    getattr(filesystem_tools, definition.name)
                )
                if self.filesystem is not None:
                    self._builtin_definitions[definition.name] = definition

        if "shell" in self.capabilities:
            self.handlers["execute"] = self._execute
            if self.shell is not None:
                self._builtin_definitions["execute"] = definitions.EXECUTE

        if "subagents" in self.capabilities:
            self.handlers["task"] = self._task
            if self.subagents is not None:
                names = [descriptor.name for descriptor in self.subagents.list_subagents()]
                self._builtin_definitions["task"] = definitions.task_definition(names)

    def _register_external(self) -> None:
        if self.registry is None:
            return
        for definition in self.registry.list_tools():
            if definition.name in self.handlers:
                logger.debug(f"External tool '{definition.name}' overrides built-in")
            self.handlers[definition.name] = self._external
            self._external_definitions[definition.name] = definition

    def definitions(self) -> List[ToolDefinition]:
        """Tool definitions for the model, external wins, sorted by name."""
        merged = dict(self._builtin_definitions)
        merged.update(self._external_definitions)
        return [merged[name] for name in sorted(merged)]

    # ── Execution ─────────────────────────────────────────────────────

    async def execute(self, call: Dict[str, Any], current_todos: Optional[List[Dict[str, Any]]] = None) -> ToolOutcome:
        name = call.get("name", "")
        handler = self.handlers.get(name)
        if handler is None:
            if self.registry is None:
                return ToolOutcome(content=REGISTRY_MISSING, success=False)
            handler = self._external

        try:
            return await handler(call, list(current_todos or []))
        except Exception as exc:
            logger.warning(f"Tool '{name}' ({call.get('id')}) failed: {exc}")
            return ToolOutcome(content=f"Error: {exc}", success=False)

    def _filesystem_handler(self, func) -> Handler:
        async def handler(call, current_todos):
            content = await func(self.filesystem, call.get("args") or {})
            return ToolOutcome(content=content, success=self.filesystem is not None)
        return handler

    async def _write_todos(self, call, current_todos) -> ToolOutcome:
        content, items = todo_tools.write_todos(call.get("args") or {})
        return ToolOutcome(content=content, updates={"todos": items})

    async def _read_todos(self, call, current_todos) -> ToolOutcome:
        return ToolOutcome(content=todo_tools.read_todos(current_todos))

    async def _execute(self, call, current_todos) -> ToolOutcome:
        content, success = await shell_tools.execute(self.shell, call.get("args") or {})
        return ToolOutcome(content=content, success=success)

    async def _task(self, call, current_todos) -> ToolOutcome:
        content = await subagent_tools.task(self.subagents, call.get("args") or {})
        return ToolOutcome(content=content, success=self.subagents is not None)

    async def _external(self, call, current_todos) -> ToolOutcome:
        result = await self.registry.invoke(call)
        return ToolOutcome(content=result.content, success=result.success)
