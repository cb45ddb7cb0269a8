"""
Unit tests for tools.executor.ToolExecutor.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from core.state import Capability
from tests.fakes import RecordingShell
from tools.base import ToolDefinition, ToolError, ToolResult
from tools.executor import REGISTRY_MISSING, ToolExecutor
from tools.registry import LocalToolRegistry


def _call(name, args=None, call_id="c1"):
    return {"name": name, "args": args or {}, "id": call_id}


class TestDefinitions:
    """Which tools are advertised to the model"""

    def test_planning_only(self):
        executor = ToolExecutor([Capability.PLANNING])
        assert [d.name for d in executor.definitions()] == ["read_todos", "write_todos"]

    def test_filesystem_requires_backend(self, filesystem):
        assert [d.name for d in ToolExecutor([Capability.FILESYSTEM]).definitions()] == []
        names = [d.name for d in ToolExecutor([Capability.FILESYSTEM], filesystem=filesystem).definitions()]
        assert names == ["edit_file", "glob", "grep", "ls", "read_file", "write_file"]

    def test_shell_and_subagents(self, recording_shell):
        subagents = Mock()
        subagents.list_subagents.return_value = []
        executor = ToolExecutor(
            [Capability.SHELL, Capability.SUBAGENTS],
            shell=recording_shell,
            subagents=subagents,
        )
        assert [d.name for d in executor.definitions()] == ["execute", "task"]

    def test_external_overrides_builtin(self, filesystem):
        registry = LocalToolRegistry()
        registry.register(name="ls", description="Custom listing")(lambda: "custom")
        registry.register(name="weather", description="Weather lookup")(lambda: "sunny")

        executor = ToolExecutor([Capability.FILESYSTEM], filesystem=filesystem, registry=registry)

        by_name = {d.name: d for d in executor.definitions()}
        assert by_name["ls"].description == "Custom listing"
        assert "weather" in by_name
        assert [d.name for d in executor.definitions()] == sorted(by_name)

    def test_accepts_plain_capability_strings(self):
        executor = ToolExecutor(["planning"])
        assert "write_todos" in executor.handlers


class TestExecute:
    """Tests for ToolExecutor.execute"""

    # ── Built-in handlers ─────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_filesystem_tool(self, filesystem):
        executor = ToolExecutor([Capability.FILESYSTEM], filesystem=filesystem)
        outcome = await executor.execute(_call("ls"))
        assert outcome.success
        assert outcome.content == "/README.md\n/src/"

    @pytest.mark.asyncio
    async def test_filesystem_without_backend_is_error(self):
        executor = ToolExecutor([Capability.FILESYSTEM])
        outcome = await executor.execute(_call("ls"))
        assert not outcome.success
        assert outcome.content == "Error: Filesystem not configured."

    @pytest.mark.asyncio
    async def test_write_todos_updates_channel(self):
        executor = ToolExecutor([Capability.PLANNING])
        outcome = await executor.execute(_call("write_todos", {"todos": [{"id": "1", "title": "Plan"}]}))
        assert outcome.updates == {"todos": [{"id": "1", "title": "Plan", "status": "pending"}]}

    @pytest.mark.asyncio
    async def test_read_todos_uses_snapshot(self):
        executor = ToolExecutor([Capability.PLANNING])
        outcome = await executor.execute(
            _call("read_todos"),
            current_todos=[{"id": "1", "title": "Plan", "status": "in_progress"}],
        )
        assert outcome.content == "[in_progress] 1: Plan"
        assert outcome.updates == {}

    @pytest.mark.asyncio
    async def test_shell_exit_code_drives_success(self):
        from tools.builtin.shell import ShellExecutionResult

        executor = ToolExecutor([Capability.SHELL], shell=RecordingShell(ShellExecutionResult(exit_code=1)))
        outcome = await executor.execute(_call("execute", {"command": "false"}))
        assert not outcome.success

    # ── Failures ──────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_error_outcome(self, filesystem):
        executor = ToolExecutor([Capability.FILESYSTEM], filesystem=filesystem)
        outcome = await executor.execute(_call("read_file", {"file_path": "/nope.txt"}))
        assert not outcome.success
        assert outcome.content == "Error: File not found: /nope.txt"

    @pytest.mark.asyncio
    async def test_unknown_tool_without_registry(self):
        executor = ToolExecutor([])
        outcome = await executor.execute(_call("mystery"))
        assert outcome.content == REGISTRY_MISSING
        assert not outcome.success

    @pytest.mark.asyncio
    async def test_unknown_tool_goes_to_registry(self):
        registry = Mock()
        registry.list_tools.return_value = [ToolDefinition("known", "Known tool")]
        registry.invoke = AsyncMock(side_effect=ToolError("Unknown tool: mystery", tool_name="mystery"))
        executor = ToolExecutor([], registry=registry)

        outcome = await executor.execute(_call("mystery"))

        registry.invoke.assert_awaited_once()
        assert outcome.content == "Error: Unknown tool: mystery"
        assert not outcome.success

    @pytest.mark.asyncio
    async def test_external_result_passthrough(self):
        registry = Mock()
        registry.list_tools.return_value = [ToolDefinition("weather", "Weather")]
        registry.invoke = AsyncMock(return_value=ToolResult(content="sunny"))
        executor = ToolExecutor([], registry=registry)

        outcome = await executor.execute(_call("weather", {"city": "Oslo"}))

        assert outcome.content == "sunny"
        assert outcome.success
        assert registry.invoke.await_args.args[0]["args"] == {"city": "Oslo"}
