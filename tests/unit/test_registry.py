"""
Unit tests for tools.registry.LocalToolRegistry.

Tests tool registration, schema extraction from signatures and
docstrings, and invocation error handling.
"""

import pytest
from typing import Dict, Any, List

from tools.base import ToolError, ToolResult
from tools.registry import LocalToolRegistry, ToolRegistry


@pytest.fixture
def registry() -> LocalToolRegistry:
    return LocalToolRegistry()


class TestLocalToolRegistry:
    """Test suite for LocalToolRegistry."""

    # ── Registration ──────────────────────────────────────────────────

    def test_registry_initialization(self, registry):
        assert len(registry) == 0
        assert registry.list_tools() == []
        assert isinstance(registry, ToolRegistry)

    def test_register_simple_function(self, registry):
        @registry.register
        def lookup_ticket(ticket_id: str, verbose: bool = False) -> str:
            """
            Look up a support ticket.

            Args:
                ticket_id (str): Ticket identifier
                verbose (bool): Include the full history

            Returns:
                Ticket summary
            """
            return f"Ticket {ticket_id}"

        definition = registry.list_tools()[0]
        assert definition.name == "lookup_ticket"
        assert definition.description == "Look up a support ticket."
        assert definition.parameters == {
            "type": "object",
            "properties": {
                "ticket_id": {"type": "string", "description": "Ticket identifier"},
                "verbose": {"type": "boolean", "description": "Include the full history"},
            },
            "required": ["ticket_id"],
        }

    def test_register_with_overrides(self, registry):
        schema = {"type": "object", "properties": {"q": {"type": "string"}}}

        @registry.register(name="search", description="Search things", parameters=schema)
        def search_impl(q: str) -> str:
            return q

        definition = registry.list_tools()[0]
        assert definition.name == "search"
        assert definition.description == "Search things"
        assert definition.parameters == schema

    def test_list_tools_sorted_by_name(self, registry):
        registry.register(name="zeta")(lambda: "z")
        registry.register(name="alpha")(lambda: "a")
        assert [d.name for d in registry.list_tools()] == ["alpha", "zeta"]

    def test_type_mapping(self, registry):
        @registry.register
        def typed(a: int, b: float, c: List[str], d: Dict[str, Any], e="x"):
            """Typed tool."""

        props = registry.list_tools()[0].parameters["properties"]
        assert props["a"]["type"] == "integer"
        assert props["b"]["type"] == "number"
        assert props["c"]["type"] == "array"
        assert props["d"]["type"] == "object"
        assert props["e"]["type"] == "string"

    def test_missing_docstring(self, registry):
        @registry.register
        def bare(x: str):
            return x

        assert registry.list_tools()[0].description == "No description provided"

    # ── Invocation ────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_invoke_sync_function(self, registry):
        @registry.register
        def add(a: int, b: int) -> int:
            """Add numbers."""
            return a + b

        result = await registry.invoke({"name": "add", "args": {"a": 2, "b": 3}, "id": "c1"})
        assert result == ToolResult(content="5")

    @pytest.mark.asyncio
    async def test_invoke_async_function(self, registry):
        @registry.register
        async def fetch(url: str) -> str:
            """Fetch a URL."""
            return f"fetched {url}"

        result = await registry.invoke({"name": "fetch", "args": {"url": "x"}, "id": "c1"})
        assert result.content == "fetched x"

    @pytest.mark.asyncio
    async def test_invoke_serializes_structured_results(self, registry):
        registry.register(name="info")(lambda: {"b": 1, "a": 2})
        registry.register(name="nothing")(lambda: None)

        assert (await registry.invoke({"name": "info", "args": {}})).content == '{"a": 2, "b": 1}'
        assert (await registry.invoke({"name": "nothing", "args": {}})).content == ""

    @pytest.mark.asyncio
    async def test_invoke_unknown_tool(self, registry):
        with pytest.raises(ToolError, match="Unknown tool: missing") as exc_info:
            await registry.invoke({"name": "missing", "args": {}})
        assert exc_info.value.to_dict() == {"status": "error", "error": "Unknown tool: missing", "tool": "missing"}

    @pytest.mark.asyncio
    async def test_invoke_wraps_exceptions(self, registry):
        @registry.register
        def broken():
            """Always fails."""
            raise RuntimeError("kaput")

        with pytest.raises(ToolError, match="kaput") as exc_info:
            await registry.invoke({"name": "broken", "args": {}})
        assert exc_info.value.tool_name == "broken"

    @pytest.mark.asyncio
    async def test_tool_result_passthrough(self, registry):
        registry.register(name="soft_fail")(lambda: ToolResult(content="nope", success=False))
        result = await registry.invoke({"name": "soft_fail", "args": {}})
        assert result.success is False
