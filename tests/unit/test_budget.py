"""
Unit tests for request budget planning and tool-result eviction.
"""

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from core.budget import (
    BudgetExceededError,
    create_content_preview,
    evict_large_tool_result,
    eviction_path,
    plan_request,
    should_evict,
    tool_definitions_message,
    tool_token_cost,
    trim_system_message,
)
from core.tokenizer import ApproximateTokenizer
from tests.fakes import FixedTokenizer
from tools.base import ToolDefinition
from tools.builtin.filesystem import FileSystemBackend, InMemoryFileSystemBackend


TOOLS = [
    ToolDefinition("read_file", "Read a file"),
    ToolDefinition("ls", "List files"),
]


def _conversation():
    return [
        HumanMessage(id="u1", content="first"),
        AIMessage(id="a1", content="reply"),
        HumanMessage(id="u2", content="second"),
    ]


class TestToolCost:

    def test_no_tools_costs_nothing(self):
        assert tool_token_cost([], ApproximateTokenizer()) == 0

    def test_definitions_message_is_sorted_and_compact(self):
        message = tool_definitions_message(TOOLS)
        assert message.id == "budget:tools"
        assert message.content.index('"ls"') < message.content.index('"read_file"')
        assert ", " not in message.content

    def test_cost_uses_tokenizer(self):
        tokenizer = FixedTokenizer({"budget:tools": 42})
        assert tool_token_cost(TOOLS, tokenizer) == 42


class TestPlanRequest:
    """Tests for core/budget.plan_request"""

    # ── No ceiling ────────────────────────────────────────────────────

    def test_without_limit_sends_everything(self):
        system = SystemMessage(id="system:prompt", content="You are helpful.")
        plan = plan_request(system, _conversation(), TOOLS, None, ApproximateTokenizer())
        assert [m.id for m in plan.request_messages] == ["system:prompt", "u1", "a1", "u2"]
        plan.ensure_within_budget()

    # ── Hard ceiling ──────────────────────────────────────────────────

    def test_tools_over_limit_reports_exceeded(self):
        system = SystemMessage(id="system:prompt", content="x")
        tokenizer = FixedTokenizer({"budget:tools": 80})
        plan = plan_request(system, _conversation(), TOOLS, 80, tokenizer)

        assert plan.tool_token_count == 80
        with pytest.raises(BudgetExceededError) as exc_info:
            plan.ensure_within_budget()
        error = exc_info.value
        assert error.to_dict() == {
            "error": "budget_exceeded",
            "request_hard_token_limit": 80,
            "tool_token_count": 80,
            "tool_count": 2,
        }

    def test_tools_within_limit_leave_message_budget(self):
        system = SystemMessage(id="system:prompt", content="x")
        tokenizer = FixedTokenizer({"budget:tools": 80})
        plan = plan_request(system, _conversation(), TOOLS, 100, tokenizer)

        plan.ensure_within_budget()
        assert plan.tool_token_count == 80
        assert plan.message_token_limit == 19
        assert [m.id for m in plan.request_messages] == ["system:prompt", "u1", "a1", "u2"]

    def test_drops_oldest_conversation_first(self):
        system = SystemMessage(id="system:prompt", content="x")
        tokenizer = FixedTokenizer({"budget:tools": 10, "u1": 5, "a1": 5, "u2": 5})
        plan = plan_request(system, _conversation(), TOOLS, 20, tokenizer)

        # message budget = 20 - 10 - 1 = 9; system (1) + u2 (5) fits, adding a1 does not
        assert [m.id for m in plan.request_messages] == ["system:prompt", "u2"]

    def test_only_system_when_nothing_else_fits(self):
        system = SystemMessage(id="system:prompt", content="x")
        tokenizer = FixedTokenizer({"budget:tools": 10, "u1": 50, "a1": 50, "u2": 50})
        plan = plan_request(system, _conversation(), TOOLS, 20, tokenizer)
        assert [m.id for m in plan.request_messages] == ["system:prompt"]

    def test_trims_system_prompt_to_fit(self):
        system = SystemMessage(id="system:prompt", content="a" * 400)
        plan = plan_request(system, [], [], 21, ApproximateTokenizer())
        # budget 20 tokens -> at most 83 characters at 4 chars per token
        assert len(plan.system_message.content) == 83
        assert plan.request_messages == [plan.system_message]


class TestTrimSystemMessage:

    def test_fitting_message_unchanged(self):
        system = SystemMessage(id="s", content="short")
        assert trim_system_message(system, 100, ApproximateTokenizer()) is system

    def test_binary_search_finds_largest_prefix(self):
        system = SystemMessage(id="s", content="abcdefghij" * 10)
        trimmed = trim_system_message(system, 5, ApproximateTokenizer())
        assert trimmed.id == "s"
        assert trimmed.content == system.content[:23]


class TestEviction:
    """Tests for large tool-result eviction"""

    def test_preview_keeps_head_and_tail(self):
        content = "H" * 500 + "T" * 500
        preview = create_content_preview(content, 200)
        assert len(preview) <= 200
        assert preview.startswith("H")
        assert preview.endswith("T")
        assert "\n...\n" in preview

    def test_short_content_has_full_preview(self):
        assert create_content_preview("abc", 200) == "abc"

    def test_eviction_path_is_sanitized(self):
        assert eviction_path("call.1/x\\y") == "/large_tool_results/call_1_x_y"

    def test_exempt_tools_and_missing_backend(self):
        fs = InMemoryFileSystemBackend()
        big = "x" * 50_000
        assert not should_evict("grep", big, fs, 1000)
        assert not should_evict("web_fetch", big, None, 1000)
        assert not should_evict("web_fetch", big, fs, 0)
        assert should_evict("web_fetch", big, fs, 1000)
        assert not should_evict("web_fetch", "x" * 4000, fs, 1000)

    @pytest.mark.asyncio
    async def test_large_result_is_offloaded(self):
        fs = InMemoryFileSystemBackend()
        big = "x" * 50_000
        call = {"name": "web_fetch", "args": {}, "id": "call_1"}

        content = await evict_large_tool_result(call, big, fs, 1000)

        assert content.startswith("Tool result too large (tool_call_id: call_1).")
        assert "/large_tool_results/call_1" in content
        assert await fs.read("/large_tool_results/call_1") == big

    @pytest.mark.asyncio
    async def test_exempt_tool_keeps_content(self):
        fs = InMemoryFileSystemBackend()
        big = "x" * 50_000
        call = {"name": "grep", "args": {}, "id": "call_2"}
        assert await evict_large_tool_result(call, big, fs, 1000) == big
        assert not await fs.exists("/large_tool_results/call_2")

    @pytest.mark.asyncio
    async def test_write_failure_keeps_content(self):
        class BrokenFileSystem(InMemoryFileSystemBackend):
            async def write(self, path, content):
                raise OSError("disk full")

        big = "x" * 50_000
        call = {"name": "web_fetch", "args": {}, "id": "call_3"}
        assert await evict_large_tool_result(call, big, BrokenFileSystem(), 1000) == big

    def test_backend_is_abstract(self):
        with pytest.raises(TypeError):
            FileSystemBackend()
