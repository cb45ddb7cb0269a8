"""
Unit tests for the tool approval protocol types.
"""

import pytest
from pydantic import ValidationError

from datetime import datetime, timedelta, timezone

from core.approval import (
    Interruption,
    ToolApprovalDecision,
    ToolApprovalPattern,
    ToolApprovalPolicy,
    ToolApprovalRequest,
    ToolApprovalRule,
    ToolCallSummary,
    ToolRiskLevel,
    ToolSafetyPolicy,
    rule_sort_key,
)


class TestToolApprovalPolicy:

    def test_never(self):
        policy = ToolApprovalPolicy.never()
        assert not policy.requires_approval("execute")
        assert not policy.requires_approval_for(["execute", "write_file"])

    def test_always(self):
        policy = ToolApprovalPolicy.always()
        assert policy.requires_approval("ls")

    def test_allow_list(self):
        policy = ToolApprovalPolicy.allow_list(["ls", "read_file"])
        assert not policy.requires_approval("ls")
        assert policy.requires_approval("execute")
        assert not policy.requires_approval_for(["ls", "read_file"])
        assert policy.requires_approval_for(["ls", "execute"])

    def test_policy_is_frozen(self):
        policy = ToolApprovalPolicy.never()
        with pytest.raises(ValidationError):
            policy.mode = "always"


class TestToolApprovalDecision:

    def test_approved_and_rejected(self):
        assert ToolApprovalDecision.approved().decision_for("any") == "approved"
        assert ToolApprovalDecision.rejected().decision_for("any") == "rejected"

    def test_per_tool_missing_call_is_rejected(self):
        decision = ToolApprovalDecision.per_tool({"a": "approved", "b": "rejected"})
        assert decision.decision_for("a") == "approved"
        assert decision.decision_for("b") == "rejected"
        assert decision.decision_for("c") == "rejected"
        assert decision.rejected_ids(["a", "b", "c"]) == ["b", "c"]

    def test_coerce_accepts_strings_dicts_and_instances(self):
        assert ToolApprovalDecision.coerce("approved").kind == "approved"
        assert ToolApprovalDecision.coerce("rejected").kind == "rejected"
        dumped = ToolApprovalDecision.per_tool({"a": "approved"}).model_dump()
        assert ToolApprovalDecision.coerce(dumped).decision_for("a") == "approved"
        decision = ToolApprovalDecision.approved()
        assert ToolApprovalDecision.coerce(decision) is decision


class TestApprovalRequest:

    def test_request_payload_shape(self):
        request = ToolApprovalRequest(
            tool_calls=[ToolCallSummary(tool_call_id="c1", tool_name="execute", arguments_json='{"command": "ls"}')]
        )
        payload = request.model_dump()
        assert payload["kind"] == "tool_approval_required"
        assert payload["tool_calls"][0] == {
            "tool_call_id": "c1",
            "tool_name": "execute",
            "arguments_json": '{"command": "ls"}',
        }

    def test_interruption_round_trips_summaries(self):
        interruption = Interruption(
            interrupt_id="i1",
            run_id="r1",
            tool_calls=(ToolCallSummary(tool_call_id="c1", tool_name="ls", arguments_json="{}"),),
        )
        assert interruption.tool_calls[0].tool_name == "ls"


def _calls(*names):
    return [{"name": name, "id": f"c{index}"} for index, name in enumerate(names)]


class TestToolSafetyPolicy:

    def test_builtin_and_override_risk_levels(self):
        policy = ToolSafetyPolicy(risk_level_overrides={"fetch": ToolRiskLevel.NETWORK})
        assert policy.risk_level("read_file") == ToolRiskLevel.READ_ONLY
        assert policy.risk_level("write_todos") == ToolRiskLevel.STATE_MUTATION
        assert policy.risk_level("edit_file") == ToolRiskLevel.MUTATION
        assert policy.risk_level("execute") == ToolRiskLevel.EXECUTION
        assert policy.risk_level("fetch") == ToolRiskLevel.NETWORK
        assert policy.risk_level("custom") == ToolRiskLevel.READ_ONLY

    def test_mandatory_risk_level_overrides_policy(self):
        policy = ToolSafetyPolicy(
            approval_policy=ToolApprovalPolicy.never(),
            mandatory_approval_risk_levels=frozenset({ToolRiskLevel.EXECUTION}),
        )
        ls, execute = policy.assess(_calls("ls", "execute"))

        assert not ls.requires_approval
        assert ls.reason is None
        assert execute.requires_approval
        assert execute.reason == "mandatory_risk_level"
        assert execute.risk_level == ToolRiskLevel.EXECUTION

    def test_policy_reasons(self):
        always = ToolSafetyPolicy(approval_policy=ToolApprovalPolicy.always())
        assert always.assess(_calls("ls"))[0].reason == "policy_always"

        allow_list = ToolSafetyPolicy(approval_policy=ToolApprovalPolicy.allow_list(["ls"]))
        ls, grep = allow_list.assess(_calls("ls", "grep"))
        assert ls.requires_approval is False
        assert grep.reason == "policy_not_allow_listed"
        assert grep.tool_call_id == "c1"


class TestToolApprovalPattern:

    def test_matching(self):
        assert ToolApprovalPattern.exact("ls").matches("ls")
        assert not ToolApprovalPattern.exact("ls").matches("lsx")
        assert ToolApprovalPattern.prefix("read_").matches("read_file")
        assert ToolApprovalPattern.glob("*_file").matches("write_file")
        assert ToolApprovalPattern.glob("gr?p").matches("grep")
        assert not ToolApprovalPattern.glob("gr?p").matches("grouper")

    def test_rule_order_prefers_specific_then_recent(self):
        now = datetime.now(timezone.utc)
        glob = ToolApprovalRule(pattern=ToolApprovalPattern.glob("*"), decision="allow_always")
        short_prefix = ToolApprovalRule(pattern=ToolApprovalPattern.prefix("w"), decision="allow_always")
        long_prefix = ToolApprovalRule(pattern=ToolApprovalPattern.prefix("write"), decision="reject_always")
        exact = ToolApprovalRule(
            pattern=ToolApprovalPattern.exact("x"), decision="allow_once", updated_at=now - timedelta(hours=2)
        )
        older = ToolApprovalRule(
            id="rule:a", pattern=ToolApprovalPattern.exact("y"), decision="allow_once", updated_at=now - timedelta(hours=1)
        )
        newer = ToolApprovalRule(id="rule:b", pattern=ToolApprovalPattern.exact("z"), decision="allow_once", updated_at=now)

        ordered = sorted([glob, short_prefix, long_prefix, older, newer, exact], key=rule_sort_key)

        assert ordered[:3] == [newer, older, exact]
        assert ordered[3:] == [long_prefix, short_prefix, glob]
