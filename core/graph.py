"""
LangGraph workflow for agent orchestration.

Implements one agent turn as a fixed node graph with conditional routing,
human-in-the-loop tool approval and parallel tool execution:

    START -> pre_model -> model -> [tools | END]
    tools -> Send(tool_execute) x N | pre_model | tool_approval
    tool_approval -> Send(tool_execute) x N | pre_model
    tool_execute -> pre_model

- pre_model repairs dangling tool calls, summarizes long histories and
  prepares the compacted window for the model.
- model assembles the system prompt, enforces the hard token budget,
  resolves a client (router first, then the direct client) and validates
  the token stream.
- tools sorts pending calls by (name, id), assesses their risk, applies
  persisted approval rules and audits the outcome. Calls that still need
  a human go to tool_approval; otherwise it fans out one tool_execute task
  per approved call.
- tool_approval raises the approval interrupt for the remaining calls and
  fans out once the decision arrives. It is the only node LangGraph
  re-enters on resume, so rule consumption and audit entries written by
  tools are never repeated.
- tool_execute runs exactly one call through the ToolExecutor, evicts
  oversized results and writes a single ToolMessage.
"""

import logging
from typing import Any, Dict, List, Literal, Optional

from langchain_core.messages import AIMessage, BaseMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import END, StateGraph
from langgraph.types import Command, Send, StreamWriter, interrupt

from shared.providers import BaseModelClient, ChatRequest, consume_stream
from tools.builtin.filesystem import FileSystemBackend
from tools.builtin.shell import ShellBackend
from tools.builtin.subagents import SubagentRegistry
from tools.executor import ToolExecutor
from tools.registry import ToolRegistry

from .approval import ToolApprovalDecision, ToolApprovalRequest, ToolCallSummary, ToolSafetyAssessment
from .approval_store import AuditDecision, ToolApprovalRuleStore, ToolAuditLog
from .budget import evict_large_tool_result, plan_request
from .context_compactor import maybe_summarize, patch_dangling_tool_calls
from .messages import (
    assistant_message_id,
    message_text,
    remove_all_marker,
    system_message_id,
    tool_call_arguments_json,
    tool_message_id,
)
from .prompts import build_system_prompt, load_memory
from .state import AgentConfig, AgentState, ToolTaskState
from .tokenizer import ApproximateTokenizer, BaseTokenizer

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_ID = "system:prompt"
REJECTION_NOTICE = "Tool execution rejected by user."
_REJECTED_TEMPLATE = (
    "Tool call {name} with id {id} was cancelled - tool execution was rejected by the user."
)


class ModelClientMissingError(RuntimeError):
    """Raised when neither a router nor a direct model client is configured."""

    def __init__(self):
        super().__init__("No model client or router configured for the model node.")


def task_id_from_config(config: RunnableConfig) -> str:
    """``{run_id}/{step}/{node}`` for the currently executing node."""
    configurable = config.get("configurable") or {}
    metadata = config.get("metadata") or {}
    run_id = configurable.get("run_id", "run")
    step = metadata.get("langgraph_step", 0)
    node = metadata.get("langgraph_node", "node")
    return f"{run_id}/{step}/{node}"


def sort_tool_calls(calls: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(calls, key=lambda call: (call.get("name") or "", call.get("id") or ""))


class AgentWorkflow:
    """
    LangGraph-based agent workflow with clean node separation.

    Architecture:
        1. pre_model: dangling-call repair, summarization, compaction
        2. model: prompt + budget + streamed model call
        3. route: tool calls pending -> tools, otherwise END
        4. tools: safety assessment, approval rules and parallel fan-out
        5. tool_approval: human approval interrupt for the remaining calls
        6. tool_execute: one isolated task per approved tool call

    Example:
        >>> workflow = AgentWorkflow(AgentConfig(), model=client, filesystem=fs)
        >>> app = workflow.compile(checkpointer)
        >>> await app.ainvoke({"messages": [HumanMessage(id="u1", content="Hi!")]},
        ...                   config={"configurable": {"thread_id": "conv-123", "run_id": "r1"}})
    """

    def __init__(
        self,
        config: AgentConfig,
        model: Optional[BaseModelClient] = None,
        router=None,
        tool_registry: Optional[ToolRegistry] = None,
        filesystem: Optional[FileSystemBackend] = None,
        shell: Optional[ShellBackend] = None,
        subagents: Optional[SubagentRegistry] = None,
        tokenizer: Optional[BaseTokenizer] = None,
        approval_rules: Optional[ToolApprovalRuleStore] = None,
        audit_log: Optional[ToolAuditLog] = None,
    ):
        """
        Initialize workflow with its collaborators.

        Args:
            config: AgentConfig with policies and limits
            model: Direct model client (used when no router is configured)
            router: ProviderRouter-like object exposing ``route(request, hints)``
            tool_registry: External tool registry
            filesystem: Backend for file tools, history offload and eviction
            shell: Backend for the execute tool
            subagents: Registry for the task tool
            tokenizer: Token counter (defaults to ApproximateTokenizer)
            approval_rules: Persisted rules consulted before asking for approval
            audit_log: Receives one entry per approval decision
        """
        self.config = config
        self.model = model
        self.router = router
        self.filesystem = filesystem
        self.tokenizer = tokenizer or ApproximateTokenizer()
        self.safety_policy = config.safety_policy()
        self.approval_rules = approval_rules
        self.audit_log = audit_log
        self.executor = ToolExecutor(
            capabilities=config.capabilities,
            filesystem=filesystem,
            shell=shell,
            subagents=subagents,
            registry=tool_registry,
        )

        self.graph = self._build_graph()

        logger.info(
            f"AgentWorkflow initialized: model={config.model_name}, "
            f"tools={len(self.executor.definitions())}, max_steps={config.max_steps}"
        )

    def _build_graph(self) -> StateGraph:
        """
        Construct the LangGraph workflow with nodes and edges.

        Returns:
            StateGraph: Uncompiled workflow graph
        """
        workflow = StateGraph(AgentState)

        workflow.add_node("pre_model", self._pre_model_node)
        workflow.add_node("model", self._model_node)
        workflow.add_node(
            "tools", self._tools_node, destinations=("tool_execute", "pre_model", "tool_approval")
        )
        workflow.add_node("tool_approval", self._tool_approval_node, destinations=("tool_execute", "pre_model"))
        workflow.add_node("tool_execute", self._tool_execute_node)

        workflow.set_entry_point("pre_model")
        workflow.add_edge("pre_model", "model")
        workflow.add_conditional_edges(
            "model",
            self._route_after_model,
            {
                "tools": "tools",
                "end": END,
            },
        )
        workflow.add_edge("tool_execute", "pre_model")

        return workflow

    # ── Nodes ─────────────────────────────────────────────────────────

    async def _pre_model_node(self, state: AgentState, config: RunnableConfig) -> Dict[str, Any]:
        """
        Prepare the message log and the model window.

        Rewrites the log (remove-all marker + new log) only when dangling
        calls were patched or history was summarized.
        """
        messages: List[BaseMessage] = list(state.get("messages") or [])
        thread_id = (config.get("configurable") or {}).get("thread_id", "default")

        patched, changed = patch_dangling_tool_calls(messages)
        summarized = await maybe_summarize(
            patched,
            self.config.summarization_policy,
            self.tokenizer,
            self.filesystem,
            thread_id,
        )

        update: Dict[str, Any] = {}
        current = patched
        if summarized is not None:
            current = summarized
        if summarized is not None or changed:
            update["messages"] = [remove_all_marker()] + current

        update["llm_input_messages"] = self.config.compaction_policy.compact(current, self.tokenizer)
        return update

    async def _model_node(
        self,
        state: AgentState,
        config: RunnableConfig,
        writer: StreamWriter,
    ) -> Dict[str, Any]:
        """
        Call the model once and append the assistant message.

        Raises:
            BudgetExceededError: Tool definitions exceed the hard token limit
            ModelClientMissingError: No router and no direct client
            StreamProtocolError: The stream did not end with exactly one final chunk
        """
        task_id = task_id_from_config(config)
        tools = self.executor.definitions()

        memory = await load_memory(self.filesystem, self.config.memory_sources)
        system_message = SystemMessage(
            id=SYSTEM_PROMPT_ID,
            content=build_system_prompt(
                additional=self.config.additional_system_prompt,
                memory=memory,
                tools=tools,
                include_tool_list=self.config.include_tool_list_in_system_prompt,
            ),
        )

        window = state.get("llm_input_messages")
        if window is None:
            window = list(state.get("messages") or [])

        plan = plan_request(
            system_message,
            window,
            tools,
            self.config.request_hard_token_limit,
            self.tokenizer,
        )
        plan.ensure_within_budget()

        request = ChatRequest(
            messages=plan.request_messages,
            tools=tools,
            model=self.config.model_name,
        )
        client = self._resolve_client(request)

        writer({
            "type": "model_invocation_started",
            "task_id": task_id,
            "message_count": len(plan.request_messages),
            "tool_count": len(tools),
        })
        response = await consume_stream(
            client.stream(request),
            on_token=lambda text: writer({"type": "model_token", "task_id": task_id, "delta": text}),
        )

        assistant_id = assistant_message_id(task_id)
        tool_calls = []
        for index, call in enumerate(response.message.tool_calls):
            tool_calls.append({
                "name": call["name"],
                "args": call.get("args") or {},
                "id": call.get("id") or f"{assistant_id}:call:{index}",
                "type": "tool_call",
            })
        content = message_text(response.message)
        assistant = AIMessage(id=assistant_id, content=content, tool_calls=tool_calls)

        writer({
            "type": "model_invocation_finished",
            "task_id": task_id,
            "tool_call_count": len(tool_calls),
        })
        logger.debug(f"Model returned {len(tool_calls)} tool calls ({task_id})")

        update: Dict[str, Any] = {
            "messages": [assistant],
            "pending_tool_calls": tool_calls,
            "llm_input_messages": None,
        }
        if not tool_calls:
            update["final_answer"] = content
        return update

    def _resolve_client(self, request: ChatRequest) -> BaseModelClient:
        if self.router is not None:
            return self.router.route(request, {"model_name": self.config.model_name})
        if self.model is not None:
            return self.model
        raise ModelClientMissingError()

    def _route_after_model(self, state: AgentState) -> Literal["tools", "end"]:
        next_action = "tools" if state.get("pending_tool_calls") else "end"
        logger.debug(f"Routing after model: {next_action}")
        return next_action

    def _tools_node(self, state: AgentState, config: RunnableConfig) -> Command:
        """
        Safety gate and parallel fan-out.

        Calls are sorted by (name, id). Calls that need approval are first
        matched against the persisted rules: ``allow_*`` rules approve and
        ``reject_always`` rules deny without asking. Whatever is left goes
        to tool_approval.
        """
        calls = sort_tool_calls(list(state.get("pending_tool_calls") or []))
        task_id = task_id_from_config(config)
        assessments = {a.tool_call_id: a for a in self.safety_policy.assess(calls)}

        pre_approved, pre_denied, required = [], [], []
        for call in calls:
            if not assessments[call["id"]].requires_approval:
                pre_approved.append(call)
                continue
            matched = self.approval_rules.resolve_decision(call["name"]) if self.approval_rules else None
            if matched is None:
                required.append(call)
            elif matched.decision == "reject_always":
                logger.info(f"Rule {matched.rule_id} denies {call['name']} ({call['id']})")
                pre_denied.append(call)
            else:
                logger.info(f"Rule {matched.rule_id} approves {call['name']} ({call['id']})")
                pre_approved.append(call)

        self._audit(pre_approved, "auto_approved", assessments, config)
        self._audit(pre_denied, "user_denied", assessments, config)

        if not required:
            return self._dispatch(state, task_id, pre_approved, pre_denied)

        self._audit(required, "approval_required", assessments, config)
        logger.info(f"{len(required)} of {len(calls)} tool calls need approval ({task_id})")
        return Command(
            update={
                "approval_gate": {
                    "approved": [call["id"] for call in pre_approved],
                    "denied": [call["id"] for call in pre_denied],
                }
            },
            goto="tool_approval",
        )

    def _tool_approval_node(self, state: AgentState, config: RunnableConfig) -> Command:
        """
        Ask for approval of the calls the tools node could not decide.

        LangGraph re-enters this node on resume and ``interrupt`` returns
        the decision. The interrupt payload carries the run id so a fresh
        runtime can restore the interruption from the checkpoint.
        """
        calls = sort_tool_calls(list(state.get("pending_tool_calls") or []))
        task_id = task_id_from_config(config)
        gate = state.get("approval_gate") or {}
        approved_ids = set(gate.get("approved") or [])
        denied_ids = set(gate.get("denied") or [])
        required = [call for call in calls if call["id"] not in approved_ids | denied_ids]

        request = ToolApprovalRequest(
            run_id=(config.get("configurable") or {}).get("run_id"),
            tool_calls=[
                ToolCallSummary(
                    tool_call_id=call["id"],
                    tool_name=call["name"],
                    arguments_json=tool_call_arguments_json(call),
                )
                for call in required
            ],
        )
        logger.info(f"Requesting approval for {len(required)} tool calls ({task_id})")
        decision = ToolApprovalDecision.coerce(interrupt(request.model_dump()))

        user_approved = [call for call in required if decision.decision_for(call["id"]) == "approved"]
        user_denied = [call for call in required if decision.decision_for(call["id"]) != "approved"]
        assessments = {a.tool_call_id: a for a in self.safety_policy.assess(required)}
        self._audit(user_approved, "user_approved", assessments, config)
        self._audit(user_denied, "user_denied", assessments, config)

        approved_ids.update(call["id"] for call in user_approved)
        approved = [call for call in calls if call["id"] in approved_ids]
        denied = [call for call in calls if call["id"] not in approved_ids]
        return self._dispatch(state, task_id, approved, denied)

    def _audit(
        self,
        calls: List[Dict[str, Any]],
        decision: AuditDecision,
        assessments: Dict[str, ToolSafetyAssessment],
        config: RunnableConfig,
    ) -> None:
        if self.audit_log is None or not calls:
            return
        thread_id = (config.get("configurable") or {}).get("thread_id", "default")
        task_id = task_id_from_config(config)
        for call in calls:
            assessment = assessments[call["id"]]
            self.audit_log.record(
                thread_id=thread_id,
                task_id=task_id,
                tool_call_id=call["id"],
                tool_name=call["name"],
                risk_level=assessment.risk_level,
                decision=decision,
                reason=assessment.reason,
            )

    def _dispatch(
        self,
        state: AgentState,
        task_id: str,
        approved: List[Dict[str, Any]],
        rejected: List[Dict[str, Any]],
    ) -> Command:
        """Write rejection messages and fan out one tool_execute per approved call."""
        update: Dict[str, Any] = {"pending_tool_calls": [], "approval_gate": None}
        if rejected:
            logger.info(f"Rejected {len(rejected)} tool calls ({task_id})")
            update["messages"] = [SystemMessage(id=system_message_id(task_id), content=REJECTION_NOTICE)] + [
                ToolMessage(
                    id=tool_message_id(call["id"]),
                    content=_REJECTED_TEMPLATE.format(name=call["name"], id=call["id"]),
                    name=call["name"],
                    tool_call_id=call["id"],
                )
                for call in rejected
            ]

        if not approved:
            return Command(update=update, goto="pre_model")

        todos = list(state.get("todos") or [])
        return Command(
            update=update,
            goto=[
                Send("tool_execute", ToolTaskState(current_tool_call=call, todos=todos))
                for call in approved
            ],
        )

    async def _tool_execute_node(self, state: ToolTaskState, writer: StreamWriter) -> Dict[str, Any]:
        """Execute one tool call and write its result message."""
        call = state["current_tool_call"]
        writer({
            "type": "tool_invocation_started",
            "tool_name": call["name"],
            "tool_call_id": call["id"],
        })

        outcome = await self.executor.execute(call, state.get("todos"))
        content = await evict_large_tool_result(
            call,
            outcome.content,
            self.filesystem,
            self.config.tool_result_eviction_token_limit,
        )

        writer({
            "type": "tool_invocation_finished",
            "tool_name": call["name"],
            "tool_call_id": call["id"],
            "success": outcome.success,
        })

        update: Dict[str, Any] = {
            "messages": [
                ToolMessage(
                    id=tool_message_id(call["id"]),
                    content=content,
                    name=call["name"],
                    tool_call_id=call["id"],
                    status="success" if outcome.success else "error",
                )
            ]
        }
        update.update(outcome.updates)
        return update

    def compile(self, checkpointer: Optional[BaseCheckpointSaver] = None):
        """
        Compile graph with checkpointing.

        Interrupt/resume requires a checkpointer; an in-memory saver is
        used when none is given.

        Args:
            checkpointer: Any LangGraph checkpointer (e.g. AsyncSqliteSaver)

        Returns:
            Compiled LangGraph app ready for invocation
        """
        if checkpointer:
            logger.info("Compiling graph with checkpointing enabled")
        else:
            logger.warning("Compiling graph with in-memory checkpointing (ephemeral)")
            checkpointer = InMemorySaver()

        return self.graph.compile(checkpointer=checkpointer)
