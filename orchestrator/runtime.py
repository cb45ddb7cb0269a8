"""
Run control for a compiled agent workflow.

``AgentRuntime`` binds a compiled LangGraph app to one conversation thread
and drives run attempts in background tasks:

- ``start(text)`` opens a new run with a deterministic user message id
- ``resume(interrupt_id, decision)`` answers the outstanding approval
  interrupt of the current run (same run id, new attempt id)
- ``stop()`` cancels the active attempt and abandons any interruption

The outstanding interruption is kept in memory and can be restored from
the thread's checkpoint by a fresh runtime (e.g. after a process restart).

Each attempt yields a ``RunHandle`` exposing the structured runtime events
(model tokens, tool invocations) and an ``outcome`` task that resolves to a
``RunOutcome``. Only one attempt may be active per thread.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Literal, Optional

from langchain_core.messages import HumanMessage
from langgraph.errors import GraphRecursionError
from langgraph.types import Command

from core.approval import Interruption, ToolApprovalDecision, ToolCallSummary
from core.messages import user_message_id

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["finished", "out_of_steps", "interrupted", "cancelled"]


class RunAlreadyActiveError(RuntimeError):
    """Raised when starting or resuming while another attempt is active on the thread."""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"A run attempt is already active on thread {thread_id}")


class NoInterruptedRunError(RuntimeError):
    """Raised when resuming without a matching outstanding interruption."""

    def __init__(self, interrupt_id: Optional[str] = None):
        self.interrupt_id = interrupt_id
        message = "No interrupted run to resume"
        if interrupt_id:
            message += f" (interrupt {interrupt_id})"
        super().__init__(message)


@dataclass(frozen=True)
class RuntimeEvent:
    """Structured event emitted by a graph node through the stream writer."""

    kind: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RunOutcome:
    """
    Terminal result of one run attempt.

    Attributes:
        status: finished, out_of_steps, interrupted or cancelled
        final_answer: Content of the final assistant message (finished runs)
        interruption: Outstanding approval request (interrupted runs)
        partial_answer: Tokens streamed during this attempt
        error: Exception that terminated the attempt, if any
    """

    status: OutcomeStatus
    final_answer: Optional[str] = None
    interruption: Optional[Interruption] = None
    partial_answer: str = ""
    error: Optional[BaseException] = None


class RunHandle:
    """Handle to one run attempt."""

    def __init__(self, run_id: str, attempt_id: str):
        self.run_id = run_id
        self.attempt_id = attempt_id
        self.outcome: Optional["asyncio.Task[RunOutcome]"] = None
        self._queue: "asyncio.Queue[Optional[RuntimeEvent]]" = asyncio.Queue()
        self._deltas: List[str] = []
        self._closed = False

    @property
    def partial_answer(self) -> str:
        return "".join(self._deltas)

    def _publish(self, event: RuntimeEvent) -> None:
        if event.kind == "model_token":
            self._deltas.append(event.data.get("delta", ""))
        self._queue.put_nowait(event)

    def _close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[RuntimeEvent]:
        """Yield runtime events until the attempt ends."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class AgentRuntime:
    """
    Drives run attempts of a compiled workflow on one thread.

    Args:
        app: Compiled LangGraph app (``AgentWorkflow.compile()``)
        thread_id: Conversation identity used for checkpoints
        recursion_limit: Step budget per attempt
    """

    def __init__(self, app, thread_id: str, recursion_limit: int = 50):
        self.app = app
        self.thread_id = thread_id
        self.recursion_limit = recursion_limit
        self._active: Optional[RunHandle] = None
        self._pending: Optional[Interruption] = None
        self._dismissed: set[str] = set()

    @property
    def active_handle(self) -> Optional[RunHandle]:
        if self._active is not None and self._active.outcome is not None and not self._active.outcome.done():
            return self._active
        return None

    @property
    def pending_interruption(self) -> Optional[Interruption]:
        return self._pending

    def _config(self, run_id: str) -> Dict[str, Any]:
        return {
            "configurable": {"thread_id": self.thread_id, "run_id": run_id},
            "recursion_limit": self.recursion_limit,
        }

    async def restore_pending_interruption(self) -> Optional[Interruption]:
        """
        Rebuild the outstanding interruption from the thread checkpoint.

        The run id travels in the interrupt payload. Interruptions that were
        abandoned or stopped by this runtime are not restored.
        """
        if self._pending is not None or self.active_handle is not None:
            return self._pending

        snapshot = await self.app.aget_state({"configurable": {"thread_id": self.thread_id}})
        if snapshot is None:
            return None
        interrupts = [
            item
            for task in snapshot.tasks
            for item in task.interrupts
            if item.id not in self._dismissed
        ]
        if not interrupts:
            return None

        run_id = (interrupts[0].value or {}).get("run_id")
        if not run_id:
            logger.warning(f"Checkpoint interrupt {interrupts[0].id} on thread {self.thread_id} has no run id")
            return None

        self._pending = self._to_interruption(interrupts, run_id)
        logger.info(f"Restored interrupted run {run_id} ({self._pending.interrupt_id}) on thread {self.thread_id}")
        return self._pending

    def dismiss_interruption(self) -> Optional[Interruption]:
        """Abandon the outstanding interruption without resuming it."""
        pending = self._pending
        if pending is not None:
            self._dismissed.add(pending.interrupt_id)
            self._pending = None
        return pending

    def _ensure_idle(self) -> None:
        if self.active_handle is not None:
            raise RunAlreadyActiveError(self.thread_id)

    async def _next_step_index(self) -> int:
        snapshot = await self.app.aget_state({"configurable": {"thread_id": self.thread_id}})
        metadata = snapshot.metadata if snapshot is not None else None
        if not metadata or metadata.get("step") is None:
            return 0
        return int(metadata["step"]) + 1

    async def start(self, text: str) -> RunHandle:
        """
        Start a new run with user input ``text``.

        An outstanding interruption of a previous run is abandoned.

        Raises:
            RunAlreadyActiveError: If an attempt is already running
        """
        self._ensure_idle()
        run_uuid = uuid.uuid4()
        await self.restore_pending_interruption()
        step_index = await self._next_step_index()
        self._ensure_idle()

        abandoned = self.dismiss_interruption()
        if abandoned is not None:
            logger.info(f"Abandoning interrupted run {abandoned.run_id}")

        graph_input = {
            "messages": [HumanMessage(id=user_message_id(run_uuid, step_index), content=text)],
            "final_answer": None,
        }
        return self._launch(str(run_uuid), graph_input)

    async def resume(self, interrupt_id: str, decision: ToolApprovalDecision) -> RunHandle:
        """
        Resume the interrupted run with an approval decision.

        Raises:
            RunAlreadyActiveError: If an attempt is already running
            NoInterruptedRunError: If ``interrupt_id`` is not outstanding
        """
        self._ensure_idle()
        pending = self._pending or await self.restore_pending_interruption()
        self._ensure_idle()
        if pending is None or pending.interrupt_id != interrupt_id:
            raise NoInterruptedRunError(interrupt_id)
        self.dismiss_interruption()
        return self._launch(pending.run_id, Command(resume=decision.model_dump()))

    async def stop(self) -> Optional[RunOutcome]:
        """Cancel the active attempt and clear any outstanding interruption."""
        handle = self.active_handle
        if handle is None:
            await self.restore_pending_interruption()
            self.dismiss_interruption()
            return None
        self.dismiss_interruption()
        handle.outcome.cancel()
        try:
            return await handle.outcome
        except asyncio.CancelledError:
            return RunOutcome(status="cancelled", partial_answer=handle.partial_answer)
        finally:
            handle._close()

    def _launch(self, run_id: str, graph_input: Any) -> RunHandle:
        handle = RunHandle(run_id=run_id, attempt_id=str(uuid.uuid4()))
        handle.outcome = asyncio.create_task(self._drive(handle, graph_input, self._config(run_id)))
        self._active = handle
        logger.info(f"Run {run_id} attempt {handle.attempt_id} started on thread {self.thread_id}")
        return handle

    async def _drive(self, handle: RunHandle, graph_input: Any, config: Dict[str, Any]) -> RunOutcome:
        interruption: Optional[Interruption] = None
        try:
            async for mode, chunk in self.app.astream(
                graph_input,
                config=config,
                stream_mode=["updates", "custom"],
            ):
                if mode == "custom" and isinstance(chunk, dict):
                    handle._publish(RuntimeEvent(kind=chunk.get("type", "custom"), data=chunk))
                elif mode == "updates" and isinstance(chunk, dict) and "__interrupt__" in chunk:
                    interruption = self._to_interruption(chunk["__interrupt__"], handle.run_id)

            if interruption is not None:
                self._pending = interruption
                logger.info(f"Run {handle.run_id} interrupted ({interruption.interrupt_id})")
                return RunOutcome(
                    status="interrupted",
                    interruption=interruption,
                    partial_answer=handle.partial_answer,
                )

            snapshot = await self.app.aget_state(config)
            final_answer = snapshot.values.get("final_answer") if snapshot is not None else None
            logger.info(f"Run {handle.run_id} finished")
            return RunOutcome(
                status="finished",
                final_answer=final_answer,
                partial_answer=handle.partial_answer,
            )
        except GraphRecursionError:
            logger.warning(f"Run {handle.run_id} ran out of steps (limit {self.recursion_limit})")
            return RunOutcome(status="out_of_steps", partial_answer=handle.partial_answer)
        except asyncio.CancelledError:
            logger.info(f"Run {handle.run_id} cancelled")
            return RunOutcome(status="cancelled", partial_answer=handle.partial_answer)
        except Exception as exc:
            logger.error(f"Run {handle.run_id} failed: {exc}", exc_info=True)
            return RunOutcome(status="cancelled", partial_answer=handle.partial_answer, error=exc)
        finally:
            handle._close()

    @staticmethod
    def _to_interruption(interrupts, run_id: str) -> Interruption:
        item = interrupts[0]
        value = item.value or {}
        return Interruption(
            interrupt_id=item.id,
            run_id=run_id,
            tool_calls=tuple(ToolCallSummary.model_validate(call) for call in value.get("tool_calls", [])),
        )
