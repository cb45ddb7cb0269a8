"""
Harness session: the externally observable face of an agent thread.

A session wraps an ``AgentRuntime`` and converts its internal runtime
events and outcomes into the stable v1 harness protocol:

    model_token               -> assistant_delta
    tool_invocation_finished  -> tool_result
    interrupted outcome       -> tool_request (per call), run_interrupted
    rejection on resume       -> tool_denied (per rejected call)
    finished / out_of_steps   -> run_finished
    cancelled / failed        -> run_cancelled

Envelopes are numbered per session starting at 1, fanned out to every
``stream()`` subscriber and persisted through an optional RunStateStore.
A session recreated over an existing thread (e.g. after a restart) picks up
the checkpointed interruption and the stored sequence through ``restore()``;
start, resume and stop restore on first use.
"""

import asyncio
import logging
import uuid
from typing import AsyncIterator, List, Optional
from uuid import UUID

from core.approval import Interruption, ToolApprovalDecision

from .harness_protocol import (
    AssistantDeltaPayload,
    HarnessEventEnvelope,
    HarnessEventType,
    HarnessPayload,
    LifecycleState,
    NoPayload,
    ToolDeniedPayload,
    ToolRequestPayload,
    ToolResultPayload,
)
from .run_state_store import RunStateStore
from .runtime import (
    AgentRuntime,
    NoInterruptedRunError,
    RunAlreadyActiveError,
    RunHandle,
    RunOutcome,
    RuntimeEvent,
)

logger = logging.getLogger(__name__)

__all__ = [
    "HarnessSession",
    "NoInterruptedRunError",
    "RunAlreadyActiveError",
]


class HarnessSession:
    """
    Starts, resumes and stops runs and publishes harness envelopes.

    Use ``HarnessSession.create(runtime)`` to construct one.

    Example:
        >>> session = HarnessSession.create(runtime, run_state_store=store)
        >>> await session.start("list files")
        >>> outcome = await session.wait()
        >>> if session.interrupted():
        ...     await session.resume(ToolApprovalDecision.approved())
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        session_id: str,
        run_state_store: Optional[RunStateStore] = None,
    ):
        self.runtime = runtime
        self.session_id = session_id
        self.run_state_store = run_state_store
        self._sequence = 0
        self._subscribers: List[asyncio.Queue] = []
        self._monitor: Optional[asyncio.Task] = None
        self._stopped = False
        self._restored = False
        self.last_outcome: Optional[RunOutcome] = None

    @classmethod
    def create(
        cls,
        runtime: AgentRuntime,
        session_id: Optional[str] = None,
        run_state_store: Optional[RunStateStore] = None,
    ) -> "HarnessSession":
        return cls(
            runtime=runtime,
            session_id=session_id or f"session:{uuid.uuid4()}",
            run_state_store=run_state_store,
        )

    # ── Public API ────────────────────────────────────────────────────

    @property
    def lifecycle_state(self) -> LifecycleState:
        if self._monitor is not None and not self._monitor.done():
            return LifecycleState.RUNNING
        if self.runtime.pending_interruption is not None:
            return LifecycleState.INTERRUPTED
        if self._stopped:
            return LifecycleState.STOPPED
        return LifecycleState.IDLE

    def interrupted(self) -> bool:
        return self.lifecycle_state == LifecycleState.INTERRUPTED

    def pending_interruptions(self) -> List[Interruption]:
        pending = self.runtime.pending_interruption
        return [pending] if pending is not None else []

    async def restore(self) -> Optional[Interruption]:
        """
        Recover the outstanding interruption and the envelope sequence.

        An interruption whose run the store already records as finished or
        cancelled is dismissed instead.
        """
        self._restored = True
        if self._monitor is not None and not self._monitor.done():
            return None

        if self.run_state_store is not None:
            self._sequence = max(self._sequence, self._stored_sequence())

        pending = await self.runtime.restore_pending_interruption()
        if pending is not None and self.run_state_store is not None:
            try:
                recorded = self.run_state_store.load_run_state(pending.run_id)
            except Exception as exc:
                logger.warning(f"Failed to load run state for {pending.run_id}: {exc}")
                recorded = None
            if recorded is not None and recorded.phase in ("finished", "cancelled"):
                logger.info(f"Dismissing interruption of {recorded.phase} run {pending.run_id}")
                self.runtime.dismiss_interruption()
                return None
        return pending

    async def stream(self) -> AsyncIterator[HarnessEventEnvelope]:
        """Subscribe to envelopes emitted from now on."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)

    async def start(self, text: str) -> RunHandle:
        """
        Start a new run.

        Raises:
            RunAlreadyActiveError: If a run attempt is still active
        """
        self._ensure_not_running()
        abandoned = await self._current_interruption()
        handle = await self.runtime.start(text)
        self._stopped = False
        if abandoned is not None:
            self._emit(HarnessEventType.RUN_CANCELLED, abandoned.run_id)
        self._emit(HarnessEventType.RUN_STARTED, handle.run_id)
        self._monitor = asyncio.create_task(self._watch(handle))
        return handle

    async def resume(
        self,
        decision: ToolApprovalDecision,
        interrupt_id: Optional[str] = None,
    ) -> RunHandle:
        """
        Resume the interrupted run with ``decision``.

        Raises:
            RunAlreadyActiveError: If a run attempt is still active
            NoInterruptedRunError: If nothing (or a different interrupt) is pending
        """
        self._ensure_not_running()
        pending = await self._current_interruption()
        if pending is None or (interrupt_id is not None and interrupt_id != pending.interrupt_id):
            raise NoInterruptedRunError(interrupt_id)

        handle = await self.runtime.resume(pending.interrupt_id, decision)
        for call in pending.tool_calls:
            if decision.decision_for(call.tool_call_id) == "rejected":
                self._emit(
                    HarnessEventType.TOOL_DENIED,
                    handle.run_id,
                    ToolDeniedPayload(
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        reason="rejected",
                    ),
                )
        self._emit(HarnessEventType.RUN_RESUMED, handle.run_id)
        self._monitor = asyncio.create_task(self._watch(handle))
        return handle

    async def stop(self) -> Optional[RunOutcome]:
        """
        Cancel the active attempt or abandon the outstanding interruption.

        The cancelled run's partial answer stays available on the outcome.
        """
        monitor = self._monitor
        running = monitor is not None and not monitor.done()
        abandoned = None if running else await self._current_interruption()
        self._stopped = True

        if running:
            await self.runtime.stop()
            await monitor
            return self.last_outcome

        await self.runtime.stop()
        if abandoned is not None:
            self._emit(HarnessEventType.RUN_CANCELLED, abandoned.run_id)
            self.last_outcome = RunOutcome(status="cancelled")
        return self.last_outcome

    async def wait(self) -> Optional[RunOutcome]:
        """Wait for the current attempt and return its outcome."""
        if self._monitor is not None:
            await self._monitor
        return self.last_outcome

    # ── Internals ─────────────────────────────────────────────────────

    async def _current_interruption(self) -> Optional[Interruption]:
        if not self._restored:
            await self.restore()
        return self.runtime.pending_interruption

    def _stored_sequence(self) -> int:
        try:
            return int(self.run_state_store.last_event_sequence(self.session_id))
        except Exception as exc:
            logger.warning(f"Failed to load last sequence for session {self.session_id}: {exc}")
            return 0

    def _ensure_not_running(self) -> None:
        if self._monitor is not None and not self._monitor.done():
            raise RunAlreadyActiveError(self.runtime.thread_id)

    def _emit(
        self,
        event_type: HarnessEventType,
        run_id: str,
        payload: Optional[HarnessPayload] = None,
    ) -> HarnessEventEnvelope:
        self._sequence += 1
        envelope = HarnessEventEnvelope(
            event_type=event_type,
            sequence=self._sequence,
            run_id=UUID(str(run_id)),
            session_id=self.session_id,
            payload=payload or NoPayload(),
        )

        if self.run_state_store is not None:
            try:
                self.run_state_store.append_event(envelope, thread_id=self.runtime.thread_id)
            except Exception as exc:
                logger.warning(f"Failed to persist {event_type.value} for run {run_id}: {exc}")

        for queue in list(self._subscribers):
            queue.put_nowait(envelope)
        return envelope

    async def _pump(self, handle: RunHandle) -> None:
        async for event in handle.events():
            self._translate(handle.run_id, event)

    def _translate(self, run_id: str, event: RuntimeEvent) -> None:
        if event.kind == "model_token":
            delta = event.data.get("delta", "")
            if delta:
                self._emit(
                    HarnessEventType.ASSISTANT_DELTA,
                    run_id,
                    AssistantDeltaPayload(delta=delta),
                )
        elif event.kind == "tool_invocation_finished" and event.data.get("tool_call_id"):
            self._emit(
                HarnessEventType.TOOL_RESULT,
                run_id,
                ToolResultPayload(
                    tool_call_id=event.data["tool_call_id"],
                    tool_name=event.data.get("tool_name", ""),
                    success=bool(event.data.get("success", False)),
                ),
            )

    async def _watch(self, handle: RunHandle) -> None:
        pump = asyncio.create_task(self._pump(handle))
        try:
            outcome = await handle.outcome
        except asyncio.CancelledError:
            outcome = RunOutcome(status="cancelled", partial_answer=handle.partial_answer)
        except Exception as exc:
            logger.error(f"Run {handle.run_id} crashed: {exc}", exc_info=True)
            outcome = RunOutcome(status="cancelled", partial_answer=handle.partial_answer, error=exc)
        handle._close()
        await pump

        self.last_outcome = outcome
        if outcome.status in ("finished", "out_of_steps"):
            self._emit(HarnessEventType.RUN_FINISHED, handle.run_id)
        elif outcome.status == "interrupted" and outcome.interruption is not None:
            for call in outcome.interruption.tool_calls:
                self._emit(
                    HarnessEventType.TOOL_REQUEST,
                    handle.run_id,
                    ToolRequestPayload(
                        tool_call_id=call.tool_call_id,
                        tool_name=call.tool_name,
                        arguments_json=call.arguments_json,
                    ),
                )
            self._emit(HarnessEventType.RUN_INTERRUPTED, handle.run_id)
        else:
            self._emit(HarnessEventType.RUN_CANCELLED, handle.run_id)
