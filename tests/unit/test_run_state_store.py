"""
Unit tests for orchestrator.run_state_store.RunStateStore.
"""

import uuid

import pytest

from orchestrator.harness_protocol import (
    AssistantDeltaPayload,
    HarnessEventEnvelope,
    HarnessEventType,
    NoPayload,
    ToolResultPayload,
)
from orchestrator.run_state_store import DuplicateEventError, RunStateStore, next_phase


def _envelope(event_type, sequence, run_id, session_id="session-1", payload=None):
    return HarnessEventEnvelope(
        event_type=event_type,
        sequence=sequence,
        run_id=run_id,
        session_id=session_id,
        payload=payload or NoPayload(),
    )


@pytest.fixture
def store(temp_db_path):
    return RunStateStore(temp_db_path)


class TestNextPhase:

    def test_lifecycle_events_set_phase(self):
        assert next_phase(HarnessEventType.RUN_STARTED, None) == "running"
        assert next_phase(HarnessEventType.RUN_INTERRUPTED, "running") == "interrupted"
        assert next_phase(HarnessEventType.RUN_RESUMED, "interrupted") == "running"
        assert next_phase(HarnessEventType.RUN_FINISHED, "running") == "finished"
        assert next_phase(HarnessEventType.RUN_CANCELLED, "interrupted") == "cancelled"

    def test_other_events_keep_phase(self):
        assert next_phase(HarnessEventType.ASSISTANT_DELTA, "interrupted") == "interrupted"
        assert next_phase(HarnessEventType.TOOL_RESULT, None) == "running"


class TestRunStateStore:
    """Tests for the event log and run snapshots"""

    def test_phase_follows_events(self, store):
        run_id = uuid.uuid4()

        snapshot = store.append_event(_envelope(HarnessEventType.RUN_STARTED, 1, run_id), thread_id="t1")
        assert snapshot.phase == "running"
        assert snapshot.thread_id == "t1"

        snapshot = store.append_event(
            _envelope(
                HarnessEventType.TOOL_RESULT,
                2,
                run_id,
                payload=ToolResultPayload(tool_call_id="c1", tool_name="ls", success=True),
            ),
            thread_id="t1",
        )
        assert snapshot.phase == "running"

        snapshot = store.append_event(_envelope(HarnessEventType.RUN_INTERRUPTED, 3, run_id), thread_id="t1")
        assert snapshot.phase == "interrupted"
        assert snapshot.last_event_sequence == 3

        snapshot = store.append_event(_envelope(HarnessEventType.RUN_RESUMED, 4, run_id), thread_id="t1")
        assert snapshot.phase == "running"
        snapshot = store.append_event(_envelope(HarnessEventType.RUN_FINISHED, 5, run_id), thread_id="t1")
        assert snapshot.phase == "finished"
        assert store.load_run_state(run_id) == snapshot

    def test_duplicate_sequence_rejected(self, store):
        run_id = uuid.uuid4()
        store.append_event(_envelope(HarnessEventType.RUN_STARTED, 1, run_id), thread_id="t1")

        with pytest.raises(DuplicateEventError) as exc_info:
            store.append_event(_envelope(HarnessEventType.RUN_FINISHED, 1, run_id), thread_id="t1")

        assert exc_info.value.sequence == 1
        assert store.load_run_state(run_id).phase == "running"
        assert len(store.load_events(run_id)) == 1

    def test_load_events_in_order_and_last_n(self, store):
        run_id = uuid.uuid4()
        store.append_event(_envelope(HarnessEventType.RUN_STARTED, 1, run_id), thread_id="t1")
        for sequence, delta in [(2, "Hel"), (3, "lo"), (4, "!")]:
            store.append_event(
                _envelope(HarnessEventType.ASSISTANT_DELTA, sequence, run_id, payload=AssistantDeltaPayload(delta=delta)),
                thread_id="t1",
            )

        events = store.load_events(run_id)
        assert [e.sequence for e in events] == [1, 2, 3, 4]
        assert events[1].payload.delta == "Hel"

        last_two = store.load_events(str(run_id), limit=2)
        assert [e.sequence for e in last_two] == [3, 4]
        assert [e.payload.delta for e in last_two] == ["lo", "!"]

    def test_unknown_run(self, store):
        assert store.load_run_state(uuid.uuid4()) is None
        assert store.load_events(uuid.uuid4()) == []
        assert store.rebuild_run_state(uuid.uuid4()) is None

    def test_rebuild_from_event_log(self, store, temp_db_path):
        import sqlite3

        run_id = uuid.uuid4()
        store.append_event(_envelope(HarnessEventType.RUN_STARTED, 1, run_id), thread_id="t1")
        store.append_event(_envelope(HarnessEventType.RUN_INTERRUPTED, 2, run_id), thread_id="t1")

        conn = sqlite3.connect(temp_db_path)
        conn.execute("DELETE FROM run_states")
        conn.commit()
        conn.close()
        assert store.load_run_state(run_id) is None

        rebuilt = store.rebuild_run_state(run_id)

        assert rebuilt.phase == "interrupted"
        assert rebuilt.last_event_sequence == 2
        assert rebuilt.session_id == "session-1"
        assert rebuilt.thread_id == "t1"

    def test_latest_run_queries(self, store):
        first, second = uuid.uuid4(), uuid.uuid4()
        store.append_event(_envelope(HarnessEventType.RUN_STARTED, 1, first), thread_id="t1")
        store.append_event(_envelope(HarnessEventType.RUN_INTERRUPTED, 2, first), thread_id="t1")
        store.append_event(_envelope(HarnessEventType.RUN_STARTED, 3, second), thread_id="t1")

        assert store.latest_run_state("session-1").run_id == second
        assert store.latest_interrupted_run("session-1").run_id == first
        assert store.latest_interrupted_run("other-session") is None

        store.append_event(_envelope(HarnessEventType.RUN_CANCELLED, 4, first), thread_id="t1")
        assert store.latest_interrupted_run("session-1") is None

    def test_last_event_sequence_per_session(self, store):
        run_id = uuid.uuid4()
        assert store.last_event_sequence("session-1") == 0

        store.append_event(_envelope(HarnessEventType.RUN_STARTED, 1, run_id), thread_id="t1")
        store.append_event(_envelope(HarnessEventType.RUN_INTERRUPTED, 2, run_id), thread_id="t1")
        store.append_event(_envelope(HarnessEventType.RUN_STARTED, 7, uuid.uuid4(), session_id="other"), thread_id="t2")

        assert store.last_event_sequence("session-1") == 2
        assert store.last_event_sequence("other") == 7

    def test_list_run_states(self, store):
        runs = [uuid.uuid4() for _ in range(3)]
        for index, run_id in enumerate(runs, start=1):
            store.append_event(_envelope(HarnessEventType.RUN_STARTED, index, run_id), thread_id="t1")

        listed = store.list_run_states(limit=2)

        assert len(listed) == 2
        assert listed[0].run_id == runs[-1]

    def test_persists_across_instances(self, temp_db_path):
        run_id = uuid.uuid4()
        RunStateStore(temp_db_path).append_event(_envelope(HarnessEventType.RUN_STARTED, 1, run_id), thread_id="t1")

        reopened = RunStateStore(temp_db_path)

        assert reopened.load_run_state(run_id).phase == "running"
