"""
SQLite-backed durable run state for harness sessions.

Two tables:
- ``run_events``: append-only log of harness envelopes, keyed by
  ``(run_id, sequence)``
- ``run_states``: one snapshot row per run, updated on every append

The snapshot can always be rebuilt by replaying the event log.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from .harness_protocol import HarnessEventEnvelope, HarnessEventType

logger = logging.getLogger(__name__)

RunPhase = Literal["running", "interrupted", "finished", "cancelled"]

_PHASE_BY_EVENT = {
    HarnessEventType.RUN_STARTED: "running",
    HarnessEventType.RUN_RESUMED: "running",
    HarnessEventType.RUN_INTERRUPTED: "interrupted",
    HarnessEventType.RUN_FINISHED: "finished",
    HarnessEventType.RUN_CANCELLED: "cancelled",
}


class DuplicateEventError(ValueError):
    """Raised when an envelope with an already stored (run_id, sequence) is appended."""

    def __init__(self, run_id: str, sequence: int):
        self.run_id = run_id
        self.sequence = sequence
        super().__init__(f"Event {sequence} already recorded for run {run_id}")


class RunStateSnapshot(BaseModel):
    """Latest known state of one run."""

    model_config = ConfigDict(frozen=True)

    run_id: UUID
    session_id: str
    thread_id: str
    phase: RunPhase
    last_event_sequence: int
    updated_at: datetime


def next_phase(event_type: HarnessEventType, previous: Optional[str]) -> str:
    """Phase after ``event_type``; non-lifecycle events keep the prior phase."""
    return _PHASE_BY_EVENT.get(event_type, previous or "running")


class RunStateStore:
    """
    Persists harness envelopes and run snapshots.

    All writes are serialized through one lock; each operation opens its
    own connection so the store can be shared across threads.

    Example:
        >>> store = RunStateStore("run_state.sqlite")
        >>> store.append_event(envelope, thread_id="thread-1")
        >>> store.load_run_state(envelope.run_id).phase
        'running'
    """

    def __init__(self, db_path: str = "run_state.sqlite"):
        """
        Initialize the store and create its tables.

        Args:
            db_path: Path to SQLite database file (created if not exists)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._setup()

        logger.info(f"RunStateStore initialized: {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def _setup(self) -> None:
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS run_events (
                    run_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    session_id TEXT NOT NULL,
                    thread_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    envelope TEXT NOT NULL,
                    PRIMARY KEY (run_id, sequence)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS run_states (
                    run_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    thread_id TEXT NOT NULL,
                    phase TEXT NOT NULL,
                    last_event_sequence INTEGER NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_run_states_session ON run_states (session_id, updated_at)"
            )
            conn.commit()

    def append_event(self, envelope: HarnessEventEnvelope, thread_id: str) -> RunStateSnapshot:
        """
        Append one envelope and update the run snapshot.

        Returns:
            The updated snapshot

        Raises:
            DuplicateEventError: If (run_id, sequence) is already stored
        """
        run_id = str(envelope.run_id)
        with self._lock, self._get_connection() as conn:
            row = conn.execute(
                "SELECT phase FROM run_states WHERE run_id = ?", (run_id,)
            ).fetchone()
            phase = next_phase(envelope.event_type, row[0] if row else None)
            updated_at = datetime.now(timezone.utc)

            try:
                conn.execute(
                    """
                    INSERT INTO run_events (run_id, sequence, session_id, thread_id, event_type, envelope)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_id,
                        envelope.sequence,
                        envelope.session_id,
                        thread_id,
                        envelope.event_type.value,
                        envelope.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateEventError(run_id, envelope.sequence) from exc

            conn.execute(
                """
                INSERT INTO run_states (run_id, session_id, thread_id, phase, last_event_sequence, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    phase = excluded.phase,
                    last_event_sequence = MAX(run_states.last_event_sequence, excluded.last_event_sequence),
                    updated_at = excluded.updated_at
                """,
                (run_id, envelope.session_id, thread_id, phase, envelope.sequence, updated_at.isoformat()),
            )
            conn.commit()

        logger.debug(f"Run {run_id} event {envelope.sequence} ({envelope.event_type.value}) -> {phase}")
        return self.load_run_state(run_id)

    @staticmethod
    def _row_to_snapshot(row) -> RunStateSnapshot:
        return RunStateSnapshot(
            run_id=row[0],
            session_id=row[1],
            thread_id=row[2],
            phase=row[3],
            last_event_sequence=row[4],
            updated_at=datetime.fromisoformat(row[5]),
        )

    _SNAPSHOT_COLUMNS = "run_id, session_id, thread_id, phase, last_event_sequence, updated_at"

    def load_run_state(self, run_id: Union[UUID, str]) -> Optional[RunStateSnapshot]:
        with self._get_connection() as conn:
            row = conn.execute(
                f"SELECT {self._SNAPSHOT_COLUMNS} FROM run_states WHERE run_id = ?",
                (str(run_id),),
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_run_states(self, limit: int = 50) -> List[RunStateSnapshot]:
        """Most recently updated runs first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {self._SNAPSHOT_COLUMNS} FROM run_states
                ORDER BY updated_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    def load_events(self, run_id: Union[UUID, str], limit: Optional[int] = None) -> List[HarnessEventEnvelope]:
        """
        Events of ``run_id`` in sequence order.

        Args:
            run_id: Run to load
            limit: Return only the last ``limit`` events (None = all)
        """
        with self._get_connection() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT envelope FROM run_events WHERE run_id = ? ORDER BY sequence ASC",
                    (str(run_id),),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT envelope FROM (
                        SELECT envelope, sequence FROM run_events
                        WHERE run_id = ?
                        ORDER BY sequence DESC
                        LIMIT ?
                    ) ORDER BY sequence ASC
                    """,
                    (str(run_id), limit),
                ).fetchall()
        return [HarnessEventEnvelope.model_validate_json(row[0]) for row in rows]

    def latest_run_state(self, session_id: str) -> Optional[RunStateSnapshot]:
        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT {self._SNAPSHOT_COLUMNS} FROM run_states
                WHERE session_id = ?
                ORDER BY updated_at DESC, rowid DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def last_event_sequence(self, session_id: str) -> int:
        """Highest envelope sequence stored for ``session_id`` (0 when none)."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(sequence) FROM run_events WHERE session_id = ?", (session_id,)
            ).fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    def latest_interrupted_run(self, session_id: str) -> Optional[RunStateSnapshot]:
        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT {self._SNAPSHOT_COLUMNS} FROM run_states
                WHERE session_id = ? AND phase = 'interrupted'
                ORDER BY updated_at DESC, rowid DESC
                LIMIT 1
                """,
                (session_id,),
            ).fetchone()
        return self._row_to_snapshot(row) if row else None

    def rebuild_run_state(self, run_id: Union[UUID, str]) -> Optional[RunStateSnapshot]:
        """
        Recompute the snapshot of ``run_id`` by replaying its event log.

        The rebuilt snapshot replaces the stored one.
        """
        run_id = str(run_id)
        with self._lock, self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT sequence, session_id, thread_id, event_type
                FROM run_events WHERE run_id = ? ORDER BY sequence ASC
                """,
                (run_id,),
            ).fetchall()
            if not rows:
                return None

            phase: Optional[str] = None
            for _, _, _, event_type in rows:
                phase = next_phase(HarnessEventType(event_type), phase)
            last_sequence, session_id, thread_id, _ = rows[-1]

            conn.execute(
                """
                INSERT INTO run_states (run_id, session_id, thread_id, phase, last_event_sequence, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET
                    phase = excluded.phase,
                    last_event_sequence = excluded.last_event_sequence,
                    updated_at = excluded.updated_at
                """,
                (run_id, session_id, thread_id, phase, last_sequence, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

        logger.info(f"Rebuilt run state for {run_id} from {len(rows)} events")
        return self.load_run_state(run_id)
