"""
SQLite-based checkpointing for conversation persistence.

Wraps LangGraph's AsyncSqliteSaver with convenience methods for managing
conversation threads and their checkpoint history.
"""

import logging
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path

import aiosqlite
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

logger = logging.getLogger(__name__)


class CheckpointManager:
    """
    Manages SQLite checkpoints for conversation persistence.

    Provides high-level API for:
    - Creating async checkpointers for graph compilation
    - Listing conversation threads
    - Retrieving checkpoint history
    - Deleting conversations

    Example:
        >>> manager = CheckpointManager("agent_memory.sqlite")
        >>> async with manager.checkpointer() as checkpointer:
        ...     app = workflow.compile(checkpointer)
    """

    def __init__(self, db_path: str = "agent_memory.sqlite"):
        """
        Initialize checkpoint manager with SQLite database.

        Args:
            db_path: Path to SQLite database file (created if not exists)
        """
        self.db_path = Path(db_path)
        self._connections: list[aiosqlite.Connection] = []
        self._ensure_db_exists()

        logger.info(f"CheckpointManager initialized: {self.db_path}")

    def _ensure_db_exists(self):
        """Create database file and parent directories if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.db_path.exists():
            conn = sqlite3.connect(str(self.db_path))
            conn.close()
            logger.info(f"Created new checkpoint database: {self.db_path}")

    async def create_checkpointer(self) -> AsyncSqliteSaver:
        """
        Create AsyncSqliteSaver for use with compiled LangGraph.

        The underlying connection stays open until ``close()``; prefer
        ``checkpointer()`` for scoped use.

        Returns:
            AsyncSqliteSaver: Checkpointer with its tables created

        Example:
            >>> checkpointer = await manager.create_checkpointer()
            >>> app = workflow.compile(checkpointer)
            >>> await app.ainvoke(state, config={"configurable": {"thread_id": "conv-123"}})
        """
        conn = await aiosqlite.connect(str(self.db_path))
        await conn.execute("PRAGMA journal_mode=WAL")
        self._connections.append(conn)

        checkpointer = AsyncSqliteSaver(conn)
        await checkpointer.setup()
        logger.debug(f"Created checkpointer for {self.db_path}")
        return checkpointer

    @asynccontextmanager
    async def checkpointer(self):
        """Checkpointer whose connection is closed on exit."""
        checkpointer = await self.create_checkpointer()
        try:
            yield checkpointer
        finally:
            await self._release(checkpointer.conn)

    @property
    def open_connections(self) -> int:
        return len(self._connections)

    async def close(self) -> None:
        """Close every connection opened by ``create_checkpointer``."""
        for conn in list(self._connections):
            await self._release(conn)

    async def _release(self, conn) -> None:
        if conn in self._connections:
            self._connections.remove(conn)
            await conn.close()
            logger.debug(f"Closed checkpoint connection for {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def _has_table(self, conn, name: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def list_threads(self, limit: int = 100) -> list[dict]:
        """
        List conversation threads, most recently checkpointed first.

        Checkpoint ids are time-ordered, so the greatest id of a thread
        identifies its latest checkpoint.

        Args:
            limit: Maximum number of threads to return

        Returns:
            list[dict]: ``{"thread_id", "latest_checkpoint_id", "checkpoint_count"}``
        """
        with self._get_connection() as conn:
            if not self._has_table(conn, "checkpoints"):
                return []
            cursor = conn.execute(
                """
                SELECT thread_id, MAX(checkpoint_id) AS latest, COUNT(*)
                FROM checkpoints
                GROUP BY thread_id
                ORDER BY latest DESC
                LIMIT ?
                """,
                (limit,),
            )
            threads = [
                {"thread_id": row[0], "latest_checkpoint_id": row[1], "checkpoint_count": row[2]}
                for row in cursor.fetchall()
            ]

        logger.debug(f"Listed {len(threads)} conversation threads")
        return threads

    def get_thread_history(self, thread_id: str, limit: int = 50) -> list[dict]:
        """
        Retrieve checkpoint history for a conversation thread, newest first.

        Args:
            thread_id: Conversation identifier
            limit: Maximum checkpoints to return
        """
        with self._get_connection() as conn:
            if not self._has_table(conn, "checkpoints"):
                return []
            cursor = conn.execute(
                """
                SELECT checkpoint_id, thread_id, checkpoint_ns, parent_checkpoint_id
                FROM checkpoints
                WHERE thread_id = ?
                ORDER BY checkpoint_id DESC
                LIMIT ?
                """,
                (thread_id, limit),
            )
            history = [
                {
                    "checkpoint_id": row[0],
                    "thread_id": row[1],
                    "checkpoint_ns": row[2],
                    "parent_checkpoint_id": row[3],
                }
                for row in cursor.fetchall()
            ]

        logger.debug(f"Retrieved {len(history)} checkpoints for thread {thread_id}")
        return history

    def delete_thread(self, thread_id: str) -> int:
        """
        Delete all checkpoints and pending writes of a conversation thread.

        Returns:
            int: Number of checkpoints deleted
        """
        with self._get_connection() as conn:
            if not self._has_table(conn, "checkpoints"):
                return 0
            cursor = conn.execute("DELETE FROM checkpoints WHERE thread_id = ?", (thread_id,))
            deleted_count = cursor.rowcount
            if self._has_table(conn, "writes"):
                conn.execute("DELETE FROM writes WHERE thread_id = ?", (thread_id,))
            conn.commit()

        logger.info(f"Deleted {deleted_count} checkpoints for thread {thread_id}")
        return deleted_count

    def get_database_size(self) -> int:
        """Size of the checkpoint database in bytes."""
        size = self.db_path.stat().st_size
        logger.debug(f"Database size: {size / 1024:.2f} KB")
        return size
