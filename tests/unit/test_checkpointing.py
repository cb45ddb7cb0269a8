"""
Unit tests for core.checkpointing.CheckpointManager.

Drives a real AsyncSqliteSaver through a tiny graph so the thread
listing helpers read genuine checkpoint rows.
"""

from typing import TypedDict

import pytest
from langgraph.graph import END, StateGraph

from core.checkpointing import CheckpointManager


class CounterState(TypedDict):
    count: int


def _counter_graph():
    graph = StateGraph(CounterState)
    graph.add_node("increment", lambda state: {"count": state["count"] + 1})
    graph.set_entry_point("increment")
    graph.add_edge("increment", END)
    return graph


class TestCheckpointManager:

    def test_creates_database_file(self, tmp_path):
        db_path = tmp_path / "nested" / "memory.sqlite"
        CheckpointManager(str(db_path))
        assert db_path.exists()

    def test_empty_database_has_no_threads(self, temp_db_path):
        manager = CheckpointManager(temp_db_path)
        assert manager.list_threads() == []
        assert manager.get_thread_history("t1") == []
        assert manager.delete_thread("t1") == 0

    @pytest.mark.asyncio
    async def test_thread_listing_and_deletion(self, temp_db_path):
        manager = CheckpointManager(temp_db_path)
        async with manager.checkpointer() as checkpointer:
            app = _counter_graph().compile(checkpointer=checkpointer)
            await app.ainvoke({"count": 0}, {"configurable": {"thread_id": "t1"}})
            await app.ainvoke({"count": 10}, {"configurable": {"thread_id": "t2"}})

            threads = {thread["thread_id"] for thread in manager.list_threads()}
            assert threads == {"t1", "t2"}

            history = manager.get_thread_history("t1")
            assert history
            assert all(entry["thread_id"] == "t1" for entry in history)

            assert manager.delete_thread("t1") == len(history)
            assert [thread["thread_id"] for thread in manager.list_threads()] == ["t2"]

        assert manager.open_connections == 0

    @pytest.mark.asyncio
    async def test_close_releases_created_checkpointers(self, temp_db_path):
        manager = CheckpointManager(temp_db_path)
        first = await manager.create_checkpointer()
        await manager.create_checkpointer()
        assert manager.open_connections == 2

        await manager.close()

        assert manager.open_connections == 0
        with pytest.raises(ValueError):
            await first.conn.execute("SELECT 1")
        await manager.close()
