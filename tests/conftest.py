"""
Shared fixtures for the adaptive learning tests.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from adaptive_learning.db import init_db, close_db
from adaptive_learning.knowledge_graph import KnowledgeGraph
from adaptive_learning.progress import ProgressScorer
from adaptive_learning.store import LearningStore, TaskExecution


@pytest_asyncio.fixture
async def session():
    """A session on a fresh in-memory learning database."""
    session_maker = await init_db(":memory:")
    async with session_maker() as s:
        yield s
    await close_db()


@pytest.fixture
def store(session):
    return LearningStore(session)


@pytest.fixture
def graph(session):
    return KnowledgeGraph(session)


@pytest.fixture
def scorer(session, store):
    return ProgressScorer(session, store)


@pytest.fixture
def make_execution():
    """Factory for TaskExecution records with increasing timestamps."""
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    counter = {"n": 0}

    def _make(**kwargs) -> TaskExecution:
        counter["n"] += 1
        defaults = {
            "plan_file": "plan.md",
            "task_number": "1",
            "task_name": "Task",
            "agent": "general-purpose",
            "success": True,
            "timestamp": base + timedelta(minutes=counter["n"]),
        }
        defaults.update(kwargs)
        return TaskExecution(**defaults)

    return _make


@pytest.fixture
def record_with_files(store):
    """Record an execution plus one behavioral session touching the given files."""
    async def _record(execution: TaskExecution, files, success: bool = True) -> int:
        exec_id = await store.record_execution(execution)
        session_id = await store.start_session(exec_id)
        for path in files:
            await store.record_file_operation(session_id, "write", path, success=success)
        return exec_id

    return _record
