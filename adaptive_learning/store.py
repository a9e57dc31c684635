"""
Learning Store
==============

Persistent record of task executions, their behavioral sessions and the
successful-pattern catalogue. Everything the learning engine knows about the
past is read through this class.

Storage: All data is persisted in the learning SQLite database.

Usage:
    from adaptive_learning.store import LearningStore, TaskExecution

    store = LearningStore(session)
    exec_id = await store.record_execution(TaskExecution(
        plan_file="plan.md", task_number="1", task_name="Add login",
        agent="python-pro", success=True,
    ))
    history = await store.get_execution_history("plan.md", "1")
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from sqlalchemy import select, func, distinct, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_learning.db.models import (
    TaskExecutionModel,
    BehavioralSessionModel,
    ToolExecutionModel,
    FileOperationModel,
    SuccessfulPatternModel,
    validate_json_bag,
)
from adaptive_learning.errors import StorageError, ValidationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def storage_operation(session: AsyncSession, operation: str) -> AsyncIterator[None]:
    """
    Run a block of database work, rolling back and wrapping driver errors.

    Any SQLAlchemyError raised inside the block is re-raised as a
    StorageError naming ``operation``.
    """
    try:
        yield
    except SQLAlchemyError as e:
        await session.rollback()
        logger.debug("storage operation %r failed: %s", operation, e)
        raise StorageError(operation, e) from e


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize to naive UTC, the form timestamps are stored and read back in."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(tzinfo=None)


# =============================================================================
# Records
# =============================================================================

@dataclass
class TaskExecution:
    """A single task execution attempt."""
    task_number: str
    task_name: str
    success: bool
    plan_file: str = ""
    run_number: int = 1
    agent: str = ""
    prompt: str = ""
    output: str = ""
    error_message: str = ""
    duration_seconds: int = 0
    qc_verdict: str = ""  # GREEN, RED, YELLOW
    qc_feedback: str = ""
    failure_patterns: list = field(default_factory=list)
    timestamp: Optional[datetime] = None
    context: dict = field(default_factory=dict)
    id: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "plan_file": self.plan_file,
            "run_number": self.run_number,
            "task_number": self.task_number,
            "task_name": self.task_name,
            "agent": self.agent,
            "success": self.success,
            "output": self.output,
            "error_message": self.error_message,
            "duration_seconds": self.duration_seconds,
            "qc_verdict": self.qc_verdict,
            "qc_feedback": self.qc_feedback,
            "failure_patterns": list(self.failure_patterns),
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_row(cls, row: TaskExecutionModel) -> "TaskExecution":
        """Create from a database row, mapping NULLs to empty values."""
        return cls(
            id=row.id,
            plan_file=row.plan_file or "",
            run_number=row.run_number or 1,
            task_number=row.task_number,
            task_name=row.task_name,
            agent=row.agent or "",
            prompt=row.prompt or "",
            success=bool(row.success),
            output=row.output or "",
            error_message=row.error_message or "",
            duration_seconds=row.duration_seconds or 0,
            qc_verdict=row.qc_verdict or "",
            qc_feedback=row.qc_feedback or "",
            failure_patterns=list(row.failure_patterns or []),
            timestamp=row.timestamp,
            context=dict(row.context or {}),
        )


@dataclass
class SuccessfulPattern:
    """A previously successful task shape, keyed by its normalized hash."""
    task_hash: str
    pattern_description: str = ""
    last_agent: str = ""
    success_count: int = 1
    last_used: Optional[datetime] = None
    created_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "task_hash": self.task_hash,
            "pattern_description": self.pattern_description,
            "last_agent": self.last_agent,
            "success_count": self.success_count,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: SuccessfulPatternModel) -> "SuccessfulPattern":
        return cls(
            task_hash=row.task_hash,
            pattern_description=row.pattern_description or "",
            last_agent=row.last_agent or "",
            success_count=row.success_count or 0,
            last_used=row.last_used,
            created_at=row.created_at,
            metadata=dict(row.pattern_metadata or {}),
        )


@dataclass
class AgentPerformance:
    """Aggregate success numbers for one agent across all executions."""
    agent: str
    total_runs: int = 0
    success_count: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return self.success_count / self.total_runs


@dataclass
class StoreStats:
    """Summary numbers for the whole store."""
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    distinct_tasks: int = 0
    distinct_agents: int = 0
    patterns: int = 0
    agents: list = field(default_factory=list)  # list[AgentPerformance]

    @property
    def success_rate(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.successful_executions / self.total_executions


# =============================================================================
# Store
# =============================================================================

class LearningStore:
    """
    Record store for the adaptive learning engine.

    Provides:
    - Append-only execution records with per-task and recent-history queries
    - Behavioral session data (tool calls and file operations) per execution
    - The successful-pattern catalogue
    - Agent success statistics
    """

    def __init__(self, session: AsyncSession):
        self._db_session = session

    @property
    def session(self) -> AsyncSession:
        return self._db_session

    # -------------------------------------------------------------------------
    # Task executions
    # -------------------------------------------------------------------------

    async def record_execution(self, execution: TaskExecution) -> int:
        """
        Record a task execution.

        Sets ``execution.id`` (and ``execution.timestamp`` when unset) and
        returns the generated id.
        """
        if execution is None:
            raise ValidationError("execution cannot be None")
        if not execution.task_number:
            raise ValidationError("task_number is required")
        validate_json_bag(execution.failure_patterns, "failure_patterns")
        validate_json_bag(execution.context, "context")

        if execution.timestamp is None:
            execution.timestamp = _utcnow()

        row = TaskExecutionModel(
            plan_file=execution.plan_file,
            run_number=execution.run_number,
            task_number=execution.task_number,
            task_name=execution.task_name,
            agent=execution.agent,
            prompt=execution.prompt,
            success=execution.success,
            output=execution.output,
            error_message=execution.error_message,
            duration_seconds=execution.duration_seconds,
            qc_verdict=execution.qc_verdict,
            qc_feedback=execution.qc_feedback,
            failure_patterns=list(execution.failure_patterns),
            timestamp=as_utc(execution.timestamp),
            context=dict(execution.context),
        )
        async with storage_operation(self._db_session, "insert task execution"):
            self._db_session.add(row)
            await self._db_session.commit()

        execution.id = row.id
        logger.debug(
            "recorded execution %d for task %s (agent=%s, success=%s)",
            row.id, execution.task_number, execution.agent, execution.success,
        )
        return row.id

    async def get_execution(self, execution_id: int) -> Optional[TaskExecution]:
        """Get one execution by id, or None."""
        async with storage_operation(self._db_session, "query execution"):
            row = await self._db_session.get(TaskExecutionModel, execution_id)
        return TaskExecution.from_row(row) if row else None

    async def get_executions(self, plan_file: str) -> list[TaskExecution]:
        """All executions for a plan file, most recent first."""
        query = (
            select(TaskExecutionModel)
            .where(TaskExecutionModel.plan_file == plan_file)
            .order_by(TaskExecutionModel.id.desc())
        )
        async with storage_operation(self._db_session, "query executions"):
            result = await self._db_session.execute(query)
            rows = result.scalars().all()
        return [TaskExecution.from_row(r) for r in rows]

    async def get_execution_history(self, plan_file: str, task_number: str) -> list[TaskExecution]:
        """All executions of one task of one plan, most recent first."""
        query = (
            select(TaskExecutionModel)
            .where(
                TaskExecutionModel.plan_file == plan_file,
                TaskExecutionModel.task_number == task_number,
            )
            .order_by(TaskExecutionModel.id.desc())
        )
        async with storage_operation(self._db_session, "query execution history"):
            result = await self._db_session.execute(query)
            rows = result.scalars().all()
        return [TaskExecution.from_row(r) for r in rows]

    async def get_recent_executions(self, limit: int = 100) -> list[TaskExecution]:
        """The most recent ``limit`` executions across all plans, newest first."""
        query = (
            select(TaskExecutionModel)
            .order_by(TaskExecutionModel.timestamp.desc(), TaskExecutionModel.id.desc())
            .limit(limit)
        )
        async with storage_operation(self._db_session, "query recent executions"):
            result = await self._db_session.execute(query)
            rows = result.scalars().all()
        return [TaskExecution.from_row(r) for r in rows]

    async def get_run_count(self, plan_file: str) -> int:
        """Highest run number recorded for a plan, 0 if never executed."""
        query = select(func.coalesce(func.max(TaskExecutionModel.run_number), 0)).where(
            TaskExecutionModel.plan_file == plan_file
        )
        async with storage_operation(self._db_session, "query run count"):
            result = await self._db_session.execute(query)
            return int(result.scalar_one())

    # -------------------------------------------------------------------------
    # Behavioral data
    # -------------------------------------------------------------------------

    async def start_session(self, execution_id: int) -> int:
        """Open a behavioral session for an execution and return its id."""
        row = BehavioralSessionModel(task_execution_id=execution_id)
        async with storage_operation(self._db_session, "insert behavioral session"):
            self._db_session.add(row)
            await self._db_session.commit()
        return row.id

    async def record_tool_execution(
        self,
        session_id: int,
        tool_name: str,
        success: bool,
        parameters: Optional[dict] = None,
        duration_ms: int = 0,
        error_message: Optional[str] = None,
    ) -> int:
        """Record one tool invocation inside a behavioral session."""
        row = ToolExecutionModel(
            session_id=session_id,
            tool_name=tool_name,
            parameters=parameters or {},
            duration_ms=duration_ms,
            success=success,
            error_message=error_message,
        )
        async with storage_operation(self._db_session, "insert tool execution"):
            self._db_session.add(row)
            await self._db_session.commit()
        return row.id

    async def record_file_operation(
        self,
        session_id: int,
        operation_type: str,
        file_path: str,
        success: bool,
        duration_ms: int = 0,
        bytes_affected: int = 0,
        error_message: Optional[str] = None,
    ) -> int:
        """Record one file read/write/edit inside a behavioral session."""
        row = FileOperationModel(
            session_id=session_id,
            operation_type=operation_type,
            file_path=file_path,
            duration_ms=duration_ms,
            bytes_affected=bytes_affected,
            success=success,
            error_message=error_message,
        )
        async with storage_operation(self._db_session, "insert file operation"):
            self._db_session.add(row)
            await self._db_session.commit()
        return row.id

    async def _success_counts(self, model, execution_id: int, operation: str) -> tuple[int, int]:
        query = (
            select(
                func.count(model.id),
                func.coalesce(func.sum(case((model.success.is_(True), 1), else_=0)), 0),
            )
            .join(BehavioralSessionModel, model.session_id == BehavioralSessionModel.id)
            .where(BehavioralSessionModel.task_execution_id == execution_id)
        )
        async with storage_operation(self._db_session, operation):
            result = await self._db_session.execute(query)
            total, successes = result.one()
        return int(total or 0), int(successes or 0)

    async def get_tool_success_rate(self, execution_id: int) -> tuple[int, int]:
        """(total, successful) tool invocations linked to an execution."""
        return await self._success_counts(ToolExecutionModel, execution_id, "query tool execution score")

    async def get_file_success_rate(self, execution_id: int) -> tuple[int, int]:
        """(total, successful) file operations linked to an execution."""
        return await self._success_counts(FileOperationModel, execution_id, "query file operation score")

    async def get_file_paths(self, execution_id: int) -> list[str]:
        """Distinct file paths touched by an execution's sessions."""
        query = (
            select(FileOperationModel.file_path)
            .distinct()
            .join(BehavioralSessionModel, FileOperationModel.session_id == BehavioralSessionModel.id)
            .where(BehavioralSessionModel.task_execution_id == execution_id)
        )
        async with storage_operation(self._db_session, "query file paths"):
            result = await self._db_session.execute(query)
            return [p for p in result.scalars().all() if p]

    # -------------------------------------------------------------------------
    # Agent statistics
    # -------------------------------------------------------------------------

    async def find_best_alternative_agent(
        self,
        tried_agents: list[str],
        min_successes: int = 5,
    ) -> Optional[tuple[str, int]]:
        """
        Find the agent with the most successful executions overall.

        Only agents with at least ``min_successes`` successes that are not in
        ``tried_agents`` qualify.

        Returns:
            (agent, success_count), or None when no agent qualifies
        """
        success_count = func.count(TaskExecutionModel.id).label("success_count")
        query = (
            select(TaskExecutionModel.agent, success_count)
            .where(
                TaskExecutionModel.success.is_(True),
                TaskExecutionModel.agent.is_not(None),
                TaskExecutionModel.agent != "",
            )
            .group_by(TaskExecutionModel.agent)
            .having(func.count(TaskExecutionModel.id) >= min_successes)
            .order_by(success_count.desc(), TaskExecutionModel.agent.asc())
            .limit(1)
        )
        if tried_agents:
            query = query.where(TaskExecutionModel.agent.not_in(list(tried_agents)))

        async with storage_operation(self._db_session, "query alternative agents"):
            result = await self._db_session.execute(query)
            row = result.first()
        if row is None:
            return None
        return row[0], int(row[1])

    async def get_agent_performance(self) -> list[AgentPerformance]:
        """Per-agent run and success counts, best success rate first."""
        query = (
            select(
                TaskExecutionModel.agent,
                func.count(TaskExecutionModel.id),
                func.coalesce(func.sum(case((TaskExecutionModel.success.is_(True), 1), else_=0)), 0),
            )
            .where(TaskExecutionModel.agent.is_not(None), TaskExecutionModel.agent != "")
            .group_by(TaskExecutionModel.agent)
        )
        async with storage_operation(self._db_session, "query agent performance"):
            result = await self._db_session.execute(query)
            rows = result.all()

        stats = [AgentPerformance(agent=a, total_runs=int(t), success_count=int(s)) for a, t, s in rows]
        stats.sort(key=lambda p: (-p.success_rate, -p.total_runs, p.agent))
        return stats

    async def get_stats(self) -> StoreStats:
        """Aggregate counts for the whole store."""
        successes = func.coalesce(func.sum(case((TaskExecutionModel.success.is_(True), 1), else_=0)), 0)
        query = select(
            func.count(TaskExecutionModel.id),
            successes,
            func.count(distinct(TaskExecutionModel.task_number)),
            func.count(distinct(TaskExecutionModel.agent)),
        )
        async with storage_operation(self._db_session, "query stats"):
            result = await self._db_session.execute(query)
            total, ok, tasks, agents = result.one()
            pattern_count = await self._db_session.execute(select(func.count(SuccessfulPatternModel.id)))
            patterns = int(pattern_count.scalar_one())

        total = int(total or 0)
        ok = int(ok or 0)
        return StoreStats(
            total_executions=total,
            successful_executions=ok,
            failed_executions=total - ok,
            distinct_tasks=int(tasks or 0),
            distinct_agents=int(agents or 0),
            patterns=patterns,
            agents=await self.get_agent_performance(),
        )

    # -------------------------------------------------------------------------
    # Successful patterns
    # -------------------------------------------------------------------------

    async def add_pattern(self, pattern: SuccessfulPattern) -> None:
        """
        Record a successful pattern.

        A pattern whose hash is already known has its success count
        incremented and its description/agent refreshed instead.
        """
        if pattern is None or not pattern.task_hash:
            raise ValidationError("pattern task_hash is required")

        async with storage_operation(self._db_session, "upsert pattern"):
            result = await self._db_session.execute(
                select(SuccessfulPatternModel).where(SuccessfulPatternModel.task_hash == pattern.task_hash)
            )
            existing = result.scalar_one_or_none()

            if existing:
                existing.success_count = (existing.success_count or 0) + 1
                existing.last_used = _utcnow()
                if pattern.pattern_description:
                    existing.pattern_description = pattern.pattern_description
                if pattern.last_agent:
                    existing.last_agent = pattern.last_agent
                if pattern.metadata:
                    existing.pattern_metadata = dict(pattern.metadata)
            else:
                now = _utcnow()
                self._db_session.add(SuccessfulPatternModel(
                    task_hash=pattern.task_hash,
                    pattern_description=pattern.pattern_description,
                    last_agent=pattern.last_agent,
                    success_count=1,
                    last_used=now,
                    created_at=now,
                    pattern_metadata=dict(pattern.metadata),
                ))
            await self._db_session.commit()

    async def get_pattern(self, task_hash: str) -> Optional[SuccessfulPattern]:
        """Get a pattern by exact hash, or None."""
        async with storage_operation(self._db_session, "query pattern"):
            result = await self._db_session.execute(
                select(SuccessfulPatternModel).where(SuccessfulPatternModel.task_hash == task_hash)
            )
            row = result.scalar_one_or_none()
        return SuccessfulPattern.from_row(row) if row else None

    async def get_top_patterns(self, limit: int = 10) -> list[SuccessfulPattern]:
        """Patterns with the highest success counts."""
        if limit <= 0:
            limit = 10
        query = (
            select(SuccessfulPatternModel)
            .order_by(SuccessfulPatternModel.success_count.desc(), SuccessfulPatternModel.id.asc())
            .limit(limit)
        )
        async with storage_operation(self._db_session, "query top patterns"):
            result = await self._db_session.execute(query)
            rows = result.scalars().all()
        return [SuccessfulPattern.from_row(r) for r in rows]

    async def get_similar_patterns(self, hash_prefix: str, limit: int = 10) -> list[SuccessfulPattern]:
        """Patterns whose hash starts with ``hash_prefix``, most successful first."""
        escaped = hash_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        query = (
            select(SuccessfulPatternModel)
            .where(SuccessfulPatternModel.task_hash.like(f"{escaped}%", escape="\\"))
            .order_by(SuccessfulPatternModel.success_count.desc())
            .limit(limit)
        )
        async with storage_operation(self._db_session, "query similar patterns"):
            result = await self._db_session.execute(query)
            rows = result.scalars().all()
        return [SuccessfulPattern.from_row(r) for r in rows]


# =============================================================================
# Convenience Functions
# =============================================================================

async def create_learning_store(session: Any = None) -> LearningStore:
    """
    Create a LearningStore.

    Uses ``session`` when given, otherwise opens a new session from the
    configured session maker (``init_db`` must have been called).
    """
    if session is None:
        from adaptive_learning.db.connection import get_session_maker
        session = get_session_maker()()
    return LearningStore(session)
