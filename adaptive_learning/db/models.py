"""
Database Models for Adaptive Learning
=====================================

SQLAlchemy models for persisting task executions, behavioral sessions,
successful patterns, the knowledge graph and progress events.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Integer, Float, DateTime, ForeignKey, JSON, Text, Boolean, Index
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from adaptive_learning.errors import ValidationError


class Base(DeclarativeBase):
    pass


# =============================================================================
# Execution History
# =============================================================================

class TaskExecutionModel(Base):
    """One attempt at executing a plan task with a given agent."""
    __tablename__ = "task_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_file: Mapped[Optional[str]] = mapped_column(String(500), nullable=True, index=True)
    run_number: Mapped[int] = mapped_column(Integer, default=1)
    task_number: Mapped[str] = mapped_column(String(50), index=True)
    task_name: Mapped[str] = mapped_column(Text)
    agent: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    prompt: Mapped[str] = mapped_column(Text, default="")
    success: Mapped[bool] = mapped_column(Boolean, index=True)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0)
    qc_verdict: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # GREEN, RED, YELLOW
    qc_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_patterns: Mapped[List[str]] = mapped_column(JSON, default=list)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    context: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    sessions: Mapped[List["BehavioralSessionModel"]] = relationship(
        back_populates="execution", cascade="all, delete-orphan"
    )


class BehavioralSessionModel(Base):
    """Agent session attached to a task execution."""
    __tablename__ = "behavioral_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_execution_id: Mapped[int] = mapped_column(ForeignKey("task_executions.id", ondelete="CASCADE"), index=True)
    session_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    session_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_tool_calls: Mapped[int] = mapped_column(Integer, default=0)
    total_file_operations: Mapped[int] = mapped_column(Integer, default=0)

    execution: Mapped["TaskExecutionModel"] = relationship(back_populates="sessions")
    tool_executions: Mapped[List["ToolExecutionModel"]] = relationship(cascade="all, delete-orphan")
    file_operations: Mapped[List["FileOperationModel"]] = relationship(cascade="all, delete-orphan")


class ToolExecutionModel(Base):
    """A single tool invocation within a behavioral session."""
    __tablename__ = "tool_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("behavioral_sessions.id", ondelete="CASCADE"), index=True)
    tool_name: Mapped[str] = mapped_column(String(100), index=True)
    parameters: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    execution_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    success: Mapped[bool] = mapped_column(Boolean, index=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class FileOperationModel(Base):
    """A read/write/edit of a file within a behavioral session."""
    __tablename__ = "file_operations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(ForeignKey("behavioral_sessions.id", ondelete="CASCADE"), index=True)
    operation_type: Mapped[str] = mapped_column(String(20))  # read, write, edit
    file_path: Mapped[str] = mapped_column(String(1000), index=True)
    execution_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    bytes_affected: Mapped[int] = mapped_column(Integer, default=0)
    success: Mapped[bool] = mapped_column(Boolean)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SuccessfulPatternModel(Base):
    """A task shape that has succeeded before, keyed by a normalized hash."""
    __tablename__ = "successful_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_hash: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    pattern_description: Mapped[str] = mapped_column(Text, default="")
    last_agent: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, default=1, index=True)
    last_used: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    pattern_metadata: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)


# =============================================================================
# Knowledge Graph Tables
# =============================================================================

class KnowledgeNodeModel(Base):
    """A task, file, agent or pattern entity in the knowledge graph."""
    __tablename__ = "kg_nodes"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    node_type: Mapped[str] = mapped_column(String(20), index=True)  # task, file, agent, pattern
    properties: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class KnowledgeEdgeModel(Base):
    """
    Directed relationship between two knowledge graph nodes.

    Endpoints are plain strings with no foreign key, so dangling edges are
    allowed and parallel edges of the same type are not deduplicated.
    """
    __tablename__ = "kg_edges"
    __table_args__ = (
        Index("idx_kg_edges_source_target_type", "source_id", "target_id", "edge_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[str] = mapped_column(String(255), index=True)
    target_id: Mapped[str] = mapped_column(String(255), index=True)
    edge_type: Mapped[str] = mapped_column(String(30), index=True)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    edge_metadata: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


# =============================================================================
# Progress Events
# =============================================================================

class ProgressEventModel(Base):
    """Append-only test/build outcome observed during a task execution."""
    __tablename__ = "lip_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_execution_id: Mapped[int] = mapped_column(Integer, index=True)
    task_number: Mapped[str] = mapped_column(String(50), default="", index=True)
    event_type: Mapped[str] = mapped_column(String(20), index=True)  # test_pass, test_fail, build_success, build_fail
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=1.0)


# =============================================================================
# JSON Bags
# =============================================================================

_JSON_SCALARS = (str, int, float, bool, type(None))


def validate_json_bag(value: Any, field_name: str) -> None:
    """
    Check that a properties/metadata bag only holds JSON values.

    Scalars (str/int/float/bool/None) and nested lists/dicts of them are
    allowed; dict keys must be strings.
    """
    if isinstance(value, _JSON_SCALARS):
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            validate_json_bag(item, field_name)
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(f"{field_name}: keys must be strings, got {type(key).__name__}")
            validate_json_bag(item, field_name)
        return
    raise ValidationError(f"{field_name}: unsupported value of type {type(value).__name__}")
