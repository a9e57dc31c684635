"""
Progress Scoring
================

Collects discrete test/build outcome events ("LIP events") for task
executions and fuses them with tool and file-operation success rates into a
single 0-1 progress score. A failing attempt that built cleanly and passed
some tests scores higher than one that never got that far.

Storage: Events are appended to the lip_events table of the learning
database and never mutated.

Usage:
    from adaptive_learning.progress import ProgressScorer

    scorer = ProgressScorer(session)
    await scorer.record_build_result(exec_id, "3", success=True)
    await scorer.record_test_result(exec_id, "3", passed=False, details="2 failing")
    score = await scorer.calculate_progress(exec_id)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Union

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_learning.db.models import ProgressEventModel
from adaptive_learning.errors import InvalidEventType, InvalidExecutionID, ValidationError
from adaptive_learning.store import LearningStore, as_utc, storage_operation

logger = logging.getLogger(__name__)


class ProgressEventType(Enum):
    """Observable test/build outcomes."""
    TEST_PASS = "test_pass"
    TEST_FAIL = "test_fail"
    BUILD_SUCCESS = "build_success"
    BUILD_FAIL = "build_fail"


class ProgressScore:
    """Reference points on the 0-1 progress scale."""
    NONE = 0.0
    PARTIAL = 0.5
    COMPLETE = 1.0


# Failed tests/builds still earn partial credit for having been attempted.
EVENT_WEIGHTS = {
    ProgressEventType.TEST_PASS: 0.3,
    ProgressEventType.TEST_FAIL: 0.1,
    ProgressEventType.BUILD_SUCCESS: 0.3,
    ProgressEventType.BUILD_FAIL: 0.1,
}
TOOL_EXECUTION_WEIGHT = 0.1
FILE_OPERATION_WEIGHT = 0.2


def parse_event_type(value: Union[str, ProgressEventType]) -> ProgressEventType:
    """Coerce a string or enum to ProgressEventType, raising InvalidEventType otherwise."""
    if isinstance(value, ProgressEventType):
        return value
    try:
        return ProgressEventType(value)
    except ValueError:
        raise InvalidEventType(value) from None


@dataclass
class ProgressEvent:
    """A single test/build outcome observed for a task execution."""
    task_execution_id: int
    event_type: ProgressEventType
    task_number: str = ""
    details: str = ""
    confidence: Optional[float] = None  # None means full confidence
    timestamp: Optional[datetime] = None
    id: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_execution_id": self.task_execution_id,
            "task_number": self.task_number,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "details": self.details,
            "confidence": self.confidence,
        }

    @classmethod
    def from_row(cls, row: ProgressEventModel) -> "ProgressEvent":
        return cls(
            id=row.id,
            task_execution_id=row.task_execution_id,
            task_number=row.task_number or "",
            event_type=ProgressEventType(row.event_type),
            timestamp=row.timestamp,
            details=row.details or "",
            confidence=row.confidence,
        )


@dataclass
class EventFilter:
    """Query options for ProgressScorer.get_events. Unset fields do not filter."""
    task_number: str = ""
    task_execution_id: int = 0
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    event_types: list = field(default_factory=list)
    min_confidence: float = 0.0
    limit: int = 0


class ProgressScorer:
    """
    Records progress events and computes progress scores.

    The score for an execution is the sum of three bounded terms:
    - per event type, average confidence times the type's weight
    - tool invocation success rate times 0.1
    - file operation success rate times 0.2
    capped at 1.0. Passing signals alone reach at most 0.9; the failure
    events add their attempt credit on top.
    """

    def __init__(self, session: AsyncSession, store: Optional[LearningStore] = None):
        self._db_session = session
        self.store = store or LearningStore(session)

    async def record_event(self, event: ProgressEvent) -> ProgressEvent:
        """Validate and append an event; assigns ``id`` and fills defaults."""
        if event is None:
            raise ValidationError("event cannot be None")

        event.event_type = parse_event_type(event.event_type)
        if event.timestamp is None:
            event.timestamp = datetime.now(timezone.utc)
        if event.confidence is None:
            event.confidence = 1.0
        if not 0.0 <= event.confidence <= 1.0:
            raise ValidationError(f"confidence must be within [0, 1], got {event.confidence}")

        row = ProgressEventModel(
            task_execution_id=event.task_execution_id,
            task_number=event.task_number,
            event_type=event.event_type.value,
            timestamp=as_utc(event.timestamp),
            details=event.details,
            confidence=event.confidence,
        )
        async with storage_operation(self._db_session, "insert LIP event"):
            self._db_session.add(row)
            await self._db_session.commit()

        event.id = row.id
        logger.debug(
            "recorded %s for execution %d (confidence %.2f)",
            event.event_type.value, event.task_execution_id, event.confidence,
        )
        return event

    async def get_events(self, event_filter: Optional[EventFilter] = None) -> list[ProgressEvent]:
        """Events matching ``event_filter``, newest first."""
        f = event_filter or EventFilter()
        event_types = [parse_event_type(et).value for et in f.event_types]

        query = select(ProgressEventModel)
        if f.task_number:
            query = query.where(ProgressEventModel.task_number == f.task_number)
        if f.task_execution_id > 0:
            query = query.where(ProgressEventModel.task_execution_id == f.task_execution_id)
        if f.start is not None:
            query = query.where(ProgressEventModel.timestamp >= as_utc(f.start))
        if f.end is not None:
            query = query.where(ProgressEventModel.timestamp <= as_utc(f.end))
        if event_types:
            query = query.where(ProgressEventModel.event_type.in_(event_types))
        if f.min_confidence > 0:
            query = query.where(ProgressEventModel.confidence >= f.min_confidence)
        query = query.order_by(ProgressEventModel.timestamp.desc(), ProgressEventModel.id.desc())
        if f.limit > 0:
            query = query.limit(f.limit)

        async with storage_operation(self._db_session, "query LIP events"):
            result = await self._db_session.execute(query)
            events = [ProgressEvent.from_row(r) for r in result.scalars().all()]

        if not event_types:
            events.extend(await self._derived_behavioral_events(f))
            events.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
            if f.limit > 0:
                events = events[:f.limit]

        return events

    async def _derived_behavioral_events(self, event_filter: EventFilter) -> list[ProgressEvent]:
        """Events inferred from legacy behavioral records. Currently none are derived."""
        return []

    async def get_events_by_task(self, task_number: str) -> list[ProgressEvent]:
        return await self.get_events(EventFilter(task_number=task_number))

    async def get_events_by_execution(self, execution_id: int) -> list[ProgressEvent]:
        return await self.get_events(EventFilter(task_execution_id=execution_id))

    async def record_test_result(
        self,
        execution_id: int,
        task_number: str,
        passed: bool,
        details: str = "",
    ) -> ProgressEvent:
        """Record a test run as test_pass or test_fail."""
        return await self.record_event(ProgressEvent(
            task_execution_id=execution_id,
            task_number=task_number,
            event_type=ProgressEventType.TEST_PASS if passed else ProgressEventType.TEST_FAIL,
            details=details,
            confidence=1.0,
        ))

    async def record_build_result(
        self,
        execution_id: int,
        task_number: str,
        success: bool,
        details: str = "",
    ) -> ProgressEvent:
        """Record a build as build_success or build_fail."""
        return await self.record_event(ProgressEvent(
            task_execution_id=execution_id,
            task_number=task_number,
            event_type=ProgressEventType.BUILD_SUCCESS if success else ProgressEventType.BUILD_FAIL,
            details=details,
            confidence=1.0,
        ))

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    async def calculate_progress(self, execution_id: int) -> float:
        """Fused 0-1 progress score for one execution."""
        if execution_id is None or execution_id <= 0:
            raise InvalidExecutionID(execution_id)

        event_score = await self._event_score(execution_id)

        total, successes = await self.store.get_tool_success_rate(execution_id)
        tool_score = TOOL_EXECUTION_WEIGHT * successes / total if total else 0.0

        total, successes = await self.store.get_file_success_rate(execution_id)
        file_score = FILE_OPERATION_WEIGHT * successes / total if total else 0.0

        score = min(ProgressScore.COMPLETE, event_score + tool_score + file_score)
        logger.debug(
            "progress for execution %d: events=%.3f tools=%.3f files=%.3f -> %.3f",
            execution_id, event_score, tool_score, file_score, score,
        )
        return score

    async def _event_score(self, execution_id: int) -> float:
        query = (
            select(ProgressEventModel.event_type, func.avg(ProgressEventModel.confidence))
            .where(ProgressEventModel.task_execution_id == execution_id)
            .group_by(ProgressEventModel.event_type)
        )
        async with storage_operation(self._db_session, "query LIP event scores"):
            result = await self._db_session.execute(query)
            rows = result.all()

        score = 0.0
        for event_type, avg_confidence in rows:
            try:
                weight = EVENT_WEIGHTS[ProgressEventType(event_type)]
            except ValueError:
                continue
            score += weight * float(avg_confidence or 0.0)
        return score


def average_score(scores: Iterable[float]) -> float:
    """Mean of a collection of progress scores, 0.0 when empty."""
    values = list(scores)
    if not values:
        return 0.0
    return sum(values) / len(values)
