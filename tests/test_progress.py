"""
Tests for Progress Scoring
==========================

Event recording/filtering and the fused 0-1 progress score.
"""

from datetime import datetime, timedelta, timezone

import pytest

from adaptive_learning.errors import InvalidEventType, InvalidExecutionID, ValidationError
from adaptive_learning.progress import (
    EventFilter,
    ProgressEvent,
    ProgressEventType,
    ProgressScore,
    average_score,
)


T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def event(exec_id, event_type, minutes=0, confidence=None, task="1"):
    return ProgressEvent(
        task_execution_id=exec_id,
        task_number=task,
        event_type=event_type,
        confidence=confidence,
        timestamp=T0 + timedelta(minutes=minutes),
    )


# =============================================================================
# Recording
# =============================================================================

class TestRecordEvent:
    """Tests for record_event validation and defaults."""

    @pytest.mark.asyncio
    async def test_assigns_id_and_defaults(self, scorer):
        recorded = await scorer.record_event(ProgressEvent(
            task_execution_id=1, event_type=ProgressEventType.TEST_PASS,
        ))
        assert recorded.id > 0
        assert recorded.confidence == 1.0
        assert recorded.timestamp is not None

    @pytest.mark.asyncio
    async def test_accepts_string_event_type(self, scorer):
        recorded = await scorer.record_event(ProgressEvent(task_execution_id=1, event_type="build_fail"))
        assert recorded.event_type == ProgressEventType.BUILD_FAIL

    @pytest.mark.asyncio
    async def test_rejects_unknown_event_type(self, scorer):
        with pytest.raises(InvalidEventType):
            await scorer.record_event(ProgressEvent(task_execution_id=1, event_type="lint_pass"))

    @pytest.mark.asyncio
    async def test_rejects_out_of_range_confidence(self, scorer):
        with pytest.raises(ValidationError):
            await scorer.record_event(event(1, ProgressEventType.TEST_PASS, confidence=1.5))
        with pytest.raises(ValidationError):
            await scorer.record_event(event(1, ProgressEventType.TEST_PASS, confidence=-0.1))

    @pytest.mark.asyncio
    async def test_zero_confidence_kept(self, scorer):
        recorded = await scorer.record_event(event(1, ProgressEventType.TEST_PASS, confidence=0.0))
        assert recorded.confidence == 0.0

    @pytest.mark.asyncio
    async def test_none_rejected(self, scorer):
        with pytest.raises(ValidationError):
            await scorer.record_event(None)

    @pytest.mark.asyncio
    async def test_result_helpers(self, scorer):
        t = await scorer.record_test_result(5, "2", passed=False, details="3 failing")
        b = await scorer.record_build_result(5, "2", success=True)
        assert t.event_type == ProgressEventType.TEST_FAIL
        assert t.details == "3 failing"
        assert b.event_type == ProgressEventType.BUILD_SUCCESS


# =============================================================================
# Queries
# =============================================================================

class TestGetEvents:
    """Tests for filtered event queries."""

    @pytest.mark.asyncio
    async def test_newest_first(self, scorer):
        await scorer.record_event(event(1, ProgressEventType.BUILD_SUCCESS, minutes=0))
        await scorer.record_event(event(1, ProgressEventType.TEST_FAIL, minutes=5))
        await scorer.record_event(event(1, ProgressEventType.TEST_PASS, minutes=10))

        events = await scorer.get_events_by_execution(1)
        assert [e.event_type for e in events] == [
            ProgressEventType.TEST_PASS,
            ProgressEventType.TEST_FAIL,
            ProgressEventType.BUILD_SUCCESS,
        ]

    @pytest.mark.asyncio
    async def test_filters_combine(self, scorer):
        await scorer.record_event(event(1, ProgressEventType.TEST_PASS, minutes=0, confidence=0.9, task="1"))
        await scorer.record_event(event(2, ProgressEventType.TEST_PASS, minutes=1, confidence=0.4, task="1"))
        await scorer.record_event(event(3, ProgressEventType.BUILD_FAIL, minutes=2, task="2"))
        await scorer.record_event(event(4, ProgressEventType.TEST_PASS, minutes=30, task="1"))

        events = await scorer.get_events(EventFilter(
            task_number="1",
            event_types=[ProgressEventType.TEST_PASS],
            min_confidence=0.5,
            end=T0 + timedelta(minutes=10),
        ))
        assert [e.task_execution_id for e in events] == [1]

    @pytest.mark.asyncio
    async def test_time_window_and_limit(self, scorer):
        for minutes in range(5):
            await scorer.record_event(event(1, ProgressEventType.TEST_PASS, minutes=minutes))

        events = await scorer.get_events(EventFilter(start=T0 + timedelta(minutes=1), limit=2))
        assert len(events) == 2
        assert events[0].timestamp > events[1].timestamp

    @pytest.mark.asyncio
    async def test_offset_timestamps_compared_in_utc(self, scorer):
        plus_two = timezone(timedelta(hours=2))
        await scorer.record_event(ProgressEvent(
            task_execution_id=1, event_type=ProgressEventType.TEST_PASS,
            timestamp=datetime(2025, 1, 1, 12, 0, tzinfo=plus_two),
        ))

        late = EventFilter(start=datetime(2025, 1, 1, 10, 30, tzinfo=timezone.utc),
                           end=datetime(2025, 1, 1, 13, 30, tzinfo=timezone.utc))
        assert await scorer.get_events(late) == []

        around = EventFilter(start=datetime(2025, 1, 1, 9, 30, tzinfo=timezone.utc),
                             end=datetime(2025, 1, 1, 10, 30, tzinfo=timezone.utc))
        events = await scorer.get_events(around)
        assert [e.timestamp for e in events] == [datetime(2025, 1, 1, 10, 0)]

    @pytest.mark.asyncio
    async def test_by_task(self, scorer):
        await scorer.record_event(event(1, ProgressEventType.TEST_PASS, task="7"))
        await scorer.record_event(event(2, ProgressEventType.TEST_PASS, task="8"))
        events = await scorer.get_events_by_task("7")
        assert [e.task_number for e in events] == ["7"]

    @pytest.mark.asyncio
    async def test_unknown_type_in_filter(self, scorer):
        with pytest.raises(InvalidEventType):
            await scorer.get_events(EventFilter(event_types=["nope"]))


# =============================================================================
# Scoring
# =============================================================================

class TestCalculateProgress:
    """Tests for the fused progress score."""

    @pytest.mark.asyncio
    async def test_invalid_execution_id(self, scorer):
        for bad in (0, -3, None):
            with pytest.raises(InvalidExecutionID):
                await scorer.calculate_progress(bad)

    @pytest.mark.asyncio
    async def test_no_signals_scores_zero(self, scorer):
        assert await scorer.calculate_progress(999) == ProgressScore.NONE

    @pytest.mark.asyncio
    async def test_event_terms(self, scorer):
        await scorer.record_build_result(1, "1", success=True)
        await scorer.record_test_result(1, "1", passed=False)
        assert await scorer.calculate_progress(1) == pytest.approx(0.3 + 0.1)

    @pytest.mark.asyncio
    async def test_confidence_averaged_per_type(self, scorer):
        await scorer.record_event(event(1, ProgressEventType.TEST_PASS, confidence=1.0))
        await scorer.record_event(event(1, ProgressEventType.TEST_PASS, confidence=0.5))
        assert await scorer.calculate_progress(1) == pytest.approx(0.3 * 0.75)

    @pytest.mark.asyncio
    async def test_tool_and_file_terms(self, scorer, store, make_execution):
        exec_id = await store.record_execution(make_execution())
        session_id = await store.start_session(exec_id)
        await store.record_tool_execution(session_id, "Bash", success=True)
        await store.record_tool_execution(session_id, "Bash", success=False)
        await store.record_file_operation(session_id, "write", "a.py", success=True)

        assert await scorer.calculate_progress(exec_id) == pytest.approx(0.1 * 0.5 + 0.2 * 1.0)

    @pytest.mark.asyncio
    async def test_all_signals_reach_ceiling(self, scorer, store, make_execution):
        exec_id = await store.record_execution(make_execution())
        session_id = await store.start_session(exec_id)
        await store.record_tool_execution(session_id, "Edit", success=True)
        await store.record_file_operation(session_id, "write", "a.py", success=True)
        for event_type in ProgressEventType:
            await scorer.record_event(event(exec_id, event_type))

        score = await scorer.calculate_progress(exec_id)
        assert score == ProgressScore.COMPLETE

    @pytest.mark.asyncio
    async def test_without_failures_stays_under_point_nine(self, scorer, store, make_execution):
        exec_id = await store.record_execution(make_execution())
        session_id = await store.start_session(exec_id)
        await store.record_tool_execution(session_id, "Edit", success=True)
        await store.record_file_operation(session_id, "write", "a.py", success=True)
        await scorer.record_build_result(exec_id, "1", success=True)
        await scorer.record_test_result(exec_id, "1", passed=True)

        assert await scorer.calculate_progress(exec_id) == pytest.approx(0.9)


class TestAverageScore:
    """Tests for average_score."""

    def test_empty(self):
        assert average_score([]) == 0.0

    def test_mean(self):
        assert average_score([0.2, 0.4]) == pytest.approx(0.3)
