"""
Tests for the Warm-Up Context Builder
=====================================

Similar-task discovery, recommended approach, confidence, pattern matching
and degraded (best-effort) paths.
"""

import asyncio

import pytest

from adaptive_learning.errors import OperationCancelled, StorageError
from adaptive_learning.knowledge_graph import KnowledgeGraph, KnowledgeNode, NodeType, file_node_id
from adaptive_learning.progress import ProgressScorer
from adaptive_learning.store import LearningStore, SuccessfulPattern, TaskExecution
from adaptive_learning.warmup import (
    MAX_SIMILAR_TASKS,
    SimilarTask,
    TaskInfo,
    WarmUpBuilder,
    WarmUpContext,
    calculate_confidence,
    match_patterns,
    recommend_approach,
)


JWT_FILE = "internal/auth/jwt.go"


@pytest.fixture
def builder(session, store, scorer):
    return WarmUpBuilder(session, store=store, scorer=scorer)


def new_task(**kwargs):
    defaults = {
        "task_number": "9",
        "task_name": "Add JWT middleware",
        "file_paths": [JWT_FILE],
        "plan_file": "plan.md",
    }
    defaults.update(kwargs)
    return TaskInfo(**defaults)


class FailingScorer(ProgressScorer):
    """Scorer whose progress lookups always fail."""

    async def calculate_progress(self, execution_id):
        raise StorageError("query LIP event scores", RuntimeError("disk I/O error"))


class FailingPatternStore(LearningStore):
    """Store whose pattern catalogue cannot be read."""

    async def get_top_patterns(self, limit=10):
        raise StorageError("query top patterns", RuntimeError("database is locked"))


class FailingGraph(KnowledgeGraph):
    """Graph whose agent lookups always fail."""

    async def find_agents_for_file(self, file_id, max_hops=2, cancel_event=None):
        raise StorageError("query agents for file", RuntimeError("no such table: kg_edges"))


# =============================================================================
# Pure helpers
# =============================================================================

class TestRecommendApproach:
    """Tests for recommend_approach."""

    def test_prefers_green_success(self):
        history = [
            TaskExecution(task_number="1", task_name="Plain", success=True, output="plain output", agent="a"),
            TaskExecution(task_number="2", task_name="Green", success=True, output="green output",
                          agent="golang-pro", qc_verdict="GREEN"),
        ]
        approach = recommend_approach(history)
        assert approach.startswith("Based on successful execution of similar task 'Green' with agent golang-pro")
        assert "green output" in approach

    def test_falls_back_to_any_success(self):
        history = [
            TaskExecution(task_number="1", task_name="Failed", success=False, output="x"),
            TaskExecution(task_number="2", task_name="Worked", success=True, output="y" * 400),
        ]
        approach = recommend_approach(history)
        assert approach.startswith("Previously successful approach for 'Worked': ")
        assert approach.endswith("y" * 300 + "...")

    def test_green_excerpt_truncated(self):
        history = [TaskExecution(task_number="1", task_name="T", success=True, output="z" * 600, qc_verdict="GREEN")]
        assert recommend_approach(history).endswith("z" * 500 + "...")

    def test_nothing_to_recommend(self):
        assert recommend_approach([]) == ""
        assert recommend_approach([TaskExecution(task_number="1", task_name="T", success=True, output="")]) == ""
        assert recommend_approach([TaskExecution(task_number="1", task_name="T", success=False, output="o")]) == ""


class TestCalculateConfidence:
    """Tests for calculate_confidence."""

    def test_no_similar_tasks(self):
        assert calculate_confidence([], {1: 0.9}) == 0.0

    def test_combines_similarity_progress_and_count(self):
        tasks = [SimilarTask(execution=TaskExecution(task_number="1", task_name="a", success=True, id=1), similarity=0.7)]
        assert calculate_confidence(tasks, {1: 0.5}) == pytest.approx(0.7 + 0.1 + 0.1)

    def test_clamped(self):
        tasks = [SimilarTask(execution=TaskExecution(task_number="1", task_name="a", success=True, id=i), similarity=1.0)
                 for i in range(3)]
        assert calculate_confidence(tasks, {0: 1.0}) == 1.0


class TestMatchPatterns:
    """Tests for pattern prefix matching."""

    def test_prefix_either_direction(self):
        similar = [SimilarTask(execution=TaskExecution(task_number="1", task_name="Add JWT auth", success=True),
                               similarity=0.9)]
        patterns = [
            SuccessfulPattern(task_hash="addjwtauthmiddleware"),
            SuccessfulPattern(task_hash="addjwt"),
            SuccessfulPattern(task_hash="refactordb"),
            SuccessfulPattern(task_hash=""),
        ]
        matched = [p.task_hash for p in match_patterns(patterns, similar)]
        assert matched == ["addjwtauthmiddleware", "addjwt"]

    def test_ignores_failed_similar_tasks(self):
        similar = [SimilarTask(execution=TaskExecution(task_number="1", task_name="Add JWT auth", success=False),
                               similarity=0.9)]
        assert match_patterns([SuccessfulPattern(task_hash="addjwtauth")], similar) == []


# =============================================================================
# Builder
# =============================================================================

class TestBuildContext:
    """Tests for WarmUpBuilder.build_context."""

    @pytest.mark.asyncio
    async def test_none_task_gives_empty_context(self, builder):
        context = await builder.build_context(None)
        assert context.relevant_history == []
        assert context.confidence == 0.0
        assert not context.degraded

    @pytest.mark.asyncio
    async def test_empty_database(self, builder):
        context = await builder.build_context(new_task())
        assert context.relevant_history == []
        assert context.confidence == 0.0
        assert context.recommended_approach == ""

    @pytest.mark.asyncio
    async def test_finds_similar_and_recommends(self, builder, make_execution, record_with_files):
        similar_id = await record_with_files(
            make_execution(task_number="2", task_name="Add JWT middleware", agent="golang-pro",
                           qc_verdict="GREEN", output="Wrote middleware with table tests"),
            [JWT_FILE],
        )
        await record_with_files(
            make_execution(task_number="3", task_name="Write README", output="docs"),
            ["README.md"],
        )

        context = await builder.build_context(new_task())

        assert context.similar_task_ids == [similar_id]
        assert similar_id in context.progress_scores
        assert "golang-pro" in context.recommended_approach
        assert 0.0 < context.confidence <= 1.0
        assert not context.degraded

    @pytest.mark.asyncio
    async def test_excludes_same_task_of_same_plan(self, builder, make_execution, record_with_files):
        await record_with_files(make_execution(task_number="9", task_name="Add JWT middleware"), [JWT_FILE])
        other_plan = await record_with_files(
            make_execution(plan_file="other.md", task_number="9", task_name="Add JWT middleware"),
            [JWT_FILE],
        )

        context = await builder.build_context(new_task())
        assert context.similar_task_ids == [other_plan]

    @pytest.mark.asyncio
    async def test_threshold_filters_by_files_and_name(self, builder, make_execution, record_with_files):
        # Same name, no shared files: 0.4 < 0.6
        await record_with_files(make_execution(task_number="2", task_name="Add JWT middleware"), ["other.go"])
        context = await builder.build_context(new_task())
        assert context.relevant_history == []

    @pytest.mark.asyncio
    async def test_file_paths_compared_normalized(self, builder, make_execution, record_with_files):
        exec_id = await record_with_files(
            make_execution(task_number="2", task_name="Totally different"),
            ["./Internal/Auth/JWT.go"],
        )
        context = await builder.build_context(new_task())
        assert context.similar_task_ids == [exec_id]

    @pytest.mark.asyncio
    async def test_at_most_ten_most_similar_first(self, builder, make_execution, record_with_files):
        for i in range(MAX_SIMILAR_TASKS + 2):
            await record_with_files(make_execution(task_number=str(100 + i), task_name="Add JWT middleware"), [JWT_FILE])
        newest = await record_with_files(
            make_execution(task_number="50", task_name="Add JWT middleware"),
            [JWT_FILE],
        )

        context = await builder.build_context(new_task())
        assert len(context.relevant_history) == MAX_SIMILAR_TASKS
        assert context.similar_task_ids[0] == newest

    @pytest.mark.asyncio
    async def test_patterns_matched_from_store(self, builder, store, make_execution, record_with_files):
        await record_with_files(make_execution(task_number="2", task_name="Add JWT middleware"), [JWT_FILE])
        await store.add_pattern(SuccessfulPattern(task_hash="addjwtmiddleware", pattern_description="table tests"))
        await store.add_pattern(SuccessfulPattern(task_hash="unrelated", pattern_description="nope"))

        context = await builder.build_context(new_task())
        assert [p.pattern_description for p in context.similar_patterns] == ["table tests"]

    @pytest.mark.asyncio
    async def test_progress_failure_marks_degraded(self, session, store, make_execution, record_with_files):
        exec_id = await record_with_files(make_execution(task_number="2", task_name="Add JWT middleware"), [JWT_FILE])
        builder = WarmUpBuilder(session, store=store, scorer=FailingScorer(session, store))

        context = await builder.build_context(new_task())

        assert context.similar_task_ids == [exec_id]
        assert context.progress_scores == {}
        assert context.degraded
        assert "disk I/O error" in context.degradation_reasons[0]

    @pytest.mark.asyncio
    async def test_pattern_failure_marks_degraded(self, session, scorer, make_execution, record_with_files):
        store = FailingPatternStore(session)
        exec_id = await record_with_files(make_execution(task_number="2", task_name="Add JWT middleware",
                                                         output="done"), [JWT_FILE])
        builder = WarmUpBuilder(session, store=store, scorer=scorer)

        context = await builder.build_context(new_task())

        assert context.similar_patterns == []
        assert context.degraded
        assert "database is locked" in context.degradation_reasons[0]
        assert context.similar_task_ids == [exec_id]
        assert exec_id in context.progress_scores
        assert context.confidence > 0.0

    @pytest.mark.asyncio
    async def test_agent_lookup_failure_marks_degraded(self, session, store, scorer, make_execution,
                                                       record_with_files):
        exec_id = await record_with_files(make_execution(task_number="2", task_name="Add JWT middleware"), [JWT_FILE])
        builder = WarmUpBuilder(session, store=store, scorer=scorer, graph=FailingGraph(session))

        context = await builder.build_context(new_task())

        assert context.suggested_agents == []
        assert context.degraded
        assert JWT_FILE in context.degradation_reasons[0]
        assert context.similar_task_ids == [exec_id]
        assert context.confidence > 0.0

    @pytest.mark.asyncio
    async def test_suggested_agents_from_graph(self, session, store, scorer, graph):
        await graph.add_node(KnowledgeNode(id=file_node_id(JWT_FILE), node_type=NodeType.FILE))
        await graph.add_node(KnowledgeNode(id="task:2", node_type=NodeType.TASK))
        await graph.add_node(KnowledgeNode(id="agent:golang-pro", node_type=NodeType.AGENT,
                                           properties={"name": "golang-pro"}))
        await graph.record_task_file_relation("task:2", file_node_id(JWT_FILE))
        await graph.record_task_agent_success("task:2", "agent:golang-pro")

        builder = WarmUpBuilder(session, store=store, scorer=scorer, graph=graph)
        context = await builder.build_context(new_task())
        assert context.suggested_agents == ["golang-pro"]

    @pytest.mark.asyncio
    async def test_cancelled(self, builder):
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            await builder.build_context(new_task(), cancel_event=cancel)


class TestFormatForPrompt:
    """Tests for WarmUpContext.format_for_prompt."""

    def test_empty_context(self):
        text = WarmUpContext().format_for_prompt()
        assert text.startswith("<warmup_context>")
        assert text.endswith("</warmup_context>")
        assert "<confidence>0%</confidence>" in text

    def test_full_context_escaped(self):
        context = WarmUpContext(
            relevant_history=[
                TaskExecution(task_number="1", task_name="Parse <xml>", success=True, agent="a", qc_verdict="GREEN"),
                TaskExecution(task_number="2", task_name="Other", success=False),
            ],
            similar_patterns=[SuccessfulPattern(task_hash="h", pattern_description="use & test")],
            recommended_approach="do it",
            confidence=0.75,
            suggested_agents=["golang-pro"],
        )
        text = context.format_for_prompt()
        assert "<confidence>75%</confidence>" in text
        assert "Found 2 similar tasks (1 successful, 1 failed)" in text
        assert "Parse &lt;xml&gt; succeeded with agent a (GREEN)" in text
        assert "<pattern>use &amp; test</pattern>" in text
        assert "<suggested_agents>golang-pro</suggested_agents>" in text

    def test_to_dict(self):
        context = WarmUpContext(progress_scores={3: 0.5}, confidence=0.4)
        data = context.to_dict()
        assert data["progress_scores"] == {"3": 0.5}
        assert data["confidence"] == 0.4
