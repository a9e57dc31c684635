"""
Warm-Up Context Builder
=======================

Before an agent starts a task, find the most similar historical executions
and package what they teach: their progress scores, matching successful
patterns, a recommended approach and a confidence in that recommendation.

Similarity between a new task and a past execution combines the Jaccard
overlap of the files they touch (weight 0.6) with the normalized edit
distance of their names (weight 0.4).

Usage:
    from adaptive_learning.warmup import WarmUpBuilder, TaskInfo

    builder = WarmUpBuilder(session)
    context = await builder.build_context(TaskInfo(
        task_number="4",
        task_name="Add JWT validation middleware",
        file_paths=["internal/auth/jwt.go"],
        plan_file="plan.md",
    ))
    if context.confidence >= 0.3:
        prompt = context.format_for_prompt() + "\\n\\n" + prompt
"""

import logging
from dataclasses import dataclass, field
from typing import Optional
from xml.sax.saxutils import escape

from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_learning.errors import LearningError, check_cancelled
from adaptive_learning.knowledge_graph import KnowledgeGraph, file_node_id
from adaptive_learning.progress import ProgressScorer, average_score
from adaptive_learning.similarity import (
    jaccard_similarity,
    normalized_levenshtein_similarity,
    normalize_file_paths,
    normalize_for_hash,
)
from adaptive_learning.store import LearningStore, TaskExecution, SuccessfulPattern

logger = logging.getLogger(__name__)

# Defaults
HISTORY_LIMIT = 100
SIMILARITY_THRESHOLD = 0.6
MAX_SIMILAR_TASKS = 10
PATTERN_SCAN_LIMIT = 20
MAX_PATTERNS = 5
HASH_PREFIX_LENGTH = 8

FILE_SIMILARITY_WEIGHT = 0.6
NAME_SIMILARITY_WEIGHT = 0.4

GREEN_EXCERPT_LENGTH = 500
FALLBACK_EXCERPT_LENGTH = 300


@dataclass
class TaskInfo:
    """The task about to be executed."""
    task_number: str
    task_name: str
    file_paths: list = field(default_factory=list)
    plan_file: str = ""


@dataclass
class SimilarTask:
    """A historical execution and how similar it is to the new task."""
    execution: TaskExecution
    similarity: float


@dataclass
class WarmUpContext:
    """
    Everything learned from similar past executions.

    ``degraded`` is set when a best-effort step (pattern matching, a
    progress score, agent lookup) failed and was skipped; the reasons are
    listed in ``degradation_reasons``.
    """
    relevant_history: list = field(default_factory=list)  # list[TaskExecution]
    similar_patterns: list = field(default_factory=list)  # list[SuccessfulPattern]
    recommended_approach: str = ""
    confidence: float = 0.0
    progress_scores: dict = field(default_factory=dict)  # execution id -> score
    similar_task_ids: list = field(default_factory=list)
    suggested_agents: list = field(default_factory=list)
    degraded: bool = False
    degradation_reasons: list = field(default_factory=list)

    def mark_degraded(self, reason: str) -> None:
        self.degraded = True
        self.degradation_reasons.append(reason)
        logger.warning("warm-up degraded: %s", reason)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "relevant_history": [e.to_dict() for e in self.relevant_history],
            "similar_patterns": [p.to_dict() for p in self.similar_patterns],
            "recommended_approach": self.recommended_approach,
            "confidence": self.confidence,
            "progress_scores": {str(k): v for k, v in self.progress_scores.items()},
            "similar_task_ids": list(self.similar_task_ids),
            "suggested_agents": list(self.suggested_agents),
            "degraded": self.degraded,
            "degradation_reasons": list(self.degradation_reasons),
        }

    def format_for_prompt(self) -> str:
        """Render as a ``<warmup_context>`` block to prepend to an agent prompt."""
        lines = ["<warmup_context>"]
        lines.append(f"<confidence>{self.confidence * 100:.0f}%</confidence>")

        if self.recommended_approach:
            lines.append(f"<recommended_approach>\n{escape(self.recommended_approach)}\n</recommended_approach>")

        if self.similar_patterns:
            lines.append("<similar_task_patterns>")
            for pattern in self.similar_patterns[:MAX_PATTERNS]:
                text = pattern.pattern_description or pattern.task_hash
                lines.append(f"<pattern>{escape(text)}</pattern>")
            lines.append("</similar_task_patterns>")

        if self.relevant_history:
            succeeded = sum(1 for e in self.relevant_history if e.success)
            failed = len(self.relevant_history) - succeeded
            lines.append("<historical_tasks>")
            lines.append(
                f"<summary>Found {len(self.relevant_history)} similar tasks "
                f"({succeeded} successful, {failed} failed)</summary>"
            )
            shown = [e for e in self.relevant_history if e.success][:3]
            for execution in shown:
                detail = f"{execution.task_name} succeeded with agent {execution.agent or 'default'}"
                if execution.qc_verdict == "GREEN":
                    detail += " (GREEN)"
                lines.append(f"<task>{escape(detail)}</task>")
            lines.append("</historical_tasks>")

        if self.suggested_agents:
            lines.append(f"<suggested_agents>{escape(', '.join(self.suggested_agents))}</suggested_agents>")

        lines.append("</warmup_context>")
        return "\n".join(lines)


def _excerpt(text: str, length: int) -> str:
    if len(text) > length:
        return text[:length] + "..."
    return text


def recommend_approach(history: list[TaskExecution]) -> str:
    """
    Describe the approach of the best successful execution in ``history``.

    Prefers the first success with a GREEN QC verdict, then any success.
    Executions without output have nothing to recommend and are skipped.
    """
    for execution in history:
        if execution.success and execution.qc_verdict == "GREEN" and execution.output:
            return (
                f"Based on successful execution of similar task '{execution.task_name}' "
                f"with agent {execution.agent}: {_excerpt(execution.output, GREEN_EXCERPT_LENGTH)}"
            )

    for execution in history:
        if execution.success and execution.output:
            return (
                f"Previously successful approach for '{execution.task_name}': "
                f"{_excerpt(execution.output, FALLBACK_EXCERPT_LENGTH)}"
            )

    return ""


def calculate_confidence(similar_tasks: list[SimilarTask], progress_scores: dict) -> float:
    """
    Confidence in a warm-up recommendation.

    Average similarity, plus up to 0.2 from average progress, plus up to
    0.1 from the number of similar tasks; clamped to [0, 1].
    """
    if not similar_tasks:
        return 0.0

    avg_similarity = sum(st.similarity for st in similar_tasks) / len(similar_tasks)
    progress_boost = average_score(progress_scores.values()) * 0.2 if progress_scores else 0.0
    count_boost = min(len(similar_tasks) / 10.0, 0.1)

    return max(0.0, min(1.0, avg_similarity + progress_boost + count_boost))


def match_patterns(patterns: list[SuccessfulPattern], similar_tasks: list[SimilarTask]) -> list[SuccessfulPattern]:
    """
    Patterns whose hash shares an 8-character prefix with a successful
    similar task's normalized name, in either direction.
    """
    task_hashes = []
    for st in similar_tasks:
        if st.execution.success:
            h = normalize_for_hash(st.execution.task_name)
            if h and h not in task_hashes:
                task_hashes.append(h)

    matched = []
    for pattern in patterns:
        if not pattern.task_hash:
            continue
        for h in task_hashes:
            if (pattern.task_hash.startswith(h[:HASH_PREFIX_LENGTH])
                    or h.startswith(pattern.task_hash[:HASH_PREFIX_LENGTH])):
                matched.append(pattern)
                break
        if len(matched) >= MAX_PATTERNS:
            break
    return matched


class WarmUpBuilder:
    """
    Builds WarmUpContext objects from the learning database.

    Progress-score, pattern and agent lookups are best effort: a failure in
    one of them marks the context degraded instead of failing the build.
    Failing to load history is a real error and propagates.
    """

    def __init__(
        self,
        session: AsyncSession,
        store: Optional[LearningStore] = None,
        scorer: Optional[ProgressScorer] = None,
        graph: Optional[KnowledgeGraph] = None,
        history_limit: int = HISTORY_LIMIT,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
    ):
        self.store = store or LearningStore(session)
        self.scorer = scorer or ProgressScorer(session, self.store)
        self.graph = graph
        self.history_limit = history_limit
        self.similarity_threshold = similarity_threshold

    async def build_context(self, task: Optional[TaskInfo], cancel_event=None) -> WarmUpContext:
        """Assemble the warm-up context for ``task``. None yields an empty context."""
        check_cancelled(cancel_event, "build warm-up context")
        context = WarmUpContext()
        if task is None:
            return context

        similar_tasks = await self.find_similar_tasks(task)
        for st in similar_tasks:
            context.relevant_history.append(st.execution)
            context.similar_task_ids.append(st.execution.id)

        for execution in context.relevant_history:
            try:
                context.progress_scores[execution.id] = await self.scorer.calculate_progress(execution.id)
            except LearningError as e:
                context.mark_degraded(f"progress score for execution {execution.id}: {e}")

        try:
            top_patterns = await self.store.get_top_patterns(PATTERN_SCAN_LIMIT)
            context.similar_patterns = match_patterns(top_patterns, similar_tasks)
        except LearningError as e:
            context.similar_patterns = []
            context.mark_degraded(f"pattern matching: {e}")

        if self.graph is not None and task.file_paths:
            await self._add_suggested_agents(context, task)

        context.recommended_approach = recommend_approach(context.relevant_history)
        context.confidence = calculate_confidence(similar_tasks, context.progress_scores)

        logger.debug(
            "warm-up for task %s: %d similar, %d patterns, confidence %.2f",
            task.task_number, len(similar_tasks), len(context.similar_patterns), context.confidence,
        )
        return context

    async def find_similar_tasks(self, task: TaskInfo) -> list[SimilarTask]:
        """Recent executions similar enough to ``task``, most similar first, at most 10."""
        candidates = await self.store.get_recent_executions(self.history_limit)
        task_files = normalize_file_paths(task.file_paths)

        similar = []
        for execution in candidates:
            if execution.task_number == task.task_number and execution.plan_file == task.plan_file:
                continue

            exec_files = normalize_file_paths(await self.store.get_file_paths(execution.id))
            file_similarity = jaccard_similarity(task_files, exec_files)
            name_similarity = normalized_levenshtein_similarity(task.task_name, execution.task_name)
            combined = FILE_SIMILARITY_WEIGHT * file_similarity + NAME_SIMILARITY_WEIGHT * name_similarity

            if combined >= self.similarity_threshold:
                similar.append(SimilarTask(execution=execution, similarity=combined))

        # Stable sort keeps newest-first order among equal similarities.
        similar.sort(key=lambda st: st.similarity, reverse=True)
        return similar[:MAX_SIMILAR_TASKS]

    async def _add_suggested_agents(self, context: WarmUpContext, task: TaskInfo) -> None:
        seen = set()
        for path in task.file_paths:
            try:
                agents = await self.graph.find_agents_for_file(file_node_id(path))
            except LearningError as e:
                context.mark_degraded(f"agent lookup for {path}: {e}")
                continue
            for node in agents:
                name = node.properties.get("name") or node.id
                if name not in seen:
                    seen.add(name)
                    context.suggested_agents.append(name)
