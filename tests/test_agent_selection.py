"""
Tests for Agent Selection
=========================
"""

from adaptive_learning.agent_selection import (
    FALLBACK_AGENT,
    analyze_agent_performance,
    rank_agents,
    select_better_agent,
)
from adaptive_learning.store import TaskExecution


def runs(agent, successes, failures):
    history = [TaskExecution(task_number="1", task_name="t", agent=agent, success=True) for _ in range(successes)]
    history += [TaskExecution(task_number="1", task_name="t", agent=agent, success=False) for _ in range(failures)]
    return history


class TestAnalyzeAgentPerformance:
    """Tests for per-agent statistics."""

    def test_counts(self):
        stats = analyze_agent_performance(runs("a", 2, 1) + runs("", 3, 0))
        assert list(stats) == ["a"]
        assert stats["a"].total_runs == 3
        assert stats["a"].failure_count == 1
        assert stats["a"].success_rate == 2 / 3


class TestSelectBetterAgent:
    """Tests for the three-tier selection."""

    def test_qc_suggestion_wins(self):
        agent, reason = select_better_agent("a", runs("b", 5, 0), qc_suggestion="c")
        assert (agent, reason) == ("c", "QC suggested agent")

    def test_qc_suggestion_equal_to_current_ignored(self):
        agent, reason = select_better_agent("a", runs("b", 1, 0), qc_suggestion="a")
        assert (agent, reason) == ("b", "historical best performer")

    def test_best_rate_excluding_current(self):
        history = runs("current", 10, 0) + runs("x", 1, 1) + runs("y", 3, 1)
        assert select_better_agent("current", history) == ("y", "historical best performer")

    def test_ties_broken_by_runs_then_name(self):
        history = runs("zeta", 2, 0) + runs("beta", 1, 0) + runs("alpha", 2, 0)
        assert select_better_agent("other", history)[0] == "alpha"
        ranked = [s.agent for s in rank_agents(analyze_agent_performance(history))]
        assert ranked == ["alpha", "zeta", "beta"]

    def test_deterministic_regardless_of_order(self):
        history = runs("b", 1, 1) + runs("a", 1, 1)
        assert select_better_agent("c", history) == select_better_agent("c", list(reversed(history)))

    def test_fallback(self):
        assert select_better_agent("a", []) == (FALLBACK_AGENT, "fallback agent")
        assert select_better_agent("a", runs("a", 3, 0)) == (FALLBACK_AGENT, "fallback agent")
        assert select_better_agent("a", None) == (FALLBACK_AGENT, "fallback agent")
