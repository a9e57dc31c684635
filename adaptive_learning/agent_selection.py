"""
Agent Selection
===============

Pick the agent for the next retry of a task from its execution history.

Priority:
1. The agent suggested by QC review, if it differs from the current one
2. The best historical performer other than the current agent
3. The general-purpose fallback agent
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from adaptive_learning.store import TaskExecution

FALLBACK_AGENT = "general-purpose"


@dataclass
class AgentStats:
    """Success numbers for one agent within a set of executions."""
    agent: str
    total_runs: int = 0
    success_count: int = 0
    failure_count: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return self.success_count / self.total_runs


def analyze_agent_performance(history: Iterable[TaskExecution]) -> dict[str, AgentStats]:
    """Per-agent run counts; executions without an agent are ignored."""
    stats: dict[str, AgentStats] = {}
    for execution in history:
        if not execution.agent:
            continue
        entry = stats.setdefault(execution.agent, AgentStats(agent=execution.agent))
        entry.total_runs += 1
        if execution.success:
            entry.success_count += 1
        else:
            entry.failure_count += 1
    return stats


def rank_agents(stats: dict[str, AgentStats], exclude: Optional[str] = None) -> list[AgentStats]:
    """
    Candidates ordered by success rate, then run count (both descending),
    then agent name ascending.
    """
    candidates = [s for name, s in stats.items() if name != exclude and s.total_runs > 0]
    candidates.sort(key=lambda s: (-s.success_rate, -s.total_runs, s.agent))
    return candidates


def select_better_agent(
    current_agent: str,
    history: Iterable[TaskExecution],
    qc_suggestion: str = "",
) -> tuple[str, str]:
    """
    Choose the agent for the next attempt.

    Returns:
        (agent, reason)
    """
    if qc_suggestion and qc_suggestion != current_agent:
        return qc_suggestion, "QC suggested agent"

    candidates = rank_agents(analyze_agent_performance(history or []), exclude=current_agent)
    if candidates:
        return candidates[0].agent, "historical best performer"

    return FALLBACK_AGENT, "fallback agent"
