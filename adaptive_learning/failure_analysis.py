"""
Failure Analysis
================

Looks at the execution history of a single plan task after it fails,
classifies what went wrong and decides whether the next retry should use a
different agent.

Failure outputs are scanned for keywords in eight fixed categories
(compilation_error, test_failure, dependency_missing, permission_denied,
timeout, runtime_error, syntax_error, type_error). Two or more failed
attempts trigger an agent swap; the replacement is the agent with the most
successful executions overall among those not yet tried, provided it has
at least five of them.

Usage:
    from adaptive_learning.failure_analysis import FailureAnalyzer

    analyzer = FailureAnalyzer(session)
    analysis = await analyzer.analyze_failures("plan.md", "3")
    if analysis.should_try_different_agent:
        retry_with(analysis.suggested_agent)
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_learning.agent_selection import FALLBACK_AGENT
from adaptive_learning.errors import check_cancelled
from adaptive_learning.metrics import PatternMetrics
from adaptive_learning.store import LearningStore

logger = logging.getLogger(__name__)

# Failed attempts before an agent swap is recommended.
SWAP_THRESHOLD = 2
MIN_AGENT_SUCCESSES = 5

# Category -> keywords, checked case-insensitively in this order.
FAILURE_PATTERN_KEYWORDS: dict[str, list[str]] = {
    "compilation_error": [
        "compilation_error", "compilation error", "compilation fail",
        "build fail", "build error", "parse error",
        "code won't compile", "unable to build", "compilation failed",
    ],
    "test_failure": [
        "test_failure", "test fail", "tests fail", "test failure",
        "assertion fail", "verification fail", "check fail", "validation fail",
    ],
    "dependency_missing": [
        "dependency_missing", "dependency", "package not found", "module not found",
        "unable to locate", "missing package", "import error", "cannot find module",
    ],
    "permission_denied": [
        "permission_denied", "permission", "access denied", "forbidden", "unauthorized",
    ],
    "timeout": [
        "timeout", "deadline", "timed out", "request timeout",
        "execution timeout", "deadline exceeded",
    ],
    "runtime_error": [
        "runtime_error", "runtime error", "panic", "segfault", "nil pointer",
        "null reference", "stack overflow", "segmentation fault",
    ],
    "syntax_error": [
        "syntax_error", "syntax error", "syntax fail",
    ],
    "type_error": [
        "type_error", "type error", "type mismatch", "type fail",
    ],
}

PATTERN_SUGGESTIONS = {
    "compilation_error": "Focus on fixing compilation errors. Review syntax, type definitions, and imports carefully.",
    "test_failure": "Investigate test failures. Check assertions, test data, and expected vs actual behavior.",
    "dependency_missing": "Resolve missing dependencies. Verify all required packages are installed and versions are compatible.",
    "timeout": "Address timeout issues. Consider breaking down the task, optimizing performance, or increasing timeout limits.",
    "syntax_error": "Fix syntax errors. Review language syntax rules and code structure.",
    "type_error": "Resolve type mismatches. Check type definitions and ensure proper type conversions.",
    "runtime_error": "Debug runtime errors. Add error handling and validate input data.",
    "permission_denied": "Resolve permission issues. Check file/directory permissions and access rights.",
}


@dataclass
class FailureAnalysis:
    """What the history of one task says about its next retry."""
    total_attempts: int = 0
    failed_attempts: int = 0
    tried_agents: list = field(default_factory=list)
    common_patterns: list = field(default_factory=list)
    suggested_agent: str = ""
    suggested_approach: str = ""
    suggestion_reason: str = ""
    should_try_different_agent: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)


def extract_failure_patterns(outputs: Iterable[str], metrics: Optional[PatternMetrics] = None) -> list[str]:
    """
    Failure categories found in ``outputs``, in category order.

    Each category is reported once no matter how many outputs match it.
    When ``metrics`` is given, every output counts as one analysed execution
    and every newly found category as one detection.
    """
    found: dict[str, str] = {}  # category -> triggering keyword

    for output in outputs:
        if metrics is not None:
            metrics.record_execution()
        lowered = output.lower()
        for category, keywords in FAILURE_PATTERN_KEYWORDS.items():
            if category in found:
                continue
            for keyword in keywords:
                if keyword in lowered:
                    found[category] = keyword
                    if metrics is not None:
                        metrics.record_pattern_detection(category, [keyword])
                    break

    return [c for c in FAILURE_PATTERN_KEYWORDS if c in found]


def generate_approach_suggestion(patterns: list[str], alternative_agent: str) -> str:
    """Remediation advice for the detected categories plus an agent recommendation."""
    if not patterns:
        return f"Try using the {alternative_agent} agent for a different perspective on this task."

    suggestions = [PATTERN_SUGGESTIONS[p] for p in patterns if p in PATTERN_SUGGESTIONS]
    result = f"Detected patterns: {', '.join(patterns)}\n\n"
    if suggestions:
        result += "\n\n".join(suggestions)
        result += f"\n\nRecommendation: Try using the {alternative_agent} agent, which may handle these issues better."
    else:
        result += f"Try using the {alternative_agent} agent for a different approach."
    return result


class FailureAnalyzer:
    """
    Analyzes the failures of a plan task and suggests the next agent.

    ``metrics``, when given, accumulates pattern detection counts across
    every analysis this analyzer performs.
    """

    def __init__(
        self,
        session: AsyncSession,
        store: Optional[LearningStore] = None,
        metrics: Optional[PatternMetrics] = None,
        min_agent_successes: int = MIN_AGENT_SUCCESSES,
    ):
        self.store = store or LearningStore(session)
        self.metrics = metrics
        self.min_agent_successes = min_agent_successes

    async def analyze_failures(self, plan_file: str, task_number: str, cancel_event=None) -> FailureAnalysis:
        """Analyze every recorded attempt of (``plan_file``, ``task_number``)."""
        check_cancelled(cancel_event, "analyze failures")

        analysis = FailureAnalysis()
        history = await self.store.get_execution_history(plan_file, task_number)
        if not history:
            return analysis

        analysis.total_attempts = len(history)
        failed_outputs = []
        tried = set()
        for execution in history:
            if not execution.success:
                analysis.failed_attempts += 1
                if execution.output:
                    failed_outputs.append(execution.output)
            if execution.agent:
                tried.add(execution.agent)

        analysis.tried_agents = sorted(tried)
        analysis.common_patterns = extract_failure_patterns(failed_outputs, self.metrics)

        if analysis.failed_attempts >= SWAP_THRESHOLD:
            analysis.should_try_different_agent = True
            agent, reason = await self.find_alternative_agent(analysis.tried_agents)
            analysis.suggested_agent = agent
            analysis.suggestion_reason = reason
            analysis.suggested_approach = generate_approach_suggestion(analysis.common_patterns, agent)
            analysis.suggested_approach += f"\n\nReason: {reason}"

        logger.debug(
            "task %s of %s: %d/%d failed, patterns=%s, swap=%s",
            task_number, plan_file, analysis.failed_attempts, analysis.total_attempts,
            analysis.common_patterns, analysis.should_try_different_agent,
        )
        return analysis

    async def find_alternative_agent(self, tried_agents: list[str]) -> tuple[str, str]:
        """
        Best untried agent by overall success count.

        Returns:
            (agent, reason); the fallback agent when no agent has enough successes
        """
        best = await self.store.find_best_alternative_agent(tried_agents, self.min_agent_successes)
        if best is None:
            return FALLBACK_AGENT, "no statistically significant alternatives found"
        agent, success_count = best
        return agent, f"{success_count} successful executions"


def format_analysis(analysis: FailureAnalysis) -> str:
    """Human-readable rendering of a FailureAnalysis."""
    lines = [
        f"Attempts:        {analysis.total_attempts} ({analysis.failed_attempts} failed)",
        f"Tried agents:    {', '.join(analysis.tried_agents) or '-'}",
        f"Patterns:        {', '.join(analysis.common_patterns) or '-'}",
        f"Swap agent:      {'yes' if analysis.should_try_different_agent else 'no'}",
    ]
    if analysis.should_try_different_agent:
        lines.append(f"Suggested agent: {analysis.suggested_agent} ({analysis.suggestion_reason})")
    if analysis.suggested_approach:
        lines += ["", analysis.suggested_approach]
    return "\n".join(lines)
