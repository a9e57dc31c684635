"""
Intelligent Agent Swap
======================

Asks Claude to pick the replacement agent for a failed task retry, given
the task, the files involved, the error output, what the knowledge graph
knows about agents that succeeded on those files and how far the failed
attempt got.

The model's answer is parsed as JSON and checked against the list of
available agents before it is returned.

Usage:
    from adaptive_learning.intelligent_swap import IntelligentAgentSwapper, SwapContext

    swapper = IntelligentAgentSwapper(
        available_agents={"python-pro": "Python specialist", "golang-pro": "Go specialist"},
        graph=KnowledgeGraph(session),
    )
    rec = await swapper.select_agent(SwapContext(
        task_number="3", task_name="Fix parser", files=["parser.py"],
        current_agent="golang-pro", error_context=output, attempt_number=2,
    ))
"""

import asyncio
import json
import logging
import posixpath
from dataclasses import dataclass, field, asdict
from typing import Awaitable, Callable, Optional
from xml.sax.saxutils import escape, quoteattr

from claude_code_sdk import ClaudeCodeOptions, ClaudeSDKClient

from adaptive_learning.errors import LearningError, SwapRecommendationError, ValidationError, check_cancelled
from adaptive_learning.knowledge_graph import EdgeType, KnowledgeGraph, NodeType, file_node_id

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 90.0
ERROR_CONTEXT_LIMIT = 2000
DESCRIPTION_LIMIT = 1500
FALLBACK_CONFIDENCE_FACTOR = 0.8

SWAP_SYSTEM_PROMPT = (
    "You select replacement agents for failed task retries. "
    "Respond with a single JSON object and nothing else."
)

INSTRUCTIONS = """
<instructions>
<objective>Analyze the task context, error patterns, and file types to recommend the best agent.</objective>

<considerations>
<item priority="1">File extensions - match agent expertise to the language/framework</item>
<item priority="2">Error patterns - what went wrong and which agent can fix it</item>
<item priority="3">Historical success - agents that succeeded with similar files</item>
<item priority="4">Current agent weaknesses - don't recommend the same agent unless no alternative</item>
<item priority="5">Progress made - if significant progress, maybe same approach with different agent</item>
</considerations>

<constraints>
<constraint>Only select agents from the available_agents list</constraint>
<constraint>Prioritize language/framework specialists for the file types involved</constraint>
<constraint>Consider the error context to understand what expertise is needed</constraint>
</constraints>

<response_format type="json">
<field name="recommended_agent" required="true">The single best agent name</field>
<field name="rationale" required="true">Brief explanation of why this agent was selected</field>
<field name="confidence" required="true">How certain you are (0.0-1.0)</field>
<field name="alternatives" required="false">Array of 1-2 alternative agent names</field>
<example>{"recommended_agent":"agent-name","rationale":"Selected because...","confidence":0.85,"alternatives":["alt-agent"]}</example>
</response_format>
</instructions>
"""

Invoker = Callable[[str], Awaitable[str]]


@dataclass
class SwapContext:
    """What is known about the failed attempt."""
    task_number: str
    task_name: str = ""
    task_description: str = ""
    files: list = field(default_factory=list)
    current_agent: str = ""
    error_context: str = ""
    attempt_number: int = 1
    progress_score: Optional[float] = None


@dataclass
class AgentSwapRecommendation:
    """The model's pick for the next attempt, after validation."""
    recommended_agent: str = ""
    rationale: str = ""
    confidence: float = 0.0
    alternatives: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentSwapRecommendation":
        try:
            confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        alternatives = data.get("alternatives") or []
        return cls(
            recommended_agent=str(data.get("recommended_agent") or ""),
            rationale=str(data.get("rationale") or ""),
            confidence=confidence,
            alternatives=[str(a) for a in alternatives if a] if isinstance(alternatives, list) else [],
        )


def extract_file_extensions(files: list[str]) -> list[str]:
    """Distinct lower-case extensions without the dot, in first-seen order."""
    extensions = []
    for path in files:
        ext = posixpath.splitext(path.replace("\\", "/"))[1]
        if ext:
            ext = ext.lstrip(".").lower()
            if ext not in extensions:
                extensions.append(ext)
    return extensions


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "... (truncated)"
    return text


def parse_recommendation(content: str) -> AgentSwapRecommendation:
    """
    Parse the model's reply.

    Falls back to the outermost ``{...}`` span when the reply wraps the JSON
    object in prose.
    """
    if not content or not content.strip():
        raise SwapRecommendationError("empty response from claude")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        start = content.find("{")
        end = content.rfind("}")
        if start < 0 or end <= start:
            raise SwapRecommendationError(f"failed to parse swap recommendation: {e}") from e
        try:
            data = json.loads(content[start:end + 1])
        except json.JSONDecodeError as inner:
            raise SwapRecommendationError(f"failed to extract JSON: {inner}") from inner
    if not isinstance(data, dict):
        raise SwapRecommendationError("swap recommendation is not a JSON object")
    return AgentSwapRecommendation.from_dict(data)


async def invoke_claude(prompt: str, model: Optional[str] = None) -> str:
    """Send ``prompt`` to Claude in a tool-less single turn and return the text reply."""
    options = ClaudeCodeOptions(
        model=model,
        system_prompt=SWAP_SYSTEM_PROMPT,
        allowed_tools=[],
        max_turns=1,
    )
    response_text = ""
    async with ClaudeSDKClient(options=options) as client:
        await client.query(prompt)
        async for msg in client.receive_response():
            if type(msg).__name__ == "AssistantMessage" and hasattr(msg, "content"):
                for block in msg.content:
                    if type(block).__name__ == "TextBlock" and hasattr(block, "text"):
                        response_text += block.text
    return response_text


class IntelligentAgentSwapper:
    """
    Model-assisted agent selection for retries.

    Args:
        available_agents: agent name -> description (description may be empty)
        graph: knowledge graph consulted for agents that succeeded on the same files
        invoker: coroutine taking the prompt and returning the raw reply;
            defaults to calling Claude through claude_code_sdk
        timeout: seconds to wait for the reply
        model: model name passed to the SDK
    """

    def __init__(
        self,
        available_agents: Optional[dict] = None,
        graph: Optional[KnowledgeGraph] = None,
        invoker: Optional[Invoker] = None,
        timeout: float = DEFAULT_TIMEOUT,
        model: Optional[str] = None,
    ):
        self.available_agents = dict(available_agents or {})
        self.graph = graph
        self.timeout = timeout
        self.model = model
        self._invoker = invoker or (lambda prompt: invoke_claude(prompt, self.model))

    async def select_agent(self, context: SwapContext, cancel_event=None) -> AgentSwapRecommendation:
        """Build the prompt, ask the model and validate its answer."""
        if context is None:
            raise ValidationError("swap context cannot be None")
        check_cancelled(cancel_event, "select agent")

        prompt = await self.build_prompt(context)
        try:
            reply = await asyncio.wait_for(self._invoker(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise SwapRecommendationError(f"claude invocation timed out after {self.timeout:.0f}s") from e

        recommendation = self.apply_guardrails(parse_recommendation(reply))
        logger.info(
            "swap for task %s: %s -> %s (confidence %.2f)",
            context.task_number, context.current_agent or "-",
            recommendation.recommended_agent or "-", recommendation.confidence,
        )
        return recommendation

    async def build_prompt(self, context: SwapContext) -> str:
        """XML-structured prompt describing the failed attempt and the candidates."""
        parts = ["<agent_swap_context>"]
        parts.append("<role>You are selecting a replacement agent for a failed task retry.</role>\n")

        parts.append("<task_context>")
        parts.append(f"<number>{escape(context.task_number)}</number>")
        parts.append(f"<name>{escape(context.task_name)}</name>")
        parts.append(f'<current_agent status="failed">{escape(context.current_agent)}</current_agent>')
        parts.append(f"<retry_attempt>{context.attempt_number}</retry_attempt>")
        parts.append("</task_context>")

        if context.files:
            parts.append("\n<file_context>\n<files>")
            parts += [f"<file>{escape(f)}</file>" for f in context.files]
            parts.append("</files>")
            extensions = extract_file_extensions(context.files)
            if extensions:
                parts.append("<extensions>")
                parts += [f"<ext>{escape(ext)}</ext>" for ext in extensions]
                parts.append("</extensions>")
            parts.append("</file_context>")

        if context.error_context:
            parts.append('\n<error_context source="failed_attempt">')
            parts.append(escape(_truncate(context.error_context, ERROR_CONTEXT_LIMIT)))
            parts.append("</error_context>")

        if context.task_description:
            parts.append("\n<task_description>")
            parts.append(escape(_truncate(context.task_description, DESCRIPTION_LIMIT)))
            parts.append("</task_description>")

        if self.graph is not None and context.files:
            history = await self._graph_context(context.files)
            if history:
                parts.append('\n<historical_context source="knowledge_graph">')
                parts.append(history)
                parts.append("</historical_context>")

        if context.progress_score is not None:
            parts.append('\n<progress_context source="lip">')
            parts.append(
                f"The failed attempt reached a progress score of {context.progress_score:.2f} "
                "- consider if partial progress was made."
            )
            parts.append("</progress_context>")

        parts.append("\n<available_agents>")
        if self.available_agents:
            for name in sorted(self.available_agents):
                description = self.available_agents[name]
                if description:
                    parts.append(f"<agent name={quoteattr(name)}>{escape(description)}</agent>")
                else:
                    parts.append(f"<agent name={quoteattr(name)}/>")
        else:
            parts.append("<none>No agents available in registry</none>")
        parts.append("</available_agents>")

        parts.append(INSTRUCTIONS)
        parts.append("</agent_swap_context>")
        return "\n".join(parts)

    async def _graph_context(self, files: list[str]) -> str:
        """Agents linked to ``files`` in the graph, with how many files each touched."""
        counts: dict[str, int] = {}
        for path in files:
            try:
                related = await self.graph.get_related(
                    file_node_id(path), hops=2,
                    edge_types=[EdgeType.SUCCEEDED_WITH, EdgeType.MODIFIES],
                )
            except LearningError as e:
                logger.warning("knowledge graph lookup failed for %s: %s", path, e)
                continue
            for node in related:
                if node.node_type == NodeType.AGENT:
                    name = node.properties.get("name") or node.id
                    counts[name] = counts.get(name, 0) + 1

        if not counts:
            return ""
        lines = ["Agents with historical success on similar files:"]
        for name, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])):
            lines.append(f"- {escape(name)}: {count} successful tasks")
        return "\n".join(lines)

    def apply_guardrails(self, recommendation: Optional[AgentSwapRecommendation]) -> AgentSwapRecommendation:
        """
        Keep the recommendation within the available agents.

        An unknown pick is replaced by its first known alternative at 80% of
        the confidence, or cleared if none is known. Unknown alternatives are
        dropped and confidence is clamped to [0, 1]. With no agent list,
        nothing can be checked and only the clamp applies.
        """
        if recommendation is None:
            return AgentSwapRecommendation(rationale="No recommendation provided")

        known = self.available_agents
        if known and recommendation.recommended_agent and recommendation.recommended_agent not in known:
            original = recommendation.recommended_agent
            fallback = next((alt for alt in recommendation.alternatives if alt in known), None)
            if fallback is not None:
                recommendation.recommended_agent = fallback
                recommendation.rationale = f"Fallback to {fallback} (original recommendation not in registry)"
                recommendation.confidence *= FALLBACK_CONFIDENCE_FACTOR
            else:
                recommendation.recommended_agent = ""
                recommendation.rationale = "No valid agent found in registry"
                recommendation.confidence = 0.0
            logger.warning("model recommended unknown agent %r", original)

        if known:
            recommendation.alternatives = [alt for alt in recommendation.alternatives if alt in known]

        recommendation.confidence = max(0.0, min(1.0, recommendation.confidence))
        return recommendation
