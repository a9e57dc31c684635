#!/usr/bin/env python3
"""
Learning CLI Tool
=================

Command-line interface for inspecting what the adaptive learning engine has
recorded.

Usage:
    learning-cli stats [--db PATH]
    learning-cli history PLAN TASK [--db PATH]
    learning-cli analyze PLAN TASK [--db PATH]
    learning-cli warmup --name NAME [--file PATH ...] [--plan PLAN] [--task TASK] [--db PATH]
    learning-cli related NODE_ID [--hops N] [--db PATH]
    learning-cli path FROM TO [--db PATH]
    learning-cli export [--output PATH] [--limit N] [--db PATH]
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from adaptive_learning.config import LearningConfig
from adaptive_learning.db import init_db, close_db
from adaptive_learning.errors import LearningError
from adaptive_learning.failure_analysis import FailureAnalyzer
from adaptive_learning.knowledge_graph import KnowledgeGraph
from adaptive_learning.metrics import PatternMetrics
from adaptive_learning.output import (
    console,
    create_table,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_list,
    print_muted,
    print_panel,
    print_subheader,
    print_success,
    print_warning,
    score_bar,
    setup_rich_logging,
    spinner,
    verdict_markup,
)
from adaptive_learning.progress import ProgressScorer
from adaptive_learning.store import LearningStore
from adaptive_learning.warmup import TaskInfo, WarmUpBuilder

load_dotenv()


async def _with_session(args, handler):
    """Open the configured database, run ``handler(args, session, config)`` and close it."""
    config = LearningConfig.load()
    db_path = args.db or config.db_path
    if db_path != ":memory:" and not Path(db_path).exists():
        print_warning(f"No learning database at {db_path} yet")
    session_maker = await init_db(db_path)
    try:
        async with session_maker() as session:
            return await handler(args, session, config)
    finally:
        await close_db()


# =============================================================================
# Commands
# =============================================================================

async def cmd_stats(args, session, config):
    """Show store-wide statistics."""
    store = LearningStore(session)
    with spinner("Loading statistics..."):
        stats = await store.get_stats()
        top = await store.get_top_patterns(5)

    print_header("Learning Statistics")
    print_key_value_table({
        "Executions": stats.total_executions,
        "Successful": stats.successful_executions,
        "Failed": stats.failed_executions,
        "Success rate": f"{stats.success_rate:.1%}",
        "Distinct tasks": stats.distinct_tasks,
        "Distinct agents": stats.distinct_agents,
        "Patterns": stats.patterns,
    })

    if stats.agents:
        table = create_table(title="Agents", columns=["Agent", "Runs", "Successes", "Success Rate"])
        for perf in stats.agents:
            table.add_row(
                perf.agent,
                f"[al.number]{perf.total_runs}[/]",
                f"[al.number]{perf.success_count}[/]",
                f"{perf.success_rate:.1%}",
            )
        console.print(table)

    if top:
        print_subheader("Top patterns")
        print_list([f"{p.pattern_description or p.task_hash} ({p.success_count}x)" for p in top])


async def cmd_history(args, session, config):
    """Show every attempt of one task."""
    history = await LearningStore(session).get_execution_history(args.plan, args.task)
    if not history:
        print_info(f"No executions recorded for task {args.task} of {args.plan}")
        return

    scorer = ProgressScorer(session)
    print_header(f"Task {args.task} History")
    table = create_table(columns=["ID", "Run", "Agent", "Result", "QC", "Progress", "Duration", "When"])
    for execution in history:
        progress = await scorer.calculate_progress(execution.id)
        table.add_row(
            str(execution.id),
            str(execution.run_number),
            execution.agent or "-",
            "[al.ok]success[/]" if execution.success else "[al.err]failed[/]",
            verdict_markup(execution.qc_verdict),
            score_bar(progress, width=10),
            f"{execution.duration_seconds}s",
            f"[al.timestamp]{execution.timestamp:%Y-%m-%d %H:%M}[/]" if execution.timestamp else "-",
        )
    console.print(table)


async def cmd_analyze(args, session, config):
    """Analyze the failures of one task."""
    metrics = PatternMetrics()
    analyzer = FailureAnalyzer(session, metrics=metrics, min_agent_successes=config.min_agent_successes)
    with spinner("Analyzing failures..."):
        analysis = await analyzer.analyze_failures(args.plan, args.task)

    print_header(f"Failure Analysis: Task {args.task}")
    if analysis.total_attempts == 0:
        print_info("No attempts recorded for this task")
        return

    print_key_value_table({
        "Attempts": analysis.total_attempts,
        "Failed": analysis.failed_attempts,
        "Tried agents": ", ".join(analysis.tried_agents) or "-",
        "Patterns": ", ".join(analysis.common_patterns) or "-",
        "Swap agent": "yes" if analysis.should_try_different_agent else "no",
    })
    if analysis.should_try_different_agent:
        print_success(f"Suggested agent: {analysis.suggested_agent} ({analysis.suggestion_reason})")
    if analysis.suggested_approach:
        print_panel(analysis.suggested_approach, title="Suggested Approach")
    if args.verbose:
        print_panel(metrics.get_dashboard(), title="Detection Metrics")


async def cmd_warmup(args, session, config):
    """Build the warm-up context for a hypothetical task."""
    builder = WarmUpBuilder(
        session,
        graph=KnowledgeGraph(session),
        history_limit=config.history_limit,
        similarity_threshold=config.similarity_threshold,
    )
    task = TaskInfo(task_number=args.task or "", task_name=args.name, file_paths=args.file or [], plan_file=args.plan or "")
    with spinner("Searching similar executions..."):
        context = await builder.build_context(task)

    print_header("Warm-Up Context")
    console.print(f"Confidence: {score_bar(context.confidence)}")
    if context.degraded:
        for reason in context.degradation_reasons:
            print_warning(reason)

    if not context.relevant_history:
        print_muted("No similar executions found")
        return

    table = create_table(columns=["ID", "Task", "Agent", "Result", "QC", "Progress"])
    for execution in context.relevant_history:
        progress = context.progress_scores.get(execution.id)
        table.add_row(
            str(execution.id),
            execution.task_name,
            execution.agent or "-",
            "[al.ok]success[/]" if execution.success else "[al.err]failed[/]",
            verdict_markup(execution.qc_verdict),
            score_bar(progress, width=10) if progress is not None else "[al.muted]-[/]",
        )
    console.print(table)

    if context.suggested_agents:
        print_subheader("Agents that worked on these files")
        print_list(context.suggested_agents)
    if context.recommended_approach:
        print_panel(context.recommended_approach, title="Recommended Approach")


async def cmd_related(args, session, config):
    """List nodes within N hops of a node."""
    related = await KnowledgeGraph(session).get_related(args.node_id, hops=args.hops)
    print_header(f"Related to {args.node_id}")
    if not related:
        print_muted("No related nodes")
        return
    table = create_table(columns=["Node", "Type", "Properties"])
    for node in related:
        table.add_row(node.id, node.node_type.value, json.dumps(node.properties, sort_keys=True))
    console.print(table)


async def cmd_path(args, session, config):
    """Show the shortest path between two nodes."""
    path = await KnowledgeGraph(session).find_path(args.source, args.target)
    if not path:
        print_info(f"No path between {args.source} and {args.target}")
        return
    console.print(" [al.muted]→[/] ".join(f"[al.path]{node.id}[/]" for node in path))
    print_muted(f"{len(path) - 1} hop(s)")


async def cmd_export(args, session, config):
    """Export executions, patterns and the knowledge graph as JSON."""
    store = LearningStore(session)
    with spinner("Exporting..."):
        data = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "executions": [e.to_dict() for e in await store.get_recent_executions(args.limit)],
            "patterns": [p.to_dict() for p in await store.get_top_patterns(args.limit)],
            "knowledge_graph": await KnowledgeGraph(session).export(),
        }
    output = json.dumps(data, indent=2, default=str)
    if args.output:
        path = Path(args.output)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output, encoding="utf-8")
        print_success(f"Exported learning data to: {path}")
    else:
        console.print_json(output)


# =============================================================================
# Entry Point
# =============================================================================

COMMANDS = {
    "stats": cmd_stats,
    "history": cmd_history,
    "analyze": cmd_analyze,
    "warmup": cmd_warmup,
    "related": cmd_related,
    "path": cmd_path,
    "export": cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="learning-cli",
        description="Adaptive Learning CLI Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Show overall statistics
    learning-cli stats

    # Why does task 3 keep failing?
    learning-cli analyze plan.md 3

    # What does history say about a new task?
    learning-cli warmup --name "Add JWT middleware" --file internal/auth/jwt.go

    # Explore the knowledge graph
    learning-cli related file:internal/auth/jwt.go --hops 2
        """
    )
    parser.add_argument("--db", help="Learning database path (default: LEARNING_DB_PATH or config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("stats", help="Show learning statistics")

    history_parser = subparsers.add_parser("history", help="Show execution history of a task")
    history_parser.add_argument("plan", help="Plan file")
    history_parser.add_argument("task", help="Task number")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze failures of a task")
    analyze_parser.add_argument("plan", help="Plan file")
    analyze_parser.add_argument("task", help="Task number")

    warmup_parser = subparsers.add_parser("warmup", help="Build a warm-up context")
    warmup_parser.add_argument("--name", required=True, help="Task name")
    warmup_parser.add_argument("--file", action="append", help="Target file (repeatable)")
    warmup_parser.add_argument("--plan", help="Plan file of the task")
    warmup_parser.add_argument("--task", help="Task number")

    related_parser = subparsers.add_parser("related", help="List related knowledge graph nodes")
    related_parser.add_argument("node_id", help="Start node id")
    related_parser.add_argument("--hops", type=int, default=1, help="Maximum hops (1-10)")

    path_parser = subparsers.add_parser("path", help="Shortest path between two nodes")
    path_parser.add_argument("source", help="Start node id")
    path_parser.add_argument("target", help="End node id")

    export_parser = subparsers.add_parser("export", help="Export learning data as JSON")
    export_parser.add_argument("--output", "-o", help="Output file path (default: stdout)")
    export_parser.add_argument("--limit", type=int, default=1000, help="Maximum executions/patterns")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        asyncio.run(_with_session(args, COMMANDS[args.command]))
    except LearningError as e:
        print_error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
