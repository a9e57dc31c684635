"""
Rich Console Output
===================

Themed console, print helpers and logging setup for the learning CLI.
Library modules never print; they log. Only the CLI writes through the
console defined here.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Optional, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Theme
# =============================================================================

PALETTE = {
    "text": "#D8DEE9",
    "faint": "#8C95A3",
    "violet": "#B48EAD",
    "teal": "#2DD4BF",
    "slate": "#A3AEBE",
    "green": "#4ADE80",
    "amber": "#F59E0B",
    "red": "#F87171",
}

LEARNING_THEME = Theme({
    "al.text": PALETTE["text"],
    "al.muted": PALETTE["faint"],
    "al.accent": f"bold {PALETTE['violet']}",
    "al.border": PALETTE["teal"],
    "al.info": PALETTE["teal"],
    "al.ok": f"bold {PALETTE['green']}",
    "al.warn": f"bold {PALETTE['amber']}",
    "al.err": f"bold {PALETTE['red']}",
    "al.key": PALETTE["slate"],
    "al.value": PALETTE["text"],
    "al.number": f"bold {PALETTE['violet']}",
    "al.path": PALETTE["teal"],
    "al.timestamp": PALETTE["faint"],
    "al.table.header": f"bold {PALETTE['teal']}",
    "al.verdict.green": f"bold {PALETTE['green']}",
    "al.verdict.yellow": f"bold {PALETTE['amber']}",
    "al.verdict.red": f"bold {PALETTE['red']}",
})

console = Console(theme=LEARNING_THEME)


# =============================================================================
# Symbols
# =============================================================================

def _stdout_supports(text: str) -> bool:
    encoding = getattr(sys.stdout, "encoding", None) or "utf-8"
    try:
        text.encode(encoding)
    except (UnicodeEncodeError, LookupError):
        return False
    return True


if _stdout_supports("✓✗⚠ℹ█░•→"):
    SYMBOLS = {"ok": "✓", "err": "✗", "warn": "⚠", "info": "ℹ",
               "full": "█", "empty": "░", "bullet": "•", "arrow": "→"}
else:
    SYMBOLS = {"ok": "+", "err": "x", "warn": "!", "info": "i",
               "full": "#", "empty": ".", "bullet": "-", "arrow": ">"}


# =============================================================================
# Messages
# =============================================================================

def _status_line(kind: str, message: str) -> None:
    console.print(f"[al.{kind}]{SYMBOLS[kind]} {message}[/]")


def print_success(message: str) -> None:
    _status_line("ok", message)


def print_error(message: str) -> None:
    _status_line("err", message)


def print_warning(message: str) -> None:
    _status_line("warn", message)


def print_info(message: str) -> None:
    _status_line("info", message)


def print_muted(message: str) -> None:
    console.print(message, style="al.muted")


# =============================================================================
# Layout
# =============================================================================

def print_header(title: str) -> None:
    """Section title between blank lines, drawn as a rule."""
    console.print()
    console.print(Rule(f"[al.accent]{title}[/]", style="al.accent"))
    console.print()


def print_subheader(title: str) -> None:
    console.print(f"\n[al.info]{SYMBOLS['arrow']} {title}[/]")


def print_key_value_table(rows: Mapping[str, Any], title: Optional[str] = None) -> None:
    """Two aligned columns of labels and values, boxed when titled."""
    grid = Table.grid(padding=(0, 3))
    grid.add_column(style="al.key")
    grid.add_column(style="al.value")
    for label, value in rows.items():
        grid.add_row(label, str(value))
    console.print(Panel(grid, title=title, border_style="al.border") if title else grid)


def print_list(items: Sequence[str]) -> None:
    for item in items:
        console.print(f"  [al.accent]{SYMBOLS['bullet']}[/] {item}", style="al.text")


def print_panel(content: str, title: Optional[str] = None) -> None:
    console.print(Panel(content, title=title, border_style="al.border", padding=(1, 2)))


def create_table(*, title: Optional[str] = None, columns: Sequence[str] = ()) -> Table:
    """Empty table with the learning theme's header and border styles."""
    table = Table(
        title=title,
        title_style="al.accent",
        header_style="al.table.header",
        border_style="al.border",
    )
    for name in columns:
        table.add_column(name)
    return table


# =============================================================================
# Inline Markup
# =============================================================================

VERDICT_STYLES = {
    "GREEN": "al.verdict.green",
    "YELLOW": "al.verdict.yellow",
    "RED": "al.verdict.red",
}


def verdict_markup(verdict: str) -> str:
    """QC verdict wrapped in its color style; a dash when missing."""
    if not verdict:
        return "[al.muted]-[/]"
    return f"[{VERDICT_STYLES.get(verdict.upper(), 'al.text')}]{verdict}[/]"


def score_bar(score: float, width: int = 20) -> str:
    """Inline 0-1 score bar followed by the value."""
    score = max(0.0, min(1.0, score))
    style = "al.ok" if score >= 0.7 else "al.warn" if score >= 0.4 else "al.info"
    filled = round(width * score)
    return (
        f"[{style}]{SYMBOLS['full'] * filled}[/]"
        f"[al.muted]{SYMBOLS['empty'] * (width - filled)}[/] "
        f"[al.number]{score:.2f}[/]"
    )


@contextmanager
def spinner(message: str) -> Iterator[Status]:
    """
    Show a spinner while a slow query runs.

    Usage:
        with spinner("Loading history..."):
            history = await store.get_recent_executions()
    """
    with console.status(f"[al.accent]{message}[/]") as status:
        yield status


# =============================================================================
# Logging
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """Route the root logger through the themed console."""
    handler = RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True)
    logging.basicConfig(level=level, format="%(message)s", datefmt="[%X]", handlers=[handler], force=True)
