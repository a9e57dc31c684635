"""
Pattern Metrics
===============

Counts how often each failure-pattern category is detected in analysed
failure outputs, and which keywords triggered it.

A PatternMetrics instance is owned by whoever creates it and passed
explicitly to the components that record into it (FailureAnalyzer). It is
safe to share one instance between threads.

Usage:
    from adaptive_learning.metrics import PatternMetrics
    from adaptive_learning.failure_analysis import FailureAnalyzer

    metrics = PatternMetrics()
    analyzer = FailureAnalyzer(session, metrics=metrics)
    await analyzer.analyze_failures("plan.md", "3")

    print(metrics.get_dashboard())
    metrics.export_to_json("pattern_metrics.json")
"""

import json
import threading
from copy import deepcopy
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional


@dataclass
class PatternStats:
    """Detection statistics for one failure-pattern category."""
    pattern_type: str
    detection_count: int = 0
    last_detected: Optional[str] = None
    keywords: list = field(default_factory=list)  # keywords that triggered detection


class PatternMetrics:
    """Thread-safe failure-pattern detection counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._patterns: dict[str, PatternStats] = {}
        self._total_executions = 0
        self._total_patterns_found = 0

    def record_execution(self) -> None:
        """Count one analysed failure output."""
        with self._lock:
            self._total_executions += 1

    def record_pattern_detection(self, pattern_type: str, keywords: Iterable[str] = ()) -> None:
        """Count one detection of ``pattern_type`` and remember the triggering keywords."""
        with self._lock:
            stats = self._patterns.get(pattern_type)
            if stats is None:
                stats = PatternStats(pattern_type=pattern_type)
                self._patterns[pattern_type] = stats
            stats.detection_count += 1
            stats.last_detected = datetime.now(timezone.utc).isoformat()
            for keyword in keywords:
                if keyword not in stats.keywords:
                    stats.keywords.append(keyword)
            self._total_patterns_found += 1

    @property
    def total_executions(self) -> int:
        with self._lock:
            return self._total_executions

    @property
    def total_patterns_found(self) -> int:
        with self._lock:
            return self._total_patterns_found

    def get_detection_rate(self) -> float:
        """Detections per analysed output; 0.0 before anything is recorded."""
        with self._lock:
            if self._total_executions == 0:
                return 0.0
            return self._total_patterns_found / self._total_executions

    def get_pattern_stats(self, pattern_type: str) -> Optional[PatternStats]:
        """A copy of one category's stats, or None if never detected."""
        with self._lock:
            stats = self._patterns.get(pattern_type)
            return deepcopy(stats) if stats else None

    def get_all_patterns(self) -> dict[str, PatternStats]:
        """Copies of every category's stats."""
        with self._lock:
            return {name: deepcopy(stats) for name, stats in self._patterns.items()}

    def reset(self) -> None:
        with self._lock:
            self._patterns = {}
            self._total_executions = 0
            self._total_patterns_found = 0

    # =========================================================================
    # Export Methods
    # =========================================================================

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "total_executions": self._total_executions,
                "total_patterns_found": self._total_patterns_found,
                "detection_rate": (
                    self._total_patterns_found / self._total_executions if self._total_executions else 0.0
                ),
                "patterns": {name: asdict(stats) for name, stats in self._patterns.items()},
            }

    def export_to_json(self, output_path: Path) -> Path:
        """
        Export the current counters to a JSON file.

        Returns:
            Path to the exported file
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return output_path

    def get_dashboard(self) -> str:
        """Plain-text summary of detections, most frequent category first."""
        data = self.to_dict()
        lines = [
            "=" * 60,
            "FAILURE PATTERN METRICS",
            "=" * 60,
            f"  Outputs Analysed:     {data['total_executions']}",
            f"  Patterns Detected:    {data['total_patterns_found']}",
            f"  Detection Rate:       {data['detection_rate']:.2f}",
        ]
        patterns = sorted(data["patterns"].values(), key=lambda p: (-p["detection_count"], p["pattern_type"]))
        if patterns:
            lines += ["", "-" * 60, "BY CATEGORY", "-" * 60]
            for p in patterns:
                keywords = ", ".join(p["keywords"]) or "-"
                lines.append(f"  {p['pattern_type']:<20} {p['detection_count']:>5}  ({keywords})")
        lines.append("=" * 60)
        return "\n".join(lines)
