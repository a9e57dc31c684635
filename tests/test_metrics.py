"""
Tests for Pattern Metrics
=========================
"""

import json
import threading

from adaptive_learning.metrics import PatternMetrics


class TestPatternMetrics:
    """Tests for detection counters."""

    def test_empty(self):
        metrics = PatternMetrics()
        assert metrics.get_detection_rate() == 0.0
        assert metrics.get_pattern_stats("timeout") is None
        assert metrics.get_all_patterns() == {}

    def test_detection_rate_and_keywords(self):
        metrics = PatternMetrics()
        for _ in range(4):
            metrics.record_execution()
        metrics.record_pattern_detection("timeout", ["timed out"])
        metrics.record_pattern_detection("timeout", ["deadline", "timed out"])

        stats = metrics.get_pattern_stats("timeout")
        assert stats.detection_count == 2
        assert stats.keywords == ["timed out", "deadline"]
        assert stats.last_detected is not None
        assert metrics.get_detection_rate() == 0.5

    def test_returned_stats_are_copies(self):
        metrics = PatternMetrics()
        metrics.record_pattern_detection("timeout", ["deadline"])
        metrics.get_pattern_stats("timeout").keywords.append("mutated")
        assert metrics.get_pattern_stats("timeout").keywords == ["deadline"]

    def test_reset(self):
        metrics = PatternMetrics()
        metrics.record_execution()
        metrics.record_pattern_detection("syntax_error")
        metrics.reset()
        assert metrics.total_executions == 0
        assert metrics.total_patterns_found == 0
        assert metrics.get_all_patterns() == {}

    def test_concurrent_recording(self):
        metrics = PatternMetrics()

        def worker():
            for _ in range(200):
                metrics.record_execution()
                metrics.record_pattern_detection("runtime_error", ["panic"])

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.total_executions == 1600
        assert metrics.get_pattern_stats("runtime_error").detection_count == 1600

    def test_export_to_json(self, tmp_path):
        metrics = PatternMetrics()
        metrics.record_execution()
        metrics.record_pattern_detection("type_error", ["type mismatch"])

        path = metrics.export_to_json(tmp_path / "out" / "metrics.json")
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["total_executions"] == 1
        assert data["patterns"]["type_error"]["keywords"] == ["type mismatch"]

    def test_dashboard(self):
        metrics = PatternMetrics()
        metrics.record_execution()
        metrics.record_pattern_detection("timeout", ["deadline"])
        dashboard = metrics.get_dashboard()
        assert "FAILURE PATTERN METRICS" in dashboard
        assert "timeout" in dashboard
        assert "(deadline)" in dashboard
