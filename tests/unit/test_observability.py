"""Unit tests for in-process observability helpers."""

from __future__ import annotations

from tutorstream.observability import metrics_snapshot
from tutorstream.observability import record_latency
from tutorstream.observability import record_outcome
from tutorstream.observability import reset_metrics


class TestLatency:
    def test_records_latency_aggregates(self):
        record_latency(operation="orchestrator.turn", duration_ms=10.0, ok=True)
        record_latency(operation="orchestrator.turn", duration_ms=30.0, ok=False)

        metrics = metrics_snapshot()["latency"]["orchestrator.turn"]
        assert metrics["count"] == 2
        assert metrics["error_count"] == 1
        assert metrics["total_ms"] == 40.0
        assert metrics["avg_ms"] == 20.0
        assert metrics["min_ms"] == 10.0
        assert metrics["max_ms"] == 30.0
        assert metrics["last_ms"] == 30.0

    def test_negative_durations_are_clamped(self):
        record_latency(operation="directive.resolve", duration_ms=-5.0)
        assert metrics_snapshot()["latency"]["directive.resolve"]["min_ms"] == 0.0


class TestOutcomes:
    def test_counts_terminal_statuses(self):
        record_outcome("done")
        record_outcome("done")
        record_outcome("cancelled")

        assert metrics_snapshot()["outcomes"] == {"cancelled": 1, "done": 2}

    def test_reset_clears_everything(self):
        record_latency(operation="service.submit_message", duration_ms=1.0)
        record_outcome("rejected")
        reset_metrics()
        assert metrics_snapshot() == {"latency": {}, "outcomes": {}}
