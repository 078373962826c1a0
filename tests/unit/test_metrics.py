"""Unit tests for query performance tracking and Prometheus metrics."""

import pytest
from prometheus_client import REGISTRY

from backend.pdfrag.utils.metrics import PerformanceTracker, PrometheusRagMetrics
from tests.helpers import RecordingMetrics


def test_tracker_counts_successes_and_failures() -> None:
    metrics = RecordingMetrics()
    tracker = PerformanceTracker(metrics)

    tracker.record_query(category="math", latency_ms=100.0, success=True, citations=3)
    tracker.record_query(category="factual", latency_ms=300.0, success=False)

    snap = tracker.snapshot()
    assert snap.queries == 2
    assert snap.successful_queries == 1
    assert snap.failed_queries == 1
    assert snap.document_citations == 3
    assert snap.average_response_time_ms == pytest.approx(200.0)
    assert snap.query_types == {"math": 1, "factual": 1, "general": 0}
    assert metrics.queries == [("math", "success"), ("factual", "error")]


def test_snapshot_is_a_copy() -> None:
    tracker = PerformanceTracker()
    snap = tracker.snapshot()
    snap.query_types["math"] = 99

    assert tracker.snapshot().query_types["math"] == 0


def test_reset_clears_counters() -> None:
    tracker = PerformanceTracker()
    tracker.record_query(category="general", latency_ms=50.0, success=True)

    tracker.reset()

    assert tracker.snapshot().queries == 0


def test_prometheus_retry_counter_is_labelled() -> None:
    labels = {"operation": "embed_batch", "reason": "429"}
    before = REGISTRY.get_sample_value("rag_retry_attempts_total", labels) or 0.0

    PrometheusRagMetrics().inc_retry("embed_batch", "429")

    assert REGISTRY.get_sample_value("rag_retry_attempts_total", labels) == before + 1
