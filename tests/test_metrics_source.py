"""Tests for invocation metrics aggregation."""

from __future__ import annotations

import pytest

from services.metrics_source import InvocationMetricsSource, percentile_95


def test_percentile_95() -> None:
    assert percentile_95([]) == 0.0
    assert percentile_95([42.0]) == 42.0
    assert percentile_95([float(value) for value in range(100, 0, -1)]) == 95.0
    assert percentile_95([10.0, 20.0, 30.0]) == 30.0


def test_snapshot_summarises_and_drains() -> None:
    source = InvocationMetricsSource()
    for index in range(8):
        source.record_invocation("reasoning_linear", 100.0 + index, True, 0.9, now=float(index))
    source.record_invocation("reasoning_tree", 900.0, False, 0.0, now=8.0)
    source.record_invocation("reasoning_tree", 950.0, True, None, fallback=True, now=9.0)
    assert source.pending_count() == 10

    snapshot = source.snapshot(now=10.0)

    assert snapshot.sample_count == 10
    assert snapshot.error_rate == pytest.approx(0.1)
    assert snapshot.fallback_rate == pytest.approx(0.1)
    assert snapshot.latency_p95_ms == 950.0
    assert snapshot.quality_score == pytest.approx(0.9)
    assert snapshot.timestamp == 10.0
    assert source.pending_count() == 0


def test_empty_window_is_healthy() -> None:
    source = InvocationMetricsSource()

    snapshot = source.snapshot(now=5.0)

    assert snapshot.sample_count == 0
    assert snapshot.error_rate == 0.0
    assert snapshot.quality_score == 1.0


def test_peek_does_not_drain() -> None:
    source = InvocationMetricsSource()
    source.record_invocation("reasoning_linear", 100.0, False)

    assert source.peek().error_rate == 1.0
    assert source.pending_count() == 1
