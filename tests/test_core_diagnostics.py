"""Tests for core diagnostics."""

from __future__ import annotations

from diagnostics.models import DiagnosticStatus
from core.baseline import MetricBaseline
from core.diagnostics import probe


def test_core_probe() -> None:
    """Core probe should pass when logging is available."""

    result = probe()
    assert result.status is DiagnosticStatus.PASS


def test_core_probe_reports_baselines() -> None:
    result = probe(
        breaker_state={"state": "closed"},
        baselines=[
            MetricBaseline(metric_name="error_rate", is_valid=True),
            MetricBaseline(metric_name="latency_p95"),
        ],
    )
    assert result.status is DiagnosticStatus.PASS
    assert "baselines valid=1/2" in result.details


def test_core_probe_warns_when_circuit_open() -> None:
    result = probe(breaker_state={"state": "open"})
    assert result.status is DiagnosticStatus.WARN
    assert "circuit=open" in result.details
