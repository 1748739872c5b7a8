"""Tests for the monitor phase."""

from __future__ import annotations

from config.settings import MonitorSettings
from core.baseline import BaselineCalculator
from core.models import ErrorRateTrigger, MetricsSnapshot, Severity, TriggerLevel
from core.safety_state import SafetyState
from services.monitor import Monitor


def _snapshot(error_rate: float = 0.02, latency: float = 1000.0, quality: float = 0.9, samples: int = 50) -> MetricsSnapshot:
    return MetricsSnapshot(
        error_rate=error_rate,
        latency_p95_ms=latency,
        quality_score=quality,
        fallback_rate=0.01,
        sample_count=samples,
    )


class _FakeSource:
    def __init__(self, snapshots: list[MetricsSnapshot]) -> None:
        self._snapshots = list(snapshots)
        self.calls = 0

    def snapshot(self) -> MetricsSnapshot:
        self.calls += 1
        if self._snapshots:
            return self._snapshots.pop(0)
        return _snapshot()


def _monitor(snapshots: list[MetricsSnapshot], **overrides) -> tuple[Monitor, SafetyState, _FakeSource]:
    safety = SafetyState.create(calculator=BaselineCalculator(min_samples=3))
    source = _FakeSource(snapshots)
    settings = MonitorSettings(**{"check_interval_secs": 60.0, "min_sample_size": 10, **overrides})
    return Monitor(safety, source, settings), safety, source


def test_low_sample_snapshot_is_skipped() -> None:
    monitor, safety, _ = _monitor([_snapshot(error_rate=0.9, samples=5)])

    assert monitor.force_check(now=0.0) is None

    assert safety.baselines.error_rate.rolling_sample_count == 0
    assert monitor.stats().skipped_low_samples == 1


def test_warming_baseline_never_triggers() -> None:
    monitor, _, _ = _monitor([_snapshot(), _snapshot(error_rate=0.9)])

    assert monitor.force_check(now=0.0) is None
    assert monitor.force_check(now=60.0) is None


def test_critical_error_spike_produces_report() -> None:
    monitor, _, _ = _monitor([_snapshot(), _snapshot(), _snapshot(), _snapshot(error_rate=0.2)])
    for index in range(3):
        assert monitor.force_check(now=index * 60.0) is None

    report = monitor.force_check(now=180.0)

    assert report is not None
    assert report.severity is Severity.CRITICAL
    assert len(report.triggers) == 1
    trigger = report.triggers[0]
    assert isinstance(trigger, ErrorRateTrigger)
    assert trigger.level is TriggerLevel.CRITICAL
    assert trigger.observed == 0.2
    assert report.current_metrics.error_rate == 0.2
    assert monitor.stats().reports == 1


def test_absolute_threshold_breach_warns() -> None:
    monitor, _, _ = _monitor([_snapshot(error_rate=0.06)] * 3)

    assert monitor.force_check(now=0.0) is None
    assert monitor.force_check(now=60.0) is None
    report = monitor.force_check(now=120.0)

    assert report is not None
    trigger = report.triggers[0]
    assert trigger.level is TriggerLevel.WARNING
    assert trigger.threshold == 0.05


def test_quality_drop_triggers_inverted_check() -> None:
    monitor, _, _ = _monitor([_snapshot(), _snapshot(), _snapshot(), _snapshot(quality=0.3)])
    for index in range(3):
        monitor.force_check(now=index * 60.0)

    report = monitor.force_check(now=180.0)

    assert report is not None
    assert [trigger.metric_name for trigger in report.triggers] == ["quality_score"]


def test_check_interval_is_respected() -> None:
    monitor, _, source = _monitor([])

    monitor.check_health(now=0.0)
    monitor.check_health(now=30.0)
    assert source.calls == 1
    assert not monitor.is_due(now=59.0)

    monitor.check_health(now=60.0)
    assert source.calls == 2


def test_reset_drops_baselines() -> None:
    monitor, safety, _ = _monitor([])
    for index in range(3):
        monitor.force_check(now=index * 60.0)
    assert safety.baselines.error_rate.is_valid

    monitor.reset(now=500.0)

    assert not safety.baselines.error_rate.is_valid
    assert monitor.stats().checks == 0
    assert monitor.is_due(now=500.0)
