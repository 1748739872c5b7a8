"""Monitor phase: sample metrics, fold them into baselines and raise triggers."""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any

from config.settings import MonitorSettings
from core.baseline import BaselineCalculator, BaselineCollection, MetricBaseline
from core.logging import logger as LOGGER
from core.models import (
    ErrorRateTrigger,
    FallbackRateTrigger,
    HealthReport,
    LatencyTrigger,
    MetricsSnapshot,
    QualityScoreTrigger,
    TriggerLevel,
    TriggerMetric,
)
from core.safety_state import SafetyState
from services.metrics_source import MetricsSource


@dataclass
class MonitorStats:
    checks: int = 0
    reports: int = 0
    skipped_low_samples: int = 0
    trends_seen: int = 0
    last_check_at: float | None = None
    last_report_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class Monitor:
    """Turn metric snapshots into :class:`HealthReport` objects.

    Only Warning and Critical levels produce a report. Trend-level drift is
    counted and logged, and a metric whose baseline is still warming up never
    triggers.
    """

    def __init__(
        self,
        safety: SafetyState,
        source: MetricsSource,
        settings: MonitorSettings | None = None,
    ) -> None:
        self._safety = safety
        self._source = source
        self._settings = settings or MonitorSettings()
        self._stats = MonitorStats()
        self.last_snapshot: MetricsSnapshot | None = None

    @property
    def settings(self) -> MonitorSettings:
        return self._settings

    def is_due(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        last = self._stats.last_check_at
        return last is None or now - last >= self._settings.check_interval_secs

    def check_health(self, now: float | None = None) -> HealthReport | None:
        """Run a check if the configured interval has elapsed."""

        now = time.time() if now is None else now
        if not self.is_due(now):
            return None
        return self.force_check(now)

    def force_check(self, now: float | None = None) -> HealthReport | None:
        now = time.time() if now is None else now
        self._stats.checks += 1
        self._stats.last_check_at = now

        snapshot = self._source.snapshot()
        self.last_snapshot = snapshot
        if snapshot.sample_count < self._settings.min_sample_size:
            self._stats.skipped_low_samples += 1
            LOGGER.debug(
                "[Monitor] Skipping check: %s samples < %s",
                snapshot.sample_count,
                self._settings.min_sample_size,
            )
            return None

        with self._safety.locked() as safety:
            calculator = safety.calculator
            baselines = safety.baselines
            calculator.update(baselines.error_rate, snapshot.error_rate, now)
            calculator.update(baselines.latency, snapshot.latency_p95_ms, now)
            calculator.update_inverted(baselines.quality_score, snapshot.quality_score, now)
            calculator.update(baselines.fallback_rate, snapshot.fallback_rate, now)

            triggers = self._evaluate(calculator, baselines, snapshot)
            reference = baselines.to_baselines()

        if not triggers:
            LOGGER.debug("[Monitor] Healthy: %s", snapshot.to_dict())
            return None

        report = HealthReport(
            current_metrics=snapshot,
            baselines=reference,
            triggers=tuple(triggers),
            generated_at=now,
        )
        self._stats.reports += 1
        self._stats.last_report_at = now
        LOGGER.info(
            "[Monitor] Health report: severity=%s triggers=%s",
            report.severity.value,
            [trigger.metric_name for trigger in report.triggers],
        )
        return report

    def stats(self) -> MonitorStats:
        return MonitorStats(**self._stats.to_dict())

    def reset(self, now: float | None = None) -> None:
        """Drop learned baselines and counters."""

        with self._safety.locked() as safety:
            safety.baselines = BaselineCollection.create(safety.calculator, now)
        self._stats = MonitorStats()
        self.last_snapshot = None
        LOGGER.info("[Monitor] Baselines and stats reset")

    def _evaluate(
        self,
        calculator: BaselineCalculator,
        baselines: BaselineCollection,
        snapshot: MetricsSnapshot,
    ) -> list[TriggerMetric]:
        settings = self._settings
        triggers: list[TriggerMetric] = []

        hit = self._classify(
            calculator.check_trigger(baselines.error_rate, snapshot.error_rate),
            baselines.error_rate,
            snapshot.error_rate > settings.error_rate_threshold,
            settings.error_rate_threshold,
        )
        if hit is not None:
            level, threshold = hit
            triggers.append(
                ErrorRateTrigger(
                    observed=snapshot.error_rate,
                    baseline=baselines.error_rate.rolling_avg,
                    threshold=threshold,
                    level=level,
                )
            )

        hit = self._classify(
            calculator.check_trigger(baselines.latency, snapshot.latency_p95_ms),
            baselines.latency,
            snapshot.latency_p95_ms > settings.latency_threshold_ms,
            settings.latency_threshold_ms,
        )
        if hit is not None:
            level, threshold = hit
            triggers.append(
                LatencyTrigger(
                    observed_p95_ms=snapshot.latency_p95_ms,
                    baseline_ms=baselines.latency.rolling_avg,
                    threshold_ms=threshold,
                    level=level,
                )
            )

        hit = self._classify(
            calculator.check_trigger_inverted(baselines.quality_score, snapshot.quality_score),
            baselines.quality_score,
            snapshot.quality_score < settings.quality_threshold,
            settings.quality_threshold,
        )
        if hit is not None:
            level, threshold = hit
            triggers.append(
                QualityScoreTrigger(
                    observed=snapshot.quality_score,
                    baseline=baselines.quality_score.rolling_avg,
                    minimum=threshold,
                    level=level,
                )
            )

        hit = self._classify(
            calculator.check_trigger(baselines.fallback_rate, snapshot.fallback_rate),
            baselines.fallback_rate,
            snapshot.fallback_rate > settings.fallback_rate_threshold,
            settings.fallback_rate_threshold,
        )
        if hit is not None:
            level, threshold = hit
            triggers.append(
                FallbackRateTrigger(
                    observed=snapshot.fallback_rate,
                    baseline=baselines.fallback_rate.rolling_avg,
                    threshold=threshold,
                    level=level,
                )
            )
        return triggers

    def _classify(
        self,
        level: TriggerLevel | None,
        baseline: MetricBaseline,
        absolute_breach: bool,
        absolute: float,
    ) -> tuple[TriggerLevel, float] | None:
        """Return the reportable level and the threshold that was crossed."""

        if not baseline.is_valid:
            return None
        if level is TriggerLevel.TREND:
            self._stats.trends_seen += 1
            LOGGER.debug("[Monitor] Trend on %s", baseline.metric_name)
            level = None
        if level is TriggerLevel.CRITICAL:
            return level, baseline.critical_threshold
        if level is TriggerLevel.WARNING:
            return level, baseline.warning_threshold
        if absolute_breach:
            # Absolute ceilings still apply while the baseline itself is degraded.
            return TriggerLevel.WARNING, absolute
        return None
