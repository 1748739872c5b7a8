"""Hybrid EMA and windowed-mean baselines for anomaly detection.

Each tracked metric keeps two estimates of "normal":

* an exponential moving average, which reacts quickly and drives trend detection;
* an incremental mean over the current window, which is stable and drives the
  warning and critical thresholds.

The window restarts once it is older than twice ``window_secs``. The restarted
mean is seeded from the EMA so that a warmed-up baseline stays usable.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import time
from typing import Any, Mapping

from core.models import Baselines, TriggerLevel

TREND_RATIO = 0.5


@dataclass
class MetricBaseline:
    """Baseline state for a single metric."""

    metric_name: str
    ema_alpha: float = 0.1
    rolling_avg: float = 0.0
    rolling_sample_count: int = 0
    rolling_window_start: float = field(default_factory=time.time)
    ema_value: float = 0.0
    warning_threshold: float = 0.0
    critical_threshold: float = 0.0
    last_updated: float = field(default_factory=time.time)
    is_valid: bool = False

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MetricBaseline":
        return cls(
            metric_name=str(payload["metric_name"]),
            ema_alpha=float(payload.get("ema_alpha", 0.1)),
            rolling_avg=float(payload.get("rolling_avg", 0.0)),
            rolling_sample_count=int(payload.get("rolling_sample_count", 0)),
            rolling_window_start=float(payload.get("rolling_window_start", time.time())),
            ema_value=float(payload.get("ema_value", 0.0)),
            warning_threshold=float(payload.get("warning_threshold", 0.0)),
            critical_threshold=float(payload.get("critical_threshold", 0.0)),
            last_updated=float(payload.get("last_updated", time.time())),
            is_valid=bool(payload.get("is_valid", False)),
        )


class BaselineCalculator:
    """Update and evaluate :class:`MetricBaseline` values."""

    def __init__(
        self,
        *,
        ema_alpha: float = 0.1,
        window_secs: float = 86400.0,
        min_samples: int = 100,
        warning_multiplier: float = 1.5,
        critical_multiplier: float = 2.0,
    ) -> None:
        self.ema_alpha = float(ema_alpha)
        self.window_secs = float(window_secs)
        self.min_samples = max(int(min_samples), 1)
        self.warning_multiplier = float(warning_multiplier)
        self.critical_multiplier = float(critical_multiplier)

    @classmethod
    def from_settings(cls, settings: Any) -> "BaselineCalculator":
        return cls(
            ema_alpha=settings.ema_alpha,
            window_secs=settings.window_secs,
            min_samples=settings.min_samples,
            warning_multiplier=settings.warning_multiplier,
            critical_multiplier=settings.critical_multiplier,
        )

    def new_baseline(self, metric_name: str, now: float | None = None) -> MetricBaseline:
        now = time.time() if now is None else now
        return MetricBaseline(
            metric_name=metric_name,
            ema_alpha=self.ema_alpha,
            rolling_window_start=now,
            last_updated=now,
        )

    def update(self, baseline: MetricBaseline, value: float, now: float | None = None) -> None:
        self._fold(baseline, value, now)
        baseline.warning_threshold = baseline.rolling_avg * self.warning_multiplier
        baseline.critical_threshold = baseline.rolling_avg * self.critical_multiplier

    def update_inverted(
        self, baseline: MetricBaseline, value: float, now: float | None = None
    ) -> None:
        """Update a metric where lower values are worse (e.g. quality score)."""

        self._fold(baseline, value, now)
        baseline.warning_threshold = baseline.rolling_avg / self.warning_multiplier
        baseline.critical_threshold = baseline.rolling_avg / self.critical_multiplier

    def should_reset_window(self, baseline: MetricBaseline, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - baseline.rolling_window_start > 2.0 * self.window_secs

    def check_trigger(self, baseline: MetricBaseline, value: float) -> TriggerLevel | None:
        if not baseline.is_valid:
            return None
        # A zero baseline has zero thresholds; zero is still healthy against it.
        if baseline.rolling_avg == 0.0 and value <= 0.0:
            return None
        if value >= baseline.critical_threshold:
            return TriggerLevel.CRITICAL
        if value >= baseline.warning_threshold:
            return TriggerLevel.WARNING
        if baseline.ema_value > 0.0:
            if abs(value - baseline.ema_value) / baseline.ema_value > TREND_RATIO:
                return TriggerLevel.TREND
        return None

    def check_trigger_inverted(
        self, baseline: MetricBaseline, value: float
    ) -> TriggerLevel | None:
        if not baseline.is_valid:
            return None
        if value <= baseline.critical_threshold:
            return TriggerLevel.CRITICAL
        if value <= baseline.warning_threshold:
            return TriggerLevel.WARNING
        if baseline.ema_value > 0.0:
            if (baseline.ema_value - value) / baseline.ema_value > TREND_RATIO:
                return TriggerLevel.TREND
        return None

    @staticmethod
    def deviation_pct(baseline: MetricBaseline, value: float) -> float:
        if baseline.rolling_avg == 0.0:
            return 100.0 if value > 0.0 else 0.0
        return (value - baseline.rolling_avg) / baseline.rolling_avg * 100.0

    def _fold(self, baseline: MetricBaseline, value: float, now: float | None) -> None:
        now = time.time() if now is None else now
        value = float(value)
        baseline.ema_alpha = self.ema_alpha

        if baseline.rolling_sample_count == 0:
            baseline.ema_value = value
            baseline.rolling_avg = value
            baseline.rolling_sample_count = 1
            baseline.rolling_window_start = now
        else:
            if self.should_reset_window(baseline, now):
                self._restart_window(baseline, now)
            alpha = baseline.ema_alpha
            baseline.ema_value = alpha * value + (1.0 - alpha) * baseline.ema_value
            count = baseline.rolling_sample_count
            baseline.rolling_avg += (value - baseline.rolling_avg) / (count + 1)
            baseline.rolling_sample_count = count + 1

        baseline.last_updated = now
        baseline.is_valid = baseline.rolling_sample_count >= self.min_samples

    def _restart_window(self, baseline: MetricBaseline, now: float) -> None:
        baseline.rolling_avg = baseline.ema_value
        baseline.rolling_sample_count = min(baseline.rolling_sample_count, self.min_samples)
        baseline.rolling_window_start = now


METRIC_ERROR_RATE = "error_rate"
METRIC_LATENCY = "latency_p95"
METRIC_QUALITY = "quality_score"
METRIC_FALLBACK = "fallback_rate"


@dataclass
class BaselineCollection:
    """Baselines for every metric the monitor tracks."""

    error_rate: MetricBaseline
    latency: MetricBaseline
    quality_score: MetricBaseline
    fallback_rate: MetricBaseline

    @classmethod
    def create(cls, calculator: BaselineCalculator, now: float | None = None) -> "BaselineCollection":
        return cls(
            error_rate=calculator.new_baseline(METRIC_ERROR_RATE, now),
            latency=calculator.new_baseline(METRIC_LATENCY, now),
            quality_score=calculator.new_baseline(METRIC_QUALITY, now),
            fallback_rate=calculator.new_baseline(METRIC_FALLBACK, now),
        )

    def all(self) -> list[MetricBaseline]:
        return [self.error_rate, self.latency, self.quality_score, self.fallback_rate]

    def by_name(self, metric_name: str) -> MetricBaseline | None:
        for baseline in self.all():
            if baseline.metric_name == metric_name:
                return baseline
        return None

    def restore(self, baseline: MetricBaseline) -> None:
        if baseline.metric_name == METRIC_ERROR_RATE:
            self.error_rate = baseline
        elif baseline.metric_name == METRIC_LATENCY:
            self.latency = baseline
        elif baseline.metric_name == METRIC_QUALITY:
            self.quality_score = baseline
        elif baseline.metric_name == METRIC_FALLBACK:
            self.fallback_rate = baseline

    def all_valid(self) -> bool:
        return self.error_rate.is_valid and self.latency.is_valid and self.quality_score.is_valid

    def to_baselines(self, default_quality: float = 0.8) -> Baselines:
        quality = self.quality_score.rolling_avg if self.quality_score.rolling_sample_count else default_quality
        return Baselines(
            error_rate=self.error_rate.rolling_avg,
            latency_ms=self.latency.rolling_avg,
            quality_score=quality,
        )

    def copy(self) -> "BaselineCollection":
        return BaselineCollection(
            error_rate=replace(self.error_rate),
            latency=replace(self.latency),
            quality_score=replace(self.quality_score),
            fallback_rate=replace(self.fallback_rate),
        )
