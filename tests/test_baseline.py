"""Tests for EMA and windowed-mean baselines."""

from __future__ import annotations

import pytest

from core.baseline import BaselineCalculator, BaselineCollection, MetricBaseline
from core.models import TriggerLevel


def _feed(calculator: BaselineCalculator, baseline: MetricBaseline, value: float, count: int, *, start: float = 0.0, inverted: bool = False) -> None:
    for index in range(count):
        if inverted:
            calculator.update_inverted(baseline, value, now=start + index)
        else:
            calculator.update(baseline, value, now=start + index)


def test_constant_stream_converges_to_value() -> None:
    calculator = BaselineCalculator(min_samples=10)
    baseline = calculator.new_baseline("error_rate", now=0.0)

    _feed(calculator, baseline, 0.2, 25)

    assert baseline.is_valid
    assert baseline.rolling_avg == pytest.approx(0.2)
    assert baseline.ema_value == pytest.approx(0.2)
    assert baseline.warning_threshold == pytest.approx(0.3)
    assert baseline.critical_threshold == pytest.approx(0.4)


def test_baseline_invalid_until_min_samples() -> None:
    calculator = BaselineCalculator(min_samples=10)
    baseline = calculator.new_baseline("error_rate", now=0.0)

    _feed(calculator, baseline, 0.05, 9)
    assert not baseline.is_valid
    assert calculator.check_trigger(baseline, 10.0) is None

    calculator.update(baseline, 0.05, now=9.0)
    assert baseline.is_valid


def test_error_rate_levels_against_five_percent_baseline() -> None:
    calculator = BaselineCalculator(min_samples=10)
    baseline = calculator.new_baseline("error_rate", now=0.0)
    _feed(calculator, baseline, 0.05, 15)

    assert baseline.warning_threshold == pytest.approx(0.075)
    assert baseline.critical_threshold == pytest.approx(0.10)
    assert calculator.check_trigger(baseline, 0.08) is TriggerLevel.WARNING
    assert calculator.check_trigger(baseline, 0.12) is TriggerLevel.CRITICAL
    assert calculator.check_trigger(baseline, 0.05) is None


def test_trend_when_far_from_ema_but_below_warning() -> None:
    calculator = BaselineCalculator(min_samples=10)
    baseline = calculator.new_baseline("error_rate", now=0.0)
    _feed(calculator, baseline, 0.05, 15)

    assert calculator.check_trigger(baseline, 0.02) is TriggerLevel.TREND
    assert calculator.check_trigger(baseline, 0.04) is None


def test_zero_baseline_does_not_flag_zero() -> None:
    calculator = BaselineCalculator(min_samples=3)
    baseline = calculator.new_baseline("error_rate", now=0.0)
    _feed(calculator, baseline, 0.0, 5)

    assert calculator.check_trigger(baseline, 0.0) is None
    assert calculator.check_trigger(baseline, 0.01) is TriggerLevel.CRITICAL


def test_inverted_quality_levels() -> None:
    calculator = BaselineCalculator(min_samples=10)
    baseline = calculator.new_baseline("quality_score", now=0.0)
    _feed(calculator, baseline, 0.80, 15, inverted=True)

    assert baseline.warning_threshold == pytest.approx(0.80 / 1.5)
    assert baseline.critical_threshold == pytest.approx(0.40)
    assert calculator.check_trigger_inverted(baseline, 0.50) is TriggerLevel.WARNING
    assert calculator.check_trigger_inverted(baseline, 0.35) is TriggerLevel.CRITICAL
    assert calculator.check_trigger_inverted(baseline, 0.80) is None
    assert calculator.check_trigger_inverted(baseline, 0.95) is None


def test_window_restarts_after_twice_window() -> None:
    calculator = BaselineCalculator(min_samples=10, window_secs=10.0)
    baseline = calculator.new_baseline("latency_p95", now=0.0)
    _feed(calculator, baseline, 1000.0, 15)
    assert baseline.rolling_sample_count == 15

    assert calculator.should_reset_window(baseline, now=25.0)
    calculator.update(baseline, 1000.0, now=25.0)

    assert baseline.rolling_window_start == 25.0
    assert baseline.rolling_sample_count == 11
    assert baseline.is_valid
    assert baseline.rolling_avg == pytest.approx(1000.0)


def test_window_restart_seeds_from_ema() -> None:
    calculator = BaselineCalculator(min_samples=2, window_secs=10.0, ema_alpha=0.5)
    baseline = calculator.new_baseline("latency_p95", now=0.0)
    calculator.update(baseline, 100.0, now=0.0)
    calculator.update(baseline, 300.0, now=1.0)
    assert baseline.rolling_avg == pytest.approx(200.0)
    assert baseline.ema_value == pytest.approx(200.0)

    calculator.update(baseline, 200.0, now=100.0)

    # Reseeded at ema=200 with count=2, then folded in one more sample.
    assert baseline.rolling_avg == pytest.approx(200.0)
    assert baseline.rolling_sample_count == 3


def test_deviation_pct_guards_zero_average() -> None:
    calculator = BaselineCalculator()
    baseline = calculator.new_baseline("error_rate", now=0.0)

    assert calculator.deviation_pct(baseline, 0.0) == 0.0
    assert calculator.deviation_pct(baseline, 0.2) == 100.0

    calculator.update(baseline, 0.1, now=0.0)
    assert calculator.deviation_pct(baseline, 0.15) == pytest.approx(50.0)


def test_collection_restore_and_reference_values() -> None:
    calculator = BaselineCalculator(min_samples=1)
    collection = BaselineCollection.create(calculator, now=0.0)
    assert collection.to_baselines().quality_score == 0.8

    restored = MetricBaseline(metric_name="quality_score", rolling_avg=0.9, rolling_sample_count=4)
    collection.restore(restored)

    assert collection.by_name("quality_score") is restored
    assert collection.to_baselines().quality_score == 0.9
    assert collection.by_name("unknown") is None
