"""Tests for SQLite persistence of self-improvement state."""

from __future__ import annotations

from pathlib import Path

import pytest

from core.actions import AdjustParam, ClearCache, IntegerValue
from core.baseline import MetricBaseline
from core.models import (
    ActionEffectiveness,
    ActionOutcome,
    ActionRecord,
    DiagnosisStatus,
    LatencyTrigger,
    MetricsSnapshot,
    SelfDiagnosis,
    Severity,
    TriggerLevel,
)
from storage.self_improvement import SelfImprovementStore, StorageError


def _store(tmp_path: Path) -> SelfImprovementStore:
    return SelfImprovementStore(tmp_path / "var" / "self_improvement.db", max_retries=0)


def _diagnosis(status: DiagnosisStatus = DiagnosisStatus.PENDING, created_at: float = 1.0) -> SelfDiagnosis:
    return SelfDiagnosis(
        trigger=LatencyTrigger(
            observed_p95_ms=9000.0, baseline_ms=3000.0, threshold_ms=6000.0, level=TriggerLevel.CRITICAL
        ),
        severity=Severity.CRITICAL,
        description="latency_p95 tripled",
        suspected_cause="slow upstream",
        suggested_action=AdjustParam(
            key="REQUEST_TIMEOUT_MS", old_value=IntegerValue(30000), new_value=IntegerValue(35000)
        ),
        action_rationale="more headroom",
        status=status,
        created_at=created_at,
    )


def _record(executed_at: float, outcome: ActionOutcome = ActionOutcome.SUCCESS) -> ActionRecord:
    return ActionRecord(
        diagnosis_id="diag_1",
        action=ClearCache(cache_name="sessions"),
        pre_state={"params": {}},
        metrics_before=MetricsSnapshot(error_rate=0.1, latency_p95_ms=900.0, quality_score=0.8, sample_count=40),
        executed_at=executed_at,
        outcome=outcome,
    )


def test_store_creates_database(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.health_check()

    assert store.db_path.exists()
    store.close()


def test_circuit_breaker_state(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.load_circuit_breaker() is None

    store.save_circuit_breaker({"state": "open", "consecutive_failures": 3})
    store.save_circuit_breaker({"state": "half_open", "consecutive_failures": 3})

    assert store.load_circuit_breaker() == {"state": "half_open", "consecutive_failures": 3}
    store.close()


def test_operator_control_values(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.get_control("paused_until") is None

    store.set_control("paused_until", 1600.0)
    assert store.get_control("paused_until") == 1600.0

    store.set_control("paused_until", None)
    assert store.get_control("paused_until") is None
    store.close()


def test_baselines_upsert(tmp_path: Path) -> None:
    store = _store(tmp_path)
    baseline = MetricBaseline(metric_name="error_rate", rolling_avg=0.05, rolling_sample_count=120, is_valid=True)

    store.save_baseline(baseline)
    baseline.rolling_avg = 0.06
    store.save_baselines([baseline, MetricBaseline(metric_name="latency_p95")])

    loaded = store.get_baseline("error_rate")
    assert loaded.rolling_avg == 0.06
    assert loaded.is_valid
    assert [b.metric_name for b in store.get_all_baselines()] == ["error_rate", "latency_p95"]
    assert store.get_baseline("quality_score") is None
    store.close()


def test_diagnosis_status_updates(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = _diagnosis(created_at=1.0)
    second = _diagnosis(DiagnosisStatus.AWAITING_APPROVAL, created_at=2.0)
    store.save_diagnosis(first)
    store.save_diagnosis(second)
    approved = _diagnosis(DiagnosisStatus.APPROVED, created_at=2.5)
    store.save_diagnosis(approved)
    store.save_diagnosis(_diagnosis(DiagnosisStatus.COMPLETED, created_at=3.0))

    assert [d.id for d in store.pending_diagnoses()] == [first.id, second.id, approved.id]

    assert store.update_diagnosis_status(first.id, DiagnosisStatus.ROLLED_BACK, "latency regressed")
    assert not store.update_diagnosis_status("diag_missing", DiagnosisStatus.COMPLETED)

    loaded = store.get_diagnosis(first.id)
    assert loaded.status is DiagnosisStatus.ROLLED_BACK
    assert loaded.suggested_action == first.suggested_action
    assert isinstance(loaded.trigger, LatencyTrigger)
    assert [d.id for d in store.pending_diagnoses()] == [second.id, approved.id]
    store.close()


def test_action_history_and_filters(tmp_path: Path) -> None:
    store = _store(tmp_path)
    old = _record(100.0)
    recent = _record(5000.0, ActionOutcome.ROLLED_BACK)
    store.save_action(old)
    store.save_action(recent)

    recent.rollback_reason = "latency regressed"
    recent.metrics_after = MetricsSnapshot(error_rate=0.1, latency_p95_ms=2000.0, quality_score=0.8)
    store.update_action(recent)

    assert [r.id for r in store.history()] == [recent.id, old.id]
    assert [r.id for r in store.history(outcome=ActionOutcome.SUCCESS)] == [old.id]
    assert [r.id for r in store.actions_since(1000.0)] == [recent.id]
    loaded = store.get_action(recent.id)
    assert loaded.rollback_reason == "latency regressed"
    assert loaded.metrics_after.latency_p95_ms == 2000.0
    assert loaded.action == ClearCache(cache_name="sessions")
    assert store.get_action("missing") is None
    store.close()


def test_effectiveness_and_lessons(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_effectiveness(
        ActionEffectiveness(action_type="clear_cache", action_signature="clear_cache:sessions", total_attempts=2)
    )
    store.save_effectiveness(
        ActionEffectiveness(
            action_type="adjust_param",
            action_signature="adjust_param:MAX_RETRIES:increase",
            total_attempts=1,
        )
    )
    store.append_lessons(summary="first", lessons=["a", "b"])
    store.append_lessons(summary="second", lessons=["c"])

    assert len(store.get_effectiveness()) == 2
    assert [e.action_signature for e in store.get_effectiveness("clear_cache")] == ["clear_cache:sessions"]
    assert store.recent_lessons(2) == ["c", "a"]
    store.close()


def test_closed_store_raises_storage_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.close()

    with pytest.raises(StorageError):
        store.health_check()
