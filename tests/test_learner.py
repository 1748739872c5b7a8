"""Tests for rewards, effectiveness tracking and lesson synthesis."""

from __future__ import annotations

from pathlib import Path

import pytest

from ai.learner import Learner, LearningBlocked, LearningBlockedReason, effectiveness_score
from ai.pipes import LearningResponse, PipeUnavailable
from config.settings import LearnerSettings
from core.actions import AdjustParam, IntegerValue
from core.models import (
    ActionOutcome,
    ActionRecord,
    Baselines,
    ErrorRateTrigger,
    MetricsSnapshot,
    NormalizedReward,
    RewardWeights,
)
from storage.self_improvement import SelfImprovementStore, StorageError

BASELINES = Baselines(error_rate=0.05, latency_ms=1000.0, quality_score=0.8)
TRIGGER = ErrorRateTrigger(observed=0.1, baseline=0.05, threshold=0.1)


def _snapshot(error_rate: float, latency: float = 1000.0, quality: float = 0.8, samples: int = 50) -> MetricsSnapshot:
    return MetricsSnapshot(
        error_rate=error_rate,
        latency_p95_ms=latency,
        quality_score=quality,
        sample_count=samples,
    )


def _record(outcome: ActionOutcome = ActionOutcome.SUCCESS, after: MetricsSnapshot | None = None) -> ActionRecord:
    return ActionRecord(
        diagnosis_id="diag_1",
        action=AdjustParam(key="MAX_RETRIES", old_value=IntegerValue(3), new_value=IntegerValue(4)),
        pre_state={},
        metrics_before=_snapshot(0.1),
        outcome=outcome,
        metrics_after=after if after is not None else _snapshot(0.05),
    )


class _FakePipes:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    def synthesize_learning(self, *, records, effectiveness=()) -> LearningResponse:
        self.calls += 1
        if self.fail:
            raise PipeUnavailable("si-learning", "down")
        return LearningResponse(
            outcome_assessment="Retries helped",
            root_cause_accuracy=0.8,
            action_effectiveness=0.7,
            lessons=["Retries help with transient errors"],
            param_adjustments=[],
            adjust_cooldown=False,
            new_cooldown_secs=None,
            confidence=0.6,
        )


def test_reward_uses_trigger_weights() -> None:
    reward = NormalizedReward.calculate(
        RewardWeights.for_trigger(TRIGGER), _snapshot(0.1), _snapshot(0.05), BASELINES
    )

    assert reward.value == pytest.approx(0.7)
    assert reward.breakdown.error_rate_component == pytest.approx(1.0)
    assert reward.confidence == 0.5


def test_reward_is_clamped() -> None:
    reward = NormalizedReward.calculate(
        RewardWeights(1.0, 1.0, 1.0),
        _snapshot(0.0, latency=100.0, quality=0.2),
        _snapshot(1.0, latency=90000.0, quality=0.0),
        BASELINES,
    )

    assert reward.value == -1.0
    assert reward.is_negative()


def test_effectiveness_score_formula() -> None:
    assert effectiveness_score(1.0, 0.7, 1) == pytest.approx(0.094)
    assert effectiveness_score(0.5, 0.0, 20) == pytest.approx(0.5)


def test_learn_updates_effectiveness() -> None:
    learner = Learner(LearnerSettings(synthesis_interval=0))
    record = _record()

    outcome = learner.learn(record, BASELINES, TRIGGER, now=10.0)

    assert outcome.success
    assert outcome.reward == pytest.approx(0.7)
    assert record.normalized_reward == pytest.approx(0.7)
    entry = learner.effectiveness_for("adjust_param:MAX_RETRIES:increase")
    assert entry.total_attempts == 1
    assert entry.successful_attempts == 1
    assert entry.effectiveness_score == pytest.approx(0.094)
    assert learner.stats().most_effective == "adjust_param:MAX_RETRIES:increase"


def test_rolled_back_action_counts_as_failure() -> None:
    learner = Learner(LearnerSettings(synthesis_interval=0))

    outcome = learner.learn(_record(ActionOutcome.ROLLED_BACK, _snapshot(0.2)), BASELINES, TRIGGER)

    assert not outcome.success
    assert outcome.reward < 0
    assert outcome.effectiveness.rolled_back_attempts == 1
    assert outcome.effectiveness.failed_attempts == 1


def test_failed_apply_gets_minimum_reward() -> None:
    learner = Learner(LearnerSettings(synthesis_interval=0))
    record = _record(ActionOutcome.FAILED)
    record.metrics_after = None

    outcome = learner.learn(record, BASELINES, TRIGGER)

    assert outcome.reward == -1.0
    assert not outcome.success


def test_pending_record_is_blocked() -> None:
    learner = Learner()

    with pytest.raises(LearningBlocked) as excinfo:
        learner.learn(_record(ActionOutcome.PENDING), BASELINES, TRIGGER)
    assert excinfo.value.reason is LearningBlockedReason.EXECUTION_NOT_COMPLETED


def test_insufficient_samples_blocked() -> None:
    learner = Learner(LearnerSettings(min_samples=10))

    with pytest.raises(LearningBlocked) as excinfo:
        learner.learn(_record(after=_snapshot(0.05, samples=5)), BASELINES, TRIGGER)
    assert excinfo.value.reason is LearningBlockedReason.INSUFFICIENT_SAMPLES


def test_configured_weights_override_trigger_defaults() -> None:
    learner = Learner(
        LearnerSettings(synthesis_interval=0, reward_weights=RewardWeights(0.0, 1.0, 0.0))
    )

    outcome = learner.learn(_record(), BASELINES, TRIGGER)

    assert outcome.reward == 0.0


def test_synthesis_runs_every_interval() -> None:
    pipes = _FakePipes()
    learner = Learner(LearnerSettings(synthesis_interval=2), pipes=pipes)

    first = learner.learn(_record(), BASELINES, TRIGGER)
    second = learner.learn(_record(), BASELINES, TRIGGER)

    assert first.lessons == []
    assert second.lessons == ["Retries help with transient errors"]
    assert pipes.calls == 1
    assert learner.recent_lessons() == ["Retries help with transient errors"]
    assert learner.stats().synthesis_runs == 1


def test_synthesis_failure_does_not_fail_learning() -> None:
    learner = Learner(LearnerSettings(synthesis_interval=1), pipes=_FakePipes(fail=True))

    outcome = learner.learn(_record(), BASELINES, TRIGGER)

    assert outcome.success
    assert outcome.lessons == []


def test_effectiveness_and_lessons_persist(tmp_path: Path) -> None:
    store = SelfImprovementStore(tmp_path / "si.db")
    learner = Learner(LearnerSettings(synthesis_interval=1), store=store, pipes=_FakePipes())
    record = _record()
    store.save_action(record)

    learner.learn(record, BASELINES, TRIGGER)

    reloaded = Learner(store=store)
    entry = reloaded.effectiveness_for("adjust_param:MAX_RETRIES:increase")
    assert entry is not None
    assert entry.total_attempts == 1
    assert reloaded.recent_lessons() == ["Retries help with transient errors"]
    saved = store.get_action(record.id)
    assert saved.normalized_reward == pytest.approx(0.7)
    assert saved.lessons == ["Retries help with transient errors"]
    store.close()


def test_unreadable_store_starts_with_fresh_effectiveness(tmp_path: Path, monkeypatch) -> None:
    store = SelfImprovementStore(tmp_path / "si.db")

    def _locked(action_type=None):
        raise StorageError("get_effectiveness failed: database is locked")

    monkeypatch.setattr(store, "get_effectiveness", _locked)

    learner = Learner(LearnerSettings(synthesis_interval=0), store=store)

    assert learner.effectiveness_snapshot() == {}
    outcome = learner.learn(_record(), BASELINES, TRIGGER)
    assert outcome.success
    store.close()
