"""Learner phase: score executed actions and distil lessons from recent history."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
import time
from typing import TYPE_CHECKING, Any, Deque

from ai.pipes import PipeError, SelfImprovementPipes
from config.settings import LearnerSettings
from core.logging import logger as LOGGER
from core.models import (
    ActionEffectiveness,
    ActionOutcome,
    ActionRecord,
    Baselines,
    NormalizedReward,
    RewardWeights,
    TriggerMetric,
    clamp,
)
from storage.self_improvement import StorageError

if TYPE_CHECKING:
    from storage.self_improvement import SelfImprovementStore

FAILED_APPLY_REWARD = -1.0


class LearningBlockedReason(str, Enum):
    EXECUTION_NOT_COMPLETED = "execution_not_completed"
    INSUFFICIENT_SAMPLES = "insufficient_samples"
    PIPE_UNAVAILABLE = "pipe_unavailable"


class LearningBlocked(Exception):
    def __init__(self, reason: LearningBlockedReason, details: str = "") -> None:
        message = f"Learning blocked ({reason.value})"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)
        self.reason = reason
        self.details = details


@dataclass(frozen=True)
class LearningOutcome:
    action_id: str
    signature: str
    reward: float
    success: bool
    effectiveness: ActionEffectiveness
    lessons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "signature": self.signature,
            "reward": self.reward,
            "success": self.success,
            "effectiveness": self.effectiveness.to_dict(),
            "lessons": list(self.lessons),
        }


@dataclass(frozen=True)
class LearnerStats:
    total_learned: int
    successes: int
    average_reward: float
    synthesis_runs: int
    tracked_signatures: int
    most_effective: str | None
    least_effective: str | None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def effectiveness_score(success_rate: float, avg_reward: float, total: int) -> float:
    confidence = min(total / 10.0, 1.0)
    return (success_rate * 0.6 + (avg_reward + 1.0) / 2.0 * 0.4) * confidence


class Learner:
    """Turn execution results into rewards and per-signature effectiveness.

    Every ``synthesis_interval`` learned outcomes the learning pipe reviews the
    recent records. Its lessons are persisted and fed back into action selection.
    """

    def __init__(
        self,
        settings: LearnerSettings | None = None,
        *,
        store: "SelfImprovementStore | None" = None,
        pipes: SelfImprovementPipes | None = None,
    ) -> None:
        self._settings = settings or LearnerSettings()
        self._store = store
        self._pipes = pipes
        self._effectiveness: dict[str, ActionEffectiveness] = {}
        self._recent: Deque[ActionRecord] = deque(maxlen=max(self._settings.max_history_per_action, 1))
        self._lessons: Deque[str] = deque(maxlen=50)
        self._learned = 0
        self._successes = 0
        self._reward_total = 0.0
        self._synthesis_runs = 0
        if self._store is not None:
            try:
                for entry in self._store.get_effectiveness():
                    self._effectiveness[entry.action_signature] = entry
            except StorageError as exc:
                LOGGER.warning("[Learner] Could not load effectiveness; starting fresh: %s", exc)

    @property
    def settings(self) -> LearnerSettings:
        return self._settings

    def learn(
        self,
        record: ActionRecord,
        baselines: Baselines,
        trigger: TriggerMetric | None = None,
        now: float | None = None,
    ) -> LearningOutcome:
        now = time.time() if now is None else now
        if record.outcome is ActionOutcome.PENDING:
            raise LearningBlocked(LearningBlockedReason.EXECUTION_NOT_COMPLETED, record.id)

        if record.outcome is ActionOutcome.FAILED and record.metrics_after is None:
            reward_value = FAILED_APPLY_REWARD
            breakdown = None
        else:
            after = record.metrics_after
            if after is None:
                raise LearningBlocked(LearningBlockedReason.EXECUTION_NOT_COMPLETED, record.id)
            if after.sample_count < self._settings.min_samples:
                raise LearningBlocked(
                    LearningBlockedReason.INSUFFICIENT_SAMPLES,
                    f"{after.sample_count} < {self._settings.min_samples}",
                )
            weights = self._settings.reward_weights or RewardWeights.for_trigger(trigger)
            reward = NormalizedReward.calculate(weights, record.metrics_before, after, baselines)
            reward_value = reward.value
            breakdown = reward.to_dict()

        success = (
            record.outcome is ActionOutcome.SUCCESS
            and reward_value >= self._settings.effective_reward_threshold
        )
        record.normalized_reward = reward_value
        record.reward_breakdown = breakdown

        entry = self._update_effectiveness(record, reward_value, success, now)
        self._learned += 1
        self._reward_total += reward_value
        if success:
            self._successes += 1
        self._recent.append(record)

        if self._store is not None:
            try:
                self._store.update_action(record)
                self._store.save_effectiveness(entry)
            except StorageError as exc:
                LOGGER.error("[Learner] Could not persist %s: %s", entry.action_signature, exc)

        LOGGER.info(
            "[Learner] %s reward=%.3f success=%s score=%.3f",
            entry.action_signature,
            reward_value,
            success,
            entry.effectiveness_score,
        )

        lessons: list[str] = []
        if self._should_synthesize():
            try:
                lessons = self.synthesize(now)
            except LearningBlocked as exc:
                LOGGER.warning("[Learner] %s", exc)

        return LearningOutcome(
            action_id=record.id,
            signature=entry.action_signature,
            reward=reward_value,
            success=success,
            effectiveness=replace(entry),
            lessons=lessons,
        )

    def _update_effectiveness(
        self, record: ActionRecord, reward: float, success: bool, now: float
    ) -> ActionEffectiveness:
        signature = record.action.signature()
        entry = self._effectiveness.get(signature)
        if entry is None:
            entry = ActionEffectiveness(action_type=record.action_type, action_signature=signature)
            self._effectiveness[signature] = entry

        entry.total_attempts += 1
        if success:
            entry.successful_attempts += 1
        else:
            entry.failed_attempts += 1
        if record.outcome is ActionOutcome.ROLLED_BACK:
            entry.rolled_back_attempts += 1

        entry.avg_reward += (reward - entry.avg_reward) / entry.total_attempts
        entry.max_reward = reward if entry.max_reward is None else max(entry.max_reward, reward)
        entry.min_reward = reward if entry.min_reward is None else min(entry.min_reward, reward)
        entry.effectiveness_score = effectiveness_score(
            entry.success_rate, clamp(entry.avg_reward), entry.total_attempts
        )
        if entry.first_attempt is None:
            entry.first_attempt = now
        entry.last_attempt = now
        return entry

    def _should_synthesize(self) -> bool:
        interval = self._settings.synthesis_interval
        return (
            self._settings.use_reflection
            and self._pipes is not None
            and interval > 0
            and self._learned % interval == 0
        )

    def synthesize(self, now: float | None = None) -> list[str]:
        """Ask the learning pipe for lessons over the recent records."""

        if self._pipes is None:
            raise LearningBlocked(LearningBlockedReason.PIPE_UNAVAILABLE, "no learning pipe configured")
        records = list(self._recent)[-self._settings.synthesis_interval * 2 :]
        payload = [
            {
                "action": record.action.describe(),
                "signature": record.action.signature(),
                "outcome": record.outcome.value,
                "reward": record.normalized_reward,
                "rollback_reason": record.rollback_reason,
            }
            for record in records
        ]
        try:
            response = self._pipes.synthesize_learning(
                records=payload,
                effectiveness=[entry.to_dict() for entry in self._ranked()[:10]],
            )
        except PipeError as exc:
            raise LearningBlocked(LearningBlockedReason.PIPE_UNAVAILABLE, str(exc)) from exc

        lessons = list(response.lessons)
        for adjustment in response.param_adjustments:
            lessons.append(f"Consider {adjustment.direction} {adjustment.key}: {adjustment.reason}")
        if response.adjust_cooldown and response.new_cooldown_secs is not None:
            lessons.append(f"Consider a cooldown of {response.new_cooldown_secs:.0f}s")

        self._synthesis_runs += 1
        self._lessons.extend(lessons)
        latest = records[-1] if records else None
        if latest is not None:
            latest.lessons = lessons
        if self._store is not None:
            self._store.append_lessons(
                summary=response.outcome_assessment,
                lessons=lessons,
                action_id=latest.id if latest is not None else None,
            )
            if latest is not None:
                self._store.update_action(latest)
        LOGGER.info("[Learner] Synthesized %s lessons", len(lessons))
        return lessons

    def recent_lessons(self, limit: int = 10) -> list[str]:
        if self._store is not None:
            return self._store.recent_lessons(limit)
        return list(self._lessons)[-limit:]

    def effectiveness_snapshot(self) -> dict[str, ActionEffectiveness]:
        return {signature: replace(entry) for signature, entry in self._effectiveness.items()}

    def effectiveness_for(self, signature: str) -> ActionEffectiveness | None:
        entry = self._effectiveness.get(signature)
        return replace(entry) if entry is not None else None

    def _ranked(self) -> list[ActionEffectiveness]:
        return sorted(
            self._effectiveness.values(),
            key=lambda entry: entry.effectiveness_score,
            reverse=True,
        )

    def stats(self) -> LearnerStats:
        ranked = [entry for entry in self._ranked() if entry.total_attempts]
        return LearnerStats(
            total_learned=self._learned,
            successes=self._successes,
            average_reward=self._reward_total / self._learned if self._learned else 0.0,
            synthesis_runs=self._synthesis_runs,
            tracked_signatures=len(self._effectiveness),
            most_effective=ranked[0].action_signature if ranked else None,
            least_effective=ranked[-1].action_signature if ranked else None,
        )
