"""Models shared by the monitor, analyzer, executor and learner phases."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import time
from typing import Any, ClassVar, Mapping
import uuid

from core.actions import SuggestedAction, action_from_dict


def new_diagnosis_id() -> str:
    return f"diag_{uuid.uuid4().hex}"


def new_action_id() -> str:
    return f"action_{uuid.uuid4().hex}"


def clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class TriggerLevel(str, Enum):
    """How far an observation sits from its baseline."""

    TREND = "trend"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]


_LEVEL_RANK = {TriggerLevel.TREND: 0, TriggerLevel.WARNING: 1, TriggerLevel.CRITICAL: 2}


class Severity(str, Enum):
    """Ordered diagnosis severity."""

    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def from_deviation(cls, deviation_pct: float) -> "Severity":
        deviation = abs(deviation_pct)
        if deviation >= 100.0:
            return cls.CRITICAL
        if deviation >= 50.0:
            return cls.HIGH
        if deviation >= 25.0:
            return cls.WARNING
        return cls.INFO

    @classmethod
    def parse(cls, value: str, default: "Severity | None" = None) -> "Severity":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            if default is None:
                raise
            return default


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


def max_severity(values: list[Severity]) -> Severity:
    if not values:
        return Severity.INFO
    return max(values, key=lambda severity: severity.rank)


class DiagnosisStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    ROLLED_BACK = "rolled_back"
    SUPERSEDED = "superseded"
    AWAITING_APPROVAL = "awaiting_approval"


class ActionOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time view of service health."""

    error_rate: float
    latency_p95_ms: float
    quality_score: float
    fallback_rate: float = 0.0
    sample_count: int = 0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_rate": self.error_rate,
            "latency_p95_ms": self.latency_p95_ms,
            "quality_score": self.quality_score,
            "fallback_rate": self.fallback_rate,
            "sample_count": self.sample_count,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MetricsSnapshot":
        return cls(
            error_rate=float(payload.get("error_rate", 0.0)),
            latency_p95_ms=float(payload.get("latency_p95_ms", 0.0)),
            quality_score=float(payload.get("quality_score", 0.0)),
            fallback_rate=float(payload.get("fallback_rate", 0.0)),
            sample_count=int(payload.get("sample_count", 0)),
            timestamp=float(payload.get("timestamp", 0.0)),
        )


@dataclass(frozen=True)
class Baselines:
    """Baseline values used as the reference point for rewards."""

    error_rate: float
    latency_ms: float
    quality_score: float

    def to_dict(self) -> dict[str, float]:
        return {
            "error_rate": self.error_rate,
            "latency_ms": self.latency_ms,
            "quality_score": self.quality_score,
        }


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


def _deviation(observed: float, baseline: float) -> float:
    if baseline == 0.0:
        return 100.0 if observed > 0.0 else 0.0
    return (observed - baseline) / baseline * 100.0


@dataclass(frozen=True)
class TriggerMetric:
    """Base class for metric triggers raised by the monitor."""

    metric_name: ClassVar[str] = "unknown"

    @property
    def observed_value(self) -> float:
        raise NotImplementedError

    @property
    def baseline_value(self) -> float:
        raise NotImplementedError

    @property
    def deviation_pct(self) -> float:
        return _deviation(self.observed_value, self.baseline_value)

    @property
    def severity(self) -> Severity:
        level = getattr(self, "level", TriggerLevel.WARNING)
        if level is TriggerLevel.CRITICAL:
            return Severity.CRITICAL
        derived = Severity.from_deviation(self.deviation_pct)
        if level is TriggerLevel.WARNING:
            return max_severity([derived, Severity.WARNING])
        return derived

    def to_dict(self) -> dict[str, Any]:
        payload = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in self.__dict__.items()
        }
        payload["metric"] = self.metric_name
        return payload


@dataclass(frozen=True)
class ErrorRateTrigger(TriggerMetric):
    observed: float
    baseline: float
    threshold: float
    level: TriggerLevel = TriggerLevel.WARNING
    metric_name: ClassVar[str] = "error_rate"

    @property
    def observed_value(self) -> float:
        return self.observed

    @property
    def baseline_value(self) -> float:
        return self.baseline


@dataclass(frozen=True)
class LatencyTrigger(TriggerMetric):
    observed_p95_ms: float
    baseline_ms: float
    threshold_ms: float
    level: TriggerLevel = TriggerLevel.WARNING
    metric_name: ClassVar[str] = "latency_p95"

    @property
    def observed_value(self) -> float:
        return self.observed_p95_ms

    @property
    def baseline_value(self) -> float:
        return self.baseline_ms


@dataclass(frozen=True)
class QualityScoreTrigger(TriggerMetric):
    observed: float
    baseline: float
    minimum: float
    level: TriggerLevel = TriggerLevel.WARNING
    metric_name: ClassVar[str] = "quality_score"

    @property
    def observed_value(self) -> float:
        return self.observed

    @property
    def baseline_value(self) -> float:
        return self.baseline

    @property
    def deviation_pct(self) -> float:
        # Lower is worse, so a drop reports as a positive deviation.
        if self.baseline == 0.0:
            return -100.0 if self.observed < 0.0 else 0.0
        return (self.baseline - self.observed) / self.baseline * 100.0


@dataclass(frozen=True)
class FallbackRateTrigger(TriggerMetric):
    observed: float
    baseline: float
    threshold: float
    level: TriggerLevel = TriggerLevel.WARNING
    metric_name: ClassVar[str] = "fallback_rate"

    @property
    def observed_value(self) -> float:
        return self.observed

    @property
    def baseline_value(self) -> float:
        return self.baseline


_TRIGGER_TYPES: dict[str, type[TriggerMetric]] = {
    cls.metric_name: cls
    for cls in (ErrorRateTrigger, LatencyTrigger, QualityScoreTrigger, FallbackRateTrigger)
}


def trigger_from_dict(payload: Mapping[str, Any]) -> TriggerMetric:
    data = dict(payload)
    cls = _TRIGGER_TYPES.get(str(data.pop("metric", "")))
    if cls is None:
        raise ValueError(f"Unknown trigger metric: {payload.get('metric')!r}")
    data["level"] = TriggerLevel(data.get("level", TriggerLevel.WARNING.value))
    return cls(**data)


@dataclass(frozen=True)
class HealthReport:
    """Monitor output for a tick in which at least one metric was evaluated."""

    current_metrics: MetricsSnapshot
    baselines: Baselines
    triggers: tuple[TriggerMetric, ...] = ()
    generated_at: float = field(default_factory=time.time)

    @property
    def is_healthy(self) -> bool:
        return not self.triggers

    @property
    def has_triggers(self) -> bool:
        return bool(self.triggers)

    @property
    def severity(self) -> Severity:
        return max_severity([trigger.severity for trigger in self.triggers])

    def needs_action(self) -> bool:
        return any(
            getattr(trigger, "level", TriggerLevel.WARNING) is not TriggerLevel.TREND
            for trigger in self.triggers
        )

    def most_severe_trigger(self) -> TriggerMetric | None:
        if not self.triggers:
            return None
        return max(
            self.triggers,
            key=lambda trigger: (trigger.severity.rank, abs(trigger.deviation_pct)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_metrics": self.current_metrics.to_dict(),
            "baselines": self.baselines.to_dict(),
            "triggers": [trigger.to_dict() for trigger in self.triggers],
            "severity": self.severity.value,
            "is_healthy": self.is_healthy,
            "generated_at": self.generated_at,
        }


# ---------------------------------------------------------------------------
# Diagnoses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SelfDiagnosis:
    """Analyzer output: a diagnosed trigger and the single action proposed for it."""

    trigger: TriggerMetric
    severity: Severity
    description: str
    suspected_cause: str
    suggested_action: SuggestedAction
    action_rationale: str
    status: DiagnosisStatus = DiagnosisStatus.PENDING
    id: str = field(default_factory=new_diagnosis_id)
    created_at: float = field(default_factory=time.time)

    def with_status(self, status: DiagnosisStatus) -> "SelfDiagnosis":
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "trigger": self.trigger.to_dict(),
            "severity": self.severity.value,
            "description": self.description,
            "suspected_cause": self.suspected_cause,
            "suggested_action": self.suggested_action.to_dict(),
            "action_rationale": self.action_rationale,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SelfDiagnosis":
        return cls(
            id=str(payload["id"]),
            created_at=float(payload.get("created_at", 0.0)),
            trigger=trigger_from_dict(payload["trigger"]),
            severity=Severity(payload.get("severity", "info")),
            description=str(payload.get("description", "")),
            suspected_cause=str(payload.get("suspected_cause", "")),
            suggested_action=action_from_dict(payload["suggested_action"]),
            action_rationale=str(payload.get("action_rationale", "")),
            status=DiagnosisStatus(payload.get("status", "pending")),
        )


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RewardWeights:
    error_rate: float = 0.5
    latency: float = 0.3
    quality: float = 0.2

    @classmethod
    def for_trigger(cls, trigger: TriggerMetric | None) -> "RewardWeights":
        if isinstance(trigger, ErrorRateTrigger):
            return cls(0.7, 0.2, 0.1)
        if isinstance(trigger, LatencyTrigger):
            return cls(0.3, 0.6, 0.1)
        if isinstance(trigger, QualityScoreTrigger):
            return cls(0.3, 0.2, 0.5)
        if isinstance(trigger, FallbackRateTrigger):
            return cls(0.5, 0.3, 0.2)
        if trigger is None:
            return cls()
        raise TypeError(f"Unhandled trigger type: {type(trigger).__name__}")

    def to_dict(self) -> dict[str, float]:
        return {"error_rate": self.error_rate, "latency": self.latency, "quality": self.quality}


@dataclass(frozen=True)
class RewardBreakdown:
    error_rate_component: float
    latency_component: float
    quality_component: float
    weights: RewardWeights

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_rate_component": self.error_rate_component,
            "latency_component": self.latency_component,
            "quality_component": self.quality_component,
            "weights": self.weights.to_dict(),
        }


@dataclass(frozen=True)
class NormalizedReward:
    """Bounded [-1, 1] summary of whether an action helped."""

    value: float
    breakdown: RewardBreakdown
    confidence: float

    POSITIVE_THRESHOLD: ClassVar[float] = 0.1
    NEGATIVE_THRESHOLD: ClassVar[float] = -0.1

    @classmethod
    def calculate(
        cls,
        weights: RewardWeights,
        before: MetricsSnapshot,
        after: MetricsSnapshot,
        baselines: Baselines,
    ) -> "NormalizedReward":
        error_component = 0.0
        if baselines.error_rate > 0.0:
            error_component = clamp((before.error_rate - after.error_rate) / baselines.error_rate)

        latency_component = 0.0
        if baselines.latency_ms > 0.0:
            latency_component = clamp(
                (before.latency_p95_ms - after.latency_p95_ms) / baselines.latency_ms
            )

        quality_component = 0.0
        if baselines.quality_score < 1.0:
            quality_component = clamp(
                (after.quality_score - before.quality_score) / (1.0 - baselines.quality_score)
            )

        value = clamp(
            weights.error_rate * error_component
            + weights.latency * latency_component
            + weights.quality * quality_component
        )
        confidence = min(after.sample_count / 100.0, 1.0)
        return cls(
            value=value,
            breakdown=RewardBreakdown(
                error_rate_component=error_component,
                latency_component=latency_component,
                quality_component=quality_component,
                weights=weights,
            ),
            confidence=confidence,
        )

    def is_positive(self) -> bool:
        return self.value > self.POSITIVE_THRESHOLD

    def is_negative(self) -> bool:
        return self.value < self.NEGATIVE_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "breakdown": self.breakdown.to_dict(),
            "confidence": self.confidence,
        }


# ---------------------------------------------------------------------------
# Action history
# ---------------------------------------------------------------------------


@dataclass
class ActionRecord:
    """Persisted record of one applied (or attempted) action."""

    diagnosis_id: str
    action: SuggestedAction
    pre_state: dict[str, Any]
    metrics_before: MetricsSnapshot
    id: str = field(default_factory=new_action_id)
    executed_at: float = field(default_factory=time.time)
    outcome: ActionOutcome = ActionOutcome.PENDING
    post_state: dict[str, Any] | None = None
    metrics_after: MetricsSnapshot | None = None
    rollback_reason: str | None = None
    normalized_reward: float | None = None
    reward_breakdown: dict[str, Any] | None = None
    lessons: list[str] = field(default_factory=list)
    verified_at: float | None = None

    @property
    def action_type(self) -> str:
        return self.action.action_type


@dataclass
class ActionEffectiveness:
    """Rolling statistics for one action signature."""

    action_type: str
    action_signature: str
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    rolled_back_attempts: int = 0
    avg_reward: float = 0.0
    max_reward: float | None = None
    min_reward: float | None = None
    effectiveness_score: float = 0.0
    first_attempt: float | None = None
    last_attempt: float | None = None

    @property
    def success_rate(self) -> float:
        if self.total_attempts == 0:
            return 0.0
        return self.successful_attempts / self.total_attempts

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)
