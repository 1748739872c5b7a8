"""Analyzer phase: diagnose a health report and propose one bounded action."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import TYPE_CHECKING, Any

from ai.allowlist import AllowlistError
from ai.pipes import DiagnosisResponse, PipeError, SelfImprovementPipes
from config.settings import AnalyzerSettings
from core.actions import (
    AdjustParam,
    ClearCache,
    ComponentKind,
    DurationMsValue,
    FloatValue,
    IntegerValue,
    NoOp,
    ParamValue,
    ResourceType,
    RestartService,
    ScaleResource,
    ServiceComponent,
    SuggestedAction,
    ToggleFeature,
)
from core.logging import logger as LOGGER
from core.models import (
    DiagnosisStatus,
    ErrorRateTrigger,
    FallbackRateTrigger,
    HealthReport,
    LatencyTrigger,
    QualityScoreTrigger,
    SelfDiagnosis,
    Severity,
    TriggerMetric,
    max_severity,
)
from core.safety_state import SafetyState

if TYPE_CHECKING:
    from ai.learner import Learner
    from services.runtime_config import RuntimeConfig


class AnalysisBlockedReason(str, Enum):
    NO_TRIGGERS = "no_triggers"
    CIRCUIT_OPEN = "circuit_open"
    MAX_PENDING_REACHED = "max_pending_reached"
    SEVERITY_TOO_LOW = "severity_too_low"
    PIPE_UNAVAILABLE = "pipe_unavailable"
    VALIDATION_REJECTED = "validation_rejected"
    NOT_ALLOWED = "not_allowed"


class AnalysisBlocked(Exception):
    """Analysis stopped before producing a pending diagnosis.

    ``diagnosis`` is set when a diagnosis was built and then rejected, so the
    caller can persist it with its final status.
    """

    def __init__(
        self,
        reason: AnalysisBlockedReason,
        details: str = "",
        *,
        remaining_secs: float | None = None,
        diagnosis: SelfDiagnosis | None = None,
    ) -> None:
        message = f"Analysis blocked ({reason.value})"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)
        self.reason = reason
        self.details = details
        self.remaining_secs = remaining_secs
        self.diagnosis = diagnosis


@dataclass
class AnalyzerStats:
    analyses: int = 0
    diagnoses_created: int = 0
    superseded: int = 0
    blocked: dict[str, int] = field(default_factory=dict)
    last_analysis_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.__dict__)
        payload["blocked"] = dict(self.blocked)
        return payload


@dataclass(frozen=True)
class Candidate:
    label: str
    action: SuggestedAction
    score: float = 0.0


DEFAULT_PARAM_BY_TRIGGER: dict[type[TriggerMetric], str] = {
    LatencyTrigger: "REQUEST_TIMEOUT_MS",
    ErrorRateTrigger: "MAX_RETRIES",
    QualityScoreTrigger: "REFLECTION_QUALITY_THRESHOLD",
    FallbackRateTrigger: "GOT_PRUNE_THRESHOLD",
}

DEFAULT_RESOURCE_BY_TRIGGER: dict[type[TriggerMetric], ResourceType] = {
    LatencyTrigger: ResourceType.MAX_CONCURRENT_REQUESTS,
    ErrorRateTrigger: ResourceType.MAX_RETRIES,
}


def _increases(trigger: TriggerMetric) -> bool:
    return isinstance(trigger, (LatencyTrigger, ErrorRateTrigger))


def _step_param(current: ParamValue, step: ParamValue, low: ParamValue, high: ParamValue, up: bool) -> ParamValue | None:
    if isinstance(current, (IntegerValue, DurationMsValue)):
        delta = int(step.value) if up else -int(step.value)
        value = max(int(low.value), min(int(high.value), int(current.value) + delta))
        return type(current)(value)
    if isinstance(current, FloatValue):
        delta = float(step.value) if up else -float(step.value)
        value = max(float(low.value), min(float(high.value), float(current.value) + delta))
        return FloatValue(round(value, 6))
    return None


class Analyzer:
    """Diagnose → select → validate pipeline over the LLM pipes."""

    def __init__(
        self,
        safety: SafetyState,
        pipes: SelfImprovementPipes,
        settings: AnalyzerSettings | None = None,
        *,
        runtime: "RuntimeConfig | None" = None,
        learner: "Learner | None" = None,
    ) -> None:
        self._safety = safety
        self._pipes = pipes
        self._settings = settings or AnalyzerSettings()
        self._runtime = runtime
        self._learner = learner
        self._pending: dict[str, SelfDiagnosis] = {}
        self._stats = AnalyzerStats()

    def analyze(self, report: HealthReport, now: float | None = None) -> SelfDiagnosis:
        now = time.time() if now is None else now
        self._stats.analyses += 1
        self._stats.last_analysis_at = now
        try:
            diagnosis = self._analyze(report, now)
        except AnalysisBlocked as exc:
            key = exc.reason.value
            self._stats.blocked[key] = self._stats.blocked.get(key, 0) + 1
            LOGGER.info("[Analyzer] %s", exc)
            raise
        self._pending[diagnosis.id] = diagnosis
        self._stats.diagnoses_created += 1
        LOGGER.info(
            "[Analyzer] Diagnosis %s (%s): %s",
            diagnosis.id,
            diagnosis.severity.value,
            diagnosis.suggested_action.describe(),
        )
        return diagnosis

    def _analyze(self, report: HealthReport, now: float) -> SelfDiagnosis:
        trigger = report.most_severe_trigger()
        if trigger is None or not report.needs_action():
            raise AnalysisBlocked(AnalysisBlockedReason.NO_TRIGGERS)

        with self._safety.locked() as safety:
            breaker = safety.circuit_breaker
            if not breaker.can_execute(now):
                remaining = breaker.time_until_recovery(now)
                raise AnalysisBlocked(
                    AnalysisBlockedReason.CIRCUIT_OPEN,
                    f"recovery in {remaining or 0.0:.0f}s",
                    remaining_secs=remaining,
                )
            allowlist_text = str(safety.allowlist.summary())

        if len(self._pending) >= self._settings.max_pending_diagnoses:
            raise AnalysisBlocked(
                AnalysisBlockedReason.MAX_PENDING_REACHED,
                f"{len(self._pending)} diagnoses pending",
            )

        report_severity = report.severity
        if report_severity.rank < self._settings.min_action_severity.rank:
            raise AnalysisBlocked(
                AnalysisBlockedReason.SEVERITY_TOO_LOW,
                f"{report_severity.value} < {self._settings.min_action_severity.value}",
            )

        try:
            response = self._pipes.diagnose(
                trigger=trigger.to_dict(),
                metrics=report.current_metrics.to_dict(),
                baselines=report.baselines.to_dict(),
                allowlist_summary=allowlist_text,
            )
        except PipeError as exc:
            raise AnalysisBlocked(AnalysisBlockedReason.PIPE_UNAVAILABLE, str(exc)) from exc

        candidates = self._rank(self.build_candidates(trigger, response))
        selected = self._select(response, candidates)

        severity = max_severity(
            [report_severity, Severity.parse(response.severity, default=Severity.INFO)]
        )
        diagnosis = SelfDiagnosis(
            trigger=trigger,
            severity=severity,
            description=self._describe(trigger),
            suspected_cause=response.suspected_cause,
            suggested_action=selected.action,
            action_rationale=response.rationale,
            created_at=now,
        )

        try:
            validation = self._pipes.validate_decision(
                diagnosis=diagnosis.to_dict(), action=selected.action.to_dict()
            )
        except PipeError as exc:
            raise AnalysisBlocked(AnalysisBlockedReason.PIPE_UNAVAILABLE, str(exc)) from exc
        if not validation.should_proceed:
            raise AnalysisBlocked(
                AnalysisBlockedReason.VALIDATION_REJECTED,
                validation.summary(),
                diagnosis=diagnosis.with_status(DiagnosisStatus.REJECTED),
            )

        with self._safety.locked() as safety:
            try:
                safety.allowlist.validate(selected.action)
            except AllowlistError as exc:
                raise AnalysisBlocked(
                    AnalysisBlockedReason.NOT_ALLOWED,
                    str(exc),
                    diagnosis=diagnosis.with_status(DiagnosisStatus.BLOCKED),
                ) from exc
        return diagnosis

    # -- candidates --------------------------------------------------------

    def build_candidates(self, trigger: TriggerMetric, response: DiagnosisResponse) -> list[SuggestedAction]:
        """Turn the diagnosis recommendation into concrete, bounded actions.

        The recommended action comes first, followed by the rule-based
        alternatives for this trigger and finally a no-op.
        """

        actions: list[SuggestedAction] = []
        primary = self.action_for(response.recommended_action_type, response.action_target, trigger, response)
        if primary is not None:
            actions.append(primary)
        for alternative in (
            self._adjust_param(trigger, None),
            self._scale_resource(trigger, None),
        ):
            if alternative is not None:
                actions.append(alternative)
        actions.append(NoOp(reason=response.rationale or "No safe action identified"))

        seen: set[str] = set()
        unique = []
        for action in actions:
            signature = action.signature()
            if signature in seen:
                continue
            seen.add(signature)
            unique.append(action)
        return unique

    def action_for(
        self,
        action_type: str,
        target: str | None,
        trigger: TriggerMetric,
        response: DiagnosisResponse | None = None,
    ) -> SuggestedAction | None:
        normalized = (action_type or "").strip().lower()
        if normalized == AdjustParam.action_type:
            return self._adjust_param(trigger, target)
        if normalized == ToggleFeature.action_type:
            with self._safety.locked() as safety:
                toggleable = bool(target) and safety.allowlist.is_feature_toggleable(str(target))
            if not toggleable:
                return NoOp(reason=f"Feature not toggleable: {target}")
            cause = response.suspected_cause if response is not None else ""
            return ToggleFeature(feature_name=str(target), desired_state=False, reason=cause)
        if normalized == ScaleResource.action_type:
            return self._scale_resource(trigger, target)
        if normalized == ClearCache.action_type:
            return ClearCache(cache_name="sessions")
        if normalized == RestartService.action_type:
            return RestartService(component=ServiceComponent(ComponentKind.LLM_CLIENT), graceful=True)
        if normalized == NoOp.action_type:
            reason = response.rationale if response is not None and response.rationale else "No action recommended"
            return NoOp(reason=reason)
        return NoOp(reason="Unknown action type")

    def _adjust_param(self, trigger: TriggerMetric, target: str | None) -> AdjustParam | None:
        with self._safety.locked() as safety:
            key = target if target and safety.allowlist.get_param_bounds(target) else None
            if key is None:
                key = DEFAULT_PARAM_BY_TRIGGER.get(type(trigger))
            bounds = safety.allowlist.get_param_bounds(key) if key else None
            if bounds is None:
                return None
            current = bounds.current_value
            new_value = _step_param(current, bounds.step, bounds.min, bounds.max, _increases(trigger))
        if new_value is None or new_value == current:
            return None
        return AdjustParam(key=key, old_value=current, new_value=new_value)

    def _scale_resource(self, trigger: TriggerMetric, target: str | None) -> ScaleResource | None:
        resource = None
        if target:
            try:
                resource = ResourceType(str(target).strip().lower())
            except ValueError:
                resource = None
        if resource is None:
            resource = DEFAULT_RESOURCE_BY_TRIGGER.get(type(trigger))
        if resource is None:
            return None
        with self._safety.locked() as safety:
            bounds = safety.allowlist.get_resource_bounds(resource)
        if bounds is None:
            return None
        current = None
        if self._runtime is not None:
            current = self._runtime.current_state().resources.get(resource.value)
        if current is None:
            current = bounds.midpoint()
        new_value = min(current + bounds.step, bounds.max)
        if new_value == current:
            return None
        return ScaleResource(resource=resource, old_value=current, new_value=new_value)

    def _rank(self, actions: list[SuggestedAction]) -> list[Candidate]:
        scores: dict[str, float] = {}
        if self._learner is not None:
            scores = {
                signature: entry.effectiveness_score
                for signature, entry in self._learner.effectiveness_snapshot().items()
            }
        ranked = sorted(
            enumerate(actions),
            key=lambda item: (
                isinstance(item[1], NoOp),
                -scores.get(item[1].signature(), 0.0),
                item[0],
            ),
        )
        return [
            Candidate(label=f"option_{index + 1}", action=action, score=scores.get(action.signature(), 0.0))
            for index, (_, action) in enumerate(ranked)
        ]

    def _select(self, response: DiagnosisResponse, candidates: list[Candidate]) -> Candidate:
        if len(candidates) == 1:
            return candidates[0]
        history = []
        lessons: list[str] = []
        if self._learner is not None:
            history = [
                entry.to_dict()
                for entry in self._learner.effectiveness_snapshot().values()
                if entry.total_attempts
            ]
            lessons = self._learner.recent_lessons(5)
        try:
            selection = self._pipes.select_action(
                diagnosis={
                    "suspected_cause": response.suspected_cause,
                    "confidence": response.confidence,
                    "evidence": response.evidence,
                },
                candidates=[(candidate.label, candidate.action.describe()) for candidate in candidates],
                history=history,
                lessons=lessons,
            )
        except PipeError as exc:
            raise AnalysisBlocked(AnalysisBlockedReason.PIPE_UNAVAILABLE, str(exc)) from exc
        by_label = {candidate.label: candidate for candidate in candidates}
        chosen = by_label.get(selection.selected_option.strip())
        if chosen is None:
            LOGGER.warning(
                "[Analyzer] Unknown selection %r; using %s",
                selection.selected_option,
                candidates[0].label,
            )
            chosen = candidates[0]
        return chosen

    @staticmethod
    def _describe(trigger: TriggerMetric) -> str:
        level = getattr(trigger, "level", None)
        level_text = f" [{level.value}]" if level is not None else ""
        return (
            f"{trigger.metric_name}{level_text}: observed {trigger.observed_value:.4g} "
            f"vs baseline {trigger.baseline_value:.4g} ({trigger.deviation_pct:+.1f}%)"
        )

    # -- pending diagnoses -------------------------------------------------

    def pending(self) -> list[SelfDiagnosis]:
        return sorted(self._pending.values(), key=lambda diagnosis: diagnosis.created_at)

    def get_pending(self, diagnosis_id: str) -> SelfDiagnosis | None:
        return self._pending.get(diagnosis_id)

    def update_pending(self, diagnosis_id: str, status: DiagnosisStatus) -> SelfDiagnosis | None:
        diagnosis = self._pending.get(diagnosis_id)
        if diagnosis is None:
            return None
        updated = diagnosis.with_status(status)
        self._pending[diagnosis_id] = updated
        return updated

    def resolve(self, diagnosis_id: str) -> SelfDiagnosis | None:
        """Drop a diagnosis from the pending list once it reached a final status."""

        return self._pending.pop(diagnosis_id, None)

    def restore_pending(self, diagnoses: list[SelfDiagnosis]) -> None:
        for diagnosis in diagnoses:
            self._pending[diagnosis.id] = diagnosis

    def supersede_all_pending(self) -> list[SelfDiagnosis]:
        superseded = [
            diagnosis.with_status(DiagnosisStatus.SUPERSEDED) for diagnosis in self._pending.values()
        ]
        self._pending.clear()
        self._stats.superseded += len(superseded)
        if superseded:
            LOGGER.info("[Analyzer] Superseded %s pending diagnoses", len(superseded))
        return superseded

    def stats(self) -> AnalyzerStats:
        stats = AnalyzerStats(**self._stats.to_dict())
        return stats

    @property
    def pending_count(self) -> int:
        return len(self._pending)
