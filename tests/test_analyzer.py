"""Tests for the analyzer phase."""

from __future__ import annotations

import pytest

from ai.allowlist import ActionAllowlist, ParamBounds
from ai.analyzer import AnalysisBlocked, AnalysisBlockedReason, Analyzer
from ai.pipes import (
    ActionScores,
    ActionSelectionResponse,
    DiagnosisResponse,
    PipeUnavailable,
    ValidationResponse,
)
from config.settings import AnalyzerSettings
from core.actions import (
    AdjustParam,
    ClearCache,
    FloatValue,
    IntegerValue,
    NoOp,
    ResourceType,
    ScaleResource,
    ToggleFeature,
)
from core.models import (
    ActionEffectiveness,
    Baselines,
    DiagnosisStatus,
    ErrorRateTrigger,
    HealthReport,
    LatencyTrigger,
    MetricsSnapshot,
    QualityScoreTrigger,
    Severity,
    TriggerLevel,
)
from core.safety_state import SafetyState


class _FakePipes:
    def __init__(
        self,
        *,
        action_type: str = "adjust_param",
        target: str | None = "MAX_RETRIES",
        selected: str = "option_1",
        proceed: bool = True,
        fail_diagnose: bool = False,
    ) -> None:
        self.action_type = action_type
        self.target = target
        self.selected = selected
        self.proceed = proceed
        self.fail_diagnose = fail_diagnose
        self.candidates: list[tuple[str, str]] = []

    def diagnose(self, **kwargs) -> DiagnosisResponse:
        if self.fail_diagnose:
            raise PipeUnavailable("si-diagnosis", "connection refused")
        return DiagnosisResponse(
            suspected_cause="Transient upstream failures",
            severity="high",
            confidence=0.8,
            evidence=["error rate quadrupled"],
            recommended_action_type=self.action_type,
            action_target=self.target,
            rationale="Retries absorb transient failures",
        )

    def select_action(self, *, diagnosis, candidates, history=(), lessons=()) -> ActionSelectionResponse:
        self.candidates = list(candidates)
        return ActionSelectionResponse(
            selected_option=self.selected,
            scores=ActionScores(),
            total_score=0.5,
            rationale="",
        )

    def validate_decision(self, *, diagnosis, action) -> ValidationResponse:
        return ValidationResponse(
            should_proceed=self.proceed,
            overall_quality=0.9 if self.proceed else 0.2,
            biases_detected=[] if self.proceed else [{"bias_type": "anchoring"}],
        )


class _FakeLearner:
    def __init__(self, effectiveness: dict[str, ActionEffectiveness]) -> None:
        self._effectiveness = effectiveness

    def effectiveness_snapshot(self) -> dict[str, ActionEffectiveness]:
        return dict(self._effectiveness)

    def recent_lessons(self, limit: int = 10) -> list[str]:
        return []


def _report(trigger=None) -> HealthReport:
    trigger = trigger or ErrorRateTrigger(
        observed=0.2, baseline=0.05, threshold=0.1, level=TriggerLevel.CRITICAL
    )
    return HealthReport(
        current_metrics=MetricsSnapshot(
            error_rate=0.2, latency_p95_ms=1000.0, quality_score=0.9, sample_count=50
        ),
        baselines=Baselines(error_rate=0.05, latency_ms=1000.0, quality_score=0.9),
        triggers=(trigger,),
        generated_at=0.0,
    )


def _analyzer(pipes: _FakePipes | None = None, **kwargs) -> Analyzer:
    allowlist = kwargs.pop("allowlist", None)
    settings = kwargs.pop("settings", None)
    safety = SafetyState.create(allowlist=allowlist)
    return Analyzer(safety, pipes or _FakePipes(), settings, **kwargs)


def test_analyze_produces_pending_diagnosis() -> None:
    analyzer = _analyzer()

    diagnosis = analyzer.analyze(_report(), now=10.0)

    assert diagnosis.status is DiagnosisStatus.PENDING
    assert diagnosis.severity is Severity.CRITICAL
    assert diagnosis.suggested_action == AdjustParam(
        key="MAX_RETRIES", old_value=IntegerValue(3), new_value=IntegerValue(4)
    )
    assert diagnosis.suspected_cause == "Transient upstream failures"
    assert analyzer.pending_count == 1
    assert analyzer.get_pending(diagnosis.id) == diagnosis


def test_candidates_end_with_no_op() -> None:
    pipes = _FakePipes()
    analyzer = _analyzer(pipes)

    analyzer.analyze(_report(), now=0.0)

    labels = [label for label, _ in pipes.candidates]
    assert labels == ["option_1", "option_2", "option_3"]
    assert pipes.candidates[-1][1].startswith("No action")


def test_trend_only_report_has_no_triggers() -> None:
    analyzer = _analyzer()
    trend = ErrorRateTrigger(observed=0.02, baseline=0.05, threshold=0.075, level=TriggerLevel.TREND)

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(_report(trend), now=0.0)
    assert excinfo.value.reason is AnalysisBlockedReason.NO_TRIGGERS


def test_empty_report_has_no_triggers() -> None:
    analyzer = _analyzer()
    report = HealthReport(
        current_metrics=MetricsSnapshot(error_rate=0.0, latency_p95_ms=0.0, quality_score=1.0),
        baselines=Baselines(error_rate=0.0, latency_ms=0.0, quality_score=1.0),
    )

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(report)
    assert excinfo.value.reason is AnalysisBlockedReason.NO_TRIGGERS


def test_open_circuit_blocks_analysis() -> None:
    pipes = _FakePipes()
    analyzer = _analyzer(pipes)
    with analyzer._safety.locked() as safety:
        for _ in range(3):
            safety.circuit_breaker.record_failure(now=0.0)

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(_report(), now=10.0)

    assert excinfo.value.reason is AnalysisBlockedReason.CIRCUIT_OPEN
    assert excinfo.value.remaining_secs == pytest.approx(3590.0)
    assert pipes.candidates == []


def test_max_pending_reached() -> None:
    analyzer = _analyzer(settings=AnalyzerSettings(max_pending_diagnoses=1))
    analyzer.analyze(_report(), now=0.0)

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(_report(), now=1.0)
    assert excinfo.value.reason is AnalysisBlockedReason.MAX_PENDING_REACHED
    assert analyzer.stats().blocked == {"max_pending_reached": 1}


def test_severity_below_minimum() -> None:
    analyzer = _analyzer(settings=AnalyzerSettings(min_action_severity=Severity.CRITICAL))
    mild = ErrorRateTrigger(observed=0.06, baseline=0.05, threshold=0.075, level=TriggerLevel.WARNING)

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(_report(mild))
    assert excinfo.value.reason is AnalysisBlockedReason.SEVERITY_TOO_LOW


def test_pipe_failure_blocks() -> None:
    analyzer = _analyzer(_FakePipes(fail_diagnose=True))

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(_report())
    assert excinfo.value.reason is AnalysisBlockedReason.PIPE_UNAVAILABLE
    assert analyzer.pending_count == 0


def test_validation_rejection_carries_rejected_diagnosis() -> None:
    analyzer = _analyzer(_FakePipes(proceed=False))

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(_report())

    assert excinfo.value.reason is AnalysisBlockedReason.VALIDATION_REJECTED
    assert excinfo.value.diagnosis.status is DiagnosisStatus.REJECTED
    assert "anchoring" in excinfo.value.details
    assert analyzer.pending_count == 0


def test_selected_action_outside_allowlist_is_blocked() -> None:
    allowlist = ActionAllowlist()
    # Live value sits below the minimum, so one clamped step exceeds max_step.
    allowlist.add_param("MAX_RETRIES", ParamBounds.for_integer(1, 5, 10, 1))
    analyzer = _analyzer(allowlist=allowlist)

    with pytest.raises(AnalysisBlocked) as excinfo:
        analyzer.analyze(_report())

    assert excinfo.value.reason is AnalysisBlockedReason.NOT_ALLOWED
    assert excinfo.value.diagnosis.status is DiagnosisStatus.BLOCKED


def test_unknown_selection_falls_back_to_first_candidate() -> None:
    analyzer = _analyzer(_FakePipes(selected="option_99"))

    diagnosis = analyzer.analyze(_report())

    assert isinstance(diagnosis.suggested_action, AdjustParam)


def test_effectiveness_history_reorders_candidates() -> None:
    signature = "scale_resource:max_retries:increase"
    learner = _FakeLearner(
        {
            signature: ActionEffectiveness(
                action_type="scale_resource",
                action_signature=signature,
                total_attempts=10,
                successful_attempts=9,
                effectiveness_score=0.9,
            )
        }
    )
    analyzer = _analyzer(learner=learner)

    diagnosis = analyzer.analyze(_report())

    assert isinstance(diagnosis.suggested_action, ScaleResource)
    assert diagnosis.suggested_action.resource is ResourceType.MAX_RETRIES


def test_action_for_rules() -> None:
    analyzer = _analyzer()
    latency = LatencyTrigger(observed_p95_ms=9000.0, baseline_ms=3000.0, threshold_ms=6000.0)
    quality = QualityScoreTrigger(observed=0.3, baseline=0.8, minimum=0.53)

    timeout = analyzer.action_for("adjust_param", "NOT_A_PARAM", latency)
    assert timeout == AdjustParam(
        key="REQUEST_TIMEOUT_MS", old_value=IntegerValue(30000), new_value=IntegerValue(35000)
    )

    threshold = analyzer.action_for("adjust_param", None, quality)
    assert threshold.new_value == FloatValue(0.75)

    toggle = analyzer.action_for("toggle_feature", "ENABLE_AUTO_REFLECTION", quality)
    assert toggle == ToggleFeature(feature_name="ENABLE_AUTO_REFLECTION", desired_state=False)

    assert isinstance(analyzer.action_for("toggle_feature", "ENABLE_TELEPORT", quality), NoOp)
    assert analyzer.action_for("clear_cache", None, latency) == ClearCache(cache_name="sessions")
    assert analyzer.action_for("rewrite_code", None, latency) == NoOp(reason="Unknown action type")


def test_supersede_and_resolve_pending() -> None:
    analyzer = _analyzer()
    first = analyzer.analyze(_report(), now=0.0)
    second = analyzer.analyze(_report(), now=1.0)

    assert analyzer.resolve(first.id) is not None
    superseded = analyzer.supersede_all_pending()

    assert [diagnosis.id for diagnosis in superseded] == [second.id]
    assert superseded[0].status is DiagnosisStatus.SUPERSEDED
    assert analyzer.pending_count == 0
