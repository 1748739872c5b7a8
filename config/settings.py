"""Typed view of the ``self_improvement`` configuration section."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

from core.models import RewardWeights, Severity


@dataclass(frozen=True)
class MonitorSettings:
    check_interval_secs: float = 300.0
    error_rate_threshold: float = 0.05
    latency_threshold_ms: float = 5000.0
    quality_threshold: float = 0.7
    fallback_rate_threshold: float = 0.1
    min_sample_size: int = 50


@dataclass(frozen=True)
class AnalyzerSettings:
    max_pending_diagnoses: int = 10
    min_action_severity: Severity = Severity.WARNING


@dataclass(frozen=True)
class ExecutorSettings:
    max_actions_per_hour: int = 3
    cooldown_secs: float = 3600.0
    stabilization_secs: float = 120.0
    rollback_on_regression: bool = True
    regression_tolerance: float = 0.1
    require_approval: bool = False


@dataclass(frozen=True)
class LearnerSettings:
    effective_reward_threshold: float = 0.1
    min_samples: int = 10
    max_history_per_action: int = 100
    synthesis_interval: int = 5
    use_reflection: bool = True
    reward_weights: RewardWeights | None = None


@dataclass(frozen=True)
class CircuitBreakerSettings:
    failure_threshold: int = 3
    success_threshold: int = 2
    recovery_timeout_secs: float = 3600.0


@dataclass(frozen=True)
class BaselineSettings:
    ema_alpha: float = 0.1
    window_secs: float = 86400.0
    min_samples: int = 100
    warning_multiplier: float = 1.5
    critical_multiplier: float = 2.0


@dataclass(frozen=True)
class PipeSettings:
    diagnosis_pipe: str = "si-diagnosis"
    decision_pipe: str = "si-decision"
    detection_pipe: str = "si-detection"
    learning_pipe: str = "si-learning"
    endpoint: str = "https://api.openai.com/v1/chat/completions"
    model: str = "gpt-4o-mini"
    timeout_s: float = 30.0
    max_retries: int = 2
    retry_backoff_s: float = 1.0
    enable_validation: bool = True


@dataclass(frozen=True)
class SelfImprovementConfig:
    enabled: bool = False
    var_dir: str = "./var/"
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    analyzer: AnalyzerSettings = field(default_factory=AnalyzerSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    learner: LearnerSettings = field(default_factory=LearnerSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    baseline: BaselineSettings = field(default_factory=BaselineSettings)
    pipes: PipeSettings = field(default_factory=PipeSettings)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "SelfImprovementConfig":
        """Build settings from the full application config dictionary."""

        si_cfg = config.get("self_improvement") or {}
        monitor_cfg = si_cfg.get("monitor") or {}
        analyzer_cfg = si_cfg.get("analyzer") or {}
        executor_cfg = si_cfg.get("executor") or {}
        learner_cfg = si_cfg.get("learner") or {}
        breaker_cfg = si_cfg.get("circuit_breaker") or {}
        baseline_cfg = si_cfg.get("baseline") or {}
        pipes_cfg = si_cfg.get("pipes") or {}

        monitor = MonitorSettings()
        monitor = MonitorSettings(
            check_interval_secs=float(monitor_cfg.get("check_interval_secs", monitor.check_interval_secs)),
            error_rate_threshold=float(monitor_cfg.get("error_rate_threshold", monitor.error_rate_threshold)),
            latency_threshold_ms=float(monitor_cfg.get("latency_threshold_ms", monitor.latency_threshold_ms)),
            quality_threshold=float(monitor_cfg.get("quality_threshold", monitor.quality_threshold)),
            fallback_rate_threshold=float(
                monitor_cfg.get("fallback_rate_threshold", monitor.fallback_rate_threshold)
            ),
            min_sample_size=int(monitor_cfg.get("min_sample_size", monitor.min_sample_size)),
        )

        analyzer = AnalyzerSettings()
        analyzer = AnalyzerSettings(
            max_pending_diagnoses=int(
                analyzer_cfg.get("max_pending_diagnoses", analyzer.max_pending_diagnoses)
            ),
            min_action_severity=Severity.parse(
                analyzer_cfg.get("min_action_severity", analyzer.min_action_severity.value),
                default=analyzer.min_action_severity,
            ),
        )

        executor = ExecutorSettings()
        executor = ExecutorSettings(
            max_actions_per_hour=int(executor_cfg.get("max_actions_per_hour", executor.max_actions_per_hour)),
            cooldown_secs=float(executor_cfg.get("cooldown_secs", executor.cooldown_secs)),
            stabilization_secs=float(executor_cfg.get("stabilization_secs", executor.stabilization_secs)),
            rollback_on_regression=bool(
                executor_cfg.get("rollback_on_regression", executor.rollback_on_regression)
            ),
            regression_tolerance=float(
                executor_cfg.get("regression_tolerance", executor.regression_tolerance)
            ),
            require_approval=bool(executor_cfg.get("require_approval", executor.require_approval)),
        )

        learner = LearnerSettings()
        weights_cfg = learner_cfg.get("reward_weights")
        weights = None
        if isinstance(weights_cfg, Mapping):
            default_weights = RewardWeights()
            weights = RewardWeights(
                error_rate=float(weights_cfg.get("error_rate", default_weights.error_rate)),
                latency=float(weights_cfg.get("latency", default_weights.latency)),
                quality=float(weights_cfg.get("quality", default_weights.quality)),
            )
        learner = LearnerSettings(
            effective_reward_threshold=float(
                learner_cfg.get("effective_reward_threshold", learner.effective_reward_threshold)
            ),
            min_samples=int(learner_cfg.get("min_samples", learner.min_samples)),
            max_history_per_action=int(
                learner_cfg.get("max_history_per_action", learner.max_history_per_action)
            ),
            synthesis_interval=int(learner_cfg.get("synthesis_interval", learner.synthesis_interval)),
            use_reflection=bool(learner_cfg.get("use_reflection", learner.use_reflection)),
            reward_weights=weights,
        )

        breaker = CircuitBreakerSettings()
        breaker = CircuitBreakerSettings(
            failure_threshold=int(breaker_cfg.get("failure_threshold", breaker.failure_threshold)),
            success_threshold=int(breaker_cfg.get("success_threshold", breaker.success_threshold)),
            recovery_timeout_secs=float(
                breaker_cfg.get("recovery_timeout_secs", breaker.recovery_timeout_secs)
            ),
        )

        baseline = BaselineSettings()
        baseline = BaselineSettings(
            ema_alpha=float(baseline_cfg.get("ema_alpha", baseline.ema_alpha)),
            window_secs=float(baseline_cfg.get("window_secs", baseline.window_secs)),
            min_samples=int(baseline_cfg.get("min_samples", baseline.min_samples)),
            warning_multiplier=float(baseline_cfg.get("warning_multiplier", baseline.warning_multiplier)),
            critical_multiplier=float(
                baseline_cfg.get("critical_multiplier", baseline.critical_multiplier)
            ),
        )

        pipes = PipeSettings()
        pipes = PipeSettings(
            diagnosis_pipe=str(pipes_cfg.get("diagnosis_pipe", pipes.diagnosis_pipe)),
            decision_pipe=str(pipes_cfg.get("decision_pipe", pipes.decision_pipe)),
            detection_pipe=str(pipes_cfg.get("detection_pipe", pipes.detection_pipe)),
            learning_pipe=str(pipes_cfg.get("learning_pipe", pipes.learning_pipe)),
            endpoint=str(pipes_cfg.get("endpoint", pipes.endpoint)),
            model=str(pipes_cfg.get("model", pipes.model)),
            timeout_s=float(pipes_cfg.get("timeout_s", pipes.timeout_s)),
            max_retries=int(pipes_cfg.get("max_retries", pipes.max_retries)),
            retry_backoff_s=float(pipes_cfg.get("retry_backoff_s", pipes.retry_backoff_s)),
            enable_validation=bool(pipes_cfg.get("enable_validation", pipes.enable_validation)),
        )

        return cls(
            enabled=bool(si_cfg.get("enabled", False)),
            var_dir=str(config.get("var_dir", "./var/")),
            monitor=monitor,
            analyzer=analyzer,
            executor=executor,
            learner=learner,
            circuit_breaker=breaker,
            baseline=baseline,
            pipes=pipes,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["analyzer"]["min_action_severity"] = self.analyzer.min_action_severity.value
        return payload
