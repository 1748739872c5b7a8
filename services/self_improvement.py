"""Self-improvement orchestrator: monitor → analyze → execute → learn."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import threading
import time
from typing import Any, Callable, TypeVar

from ai.allowlist import ActionAllowlist
from ai.analyzer import AnalysisBlocked, Analyzer
from ai.learner import Learner, LearningBlocked
from ai.pipes import PipeError, SelfImprovementPipes
from config import ConfigController
from config.settings import SelfImprovementConfig
from core.baseline import BaselineCalculator, MetricBaseline
from core.circuit_breaker import CircuitBreaker, CircuitBreakerSummary
from core.logging import logger as LOGGER
from core.models import (
    ActionOutcome,
    ActionRecord,
    DiagnosisStatus,
    HealthReport,
    SelfDiagnosis,
)
from core.safety_state import SafetyState
from services.executor import ExecutionBlocked, ExecutionBlockedReason, Executor
from services.metrics_source import InvocationMetricsSource, MetricsSource
from services.monitor import Monitor
from services.runtime_config import InMemoryRuntimeConfig, RuntimeConfig
from storage.self_improvement import SelfImprovementStore, StorageError

T = TypeVar("T")

PAUSED_UNTIL_KEY = "paused_until"
BREAKER_RESET_KEY = "breaker_reset_at"


@dataclass(frozen=True)
class CycleResult:
    success: bool
    action_taken: str | None = None
    diagnosis: str | None = None
    reward: float | None = None
    lessons: list[str] = field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class SystemStatus:
    enabled: bool
    circuit_state: str
    consecutive_failures: int
    in_cooldown: bool
    cooldown_ends_at: float | None
    actions_this_hour: int
    max_actions_per_hour: int
    total_cycles: int
    total_successes: int
    total_rollbacks: int
    last_cycle_at: float | None
    paused_until: float | None
    pending_diagnoses: int

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


_FINAL_STATUS = {
    ActionOutcome.SUCCESS: DiagnosisStatus.COMPLETED,
    ActionOutcome.ROLLED_BACK: DiagnosisStatus.ROLLED_BACK,
    ActionOutcome.FAILED: DiagnosisStatus.BLOCKED,
}


class SelfImprovementSystem:
    """Singleton owner of the shared safety state and the four phases.

    With ``enabled`` false only the monitor runs; nothing is analyzed or applied.
    """

    _instance: "SelfImprovementSystem | None" = None

    def __init__(
        self,
        config: SelfImprovementConfig | None = None,
        *,
        store: SelfImprovementStore | None = None,
        pipes: SelfImprovementPipes | None = None,
        metrics_source: MetricsSource | None = None,
        runtime: RuntimeConfig | None = None,
        allowlist: ActionAllowlist | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if SelfImprovementSystem._instance is not None:
            raise RuntimeError("You cannot create another SelfImprovementSystem class")

        if config is None:
            config = SelfImprovementConfig.from_config(ConfigController.get_instance().get_config())
        self._config = config
        self._clock = clock
        self._store = store or SelfImprovementStore(
            Path(config.var_dir).expanduser() / "self_improvement.db"
        )
        self._pipes = pipes or SelfImprovementPipes(config.pipes)
        self._source = metrics_source or InvocationMetricsSource()

        self._safety = SafetyState.create(
            circuit_breaker=CircuitBreaker.from_settings(config.circuit_breaker),
            allowlist=allowlist or ActionAllowlist.default_allowlist(),
            calculator=BaselineCalculator.from_settings(config.baseline),
        )
        self._runtime = runtime or InMemoryRuntimeConfig(self._safety.allowlist)
        self._monitor = Monitor(self._safety, self._source, config.monitor)
        self._learner = Learner(
            config.learner,
            store=self._store,
            pipes=self._pipes if config.learner.use_reflection else None,
        )
        self._analyzer = Analyzer(
            self._safety,
            self._pipes,
            config.analyzer,
            runtime=self._runtime,
            learner=self._learner,
        )
        self._executor = Executor(
            self._safety,
            self._runtime,
            self._source,
            config.executor,
            store=self._store,
            clock=clock,
        )

        self._in_flight = threading.Lock()
        self._counter_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._loop_thread: threading.Thread | None = None
        self._loop_period_s = 5.0
        self._total_cycles = 0
        self._total_successes = 0
        self._total_rollbacks = 0
        self._last_cycle_at: float | None = None
        self._paused_until: float | None = None
        self._breaker_reset_seen: float | None = None

        self._load_state()
        SelfImprovementSystem._instance = self

    @classmethod
    def get_instance(cls) -> "SelfImprovementSystem":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    # -- accessors ---------------------------------------------------------

    @property
    def config(self) -> SelfImprovementConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def safety(self) -> SafetyState:
        return self._safety

    @property
    def monitor(self) -> Monitor:
        return self._monitor

    @property
    def analyzer(self) -> Analyzer:
        return self._analyzer

    @property
    def executor(self) -> Executor:
        return self._executor

    @property
    def learner(self) -> Learner:
        return self._learner

    @property
    def store(self) -> SelfImprovementStore:
        return self._store

    # -- state -------------------------------------------------------------

    def _load_state(self) -> None:
        now = self._clock()
        try:
            breaker_state = self._store.load_circuit_breaker()
            baselines = self._store.get_all_baselines()
            pending = self._store.pending_diagnoses()
            recent = self._store.actions_since(now - 3600.0)
            self._paused_until = self._store.get_control(PAUSED_UNTIL_KEY)
            self._breaker_reset_seen = self._store.get_control(BREAKER_RESET_KEY)
        except StorageError as exc:
            LOGGER.warning("[SI] Could not load persisted state; starting fresh: %s", exc)
            return

        with self._safety.locked() as safety:
            if breaker_state:
                safety.circuit_breaker.load_state(breaker_state)
            for baseline in baselines:
                safety.baselines.restore(baseline)
        self._analyzer.restore_pending(pending)
        self._executor.seed_rate_limit([record.executed_at for record in recent], now)
        LOGGER.info(
            "[SI] Loaded state: breaker=%s baselines=%s pending=%s recent_actions=%s",
            breaker_state.get("state") if breaker_state else "closed",
            len(baselines),
            len(pending),
            len(recent),
        )

    def _persist(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T | None:
        try:
            return func(*args, **kwargs)
        except StorageError as exc:
            LOGGER.error("[SI] %s failed: %s", operation, exc)
            return None

    def _save_breaker(self) -> None:
        with self._safety.locked() as safety:
            state = safety.circuit_breaker.to_state()
        self._persist("save_circuit_breaker", self._store.save_circuit_breaker, state)

    def _save_baselines(self) -> None:
        with self._safety.locked() as safety:
            baselines = safety.baselines.copy().all()
        self._persist("save_baselines", self._store.save_baselines, baselines)

    def _sync_operator_state(self) -> None:
        """Pick up approvals, pauses and breaker resets written by another process."""

        pending = self._analyzer.pending()
        try:
            paused_until = self._store.get_control(PAUSED_UNTIL_KEY)
            reset_at = self._store.get_control(BREAKER_RESET_KEY)
            stored = [self._store.get_diagnosis(diagnosis.id) for diagnosis in pending]
        except StorageError as exc:
            LOGGER.warning("[SI] Could not read operator state: %s", exc)
            return

        self._paused_until = paused_until
        if reset_at is not None and reset_at != self._breaker_reset_seen:
            self._breaker_reset_seen = reset_at
            with self._safety.locked() as safety:
                safety.circuit_breaker.reset(self._clock())
            LOGGER.info("[SI] Circuit breaker reset by operator")
        for current, persisted in zip(pending, stored):
            if persisted is None or persisted.status is current.status:
                continue
            if persisted.status is DiagnosisStatus.APPROVED:
                self._analyzer.update_pending(current.id, DiagnosisStatus.APPROVED)
                LOGGER.info("[SI] Diagnosis %s approved by operator", current.id)
            elif persisted.status in (DiagnosisStatus.REJECTED, DiagnosisStatus.SUPERSEDED):
                self._analyzer.resolve(current.id)
                LOGGER.info("[SI] Diagnosis %s %s by operator", current.id, persisted.status.value)

    # -- cycle -------------------------------------------------------------

    def run_cycle(self, now: float | None = None, *, force: bool = True) -> CycleResult:
        """Run one tick unless another tick is still in flight."""

        if not self._in_flight.acquire(blocking=False):
            LOGGER.info("[SI] Cycle skipped: previous cycle still in flight")
            return CycleResult(success=False, error="Cycle already in progress")
        started = time.monotonic()
        try:
            now = self._clock() if now is None else now
            result = self._run_cycle(now, force)
        except (PipeError, StorageError) as exc:
            LOGGER.error("[SI] Cycle abandoned: %s", exc)
            result = CycleResult(success=False, error=str(exc))
        finally:
            self._in_flight.release()
        return CycleResult(
            success=result.success,
            action_taken=result.action_taken,
            diagnosis=result.diagnosis,
            reward=result.reward,
            lessons=result.lessons,
            error=result.error,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )

    def _run_cycle(self, now: float, force: bool) -> CycleResult:
        self._sync_operator_state()
        with self._counter_lock:
            self._total_cycles += 1
            self._last_cycle_at = now

        report = self._monitor.force_check(now) if force else self._monitor.check_health(now)
        if self._monitor.stats().last_check_at == now:
            self._save_baselines()

        if self.enabled and self.is_paused(now):
            return CycleResult(success=False, error=f"Paused until {self._paused_until:.0f}")
        approved = self._next_approved()
        if approved is not None and self.enabled:
            return self._execute(approved, None, now)
        if report is None:
            return CycleResult(success=True)
        return self.handle_report(report, now)

    def handle_report(self, report: HealthReport, now: float | None = None) -> CycleResult:
        """Analyze a health report and act on it when mutation is enabled."""

        now = self._clock() if now is None else now
        if not self.enabled:
            LOGGER.info(
                "[SI] Self-improvement disabled; observed %s severity report only",
                report.severity.value,
            )
            return CycleResult(success=True, error="Self-improvement disabled")
        if self.is_paused(now):
            return CycleResult(success=False, error=f"Paused until {self._paused_until:.0f}")

        try:
            diagnosis = self._analyzer.analyze(report, now)
        except AnalysisBlocked as exc:
            if exc.diagnosis is not None:
                self._persist("save_diagnosis", self._store.save_diagnosis, exc.diagnosis, str(exc))
            return CycleResult(success=False, error=str(exc))
        self._persist("save_diagnosis", self._store.save_diagnosis, diagnosis)
        return self._execute(diagnosis, report, now)

    def _execute(
        self, diagnosis: SelfDiagnosis, report: HealthReport | None, now: float
    ) -> CycleResult:
        if not self._config.executor.require_approval and diagnosis.status is DiagnosisStatus.PENDING:
            diagnosis = self._set_status(diagnosis, DiagnosisStatus.APPROVED)

        try:
            self._executor.check_preconditions(diagnosis, now)
        except ExecutionBlocked as exc:
            if exc.reason is ExecutionBlockedReason.AWAITING_APPROVAL:
                self._set_status(diagnosis, DiagnosisStatus.AWAITING_APPROVAL, str(exc))
            else:
                self._set_status(diagnosis, DiagnosisStatus.BLOCKED, str(exc))
                self._analyzer.resolve(diagnosis.id)
            LOGGER.info("[SI] %s", exc)
            return CycleResult(success=False, diagnosis=diagnosis.description, error=str(exc))

        diagnosis = self._set_status(diagnosis, DiagnosisStatus.EXECUTING)
        result = None
        try:
            result = self._executor.execute(
                diagnosis,
                metrics_before=report.current_metrics if report is not None else None,
                now=now,
            )
        except ExecutionBlocked as exc:
            self._set_status(diagnosis, DiagnosisStatus.BLOCKED, str(exc))
            return CycleResult(success=False, diagnosis=diagnosis.description, error=str(exc))
        finally:
            self._save_breaker()
            if result is None:
                self._analyzer.resolve(diagnosis.id)

        self._set_status(diagnosis, _FINAL_STATUS[result.outcome], result.record.rollback_reason)
        self._analyzer.resolve(diagnosis.id)
        with self._counter_lock:
            if result.outcome is ActionOutcome.SUCCESS:
                self._total_successes += 1
            elif result.outcome is ActionOutcome.ROLLED_BACK:
                self._total_rollbacks += 1

        reward = None
        lessons: list[str] = []
        error = result.record.rollback_reason if not result.success else None
        with self._safety.locked() as safety:
            reference = safety.baselines.to_baselines()
        try:
            outcome = self._learner.learn(result.record, reference, diagnosis.trigger, now)
            reward = outcome.reward
            lessons = outcome.lessons
        except LearningBlocked as exc:
            LOGGER.info("[SI] %s", exc)

        return CycleResult(
            success=result.success,
            action_taken=diagnosis.suggested_action.describe(),
            diagnosis=diagnosis.description,
            reward=reward,
            lessons=lessons,
            error=error,
        )

    def _set_status(
        self, diagnosis: SelfDiagnosis, status: DiagnosisStatus, reason: str | None = None
    ) -> SelfDiagnosis:
        updated = self._analyzer.update_pending(diagnosis.id, status) or diagnosis.with_status(status)
        if not self._persist(
            "update_diagnosis_status", self._store.update_diagnosis_status, diagnosis.id, status, reason
        ):
            self._persist("save_diagnosis", self._store.save_diagnosis, updated, reason)
        return updated

    def _next_approved(self) -> SelfDiagnosis | None:
        for diagnosis in self._analyzer.pending():
            if diagnosis.status is DiagnosisStatus.APPROVED:
                return diagnosis
        return None

    # -- operator surface --------------------------------------------------

    def record_invocation(
        self,
        tool_name: str,
        latency_ms: float,
        success: bool,
        quality_score: float | None = None,
        *,
        fallback: bool = False,
    ) -> None:
        recorder = getattr(self._source, "record_invocation", None)
        if recorder is None:
            LOGGER.debug("[SI] Metrics source does not accept invocations")
            return
        recorder(tool_name, latency_ms, success, quality_score, fallback=fallback)

    def approve_diagnosis(self, diagnosis_id: str) -> SelfDiagnosis | None:
        diagnosis = self._analyzer.get_pending(diagnosis_id)
        if diagnosis is None:
            LOGGER.warning("[SI] No pending diagnosis %s to approve", diagnosis_id)
            return None
        return self._set_status(diagnosis, DiagnosisStatus.APPROVED, "approved by operator")

    def reject_diagnosis(self, diagnosis_id: str, reason: str = "rejected by operator") -> SelfDiagnosis | None:
        diagnosis = self._analyzer.get_pending(diagnosis_id)
        if diagnosis is None:
            LOGGER.warning("[SI] No pending diagnosis %s to reject", diagnosis_id)
            return None
        updated = self._set_status(diagnosis, DiagnosisStatus.REJECTED, reason)
        self._analyzer.resolve(diagnosis_id)
        return updated

    def supersede_pending(self, reason: str = "superseded by operator") -> list[SelfDiagnosis]:
        """Drop every pending diagnosis without acting on it."""

        superseded = self._analyzer.supersede_all_pending()
        for diagnosis in superseded:
            if not self._persist(
                "update_diagnosis_status",
                self._store.update_diagnosis_status,
                diagnosis.id,
                DiagnosisStatus.SUPERSEDED,
                reason,
            ):
                self._persist("save_diagnosis", self._store.save_diagnosis, diagnosis, reason)
        return superseded

    def pause(self, duration_s: float, now: float | None = None) -> float:
        """Block analysis and mutation for ``duration_s`` seconds."""

        now = self._clock() if now is None else now
        self._paused_until = now + max(float(duration_s), 0.0)
        self._persist("set_control", self._store.set_control, PAUSED_UNTIL_KEY, self._paused_until)
        LOGGER.info("[SI] Paused for %.0fs", duration_s)
        return self._paused_until

    def resume(self) -> None:
        self._paused_until = None
        self._persist("set_control", self._store.set_control, PAUSED_UNTIL_KEY, None)

    def is_paused(self, now: float | None = None) -> bool:
        now = self._clock() if now is None else now
        return self._paused_until is not None and now < self._paused_until

    def reset_circuit_breaker(self) -> CircuitBreakerSummary:
        now = self._clock()
        with self._safety.locked() as safety:
            safety.circuit_breaker.reset(now)
            summary = safety.circuit_breaker.summary(now)
        self._save_breaker()
        self._breaker_reset_seen = now
        self._persist("set_control", self._store.set_control, BREAKER_RESET_KEY, now)
        return summary

    def circuit_breaker_summary(self) -> CircuitBreakerSummary:
        with self._safety.locked() as safety:
            return safety.circuit_breaker.summary(self._clock())

    def baselines(self) -> list[MetricBaseline]:
        with self._safety.locked() as safety:
            return safety.baselines.copy().all()

    def history(self, limit: int = 20, outcome: ActionOutcome | None = None) -> list[ActionRecord]:
        return self._store.history(limit=limit, outcome=outcome)

    def status(self) -> SystemStatus:
        now = self._clock()
        with self._safety.locked() as safety:
            breaker = safety.circuit_breaker
            circuit_state = breaker.state.value
            consecutive_failures = breaker.consecutive_failures
        cooldowns = self._executor.cooldowns(now)
        with self._counter_lock:
            return SystemStatus(
                enabled=self.enabled,
                circuit_state=circuit_state,
                consecutive_failures=consecutive_failures,
                in_cooldown=bool(cooldowns),
                cooldown_ends_at=max((c.ends_at for c in cooldowns), default=None),
                actions_this_hour=self._executor.actions_this_hour(now),
                max_actions_per_hour=self._config.executor.max_actions_per_hour,
                total_cycles=self._total_cycles,
                total_successes=self._total_successes,
                total_rollbacks=self._total_rollbacks,
                last_cycle_at=self._last_cycle_at,
                paused_until=self._paused_until,
                pending_diagnoses=self._analyzer.pending_count,
            )

    # -- loop --------------------------------------------------------------

    def start_loop(self, loop_period_s: float = 5.0) -> None:
        if self._loop_thread is None or not self._loop_thread.is_alive():
            self._loop_period_s = max(loop_period_s, 0.2)
            self._stop_event.clear()
            self._executor.resume()
            self._loop_thread = threading.Thread(target=self._loop, daemon=True)
            self._loop_thread.start()
            LOGGER.info(
                "[SI] Loop started (enabled=%s, interval=%.0fs)",
                self.enabled,
                self._config.monitor.check_interval_secs,
            )

    def stop_loop(self, timeout_s: float = 2.0) -> None:
        if self._loop_thread is not None:
            self._stop_event.set()
            self._executor.cancel()
            self._loop_thread.join(timeout=timeout_s)
            if self._loop_thread.is_alive():
                LOGGER.warning(
                    "[SI] Loop thread did not exit within %.2fs; continuing shutdown.",
                    timeout_s,
                )
                return
            self._loop_thread = None

    def is_loop_alive(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive()

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("[SI] Error in tick loop (retrying): %s", exc)
            self._stop_event.wait(timeout=self._loop_period_s)

    def _tick(self) -> None:
        now = self._clock()
        if self._monitor.is_due(now) or (self.enabled and self._next_approved() is not None):
            result = self.run_cycle(now, force=False)
            if result.action_taken or result.error:
                LOGGER.info(
                    "[SI] Cycle: success=%s action=%s error=%s",
                    result.success,
                    result.action_taken,
                    result.error,
                )
