"""Executor phase: gate, apply, verify and, when needed, roll back one action."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Deque

from ai.allowlist import AllowlistError
from config.settings import ExecutorSettings
from core.actions import AdjustParam, NoOp, SuggestedAction
from core.budgeting import RollingWindowBudget
from core.cooldown import CooldownTracker
from core.logging import logger as LOGGER
from core.models import (
    ActionOutcome,
    ActionRecord,
    DiagnosisStatus,
    MetricsSnapshot,
    SelfDiagnosis,
)
from core.safety_state import SafetyState
from services.metrics_source import MetricsSource
from services.runtime_config import ConfigState, RuntimeConfig, RuntimeConfigError
from storage.self_improvement import StorageError

if TYPE_CHECKING:
    from storage.self_improvement import SelfImprovementStore

HISTORY_LIMIT = 100
RATE_WINDOW_S = 3600.0


class ExecutionBlockedReason(str, Enum):
    NO_OP_ACTION = "no_op_action"
    CIRCUIT_OPEN = "circuit_open"
    NOT_ALLOWED = "not_allowed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    COOLDOWN_ACTIVE = "cooldown_active"
    AWAITING_APPROVAL = "awaiting_approval"


class ExecutionBlocked(Exception):
    """A precondition refused the action. Never counts as an execution failure."""

    def __init__(
        self,
        reason: ExecutionBlockedReason,
        details: str = "",
        *,
        remaining_secs: float | None = None,
    ) -> None:
        message = f"Execution blocked ({reason.value})"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)
        self.reason = reason
        self.details = details
        self.remaining_secs = remaining_secs


class RollbackError(Exception):
    """Raised when a forced rollback cannot be carried out."""


@dataclass(frozen=True)
class ExecutionResult:
    record: ActionRecord
    diagnosis_id: str
    outcome: ActionOutcome
    metrics_before: MetricsSnapshot
    metrics_after: MetricsSnapshot | None
    regression_reasons: tuple[str, ...] = ()
    cancelled: bool = False
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome is ActionOutcome.SUCCESS

    @property
    def regressed(self) -> bool:
        return bool(self.regression_reasons)


@dataclass
class ExecutorStats:
    executions: int = 0
    successes: int = 0
    failures: int = 0
    rollbacks: int = 0
    blocked: dict[str, int] = field(default_factory=dict)
    actions_this_hour: int = 0
    max_actions_per_hour: int = 0
    active_cooldowns: int = 0
    last_execution_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.__dict__)
        payload["blocked"] = dict(self.blocked)
        return payload


def regression_reasons(
    before: MetricsSnapshot, after: MetricsSnapshot, tolerance: float
) -> list[str]:
    """Metrics that got worse by more than ``tolerance`` (relative)."""

    reasons = []
    if after.error_rate > 0.0 and after.error_rate > before.error_rate * (1.0 + tolerance):
        reasons.append(f"error_rate {before.error_rate:.4f} -> {after.error_rate:.4f}")
    if after.latency_p95_ms > before.latency_p95_ms * (1.0 + tolerance):
        reasons.append(f"latency_p95 {before.latency_p95_ms:.0f}ms -> {after.latency_p95_ms:.0f}ms")
    if after.quality_score < before.quality_score * (1.0 - tolerance):
        reasons.append(f"quality {before.quality_score:.3f} -> {after.quality_score:.3f}")
    return reasons


class Executor:
    """Apply approved diagnoses to the runtime configuration.

    The executor is the only component that feeds the circuit breaker and the
    only writer of ``ParamBounds.current_value``. The stabilization wait runs
    without holding the shared lock and is cut short by :meth:`cancel`.
    """

    def __init__(
        self,
        safety: SafetyState,
        runtime: RuntimeConfig,
        source: MetricsSource,
        settings: ExecutorSettings | None = None,
        *,
        store: "SelfImprovementStore | None" = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._safety = safety
        self._runtime = runtime
        self._source = source
        self._settings = settings or ExecutorSettings()
        self._store = store
        self._clock = clock
        self._budget = RollingWindowBudget(
            self._settings.max_actions_per_hour, RATE_WINDOW_S, name="actions_per_hour"
        )
        self._cooldowns = CooldownTracker(cooldown_s=self._settings.cooldown_secs)
        self._cancel = threading.Event()
        self._history: Deque[ActionRecord] = deque(maxlen=HISTORY_LIMIT)
        self._stats = ExecutorStats(max_actions_per_hour=self._settings.max_actions_per_hour)

    @property
    def settings(self) -> ExecutorSettings:
        return self._settings

    # -- gating ------------------------------------------------------------

    def check_preconditions(self, diagnosis: SelfDiagnosis, now: float | None = None) -> None:
        """Raise :class:`ExecutionBlocked` if ``diagnosis`` may not run now."""

        now = self._clock() if now is None else now
        action = diagnosis.suggested_action
        if isinstance(action, NoOp):
            self._block(ExecutionBlockedReason.NO_OP_ACTION, action.reason)

        with self._safety.locked() as safety:
            breaker = safety.circuit_breaker
            if not breaker.can_execute(now):
                remaining = breaker.time_until_recovery(now)
                self._block(
                    ExecutionBlockedReason.CIRCUIT_OPEN,
                    f"recovery in {remaining or 0.0:.0f}s",
                    remaining_secs=remaining,
                )
            try:
                safety.allowlist.validate(action)
            except AllowlistError as exc:
                self._block(ExecutionBlockedReason.NOT_ALLOWED, str(exc))
            if isinstance(action, AdjustParam):
                bounds = safety.allowlist.get_param_bounds(action.key)
                if bounds is not None and bounds.current_value != action.old_value:
                    self._block(
                        ExecutionBlockedReason.NOT_ALLOWED,
                        f"stale proposal for {action.key}: expected {action.old_value}, "
                        f"live value is {bounds.current_value}",
                    )

        if not self._budget.allow(now):
            self._block(
                ExecutionBlockedReason.RATE_LIMIT_EXCEEDED,
                f"{self._budget.count(now)}/{self._budget.limit} actions in the last hour",
                remaining_secs=self._budget.seconds_until_available(now),
            )

        cooldown = self._cooldowns.active(action.target_key(), now)
        if cooldown is not None:
            self._block(
                ExecutionBlockedReason.COOLDOWN_ACTIVE,
                f"{cooldown.key} for another {cooldown.remaining(now):.0f}s",
                remaining_secs=cooldown.remaining(now),
            )

        if self._settings.require_approval and diagnosis.status is not DiagnosisStatus.APPROVED:
            self._block(ExecutionBlockedReason.AWAITING_APPROVAL, diagnosis.id)

    def _block(
        self,
        reason: ExecutionBlockedReason,
        details: str,
        *,
        remaining_secs: float | None = None,
    ) -> None:
        self._stats.blocked[reason.value] = self._stats.blocked.get(reason.value, 0) + 1
        raise ExecutionBlocked(reason, details, remaining_secs=remaining_secs)

    # -- execution ---------------------------------------------------------

    def execute(
        self,
        diagnosis: SelfDiagnosis,
        *,
        metrics_before: MetricsSnapshot | None = None,
        now: float | None = None,
    ) -> ExecutionResult:
        now = self._clock() if now is None else now
        self.check_preconditions(diagnosis, now)
        action = diagnosis.suggested_action
        started = time.monotonic()

        before = metrics_before if metrics_before is not None else self._source.snapshot()
        self._budget.record(now)
        self._cooldowns.start(action.target_key(), f"applied {action.describe()}", now)
        self._stats.executions += 1
        self._stats.last_execution_at = now

        with self._safety.locked() as safety:
            try:
                pre_state, post_state = self._runtime.apply(action)
            except (RuntimeConfigError, OSError) as exc:
                safety.circuit_breaker.record_failure(now)
                return self._finish_failed(diagnosis, action, before, str(exc), now, started)
            if isinstance(action, AdjustParam):
                safety.allowlist.update_param_current(action.key, action.new_value)

        record = ActionRecord(
            diagnosis_id=diagnosis.id,
            action=action,
            pre_state=pre_state.to_dict(),
            post_state=post_state.to_dict(),
            metrics_before=before,
            executed_at=now,
        )
        self._persist(record, new=True)
        LOGGER.info("[Executor] Applied %s; stabilizing for %.0fs", action.describe(), self._settings.stabilization_secs)

        cancelled = self._wait_for_stabilization()
        after = self._source.snapshot()
        verified_at = self._clock()

        if cancelled:
            reasons: list[str] = []
            outcome = self._rollback(record, pre_state, "stabilization cancelled", feed_breaker=False)
        else:
            reasons = regression_reasons(before, after, self._settings.regression_tolerance)
            if reasons and self._settings.rollback_on_regression:
                outcome = self._rollback(record, pre_state, "; ".join(reasons), feed_breaker=True)
            elif reasons:
                outcome = ActionOutcome.FAILED
                with self._safety.locked() as safety:
                    safety.circuit_breaker.record_failure(verified_at)
                self._stats.failures += 1
                LOGGER.warning("[Executor] %s regressed (%s); rollback disabled", action.describe(), reasons)
            else:
                outcome = ActionOutcome.SUCCESS
                with self._safety.locked() as safety:
                    safety.circuit_breaker.record_success(verified_at)
                self._stats.successes += 1
                LOGGER.info("[Executor] %s verified", action.describe())

        record.outcome = outcome
        record.metrics_after = after
        record.verified_at = verified_at
        self._persist(record)
        self._history.append(record)
        return ExecutionResult(
            record=record,
            diagnosis_id=diagnosis.id,
            outcome=outcome,
            metrics_before=before,
            metrics_after=after,
            regression_reasons=tuple(reasons),
            cancelled=cancelled,
            duration_s=time.monotonic() - started,
        )

    def _finish_failed(
        self,
        diagnosis: SelfDiagnosis,
        action: SuggestedAction,
        before: MetricsSnapshot,
        error: str,
        now: float,
        started: float,
    ) -> ExecutionResult:
        LOGGER.error("[Executor] Failed to apply %s: %s", action.describe(), error)
        self._stats.failures += 1
        record = ActionRecord(
            diagnosis_id=diagnosis.id,
            action=action,
            pre_state={},
            metrics_before=before,
            executed_at=now,
            outcome=ActionOutcome.FAILED,
            rollback_reason=error,
            verified_at=now,
        )
        self._persist(record, new=True)
        self._history.append(record)
        return ExecutionResult(
            record=record,
            diagnosis_id=diagnosis.id,
            outcome=ActionOutcome.FAILED,
            metrics_before=before,
            metrics_after=None,
            duration_s=time.monotonic() - started,
        )

    def _wait_for_stabilization(self) -> bool:
        seconds = self._settings.stabilization_secs
        if seconds <= 0:
            return self._cancel.is_set()
        return self._cancel.wait(seconds)

    def _rollback(
        self,
        record: ActionRecord,
        pre_state: ConfigState,
        reason: str,
        *,
        feed_breaker: bool,
    ) -> ActionOutcome:
        action = record.action
        with self._safety.locked() as safety:
            if feed_breaker:
                safety.circuit_breaker.record_failure(self._clock())
            if not action.is_reversible:
                LOGGER.warning("[Executor] %s is not reversible; leaving it in place (%s)", action.describe(), reason)
                record.rollback_reason = reason
                self._stats.failures += 1
                return ActionOutcome.FAILED
            try:
                self._runtime.revert(action, pre_state)
            except RuntimeConfigError as exc:
                LOGGER.error("[Executor] Rollback of %s failed: %s", action.describe(), exc)
                record.rollback_reason = f"{reason}; rollback failed: {exc}"
                self._stats.failures += 1
                return ActionOutcome.FAILED
            if isinstance(action, AdjustParam):
                safety.allowlist.update_param_current(action.key, action.old_value)
        record.rollback_reason = reason
        self._stats.rollbacks += 1
        LOGGER.warning("[Executor] Rolled back %s: %s", action.describe(), reason)
        return ActionOutcome.ROLLED_BACK

    def force_rollback(self, action_id: str, reason: str = "manual rollback") -> ActionRecord:
        """Revert a previously applied action on operator request."""

        record = self._find(action_id)
        if record is None:
            raise RollbackError(f"Unknown action: {action_id}")
        if record.outcome is ActionOutcome.ROLLED_BACK:
            raise RollbackError(f"Action already rolled back: {action_id}")
        if record.outcome is ActionOutcome.FAILED and not record.pre_state:
            raise RollbackError(f"Action was never applied: {action_id}")
        if not record.action.is_reversible:
            LOGGER.warning("[Executor] %s is not reversible; nothing to roll back", record.action.describe())
            return record

        outcome = self._rollback(record, ConfigState.from_dict(record.pre_state), reason, feed_breaker=False)
        record.outcome = outcome
        self._persist(record)
        return record

    def _find(self, action_id: str) -> ActionRecord | None:
        for record in self._history:
            if record.id == action_id:
                return record
        if self._store is not None:
            return self._store.get_action(action_id)
        return None

    def _persist(self, record: ActionRecord, new: bool = False) -> None:
        if self._store is None:
            return
        try:
            if new:
                self._store.save_action(record)
            else:
                self._store.update_action(record)
        except StorageError as exc:
            # The change is already live; verification must still run.
            LOGGER.error("[Executor] Could not persist action %s: %s", record.id, exc)

    # -- control -----------------------------------------------------------

    def cancel(self) -> None:
        """Cut short any stabilization wait in progress."""

        self._cancel.set()

    def resume(self) -> None:
        self._cancel.clear()

    def seed_rate_limit(self, timestamps: list[float], now: float | None = None) -> None:
        self._budget.seed(timestamps, self._clock() if now is None else now)

    def cooldowns(self, now: float | None = None) -> list:
        return self._cooldowns.snapshot(self._clock() if now is None else now)

    def actions_this_hour(self, now: float | None = None) -> int:
        return self._budget.count(self._clock() if now is None else now)

    def history(self) -> list[ActionRecord]:
        return list(self._history)

    def stats(self, now: float | None = None) -> ExecutorStats:
        now = self._clock() if now is None else now
        stats = ExecutorStats(**self._stats.to_dict())
        stats.actions_this_hour = self._budget.count(now)
        stats.active_cooldowns = len(self._cooldowns.snapshot(now))
        return stats
