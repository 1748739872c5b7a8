"""Circuit breaker that halts self-improvement after repeated bad outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import time
from typing import Any, Mapping

from core.logging import log_transition, logger as LOGGER


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerSummary:
    state: CircuitState
    consecutive_failures: int
    consecutive_successes: int
    total_failures: int
    total_successes: int
    last_failure: float | None
    last_success: float | None
    last_state_change: float
    time_until_recovery_s: float | None

    def to_dict(self) -> dict[str, Any]:
        payload = dict(self.__dict__)
        payload["state"] = self.state.value
        return payload


class CircuitBreaker:
    """Closed/open/half-open state machine.

    Closed lets actions through. ``failure_threshold`` consecutive failures open
    the circuit. Once ``recovery_timeout_s`` has passed since the last failure,
    ``can_execute`` moves to half-open and lets a probe through.
    ``success_threshold`` consecutive successes close it again. Any failure while
    half-open re-opens it.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        success_threshold: int = 2,
        recovery_timeout_s: float = 3600.0,
    ) -> None:
        self.failure_threshold = max(int(failure_threshold), 1)
        self.success_threshold = max(int(success_threshold), 1)
        self.recovery_timeout_s = float(recovery_timeout_s)
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.total_failures = 0
        self.total_successes = 0
        self.last_failure: float | None = None
        self.last_success: float | None = None
        self.last_state_change = time.time()

    @classmethod
    def from_settings(cls, settings: Any) -> "CircuitBreaker":
        return cls(
            failure_threshold=settings.failure_threshold,
            success_threshold=settings.success_threshold,
            recovery_timeout_s=settings.recovery_timeout_secs,
        )

    def can_execute(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        if self.state is CircuitState.CLOSED:
            return True
        if self.state is CircuitState.HALF_OPEN:
            return True
        if self.last_failure is not None and now - self.last_failure >= self.recovery_timeout_s:
            self._transition_to(CircuitState.HALF_OPEN, "recovery timeout elapsed", now)
            return True
        return False

    def record_success(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.consecutive_failures = 0
        self.consecutive_successes += 1
        self.total_successes += 1
        self.last_success = now

        if self.state is CircuitState.HALF_OPEN:
            if self.consecutive_successes >= self.success_threshold:
                self._transition_to(CircuitState.CLOSED, "success threshold reached", now)
        elif self.state is CircuitState.OPEN:
            self._transition_to(CircuitState.HALF_OPEN, "success while open", now)

    def record_failure(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.consecutive_successes = 0
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure = now

        if self.state is CircuitState.CLOSED:
            if self.consecutive_failures >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN, "failure threshold reached", now)
        elif self.state is CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN, "failure during half-open probe", now)

    def reset(self, now: float | None = None) -> None:
        """Operator escape hatch: force closed and clear the streak counters."""

        now = time.time() if now is None else now
        LOGGER.info("[CircuitBreaker] Manual reset from %s", self.state.value)
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        if self.state is not CircuitState.CLOSED:
            self._transition_to(CircuitState.CLOSED, "manual reset", now)

    def time_until_recovery(self, now: float | None = None) -> float | None:
        if self.state is not CircuitState.OPEN or self.last_failure is None:
            return None
        now = time.time() if now is None else now
        return max(self.recovery_timeout_s - (now - self.last_failure), 0.0)

    def summary(self, now: float | None = None) -> CircuitBreakerSummary:
        return CircuitBreakerSummary(
            state=self.state,
            consecutive_failures=self.consecutive_failures,
            consecutive_successes=self.consecutive_successes,
            total_failures=self.total_failures,
            total_successes=self.total_successes,
            last_failure=self.last_failure,
            last_success=self.last_success,
            last_state_change=self.last_state_change,
            time_until_recovery_s=self.time_until_recovery(now),
        )

    def to_state(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "last_failure": self.last_failure,
            "last_success": self.last_success,
            "last_state_change": self.last_state_change,
        }

    def load_state(self, payload: Mapping[str, Any]) -> None:
        """Restore counters and state persisted with :meth:`to_state`."""

        self.state = CircuitState(payload.get("state", CircuitState.CLOSED.value))
        self.consecutive_failures = int(payload.get("consecutive_failures", 0))
        self.consecutive_successes = int(payload.get("consecutive_successes", 0))
        self.total_failures = int(payload.get("total_failures", 0))
        self.total_successes = int(payload.get("total_successes", 0))
        self.last_failure = payload.get("last_failure")
        self.last_success = payload.get("last_success")
        self.last_state_change = float(payload.get("last_state_change") or time.time())

    def _transition_to(self, state: CircuitState, reason: str, now: float) -> None:
        previous = self.state
        self.state = state
        self.last_state_change = now
        if state is CircuitState.CLOSED:
            self.consecutive_failures = 0
        if state is CircuitState.HALF_OPEN:
            self.consecutive_successes = 0
        log_transition("CircuitBreaker", previous.value, state.value, reason)
