"""Tests for the self-improvement circuit breaker."""

from __future__ import annotations

from core.circuit_breaker import CircuitBreaker, CircuitState


def test_opens_after_failure_threshold() -> None:
    breaker = CircuitBreaker(failure_threshold=3, recovery_timeout_s=3600.0)

    breaker.record_failure(now=0.0)
    breaker.record_failure(now=1.0)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.can_execute(now=1.0)

    breaker.record_failure(now=2.0)
    assert breaker.state is CircuitState.OPEN
    assert not breaker.can_execute(now=100.0)
    assert breaker.time_until_recovery(now=102.0) == 3500.0


def test_success_resets_failure_streak() -> None:
    breaker = CircuitBreaker(failure_threshold=3)

    breaker.record_failure(now=0.0)
    breaker.record_failure(now=1.0)
    breaker.record_success(now=2.0)
    breaker.record_failure(now=3.0)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 1
    assert breaker.total_failures == 3
    assert breaker.total_successes == 1


def test_recovery_timeout_moves_to_half_open() -> None:
    breaker = CircuitBreaker(failure_threshold=3, recovery_timeout_s=3600.0)
    for index in range(3):
        breaker.record_failure(now=float(index))

    assert not breaker.can_execute(now=3601.0)
    assert breaker.can_execute(now=3602.0)
    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.time_until_recovery(now=3602.0) is None


def test_half_open_closes_after_success_threshold() -> None:
    breaker = CircuitBreaker(failure_threshold=1, success_threshold=2, recovery_timeout_s=10.0)
    breaker.record_failure(now=0.0)
    assert breaker.can_execute(now=10.0)

    breaker.record_success(now=11.0)
    assert breaker.state is CircuitState.HALF_OPEN
    breaker.record_success(now=12.0)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


def test_half_open_failure_reopens() -> None:
    breaker = CircuitBreaker(failure_threshold=1, success_threshold=2, recovery_timeout_s=10.0)
    breaker.record_failure(now=0.0)
    assert breaker.can_execute(now=10.0)

    breaker.record_success(now=11.0)
    breaker.record_failure(now=12.0)

    assert breaker.state is CircuitState.OPEN
    assert not breaker.can_execute(now=13.0)
    assert breaker.can_execute(now=22.0)


def test_reset_closes_and_clears_streaks() -> None:
    breaker = CircuitBreaker(failure_threshold=2)
    breaker.record_failure(now=0.0)
    breaker.record_failure(now=1.0)
    assert breaker.state is CircuitState.OPEN

    breaker.reset(now=2.0)

    summary = breaker.summary(now=2.0)
    assert summary.state is CircuitState.CLOSED
    assert summary.consecutive_failures == 0
    assert summary.total_failures == 2
    assert summary.to_dict()["state"] == "closed"


def test_state_survives_persistence() -> None:
    breaker = CircuitBreaker(failure_threshold=2)
    breaker.record_failure(now=5.0)
    breaker.record_failure(now=6.0)

    restored = CircuitBreaker(failure_threshold=2)
    restored.load_state(breaker.to_state())

    assert restored.state is CircuitState.OPEN
    assert restored.consecutive_failures == 2
    assert restored.last_failure == 6.0
