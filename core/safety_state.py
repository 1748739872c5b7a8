"""Shared safety state owned by the self-improvement system."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import threading
from typing import Iterator

from ai.allowlist import ActionAllowlist
from core.baseline import BaselineCalculator, BaselineCollection
from core.circuit_breaker import CircuitBreaker


@dataclass
class SafetyState:
    """Circuit breaker, allowlist and baselines behind one lock.

    The system constructs exactly one instance and hands it to every phase.
    Writers and read-only operator queries both go through :meth:`locked`, and
    nothing holds the lock across a stabilization wait or a network call.
    """

    circuit_breaker: CircuitBreaker
    allowlist: ActionAllowlist
    calculator: BaselineCalculator
    baselines: BaselineCollection
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @classmethod
    def create(
        cls,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        allowlist: ActionAllowlist | None = None,
        calculator: BaselineCalculator | None = None,
    ) -> "SafetyState":
        calculator = calculator or BaselineCalculator()
        return cls(
            circuit_breaker=circuit_breaker or CircuitBreaker(),
            allowlist=allowlist or ActionAllowlist.default_allowlist(),
            calculator=calculator,
            baselines=BaselineCollection.create(calculator),
        )

    @contextmanager
    def locked(self) -> Iterator["SafetyState"]:
        with self.lock:
            yield self
