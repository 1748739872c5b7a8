"""Metrics source that aggregates tool invocations into health snapshots."""

from __future__ import annotations

from dataclasses import dataclass
import math
import threading
import time
from typing import Protocol

from core.models import MetricsSnapshot


class MetricsSource(Protocol):
    def snapshot(self) -> MetricsSnapshot:
        ...


@dataclass(frozen=True)
class InvocationEvent:
    tool_name: str
    latency_ms: float
    success: bool
    quality_score: float | None = None
    fallback: bool = False
    timestamp: float = 0.0


def percentile_95(values: list[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = max(math.ceil(len(ordered) * 0.95) - 1, 0)
    return ordered[min(index, len(ordered) - 1)]


class InvocationMetricsSource:
    """Collect invocation events between snapshots.

    ``snapshot`` summarises every event recorded since the previous snapshot and
    starts a fresh window. ``peek`` summarises without draining.
    """

    def __init__(self) -> None:
        self._events: list[InvocationEvent] = []
        self._lock = threading.Lock()

    def record_invocation(
        self,
        tool_name: str,
        latency_ms: float,
        success: bool,
        quality_score: float | None = None,
        *,
        fallback: bool = False,
        now: float | None = None,
    ) -> None:
        event = InvocationEvent(
            tool_name=tool_name,
            latency_ms=float(latency_ms),
            success=bool(success),
            quality_score=quality_score,
            fallback=bool(fallback),
            timestamp=time.time() if now is None else now,
        )
        with self._lock:
            self._events.append(event)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._events)

    def peek(self, now: float | None = None) -> MetricsSnapshot:
        with self._lock:
            events = list(self._events)
        return self._summarize(events, now)

    def snapshot(self, now: float | None = None) -> MetricsSnapshot:
        with self._lock:
            events = self._events
            self._events = []
        return self._summarize(events, now)

    def _summarize(self, events: list[InvocationEvent], now: float | None) -> MetricsSnapshot:
        now = time.time() if now is None else now
        total = len(events)
        if total == 0:
            return MetricsSnapshot(
                error_rate=0.0,
                latency_p95_ms=0.0,
                quality_score=1.0,
                fallback_rate=0.0,
                sample_count=0,
                timestamp=now,
            )
        errors = sum(1 for event in events if not event.success)
        fallbacks = sum(1 for event in events if event.fallback)
        qualities = [
            float(event.quality_score)
            for event in events
            if event.quality_score is not None and event.quality_score > 0.0
        ]
        quality = sum(qualities) / len(qualities) if qualities else 1.0
        return MetricsSnapshot(
            error_rate=errors / total,
            latency_p95_ms=percentile_95([event.latency_ms for event in events]),
            quality_score=quality,
            fallback_rate=fallbacks / total,
            sample_count=total,
            timestamp=now,
        )
