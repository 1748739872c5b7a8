"""Rolling-window budget used to rate limit applied actions."""

from __future__ import annotations

from collections import deque
import threading
import time
from typing import Deque


class RollingWindowBudget:
    """Count events inside a sliding window and refuse once ``limit`` is reached.

    A non-positive limit disables the budget entirely.
    """

    def __init__(self, limit: int, window_s: float, *, name: str = "") -> None:
        self._limit = int(limit)
        self._window_s = float(window_s)
        self._name = name
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_s(self) -> float:
        return self._window_s

    @property
    def name(self) -> str:
        return self._name

    def allow(self, now: float | None = None) -> bool:
        if self._limit <= 0:
            return True
        now = time.time() if now is None else now
        with self._lock:
            self._prune(now)
            return len(self._timestamps) < self._limit

    def record(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        with self._lock:
            self._prune(now)
            self._timestamps.append(now)

    def count(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        with self._lock:
            self._prune(now)
            return len(self._timestamps)

    def remaining(self, now: float | None = None) -> int | None:
        if self._limit <= 0:
            return None
        return max(self._limit - self.count(now), 0)

    def seconds_until_available(self, now: float | None = None) -> float:
        """Seconds until the oldest event leaves the window (0 when allowed)."""

        now = time.time() if now is None else now
        with self._lock:
            self._prune(now)
            if self._limit <= 0 or len(self._timestamps) < self._limit:
                return 0.0
            return max(self._timestamps[0] + self._window_s - now, 0.0)

    def seed(self, timestamps: list[float], now: float | None = None) -> None:
        """Restore recorded events, e.g. from persisted action history."""

        now = time.time() if now is None else now
        with self._lock:
            self._timestamps = deque(sorted(float(ts) for ts in timestamps))
            self._prune(now)

    def _prune(self, now: float) -> None:
        cutoff = now - self._window_s
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()
