"""Per-target cooldown tracking between applied actions."""

from __future__ import annotations

from dataclasses import dataclass
import threading
import time


@dataclass(frozen=True)
class Cooldown:
    """Active cooldown for a single action target."""

    key: str
    started_at: float
    ends_at: float
    reason: str

    def remaining(self, now: float) -> float:
        return max(self.ends_at - now, 0.0)


class CooldownTracker:
    """Track cooldown windows keyed by action target (parameter, feature, resource)."""

    def __init__(self, *, cooldown_s: float = 3600.0) -> None:
        self._cooldown_s = float(cooldown_s)
        self._active: dict[str, Cooldown] = {}
        self._lock = threading.Lock()

    @property
    def cooldown_s(self) -> float:
        return self._cooldown_s

    def start(self, key: str, reason: str, now: float | None = None) -> Cooldown:
        now = time.time() if now is None else now
        cooldown = Cooldown(key=key, started_at=now, ends_at=now + self._cooldown_s, reason=reason)
        with self._lock:
            self._active[key] = cooldown
        return cooldown

    def active(self, key: str, now: float | None = None) -> Cooldown | None:
        now = time.time() if now is None else now
        with self._lock:
            cooldown = self._active.get(key)
            if cooldown is None:
                return None
            if cooldown.ends_at <= now:
                self._active.pop(key, None)
                return None
            return cooldown

    def snapshot(self, now: float | None = None) -> list[Cooldown]:
        now = time.time() if now is None else now
        with self._lock:
            return [c for c in self._active.values() if c.ends_at > now]
