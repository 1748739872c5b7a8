"""Action and parameter value types proposed by the analyzer and applied by the executor.

``ParamValue`` and ``SuggestedAction`` are closed families of frozen dataclasses.
Consumers dispatch on them with ``isinstance`` chains that end in ``TypeError`` so
that a new variant cannot be silently ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Mapping


# ---------------------------------------------------------------------------
# Parameter values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParamValue:
    """Base class for typed configuration values."""

    kind: ClassVar[str] = "unknown"

    def as_float(self) -> float | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "value": getattr(self, "value", None)}

    def __str__(self) -> str:
        return str(getattr(self, "value", ""))


@dataclass(frozen=True)
class IntegerValue(ParamValue):
    value: int
    kind: ClassVar[str] = "integer"

    def as_float(self) -> float | None:
        return float(self.value)


@dataclass(frozen=True)
class FloatValue(ParamValue):
    value: float
    kind: ClassVar[str] = "float"

    def as_float(self) -> float | None:
        return float(self.value)


@dataclass(frozen=True)
class StringValue(ParamValue):
    value: str
    kind: ClassVar[str] = "string"


@dataclass(frozen=True)
class DurationMsValue(ParamValue):
    value: int
    kind: ClassVar[str] = "duration_ms"

    def __str__(self) -> str:
        return f"{self.value}ms"


@dataclass(frozen=True)
class BooleanValue(ParamValue):
    value: bool
    kind: ClassVar[str] = "boolean"


_PARAM_KINDS: dict[str, type[ParamValue]] = {
    cls.kind: cls
    for cls in (IntegerValue, FloatValue, StringValue, DurationMsValue, BooleanValue)
}


def param_from_dict(payload: Mapping[str, Any]) -> ParamValue:
    kind = str(payload.get("kind", ""))
    cls = _PARAM_KINDS.get(kind)
    if cls is None:
        raise ValueError(f"Unknown parameter kind: {kind!r}")
    raw = payload.get("value")
    if cls is IntegerValue or cls is DurationMsValue:
        return cls(int(raw))
    if cls is FloatValue:
        return cls(float(raw))
    if cls is BooleanValue:
        return cls(bool(raw))
    return cls(str(raw))


# ---------------------------------------------------------------------------
# Scopes, components and resources
# ---------------------------------------------------------------------------


class ScopeKind(str, Enum):
    RUNTIME = "runtime"
    ENVIRONMENT = "environment"
    CONFIG_FILE = "config_file"


@dataclass(frozen=True)
class ConfigScope:
    """Where a parameter change takes effect."""

    kind: ScopeKind = ScopeKind.RUNTIME
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "path": self.path}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ConfigScope":
        if not payload:
            return cls()
        return cls(kind=ScopeKind(payload.get("kind", "runtime")), path=payload.get("path"))


class ComponentKind(str, Enum):
    FULL = "full"
    LLM_CLIENT = "llm_client"
    STORAGE = "storage"
    MODE = "mode"


@dataclass(frozen=True)
class ServiceComponent:
    """Service component that a restart targets."""

    kind: ComponentKind = ComponentKind.FULL
    name: str | None = None

    def __str__(self) -> str:
        if self.kind is ComponentKind.MODE and self.name:
            return f"mode:{self.name}"
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "name": self.name}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ServiceComponent":
        if not payload:
            return cls()
        return cls(kind=ComponentKind(payload.get("kind", "full")), name=payload.get("name"))


class ResourceType(str, Enum):
    """Scalable resources the loop may resize."""

    MAX_CONCURRENT_REQUESTS = "max_concurrent_requests"
    CONNECTION_POOL_SIZE = "connection_pool_size"
    CACHE_SIZE = "cache_size"
    TIMEOUT_MS = "timeout_ms"
    MAX_RETRIES = "max_retries"
    RETRY_DELAY_MS = "retry_delay_ms"


# ---------------------------------------------------------------------------
# Suggested actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SuggestedAction:
    """Base class for the mutations the loop can propose."""

    action_type: ClassVar[str] = "unknown"

    @property
    def is_reversible(self) -> bool:
        return True

    def target_key(self) -> str:
        """Key used for per-target cooldowns."""

        return self.action_type

    def signature(self) -> str:
        """Stable grouping key for effectiveness statistics."""

        return self.action_type

    def describe(self) -> str:
        return self.action_type

    def to_dict(self) -> dict[str, Any]:
        raise NotImplementedError


def _direction(old: float | None, new: float | None) -> str:
    if old is None or new is None:
        return "change"
    return "increase" if new > old else "decrease"


@dataclass(frozen=True)
class AdjustParam(SuggestedAction):
    key: str
    old_value: ParamValue
    new_value: ParamValue
    scope: ConfigScope = ConfigScope()
    action_type: ClassVar[str] = "adjust_param"

    def target_key(self) -> str:
        return f"param:{self.key}"

    def signature(self) -> str:
        direction = _direction(self.old_value.as_float(), self.new_value.as_float())
        return f"adjust_param:{self.key}:{direction}"

    def describe(self) -> str:
        return f"Adjust {self.key}: {self.old_value} -> {self.new_value}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.action_type,
            "key": self.key,
            "old_value": self.old_value.to_dict(),
            "new_value": self.new_value.to_dict(),
            "scope": self.scope.to_dict(),
        }


@dataclass(frozen=True)
class ToggleFeature(SuggestedAction):
    feature_name: str
    desired_state: bool
    reason: str = ""
    action_type: ClassVar[str] = "toggle_feature"

    def target_key(self) -> str:
        return f"feature:{self.feature_name}"

    def signature(self) -> str:
        return f"toggle_feature:{self.feature_name}:{str(self.desired_state).lower()}"

    def describe(self) -> str:
        state = "enable" if self.desired_state else "disable"
        return f"Toggle {self.feature_name}: {state}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.action_type,
            "feature_name": self.feature_name,
            "desired_state": self.desired_state,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ScaleResource(SuggestedAction):
    resource: ResourceType
    old_value: int
    new_value: int
    action_type: ClassVar[str] = "scale_resource"

    def target_key(self) -> str:
        return f"resource:{self.resource.value}"

    def signature(self) -> str:
        direction = _direction(float(self.old_value), float(self.new_value))
        return f"scale_resource:{self.resource.value}:{direction}"

    def describe(self) -> str:
        return f"Scale {self.resource.value}: {self.old_value} -> {self.new_value}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.action_type,
            "resource": self.resource.value,
            "old_value": self.old_value,
            "new_value": self.new_value,
        }


@dataclass(frozen=True)
class RestartService(SuggestedAction):
    component: ServiceComponent = ServiceComponent()
    graceful: bool = True
    action_type: ClassVar[str] = "restart_service"

    @property
    def is_reversible(self) -> bool:
        return False

    def target_key(self) -> str:
        return f"restart:{self.component}"

    def signature(self) -> str:
        return f"restart_service:{self.component}"

    def describe(self) -> str:
        mode = "graceful" if self.graceful else "immediate"
        return f"Restart {self.component} ({mode})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.action_type,
            "component": self.component.to_dict(),
            "graceful": self.graceful,
        }


@dataclass(frozen=True)
class ClearCache(SuggestedAction):
    cache_name: str
    action_type: ClassVar[str] = "clear_cache"

    @property
    def is_reversible(self) -> bool:
        return False

    def target_key(self) -> str:
        return f"cache:{self.cache_name}"

    def signature(self) -> str:
        return f"clear_cache:{self.cache_name}"

    def describe(self) -> str:
        return f"Clear cache {self.cache_name}"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.action_type, "cache_name": self.cache_name}


@dataclass(frozen=True)
class NoOp(SuggestedAction):
    reason: str
    revisit_after_s: float = 300.0
    action_type: ClassVar[str] = "no_op"

    def describe(self) -> str:
        return f"No action: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.action_type,
            "reason": self.reason,
            "revisit_after_s": self.revisit_after_s,
        }

    @classmethod
    def diagnosis_unavailable(cls) -> "NoOp":
        return cls(reason="Diagnosis unavailable", revisit_after_s=300.0)

    @classmethod
    def circuit_open(cls) -> "NoOp":
        return cls(reason="Circuit breaker open", revisit_after_s=3600.0)

    @classmethod
    def cooldown(cls, remaining_s: float) -> "NoOp":
        return cls(reason="Cooldown active", revisit_after_s=max(remaining_s, 0.0))


def action_from_dict(payload: Mapping[str, Any]) -> SuggestedAction:
    """Rebuild an action persisted with ``to_dict``."""

    action_type = payload.get("type")
    if action_type == AdjustParam.action_type:
        return AdjustParam(
            key=str(payload["key"]),
            old_value=param_from_dict(payload["old_value"]),
            new_value=param_from_dict(payload["new_value"]),
            scope=ConfigScope.from_dict(payload.get("scope")),
        )
    if action_type == ToggleFeature.action_type:
        return ToggleFeature(
            feature_name=str(payload["feature_name"]),
            desired_state=bool(payload["desired_state"]),
            reason=str(payload.get("reason", "")),
        )
    if action_type == ScaleResource.action_type:
        return ScaleResource(
            resource=ResourceType(payload["resource"]),
            old_value=int(payload["old_value"]),
            new_value=int(payload["new_value"]),
        )
    if action_type == RestartService.action_type:
        return RestartService(
            component=ServiceComponent.from_dict(payload.get("component")),
            graceful=bool(payload.get("graceful", True)),
        )
    if action_type == ClearCache.action_type:
        return ClearCache(cache_name=str(payload["cache_name"]))
    if action_type == NoOp.action_type:
        return NoOp(
            reason=str(payload.get("reason", "")),
            revisit_after_s=float(payload.get("revisit_after_s", 300.0)),
        )
    raise ValueError(f"Unknown action type: {action_type!r}")
