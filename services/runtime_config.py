"""Runtime configuration the executor mutates and reverts."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
import time
from typing import Any, Mapping, Protocol

from ai.allowlist import ActionAllowlist
from core.actions import (
    AdjustParam,
    ClearCache,
    NoOp,
    ParamValue,
    ResourceType,
    RestartService,
    ScaleResource,
    SuggestedAction,
    ToggleFeature,
    param_from_dict,
)
from core.logging import logger as LOGGER


class RuntimeConfigError(Exception):
    """Raised when a change cannot be applied to or reverted from the live service."""


@dataclass(frozen=True)
class ConfigState:
    """Copy of the live parameters, features and resources at one moment."""

    params: Mapping[str, ParamValue] = field(default_factory=dict)
    features: Mapping[str, bool] = field(default_factory=dict)
    resources: Mapping[str, int] = field(default_factory=dict)
    captured_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "params": {key: value.to_dict() for key, value in self.params.items()},
            "features": dict(self.features),
            "resources": dict(self.resources),
            "captured_at": self.captured_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ConfigState":
        if not payload:
            return cls()
        return cls(
            params={
                key: param_from_dict(value) for key, value in (payload.get("params") or {}).items()
            },
            features={key: bool(value) for key, value in (payload.get("features") or {}).items()},
            resources={key: int(value) for key, value in (payload.get("resources") or {}).items()},
            captured_at=float(payload.get("captured_at", 0.0)),
        )


class RuntimeConfig(Protocol):
    def apply(self, action: SuggestedAction) -> tuple[ConfigState, ConfigState]:
        ...

    def revert(self, action: SuggestedAction, pre_state: ConfigState) -> None:
        ...

    def current_state(self) -> ConfigState:
        ...


class InMemoryRuntimeConfig:
    """Process-local runtime configuration seeded from the allowlist.

    Parameters start at their allowlisted current value, resources at the middle
    of their bounds and every toggleable feature enabled.
    """

    def __init__(self, allowlist: ActionAllowlist) -> None:
        self._lock = threading.Lock()
        self._params: dict[str, ParamValue] = {
            key: bounds.current_value for key, bounds in allowlist.adjustable_params.items()
        }
        self._features: dict[str, bool] = {name: True for name in allowlist.toggleable_features}
        self._resources: dict[str, int] = {
            resource.value: bounds.midpoint()
            for resource, bounds in allowlist.scalable_resources.items()
        }
        self.cleared_caches: list[str] = []
        self.restarts: list[str] = []

    def get_param(self, key: str) -> ParamValue | None:
        with self._lock:
            return self._params.get(key)

    def get_resource(self, resource: ResourceType) -> int | None:
        with self._lock:
            return self._resources.get(resource.value)

    def is_feature_enabled(self, feature: str) -> bool | None:
        with self._lock:
            return self._features.get(feature)

    def current_state(self) -> ConfigState:
        with self._lock:
            return self._capture()

    def apply(self, action: SuggestedAction) -> tuple[ConfigState, ConfigState]:
        with self._lock:
            pre_state = self._capture()
            if isinstance(action, AdjustParam):
                if action.key not in self._params:
                    raise RuntimeConfigError(f"Unknown runtime parameter: {action.key}")
                self._params[action.key] = action.new_value
            elif isinstance(action, ToggleFeature):
                if action.feature_name not in self._features:
                    raise RuntimeConfigError(f"Unknown runtime feature: {action.feature_name}")
                self._features[action.feature_name] = action.desired_state
            elif isinstance(action, ScaleResource):
                if action.resource.value not in self._resources:
                    raise RuntimeConfigError(f"Unknown runtime resource: {action.resource.value}")
                self._resources[action.resource.value] = action.new_value
            elif isinstance(action, RestartService):
                self.restarts.append(str(action.component))
            elif isinstance(action, ClearCache):
                self.cleared_caches.append(action.cache_name)
            elif isinstance(action, NoOp):
                pass
            else:
                raise TypeError(f"Unhandled action type: {type(action).__name__}")
            post_state = self._capture()
        LOGGER.info("[RuntimeConfig] Applied %s", action.describe())
        return pre_state, post_state

    def revert(self, action: SuggestedAction, pre_state: ConfigState) -> None:
        with self._lock:
            if isinstance(action, AdjustParam):
                previous = pre_state.params.get(action.key)
                if previous is None:
                    raise RuntimeConfigError(f"No prior value recorded for {action.key}")
                self._params[action.key] = previous
            elif isinstance(action, ToggleFeature):
                previous_flag = pre_state.features.get(action.feature_name)
                if previous_flag is None:
                    raise RuntimeConfigError(f"No prior state recorded for {action.feature_name}")
                self._features[action.feature_name] = previous_flag
            elif isinstance(action, ScaleResource):
                previous_size = pre_state.resources.get(action.resource.value)
                if previous_size is None:
                    raise RuntimeConfigError(f"No prior value recorded for {action.resource.value}")
                self._resources[action.resource.value] = previous_size
            elif isinstance(action, (RestartService, ClearCache, NoOp)):
                LOGGER.warning("[RuntimeConfig] %s cannot be reverted", action.describe())
                return
            else:
                raise TypeError(f"Unhandled action type: {type(action).__name__}")
        LOGGER.info("[RuntimeConfig] Reverted %s", action.describe())

    def _capture(self) -> ConfigState:
        return ConfigState(
            params=dict(self._params),
            features=dict(self._features),
            resources=dict(self._resources),
        )
