"""Action allowlist: the safety gate every mutation passes before it is applied."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from core.actions import (
    AdjustParam,
    BooleanValue,
    ClearCache,
    DurationMsValue,
    FloatValue,
    IntegerValue,
    NoOp,
    ParamValue,
    ResourceType,
    RestartService,
    ScaleResource,
    StringValue,
    SuggestedAction,
    ToggleFeature,
)

FLOAT_EPSILON = 1e-9


class AllowlistError(Exception):
    """Raised when a proposed action falls outside the allowlist."""


class ParamNotAllowed(AllowlistError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Parameter not in allowlist: {key}")
        self.key = key


class FeatureNotToggleable(AllowlistError):
    def __init__(self, feature: str) -> None:
        super().__init__(f"Feature not toggleable: {feature}")
        self.feature = feature


class ResourceNotScalable(AllowlistError):
    def __init__(self, resource: ResourceType) -> None:
        super().__init__(f"Resource not scalable: {resource.value}")
        self.resource = resource


class ValueOutOfBounds(AllowlistError):
    def __init__(self, value: int, minimum: int, maximum: int) -> None:
        super().__init__(f"Value {value} out of bounds [{minimum}, {maximum}]")
        self.value = value
        self.min = minimum
        self.max = maximum


class FloatValueOutOfBounds(AllowlistError):
    def __init__(self, value: float, minimum: float, maximum: float) -> None:
        super().__init__(f"Value {value} out of bounds [{minimum}, {maximum}]")
        self.value = value
        self.min = minimum
        self.max = maximum


class StepTooLarge(AllowlistError):
    def __init__(self, change: int, max_step: int) -> None:
        super().__init__(f"Change {change} exceeds max step {max_step}")
        self.change = change
        self.max_step = max_step


class FloatStepTooLarge(AllowlistError):
    def __init__(self, change: float, max_step: float) -> None:
        super().__init__(f"Change {change} exceeds max step {max_step}")
        self.change = change
        self.max_step = max_step


class TypeMismatch(AllowlistError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"Type mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


def _integral(value: ParamValue) -> int | None:
    if isinstance(value, (IntegerValue, DurationMsValue)):
        return int(value.value)
    return None


@dataclass
class ParamBounds:
    """Bounds for one adjustable parameter.

    ``current_value`` mirrors the live runtime value; only the executor moves it.
    """

    current_value: ParamValue
    min: ParamValue
    max: ParamValue
    step: ParamValue
    description: str = ""

    @classmethod
    def for_integer(cls, current: int, minimum: int, maximum: int, step: int, description: str = "") -> "ParamBounds":
        return cls(
            IntegerValue(current),
            IntegerValue(minimum),
            IntegerValue(maximum),
            IntegerValue(step),
            description,
        )

    @classmethod
    def for_float(cls, current: float, minimum: float, maximum: float, step: float, description: str = "") -> "ParamBounds":
        return cls(
            FloatValue(current),
            FloatValue(minimum),
            FloatValue(maximum),
            FloatValue(step),
            description,
        )

    def validate_value(self, value: ParamValue) -> None:
        if type(value) is not type(self.min):
            raise TypeMismatch(self.min.kind, value.kind)
        if isinstance(value, (IntegerValue, DurationMsValue)):
            low, high, v = _integral(self.min), _integral(self.max), int(value.value)
            if v < low or v > high:
                raise ValueOutOfBounds(v, low, high)
            return
        if isinstance(value, FloatValue):
            low, high, v = float(self.min.value), float(self.max.value), float(value.value)
            if v < low - FLOAT_EPSILON or v > high + FLOAT_EPSILON:
                raise FloatValueOutOfBounds(v, low, high)
            return
        if isinstance(value, (StringValue, BooleanValue)):
            raise TypeMismatch("numeric", value.kind)
        raise TypeError(f"Unhandled parameter value: {type(value).__name__}")

    def validate_step(self, old: ParamValue, new: ParamValue) -> None:
        if type(old) is not type(new):
            raise TypeMismatch(old.kind, new.kind)
        if type(new) is not type(self.step):
            raise TypeMismatch(self.step.kind, new.kind)
        if isinstance(new, (IntegerValue, DurationMsValue)):
            change = abs(int(new.value) - int(old.value))
            max_step = int(self.step.value)
            if change > max_step:
                raise StepTooLarge(change, max_step)
            return
        if isinstance(new, FloatValue):
            change = abs(float(new.value) - float(old.value))
            max_step = float(self.step.value)
            if change > max_step + FLOAT_EPSILON:
                raise FloatStepTooLarge(change, max_step)
            return
        if isinstance(new, (StringValue, BooleanValue)):
            raise TypeMismatch("numeric", new.kind)
        raise TypeError(f"Unhandled parameter value: {type(new).__name__}")

    def update_current(self, value: ParamValue) -> None:
        self.validate_value(value)
        self.current_value = value


@dataclass(frozen=True)
class ResourceBounds:
    """Unsigned bounds for a scalable resource."""

    min: int
    max: int
    step: int

    def validate_value(self, value: int) -> None:
        if value < 0 or value < self.min or value > self.max:
            raise ValueOutOfBounds(value, self.min, self.max)

    def validate_step(self, old: int, new: int) -> None:
        change = abs(new - old)
        if change > self.step:
            raise StepTooLarge(change, self.step)

    def midpoint(self) -> int:
        return self.min + (self.max - self.min) // 2


@dataclass(frozen=True)
class AllowlistSummary:
    param_count: int
    feature_count: int
    resource_count: int
    param_keys: tuple[str, ...]
    features: tuple[str, ...]
    resources: tuple[str, ...]

    def __str__(self) -> str:
        return (
            f"Parameters ({self.param_count}): {', '.join(self.param_keys)}\n"
            f"Toggleable features ({self.feature_count}): {', '.join(self.features)}\n"
            f"Scalable resources ({self.resource_count}): {', '.join(self.resources)}"
        )


@dataclass
class ActionAllowlist:
    """Static registry of parameters, features and resources the loop may touch."""

    adjustable_params: dict[str, ParamBounds] = field(default_factory=dict)
    toggleable_features: set[str] = field(default_factory=set)
    scalable_resources: dict[ResourceType, ResourceBounds] = field(default_factory=dict)

    def validate(self, action: SuggestedAction) -> None:
        """Raise :class:`AllowlistError` when ``action`` is outside the allowlist.

        Pure check: nothing in the allowlist changes.
        """

        if isinstance(action, AdjustParam):
            bounds = self.adjustable_params.get(action.key)
            if bounds is None:
                raise ParamNotAllowed(action.key)
            bounds.validate_value(action.new_value)
            bounds.validate_step(action.old_value, action.new_value)
            return
        if isinstance(action, ToggleFeature):
            if action.feature_name not in self.toggleable_features:
                raise FeatureNotToggleable(action.feature_name)
            return
        if isinstance(action, ScaleResource):
            resource_bounds = self.scalable_resources.get(action.resource)
            if resource_bounds is None:
                raise ResourceNotScalable(action.resource)
            resource_bounds.validate_value(action.new_value)
            resource_bounds.validate_step(action.old_value, action.new_value)
            return
        if isinstance(action, (RestartService, ClearCache, NoOp)):
            return
        raise TypeError(f"Unhandled action type: {type(action).__name__}")

    def is_allowed(self, action: SuggestedAction) -> bool:
        try:
            self.validate(action)
        except AllowlistError:
            return False
        return True

    def add_param(self, key: str, bounds: ParamBounds) -> None:
        self.adjustable_params[key] = bounds

    def add_toggleable_feature(self, feature: str) -> None:
        self.toggleable_features.add(feature)

    def add_resource(self, resource: ResourceType, bounds: ResourceBounds) -> None:
        self.scalable_resources[resource] = bounds

    def get_param_bounds(self, key: str) -> ParamBounds | None:
        return self.adjustable_params.get(key)

    def get_resource_bounds(self, resource: ResourceType) -> ResourceBounds | None:
        return self.scalable_resources.get(resource)

    def is_feature_toggleable(self, feature: str) -> bool:
        return feature in self.toggleable_features

    def update_param_current(self, key: str, value: ParamValue) -> None:
        bounds = self.adjustable_params.get(key)
        if bounds is None:
            raise ParamNotAllowed(key)
        bounds.update_current(value)

    def summary(self) -> AllowlistSummary:
        return AllowlistSummary(
            param_count=len(self.adjustable_params),
            feature_count=len(self.toggleable_features),
            resource_count=len(self.scalable_resources),
            param_keys=tuple(sorted(self.adjustable_params)),
            features=tuple(sorted(self.toggleable_features)),
            resources=tuple(sorted(resource.value for resource in self.scalable_resources)),
        )

    def describe(self) -> list[dict[str, Any]]:
        """Rows describing each parameter, used by prompts and the operator CLI."""

        rows = []
        for key in sorted(self.adjustable_params):
            bounds = self.adjustable_params[key]
            rows.append(
                {
                    "key": key,
                    "current": str(bounds.current_value),
                    "min": str(bounds.min),
                    "max": str(bounds.max),
                    "step": str(bounds.step),
                    "description": bounds.description,
                }
            )
        return rows

    def copy(self) -> "ActionAllowlist":
        return ActionAllowlist(
            adjustable_params={key: replace(bounds) for key, bounds in self.adjustable_params.items()},
            toggleable_features=set(self.toggleable_features),
            scalable_resources=dict(self.scalable_resources),
        )

    @classmethod
    def default_allowlist(cls) -> "ActionAllowlist":
        allowlist = cls()
        allowlist.add_param(
            "REQUEST_TIMEOUT_MS",
            ParamBounds.for_integer(30000, 5000, 60000, 5000, "Timeout for upstream LLM requests"),
        )
        allowlist.add_param(
            "MAX_RETRIES",
            ParamBounds.for_integer(3, 1, 10, 1, "Retries for failed upstream requests"),
        )
        allowlist.add_param(
            "RETRY_DELAY_MS",
            ParamBounds.for_integer(1000, 500, 5000, 500, "Delay between retries"),
        )
        allowlist.add_param(
            "DATABASE_MAX_CONNECTIONS",
            ParamBounds.for_integer(5, 1, 50, 5, "Database connection pool size"),
        )
        allowlist.add_param(
            "REFLECTION_QUALITY_THRESHOLD",
            ParamBounds.for_float(0.8, 0.5, 0.95, 0.05, "Minimum quality before reflection retries"),
        )
        allowlist.add_param(
            "GOT_PRUNE_THRESHOLD",
            ParamBounds.for_float(0.3, 0.1, 0.7, 0.1, "Score below which graph nodes are pruned"),
        )
        allowlist.add_param(
            "SI_EMA_ALPHA",
            ParamBounds.for_float(0.1, 0.05, 0.3, 0.05, "Baseline EMA smoothing factor"),
        )
        allowlist.add_param(
            "SI_WARNING_MULTIPLIER",
            ParamBounds.for_float(1.5, 1.2, 2.0, 0.1, "Baseline warning multiplier"),
        )
        allowlist.add_param(
            "SI_CRITICAL_MULTIPLIER",
            ParamBounds.for_float(2.0, 1.5, 3.0, 0.2, "Baseline critical multiplier"),
        )

        for feature in (
            "ENABLE_AUTO_REFLECTION",
            "ENABLE_DETECTION_POST_PROCESS",
            "ENABLE_GOT_AGGRESSIVE_PRUNING",
            "ENABLE_VERBOSE_LOGGING",
            "ENABLE_FALLBACK_TRACKING",
            "ENABLE_QUALITY_ASSESSMENT",
        ):
            allowlist.add_toggleable_feature(feature)

        allowlist.add_resource(ResourceType.MAX_CONCURRENT_REQUESTS, ResourceBounds(1, 20, 2))
        allowlist.add_resource(ResourceType.CONNECTION_POOL_SIZE, ResourceBounds(1, 50, 5))
        allowlist.add_resource(ResourceType.CACHE_SIZE, ResourceBounds(100, 10000, 100))
        allowlist.add_resource(ResourceType.TIMEOUT_MS, ResourceBounds(5000, 60000, 5000))
        allowlist.add_resource(ResourceType.MAX_RETRIES, ResourceBounds(1, 10, 1))
        allowlist.add_resource(ResourceType.RETRY_DELAY_MS, ResourceBounds(500, 5000, 500))
        return allowlist
