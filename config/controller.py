"""Configuration controller for YAML-based settings."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from core.logging import logger as LOGGER


@dataclass(frozen=True)
class ConfigPaths:
    """Filesystem paths for configuration files."""

    config_dir: Path
    config_file: Path
    override_file: Path


def _parse_bool(raw: str) -> bool:
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


# env var -> (section path, key, parser)
ENV_OVERRIDES: dict[str, tuple[tuple[str, ...], str, Callable[[str], Any]]] = {
    "SELF_IMPROVEMENT_ENABLED": ((), "enabled", _parse_bool),
    "SI_CHECK_INTERVAL_SECS": (("monitor",), "check_interval_secs", float),
    "SI_MIN_SAMPLE_SIZE": (("monitor",), "min_sample_size", int),
    "SI_MAX_ACTIONS_PER_HOUR": (("executor",), "max_actions_per_hour", int),
    "SI_COOLDOWN_SECS": (("executor",), "cooldown_secs", float),
    "SI_STABILIZATION_SECS": (("executor",), "stabilization_secs", float),
    "SI_REQUIRE_APPROVAL": (("executor",), "require_approval", _parse_bool),
    "SI_ROLLBACK_ON_REGRESSION": (("executor",), "rollback_on_regression", _parse_bool),
    "SI_FAILURE_THRESHOLD": (("circuit_breaker",), "failure_threshold", int),
    "SI_SUCCESS_THRESHOLD": (("circuit_breaker",), "success_threshold", int),
    "SI_RECOVERY_TIMEOUT_SECS": (("circuit_breaker",), "recovery_timeout_secs", float),
    "SI_EMA_ALPHA": (("baseline",), "ema_alpha", float),
    "SI_MIN_SAMPLES": (("baseline",), "min_samples", int),
    "SI_ENABLE_VALIDATION": (("pipes",), "enable_validation", _parse_bool),
}


class ConfigController:
    """Singleton controller for loading configuration."""

    _instance: "ConfigController | None" = None

    def __init__(self, config_file: str = "default.yaml", environ: Mapping[str, str] | None = None) -> None:
        if ConfigController._instance is not None:
            raise RuntimeError("You cannot create another ConfigController class")

        config_dir = Path("config")
        self.paths = ConfigPaths(
            config_dir=config_dir,
            config_file=config_dir / config_file,
            override_file=config_dir / "override.yaml",
        )
        self._environ = environ if environ is not None else os.environ
        self.config: dict[str, Any] = {}
        self.load_config()
        ConfigController._instance = self

    @classmethod
    def get_instance(cls) -> "ConfigController":
        """Return the singleton instance of the controller."""

        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def load_config(self) -> None:
        """Load configuration from default and override YAML files."""

        config: dict[str, Any] = {}
        if self.paths.config_file.exists():
            with self.paths.config_file.open("r", encoding="utf-8") as file:
                config = yaml.safe_load(file) or {}
        else:
            LOGGER.warning("[Config] %s not found; using built-in defaults.", self.paths.config_file)

        if self.paths.override_file.exists():
            with self.paths.override_file.open("r", encoding="utf-8") as file:
                override_config = yaml.safe_load(file) or {}
            if override_config:
                config = self._deep_merge(config, override_config)

        self.config = self._normalize_config(config)

    def get_config(self) -> dict[str, Any]:
        """Return the currently loaded configuration."""

        return dict(self.config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge dictionaries, overriding base values with override values."""

        merged = dict(base)
        for key, value in override.items():
            if (
                key in merged
                and isinstance(merged[key], dict)
                and isinstance(value, dict)
            ):
                merged[key] = self._deep_merge(merged[key], value)
            else:
                merged[key] = value
        return merged

    def _normalize_config(self, config: dict[str, Any]) -> dict[str, Any]:
        """Ensure the self_improvement section exists and apply SI_* environment overrides."""

        normalized = dict(config)
        si_cfg = dict(normalized.get("self_improvement") or {})
        for section in ("monitor", "analyzer", "executor", "learner", "circuit_breaker", "baseline", "pipes"):
            si_cfg[section] = dict(si_cfg.get(section) or {})

        # Legacy flat key from the first config layout.
        if "self_improvement_enabled" in normalized and "enabled" not in si_cfg:
            si_cfg["enabled"] = bool(normalized.pop("self_improvement_enabled"))

        for env_name, (path, key, parser) in ENV_OVERRIDES.items():
            raw = self._environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                value = parser(raw)
            except ValueError:
                LOGGER.warning("[Config] Ignoring invalid %s=%r", env_name, raw)
                continue
            target = si_cfg
            for section in path:
                target = target[section]
            target[key] = value

        si_cfg["enabled"] = bool(si_cfg.get("enabled", False))
        normalized["self_improvement"] = si_cfg
        return normalized
