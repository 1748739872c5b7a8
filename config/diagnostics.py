"""Diagnostics routines for the configuration subsystem."""

from __future__ import annotations

from pathlib import Path

import yaml

from config.settings import SelfImprovementConfig
from diagnostics.models import DiagnosticResult, DiagnosticStatus


def sanity_warnings(settings: SelfImprovementConfig) -> list[str]:
    """Return human-readable problems with otherwise loadable settings."""

    warnings = []
    baseline = settings.baseline
    if not 0.0 < baseline.ema_alpha <= 1.0:
        warnings.append(f"baseline.ema_alpha {baseline.ema_alpha} outside (0, 1]")
    if baseline.warning_multiplier <= 1.0:
        warnings.append("baseline.warning_multiplier should be above 1.0")
    if baseline.critical_multiplier <= baseline.warning_multiplier:
        warnings.append("baseline.critical_multiplier should exceed warning_multiplier")
    if baseline.min_samples < 1:
        warnings.append("baseline.min_samples must be positive")
    if settings.monitor.check_interval_secs <= 0:
        warnings.append("monitor.check_interval_secs must be positive")
    if settings.executor.max_actions_per_hour <= 0:
        warnings.append("executor.max_actions_per_hour disables the rate limit")
    if not 0.0 <= settings.executor.regression_tolerance < 1.0:
        warnings.append("executor.regression_tolerance should be within [0, 1)")
    if settings.circuit_breaker.failure_threshold < 1:
        warnings.append("circuit_breaker.failure_threshold must be at least 1")
    if settings.pipes.timeout_s <= 0:
        warnings.append("pipes.timeout_s must be positive")
    return warnings


def probe(base_dir: Path | None = None) -> DiagnosticResult:
    """Validate that the configuration files load and hold sane values.

    Args:
        base_dir: Optional base directory for offline testing.

    Returns:
        Diagnostic result indicating config readiness.
    """

    name = "config"
    try:
        root_dir = base_dir if base_dir is not None else Path.cwd()
        config_dir = root_dir / "config"
        default_config = config_dir / "default.yaml"
        override_config = config_dir / "override.yaml"

        if not config_dir.exists():
            return DiagnosticResult(
                name=name,
                status=DiagnosticStatus.FAIL,
                details=f"Config directory missing at {config_dir}",
            )

        if not default_config.exists():
            return DiagnosticResult(
                name=name,
                status=DiagnosticStatus.FAIL,
                details=f"Missing default config at {default_config}",
            )

        config = yaml.safe_load(default_config.read_text(encoding="utf-8")) or {}
        if override_config.exists():
            override = yaml.safe_load(override_config.read_text(encoding="utf-8")) or {}
            config.update(override)

        settings = SelfImprovementConfig.from_config(config)
        warnings = sanity_warnings(settings)
        if warnings:
            return DiagnosticResult(
                name=name,
                status=DiagnosticStatus.WARN,
                details="; ".join(warnings),
            )

        state = "enabled" if settings.enabled else "disabled"
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.PASS,
            details=f"Config loaded from {config_dir} (self-improvement {state})",
        )
    except OSError as exc:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Config access failed: {exc}",
        )
    except (yaml.YAMLError, ValueError, TypeError) as exc:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Config invalid: {exc}",
        )
