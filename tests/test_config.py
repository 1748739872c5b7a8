"""Tests for config loading, environment overrides and typed settings."""

from __future__ import annotations

from pathlib import Path

from config.controller import ConfigController
from config.settings import SelfImprovementConfig
from core.models import RewardWeights, Severity


def _reset_singletons() -> None:
    ConfigController._instance = None


def _write_config(tmp_path: Path, text: str) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "default.yaml").write_text(text, encoding="utf-8")


def test_yaml_values_flow_into_settings(tmp_path: Path, monkeypatch) -> None:
    _write_config(
        tmp_path,
        "\n".join(
            [
                "var_dir: ./state/",
                "self_improvement:",
                "  enabled: true",
                "  monitor:",
                "    check_interval_secs: 60",
                "  analyzer:",
                "    min_action_severity: high",
                "  executor:",
                "    max_actions_per_hour: 5",
                "  learner:",
                "    reward_weights:",
                "      error_rate: 0.6",
            ]
        ),
    )
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    settings = SelfImprovementConfig.from_config(
        ConfigController(environ={}).get_config()
    )

    assert settings.enabled
    assert settings.var_dir == "./state/"
    assert settings.monitor.check_interval_secs == 60.0
    assert settings.monitor.min_sample_size == 50
    assert settings.analyzer.min_action_severity is Severity.HIGH
    assert settings.executor.max_actions_per_hour == 5
    assert settings.executor.cooldown_secs == 3600.0
    assert settings.learner.reward_weights == RewardWeights(error_rate=0.6, latency=0.3, quality=0.2)
    _reset_singletons()


def test_environment_overrides_yaml(tmp_path: Path, monkeypatch) -> None:
    _write_config(tmp_path, "self_improvement:\n  enabled: false\n")
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    config = ConfigController(
        environ={
            "SELF_IMPROVEMENT_ENABLED": "yes",
            "SI_MAX_ACTIONS_PER_HOUR": "7",
            "SI_REQUIRE_APPROVAL": "true",
            "SI_MIN_SAMPLES": "not-a-number",
        }
    ).get_config()
    settings = SelfImprovementConfig.from_config(config)

    assert settings.enabled
    assert settings.executor.max_actions_per_hour == 7
    assert settings.executor.require_approval
    assert settings.baseline.min_samples == 100
    _reset_singletons()


def test_missing_config_uses_defaults(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    settings = SelfImprovementConfig.from_config(ConfigController(environ={}).get_config())

    assert not settings.enabled
    assert settings.executor.stabilization_secs == 120.0
    assert settings.circuit_breaker.failure_threshold == 3
    assert settings.learner.reward_weights is None
    _reset_singletons()


def test_legacy_enabled_key(tmp_path: Path, monkeypatch) -> None:
    _write_config(tmp_path, "self_improvement_enabled: true\n")
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    config = ConfigController(environ={}).get_config()

    assert config["self_improvement"]["enabled"] is True
    assert "self_improvement_enabled" not in config
    _reset_singletons()


def test_override_file_is_merged(tmp_path: Path, monkeypatch) -> None:
    _write_config(tmp_path, "self_improvement:\n  executor:\n    cooldown_secs: 100\n    max_actions_per_hour: 2\n")
    (tmp_path / "config" / "override.yaml").write_text(
        "self_improvement:\n  executor:\n    cooldown_secs: 50\n", encoding="utf-8"
    )
    monkeypatch.chdir(tmp_path)
    _reset_singletons()

    settings = SelfImprovementConfig.from_config(ConfigController(environ={}).get_config())

    assert settings.executor.cooldown_secs == 50.0
    assert settings.executor.max_actions_per_hour == 2
    _reset_singletons()


def test_settings_round_trip_to_dict() -> None:
    payload = SelfImprovementConfig().to_dict()

    assert payload["analyzer"]["min_action_severity"] == "warning"
    assert payload["executor"]["require_approval"] is False
