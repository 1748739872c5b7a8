"""Command-line entry point for running diagnostics."""

from __future__ import annotations

import argparse
from pathlib import Path
import tempfile

from config.diagnostics import probe as config_probe
from diagnostics.models import DiagnosticResult
from diagnostics.runner import exit_code, format_results, run_diagnostics
from ai.diagnostics import probe as ai_probe
from core.diagnostics import probe as core_probe
from storage.diagnostics import probe as storage_probe


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""

    parser = argparse.ArgumentParser(description="Run diagnostics probes.")
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Run probes against a temporary offline directory.",
    )
    parser.add_argument(
        "--base-dir",
        type=Path,
        default=None,
        help="Optional base directory for offline diagnostics.",
    )
    return parser.parse_args(argv)


def _persisted_core_state(base_dir: Path | None) -> DiagnosticResult:
    from storage.self_improvement import SelfImprovementStore, StorageError

    if base_dir is None:
        from config import ConfigController

        config = ConfigController.get_instance().get_config()
        var_dir = Path(config.get("var_dir", "./var/")).expanduser()
    else:
        var_dir = base_dir / "var"
    db_path = var_dir / "self_improvement.db"
    if not db_path.exists():
        return core_probe()

    store = SelfImprovementStore(db_path, max_retries=0)
    try:
        return core_probe(
            breaker_state=store.load_circuit_breaker() or {},
            baselines=store.get_all_baselines(),
        )
    except StorageError:
        return core_probe()
    finally:
        store.close()


def collect_results(base_dir: Path | None = None, offline: bool = False) -> list[DiagnosticResult]:
    """Run every probe and return the results."""

    if offline and base_dir is None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            tmp_base = Path(tmp_dir)

            config_dir = tmp_base / "config"
            config_dir.mkdir(parents=True, exist_ok=True)
            (config_dir / "default.yaml").write_text("{}", encoding="utf-8")

            def config_probe_offline():
                return config_probe(base_dir=tmp_base)

            def ai_probe_offline():
                return ai_probe(api_key="offline-test")

            def core_probe_offline():
                return core_probe()

            def storage_probe_offline():
                return storage_probe(base_dir=tmp_base)

            return run_diagnostics(
                [
                    config_probe_offline,
                    ai_probe_offline,
                    core_probe_offline,
                    storage_probe_offline,
                ]
            )

    def config_probe_with_base():
        return config_probe(base_dir=base_dir)

    def ai_probe_live():
        from config import ConfigController
        from config.settings import SelfImprovementConfig

        settings = SelfImprovementConfig.from_config(ConfigController.get_instance().get_config())
        return ai_probe(settings=settings.pipes)

    def core_probe_live():
        return _persisted_core_state(base_dir)

    def storage_probe_with_base():
        return storage_probe(base_dir=base_dir)

    return run_diagnostics(
        [
            config_probe_with_base,
            ai_probe_live,
            core_probe_live,
            storage_probe_with_base,
        ]
    )


def main(argv: list[str] | None = None) -> int:
    """Run diagnostics and return an exit code."""

    args = parse_args(argv)
    results = collect_results(base_dir=args.base_dir, offline=args.offline)
    print(format_results(results))
    return exit_code(results)


if __name__ == "__main__":
    raise SystemExit(main())
