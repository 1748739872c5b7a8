"""Diagnostics routines for the storage subsystem."""

from __future__ import annotations

from pathlib import Path

from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe(base_dir: Path | None = None) -> DiagnosticResult:
    """Open the self-improvement store and run a liveness query.

    Args:
        base_dir: Optional base directory for offline testing.

    Returns:
        Diagnostic result indicating storage readiness.
    """

    from storage.self_improvement import SelfImprovementStore, StorageError

    name = "storage"
    store = None
    try:
        if base_dir is None:
            from config import ConfigController

            config = ConfigController.get_instance().get_config()
            var_dir = Path(config.get("var_dir", "./var/")).expanduser()
        else:
            var_dir = base_dir / "var"

        store = SelfImprovementStore(var_dir / "self_improvement.db", max_retries=0)
        store.health_check()
        breaker = store.load_circuit_breaker()
        baselines = store.get_all_baselines()
        details = (
            f"Store ready at {store.db_path} "
            f"(breaker={'saved' if breaker else 'none'}, baselines={len(baselines)})"
        )
        return DiagnosticResult(name=name, status=DiagnosticStatus.PASS, details=details)
    except OSError as exc:
        details = f"Filesystem access failed: {exc}"
        return DiagnosticResult(name=name, status=DiagnosticStatus.FAIL, details=details)
    except StorageError as exc:
        details = f"SQLite probe failed: {exc}"
        return DiagnosticResult(name=name, status=DiagnosticStatus.FAIL, details=details)
    finally:
        if store is not None:
            store.close()
