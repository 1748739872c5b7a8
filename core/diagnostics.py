"""Diagnostics routines for the core subsystem."""

from __future__ import annotations

import importlib.util
from typing import Any, Iterable, Mapping

from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe(
    breaker_state: Mapping[str, Any] | None = None,
    baselines: Iterable[Any] | None = None,
) -> DiagnosticResult:
    """Check logging readiness and summarise breaker and baseline state.

    Args:
        breaker_state: Optional persisted circuit breaker state.
        baselines: Optional persisted metric baselines.

    Returns:
        Diagnostic result indicating core readiness.
    """

    name = "core"
    from core import logging as core_logging

    logger = core_logging.logger
    if logger is None:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="Core logger failed to initialize",
        )

    rich_available = importlib.util.find_spec("rich") is not None
    parts = ["Rich logging enabled" if rich_available else "Rich logging not available (fallback)"]
    status = DiagnosticStatus.PASS

    if breaker_state is not None:
        state = str(breaker_state.get("state", "closed"))
        parts.append(f"circuit={state}")
        if state != "closed":
            status = DiagnosticStatus.WARN

    if baselines is not None:
        baseline_list = list(baselines)
        valid = sum(1 for baseline in baseline_list if getattr(baseline, "is_valid", False))
        parts.append(f"baselines valid={valid}/{len(baseline_list)}")

    return DiagnosticResult(
        name=name,
        status=status,
        details=", ".join(parts),
    )
