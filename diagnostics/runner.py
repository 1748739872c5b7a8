"""Diagnostics runner utilities."""

from __future__ import annotations

from collections import Counter
from typing import Callable, Iterable

from core.logging import logger as LOGGER
from diagnostics.models import DiagnosticResult, DiagnosticStatus

Probe = Callable[[], DiagnosticResult]


def format_results(results: Iterable[DiagnosticResult]) -> str:
    """Return the operator-facing report, one probe per line plus a tally."""

    results = list(results)
    lines = ["Self-improvement diagnostics", "-" * 60]
    lines.extend(f"[{result.status.value}] {result.name}: {result.details}" for result in results)
    lines.append("-" * 60)
    counts = Counter(result.status for result in results)
    lines.append(
        " ".join(f"{status.value}={counts.get(status, 0)}" for status in DiagnosticStatus)
    )
    return "\n".join(lines)


def exit_code(results: Iterable[DiagnosticResult]) -> int:
    """1 when any probe failed; warnings alone still exit 0."""

    return 1 if any(result.status is DiagnosticStatus.FAIL for result in results) else 0


def run_diagnostics(probes: Iterable[Probe]) -> list[DiagnosticResult]:
    """Run probes in order; a probe that raises is reported as a failure."""

    results: list[DiagnosticResult] = []
    for probe in probes:
        name = getattr(probe, "__name__", "unknown_probe")
        try:
            result = probe()
        except Exception as exc:  # noqa: BLE001 - one broken probe must not hide the rest
            LOGGER.exception("[Diagnostics] Probe %s raised", name)
            result = DiagnosticResult(
                name=name,
                status=DiagnosticStatus.FAIL,
                details=f"Probe raised exception: {exc}",
            )
        results.append(result)
    return results
