"""Diagnostics routines for the LLM pipes."""

from __future__ import annotations

import os
from urllib.parse import urlparse

from config.settings import PipeSettings
from diagnostics.models import DiagnosticResult, DiagnosticStatus


def probe(api_key: str | None = None, settings: PipeSettings | None = None) -> DiagnosticResult:
    """Check pipe configuration without calling the endpoint.

    Args:
        api_key: Optional API key override for testing.
        settings: Optional pipe settings; defaults are used when omitted.

    Returns:
        Diagnostic result indicating pipe readiness.
    """

    name = "pipes"
    settings = settings or PipeSettings()
    resolved_key = api_key or os.getenv("OPENAI_API_KEY")
    if not resolved_key:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details="Missing OPENAI_API_KEY",
        )

    endpoint = urlparse(settings.endpoint)
    if endpoint.scheme not in {"http", "https"} or not endpoint.netloc:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.FAIL,
            details=f"Invalid pipe endpoint: {settings.endpoint!r}",
        )

    if not settings.enable_validation:
        return DiagnosticResult(
            name=name,
            status=DiagnosticStatus.WARN,
            details="Validation pipe disabled; proposals are not bias-checked",
        )

    return DiagnosticResult(
        name=name,
        status=DiagnosticStatus.PASS,
        details=f"Pipes configured for {settings.model} at {endpoint.netloc}",
    )
