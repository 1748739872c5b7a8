"""Tests for core logging helpers."""

from __future__ import annotations

import logging

from core import logging as core_logging


def test_set_level_accepts_names() -> None:
    previous = core_logging.logger.level
    try:
        assert core_logging.set_level("debug") == logging.DEBUG
        assert core_logging.logger.level == logging.DEBUG
        assert core_logging.set_level("not-a-level") == logging.INFO
    finally:
        core_logging.logger.setLevel(previous)


def test_file_logging_mirrors_loop_logs(tmp_path) -> None:
    log_path = tmp_path / "log" / "self_improvement.log"

    core_logging.enable_file_logging(log_path)
    try:
        core_logging.logger.warning("[SI] cycle abandoned: test")
        core_logging.log_transition("CircuitBreaker", "closed", "open", "3 consecutive failures")
    finally:
        core_logging.disable_file_logging()

    text = log_path.read_text(encoding="utf-8")
    assert "[SI] cycle abandoned: test" in text
    assert "[CircuitBreaker] closed -> open (3 consecutive failures)" in text
