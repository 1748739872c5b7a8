"""Tests for the LLM pipe client."""

from __future__ import annotations

import json
from urllib import error

import pytest

from ai.pipes import (
    PipeParseFailed,
    PipeTimeout,
    PipeUnavailable,
    SelfImprovementPipes,
    extract_json,
)
from config.settings import PipeSettings


class _FakeTransport:
    def __init__(self, responses: list[object]) -> None:
        self._responses = list(responses)
        self.calls: list[str] = []

    def __call__(self, pipe: str, system: str, prompt: str) -> str:
        self.calls.append(pipe)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return str(response)


def _pipes(responses: list[object], **settings) -> tuple[SelfImprovementPipes, _FakeTransport, list[float]]:
    transport = _FakeTransport(responses)
    sleeps: list[float] = []
    pipes = SelfImprovementPipes(
        PipeSettings(**settings),
        transport=transport,
        sleep=sleeps.append,
    )
    return pipes, transport, sleeps


def test_extract_json_variants() -> None:
    assert extract_json('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json('```\n{"b": 2}\n```') == '{"b": 2}'
    assert extract_json('Sure! Here it is: {"c": 3} Hope that helps.') == '{"c": 3}'
    assert extract_json('{"d": 4}') == '{"d": 4}'
    assert extract_json("no json here") == "no json here"


def test_diagnose_parses_response() -> None:
    payload = {
        "suspected_cause": "Upstream timeouts",
        "severity": "high",
        "confidence": 0.8,
        "evidence": ["p95 doubled"],
        "recommended_action_type": "adjust_param",
        "action_target": "REQUEST_TIMEOUT_MS",
        "rationale": "Give slow requests more time",
    }
    pipes, transport, _ = _pipes([f"```json\n{json.dumps(payload)}\n```"])

    response = pipes.diagnose(trigger={}, metrics={}, baselines={}, allowlist_summary="")

    assert transport.calls == ["si-diagnosis"]
    assert response.suspected_cause == "Upstream timeouts"
    assert response.recommended_action_type == "adjust_param"
    assert response.action_target == "REQUEST_TIMEOUT_MS"
    assert response.evidence == ["p95 doubled"]
    assert pipes.last_metrics.attempts == 1


def test_missing_fields_fall_back_to_defaults() -> None:
    pipes, _, _ = _pipes(["{}"])

    response = pipes.diagnose(trigger={}, metrics={}, baselines={}, allowlist_summary="")

    assert response.recommended_action_type == "no_op"
    assert response.action_target is None
    assert response.confidence == 0.0


def test_select_action_scores() -> None:
    payload = {
        "selected_option": "option_2",
        "scores": {"effectiveness": 0.7, "risk": 0.2},
        "total_score": 0.6,
        "rationale": "lower risk",
    }
    pipes, transport, _ = _pipes([json.dumps(payload)])

    response = pipes.select_action(
        diagnosis={"suspected_cause": "x"},
        candidates=[("option_1", "Adjust A"), ("option_2", "Adjust B")],
    )

    assert transport.calls == ["si-decision"]
    assert response.selected_option == "option_2"
    assert response.scores.effectiveness == 0.7
    assert response.scores.risk == 0.2
    assert response.scores.reversibility == 0.0


def test_retries_then_succeeds() -> None:
    pipes, transport, sleeps = _pipes(
        [error.URLError("connection refused"), '{"should_proceed": true, "overall_quality": 0.9}'],
        max_retries=2,
        retry_backoff_s=0.5,
    )

    response = pipes.validate_decision(diagnosis={}, action={})

    assert response.should_proceed
    assert len(transport.calls) == 2
    assert sleeps == [0.5]
    assert pipes.last_metrics.attempts == 2


def test_retries_exhausted_raise_unavailable() -> None:
    pipes, transport, sleeps = _pipes(
        [error.URLError("down"), error.URLError("down"), error.URLError("down")],
        max_retries=2,
        retry_backoff_s=1.0,
    )

    with pytest.raises(PipeUnavailable) as excinfo:
        pipes.diagnose(trigger={}, metrics={}, baselines={}, allowlist_summary="")

    assert excinfo.value.is_unavailable
    assert len(transport.calls) == 3
    assert sleeps == [1.0, 2.0]
    assert not pipes.last_metrics.call_success


def test_timeout_raises_pipe_timeout() -> None:
    pipes, _, _ = _pipes([TimeoutError("slow")], max_retries=0, timeout_s=5.0)

    with pytest.raises(PipeTimeout) as excinfo:
        pipes.diagnose(trigger={}, metrics={}, baselines={}, allowlist_summary="")
    assert excinfo.value.timeout_s == 5.0


def test_invalid_json_raises_parse_failed() -> None:
    pipes, _, _ = _pipes(["I think you should restart it."])

    with pytest.raises(PipeParseFailed) as excinfo:
        pipes.diagnose(trigger={}, metrics={}, baselines={}, allowlist_summary="")

    assert not excinfo.value.is_unavailable
    assert pipes.last_metrics.call_success
    assert not pipes.last_metrics.parse_success


def test_validation_disabled_skips_call() -> None:
    pipes, transport, _ = _pipes([], enable_validation=False)

    response = pipes.validate_decision(diagnosis={}, action={})

    assert response.should_proceed
    assert response.overall_quality == 1.0
    assert transport.calls == []


def test_missing_api_key_is_unavailable() -> None:
    pipes = SelfImprovementPipes(PipeSettings(), api_key="")

    assert not pipes.available
    with pytest.raises(PipeUnavailable):
        pipes.diagnose(trigger={}, metrics={}, baselines={}, allowlist_summary="")


def test_synthesize_learning_recommendations() -> None:
    payload = {
        "outcome_assessment": "Timeout increases helped",
        "lessons": ["Raise timeouts before retries"],
        "recommendations": {
            "param_adjustments": [{"key": "MAX_RETRIES", "direction": "decrease", "reason": "noise"}],
            "adjust_cooldown": True,
            "new_cooldown_secs": 1800,
        },
        "confidence": 0.7,
    }
    pipes, transport, _ = _pipes([json.dumps(payload)])

    response = pipes.synthesize_learning(records=[{"action": "x"}])

    assert transport.calls == ["si-learning"]
    assert response.lessons == ["Raise timeouts before retries"]
    assert response.param_adjustments[0].key == "MAX_RETRIES"
    assert response.adjust_cooldown
    assert response.new_cooldown_secs == 1800.0
