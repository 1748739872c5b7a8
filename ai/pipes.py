"""LLM pipes used by the analyzer and learner.

Each pipe is a single chat-completions call with its own system instructions.
Calls carry a timeout and are retried with exponential backoff. Once retries are
exhausted, the failure surfaces as a :class:`PipeError` for the caller to handle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
import socket
import time
from typing import Any, Callable, Iterable, Mapping
from urllib import error, request

from config.settings import PipeSettings
from core.logging import logger as LOGGER

Transport = Callable[[str, str, str], str]


class PipeError(Exception):
    """Base class for pipe failures."""

    def __init__(self, pipe: str, message: str) -> None:
        super().__init__(message)
        self.pipe = pipe

    @property
    def is_unavailable(self) -> bool:
        return False


class PipeUnavailable(PipeError):
    def __init__(self, pipe: str, message: str) -> None:
        super().__init__(pipe, f"Pipe '{pipe}' unavailable: {message}")

    @property
    def is_unavailable(self) -> bool:
        return True


class PipeTimeout(PipeError):
    def __init__(self, pipe: str, timeout_s: float) -> None:
        super().__init__(pipe, f"Pipe '{pipe}' timed out after {timeout_s:.1f}s")
        self.timeout_s = timeout_s

    @property
    def is_unavailable(self) -> bool:
        return True


class PipeParseFailed(PipeError):
    def __init__(self, pipe: str, message: str) -> None:
        super().__init__(pipe, f"Failed to parse response from '{pipe}': {message}")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DiagnosisResponse:
    suspected_cause: str
    severity: str
    confidence: float
    evidence: list[str]
    recommended_action_type: str
    action_target: str | None
    rationale: str


@dataclass(frozen=True)
class ActionScores:
    effectiveness: float = 0.0
    risk: float = 1.0
    reversibility: float = 0.0
    historical_success: float = 0.0


@dataclass(frozen=True)
class ActionSelectionResponse:
    selected_option: str
    scores: ActionScores
    total_score: float
    rationale: str
    alternatives_considered: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationResponse:
    should_proceed: bool
    overall_quality: float
    biases_detected: list[dict[str, Any]] = field(default_factory=list)
    fallacies_detected: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> str:
        findings = [
            str(item.get("bias_type") or item.get("fallacy_type") or "unknown")
            for item in (*self.biases_detected, *self.fallacies_detected)
        ]
        if not findings and not self.warnings:
            return f"quality={self.overall_quality:.2f}"
        return f"quality={self.overall_quality:.2f} findings={findings} warnings={self.warnings}"


@dataclass(frozen=True)
class ParamAdjustment:
    key: str
    direction: str
    reason: str


@dataclass(frozen=True)
class LearningResponse:
    outcome_assessment: str
    root_cause_accuracy: float
    action_effectiveness: float
    lessons: list[str]
    param_adjustments: list[ParamAdjustment]
    adjust_cooldown: bool
    new_cooldown_secs: float | None
    confidence: float


@dataclass(frozen=True)
class PipeCallMetrics:
    pipe_name: str
    latency_ms: float
    attempts: int
    call_success: bool
    parse_success: bool


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

DIAGNOSIS_SYSTEM = (
    "You diagnose health regressions in an LLM reasoning service and recommend "
    "one safe, reversible configuration action. Return ONLY valid JSON."
)
DECISION_SYSTEM = (
    "You select the best remediation from a fixed list of candidate actions, "
    "weighing effectiveness, risk, reversibility and history. Return ONLY valid JSON."
)
DETECTION_SYSTEM = (
    "You audit a proposed remediation for cognitive biases and logical fallacies. "
    "Return ONLY valid JSON."
)
LEARNING_SYSTEM = (
    "You review executed remediations and their measured effect, and distil "
    "short, concrete lessons. Return ONLY valid JSON."
)

DIAGNOSIS_PROMPT_TEMPLATE = """A health trigger fired in the self-improvement monitor.
Return JSON with keys: suspected_cause, severity, confidence, evidence,
recommended_action_type, action_target, rationale.
Rules:
- severity: one of info, warning, high, critical.
- confidence: number between 0 and 1.
- evidence: short list of observations supporting the cause.
- recommended_action_type: one of adjust_param, toggle_feature, scale_resource,
  restart_service, clear_cache, no_op.
- action_target: parameter, feature or resource name from the allowlist, or null.
- Prefer reversible actions.

Trigger: {trigger}
Current metrics: {metrics}
Baselines: {baselines}
Allowlist:
{allowlist}
"""

DECISION_PROMPT_TEMPLATE = """Choose one remediation for the diagnosis below.
Return JSON with keys: selected_option, scores, total_score, rationale,
alternatives_considered.
Rules:
- selected_option: the exact label of one candidate.
- scores: object with effectiveness, risk, reversibility, historical_success (0-1).
- total_score: number between 0 and 1.

Diagnosis: {diagnosis}
Candidates:
{candidates}
Historical effectiveness: {history}
Recent lessons: {lessons}
"""

DETECTION_PROMPT_TEMPLATE = """Validate this diagnosis and proposed action.
Return JSON with keys: biases_detected, fallacies_detected, overall_quality,
should_proceed, warnings.
Check for confirmation bias, anchoring, hasty generalization (too few samples),
false cause and bandwagon reasoning.
- biases_detected / fallacies_detected: lists of objects with a type, severity (1-5)
  and explanation.
- should_proceed: false when the reasoning is unsound.

Diagnosis: {diagnosis}
Proposed action: {action}
"""

LEARNING_PROMPT_TEMPLATE = """Review these executed remediations.
Return JSON with keys: outcome_assessment, root_cause_accuracy, action_effectiveness,
lessons, recommendations, confidence.
- lessons: short list of concrete takeaways for future action selection.
- recommendations: object with param_adjustments (list of key, direction, reason),
  adjust_cooldown (bool) and new_cooldown_secs (number or null).

Actions: {records}
Effectiveness: {effectiveness}
"""


def extract_json(completion: str) -> str:
    """Pull a JSON object out of a completion that may wrap it in prose or fences."""

    start = completion.find("```json")
    if start != -1:
        end = completion.find("```", start + 7)
        if end != -1:
            return completion[start + 7 : end].strip()

    start = completion.find("```")
    if start != -1:
        body_start = completion.find("\n", start + 3)
        body_start = start + 3 if body_start == -1 else body_start + 1
        end = completion.find("```", body_start)
        if end != -1:
            return completion[body_start:end].strip()

    start = completion.find("{")
    end = completion.rfind("}")
    if start != -1 and end > start:
        return completion[start : end + 1]
    return completion


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if value in (None, ""):
        return []
    return [value]


class SelfImprovementPipes:
    """Chat-completions client for the diagnosis, decision, detection and learning pipes."""

    def __init__(
        self,
        settings: PipeSettings | None = None,
        *,
        api_key: str | None = None,
        transport: Transport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or PipeSettings()
        self._api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY", "").strip()
        self._transport = transport or self._call_openai
        self._sleep = sleep
        self._uses_network = transport is None
        self.last_metrics: PipeCallMetrics | None = None

    @property
    def settings(self) -> PipeSettings:
        return self._settings

    @property
    def available(self) -> bool:
        return not self._uses_network or bool(self._api_key)

    # -- public pipes ------------------------------------------------------

    def diagnose(
        self,
        *,
        trigger: Mapping[str, Any],
        metrics: Mapping[str, Any],
        baselines: Mapping[str, Any],
        allowlist_summary: str,
    ) -> DiagnosisResponse:
        prompt = DIAGNOSIS_PROMPT_TEMPLATE.format(
            trigger=self._clip_text(json.dumps(trigger)),
            metrics=self._clip_text(json.dumps(metrics)),
            baselines=self._clip_text(json.dumps(baselines)),
            allowlist=self._clip_text(allowlist_summary, limit=2000),
        )
        payload = self._call_json(self._settings.diagnosis_pipe, DIAGNOSIS_SYSTEM, prompt)
        return DiagnosisResponse(
            suspected_cause=str(payload.get("suspected_cause") or "Unable to determine cause"),
            severity=str(payload.get("severity") or "info"),
            confidence=_as_float(payload.get("confidence"), 0.0),
            evidence=[str(item) for item in _as_list(payload.get("evidence"))],
            recommended_action_type=str(payload.get("recommended_action_type") or "no_op"),
            action_target=(str(payload["action_target"]) if payload.get("action_target") else None),
            rationale=str(payload.get("rationale") or ""),
        )

    def select_action(
        self,
        *,
        diagnosis: Mapping[str, Any],
        candidates: Iterable[tuple[str, str]],
        history: Iterable[Mapping[str, Any]] = (),
        lessons: Iterable[str] = (),
    ) -> ActionSelectionResponse:
        candidate_lines = "\n".join(f"- {label}: {description}" for label, description in candidates)
        prompt = DECISION_PROMPT_TEMPLATE.format(
            diagnosis=self._clip_text(json.dumps(diagnosis)),
            candidates=candidate_lines or "(none)",
            history=self._clip_text(json.dumps(list(history))),
            lessons=self._clip_text(json.dumps(list(lessons))),
        )
        payload = self._call_json(self._settings.decision_pipe, DECISION_SYSTEM, prompt)
        raw_scores = payload.get("scores") if isinstance(payload.get("scores"), Mapping) else {}
        return ActionSelectionResponse(
            selected_option=str(payload.get("selected_option") or "no_op"),
            scores=ActionScores(
                effectiveness=_as_float(raw_scores.get("effectiveness"), 0.0),
                risk=_as_float(raw_scores.get("risk"), 1.0),
                reversibility=_as_float(raw_scores.get("reversibility"), 0.0),
                historical_success=_as_float(raw_scores.get("historical_success"), 0.0),
            ),
            total_score=_as_float(payload.get("total_score"), 0.0),
            rationale=str(payload.get("rationale") or ""),
            alternatives_considered=[str(item) for item in _as_list(payload.get("alternatives_considered"))],
        )

    def validate_decision(
        self,
        *,
        diagnosis: Mapping[str, Any],
        action: Mapping[str, Any],
    ) -> ValidationResponse:
        if not self._settings.enable_validation:
            return ValidationResponse(should_proceed=True, overall_quality=1.0)
        prompt = DETECTION_PROMPT_TEMPLATE.format(
            diagnosis=self._clip_text(json.dumps(diagnosis)),
            action=self._clip_text(json.dumps(action)),
        )
        payload = self._call_json(self._settings.detection_pipe, DETECTION_SYSTEM, prompt)
        return ValidationResponse(
            should_proceed=bool(payload.get("should_proceed", False)),
            overall_quality=_as_float(payload.get("overall_quality"), 0.5),
            biases_detected=[item for item in _as_list(payload.get("biases_detected")) if isinstance(item, dict)],
            fallacies_detected=[
                item for item in _as_list(payload.get("fallacies_detected")) if isinstance(item, dict)
            ],
            warnings=[str(item) for item in _as_list(payload.get("warnings"))],
        )

    def synthesize_learning(
        self,
        *,
        records: Iterable[Mapping[str, Any]],
        effectiveness: Iterable[Mapping[str, Any]] = (),
    ) -> LearningResponse:
        prompt = LEARNING_PROMPT_TEMPLATE.format(
            records=self._clip_text(json.dumps(list(records)), limit=4000),
            effectiveness=self._clip_text(json.dumps(list(effectiveness)), limit=2000),
        )
        payload = self._call_json(self._settings.learning_pipe, LEARNING_SYSTEM, prompt)
        recommendations = payload.get("recommendations")
        if not isinstance(recommendations, Mapping):
            recommendations = {}
        adjustments = []
        for item in _as_list(recommendations.get("param_adjustments")):
            if isinstance(item, Mapping) and item.get("key"):
                adjustments.append(
                    ParamAdjustment(
                        key=str(item["key"]),
                        direction=str(item.get("direction") or "change"),
                        reason=str(item.get("reason") or ""),
                    )
                )
        new_cooldown = recommendations.get("new_cooldown_secs")
        return LearningResponse(
            outcome_assessment=str(payload.get("outcome_assessment") or ""),
            root_cause_accuracy=_as_float(payload.get("root_cause_accuracy"), 0.0),
            action_effectiveness=_as_float(payload.get("action_effectiveness"), 0.0),
            lessons=[str(item) for item in _as_list(payload.get("lessons"))],
            param_adjustments=adjustments,
            adjust_cooldown=bool(recommendations.get("adjust_cooldown", False)),
            new_cooldown_secs=_as_float(new_cooldown, 0.0) if new_cooldown is not None else None,
            confidence=_as_float(payload.get("confidence"), 0.0),
        )

    # -- plumbing ----------------------------------------------------------

    def _call_json(self, pipe: str, system: str, prompt: str) -> dict[str, Any]:
        completion = self._call_with_retry(pipe, system, prompt)
        try:
            payload = json.loads(extract_json(completion))
        except json.JSONDecodeError as exc:
            LOGGER.warning(
                "[Pipes] %s returned invalid JSON: %s (preview=%r)", pipe, exc, completion[:200]
            )
            self._record_parse_failure()
            raise PipeParseFailed(pipe, str(exc)) from exc
        if not isinstance(payload, dict):
            self._record_parse_failure()
            raise PipeParseFailed(pipe, "expected a JSON object")
        return payload

    def _record_parse_failure(self) -> None:
        if self.last_metrics is not None:
            metrics = self.last_metrics
            self.last_metrics = PipeCallMetrics(
                pipe_name=metrics.pipe_name,
                latency_ms=metrics.latency_ms,
                attempts=metrics.attempts,
                call_success=True,
                parse_success=False,
            )

    def _call_with_retry(self, pipe: str, system: str, prompt: str) -> str:
        if self._uses_network and not self._api_key:
            raise PipeUnavailable(pipe, "OPENAI_API_KEY not set")

        attempts = max(self._settings.max_retries, 0) + 1
        start = time.monotonic()
        last_error: PipeError | None = None
        for attempt in range(1, attempts + 1):
            try:
                LOGGER.debug("[Pipes] Calling %s (attempt %s/%s)", pipe, attempt, attempts)
                completion = self._transport(pipe, system, prompt)
                self.last_metrics = PipeCallMetrics(
                    pipe_name=pipe,
                    latency_ms=(time.monotonic() - start) * 1000.0,
                    attempts=attempt,
                    call_success=True,
                    parse_success=True,
                )
                LOGGER.debug("[Pipes] %s succeeded in %.0fms", pipe, self.last_metrics.latency_ms)
                return completion
            except (socket.timeout, TimeoutError) as exc:
                last_error = PipeTimeout(pipe, self._settings.timeout_s)
                LOGGER.warning("[Pipes] %s timed out: %s", pipe, exc)
            except (error.URLError, OSError, KeyError, IndexError, ValueError) as exc:
                last_error = PipeUnavailable(pipe, str(exc))
                LOGGER.warning("[Pipes] %s failed: %s", pipe, exc)
            if attempt < attempts:
                self._sleep(self._settings.retry_backoff_s * (2 ** (attempt - 1)))

        self.last_metrics = PipeCallMetrics(
            pipe_name=pipe,
            latency_ms=(time.monotonic() - start) * 1000.0,
            attempts=attempts,
            call_success=False,
            parse_success=False,
        )
        assert last_error is not None
        raise last_error

    def _clip_text(self, text: str | None, limit: int = 1200) -> str:
        if not text:
            return "(none)"
        return text if len(text) <= limit else f"{text[:limit]}…"

    def _call_openai(self, pipe: str, system: str, prompt: str) -> str:
        payload = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.2,
            "max_tokens": 600,
            "response_format": {"type": "json_object"},
            "metadata": {"pipe": pipe},
        }
        data = json.dumps(payload).encode("utf-8")
        req = request.Request(
            self._settings.endpoint,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        with request.urlopen(req, timeout=self._settings.timeout_s) as response:
            body = response.read().decode("utf-8")
        response_payload = json.loads(body)
        return response_payload["choices"][0]["message"]["content"].strip()
