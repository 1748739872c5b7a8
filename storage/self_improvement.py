"""SQLite-backed persistence for the self-improvement loop."""

from __future__ import annotations

import json
from pathlib import Path
import sqlite3
import threading
import time
from typing import Any, Callable, Iterable, TypeVar

from config import ConfigController
from core.actions import action_from_dict
from core.baseline import MetricBaseline
from core.logging import logger as LOGGER
from core.models import (
    ActionEffectiveness,
    ActionOutcome,
    ActionRecord,
    DiagnosisStatus,
    MetricsSnapshot,
    SelfDiagnosis,
)

T = TypeVar("T")


class StorageError(Exception):
    """Raised when the store cannot complete an operation after retries."""


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _loads(value: str | None) -> Any:
    if value is None or value == "":
        return None
    return json.loads(value)


class SelfImprovementStore:
    """Persist breaker state, baselines, diagnoses, actions, effectiveness and lessons."""

    def __init__(
        self,
        db_path: Path | None = None,
        *,
        max_retries: int = 3,
        retry_backoff_s: float = 0.05,
    ) -> None:
        if db_path is None:
            config = ConfigController.get_instance().get_config()
            var_dir = Path(config.get("var_dir", "./var/")).expanduser()
            db_path = var_dir / "self_improvement.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db_path = db_path
        self._max_retries = max(int(max_retries), 0)
        self._retry_backoff_s = max(float(retry_backoff_s), 0.0)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=5.0)
        self._conn.row_factory = sqlite3.Row
        self._initialize_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialize_db(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS si_circuit_breaker (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    state JSON,
                    updated_at REAL
                );
                CREATE TABLE IF NOT EXISTS si_baselines (
                    metric_name TEXT PRIMARY KEY,
                    payload JSON,
                    updated_at REAL
                );
                CREATE TABLE IF NOT EXISTS si_diagnoses (
                    id TEXT PRIMARY KEY,
                    created_at REAL,
                    status TEXT,
                    severity TEXT,
                    payload JSON,
                    status_reason TEXT
                );
                CREATE TABLE IF NOT EXISTS si_actions (
                    id TEXT PRIMARY KEY,
                    diagnosis_id TEXT,
                    action_type TEXT,
                    action JSON,
                    pre_state JSON,
                    post_state JSON,
                    metrics_before JSON,
                    metrics_after JSON,
                    outcome TEXT,
                    rollback_reason TEXT,
                    normalized_reward REAL,
                    reward_breakdown JSON,
                    lessons JSON,
                    executed_at REAL,
                    verified_at REAL
                );
                CREATE INDEX IF NOT EXISTS idx_si_actions_executed_at ON si_actions (executed_at);
                CREATE TABLE IF NOT EXISTS si_effectiveness (
                    action_signature TEXT PRIMARY KEY,
                    action_type TEXT,
                    payload JSON,
                    updated_at REAL
                );
                CREATE TABLE IF NOT EXISTS si_control (
                    key TEXT PRIMARY KEY,
                    value JSON,
                    updated_at REAL
                );
                CREATE TABLE IF NOT EXISTS si_lessons (
                    lesson_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at REAL,
                    action_id TEXT,
                    summary TEXT,
                    lessons JSON
                );
                """
            )

    def _run(self, operation: str, func: Callable[[sqlite3.Connection], T]) -> T:
        attempt = 0
        while True:
            try:
                with self._lock:
                    with self._conn:
                        return func(self._conn)
            except sqlite3.OperationalError as exc:
                if attempt >= self._max_retries:
                    raise StorageError(f"{operation} failed: {exc}") from exc
                delay = self._retry_backoff_s * (2 ** attempt)
                LOGGER.warning(
                    "[Storage] %s failed (%s); retrying in %.2fs (%s/%s)",
                    operation,
                    exc,
                    delay,
                    attempt + 1,
                    self._max_retries,
                )
                time.sleep(delay)
                attempt += 1
            except sqlite3.Error as exc:
                raise StorageError(f"{operation} failed: {exc}") from exc

    # -- liveness ----------------------------------------------------------

    def health_check(self) -> None:
        self._run("health_check", lambda conn: conn.execute("SELECT 1").fetchone())

    # -- circuit breaker -----------------------------------------------------

    def load_circuit_breaker(self) -> dict[str, Any] | None:
        row = self._run(
            "load_circuit_breaker",
            lambda conn: conn.execute("SELECT state FROM si_circuit_breaker WHERE id = 1").fetchone(),
        )
        return _loads(row["state"]) if row else None

    def save_circuit_breaker(self, state: dict[str, Any]) -> None:
        self._run(
            "save_circuit_breaker",
            lambda conn: conn.execute(
                """
                INSERT INTO si_circuit_breaker (id, state, updated_at) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET state = excluded.state, updated_at = excluded.updated_at
                """,
                (json.dumps(state), time.time()),
            ),
        )

    # -- operator control ----------------------------------------------------

    def get_control(self, key: str) -> Any:
        row = self._run(
            "get_control",
            lambda conn: conn.execute("SELECT value FROM si_control WHERE key = ?", (key,)).fetchone(),
        )
        return _loads(row["value"]) if row else None

    def set_control(self, key: str, value: Any) -> None:
        self._run(
            "set_control",
            lambda conn: conn.execute(
                """
                INSERT INTO si_control (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, _dumps(value), time.time()),
            ),
        )

    # -- baselines -----------------------------------------------------------

    def get_baseline(self, metric_name: str) -> MetricBaseline | None:
        row = self._run(
            "get_baseline",
            lambda conn: conn.execute(
                "SELECT payload FROM si_baselines WHERE metric_name = ?", (metric_name,)
            ).fetchone(),
        )
        return MetricBaseline.from_dict(_loads(row["payload"])) if row else None

    def get_all_baselines(self) -> list[MetricBaseline]:
        rows = self._run(
            "get_all_baselines",
            lambda conn: conn.execute("SELECT payload FROM si_baselines ORDER BY metric_name").fetchall(),
        )
        return [MetricBaseline.from_dict(_loads(row["payload"])) for row in rows]

    def save_baseline(self, baseline: MetricBaseline) -> None:
        self.save_baselines([baseline])

    def save_baselines(self, baselines: Iterable[MetricBaseline]) -> None:
        rows = [(b.metric_name, json.dumps(b.to_dict()), b.last_updated) for b in baselines]
        self._run(
            "save_baselines",
            lambda conn: conn.executemany(
                """
                INSERT INTO si_baselines (metric_name, payload, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(metric_name) DO UPDATE
                SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                rows,
            ),
        )

    # -- diagnoses -----------------------------------------------------------

    def save_diagnosis(self, diagnosis: SelfDiagnosis, reason: str | None = None) -> None:
        self._run(
            "save_diagnosis",
            lambda conn: conn.execute(
                """
                INSERT INTO si_diagnoses (id, created_at, status, severity, payload, status_reason)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET status = excluded.status,
                    payload = excluded.payload, status_reason = excluded.status_reason
                """,
                (
                    diagnosis.id,
                    diagnosis.created_at,
                    diagnosis.status.value,
                    diagnosis.severity.value,
                    json.dumps(diagnosis.to_dict()),
                    reason,
                ),
            ),
        )

    def update_diagnosis_status(
        self, diagnosis_id: str, status: DiagnosisStatus, reason: str | None = None
    ) -> bool:
        def _update(conn: sqlite3.Connection) -> bool:
            row = conn.execute("SELECT payload FROM si_diagnoses WHERE id = ?", (diagnosis_id,)).fetchone()
            if row is None:
                return False
            payload = _loads(row["payload"]) or {}
            payload["status"] = status.value
            conn.execute(
                "UPDATE si_diagnoses SET status = ?, payload = ?, status_reason = ? WHERE id = ?",
                (status.value, json.dumps(payload), reason, diagnosis_id),
            )
            return True

        return self._run("update_diagnosis_status", _update)

    def get_diagnosis(self, diagnosis_id: str) -> SelfDiagnosis | None:
        row = self._run(
            "get_diagnosis",
            lambda conn: conn.execute(
                "SELECT payload FROM si_diagnoses WHERE id = ?", (diagnosis_id,)
            ).fetchone(),
        )
        return SelfDiagnosis.from_dict(_loads(row["payload"])) if row else None

    def pending_diagnoses(self) -> list[SelfDiagnosis]:
        rows = self._run(
            "pending_diagnoses",
            lambda conn: conn.execute(
                "SELECT payload FROM si_diagnoses WHERE status IN (?, ?, ?) ORDER BY created_at",
                (
                    DiagnosisStatus.PENDING.value,
                    DiagnosisStatus.AWAITING_APPROVAL.value,
                    DiagnosisStatus.APPROVED.value,
                ),
            ).fetchall(),
        )
        return [SelfDiagnosis.from_dict(_loads(row["payload"])) for row in rows]

    # -- actions -------------------------------------------------------------

    def save_action(self, record: ActionRecord) -> None:
        self._run(
            "save_action",
            lambda conn: conn.execute(
                """
                INSERT OR REPLACE INTO si_actions (
                    id, diagnosis_id, action_type, action, pre_state, post_state,
                    metrics_before, metrics_after, outcome, rollback_reason,
                    normalized_reward, reward_breakdown, lessons, executed_at, verified_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._action_row(record),
            ),
        )

    def update_action(self, record: ActionRecord) -> None:
        self.save_action(record)

    def get_action(self, action_id: str) -> ActionRecord | None:
        row = self._run(
            "get_action",
            lambda conn: conn.execute("SELECT * FROM si_actions WHERE id = ?", (action_id,)).fetchone(),
        )
        return self._record_from_row(row) if row else None

    def actions_since(self, since_ts: float) -> list[ActionRecord]:
        rows = self._run(
            "actions_since",
            lambda conn: conn.execute(
                "SELECT * FROM si_actions WHERE executed_at >= ? ORDER BY executed_at",
                (since_ts,),
            ).fetchall(),
        )
        return [self._record_from_row(row) for row in rows]

    def history(self, limit: int = 20, outcome: ActionOutcome | None = None) -> list[ActionRecord]:
        query = ["SELECT *", "FROM si_actions", "WHERE 1 = 1"]
        params: list[object] = []
        if outcome is not None:
            query.append("AND outcome = ?")
            params.append(outcome.value)
        query.append("ORDER BY executed_at DESC")
        query.append("LIMIT ?")
        params.append(max(int(limit), 0))
        rows = self._run(
            "history", lambda conn: conn.execute(" ".join(query), params).fetchall()
        )
        return [self._record_from_row(row) for row in rows]

    def _action_row(self, record: ActionRecord) -> tuple[Any, ...]:
        return (
            record.id,
            record.diagnosis_id,
            record.action_type,
            json.dumps(record.action.to_dict()),
            _dumps(record.pre_state),
            _dumps(record.post_state),
            json.dumps(record.metrics_before.to_dict()),
            _dumps(record.metrics_after.to_dict() if record.metrics_after else None),
            record.outcome.value,
            record.rollback_reason,
            record.normalized_reward,
            _dumps(record.reward_breakdown),
            json.dumps(list(record.lessons)),
            record.executed_at,
            record.verified_at,
        )

    def _record_from_row(self, row: sqlite3.Row) -> ActionRecord:
        metrics_after = _loads(row["metrics_after"])
        return ActionRecord(
            id=row["id"],
            diagnosis_id=row["diagnosis_id"],
            action=action_from_dict(_loads(row["action"])),
            pre_state=_loads(row["pre_state"]) or {},
            post_state=_loads(row["post_state"]),
            metrics_before=MetricsSnapshot.from_dict(_loads(row["metrics_before"]) or {}),
            metrics_after=MetricsSnapshot.from_dict(metrics_after) if metrics_after else None,
            outcome=ActionOutcome(row["outcome"]),
            rollback_reason=row["rollback_reason"],
            normalized_reward=row["normalized_reward"],
            reward_breakdown=_loads(row["reward_breakdown"]),
            lessons=_loads(row["lessons"]) or [],
            executed_at=row["executed_at"],
            verified_at=row["verified_at"],
        )

    # -- effectiveness -------------------------------------------------------

    def save_effectiveness(self, entry: ActionEffectiveness) -> None:
        self._run(
            "save_effectiveness",
            lambda conn: conn.execute(
                """
                INSERT INTO si_effectiveness (action_signature, action_type, payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(action_signature) DO UPDATE
                SET payload = excluded.payload, updated_at = excluded.updated_at
                """,
                (entry.action_signature, entry.action_type, json.dumps(entry.to_dict()), time.time()),
            ),
        )

    def get_effectiveness(self, action_type: str | None = None) -> list[ActionEffectiveness]:
        query = ["SELECT payload FROM si_effectiveness WHERE 1 = 1"]
        params: list[object] = []
        if action_type is not None:
            query.append("AND action_type = ?")
            params.append(action_type)
        query.append("ORDER BY action_signature")
        rows = self._run(
            "get_effectiveness", lambda conn: conn.execute(" ".join(query), params).fetchall()
        )
        return [ActionEffectiveness(**_loads(row["payload"])) for row in rows]

    # -- lessons -------------------------------------------------------------

    def append_lessons(self, *, summary: str, lessons: Iterable[str], action_id: str | None = None) -> None:
        lesson_list = [str(lesson) for lesson in lessons]
        self._run(
            "append_lessons",
            lambda conn: conn.execute(
                "INSERT INTO si_lessons (created_at, action_id, summary, lessons) VALUES (?, ?, ?, ?)",
                (time.time(), action_id, summary, json.dumps(lesson_list)),
            ),
        )

    def recent_lessons(self, limit: int = 10) -> list[str]:
        rows = self._run(
            "recent_lessons",
            lambda conn: conn.execute(
                "SELECT lessons FROM si_lessons ORDER BY lesson_id DESC LIMIT ?", (max(int(limit), 0),)
            ).fetchall(),
        )
        lessons: list[str] = []
        for row in rows:
            lessons.extend(_loads(row["lessons"]) or [])
        return lessons[:limit]
