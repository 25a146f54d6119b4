from __future__ import annotations

import os
import sqlite3
import threading
from typing import Dict, List, Optional

from pipefix.models import AutoFixResult, OperationalMetrics


class ResultStore:
    """
    Persistent store (SQLite) for terminal AutoFixResult records.

    The full record is kept as JSON; the columns next to it exist for metrics queries.
    """

    def __init__(self, *, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        # One shared connection so ":memory:" databases survive between calls.
        self._con = sqlite3.connect(db_path, timeout=10.0, check_same_thread=False)
        self._con.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock, self._con:
            self._con.execute(
                """
                CREATE TABLE IF NOT EXISTS autofix_results (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    reason TEXT,
                    failure_type TEXT,
                    provider TEXT,
                    duration_s REAL NOT NULL DEFAULT 0,
                    finished_at TEXT,
                    record_json TEXT NOT NULL
                )
                """
            )
            self._con.execute("CREATE INDEX IF NOT EXISTS idx_autofix_results_run ON autofix_results(run_id)")

    def close(self) -> None:
        with self._lock:
            self._con.close()

    def save(self, result: AutoFixResult) -> None:
        row = (
            result.id,
            result.run_id,
            result.state.value,
            result.reason.value if result.reason else None,
            result.classification.type.value if result.classification else None,
            result.analysis.provider if result.analysis else None,
            float(result.duration_s),
            result.finished_at.isoformat() if result.finished_at else None,
            result.model_dump_json(),
        )
        with self._lock, self._con:
            self._con.execute(
                """
                INSERT OR REPLACE INTO autofix_results
                    (id, run_id, state, reason, failure_type, provider, duration_s, finished_at, record_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                row,
            )

    def get(self, result_id: str) -> Optional[AutoFixResult]:
        with self._lock:
            r = self._con.execute("SELECT record_json FROM autofix_results WHERE id = ?", (result_id,)).fetchone()
        return AutoFixResult.model_validate_json(r["record_json"]) if r else None

    def for_run(self, run_id: str) -> List[AutoFixResult]:
        with self._lock:
            rows = self._con.execute(
                "SELECT record_json FROM autofix_results WHERE run_id = ? ORDER BY finished_at", (run_id,)
            ).fetchall()
        return [AutoFixResult.model_validate_json(r["record_json"]) for r in rows]

    def recent(self, limit: int = 50) -> List[AutoFixResult]:
        with self._lock:
            rows = self._con.execute(
                "SELECT record_json FROM autofix_results ORDER BY finished_at DESC LIMIT ?", (int(limit),)
            ).fetchall()
        return [AutoFixResult.model_validate_json(r["record_json"]) for r in rows]

    def metrics(self) -> OperationalMetrics:
        with self._lock:
            tot = self._con.execute(
                """
                SELECT COUNT(*) AS n,
                       SUM(CASE WHEN state = 'succeeded' THEN 1 ELSE 0 END) AS ok,
                       SUM(CASE WHEN state = 'failed' THEN 1 ELSE 0 END) AS failed,
                       AVG(duration_s) AS avg_s
                FROM autofix_results
                """
            ).fetchone()
            by_reason = self._con.execute(
                "SELECT reason, COUNT(*) AS n FROM autofix_results WHERE reason IS NOT NULL GROUP BY reason"
            ).fetchall()
            by_type = self._con.execute(
                "SELECT failure_type, COUNT(*) AS n FROM autofix_results WHERE failure_type IS NOT NULL GROUP BY failure_type"
            ).fetchall()
            by_provider = self._con.execute(
                "SELECT provider, COUNT(*) AS n FROM autofix_results WHERE provider IS NOT NULL GROUP BY provider"
            ).fetchall()

        def _counts(rows: List[sqlite3.Row], key: str) -> Dict[str, int]:
            return {str(r[key]): int(r["n"]) for r in rows}

        return OperationalMetrics(
            total_runs=int(tot["n"] or 0),
            succeeded=int(tot["ok"] or 0),
            failed=int(tot["failed"] or 0),
            failures_by_reason=_counts(by_reason, "reason"),
            average_duration_s=round(float(tot["avg_s"] or 0.0), 3),
            runs_by_failure_type=_counts(by_type, "failure_type"),
            runs_by_provider=_counts(by_provider, "provider"),
        )
