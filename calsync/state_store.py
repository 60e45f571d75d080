from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL,
    changes_applied INTEGER NOT NULL,
    errors INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS user_syncs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    synced_at TEXT NOT NULL,
    user_name TEXT NOT NULL,
    status TEXT NOT NULL,
    planned_insert INTEGER NOT NULL,
    planned_update INTEGER NOT NULL,
    planned_delete INTEGER NOT NULL,
    applied INTEGER NOT NULL,
    failed INTEGER NOT NULL,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_user_syncs_user ON user_syncs(user_name, id);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    created_at TEXT NOT NULL,
    user_name TEXT NOT NULL,
    event_ref TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class StateStore:
    """SQLite ledger of sync runs, per-user outcomes and the audit trail of applied changes."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._lock:
            with self._connect() as conn:
                conn.executescript(SCHEMA_SQL)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: Sequence[Any]) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(sql, tuple(params))
                conn.commit()
                return int(cursor.lastrowid or 0)

    def _fetch(self, sql: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        return [dict(row) for row in rows]

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        errors: int,
    ) -> int:
        return self._execute(
            """
            INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, changes_applied, errors)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (_utc_now(), trigger, status, message, int(duration_ms), int(changes_applied), int(errors)),
        )

    def start_sync_run(self, *, trigger: str) -> int:
        return self.record_sync_run(
            trigger=trigger,
            status="running",
            message="running",
            duration_ms=0,
            changes_applied=0,
            errors=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        errors: int,
    ) -> None:
        self._execute(
            """
            UPDATE sync_runs
            SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, errors = ?
            WHERE id = ?
            """,
            (status, message, int(duration_ms), int(changes_applied), int(errors), int(run_id)),
        )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        return self._fetch(
            """
            SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, errors
            FROM sync_runs
            ORDER BY id DESC
            LIMIT ?
            """,
            (max(1, limit),),
        )

    def record_user_sync(
        self,
        *,
        run_id: int,
        user_name: str,
        status: str,
        planned: dict[str, int] | None = None,
        applied: int = 0,
        failed: int = 0,
        error: str = "",
    ) -> None:
        """Store the outcome of one user's unit of work within a run.

        ``status`` is ``ok``, ``failed`` (fetch or normalization aborted the user) or ``dry_run``.
        """
        planned = planned or {}
        self._execute(
            """
            INSERT INTO user_syncs(
                run_id, synced_at, user_name, status,
                planned_insert, planned_update, planned_delete, applied, failed, error
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(run_id),
                _utc_now(),
                user_name,
                status,
                int(planned.get("insert", 0)),
                int(planned.get("update", 0)),
                int(planned.get("delete", 0)),
                int(applied),
                int(failed),
                error or None,
            ),
        )

    def latest_user_syncs(self) -> dict[str, dict[str, Any]]:
        rows = self._fetch(
            """
            SELECT u.*
            FROM user_syncs u
            JOIN (SELECT user_name, MAX(id) AS max_id FROM user_syncs GROUP BY user_name) latest
              ON latest.max_id = u.id
            ORDER BY u.user_name
            """,
            (),
        )
        return {row["user_name"]: row for row in rows}

    def user_syncs_for_run(self, run_id: int) -> list[dict[str, Any]]:
        return self._fetch("SELECT * FROM user_syncs WHERE run_id = ? ORDER BY id", (int(run_id),))

    def record_audit_event(
        self,
        *,
        user_name: str,
        event_ref: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        self._execute(
            """
            INSERT INTO audit_events(run_id, created_at, user_name, event_ref, action, details_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (run_id, _utc_now(), user_name, event_ref, action, json.dumps(details, ensure_ascii=False)),
        )

    def recent_audit_events(
        self,
        limit: int = 100,
        user_name: str | None = None,
        run_id: int | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_name is not None:
            clauses.append("user_name = ?")
            params.append(str(user_name))
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(int(run_id))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetch(
            f"""
            SELECT id, run_id, created_at, user_name, event_ref, action, details_json
            FROM audit_events
            {where}
            ORDER BY id DESC
            LIMIT ?
            """,
            (*params, max(1, limit)),
        )
        for row in rows:
            row["details"] = json.loads(row.pop("details_json") or "{}")
        return rows

    def set_meta(self, key: str, value: str) -> None:
        self._execute(
            """
            INSERT INTO app_meta(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (str(key), str(value), _utc_now()),
        )

    def get_meta(self, key: str) -> str | None:
        rows = self._fetch("SELECT value FROM app_meta WHERE key = ?", (str(key),))
        if not rows:
            return None
        return str(rows[0]["value"])
