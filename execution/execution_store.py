"""Persistent snapshot store for workflow executions."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from shared.workflow_contracts import ExecutionState

if TYPE_CHECKING:
    from execution.engine import WorkflowExecutionEngine


class ExecutionStore:
    """SQLite-backed store for the latest state and full snapshot log of each run."""

    def __init__(self, db_path: str = "executions.db"):
        self.db_path = db_path
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                state_json TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_snapshots (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                status TEXT NOT NULL,
                state_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_execution_snapshots_execution_id
            ON execution_snapshots(execution_id)
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_workflow_executions_workflow_id
            ON workflow_executions(workflow_id)
            """
        )
        self._conn.commit()

    def attach(self, engine: "WorkflowExecutionEngine") -> Callable[[], None]:
        """Persist every snapshot the engine publishes; returns the unsubscribe function."""
        return engine.subscribe(self.save_snapshot)

    def save_snapshot(self, state: ExecutionState) -> None:
        payload = json.dumps(state.model_dump(mode="json"), ensure_ascii=False)
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            """
            INSERT INTO workflow_executions (execution_id, workflow_id, status, state_json, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status=excluded.status,
                state_json=excluded.state_json,
                updated_at=excluded.updated_at
            """,
            (state.id, state.workflow_id, state.status, payload, now),
        )
        self._conn.execute(
            """
            INSERT INTO execution_snapshots (execution_id, status, state_json, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (state.id, state.status, payload, now),
        )
        self._conn.commit()

    def get_execution(self, execution_id: str) -> ExecutionState | None:
        row = self._conn.execute(
            "SELECT state_json FROM workflow_executions WHERE execution_id = ?",
            (execution_id,),
        ).fetchone()
        if row is None:
            return None
        return ExecutionState(**json.loads(row["state_json"]))

    def list_snapshots(self, execution_id: str) -> list[ExecutionState]:
        rows = self._conn.execute(
            """
            SELECT state_json
            FROM execution_snapshots
            WHERE execution_id = ?
            ORDER BY seq ASC
            """,
            (execution_id,),
        ).fetchall()
        return [ExecutionState(**json.loads(row["state_json"])) for row in rows]

    def list_executions(self, workflow_id: str | None = None, limit: int = 50) -> list[ExecutionState]:
        if workflow_id:
            rows = self._conn.execute(
                """
                SELECT state_json
                FROM workflow_executions
                WHERE workflow_id = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (workflow_id, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT state_json FROM workflow_executions ORDER BY updated_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [ExecutionState(**json.loads(row["state_json"])) for row in rows]

    def close(self) -> None:
        self._conn.close()
