"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import (
    SignatureRecord,
    StepTiming,
    WorkflowExecution,
    WorkflowExecutionStep,
)
from ..errors import ConflictError, NotFoundError
from .repository import ExecutionRepository

_EXECUTION_COLUMNS = (
    "id, task_id, template_id, status, current_step_id, started_at, completed_at, "
    "failure_reason, signature, retired, revision, created_by, updated_by, "
    "created_at, updated_at"
)
_STEP_COLUMNS = (
    "id, execution_id, step_id, step_order, title, is_required, status, started_at, "
    "completed_at, duration_seconds, checklist_completion, notes, photos, timing"
)


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _execution_params(execution: WorkflowExecution) -> tuple:
    return (
        execution.id,
        execution.task_id,
        execution.template_id,
        execution.status.value,
        execution.current_step_id,
        _dt(execution.started_at),
        _dt(execution.completed_at),
        execution.failure_reason,
        execution.signature.model_dump_json() if execution.signature else None,
        int(execution.retired),
        execution.revision,
        execution.created_by,
        execution.updated_by,
        _dt(execution.created_at),
        _dt(execution.updated_at),
    )


def _step_params(step: WorkflowExecutionStep) -> tuple:
    return (
        step.id,
        step.execution_id,
        step.step_id,
        step.step_order,
        step.title,
        int(step.is_required),
        step.status.value,
        _dt(step.started_at),
        _dt(step.completed_at),
        step.duration_seconds,
        json.dumps(step.checklist_completion),
        step.notes,
        json.dumps(step.photos),
        step.timing.model_dump_json() if step.timing else None,
    )


def _row_to_step(r: sqlite3.Row) -> WorkflowExecutionStep:
    return WorkflowExecutionStep(
        id=r["id"],
        execution_id=r["execution_id"],
        step_id=r["step_id"],
        step_order=r["step_order"],
        title=r["title"],
        is_required=bool(r["is_required"]),
        status=r["status"],
        started_at=_parse_dt(r["started_at"]),
        completed_at=_parse_dt(r["completed_at"]),
        duration_seconds=r["duration_seconds"],
        checklist_completion=json.loads(r["checklist_completion"] or "{}"),
        notes=r["notes"],
        photos=json.loads(r["photos"] or "[]"),
        timing=StepTiming.model_validate_json(r["timing"]) if r["timing"] else None,
    )


def _row_to_execution(
    row: sqlite3.Row, steps: list[WorkflowExecutionStep]
) -> WorkflowExecution:
    return WorkflowExecution(
        id=row["id"],
        task_id=row["task_id"],
        template_id=row["template_id"],
        status=row["status"],
        current_step_id=row["current_step_id"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        failure_reason=row["failure_reason"],
        signature=(
            SignatureRecord.model_validate_json(row["signature"]) if row["signature"] else None
        ),
        retired=bool(row["retired"]),
        revision=row["revision"],
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        steps=steps,
    )


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist executions using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # one connection is shared by worker threads; serialize transactions on it
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL UNIQUE,
                template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                started_at TEXT,
                completed_at TEXT,
                failure_reason TEXT,
                signature TEXT,
                retired INTEGER NOT NULL DEFAULT 0,
                revision INTEGER NOT NULL DEFAULT 0,
                created_by TEXT NOT NULL,
                updated_by TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_execution_steps (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
                step_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                title TEXT,
                is_required INTEGER NOT NULL DEFAULT 1,
                status TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                duration_seconds INTEGER NOT NULL DEFAULT 0,
                checklist_completion TEXT,
                notes TEXT,
                photos TEXT,
                timing TEXT,
                UNIQUE (execution_id, step_id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _upsert_steps(self, cur: sqlite3.Cursor, execution: WorkflowExecution) -> None:
        placeholders = ", ".join("?" for _ in range(14))
        for step in execution.steps:
            cur.execute(
                f"INSERT OR REPLACE INTO workflow_execution_steps ({_STEP_COLUMNS}) "
                f"VALUES ({placeholders})",
                _step_params(step),
            )

    def _insert(self, execution: WorkflowExecution) -> None:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(
                    f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) "
                    f"VALUES ({', '.join('?' for _ in range(15))})",
                    _execution_params(execution),
                )
                self._upsert_steps(cur, execution)
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise ConflictError(
                    f"Task {execution.task_id} already has an execution"
                ) from exc
            self._conn.commit()

    def _compare_and_swap(self, execution: WorkflowExecution, expected: int) -> None:
        with self._lock:
            cur = self._conn.cursor()
            params = _execution_params(execution)
            cur.execute(
                """
                UPDATE workflow_executions
                SET status = ?, current_step_id = ?, started_at = ?, completed_at = ?,
                    failure_reason = ?, signature = ?, retired = ?, revision = ?,
                    updated_by = ?, updated_at = ?
                WHERE id = ? AND revision = ?
                """,
                (*params[3:10], expected + 1, params[12], params[14], execution.id, expected),
            )
            if cur.rowcount == 0:
                self._conn.rollback()
                exists = cur.execute(
                    "SELECT revision FROM workflow_executions WHERE id = ?", (execution.id,)
                ).fetchone()
                if exists is None:
                    raise NotFoundError(f"Workflow {execution.id} not found")
                raise ConflictError(
                    f"Workflow {execution.id} was modified concurrently "
                    f"(expected revision {expected}, found {exists['revision']})"
                )
            self._upsert_steps(cur, execution)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _load(self, where: str, value: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE {where} = ?",
            value,
        )
        if not row:
            return None
        step_rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM workflow_execution_steps "
            "WHERE execution_id = ? ORDER BY step_order",
            row["id"],
        )
        return _row_to_execution(row, [_row_to_step(r) for r in step_rows])

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        await asyncio.to_thread(self._insert, execution)
        return execution.model_copy(deep=True)

    async def save_execution(
        self, execution: WorkflowExecution, expected_revision: int
    ) -> WorkflowExecution:
        await asyncio.to_thread(self._compare_and_swap, execution, expected_revision)
        return execution.model_copy(deep=True, update={"revision": expected_revision + 1})

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._load("id", execution_id)

    async def get_execution_by_task(self, task_id: str) -> WorkflowExecution | None:
        return await self._load("task_id", task_id)

    async def list_executions(self) -> list[WorkflowExecution]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions ORDER BY created_at",
        )
        return [_row_to_execution(row, []) for row in rows]
