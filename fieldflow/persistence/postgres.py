"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

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


def _loads(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


class PostgresExecutionRepository(ExecutionRepository):
    """Persist executions using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL UNIQUE,
                template_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                failure_reason TEXT,
                signature JSONB,
                retired BOOLEAN NOT NULL DEFAULT FALSE,
                revision INTEGER NOT NULL DEFAULT 0,
                created_by TEXT NOT NULL,
                updated_by TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_execution_steps (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
                step_id TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                title TEXT,
                is_required BOOLEAN NOT NULL DEFAULT TRUE,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                duration_seconds INTEGER NOT NULL DEFAULT 0,
                checklist_completion JSONB,
                notes TEXT,
                photos JSONB,
                timing JSONB,
                UNIQUE (execution_id, step_id)
            )
            """
        )

    # ------------------------------------------------------------------
    async def _upsert_steps(self, conn: asyncpg.Connection, execution: WorkflowExecution) -> None:
        for step in execution.steps:
            await conn.execute(
                f"""
                INSERT INTO workflow_execution_steps ({_STEP_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (id) DO UPDATE SET
                    status = EXCLUDED.status,
                    started_at = EXCLUDED.started_at,
                    completed_at = EXCLUDED.completed_at,
                    duration_seconds = EXCLUDED.duration_seconds,
                    checklist_completion = EXCLUDED.checklist_completion,
                    notes = EXCLUDED.notes,
                    photos = EXCLUDED.photos,
                    timing = EXCLUDED.timing
                """,
                step.id,
                step.execution_id,
                step.step_id,
                step.step_order,
                step.title,
                step.is_required,
                step.status.value,
                step.started_at,
                step.completed_at,
                step.duration_seconds,
                json.dumps(step.checklist_completion),
                step.notes,
                json.dumps(step.photos),
                step.timing.model_dump_json() if step.timing else None,
            )

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO workflow_executions ({_EXECUTION_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                    """,
                    execution.id,
                    execution.task_id,
                    execution.template_id,
                    execution.status.value,
                    execution.current_step_id,
                    execution.started_at,
                    execution.completed_at,
                    execution.failure_reason,
                    execution.signature.model_dump_json() if execution.signature else None,
                    execution.retired,
                    execution.revision,
                    execution.created_by,
                    execution.updated_by,
                    execution.created_at,
                    execution.updated_at,
                )
                await self._upsert_steps(conn, execution)
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(f"Task {execution.task_id} already has an execution") from exc
        finally:
            await conn.close()
        return execution.model_copy(deep=True)

    async def save_execution(
        self, execution: WorkflowExecution, expected_revision: int
    ) -> WorkflowExecution:
        conn = await self._connect()
        try:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE workflow_executions
                    SET status = $1, current_step_id = $2, started_at = $3, completed_at = $4,
                        failure_reason = $5, signature = $6, retired = $7, revision = $8,
                        updated_by = $9, updated_at = $10
                    WHERE id = $11 AND revision = $12
                    """,
                    execution.status.value,
                    execution.current_step_id,
                    execution.started_at,
                    execution.completed_at,
                    execution.failure_reason,
                    execution.signature.model_dump_json() if execution.signature else None,
                    execution.retired,
                    expected_revision + 1,
                    execution.updated_by,
                    execution.updated_at,
                    execution.id,
                    expected_revision,
                )
                if result == "UPDATE 0":
                    revision = await conn.fetchval(
                        "SELECT revision FROM workflow_executions WHERE id = $1", execution.id
                    )
                    if revision is None:
                        raise NotFoundError(f"Workflow {execution.id} not found")
                    raise ConflictError(
                        f"Workflow {execution.id} was modified concurrently "
                        f"(expected revision {expected_revision}, found {revision})"
                    )
                await self._upsert_steps(conn, execution)
        finally:
            await conn.close()
        return execution.model_copy(deep=True, update={"revision": expected_revision + 1})

    async def _load(self, where: str, value: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE {where} = $1",
                value,
            )
            if not row:
                return None
            step_rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM workflow_execution_steps "
                "WHERE execution_id = $1 ORDER BY step_order",
                row["id"],
            )
        finally:
            await conn.close()
        steps = [
            WorkflowExecutionStep(
                id=r["id"],
                execution_id=r["execution_id"],
                step_id=r["step_id"],
                step_order=r["step_order"],
                title=r["title"] or "",
                is_required=r["is_required"],
                status=r["status"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                duration_seconds=r["duration_seconds"],
                checklist_completion=_loads(r["checklist_completion"]) or {},
                notes=r["notes"],
                photos=_loads(r["photos"]) or [],
                timing=StepTiming.model_validate(_loads(r["timing"])) if r["timing"] else None,
            )
            for r in step_rows
        ]
        return self._row_to_execution(row, steps)

    @staticmethod
    def _row_to_execution(row: Any, steps: list[WorkflowExecutionStep]) -> WorkflowExecution:
        signature = _loads(row["signature"])
        return WorkflowExecution(
            id=row["id"],
            task_id=row["task_id"],
            template_id=row["template_id"],
            status=row["status"],
            current_step_id=row["current_step_id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            failure_reason=row["failure_reason"],
            signature=SignatureRecord.model_validate(signature) if signature else None,
            retired=row["retired"],
            revision=row["revision"],
            created_by=row["created_by"],
            updated_by=row["updated_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            steps=steps,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return await self._load("id", execution_id)

    async def get_execution_by_task(self, task_id: str) -> WorkflowExecution | None:
        return await self._load("task_id", task_id)

    async def list_executions(self) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions ORDER BY created_at"
            )
        finally:
            await conn.close()
        return [self._row_to_execution(r, []) for r in rows]
