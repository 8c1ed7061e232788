"""In-memory implementation of the execution repository."""

from __future__ import annotations

from typing import Dict

from ..contracts import WorkflowExecution
from ..errors import ConflictError, NotFoundError
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store executions in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}
        self._by_task: Dict[str, str] = {}

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        if execution.task_id in self._by_task:
            raise ConflictError(f"Task {execution.task_id} already has an execution")
        if execution.id in self._executions:
            raise ConflictError(f"Execution {execution.id} already exists")
        stored = execution.model_copy(deep=True)
        self._executions[stored.id] = stored
        self._by_task[stored.task_id] = stored.id
        return stored.model_copy(deep=True)

    async def save_execution(
        self, execution: WorkflowExecution, expected_revision: int
    ) -> WorkflowExecution:
        current = self._executions.get(execution.id)
        if current is None:
            raise NotFoundError(f"Workflow {execution.id} not found")
        if current.revision != expected_revision:
            raise ConflictError(
                f"Workflow {execution.id} was modified concurrently "
                f"(expected revision {expected_revision}, found {current.revision})"
            )
        stored = execution.model_copy(deep=True, update={"revision": expected_revision + 1})
        self._executions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def get_execution_by_task(self, task_id: str) -> WorkflowExecution | None:
        execution_id = self._by_task.get(task_id)
        if execution_id is None:
            return None
        return await self.get_execution(execution_id)

    async def list_executions(self) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True, update={"steps": []}) for e in self._executions.values()
        ]
