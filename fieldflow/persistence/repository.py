"""Repository abstraction for workflow execution persistence."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowExecution


class ExecutionRepository(Protocol):
    """Protocol for execution persistence backends.

    Executions are stored as aggregates (execution row plus its step rows and
    their timings). Writes use optimistic concurrency: ``save_execution`` only
    succeeds when the stored ``revision`` equals ``expected_revision``.
    """

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Insert a new execution.

        Raises:
            ConflictError: If the task already has an execution.
        """

    async def save_execution(
        self, execution: WorkflowExecution, expected_revision: int
    ) -> WorkflowExecution:
        """Compare-and-swap the execution, returning it with ``revision`` bumped.

        Raises:
            NotFoundError: If the execution does not exist.
            ConflictError: If the stored revision differs from ``expected_revision``.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution with its steps."""

    async def get_execution_by_task(self, task_id: str) -> WorkflowExecution | None:
        """Retrieve the execution linked to ``task_id``."""

    async def list_executions(self) -> list[WorkflowExecution]:
        """Return all persisted executions without their steps."""
