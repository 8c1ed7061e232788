"""Bulk reconciliation of tasks with their workflow executions."""

from __future__ import annotations

import asyncio
import logging

from .contracts import SyncOutcome, SyncReport, Task, TaskStatus
from .engine import WorkflowStateMachine
from .errors import FieldflowError
from .persistence import ExecutionRepository
from .tasks import TaskDirectory
from .templates import DEFAULT_TEMPLATE_ID

logger = logging.getLogger(__name__)

ACTOR = "reconciliation"


class ReconciliationService:
    """Detects tasks whose execution linkage is missing or inconsistent and repairs it.

    ``sync_all`` fans out over the task population with a fixed pool of
    workers pulling from a work queue, so the backing store never sees more
    than ``max_concurrency`` concurrent repairs. Each repair goes through
    the state machine and therefore through the execution's revision check,
    so it cannot overwrite a live caller's change to the same execution.
    """

    def __init__(
        self,
        tasks: TaskDirectory,
        repository: ExecutionRepository,
        state_machine: WorkflowStateMachine,
        max_concurrency: int = 8,
        default_template_id: str = DEFAULT_TEMPLATE_ID,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._tasks = tasks
        self._repository = repository
        self._state_machine = state_machine
        self._max_concurrency = max_concurrency
        self._default_template_id = default_template_id
        self._stop_requested = asyncio.Event()

    def stop(self) -> None:
        """Stop issuing new per-task work; in-flight repairs still finish."""
        self._stop_requested.set()

    async def sync_all(self) -> SyncReport:
        self._stop_requested.clear()
        tasks = await self._tasks.list_tasks()
        work: asyncio.Queue[tuple[int, Task]] = asyncio.Queue()
        for index, task in enumerate(tasks):
            work.put_nowait((index, task))
        results: asyncio.Queue[tuple[int, SyncOutcome]] = asyncio.Queue()

        worker_count = min(self._max_concurrency, len(tasks))
        logger.info(f"Reconciling {len(tasks)} tasks with {worker_count} workers")
        workers = [
            asyncio.create_task(self._worker(work, results)) for _ in range(worker_count)
        ]
        await asyncio.gather(*workers)

        collected: list[tuple[int, SyncOutcome]] = []
        while not results.empty():
            collected.append(results.get_nowait())
        collected.sort(key=lambda item: item[0])

        report = SyncReport(
            outcomes=[outcome for _, outcome in collected],
            cancelled=not work.empty(),
        )
        report.synced_count = sum(1 for o in report.outcomes if o.is_synced)
        report.error_count = len(report.outcomes) - report.synced_count
        logger.info(
            f"Reconciliation finished: synced={report.synced_count} "
            f"errors={report.error_count} cancelled={report.cancelled}"
        )
        return report

    async def _worker(
        self,
        work: "asyncio.Queue[tuple[int, Task]]",
        results: "asyncio.Queue[tuple[int, SyncOutcome]]",
    ) -> None:
        while not self._stop_requested.is_set():
            try:
                index, task = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            # a half-written repair is worse than a late one; never interrupt it
            outcome = await asyncio.shield(self.sync_task_record(task))
            results.put_nowait((index, outcome))

    async def sync_task(self, task_id: str) -> SyncOutcome:
        task = await self._tasks.get_task(task_id)
        return await self.sync_task_record(task)

    async def sync_task_record(self, task: Task) -> SyncOutcome:
        """Reconcile one task, capturing any failure in the outcome."""
        try:
            return await self._reconcile(task)
        except FieldflowError as exc:
            logger.error(f"Failed to reconcile task_id={task.id}: {exc.message}")
            return SyncOutcome(task_id=task.id, is_synced=False, error=exc.message)
        except Exception as exc:
            logger.exception(f"Unexpected error reconciling task_id={task.id}")
            return SyncOutcome(task_id=task.id, is_synced=False, error=str(exc))

    async def _reconcile(self, task: Task) -> SyncOutcome:
        execution = await self._repository.get_execution_by_task(task.id)

        if task.status == TaskStatus.CANCELLED:
            if execution is None or execution.retired:
                return SyncOutcome(task_id=task.id, is_synced=True)
            await self._state_machine.retire(execution.id, actor=ACTOR)
            return SyncOutcome(
                task_id=task.id,
                is_synced=False,
                repair_action=f"retired execution {execution.id} of cancelled task",
            )

        if execution is None:
            created = await self._state_machine.create(
                task.id, task.template_id or self._default_template_id, actor=ACTOR
            )
            return SyncOutcome(
                task_id=task.id,
                is_synced=False,
                repair_action=(
                    f"created execution {created.id} with {len(created.steps)} pending steps"
                ),
            )

        _, actions = await self._state_machine.repair_linkage(execution.id, actor=ACTOR)
        if not actions:
            return SyncOutcome(task_id=task.id, is_synced=True)
        return SyncOutcome(task_id=task.id, is_synced=False, repair_action="; ".join(actions))


def summarize(report: SyncReport) -> str:
    """One-line summary used by the CLI."""
    text = f"Synced: {report.synced_count}, repaired or failed: {report.error_count}"
    if report.cancelled:
        text += " (stopped early)"
    return text
