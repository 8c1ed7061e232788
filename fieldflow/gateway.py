"""Boundary operations exposed to callers of the workflow engine."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, Optional

from .config import FieldflowConfig, load_config
from .contracts import (
    ExecutionStatus,
    GatewayResponse,
    SignatureRecord,
    StepCompletion,
    SyncReport,
    TaskStatus,
    WorkflowExecution,
    WorkflowExecutionStep,
    WorkflowProgress,
)
from .engine import WorkflowStateMachine
from .errors import (
    FieldflowError,
    ForbiddenError,
    InternalError,
    InvalidTransitionError,
    NotFoundError,
)
from .persistence import ExecutionRepository, get_repository
from .reconcile import ReconciliationService
from .security import ADMIN, SUPERVISOR, TECHNICIAN, Caller, CallerPolicy, JwtCallerPolicy
from .tasks import TaskDirectory
from .templates import default_registry
from .utils.retry import retry_read

logger = logging.getLogger(__name__)


class ExecutionGateway:
    """Translates caller requests into state-machine calls and envelopes.

    Every operation resolves the caller token, checks the required role and
    returns a :class:`GatewayResponse`. Engine errors become failed
    envelopes carrying the error code and an HTTP-equivalent status;
    anything unexpected is logged and reported as ``internal``. Reads are
    retried on I/O timeouts, state transitions never are.
    """

    def __init__(
        self,
        state_machine: WorkflowStateMachine,
        reconciler: ReconciliationService,
        tasks: TaskDirectory,
        policy: CallerPolicy,
        repository: ExecutionRepository,
        read_attempts: int = 3,
    ) -> None:
        self._state_machine = state_machine
        self._reconciler = reconciler
        self._tasks = tasks
        self._policy = policy
        self._repository = repository
        self._read_attempts = read_attempts

    # ------------------------------------------------------------------
    # Helpers
    async def _authorize(self, token: str, role: str) -> Caller:
        caller = await self._policy.resolve(token)
        if not await self._policy.has_role(caller, role):
            raise ForbiddenError(f"Role '{role}' is required for this operation")
        return caller

    async def _run(self, operation: str, action: Callable[[], Awaitable[Any]]) -> GatewayResponse:
        try:
            return GatewayResponse.ok(await action())
        except InternalError as exc:
            logger.error(f"{operation} failed: {exc.message}")
            return GatewayResponse.fail(exc.code, exc.message, exc.status_code)
        except FieldflowError as exc:
            logger.warning(f"{operation} rejected ({exc.code}): {exc.message}")
            return GatewayResponse.fail(exc.code, exc.message, exc.status_code)
        except Exception:
            logger.exception(f"{operation} failed unexpectedly")
            return GatewayResponse.fail("internal", "Internal error", 500)

    async def _read(self, read: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_read(read, attempts=self._read_attempts)

    async def _execution_for_task(self, task_id: str) -> WorkflowExecution:
        execution = await self._read(lambda: self._repository.get_execution_by_task(task_id))
        if execution is None:
            raise NotFoundError(f"No workflow found for task {task_id}")
        return execution

    # ------------------------------------------------------------------
    # Workflow lifecycle
    async def start(self, task_id: str, caller_token: str) -> GatewayResponse:
        """Start the task's workflow, creating the execution on first use."""

        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            task = await self._read(lambda: self._tasks.get_task(task_id))
            if task.status == TaskStatus.CANCELLED:
                raise InvalidTransitionError(f"Task {task_id} is cancelled")
            execution = await self._state_machine.ensure_execution(task, actor=caller.user_id)
            if execution.retired:
                raise InvalidTransitionError(f"Workflow {execution.id} is retired")
            if execution.status != ExecutionStatus.PENDING:
                return execution
            return await self._state_machine.start(execution.id, actor=caller.user_id)

        return await self._run("start", action)

    async def pause(self, workflow_id: str, caller_token: str) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            return await self._state_machine.pause_workflow(workflow_id, actor=caller.user_id)

        return await self._run("pause", action)

    async def resume(self, workflow_id: str, caller_token: str) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            return await self._state_machine.resume_workflow(workflow_id, actor=caller.user_id)

        return await self._run("resume", action)

    async def advance(
        self, task_id: str, target_step_id: str, caller_token: str
    ) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            execution = await self._execution_for_task(task_id)
            return await self._state_machine.advance_to(
                execution.id, target_step_id, actor=caller.user_id
            )

        return await self._run("advance", action)

    async def complete_step(
        self,
        execution_id: str,
        step_id: str,
        completion: Optional[StepCompletion],
        caller_token: str,
    ) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            return await self._state_machine.complete_step(
                execution_id, step_id, completion, actor=caller.user_id
            )

        return await self._run("complete_step", action)

    async def save_progress(
        self, execution_id: str, step_id: str, completion: StepCompletion, caller_token: str
    ) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            return await self._state_machine.save_progress(
                execution_id, step_id, completion, actor=caller.user_id
            )

        return await self._run("save_progress", action)

    async def skip_step(
        self, execution_id: str, step_id: str, reason: Optional[str], caller_token: str
    ) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, SUPERVISOR)
            return await self._state_machine.skip_step(
                execution_id, step_id, reason, actor=caller.user_id
            )

        return await self._run("skip_step", action)

    async def fail_step(
        self, execution_id: str, step_id: str, reason: str, caller_token: str
    ) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            return await self._state_machine.fail_step(
                execution_id, step_id, reason, actor=caller.user_id
            )

        return await self._run("fail_step", action)

    async def finalize(
        self, execution_id: str, signature: SignatureRecord, caller_token: str
    ) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, TECHNICIAN)
            return await self._state_machine.finalize(
                execution_id, signature, actor=caller.user_id
            )

        return await self._run("finalize", action)

    async def retire(self, task_id: str, reason: str, caller_token: str) -> GatewayResponse:
        """React to an external task cancellation by retiring its execution."""

        async def action() -> WorkflowExecution:
            caller = await self._authorize(caller_token, SUPERVISOR)
            execution = await self._execution_for_task(task_id)
            return await self._state_machine.retire(
                execution.id, reason=reason, actor=caller.user_id
            )

        return await self._run("retire", action)

    # ------------------------------------------------------------------
    # Reads
    async def get_steps(self, execution_id: str, caller_token: str) -> GatewayResponse:
        async def action() -> List[WorkflowExecutionStep]:
            await self._authorize(caller_token, TECHNICIAN)
            execution = await self._read(lambda: self._state_machine.load(execution_id))
            return execution.ordered_steps()

        return await self._run("get_steps", action)

    async def get_execution_by_task(self, task_id: str, caller_token: str) -> GatewayResponse:
        async def action() -> WorkflowExecution:
            await self._authorize(caller_token, TECHNICIAN)
            return await self._execution_for_task(task_id)

        return await self._run("get_execution_by_task", action)

    async def get_progress(self, task_id: str, caller_token: str) -> GatewayResponse:
        async def action() -> WorkflowProgress:
            await self._authorize(caller_token, TECHNICIAN)
            execution = await self._execution_for_task(task_id)
            return self._state_machine.progress(execution)

        return await self._run("get_progress", action)

    # ------------------------------------------------------------------
    # Administration
    async def sync_all(self, caller_token: str) -> GatewayResponse:
        async def action() -> SyncReport:
            await self._authorize(caller_token, ADMIN)
            return await self._reconciler.sync_all()

        return await self._run("sync_all", action)


def build_gateway(
    tasks: TaskDirectory,
    policy: Optional[CallerPolicy] = None,
    repository: Optional[ExecutionRepository] = None,
    config: Optional[FieldflowConfig] = None,
) -> ExecutionGateway:
    """Assemble a gateway from configuration.

    The repository comes from :func:`get_repository`, templates from
    :func:`default_registry` and the caller policy from the ``auth``
    section when none is given.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    templates = default_registry(config.templates_path)
    state_machine = WorkflowStateMachine(repository, templates)
    reconciler = ReconciliationService(
        tasks,
        repository,
        state_machine,
        max_concurrency=config.sync.max_concurrency,
        default_template_id=config.default_template_id,
    )
    policy = policy or JwtCallerPolicy.from_config(config.auth)
    return ExecutionGateway(state_machine, reconciler, tasks, policy, repository)
