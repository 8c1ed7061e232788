"""Workflow state machine for procedure executions.

State diagram for an execution::

    pending -> in_progress -> completed
                           -> failed

and for each of its steps::

    pending -> in_progress -> completed
            -> skipped     -> failed
            -> failed

Every public operation loads the execution, applies the transition to the
loaded copy and writes it back with a compare-and-swap on ``revision``. Two
callers racing on the same execution therefore cannot both win: the loser
gets :class:`~fieldflow.errors.ConflictError` and must re-read.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .contracts import (
    ExecutionStatus,
    SignatureRecord,
    StepCompletion,
    StepStatus,
    Task,
    WorkflowExecution,
    WorkflowExecutionStep,
    WorkflowProgress,
    utcnow,
)
from .errors import ConflictError, InternalError, InvalidTransitionError, NotFoundError
from .persistence import ExecutionRepository
from .templates import DEFAULT_TEMPLATE_ID, TemplateRegistry
from .timing import StepTimingTracker

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

VALID_STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        [StepStatus.IN_PROGRESS, StepStatus.SKIPPED, StepStatus.FAILED]
    ),
    StepStatus.IN_PROGRESS: frozenset([StepStatus.COMPLETED, StepStatus.FAILED]),
    # Terminal states: no outgoing transitions
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


def _set_step_status(step: WorkflowExecutionStep, target: StepStatus) -> None:
    if target not in VALID_STEP_TRANSITIONS[step.status]:
        raise InvalidTransitionError(
            f"Step {step.step_id} cannot move from {step.status.value} to {target.value}"
        )
    step.status = target


def _apply_completion(step: WorkflowExecutionStep, completion: Optional[StepCompletion]) -> None:
    if completion is None:
        return
    step.checklist_completion.update(completion.checklist)
    if completion.notes is not None:
        step.notes = completion.notes
    for photo in completion.photos:
        if photo not in step.photos:
            step.photos.append(photo)


def gate_blocker(
    execution: WorkflowExecution,
    target: WorkflowExecutionStep,
    assume_cleared: Optional[str] = None,
) -> Optional[WorkflowExecutionStep]:
    """Return the first earlier step that keeps ``target`` closed, if any.

    ``assume_cleared`` names a step treated as completed, used when the
    active step is closed by the same transition that opens ``target``.
    """
    for step in execution.ordered_steps():
        if step.step_order >= target.step_order:
            break
        if step.status.clears_gate or step.step_id == assume_cleared:
            continue
        return step
    return None


def compute_progress(execution: WorkflowExecution) -> WorkflowProgress:
    total = len(execution.steps)
    completed = sum(1 for s in execution.steps if s.status == StepStatus.COMPLETED)
    skipped = sum(1 for s in execution.steps if s.status == StepStatus.SKIPPED)
    percentage = round(100.0 * (completed + skipped) / total, 1) if total else 0.0
    return WorkflowProgress(
        execution_id=execution.id,
        task_id=execution.task_id,
        status=execution.status,
        current_step_id=execution.current_step_id,
        total_steps=total,
        completed_steps=completed,
        skipped_steps=skipped,
        percentage=percentage,
    )


class WorkflowStateMachine:
    """Applies state transitions to persisted workflow executions."""

    def __init__(
        self,
        repository: ExecutionRepository,
        templates: TemplateRegistry,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._templates = templates
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    async def load(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Workflow {execution_id} not found")
        return execution

    async def _load_live(self, execution_id: str) -> WorkflowExecution:
        """Load an execution that may still change; retired records are frozen."""
        execution = await self.load(execution_id)
        if execution.retired:
            raise InvalidTransitionError(f"Workflow {execution_id} is retired")
        return execution

    async def _commit(
        self, execution: WorkflowExecution, now: datetime, actor: str
    ) -> WorkflowExecution:
        execution.updated_at = now
        execution.updated_by = actor
        return await self._repository.save_execution(execution, execution.revision)

    def _required_items(self, execution: WorkflowExecution, step_id: str) -> List[str]:
        try:
            template = self._templates.get_template(execution.template_id)
        except NotFoundError as exc:
            raise InternalError(
                f"Workflow {execution.id} references unknown template {execution.template_id}"
            ) from exc
        spec = template.get_step(step_id)
        return list(spec.checklist_items) if spec else []

    def _check_checklist(self, execution: WorkflowExecution, step: WorkflowExecutionStep) -> None:
        missing = [
            item
            for item in self._required_items(execution, step.step_id)
            if not step.checklist_completion.get(item)
        ]
        if missing:
            raise InvalidTransitionError(
                f"Step {step.step_id} has incomplete required checklist items: "
                f"{', '.join(missing)}"
            )

    @staticmethod
    def _require_step(execution: WorkflowExecution, step_id: str) -> WorkflowExecutionStep:
        step = execution.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in workflow {execution.id}")
        return step

    @staticmethod
    def _require_in_progress(execution: WorkflowExecution, action: str) -> None:
        if execution.status != ExecutionStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Cannot {action} a workflow that is not in progress "
                f"(status: {execution.status.value})"
            )

    @staticmethod
    def _open_step(step: WorkflowExecutionStep, now: datetime) -> None:
        _set_step_status(step, StepStatus.IN_PROGRESS)
        tracker = StepTimingTracker(step.timing)
        step.timing = tracker.start(now)
        step.started_at = now

    @staticmethod
    def _close_step(step: WorkflowExecutionStep, target: StepStatus, now: datetime) -> None:
        _set_step_status(step, target)
        if step.timing is not None and step.timing.is_open:
            tracker = StepTimingTracker(step.timing)
            step.timing = tracker.stop(now)
            step.duration_seconds = tracker.elapsed_active_seconds(now)
        step.completed_at = now

    @staticmethod
    def _finish_if_done(execution: WorkflowExecution, now: datetime) -> None:
        if all(s.status.clears_gate for s in execution.steps):
            execution.status = ExecutionStatus.COMPLETED
            execution.completed_at = now
            execution.current_step_id = None
            logger.info(f"Workflow completed for execution_id={execution.id}")

    # ------------------------------------------------------------------
    # Creation
    async def create(
        self,
        task_id: str,
        template_id: str = DEFAULT_TEMPLATE_ID,
        actor: str = "system",
        now: Optional[datetime] = None,
    ) -> WorkflowExecution:
        """Create a pending execution with one pending step per template step."""
        now = now or self._clock()
        template = self._templates.get_template(template_id)
        execution = WorkflowExecution(
            task_id=task_id,
            template_id=template.id,
            created_by=actor,
            updated_by=actor,
            created_at=now,
            updated_at=now,
        )
        execution.steps = [
            WorkflowExecutionStep.from_spec(execution.id, spec) for spec in template.steps
        ]
        created = await self._repository.create_execution(execution)
        logger.info(f"Created workflow {created.id} for task_id={task_id}")
        return created

    async def ensure_execution(self, task: Task, actor: str = "system") -> WorkflowExecution:
        """Return the task's execution, creating it on first use."""
        existing = await self._repository.get_execution_by_task(task.id)
        if existing is not None:
            return existing
        try:
            return await self.create(task.id, task.template_id or DEFAULT_TEMPLATE_ID, actor)
        except ConflictError:
            # created concurrently; the winner's record is the one to use
            existing = await self._repository.get_execution_by_task(task.id)
            if existing is None:
                raise
            return existing

    # ------------------------------------------------------------------
    # Transitions
    async def start(
        self, execution_id: str, now: Optional[datetime] = None, actor: str = "system"
    ) -> WorkflowExecution:
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        if execution.status != ExecutionStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot start a workflow that is {execution.status.value}"
            )
        first = execution.ordered_steps()[0]
        self._open_step(first, now)
        execution.status = ExecutionStatus.IN_PROGRESS
        execution.started_at = now
        execution.current_step_id = first.step_id
        saved = await self._commit(execution, now, actor)
        logger.info(f"Started workflow {execution_id} at step {first.step_id}")
        return saved

    async def can_advance_to_step(self, execution_id: str, target_step_id: str) -> bool:
        execution = await self.load(execution_id)
        target = self._require_step(execution, target_step_id)
        return gate_blocker(execution, target) is None

    async def advance_to(
        self,
        execution_id: str,
        target_step_id: str,
        now: Optional[datetime] = None,
        actor: str = "system",
    ) -> WorkflowExecution:
        """Close the active step (if any) and open ``target_step_id``."""
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        self._require_in_progress(execution, "advance")
        target = self._require_step(execution, target_step_id)
        if target.status != StepStatus.PENDING:
            raise InvalidTransitionError(
                f"Step {target_step_id} is {target.status.value} and cannot be started"
            )

        active = execution.active_step
        if active is not None:
            if active.timing is not None and active.timing.is_paused:
                raise InvalidTransitionError(
                    f"Step {active.step_id} is paused and cannot be advanced"
                )
            self._check_checklist(execution, active)

        blocker = gate_blocker(
            execution, target, assume_cleared=active.step_id if active else None
        )
        if blocker is not None:
            raise InvalidTransitionError(
                f"Cannot advance to step {target_step_id}: previous step "
                f"{blocker.step_id} is {blocker.status.value}"
            )

        if active is not None:
            self._close_step(active, StepStatus.COMPLETED, now)
        self._open_step(target, now)
        execution.current_step_id = target.step_id
        saved = await self._commit(execution, now, actor)
        logger.info(f"Advanced workflow {execution_id} to step {target_step_id}")
        return saved

    async def pause_workflow(
        self, execution_id: str, now: Optional[datetime] = None, actor: str = "system"
    ) -> WorkflowExecution:
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        self._require_in_progress(execution, "pause")
        active = execution.active_step
        if active is None:
            raise InvalidTransitionError("Cannot pause a workflow without an active step")
        tracker = StepTimingTracker(active.timing)
        active.timing = tracker.pause(now)
        saved = await self._commit(execution, now, actor)
        logger.info(f"Paused workflow {execution_id} at step {active.step_id}")
        return saved

    async def resume_workflow(
        self, execution_id: str, now: Optional[datetime] = None, actor: str = "system"
    ) -> WorkflowExecution:
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        self._require_in_progress(execution, "resume")
        active = execution.active_step
        if active is None:
            raise InvalidTransitionError("Cannot resume a workflow without an active step")
        tracker = StepTimingTracker(active.timing)
        active.timing = tracker.resume(now)
        saved = await self._commit(execution, now, actor)
        logger.info(f"Resumed workflow {execution_id} at step {active.step_id}")
        return saved

    async def complete_step(
        self,
        execution_id: str,
        step_id: str,
        completion: Optional[StepCompletion] = None,
        now: Optional[datetime] = None,
        actor: str = "system",
    ) -> WorkflowExecution:
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        self._require_in_progress(execution, "complete a step of")
        step = self._require_step(execution, step_id)
        if step.status != StepStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Step {step_id} is {step.status.value}; only the active step can be completed"
            )
        _apply_completion(step, completion)
        self._check_checklist(execution, step)
        self._close_step(step, StepStatus.COMPLETED, now)
        execution.current_step_id = None
        self._finish_if_done(execution, now)
        saved = await self._commit(execution, now, actor)
        logger.info(
            f"Completed step {step_id} of workflow {execution_id} "
            f"in {step.duration_seconds}s"
        )
        return saved

    async def fail_step(
        self,
        execution_id: str,
        step_id: str,
        reason: str,
        now: Optional[datetime] = None,
        actor: str = "system",
    ) -> WorkflowExecution:
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        self._require_in_progress(execution, "fail a step of")
        step = self._require_step(execution, step_id)
        if step.status != StepStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Step {step_id} is {step.status.value}; only the active step can be failed"
            )
        self._close_step(step, StepStatus.FAILED, now)
        if reason:
            step.notes = reason
        execution.status = ExecutionStatus.FAILED
        execution.failure_reason = reason
        execution.current_step_id = None
        saved = await self._commit(execution, now, actor)
        logger.warning(f"Workflow {execution_id} failed at step {step_id}: {reason}")
        return saved

    async def skip_step(
        self,
        execution_id: str,
        step_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        actor: str = "system",
    ) -> WorkflowExecution:
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        self._require_in_progress(execution, "skip a step of")
        step = self._require_step(execution, step_id)
        if step.is_required:
            raise InvalidTransitionError(f"Step {step_id} is required and cannot be skipped")
        blocker = gate_blocker(execution, step)
        if blocker is not None:
            raise InvalidTransitionError(
                f"Cannot skip step {step_id}: previous step "
                f"{blocker.step_id} is {blocker.status.value}"
            )
        _set_step_status(step, StepStatus.SKIPPED)
        step.completed_at = now
        if reason:
            step.notes = reason
        self._finish_if_done(execution, now)
        saved = await self._commit(execution, now, actor)
        logger.info(f"Skipped step {step_id} of workflow {execution_id}")
        return saved

    async def save_progress(
        self,
        execution_id: str,
        step_id: str,
        completion: StepCompletion,
        now: Optional[datetime] = None,
        actor: str = "system",
    ) -> WorkflowExecution:
        """Record checklist, notes and photos without changing step status."""
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        if execution.status.is_terminal:
            raise InvalidTransitionError(
                f"Cannot record progress on a {execution.status.value} workflow"
            )
        step = self._require_step(execution, step_id)
        if step.status.is_terminal:
            raise InvalidTransitionError(
                f"Cannot record progress on a {step.status.value} step"
            )
        _apply_completion(step, completion)
        return await self._commit(execution, now, actor)

    async def finalize(
        self,
        execution_id: str,
        signature: SignatureRecord,
        now: Optional[datetime] = None,
        actor: str = "system",
    ) -> WorkflowExecution:
        now = now or self._clock()
        execution = await self._load_live(execution_id)
        if execution.status != ExecutionStatus.COMPLETED:
            raise InvalidTransitionError(
                f"Cannot finalize a workflow that is not completed "
                f"(status: {execution.status.value})"
            )
        if execution.signature is not None:
            if execution.signature.same_payload(signature):
                return execution
            raise InvalidTransitionError(
                f"Workflow {execution_id} is already finalized with a different signature"
            )
        execution.signature = signature.model_copy(
            update={"signed_at": signature.signed_at or now}
        )
        saved = await self._commit(execution, now, actor)
        logger.info(f"Finalized workflow {execution_id} signed by {signature.signer}")
        return saved

    async def retire(
        self,
        execution_id: str,
        reason: str = "task cancelled",
        now: Optional[datetime] = None,
        actor: str = "system",
    ) -> WorkflowExecution:
        """Soft-retire the execution of a cancelled task.

        An in-progress execution fails its active step (closing the timing,
        so a paused step does not stay paused forever) and the execution
        becomes ``failed``. Retired executions are never deleted.
        """
        now = now or self._clock()
        execution = await self.load(execution_id)
        if execution.retired:
            return execution
        if execution.status == ExecutionStatus.IN_PROGRESS:
            active = execution.active_step
            if active is not None:
                self._close_step(active, StepStatus.FAILED, now)
            execution.status = ExecutionStatus.FAILED
            execution.current_step_id = None
        if execution.status != ExecutionStatus.COMPLETED:
            execution.failure_reason = reason
        execution.retired = True
        saved = await self._commit(execution, now, actor)
        logger.info(f"Retired workflow {execution_id}: {reason}")
        return saved

    async def repair_linkage(
        self, execution_id: str, now: Optional[datetime] = None, actor: str = "reconciliation"
    ) -> tuple[WorkflowExecution, List[str]]:
        """Align an execution's step rows and ``current_step_id`` with its template.

        Returns the (possibly updated) execution and a list of the repairs
        made; an empty list means the execution was already consistent.
        """
        now = now or self._clock()
        execution = await self.load(execution_id)
        try:
            template = self._templates.get_template(execution.template_id)
        except NotFoundError as exc:
            raise InternalError(
                f"Workflow {execution_id} references unknown template {execution.template_id}"
            ) from exc

        known = {spec.id for spec in template.steps}
        unknown = sorted(s.step_id for s in execution.steps if s.step_id not in known)
        if unknown:
            raise InternalError(
                f"Workflow {execution_id} has steps not in template "
                f"{template.id}: {', '.join(unknown)}"
            )

        actions: List[str] = []
        missing = [spec for spec in template.steps if execution.get_step(spec.id) is None]
        for spec in missing:
            step = WorkflowExecutionStep.from_spec(execution.id, spec)
            if execution.status.is_terminal:
                # a finished execution cannot reopen; record the gap as skipped
                step.status = StepStatus.SKIPPED
                step.notes = "added by reconciliation"
            execution.steps.append(step)
        if missing:
            actions.append(f"added missing steps: {', '.join(s.id for s in missing)}")

        active = execution.active_step
        expected_current = active.step_id if active else None
        if execution.current_step_id != expected_current:
            actions.append(
                f"reset current step from {execution.current_step_id} to {expected_current}"
            )
            execution.current_step_id = expected_current

        if not actions:
            return execution, actions
        saved = await self._commit(execution, now, actor)
        logger.info(f"Repaired workflow {execution_id}: {'; '.join(actions)}")
        return saved, actions

    def progress(self, execution: WorkflowExecution) -> WorkflowProgress:
        return compute_progress(execution)
