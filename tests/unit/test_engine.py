import pytest

from fieldflow.contracts import (
    ExecutionStatus,
    ProcedureTemplate,
    SignatureRecord,
    StepCompletion,
    StepSpec,
    StepStatus,
    Task,
)
from fieldflow.engine import WorkflowStateMachine
from fieldflow.errors import ConflictError, InternalError, InvalidTransitionError, NotFoundError
from fieldflow.templates import TemplateRegistry, default_registry
from tests.helpers import INSPECTION_DONE, PREPARATION_DONE, T0, at, run_to_completion

OPTIONAL_TEMPLATE = ProcedureTemplate(
    id="wash-and-wax",
    steps=[
        StepSpec(id="wash", order=1, title="Wash"),
        StepSpec(id="clay", order=2, title="Clay bar", is_required=False),
        StepSpec(id="wax", order=3, title="Wax"),
    ],
)


@pytest.mark.asyncio
async def test_create_builds_pending_steps(machine):
    execution = await machine.create("task-1", now=at(0), actor="tech-1")

    assert execution.status == ExecutionStatus.PENDING
    assert execution.current_step_id is None
    assert execution.created_by == "tech-1"
    assert [s.step_id for s in execution.ordered_steps()] == [
        "inspection",
        "preparation",
        "installation",
        "finalization",
    ]
    assert all(s.status == StepStatus.PENDING for s in execution.steps)
    assert all(s.execution_id == execution.id for s in execution.steps)


@pytest.mark.asyncio
async def test_create_with_unknown_template(machine):
    with pytest.raises(NotFoundError):
        await machine.create("task-1", template_id="nope")


@pytest.mark.asyncio
async def test_ensure_execution_is_idempotent(machine):
    task = Task(id="task-1")
    first = await machine.ensure_execution(task)
    second = await machine.ensure_execution(task)

    assert first.id == second.id


@pytest.mark.asyncio
async def test_start_opens_first_step(machine):
    execution = await machine.create("task-1")
    started = await machine.start(execution.id, now=at(0))

    inspection = started.get_step("inspection")
    assert started.status == ExecutionStatus.IN_PROGRESS
    assert started.started_at == at(0)
    assert started.current_step_id == "inspection"
    assert inspection.status == StepStatus.IN_PROGRESS
    assert inspection.timing.start_time == at(0)

    with pytest.raises(InvalidTransitionError, match="Cannot start"):
        await machine.start(execution.id)


@pytest.mark.asyncio
async def test_unknown_execution_raises_not_found(machine):
    with pytest.raises(NotFoundError, match="Workflow missing not found"):
        await machine.pause_workflow("missing")


@pytest.mark.asyncio
async def test_gate_counts_only_earlier_steps(machine):
    execution = await machine.create("task-1")

    assert await machine.can_advance_to_step(execution.id, "inspection")
    assert not await machine.can_advance_to_step(execution.id, "preparation")
    assert not await machine.can_advance_to_step(execution.id, "finalization")


@pytest.mark.asyncio
async def test_advance_past_unfinished_step_is_rejected(machine, repo):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.save_progress(execution.id, "inspection", INSPECTION_DONE, now=at(5))
    before = await repo.get_execution(execution.id)

    with pytest.raises(InvalidTransitionError, match="previous step preparation is pending"):
        await machine.advance_to(execution.id, "installation", now=at(10))

    after = await repo.get_execution(execution.id)
    assert after.revision == before.revision
    assert after.get_step("inspection").status == StepStatus.IN_PROGRESS
    assert after.get_step("installation").status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_advance_requires_checklist(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.save_progress(
        execution.id, "inspection", StepCompletion(checklist={"vehicle_clean": True})
    )

    with pytest.raises(InvalidTransitionError, match="defects_documented"):
        await machine.advance_to(execution.id, "preparation", now=at(10))


@pytest.mark.asyncio
async def test_advance_closes_active_step_and_opens_target(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.save_progress(execution.id, "inspection", INSPECTION_DONE)
    advanced = await machine.advance_to(execution.id, "preparation", now=at(75), actor="tech-1")

    inspection = advanced.get_step("inspection")
    preparation = advanced.get_step("preparation")
    assert inspection.status == StepStatus.COMPLETED
    assert inspection.completed_at == at(75)
    assert inspection.duration_seconds == 75
    assert preparation.status == StepStatus.IN_PROGRESS
    assert preparation.started_at == at(75)
    assert advanced.current_step_id == "preparation"
    assert advanced.updated_by == "tech-1"


@pytest.mark.asyncio
async def test_pause_and_resume_are_excluded_from_duration(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.save_progress(execution.id, "inspection", INSPECTION_DONE)
    paused = await machine.pause_workflow(execution.id, now=at(60))
    assert paused.get_step("inspection").timing.is_paused

    await machine.resume_workflow(execution.id, now=at(90))
    advanced = await machine.advance_to(execution.id, "preparation", now=at(135))

    inspection = advanced.get_step("inspection")
    assert inspection.timing.total_paused_seconds == 30
    assert inspection.duration_seconds == 105


@pytest.mark.asyncio
async def test_pause_twice_and_resume_running_are_rejected(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.pause_workflow(execution.id, now=at(10))

    with pytest.raises(InvalidTransitionError, match="already paused"):
        await machine.pause_workflow(execution.id, now=at(20))
    with pytest.raises(InvalidTransitionError, match="is paused"):
        await machine.advance_to(execution.id, "preparation", now=at(20))

    await machine.resume_workflow(execution.id, now=at(30))
    with pytest.raises(InvalidTransitionError, match="not paused"):
        await machine.resume_workflow(execution.id, now=at(40))


@pytest.mark.asyncio
async def test_pause_pending_workflow_is_rejected(machine):
    execution = await machine.create("task-1")
    with pytest.raises(InvalidTransitionError, match="status: pending"):
        await machine.pause_workflow(execution.id)


@pytest.mark.asyncio
async def test_full_run_completes_execution(machine):
    execution = await machine.create("task-1")
    completed = await run_to_completion(machine, execution.id)

    assert completed.status == ExecutionStatus.COMPLETED
    assert completed.completed_at == at(560)
    assert completed.current_step_id is None
    assert all(s.status == StepStatus.COMPLETED for s in completed.steps)
    assert [s.duration_seconds for s in completed.ordered_steps()] == [100, 100, 300, 60]
    assert machine.progress(completed).percentage == 100.0


@pytest.mark.asyncio
async def test_pause_terminal_execution_is_rejected_without_mutation(machine, repo):
    done = await machine.create("task-1")
    await run_to_completion(machine, done.id)
    failed = await machine.create("task-2")
    await machine.start(failed.id, now=at(0))
    await machine.fail_step(failed.id, "inspection", "customer left", now=at(30))

    for execution_id in (done.id, failed.id):
        before = await repo.get_execution(execution_id)
        with pytest.raises(InvalidTransitionError):
            await machine.pause_workflow(execution_id, now=at(900))
        after = await repo.get_execution(execution_id)
        assert after == before


@pytest.mark.asyncio
async def test_complete_step_only_for_active_step(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))

    with pytest.raises(InvalidTransitionError, match="only the active step"):
        await machine.complete_step(execution.id, "preparation")

    completed = await machine.complete_step(
        execution.id, "inspection", INSPECTION_DONE, now=at(50)
    )
    assert completed.current_step_id is None
    assert completed.status == ExecutionStatus.IN_PROGRESS
    assert completed.get_step("inspection").checklist_completion == INSPECTION_DONE.checklist
    assert machine.progress(completed).completed_steps == 1
    assert machine.progress(completed).percentage == 25.0

    advanced = await machine.advance_to(execution.id, "preparation", now=at(60))
    assert advanced.current_step_id == "preparation"


@pytest.mark.asyncio
async def test_fail_step_fails_execution(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    failed = await machine.fail_step(execution.id, "inspection", "film damaged", now=at(40))

    step = failed.get_step("inspection")
    assert failed.status == ExecutionStatus.FAILED
    assert failed.failure_reason == "film damaged"
    assert failed.current_step_id is None
    assert step.status == StepStatus.FAILED
    assert step.notes == "film damaged"
    assert step.duration_seconds == 40

    with pytest.raises(InvalidTransitionError):
        await machine.advance_to(execution.id, "preparation")


@pytest.mark.asyncio
async def test_fail_step_only_for_active_step(machine, repo):
    execution = await machine.create("task-1")
    with pytest.raises(InvalidTransitionError, match="status: pending"):
        await machine.fail_step(execution.id, "inspection", "no show")

    await machine.start(execution.id, now=at(0))
    before = await repo.get_execution(execution.id)

    with pytest.raises(InvalidTransitionError, match="only the active step can be failed"):
        await machine.fail_step(execution.id, "preparation", "film damaged", now=at(30))

    after = await repo.get_execution(execution.id)
    assert after == before
    assert after.status == ExecutionStatus.IN_PROGRESS
    assert after.current_step_id == "inspection"
    assert after.get_step("inspection").timing.is_open
    assert after.get_step("preparation").status == StepStatus.PENDING


@pytest.mark.asyncio
async def test_skip_optional_step(repo):
    registry = TemplateRegistry([OPTIONAL_TEMPLATE])
    machine = WorkflowStateMachine(repo, registry, clock=lambda: T0)
    execution = await machine.create("task-1", template_id="wash-and-wax")
    await machine.start(execution.id, now=at(0))

    with pytest.raises(InvalidTransitionError, match="previous step wash is in_progress"):
        await machine.skip_step(execution.id, "clay")
    with pytest.raises(InvalidTransitionError, match="required"):
        await machine.skip_step(execution.id, "wax")

    await machine.complete_step(execution.id, "wash", now=at(30))
    skipped = await machine.skip_step(execution.id, "clay", "no contamination", now=at(31))
    clay = skipped.get_step("clay")
    assert clay.status == StepStatus.SKIPPED
    assert clay.notes == "no contamination"
    assert await machine.can_advance_to_step(execution.id, "wax")

    await machine.advance_to(execution.id, "wax", now=at(40))
    finished = await machine.complete_step(execution.id, "wax", now=at(100))
    progress = machine.progress(finished)
    assert finished.status == ExecutionStatus.COMPLETED
    assert progress.completed_steps == 2
    assert progress.skipped_steps == 1
    assert progress.percentage == 100.0


@pytest.mark.asyncio
async def test_save_progress_merges_and_rejects_terminal_steps(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.save_progress(
        execution.id,
        "inspection",
        StepCompletion(checklist={"vehicle_clean": True}, photos=["p1"]),
    )
    saved = await machine.save_progress(
        execution.id,
        "inspection",
        StepCompletion(checklist={"defects_documented": True}, notes="scratch", photos=["p1", "p2"]),
    )

    step = saved.get_step("inspection")
    assert step.checklist_completion == {"vehicle_clean": True, "defects_documented": True}
    assert step.notes == "scratch"
    assert step.photos == ["p1", "p2"]
    assert step.status == StepStatus.IN_PROGRESS

    await machine.advance_to(execution.id, "preparation", now=at(60))
    with pytest.raises(InvalidTransitionError):
        await machine.save_progress(execution.id, "inspection", PREPARATION_DONE)


@pytest.mark.asyncio
async def test_finalize_is_idempotent_for_same_signature(machine):
    execution = await machine.create("task-1")
    signature = SignatureRecord(signer="Jane Customer", signature="data:image/png;base64,AAA")

    with pytest.raises(InvalidTransitionError, match="not completed"):
        await machine.finalize(execution.id, signature)

    await run_to_completion(machine, execution.id)
    finalized = await machine.finalize(execution.id, signature, now=at(600))
    assert finalized.signature.signer == "Jane Customer"
    assert finalized.signature.signed_at == at(600)

    again = await machine.finalize(execution.id, signature, now=at(700))
    assert again.revision == finalized.revision
    assert again.signature.signed_at == at(600)

    with pytest.raises(InvalidTransitionError, match="different signature"):
        await machine.finalize(
            execution.id, SignatureRecord(signer="Someone Else", signature="xyz")
        )


@pytest.mark.asyncio
async def test_retire_closes_paused_step(machine):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.pause_workflow(execution.id, now=at(20))
    retired = await machine.retire(execution.id, now=at(50))

    step = retired.get_step("inspection")
    assert retired.retired is True
    assert retired.status == ExecutionStatus.FAILED
    assert retired.failure_reason == "task cancelled"
    assert step.status == StepStatus.FAILED
    assert not step.timing.is_open
    assert step.duration_seconds == 20

    again = await machine.retire(execution.id, now=at(60))
    assert again.revision == retired.revision


@pytest.mark.asyncio
async def test_retire_completed_execution_keeps_status(machine):
    execution = await machine.create("task-1")
    await run_to_completion(machine, execution.id)
    retired = await machine.retire(execution.id)

    assert retired.retired is True
    assert retired.status == ExecutionStatus.COMPLETED
    assert retired.failure_reason is None


@pytest.mark.asyncio
async def test_retired_pending_execution_cannot_start(machine, repo):
    execution = await machine.create("task-1")
    retired = await machine.retire(execution.id, now=at(0))
    assert retired.status == ExecutionStatus.PENDING

    with pytest.raises(InvalidTransitionError, match="is retired"):
        await machine.start(execution.id, now=at(10))

    stored = await repo.get_execution(execution.id)
    assert stored.status == ExecutionStatus.PENDING
    assert stored.revision == retired.revision
    assert all(s.status == StepStatus.PENDING for s in stored.steps)


@pytest.mark.asyncio
async def test_retired_execution_rejects_every_transition(machine, repo):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.save_progress(execution.id, "inspection", INSPECTION_DONE, now=at(5))
    await machine.advance_to(execution.id, "preparation", now=at(60))
    retired = await machine.retire(execution.id, now=at(90))

    attempts = [
        machine.start(execution.id),
        machine.advance_to(execution.id, "installation"),
        machine.pause_workflow(execution.id),
        machine.resume_workflow(execution.id),
        machine.complete_step(execution.id, "preparation", PREPARATION_DONE),
        machine.fail_step(execution.id, "preparation", "again"),
        machine.skip_step(execution.id, "installation"),
        machine.save_progress(execution.id, "installation", PREPARATION_DONE),
        machine.finalize(execution.id, SignatureRecord(signer="A", signature="B")),
    ]
    for attempt in attempts:
        with pytest.raises(InvalidTransitionError, match="is retired"):
            await attempt

    assert (await repo.get_execution(execution.id)).revision == retired.revision


@pytest.mark.asyncio
async def test_stale_write_loses_the_race(machine, repo):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    stale = await repo.get_execution(execution.id)

    await machine.pause_workflow(execution.id, now=at(10))
    stale.current_step_id = "finalization"
    with pytest.raises(ConflictError):
        await repo.save_execution(stale, stale.revision)

    current = await repo.get_execution(execution.id)
    assert current.current_step_id == "inspection"
    assert current.get_step("inspection").timing.is_paused


@pytest.mark.asyncio
async def test_repair_linkage_adds_missing_steps_and_resets_pointer(machine, repo):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    broken = await repo.get_execution(execution.id)
    broken.steps = [s for s in broken.steps if s.step_id in ("inspection", "preparation")]
    broken.current_step_id = "preparation"
    await repo.save_execution(broken, broken.revision)

    repaired, actions = await machine.repair_linkage(execution.id, now=at(5))

    assert actions == [
        "added missing steps: installation, finalization",
        "reset current step from preparation to inspection",
    ]
    assert [s.step_id for s in repaired.ordered_steps()] == [
        "inspection",
        "preparation",
        "installation",
        "finalization",
    ]
    assert repaired.get_step("installation").status == StepStatus.PENDING
    assert repaired.current_step_id == "inspection"
    assert repaired.updated_by == "reconciliation"

    _, again = await machine.repair_linkage(execution.id)
    assert again == []


@pytest.mark.asyncio
async def test_repair_linkage_on_terminal_execution_adds_skipped_steps(machine, repo):
    execution = await machine.create("task-1")
    await machine.start(execution.id, now=at(0))
    await machine.fail_step(execution.id, "inspection", "aborted", now=at(5))
    broken = await repo.get_execution(execution.id)
    broken.steps = [s for s in broken.steps if s.step_id != "finalization"]
    await repo.save_execution(broken, broken.revision)

    repaired, actions = await machine.repair_linkage(execution.id)

    assert actions == ["added missing steps: finalization"]
    added = repaired.get_step("finalization")
    assert added.status == StepStatus.SKIPPED
    assert added.notes == "added by reconciliation"
    assert repaired.status == ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_repair_linkage_with_unregistered_template(repo):
    registry = TemplateRegistry([OPTIONAL_TEMPLATE])
    machine = WorkflowStateMachine(repo, default_registry(), clock=lambda: T0)
    execution = await machine.create("task-1")
    other = WorkflowStateMachine(repo, registry, clock=lambda: T0)

    with pytest.raises(InternalError, match="unknown template"):
        await other.repair_linkage(execution.id)
