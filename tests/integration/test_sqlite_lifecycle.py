"""End-to-end runs through the gateway backed by SQLite and signed caller tokens."""

import asyncio

import pytest

from fieldflow.config import AuthConfig, FieldflowConfig, SyncConfig
from fieldflow.contracts import ExecutionStatus, SignatureRecord, StepStatus, Task, TaskStatus
from fieldflow.engine import WorkflowStateMachine
from fieldflow.gateway import build_gateway
from fieldflow.persistence import SQLiteExecutionRepository
from fieldflow.security import ADMIN, SUPERVISOR, TECHNICIAN, JwtCallerPolicy
from fieldflow.tasks import InMemoryTaskDirectory
from fieldflow.templates import default_registry
from tests.helpers import FINALIZATION_DONE, INSPECTION_DONE, PREPARATION_DONE

SECRET = "integration-secret-that-is-long-enough"


def _config(tmp_path) -> FieldflowConfig:
    return FieldflowConfig(
        database_url=f"sqlite://{tmp_path / 'fieldflow.db'}",
        sync=SyncConfig(max_concurrency=4),
        auth=AuthConfig(secret=SECRET),
    )


@pytest.mark.asyncio
async def test_technician_runs_a_job_end_to_end(tmp_path):
    config = _config(tmp_path)
    tasks = InMemoryTaskDirectory([Task(id="job-42", assigned_to="tech-9")])
    gateway = build_gateway(tasks, config=config)
    issuer = JwtCallerPolicy.from_config(config.auth)
    tech = issuer.issue("tech-9", [TECHNICIAN])

    started = await gateway.start("job-42", tech)
    assert started.success, started.error
    execution_id = started.data.id

    await gateway.save_progress(execution_id, "inspection", INSPECTION_DONE, tech)
    assert (await gateway.pause(execution_id, tech)).success
    assert (await gateway.resume(execution_id, tech)).success
    assert (await gateway.advance("job-42", "preparation", tech)).success
    await gateway.save_progress(execution_id, "preparation", PREPARATION_DONE, tech)
    assert (await gateway.advance("job-42", "installation", tech)).success
    assert (await gateway.advance("job-42", "finalization", tech)).success
    done = await gateway.complete_step(execution_id, "finalization", FINALIZATION_DONE, tech)
    assert done.data.status == ExecutionStatus.COMPLETED

    signed = await gateway.finalize(
        execution_id, SignatureRecord(signer="Pat Owner", signature="sig-bytes"), tech
    )
    assert signed.success

    reopened = SQLiteExecutionRepository(tmp_path / "fieldflow.db")
    stored = await reopened.get_execution(execution_id)
    assert stored.status == ExecutionStatus.COMPLETED
    assert stored.updated_by == "tech-9"
    assert stored.signature.signer == "Pat Owner"
    assert all(s.status == StepStatus.COMPLETED for s in stored.steps)
    inspection = stored.get_step("inspection")
    assert inspection.timing.total_paused_seconds >= 0
    assert inspection.duration_seconds >= 0


@pytest.mark.asyncio
async def test_sync_and_cancellation_across_population(tmp_path):
    config = _config(tmp_path)
    tasks = InMemoryTaskDirectory([Task(id=f"job-{i}") for i in range(6)])
    gateway = build_gateway(tasks, config=config)
    issuer = JwtCallerPolicy.from_config(config.auth)
    tech = issuer.issue("tech-1", [TECHNICIAN])
    admin = issuer.issue("ops", [ADMIN])
    supervisor = issuer.issue("lead", [SUPERVISOR])

    await gateway.start("job-0", tech)
    await gateway.start("job-1", tech)

    first = await gateway.sync_all(admin)
    assert first.success
    assert first.data.synced_count == 2
    assert first.data.error_count == 4

    tasks.put(Task(id="job-1", status=TaskStatus.CANCELLED))
    second = await gateway.sync_all(admin)
    assert second.data.error_count == 1
    assert "retired execution" in second.data.outcomes[1].repair_action

    retired = await gateway.get_execution_by_task("job-1", tech)
    assert retired.data.retired
    assert retired.data.status == ExecutionStatus.FAILED

    # an explicit retire on an already retired execution is a no-op
    again = await gateway.retire("job-1", "duplicate cancel", supervisor)
    assert again.data.revision == retired.data.revision

    third = await gateway.sync_all(admin)
    assert third.data.error_count == 0
    assert third.data.synced_count == 6

    forged = JwtCallerPolicy("a-different-secret-that-is-long-enough").issue("ops", [ADMIN])
    denied = await gateway.sync_all(forged)
    assert denied.error.code == "forbidden"


@pytest.mark.asyncio
async def test_concurrent_first_use_creates_one_execution(tmp_path):
    repo = SQLiteExecutionRepository(tmp_path / "fieldflow.db")
    machine = WorkflowStateMachine(repo, default_registry())
    task = Task(id="job-1")

    results = await asyncio.gather(*(machine.ensure_execution(task) for _ in range(5)))

    assert len({execution.id for execution in results}) == 1
    assert len(await repo.list_executions()) == 1
