from datetime import datetime, timedelta, timezone

from fieldflow.contracts import StepCompletion
from fieldflow.engine import WorkflowStateMachine

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

INSPECTION_DONE = StepCompletion(checklist={"vehicle_clean": True, "defects_documented": True})
PREPARATION_DONE = StepCompletion(checklist={"surface_degreased": True, "film_cut": True})
FINALIZATION_DONE = StepCompletion(checklist={"quality_checked": True})


def at(seconds: int) -> datetime:
    return T0 + timedelta(seconds=seconds)


async def run_to_completion(machine: WorkflowStateMachine, execution_id: str):
    """Drive a PPF execution from pending through all four steps."""
    await machine.start(execution_id, now=at(0))
    await machine.save_progress(execution_id, "inspection", INSPECTION_DONE, now=at(10))
    await machine.advance_to(execution_id, "preparation", now=at(100))
    await machine.save_progress(execution_id, "preparation", PREPARATION_DONE, now=at(150))
    await machine.advance_to(execution_id, "installation", now=at(200))
    await machine.advance_to(execution_id, "finalization", now=at(500))
    return await machine.complete_step(
        execution_id, "finalization", FINALIZATION_DONE, now=at(560)
    )
