"""Command line interface for inspecting and reconciling fieldflow executions."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import typer

from fieldflow.config import load_config
from fieldflow.engine import WorkflowStateMachine, compute_progress
from fieldflow.persistence import get_repository
from fieldflow.reconcile import ReconciliationService, summarize
from fieldflow.tasks import InMemoryTaskDirectory
from fieldflow.templates import default_registry

app = typer.Typer(help="CLI for fieldflow workflow executions")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting workflow executions")
templates_app = typer.Typer(help="Commands for procedure templates")

app.add_typer(workflow_app, name="workflow")
app.add_typer(templates_app, name="templates")


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, help="Path to a fieldflow config file"),
) -> None:
    """fieldflow CLI entry point."""
    if config is not None:
        os.environ["FIELDFLOW_CONFIG"] = str(config)
    settings = load_config()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@workflow_app.command("list")
def workflow_list() -> None:
    """
    List all workflow executions with their current status.

    Example:
        fieldflow workflow list
        # Output: 3f2c...    task-17    in_progress    inspection
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions())
    if not executions:
        typer.echo("No workflows found")
        return
    for execution in executions:
        retired = "\tretired" if execution.retired else ""
        typer.echo(
            f"{execution.id}\t{execution.task_id}\t{execution.status.value}"
            f"\t{execution.current_step_id or '-'}{retired}"
        )


@workflow_app.command("show")
def workflow_show(execution_id: str) -> None:
    """
    Show detailed information for a workflow execution.

    Displays status, progress and the step-by-step history with durations.

    Example:
        fieldflow workflow show 3f2c...
        # Output: Workflow 3f2c... (task task-17): in_progress, 25.0% complete
        #         1. inspection: completed 105s
        #         2. preparation: in_progress
    """
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    progress = compute_progress(execution)
    typer.echo(
        f"Workflow {execution.id} (task {execution.task_id}): "
        f"{execution.status.value}, {progress.percentage}% complete"
    )
    if execution.failure_reason:
        typer.echo(f"Failure: {execution.failure_reason}")
    if execution.signature:
        typer.echo(f"Signed by {execution.signature.signer} at {execution.signature.signed_at}")
    for step in execution.ordered_steps():
        line = f"{step.step_order}. {step.step_id}: {step.status.value}"
        if step.timing is not None:
            line += f" {step.duration_seconds}s"
            if step.timing.is_paused:
                line += " (paused)"
        typer.echo(line)


@workflow_app.command("steps")
def workflow_steps(execution_id: str) -> None:
    """Print the ordered steps of a workflow as tab-separated rows."""
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    for step in execution.ordered_steps():
        typer.echo(
            f"{step.step_order}\t{step.step_id}\t{step.status.value}"
            f"\t{step.duration_seconds}\t{step.timing.total_paused_seconds if step.timing else 0}"
        )


@templates_app.command("list")
def templates_list() -> None:
    """List the configured procedure templates and their steps."""
    config = load_config()
    registry = default_registry(config.templates_path)
    for template in registry.list_templates():
        typer.echo(f"{template.id} - {template.name}")
        for step in template.steps:
            required = "" if step.is_required else " (optional)"
            typer.echo(f"  {step.order}. {step.id}: {step.title}{required}")


@app.command("sync")
def sync(
    tasks: Path = typer.Option(..., help="YAML file listing the task population"),
    max_concurrency: Optional[int] = typer.Option(
        None, help="Override the configured worker pool size"
    ),
) -> None:
    """
    Reconcile every task with its workflow execution.

    Creates missing executions and repairs partial ones. Exits with code 1
    when a task could not be repaired.

    Example:
        fieldflow sync --tasks tasks.yaml
        # Output: task-1    synced
        #         task-2    repaired: created execution ... with 4 pending steps
        #         Synced: 1, repaired or failed: 1
    """
    if not tasks.exists():
        typer.secho("Specified tasks file does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    config = load_config()
    repo = get_repository()
    directory = InMemoryTaskDirectory.from_yaml(tasks)
    state_machine = WorkflowStateMachine(repo, default_registry(config.templates_path))
    service = ReconciliationService(
        directory,
        repo,
        state_machine,
        max_concurrency=max_concurrency or config.sync.max_concurrency,
        default_template_id=config.default_template_id,
    )
    report = asyncio.run(service.sync_all())
    for outcome in report.outcomes:
        if outcome.is_synced:
            typer.echo(f"{outcome.task_id}\tsynced")
        elif outcome.error:
            typer.secho(f"{outcome.task_id}\tfailed: {outcome.error}", fg=typer.colors.RED)
        else:
            typer.echo(f"{outcome.task_id}\trepaired: {outcome.repair_action}")
    typer.echo(summarize(report))
    if any(o.error for o in report.outcomes):
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
