"""Workflow lifecycle commands: start, resume, finalize, abort."""

import warnings
from typing import Optional

import click

from autopilot.cli.shared import (
    OutputFormatter,
    console,
    render_next_action,
    render_status,
    workflow_command,
)
from autopilot.orchestrator.workflow_service import WorkflowService


@click.command()
@click.argument("task_id")
@click.option("--force", "-f", is_flag=True, help="Replace an existing workflow")
@click.option(
    "--max-attempts",
    type=click.IntRange(1, 20),
    default=None,
    help="GREEN attempts allowed per subtask",
)
@click.option("--tag", "-t", default=None, help="Task tag (also prefixes the branch)")
@workflow_command
def start_command(
    task_id: str,
    force: bool,
    max_attempts: Optional[int],
    tag: Optional[str],
    service: WorkflowService,
    output: OutputFormatter,
) -> None:
    """Start a TDD workflow for TASK_ID.

    Creates the task branch and puts the first open subtask in RED.

    Examples:
        autopilot start 7                 # Start task 7
        autopilot start 7 --force         # Discard the current workflow first
        autopilot start 7 --max-attempts 5
    """
    status = service.start_workflow(
        task_id, force=force, max_attempts=max_attempts, tag=tag
    )
    action = service.get_next_action()

    def render() -> None:
        console.print(f"[green]✓[/green] Workflow started on branch {status.branch_name}")
        render_status(status)
        render_next_action(action)

    output.emit({"success": True, "status": status, "nextAction": action}, render)


@click.command()
@workflow_command
def resume_command(service: WorkflowService, output: OutputFormatter) -> None:
    """Resume the workflow persisted for this project."""
    status = service.resume_workflow()
    action = service.get_next_action()

    def render() -> None:
        console.print("[green]✓[/green] Workflow resumed")
        render_status(status)
        render_next_action(action)

    output.emit({"success": True, "status": status, "nextAction": action}, render)


@click.command()
@workflow_command
def finalize_command(service: WorkflowService, output: OutputFormatter) -> None:
    """Complete a workflow whose subtasks are all committed."""
    status = service.finalize_workflow()

    def render() -> None:
        console.print("[green]✓[/green] Workflow complete")
        render_status(status)

    output.emit({"success": True, "status": status}, render)


@click.command()
@click.option("--force", "-f", is_flag=True, help="Do not ask for confirmation")
@click.option("--reason", default=None, help="Reason recorded with the abort")
@workflow_command
def abort_command(
    force: bool,
    reason: Optional[str],
    service: WorkflowService,
    output: OutputFormatter,
) -> None:
    """Abort the workflow and delete its state.

    Commits and the task branch are kept.
    """
    if not service.has_workflow():
        output.emit(
            {"success": True, "aborted": False},
            lambda: console.print("[yellow]No active workflow to abort[/yellow]"),
        )
        return

    if not force and not output.json_mode:
        if not click.confirm("Abort the current workflow?", default=False):
            console.print("[dim]Abort cancelled[/dim]")
            return

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        aborted = service.abort_workflow(reason=reason)

    output.emit(
        {"success": True, "aborted": aborted},
        lambda: console.print("[green]✓[/green] Workflow aborted"),
    )
