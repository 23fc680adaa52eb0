"""Workflow status command."""

import click

from autopilot.cli.shared import (
    OutputFormatter,
    console,
    render_status,
    workflow_command,
)
from autopilot.orchestrator.workflow_service import WorkflowService


@click.command()
@workflow_command
def status_command(service: WorkflowService, output: OutputFormatter) -> None:
    """Show the current workflow state.

    Examples:
        autopilot status          # Human-readable panel
        autopilot --json status   # Machine-readable
    """
    if not service.has_workflow():
        output.emit(
            {"active": False},
            lambda: console.print("[yellow]No active workflow[/yellow]"),
        )
        return

    status = service.get_status()
    output.emit({"active": True, "status": status}, lambda: render_status(status))
