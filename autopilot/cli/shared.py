"""Helpers shared by the autopilot CLI commands."""

import functools
import json
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import click
from pydantic import BaseModel
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from autopilot.core.exceptions import (
    AutopilotError,
    MaxAttemptsExceededError,
    PhaseValidationError,
)
from autopilot.orchestrator.workflow_service import (
    NextAction,
    WorkflowService,
    WorkflowStatus,
)

console = Console()

_PHASE_COLORS = {"RED": "red", "GREEN": "green", "COMMIT": "blue"}


class OutputFormatter:
    """Prints command results as rich text or, with --json, as JSON."""

    def __init__(self, json_mode: bool = False, verbose: bool = False):
        self.json_mode = json_mode
        self.verbose = verbose

    def emit(self, payload: Any, render: Callable[[], None]) -> None:
        """Print ``payload`` as JSON, or call ``render`` for human output."""
        if self.json_mode:
            click.echo(json.dumps(_to_jsonable(payload), indent=2, default=str))
        else:
            render()

    def fail(self, error: AutopilotError) -> None:
        """Report a workflow error and exit with status 1."""
        if self.json_mode:
            body: Dict[str, Any] = {
                "success": False,
                "error": str(error),
                "errorType": type(error).__name__,
            }
            if isinstance(error, PhaseValidationError):
                body["errors"] = error.errors
                body["suggestions"] = error.suggestions
            click.echo(json.dumps(body, indent=2))
            raise click.exceptions.Exit(1)

        console.print(f"[red]Error:[/red] {error}")
        if isinstance(error, PhaseValidationError):
            for suggestion in error.suggestions:
                console.print(f"  [dim]→ {suggestion}[/dim]")
        elif isinstance(error, MaxAttemptsExceededError):
            console.print("  [dim]→ autopilot retry | autopilot abort[/dim]")
        raise click.exceptions.Exit(1)


def _to_jsonable(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    if isinstance(payload, dict):
        return {key: _to_jsonable(value) for key, value in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [_to_jsonable(item) for item in payload]
    return payload


def workflow_command(func: Callable[..., None]) -> Callable[..., None]:
    """
    Decorate a command that needs a WorkflowService.

    The wrapped function receives ``service`` and ``output`` keyword
    arguments. AutopilotError is reported through the formatter and turns
    into exit code 1.
    """

    @click.pass_context
    @functools.wraps(func)
    def wrapper(ctx: click.Context, *args: Any, **kwargs: Any) -> None:
        obj = ctx.ensure_object(dict)
        output = OutputFormatter(
            json_mode=obj.get("json", False), verbose=obj.get("verbose", False)
        )
        project_root: Path = obj.get("project_root") or Path.cwd()
        try:
            service = WorkflowService(project_root)
            func(*args, service=service, output=output, **kwargs)
        except AutopilotError as e:
            output.fail(e)

    return wrapper


def render_status(status: WorkflowStatus, title: Optional[str] = None) -> None:
    """Print a workflow status panel."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("Task", status.task_id)
    table.add_row("Phase", status.phase.value)
    if status.tdd_phase:
        color = _PHASE_COLORS.get(status.tdd_phase.value, "white")
        table.add_row("TDD phase", f"[{color}]{status.tdd_phase.value}[/{color}]")
    if status.branch_name:
        table.add_row("Branch", status.branch_name)

    progress = status.progress
    table.add_row(
        "Progress",
        f"{progress.completed}/{progress.total} subtasks ({progress.percentage}%)",
    )

    subtask = status.current_subtask
    if subtask:
        table.add_row("Subtask", f"{subtask.id} {subtask.title}")
        table.add_row("Status", subtask.status.value)
        table.add_row("Attempts", f"{subtask.attempts}/{subtask.max_attempts}")

    result = status.last_test_result
    if result:
        table.add_row(
            "Last tests",
            f"{result.phase.value}: {result.passed} passed, {result.failed} failed, "
            f"{result.skipped} skipped of {result.total}",
        )

    console.print(Panel(table, title=title or "Workflow status", expand=False))

    if status.errors:
        console.print(f"[yellow]Errors ({len(status.errors)}):[/yellow]")
        for entry in status.errors[-5:]:
            console.print(f"  [dim]{entry.phase}[/dim] {entry.message}")


def render_next_action(action: NextAction) -> None:
    """Print the next action."""
    header = f"[bold]{action.action}[/bold]: {action.description}"
    console.print(Panel(f"{header}\n\n{action.next_steps}", title="Next", expand=False))
