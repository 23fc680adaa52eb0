"""Main CLI entry point for autopilot."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from autopilot.cli.commands.cycle import (
    commit_command,
    complete_command,
    next_command,
    retry_command,
)
from autopilot.cli.commands.serve import serve_command
from autopilot.cli.commands.status import status_command
from autopilot.cli.commands.workflow import (
    abort_command,
    finalize_command,
    resume_command,
    start_command,
)
from autopilot.core.exceptions import AutopilotError

console = Console()


@click.group()
@click.option(
    "--project-root",
    "-C",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Project directory (default: current directory)",
)
@click.option("--json", "json_mode", is_flag=True, help="Print machine-readable JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(
    ctx: click.Context, project_root: Optional[Path], json_mode: bool, verbose: bool
) -> None:
    """Autopilot: test-first workflow driver.

    Walks a task's subtasks through RED (failing test), GREEN (passing
    test) and COMMIT, persisting progress so every command can pick up
    where the last one stopped.

    \b
    Examples:
        autopilot start 7                                  # Start task 7
        autopilot next                                     # What to do now
        autopilot complete --results '{"total":3,"passed":2,"failed":1}'
        autopilot commit                                   # Commit the subtask
        autopilot status                                   # Where are we
        autopilot finalize                                 # Finish the workflow
    """
    ctx.ensure_object(dict)

    ctx.obj["project_root"] = (project_root or Path.cwd()).resolve()
    ctx.obj["json"] = json_mode
    ctx.obj["verbose"] = verbose

    if verbose and not json_mode:
        console.print(f"[dim]Project root: {ctx.obj['project_root']}[/dim]")


cli.add_command(start_command, name="start")
cli.add_command(resume_command, name="resume")
cli.add_command(next_command, name="next")
cli.add_command(complete_command, name="complete")
cli.add_command(commit_command, name="commit")
cli.add_command(finalize_command, name="finalize")
cli.add_command(status_command, name="status")
cli.add_command(abort_command, name="abort")
cli.add_command(retry_command, name="retry")
cli.add_command(serve_command, name="serve")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except AutopilotError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
