"""TDD cycle commands: next, complete, commit, retry."""

import json
from typing import Any, Dict

import click
from pydantic import ValidationError

from autopilot.cli.shared import (
    OutputFormatter,
    console,
    render_next_action,
    render_status,
    workflow_command,
)
from autopilot.core.exceptions import PhaseValidationError
from autopilot.core.workflow_types import TestResult
from autopilot.orchestrator.workflow_service import WorkflowService


_RESULTS_HINT = 'Pass --results as a JSON object, e.g. \'{"total":5,"passed":4,"failed":1}\''


def _invalid_results(reason: str) -> PhaseValidationError:
    return PhaseValidationError(
        f"Invalid --results: {reason}",
        errors=[reason],
        suggestions=[_RESULTS_HINT],
    )


def parse_test_results(raw: str, default_phase: Any) -> TestResult:
    """Parse ``--results`` JSON into a TestResult.

    Args:
        raw: JSON object with total/passed/failed[/skipped][/phase]
        default_phase: Phase used when the object does not name one

    Raises:
        PhaseValidationError: If the JSON or the counters are invalid
    """
    try:
        data: Dict[str, Any] = json.loads(raw)
    except json.JSONDecodeError as e:
        raise _invalid_results(f"not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise _invalid_results("must be a JSON object")

    data.setdefault("skipped", 0)
    if "phase" not in data and default_phase is not None:
        data["phase"] = default_phase
    try:
        return TestResult.model_validate(data)
    except ValidationError as e:
        raise _invalid_results(
            "; ".join(error["msg"] for error in e.errors())
        ) from e


@click.command()
@workflow_command
def next_command(service: WorkflowService, output: OutputFormatter) -> None:
    """Show what to do next."""
    action = service.get_next_action()
    output.emit(action, lambda: render_next_action(action))


@click.command()
@click.option(
    "--results",
    "-r",
    required=True,
    help='Test results JSON, e.g. \'{"total":5,"passed":4,"failed":1}\'',
)
@workflow_command
def complete_command(
    results: str, service: WorkflowService, output: OutputFormatter
) -> None:
    """Complete the current RED or GREEN phase with test results.

    Examples:
        autopilot complete --results '{"total":3,"passed":2,"failed":1}'
    """
    current = service.get_status().tdd_phase
    test_result = parse_test_results(results, current.value if current else None)
    status = service.complete_phase(test_result)
    action = service.get_next_action()

    def render() -> None:
        console.print(f"[green]✓[/green] {test_result.phase.value} phase accepted")
        render_status(status)
        render_next_action(action)

    output.emit({"success": True, "status": status, "nextAction": action}, render)


@click.command()
@workflow_command
def commit_command(service: WorkflowService, output: OutputFormatter) -> None:
    """Commit the current subtask and move to the next one."""
    outcome = service.commit()

    def render() -> None:
        console.print(f"[green]✓[/green] Committed {outcome.commit_hash[:8]}")
        console.print(f"[dim]{outcome.message.splitlines()[0]}[/dim]")
        render_status(outcome.status)

    output.emit({"success": True, **outcome.model_dump(mode="json")}, render)


@click.command()
@workflow_command
def retry_command(service: WorkflowService, output: OutputFormatter) -> None:
    """Restart the current subtask at RED (resets a failed subtask)."""
    status = service.retry_subtask()

    def render() -> None:
        console.print("[green]✓[/green] Subtask restarted at RED")
        render_status(status)

    output.emit({"success": True, "status": status}, render)
