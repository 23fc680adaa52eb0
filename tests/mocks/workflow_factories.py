"""Builders for workflow objects used across the test suite."""

from pathlib import Path
from typing import List, Optional

from autopilot.core.state_machine import WorkflowOrchestrator
from autopilot.core.workflow_types import (
    SubtaskInfo,
    SubtaskStatus,
    TDDPhase,
    TestResult,
    WorkflowContext,
    WorkflowEvent,
    WorkflowEventType,
)


def make_context(
    count: int = 3,
    max_attempts: int = 3,
    task_id: str = "1",
    completed: Optional[List[int]] = None,
) -> WorkflowContext:
    """Context with ``count`` pending subtasks ``<task_id>.1..n``."""
    completed = completed or []
    return WorkflowContext(
        task_id=task_id,
        subtasks=[
            SubtaskInfo(
                id=f"{task_id}.{i + 1}",
                title=f"Subtask {i + 1}",
                status=SubtaskStatus.COMPLETED if i in completed else SubtaskStatus.PENDING,
                max_attempts=max_attempts,
            )
            for i in range(count)
        ],
    )


def red_result(total: int = 5, passed: int = 4, failed: int = 1, skipped: int = 0) -> TestResult:
    return TestResult(total=total, passed=passed, failed=failed, skipped=skipped, phase=TDDPhase.RED)


def green_result(total: int = 5, passed: int = 5, failed: int = 0, skipped: int = 0) -> TestResult:
    return TestResult(total=total, passed=passed, failed=failed, skipped=skipped, phase=TDDPhase.GREEN)


def event(event_type: WorkflowEventType, **kwargs) -> WorkflowEvent:
    return WorkflowEvent(type=event_type, **kwargs)


def start_loop(orchestrator: WorkflowOrchestrator, branch: str = "task-1-feature") -> None:
    """Drive a fresh orchestrator to SUBTASK_LOOP / RED."""
    orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
    orchestrator.transition(event(WorkflowEventType.BRANCH_CREATED, branch_name=branch))


def complete_subtask(orchestrator: WorkflowOrchestrator) -> None:
    """Run RED, GREEN and COMMIT_COMPLETE for the current subtask."""
    orchestrator.transition(event(WorkflowEventType.RED_PHASE_COMPLETE, test_result=red_result()))
    orchestrator.transition(event(WorkflowEventType.GREEN_PHASE_COMPLETE, test_result=green_result()))
    orchestrator.transition(event(WorkflowEventType.COMMIT_COMPLETE))


def write_file(repo: Path, relative: str, content: str = "x = 1\n") -> Path:
    """Create or overwrite a file inside a repository."""
    path = repo / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path
