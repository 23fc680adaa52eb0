"""Autopilot RPC server - FastAPI surface over the workflow service."""

import warnings
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from autopilot import __version__
from autopilot.core.exceptions import (
    AutopilotError,
    ConcurrentModificationError,
    CorruptStateError,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    PhaseValidationError,
    StateNotFoundError,
)
from autopilot.core.workflow_types import TestResult
from autopilot.orchestrator.workflow_service import WorkflowService

T = TypeVar("T")

app = FastAPI(
    title="Autopilot RPC",
    description="Drive test-first workflows: start, complete phases, commit, finalize",
    version=__version__,
)


# Request models
class ProjectRequest(BaseModel):
    """Request addressed to one project."""

    project_root: str = Field(..., description="Absolute path of the project")


class StartRequest(ProjectRequest):
    """Start a workflow."""

    task_id: str
    max_attempts: Optional[int] = Field(None, ge=1, le=20)
    force: bool = False
    tag: Optional[str] = None


class TestResultsPayload(BaseModel):
    """Test counters for the current RED or GREEN phase."""

    __test__ = False  # keep pytest from collecting this class

    total: int = Field(..., ge=0)
    passed: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    skipped: int = Field(0, ge=0)


class CompleteRequest(ProjectRequest):
    """Complete the current TDD phase."""

    test_results: TestResultsPayload


class AbortRequest(ProjectRequest):
    """Abort a workflow."""

    reason: Optional[str] = None


def _status_code_for(error: AutopilotError) -> int:
    if isinstance(error, PhaseValidationError):
        return 422
    if isinstance(
        error,
        (InvalidTransitionError, MaxAttemptsExceededError, ConcurrentModificationError),
    ):
        return 409
    if isinstance(error, StateNotFoundError):
        return 404
    if isinstance(error, CorruptStateError):
        return 500
    return 400


def _run(project_root: str, operation: Callable[[WorkflowService], T]) -> T:
    """Run ``operation`` on a fresh service, mapping workflow errors to HTTP."""
    root = Path(project_root)
    if not root.is_dir():
        raise HTTPException(
            status_code=400, detail=f"Project root does not exist: {project_root}"
        )
    try:
        return operation(WorkflowService(root))
    except AutopilotError as e:
        detail: Dict[str, Any] = {"error": str(e), "errorType": type(e).__name__}
        if isinstance(e, PhaseValidationError):
            detail["errors"] = e.errors
            detail["suggestions"] = e.suggestions
        raise HTTPException(status_code=_status_code_for(e), detail=detail) from e


@app.post("/api/autopilot/start")
def start_workflow(request: StartRequest) -> Dict[str, Any]:
    """Start a workflow for a task."""

    def operation(service: WorkflowService) -> Dict[str, Any]:
        status = service.start_workflow(
            request.task_id,
            force=request.force,
            max_attempts=request.max_attempts,
            tag=request.tag,
        )
        return {
            "success": True,
            "status": status.model_dump(mode="json"),
            "nextAction": service.get_next_action().model_dump(mode="json"),
        }

    return _run(request.project_root, operation)


@app.post("/api/autopilot/resume")
def resume_workflow(request: ProjectRequest) -> Dict[str, Any]:
    """Resume the persisted workflow."""

    def operation(service: WorkflowService) -> Dict[str, Any]:
        status = service.resume_workflow()
        return {
            "success": True,
            "status": status.model_dump(mode="json"),
            "nextAction": service.get_next_action().model_dump(mode="json"),
        }

    return _run(request.project_root, operation)


@app.post("/api/autopilot/next")
def next_action(request: ProjectRequest) -> Dict[str, Any]:
    """Describe the next step."""
    return _run(
        request.project_root,
        lambda service: service.get_next_action().model_dump(mode="json"),
    )


@app.post("/api/autopilot/status")
def workflow_status(request: ProjectRequest) -> Dict[str, Any]:
    """Get the workflow status."""

    def operation(service: WorkflowService) -> Dict[str, Any]:
        if not service.has_workflow():
            return {"active": False}
        return {"active": True, "status": service.get_status().model_dump(mode="json")}

    return _run(request.project_root, operation)


@app.post("/api/autopilot/complete")
def complete_phase(request: CompleteRequest) -> Dict[str, Any]:
    """Submit test results for the current RED or GREEN phase."""

    def operation(service: WorkflowService) -> Dict[str, Any]:
        tdd_phase = service.get_status().tdd_phase
        if tdd_phase is None:
            raise InvalidTransitionError("Not in an active TDD phase")
        result = TestResult(
            **request.test_results.model_dump(), phase=tdd_phase
        )
        status = service.complete_phase(result)
        return {
            "success": True,
            "status": status.model_dump(mode="json"),
            "nextAction": service.get_next_action().model_dump(mode="json"),
        }

    try:
        return _run(request.project_root, operation)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@app.post("/api/autopilot/commit")
def commit(request: ProjectRequest) -> Dict[str, Any]:
    """Commit the current subtask and advance."""

    def operation(service: WorkflowService) -> Dict[str, Any]:
        outcome = service.commit()
        return {"success": True, **outcome.model_dump(mode="json")}

    return _run(request.project_root, operation)


@app.post("/api/autopilot/finalize")
def finalize(request: ProjectRequest) -> Dict[str, Any]:
    """Complete a workflow whose subtasks are all done."""
    return _run(
        request.project_root,
        lambda service: {
            "success": True,
            "status": service.finalize_workflow().model_dump(mode="json"),
        },
    )


@app.post("/api/autopilot/abort")
def abort(request: AbortRequest) -> Dict[str, Any]:
    """Abort the workflow; a project without one is a no-op."""

    def operation(service: WorkflowService) -> Dict[str, Any]:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", UserWarning)
            aborted = service.abort_workflow(reason=request.reason)
        return {"success": True, "aborted": aborted}

    return _run(request.project_root, operation)


@app.post("/api/autopilot/retry")
def retry(request: ProjectRequest) -> Dict[str, Any]:
    """Restart the current subtask at RED."""
    return _run(
        request.project_root,
        lambda service: {
            "success": True,
            "status": service.retry_subtask().model_dump(mode="json"),
        },
    )


def run_server(host: str = "127.0.0.1", port: int = 10020, reload: bool = False) -> None:
    """Run the RPC server."""
    import uvicorn

    uvicorn.run(
        "autopilot.web.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    run_server(reload=True)
