"""Activity logging for autopilot workflows."""

import json
import threading
import uuid
import warnings
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from autopilot.core.exceptions import ActivityTrackingError
from autopilot.core.state_machine import WorkflowOrchestrator
from autopilot.core.workflow_types import TestResult, WorkflowNotification


class EventType(str, Enum):
    """Types of events that can be logged."""

    WORKFLOW_START = "workflow_start"
    WORKFLOW_RESUME = "workflow_resume"
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_ABORT = "workflow_abort"
    PHASE_CHANGE = "phase_change"
    SUBTASK_START = "subtask_start"
    SUBTASK_COMPLETE = "subtask_complete"
    SUBTASK_FAIL = "subtask_fail"
    TEST_RUN = "test_run"
    GIT_OPERATION = "git_operation"
    PROGRESS = "progress"
    ERROR = "error"
    INFO = "info"


# Orchestrator notification kind -> event type; unlisted kinds log as phase changes
_NOTIFICATION_EVENT_TYPES: Dict[str, EventType] = {
    "workflow:resumed": EventType.WORKFLOW_RESUME,
    "workflow:completed": EventType.WORKFLOW_COMPLETE,
    "workflow:aborted": EventType.WORKFLOW_ABORT,
    "subtask:started": EventType.SUBTASK_START,
    "subtask:completed": EventType.SUBTASK_COMPLETE,
    "subtask:failed": EventType.SUBTASK_FAIL,
    "test:failed": EventType.TEST_RUN,
    "git:branch:created": EventType.GIT_OPERATION,
    "progress:updated": EventType.PROGRESS,
    "error:occurred": EventType.ERROR,
}


class ActivityEvent(BaseModel):
    """Activity event model."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: EventType = Field(..., description="Type of event")
    session_id: str = Field(..., description="Session identifier")
    task_id: Optional[str] = Field(None, description="Task identifier")
    message: str = Field(..., description="Event message")

    data: Dict[str, Any] = Field(
        default_factory=dict, description="Additional event data"
    )

    # Workflow position when the event was recorded
    phase: Optional[str] = Field(None, description="Workflow phase")
    tdd_phase: Optional[str] = Field(None, description="TDD phase")
    subtask_id: Optional[str] = Field(None, description="Subtask identifier")


class WorkflowActivityLogger:
    """
    Thread-safe JSON Lines activity log for one project.

    Subscribe it to an orchestrator with ``start`` to record every
    notification; the calling layer adds test runs, git operations and
    errors through the explicit ``log_*`` helpers.
    """

    def __init__(
        self,
        log_path: Path,
        session_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ):
        """Initialize activity logger.

        Args:
            log_path: JSONL file to append to
            session_id: Session identifier (default: random)
            task_id: Task recorded on events that do not name one
        """
        self.log_path = Path(log_path)
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.task_id = task_id
        self._orchestrator: Optional[WorkflowOrchestrator] = None
        self._lock = threading.Lock()

    def start(self, orchestrator: WorkflowOrchestrator) -> None:
        """Record every notification the orchestrator emits."""
        self.stop()
        self._orchestrator = orchestrator
        if self.task_id is None:
            self.task_id = orchestrator.get_context().task_id
        orchestrator.add_listener(self.handle_notification)

    def stop(self) -> None:
        """Stop recording orchestrator notifications."""
        if self._orchestrator is not None:
            self._orchestrator.remove_listener(self.handle_notification)
            self._orchestrator = None

    def handle_notification(self, notification: WorkflowNotification) -> None:
        """Turn an orchestrator notification into an activity event."""
        event_type = _NOTIFICATION_EVENT_TYPES.get(
            notification.kind, EventType.PHASE_CHANGE
        )
        self._write_event(
            ActivityEvent(
                timestamp=notification.timestamp,
                event_type=event_type,
                session_id=self.session_id,
                task_id=self.task_id,
                message=notification.kind,
                data=dict(notification.data),
                phase=notification.phase.value,
                tdd_phase=(
                    notification.tdd_phase.value if notification.tdd_phase else None
                ),
                subtask_id=notification.subtask_id,
            )
        )

    def log_event(
        self,
        event_type: EventType,
        message: str,
        task_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """Log a general activity event.

        Args:
            event_type: Type of event
            message: Event message
            task_id: Task identifier (default: the logger's task)
            **kwargs: ActivityEvent fields or additional event data
        """
        event_fields: Dict[str, Any] = {
            "event_type": event_type,
            "session_id": self.session_id,
            "task_id": task_id or self.task_id,
            "message": message,
        }

        data_fields = {}
        for key, value in kwargs.items():
            if key in ("phase", "tdd_phase", "subtask_id"):
                if value is not None:
                    event_fields[key] = value
            else:
                data_fields[key] = value

        if data_fields:
            event_fields["data"] = data_fields

        self._write_event(ActivityEvent(**event_fields))

    def log_workflow_start(
        self, task_id: str, branch_name: Optional[str], subtask_count: int
    ) -> None:
        """Log the start of a workflow."""
        self.task_id = task_id
        self.log_event(
            EventType.WORKFLOW_START,
            f"Workflow started for task {task_id}",
            task_id=task_id,
            branch_name=branch_name,
            subtask_count=subtask_count,
        )

    def log_test_run(
        self, result: TestResult, subtask_id: Optional[str] = None
    ) -> None:
        """Log a submitted test result.

        Args:
            result: Test counters as submitted
            subtask_id: Subtask the run belongs to
        """
        self.log_event(
            EventType.TEST_RUN,
            f"Tests ({result.phase.value}): {result.passed}/{result.total} passed",
            subtask_id=subtask_id,
            tdd_phase=result.phase.value,
            total=result.total,
            passed=result.passed,
            failed=result.failed,
            skipped=result.skipped,
        )

    def log_git_operation(self, operation: str, details: Dict[str, Any]) -> None:
        """Log git operation.

        Args:
            operation: Git operation (commit, branch, ...)
            details: Operation details
        """
        self.log_event(
            EventType.GIT_OPERATION,
            f"Git {operation}",
            git_operation=operation,
            **details,
        )

    def log_error(self, error: str, **kwargs: Any) -> None:
        """Log error event."""
        self.log_event(EventType.ERROR, error, error=error, **kwargs)

    def log_info(self, message: str, **kwargs: Any) -> None:
        """Log info event."""
        self.log_event(EventType.INFO, message, **kwargs)

    def get_task_events(self, task_id: str) -> List[ActivityEvent]:
        """Get all events for a specific task."""
        return [event for event in self._read_events() if event.task_id == task_id]

    def get_recent_events(self, limit: int = 100) -> List[ActivityEvent]:
        """Get the last ``limit`` events in the log."""
        events = self._read_events()
        return events[-limit:] if limit > 0 else []

    def _read_events(self) -> List[ActivityEvent]:
        """Read every well-formed event; malformed lines are skipped.

        Raises:
            ActivityTrackingError: If the log exists but cannot be read
        """
        events: List[ActivityEvent] = []
        if not self.log_path.exists():
            return events

        try:
            with open(self.log_path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except (OSError, UnicodeDecodeError) as e:
            raise ActivityTrackingError(
                f"Failed to read activity log {self.log_path}: {e}"
            ) from e

        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(ActivityEvent(**json.loads(line)))
            except (json.JSONDecodeError, ValidationError):
                continue
        return events

    def _write_event(self, event: ActivityEvent) -> None:
        """Append an event as one JSON line.

        A failed write only warns: the activity log must never break the
        workflow it observes.
        """
        with self._lock:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_path, "a", encoding="utf-8") as f:
                    json.dump(
                        event.model_dump(mode="json"),
                        f,
                        default=str,
                        separators=(",", ":"),
                    )
                    f.write("\n")
            except OSError as e:
                warnings.warn(
                    f"Failed to write activity log {self.log_path}: {e}",
                    RuntimeWarning,
                    stacklevel=2,
                )
