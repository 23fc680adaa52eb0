"""Autopilot exception classes."""

from typing import List, Optional


class AutopilotError(Exception):
    """Base exception for all autopilot errors."""

    pass


class ConfigurationError(AutopilotError):
    """Raised when configuration is invalid."""

    pass


class GitOperationError(AutopilotError):
    """Raised when git operations fail."""

    pass


class TaskSourceError(AutopilotError):
    """Raised when a task cannot be read from the task source."""

    pass


class ActivityTrackingError(AutopilotError):
    """Raised when activity tracking fails."""

    pass


class WorkflowError(AutopilotError):
    """Base class for errors raised by the workflow orchestrator."""

    pass


class InvalidTransitionError(WorkflowError):
    """Raised when an event is not legal in the current phase."""

    pass


class PhaseValidationError(WorkflowError):
    """Raised when a test result does not satisfy the active phase gate.

    Recoverable: re-run the tests and submit the same event again.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.errors = errors or [message]
        self.suggestions = suggestions or []


class MaxAttemptsExceededError(WorkflowError):
    """Raised when a subtask has used up all of its GREEN attempts."""

    def __init__(self, subtask_id: str, attempts: int, max_attempts: int):
        super().__init__(
            f"Subtask {subtask_id} exceeded max attempts "
            f"({attempts}/{max_attempts}); retry or abort the workflow"
        )
        self.subtask_id = subtask_id
        self.attempts = attempts
        self.max_attempts = max_attempts


class StateStoreError(AutopilotError):
    """Base class for workflow state persistence errors."""

    pass


class StateNotFoundError(StateStoreError):
    """Raised when a workflow is required but none is persisted."""

    pass


class CorruptStateError(StateStoreError):
    """Raised when a persisted snapshot cannot be trusted."""

    pass


class ConcurrentModificationError(StateStoreError):
    """Raised when the on-disk snapshot changed since it was last read."""

    pass


class PersistenceError(StateStoreError):
    """Raised when the underlying I/O for a save or delete fails."""

    pass
