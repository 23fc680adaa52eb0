"""Core workflow functionality."""

from .commit_message import (
    CommitMessageGenerator,
    ScopeDetector,
    parse_commit_message,
    validate_conventional_commit,
)
from .exceptions import (
    ActivityTrackingError,
    AutopilotError,
    ConcurrentModificationError,
    ConfigurationError,
    CorruptStateError,
    GitOperationError,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    PersistenceError,
    PhaseValidationError,
    StateNotFoundError,
    StateStoreError,
    TaskSourceError,
    WorkflowError,
)
from .git_utils import CommitInfo, GitAdapter, GitStatus
from .phase_gate import GateDecision, GateOutcome, check_green, check_red
from .state_codec import StoredState, WorkflowStateCodec
from .state_machine import WorkflowOrchestrator
from .state_store import FileSystem, LocalFileSystem, WorkflowStateStore
from .task_source import FileTaskSource, SubtaskRecord, TaskRecord, build_subtasks
from .workflow_types import (
    SubtaskInfo,
    SubtaskStatus,
    TDDPhase,
    TestResult,
    WorkflowContext,
    WorkflowErrorEntry,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowNotification,
    WorkflowPhase,
    WorkflowProgress,
    WorkflowState,
    get_valid_events,
    is_terminal_phase,
    is_valid_event,
)

__all__ = [
    # Exceptions
    "AutopilotError",
    "ConfigurationError",
    "GitOperationError",
    "TaskSourceError",
    "ActivityTrackingError",
    "WorkflowError",
    "InvalidTransitionError",
    "PhaseValidationError",
    "MaxAttemptsExceededError",
    "StateStoreError",
    "StateNotFoundError",
    "CorruptStateError",
    "ConcurrentModificationError",
    "PersistenceError",
    # Workflow model
    "WorkflowPhase",
    "TDDPhase",
    "SubtaskStatus",
    "WorkflowEventType",
    "SubtaskInfo",
    "TestResult",
    "WorkflowErrorEntry",
    "WorkflowContext",
    "WorkflowProgress",
    "WorkflowState",
    "WorkflowEvent",
    "WorkflowNotification",
    "is_valid_event",
    "get_valid_events",
    "is_terminal_phase",
    # State machine
    "GateDecision",
    "GateOutcome",
    "check_red",
    "check_green",
    "WorkflowOrchestrator",
    # Persistence
    "WorkflowStateCodec",
    "StoredState",
    "FileSystem",
    "LocalFileSystem",
    "WorkflowStateStore",
    # Collaborators
    "TaskRecord",
    "SubtaskRecord",
    "FileTaskSource",
    "build_subtasks",
    "GitAdapter",
    "GitStatus",
    "CommitInfo",
    "CommitMessageGenerator",
    "ScopeDetector",
    "parse_commit_message",
    "validate_conventional_commit",
]
