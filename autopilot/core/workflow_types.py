"""Workflow phase definitions, value types and transitions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1
DEFAULT_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class WorkflowPhase(str, Enum):
    """Top-level workflow phases."""

    PREFLIGHT = "PREFLIGHT"
    BRANCH_PENDING = "BRANCH_PENDING"
    SUBTASK_LOOP = "SUBTASK_LOOP"
    FINALIZE = "FINALIZE"
    COMPLETE = "COMPLETE"
    ABORTED = "ABORTED"


class TDDPhase(str, Enum):
    """Per-subtask test-first cycle, only meaningful inside SUBTASK_LOOP."""

    RED = "RED"
    GREEN = "GREEN"
    COMMIT = "COMMIT"


class SubtaskStatus(str, Enum):
    """Subtask progress states."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    ERROR = "error"


class WorkflowEventType(str, Enum):
    """Events accepted by the orchestrator."""

    PREFLIGHT_COMPLETE = "PREFLIGHT_COMPLETE"
    BRANCH_CREATED = "BRANCH_CREATED"
    RED_PHASE_COMPLETE = "RED_PHASE_COMPLETE"
    GREEN_PHASE_COMPLETE = "GREEN_PHASE_COMPLETE"
    COMMIT_COMPLETE = "COMMIT_COMPLETE"
    SUBTASK_COMPLETE = "SUBTASK_COMPLETE"
    ALL_SUBTASKS_COMPLETE = "ALL_SUBTASKS_COMPLETE"
    FINALIZE_COMPLETE = "FINALIZE_COMPLETE"
    ABORT = "ABORT"
    ERROR = "ERROR"
    RETRY = "RETRY"


class _CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubtaskInfo(_CamelModel):
    """Progress of a single subtask."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    id: str = Field(min_length=1)
    title: str
    status: SubtaskStatus = SubtaskStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)


class TestResult(_CamelModel):
    """Summary of one test-suite run."""

    __test__ = False  # keep pytest from collecting this class

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    total: int = Field(ge=0)
    passed: int = Field(ge=0)
    failed: int = Field(ge=0)
    skipped: int = Field(default=0, ge=0)
    phase: TDDPhase

    @model_validator(mode="after")
    def validate_counts(self) -> "TestResult":
        """Ensure the counters never exceed the total."""
        if self.passed + self.failed + self.skipped > self.total:
            raise ValueError("passed + failed + skipped cannot exceed total")
        return self


class WorkflowErrorEntry(_CamelModel):
    """One entry of the append-only error trail."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    message: str
    phase: str
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowContext(_CamelModel):
    """Aggregate record of one workflow run."""

    task_id: str = Field(min_length=1)
    subtasks: List[SubtaskInfo]
    current_subtask_index: int = Field(default=0, ge=0)
    branch_name: Optional[str] = None
    errors: List[WorkflowErrorEntry] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_test_result: Optional[TestResult] = None

    def current_subtask(self) -> Optional[SubtaskInfo]:
        """Subtask at the current index, None once every subtask is done."""
        if self.current_subtask_index < len(self.subtasks):
            return self.subtasks[self.current_subtask_index]
        return None

    def replace_subtask(self, index: int, **changes: Any) -> SubtaskInfo:
        """Swap the subtask at ``index`` for an updated copy."""
        updated = self.subtasks[index].model_copy(update=changes)
        self.subtasks[index] = updated
        return updated

    def next_open_index(self, start: int) -> int:
        """First index at or after ``start`` that is not completed."""
        index = start
        while (
            index < len(self.subtasks)
            and self.subtasks[index].status == SubtaskStatus.COMPLETED
        ):
            index += 1
        return index


class WorkflowProgress(BaseModel):
    """Progress summary over the subtask list."""

    completed: int
    total: int
    current: int
    percentage: int


class WorkflowState(_CamelModel):
    """Snapshot of a workflow; the only unit written to durable storage."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    schema_version: int = SCHEMA_VERSION
    phase: WorkflowPhase
    tdd_phase: Optional[TDDPhase]
    context: WorkflowContext

    def invariant_violations(self) -> List[str]:
        """List every model invariant the snapshot breaks."""
        violations: List[str] = []
        ctx = self.context
        total = len(ctx.subtasks)

        if not ctx.subtasks:
            violations.append("a workflow needs at least one subtask")

        if (self.tdd_phase is not None) != (self.phase == WorkflowPhase.SUBTASK_LOOP):
            violations.append("tddPhase must be set exactly when phase is SUBTASK_LOOP")

        if ctx.current_subtask_index > total:
            violations.append(
                f"currentSubtaskIndex {ctx.current_subtask_index} is beyond "
                f"{total} subtasks"
            )

        ids = [subtask.id for subtask in ctx.subtasks]
        if len(set(ids)) != len(ids):
            violations.append("subtask ids must be unique")

        in_progress = [
            index
            for index, subtask in enumerate(ctx.subtasks)
            if subtask.status == SubtaskStatus.IN_PROGRESS
        ]
        if len(in_progress) > 1:
            violations.append("more than one subtask is in-progress")
        elif in_progress and in_progress[0] != ctx.current_subtask_index:
            violations.append("the in-progress subtask is not the current subtask")

        for subtask in ctx.subtasks:
            if (
                subtask.status == SubtaskStatus.ERROR
                and subtask.attempts > subtask.max_attempts
            ):
                violations.append(
                    f"subtask {subtask.id} has more attempts than allowed"
                )

        if self.tdd_phase in (TDDPhase.RED, TDDPhase.GREEN):
            current = ctx.current_subtask()
            if current is None:
                violations.append(f"{self.tdd_phase.value} phase requires a current subtask")
            elif current.status not in (SubtaskStatus.IN_PROGRESS, SubtaskStatus.ERROR):
                violations.append(
                    f"current subtask {current.id} is {current.status.value} "
                    f"during {self.tdd_phase.value}"
                )

        if (
            self.phase in (WorkflowPhase.FINALIZE, WorkflowPhase.COMPLETE)
            and ctx.current_subtask_index != total
        ):
            violations.append(f"{self.phase.value} requires every subtask to be done")

        return violations


class WorkflowEvent(BaseModel):
    """An event submitted to the orchestrator."""

    type: WorkflowEventType
    branch_name: Optional[str] = None
    test_result: Optional[TestResult] = None
    message: Optional[str] = None
    reason: Optional[str] = None


class WorkflowNotification(BaseModel):
    """Notification handed to orchestrator listeners after a transition."""

    kind: str
    timestamp: datetime = Field(default_factory=utcnow)
    phase: WorkflowPhase
    tdd_phase: Optional[TDDPhase] = None
    subtask_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


# Legal top-level phase transitions
PHASE_TRANSITIONS: Dict[Tuple[WorkflowPhase, WorkflowEventType], WorkflowPhase] = {
    (WorkflowPhase.PREFLIGHT, WorkflowEventType.PREFLIGHT_COMPLETE): WorkflowPhase.BRANCH_PENDING,
    (WorkflowPhase.BRANCH_PENDING, WorkflowEventType.BRANCH_CREATED): WorkflowPhase.SUBTASK_LOOP,
    (WorkflowPhase.SUBTASK_LOOP, WorkflowEventType.ALL_SUBTASKS_COMPLETE): WorkflowPhase.FINALIZE,
    (WorkflowPhase.FINALIZE, WorkflowEventType.FINALIZE_COMPLETE): WorkflowPhase.COMPLETE,
}

# Legal TDD transitions inside SUBTASK_LOOP. RED_PHASE_COMPLETE may also
# leave RED for the next subtask when the feature already exists.
TDD_TRANSITIONS: Dict[Tuple[TDDPhase, WorkflowEventType], TDDPhase] = {
    (TDDPhase.RED, WorkflowEventType.RED_PHASE_COMPLETE): TDDPhase.GREEN,
    (TDDPhase.GREEN, WorkflowEventType.GREEN_PHASE_COMPLETE): TDDPhase.COMMIT,
    (TDDPhase.COMMIT, WorkflowEventType.COMMIT_COMPLETE): TDDPhase.COMMIT,
    (TDDPhase.COMMIT, WorkflowEventType.SUBTASK_COMPLETE): TDDPhase.RED,
    (TDDPhase.RED, WorkflowEventType.RETRY): TDDPhase.RED,
    (TDDPhase.GREEN, WorkflowEventType.RETRY): TDDPhase.RED,
}

TERMINAL_PHASES = frozenset({WorkflowPhase.COMPLETE, WorkflowPhase.ABORTED})

# Accepted in every non-terminal phase
GLOBAL_EVENTS = frozenset({WorkflowEventType.ABORT, WorkflowEventType.ERROR})


def is_terminal_phase(phase: WorkflowPhase) -> bool:
    """Check if a phase is terminal (no further events accepted)."""
    return phase in TERMINAL_PHASES


def is_valid_event(
    phase: WorkflowPhase,
    tdd_phase: Optional[TDDPhase],
    event_type: WorkflowEventType,
) -> bool:
    """Check if an event is legal for a (phase, tdd_phase) pair."""
    if is_terminal_phase(phase):
        return False
    if event_type in GLOBAL_EVENTS:
        return True
    if (phase, event_type) in PHASE_TRANSITIONS:
        return True
    if phase == WorkflowPhase.SUBTASK_LOOP and tdd_phase is not None:
        return (tdd_phase, event_type) in TDD_TRANSITIONS
    return False


def get_valid_events(
    phase: WorkflowPhase, tdd_phase: Optional[TDDPhase]
) -> List[WorkflowEventType]:
    """Get the events accepted for a (phase, tdd_phase) pair."""
    return [
        event_type
        for event_type in WorkflowEventType
        if is_valid_event(phase, tdd_phase, event_type)
    ]
