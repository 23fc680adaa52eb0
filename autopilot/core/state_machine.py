"""State machine driving a task's subtasks through the TDD cycle."""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import (
    CorruptStateError,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    PersistenceError,
    PhaseValidationError,
    StateStoreError,
    WorkflowError,
)
from .phase_gate import GateDecision, GateOutcome, check_green, check_red
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
    utcnow,
)

PersistHook = Callable[[WorkflowState], None]
WorkflowListener = Callable[[WorkflowNotification], None]


@dataclass
class _Step:
    """Working copy of the machine while one event is applied."""

    phase: WorkflowPhase
    tdd_phase: Optional[TDDPhase]
    context: WorkflowContext
    notices: List[Tuple[str, Optional[str], Dict[str, Any]]] = field(
        default_factory=list
    )
    failure: Optional[WorkflowError] = None

    def notice(self, kind: str, subtask_id: Optional[str] = None, **data: Any) -> None:
        self.notices.append((kind, subtask_id, data))


class WorkflowOrchestrator:
    """
    Finite-state machine for a test-first workflow over ordered subtasks.

    Phases run PREFLIGHT -> BRANCH_PENDING -> SUBTASK_LOOP -> FINALIZE ->
    COMPLETE, with ABORT accepted from any non-terminal phase. Inside
    SUBTASK_LOOP each subtask cycles RED -> GREEN -> COMMIT.

    The orchestrator performs no I/O. Durability comes from the persistence
    hook registered with ``enable_auto_persist``, which receives a fresh
    snapshot after every successful transition; observers register with
    ``add_listener``.
    """

    def __init__(self, context: WorkflowContext):
        """
        Initialize the orchestrator in PREFLIGHT.

        Args:
            context: Freshly built workflow context

        Raises:
            ValueError: If the context has no subtasks or breaks invariants
        """
        if not context.subtasks:
            raise ValueError(f"Task {context.task_id} has no subtasks")

        self._phase = WorkflowPhase.PREFLIGHT
        self._tdd_phase: Optional[TDDPhase] = None
        self._context = context.model_copy(deep=True)
        self._lock = threading.RLock()
        self._persist_hook: Optional[PersistHook] = None
        self._auto_persist = False
        self._listeners: List[WorkflowListener] = []

        violations = self.get_state().invariant_violations()
        if violations:
            raise ValueError(f"Invalid workflow context: {'; '.join(violations)}")

        self._handlers: Dict[WorkflowEventType, Callable[[WorkflowEvent, _Step], None]] = {
            WorkflowEventType.PREFLIGHT_COMPLETE: self._on_preflight_complete,
            WorkflowEventType.BRANCH_CREATED: self._on_branch_created,
            WorkflowEventType.RED_PHASE_COMPLETE: self._on_red_complete,
            WorkflowEventType.GREEN_PHASE_COMPLETE: self._on_green_complete,
            WorkflowEventType.COMMIT_COMPLETE: self._on_commit_complete,
            WorkflowEventType.SUBTASK_COMPLETE: self._on_subtask_complete,
            WorkflowEventType.ALL_SUBTASKS_COMPLETE: self._on_all_subtasks_complete,
            WorkflowEventType.FINALIZE_COMPLETE: self._on_finalize_complete,
            WorkflowEventType.ABORT: self._on_abort,
            WorkflowEventType.ERROR: self._on_error,
            WorkflowEventType.RETRY: self._on_retry,
        }

    @classmethod
    def from_state(cls, state: WorkflowState) -> "WorkflowOrchestrator":
        """
        Build an orchestrator and restore it from a persisted snapshot.

        Raises:
            CorruptStateError: If the snapshot breaks model invariants
        """
        violations = state.invariant_violations()
        if violations:
            raise CorruptStateError(
                f"Cannot restore workflow state: {'; '.join(violations)}"
            )
        orchestrator = cls(state.context)
        orchestrator.restore_state(state)
        return orchestrator

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, event: WorkflowEvent) -> WorkflowState:
        """
        Apply one event.

        Args:
            event: Event to apply

        Returns:
            Snapshot of the new state (already persisted when auto-persist is on)

        Raises:
            InvalidTransitionError: If the event is not legal right now
            PhaseValidationError: If a test result fails the phase gate
            MaxAttemptsExceededError: If the subtask ran out of GREEN attempts
            PersistenceError: If the persistence hook fails; the in-memory
                state has already advanced
        """
        with self._lock:
            if not is_valid_event(self._phase, self._tdd_phase, event.type):
                valid = get_valid_events(self._phase, self._tdd_phase)
                raise InvalidTransitionError(
                    f"Invalid transition: {event.type.value} from "
                    f"{self._describe_position()}. "
                    f"Valid events: {[e.value for e in valid]}"
                )

            step = _Step(
                phase=self._phase,
                tdd_phase=self._tdd_phase,
                context=self._context.model_copy(deep=True),
            )
            self._handlers[event.type](event, step)

            self._phase = step.phase
            self._tdd_phase = step.tdd_phase
            self._context = step.context

            state = self.get_state()
            if self._auto_persist:
                self._persist(state)

            self._notify(step.notices)

            if step.failure is not None:
                raise step.failure

            return state

    def _on_preflight_complete(self, event: WorkflowEvent, step: _Step) -> None:
        step.phase = WorkflowPhase.BRANCH_PENDING
        step.notice("phase:entered", phase=step.phase.value)

    def _on_branch_created(self, event: WorkflowEvent, step: _Step) -> None:
        if not event.branch_name:
            raise InvalidTransitionError("BRANCH_CREATED requires a branch name")

        ctx = step.context
        index = ctx.next_open_index(ctx.current_subtask_index)
        if index >= len(ctx.subtasks):
            raise InvalidTransitionError(
                f"Every subtask of task {ctx.task_id} is already completed"
            )

        ctx.branch_name = event.branch_name
        ctx.current_subtask_index = index
        step.notice("git:branch:created", branchName=event.branch_name)

        step.phase = WorkflowPhase.SUBTASK_LOOP
        step.notice("phase:entered", phase=step.phase.value)
        self._start_subtask(step)

    def _on_red_complete(self, event: WorkflowEvent, step: _Step) -> None:
        ctx = step.context
        subtask = self._require_active_subtask(ctx)
        result = self._require_result(event, TDDPhase.RED)

        outcome = check_red(result)
        if outcome.decision == GateDecision.REJECT:
            raise self._validation_error(TDDPhase.RED, outcome)

        ctx.last_test_result = result
        step.notice(
            "tdd:red:completed",
            subtask.id,
            testResult=result.model_dump(mode="json"),
            warnings=outcome.warnings,
        )

        if outcome.decision == GateDecision.ALREADY_SATISFIED:
            step.notice("tdd:feature-already-implemented", subtask.id)
            self._complete_current_subtask(step)
            if ctx.current_subtask() is not None:
                self._start_subtask(step)
            else:
                self._enter_finalize(step)
            return

        step.tdd_phase = TDDPhase.GREEN
        step.notice("tdd:green:started", subtask.id)

    def _on_green_complete(self, event: WorkflowEvent, step: _Step) -> None:
        ctx = step.context
        subtask = self._require_active_subtask(ctx)
        result = self._require_result(event, TDDPhase.GREEN)
        index = ctx.current_subtask_index

        outcome = check_green(result, subtask, ctx.last_test_result)

        if outcome.decision == GateDecision.REJECT:
            raise self._validation_error(TDDPhase.GREEN, outcome)

        if outcome.decision == GateDecision.RETRY:
            ctx.replace_subtask(index, attempts=outcome.attempts)
            step.notice(
                "test:failed",
                subtask.id,
                failed=result.failed,
                attempts=outcome.attempts,
                maxAttempts=subtask.max_attempts,
            )
            step.failure = self._validation_error(TDDPhase.GREEN, outcome)
            return

        if outcome.decision == GateDecision.EXHAUSTED:
            ctx.replace_subtask(
                index, attempts=outcome.attempts, status=SubtaskStatus.ERROR
            )
            error = MaxAttemptsExceededError(
                subtask.id, outcome.attempts, subtask.max_attempts
            )
            ctx.errors.append(
                WorkflowErrorEntry(message=str(error), phase=TDDPhase.GREEN.value)
            )
            step.notice(
                "subtask:failed",
                subtask.id,
                attempts=outcome.attempts,
                maxAttempts=subtask.max_attempts,
            )
            step.failure = error
            return

        ctx.last_test_result = result
        step.tdd_phase = TDDPhase.COMMIT
        step.notice(
            "tdd:green:completed",
            subtask.id,
            testResult=result.model_dump(mode="json"),
            warnings=outcome.warnings,
        )
        step.notice("tdd:commit:started", subtask.id)

    def _on_commit_complete(self, event: WorkflowEvent, step: _Step) -> None:
        subtask = step.context.current_subtask()
        if subtask is None or subtask.status != SubtaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                "Invalid transition: no subtask is awaiting COMMIT_COMPLETE"
            )

        step.notice("tdd:commit:completed", subtask.id)
        self._complete_current_subtask(step)

    def _on_subtask_complete(self, event: WorkflowEvent, step: _Step) -> None:
        subtask = step.context.current_subtask()
        if subtask is None:
            raise InvalidTransitionError(
                "All subtasks are complete; send ALL_SUBTASKS_COMPLETE instead"
            )
        if subtask.status == SubtaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"Subtask {subtask.id} has not been committed yet"
            )
        self._start_subtask(step)

    def _on_all_subtasks_complete(self, event: WorkflowEvent, step: _Step) -> None:
        ctx = step.context
        remaining = len(ctx.subtasks) - ctx.current_subtask_index
        if remaining > 0:
            raise InvalidTransitionError(
                f"Cannot finish subtask loop: {remaining} subtask(s) remain"
            )
        self._enter_finalize(step)

    def _on_finalize_complete(self, event: WorkflowEvent, step: _Step) -> None:
        step.phase = WorkflowPhase.COMPLETE
        step.notice("phase:entered", phase=step.phase.value)
        step.notice("workflow:completed")

    def _on_abort(self, event: WorkflowEvent, step: _Step) -> None:
        step.context.metadata["abortedAt"] = utcnow().isoformat()
        if event.reason:
            step.context.metadata["abortReason"] = event.reason
        step.notice(
            "workflow:aborted",
            fromPhase=step.phase.value,
            fromTddPhase=step.tdd_phase.value if step.tdd_phase else None,
            reason=event.reason,
        )
        step.phase = WorkflowPhase.ABORTED
        step.tdd_phase = None

    def _on_error(self, event: WorkflowEvent, step: _Step) -> None:
        if not event.message:
            raise InvalidTransitionError("ERROR event requires a message")
        phase = step.tdd_phase.value if step.tdd_phase else step.phase.value
        step.context.errors.append(WorkflowErrorEntry(message=event.message, phase=phase))
        step.notice("error:occurred", message=event.message)

    def _on_retry(self, event: WorkflowEvent, step: _Step) -> None:
        ctx = step.context
        subtask = ctx.current_subtask()
        if subtask is None:
            raise InvalidTransitionError("No current subtask to retry")
        if subtask.status == SubtaskStatus.ERROR:
            subtask = ctx.replace_subtask(
                ctx.current_subtask_index,
                status=SubtaskStatus.IN_PROGRESS,
                attempts=0,
            )
        step.tdd_phase = TDDPhase.RED
        step.notice("subtask:retried", subtask.id)
        step.notice("tdd:red:started", subtask.id)

    def _start_subtask(self, step: _Step) -> None:
        ctx = step.context
        subtask = ctx.replace_subtask(
            ctx.current_subtask_index, status=SubtaskStatus.IN_PROGRESS
        )
        step.tdd_phase = TDDPhase.RED
        step.notice("subtask:started", subtask.id, title=subtask.title)
        step.notice("tdd:red:started", subtask.id)

    def _complete_current_subtask(self, step: _Step) -> None:
        ctx = step.context
        index = ctx.current_subtask_index
        subtask = ctx.replace_subtask(index, status=SubtaskStatus.COMPLETED)
        ctx.current_subtask_index = ctx.next_open_index(index + 1)
        step.notice("subtask:completed", subtask.id)
        step.notice("progress:updated", **self._progress_of(ctx).model_dump())

    def _enter_finalize(self, step: _Step) -> None:
        step.phase = WorkflowPhase.FINALIZE
        step.tdd_phase = None
        step.notice("phase:entered", phase=step.phase.value)

    def _require_active_subtask(self, ctx: WorkflowContext) -> SubtaskInfo:
        subtask = ctx.current_subtask()
        if subtask is None:
            raise InvalidTransitionError("No current subtask")
        if subtask.status == SubtaskStatus.ERROR:
            raise MaxAttemptsExceededError(
                subtask.id, subtask.attempts, subtask.max_attempts
            )
        return subtask

    @staticmethod
    def _require_result(event: WorkflowEvent, phase: TDDPhase) -> TestResult:
        if event.test_result is None:
            raise PhaseValidationError(
                f"Test results required for {phase.value} phase transition"
            )
        return event.test_result

    @staticmethod
    def _validation_error(phase: TDDPhase, outcome: GateOutcome) -> PhaseValidationError:
        return PhaseValidationError(
            f"{phase.value} phase validation failed: {outcome.reason}",
            errors=outcome.errors,
            suggestions=outcome.suggestions,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def enable_auto_persist(self, hook: PersistHook) -> None:
        """
        Persist a snapshot through ``hook`` after every successful transition.

        Args:
            hook: Callback receiving the new WorkflowState; raising marks the
                transition as failed
        """
        with self._lock:
            self._persist_hook = hook
            self._auto_persist = True

    def disable_auto_persist(self) -> None:
        """Stop persisting after transitions (the hook is kept)."""
        with self._lock:
            self._auto_persist = False

    def persist_state(self) -> WorkflowState:
        """Persist the current snapshot through the registered hook."""
        with self._lock:
            state = self.get_state()
            self._persist(state)
            return state

    def _persist(self, state: WorkflowState) -> None:
        if self._persist_hook is None:
            return
        try:
            self._persist_hook(state)
        except StateStoreError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to persist workflow state: {e}") from e

    def restore_state(self, state: WorkflowState) -> None:
        """
        Replace the internal state wholesale from a persisted snapshot.

        Args:
            state: Previously persisted snapshot

        Raises:
            CorruptStateError: If the snapshot breaks model invariants
        """
        violations = state.invariant_violations()
        if violations:
            raise CorruptStateError(
                f"Cannot restore workflow state: {'; '.join(violations)}"
            )

        with self._lock:
            self._phase = state.phase
            self._tdd_phase = state.tdd_phase
            self._context = state.context.model_copy(deep=True)
            self._notify(
                [
                    (
                        "workflow:resumed",
                        None,
                        {"phase": state.phase.value, **self.get_progress().model_dump()},
                    )
                ]
            )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: WorkflowListener) -> None:
        """
        Add a listener called with a WorkflowNotification per change.

        Args:
            listener: Callback function(notification)
        """
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: WorkflowListener) -> None:
        """Remove a previously added listener."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, notices: List[Tuple[str, Optional[str], Dict[str, Any]]]) -> None:
        if not self._listeners:
            return
        current = self._context.current_subtask()
        for kind, subtask_id, data in notices:
            notification = WorkflowNotification(
                kind=kind,
                phase=self._phase,
                tdd_phase=self._tdd_phase,
                subtask_id=subtask_id or (current.id if current else None),
                data=data,
            )
            for listener in list(self._listeners):
                listener(notification)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_current_phase(self) -> WorkflowPhase:
        """Get the top-level phase."""
        return self._phase

    def get_current_tdd_phase(self) -> Optional[TDDPhase]:
        """Get the TDD phase; None outside SUBTASK_LOOP."""
        return self._tdd_phase

    def get_current_subtask(self) -> Optional[SubtaskInfo]:
        """Get the subtask being worked on, None once all are done."""
        return self._context.current_subtask()

    def get_context(self) -> WorkflowContext:
        """Get a copy of the workflow context."""
        return self._context.model_copy(deep=True)

    def get_state(self) -> WorkflowState:
        """Get a new snapshot of the current state."""
        return WorkflowState(
            phase=self._phase,
            tdd_phase=self._tdd_phase,
            context=self._context.model_copy(deep=True),
        )

    def get_progress(self) -> WorkflowProgress:
        """Get completed/total/current/percentage over the subtask list."""
        return self._progress_of(self._context)

    @staticmethod
    def _progress_of(ctx: WorkflowContext) -> WorkflowProgress:
        total = len(ctx.subtasks)
        completed = sum(1 for s in ctx.subtasks if s.status == SubtaskStatus.COMPLETED)
        percentage = int(completed * 100 / total + 0.5) if total else 0
        return WorkflowProgress(
            completed=completed,
            total=total,
            current=ctx.current_subtask_index,
            percentage=percentage,
        )

    def get_valid_events(self) -> List[WorkflowEventType]:
        """Get the events legal in the current position."""
        return get_valid_events(self._phase, self._tdd_phase)

    def can_proceed(self) -> bool:
        """True once the current subtask has been committed."""
        if self._phase != WorkflowPhase.SUBTASK_LOOP:
            return False
        if self._tdd_phase != TDDPhase.COMMIT:
            return False
        current = self._context.current_subtask()
        return current is None or current.status != SubtaskStatus.IN_PROGRESS

    def is_aborted(self) -> bool:
        """Check if the workflow was aborted."""
        return self._phase == WorkflowPhase.ABORTED

    def is_terminal(self) -> bool:
        """Check if the workflow accepts no further events."""
        return is_terminal_phase(self._phase)

    def _describe_position(self) -> str:
        if self._tdd_phase is not None:
            return f"{self._phase.value}/{self._tdd_phase.value}"
        return self._phase.value
