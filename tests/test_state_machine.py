"""Tests for the workflow orchestrator state machine."""

import pytest

from autopilot.core.exceptions import (
    CorruptStateError,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    PersistenceError,
    PhaseValidationError,
)
from autopilot.core.state_machine import WorkflowOrchestrator
from autopilot.core.workflow_types import (
    SubtaskStatus,
    TDDPhase,
    WorkflowContext,
    WorkflowEventType,
    WorkflowPhase,
    WorkflowState,
)
from tests.mocks import (
    complete_subtask,
    event,
    green_result,
    make_context,
    red_result,
    start_loop,
)


def _kinds(notifications):
    return [n.kind for n in notifications]


class TestConstruction:
    """Test orchestrator construction."""

    def test_starts_in_preflight(self, orchestrator):
        """Test a new orchestrator starts in PREFLIGHT with no TDD phase."""
        assert orchestrator.get_current_phase() == WorkflowPhase.PREFLIGHT
        assert orchestrator.get_current_tdd_phase() is None
        assert orchestrator.get_valid_events() == [
            WorkflowEventType.PREFLIGHT_COMPLETE,
            WorkflowEventType.ABORT,
            WorkflowEventType.ERROR,
        ]

    def test_empty_subtasks_rejected(self):
        """Test a task without subtasks cannot start a workflow."""
        with pytest.raises(ValueError, match="has no subtasks"):
            WorkflowOrchestrator(WorkflowContext(task_id="9", subtasks=[]))

    def test_context_is_copied(self):
        """Test later changes to the caller's context do not leak in."""
        ctx = make_context(2)
        orchestrator = WorkflowOrchestrator(ctx)
        ctx.current_subtask_index = 1
        assert orchestrator.get_context().current_subtask_index == 0

    def test_invalid_context_rejected(self):
        """Test a context that breaks invariants is refused."""
        ctx = make_context(2)
        ctx.current_subtask_index = 5
        with pytest.raises(ValueError, match="Invalid workflow context"):
            WorkflowOrchestrator(ctx)


class TestHappyPath:
    """Test the full start-to-finish flow."""

    def test_single_subtask_to_complete(self):
        """Test one subtask runs RED, GREEN, COMMIT then finalizes."""
        orchestrator = WorkflowOrchestrator(make_context(1))
        orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        assert orchestrator.get_current_phase() == WorkflowPhase.BRANCH_PENDING

        orchestrator.transition(
            event(WorkflowEventType.BRANCH_CREATED, branch_name="task-1-login")
        )
        assert orchestrator.get_current_phase() == WorkflowPhase.SUBTASK_LOOP
        assert orchestrator.get_current_tdd_phase() == TDDPhase.RED
        assert orchestrator.get_context().branch_name == "task-1-login"
        assert orchestrator.get_current_subtask().status == SubtaskStatus.IN_PROGRESS

        orchestrator.transition(
            event(WorkflowEventType.RED_PHASE_COMPLETE, test_result=red_result())
        )
        assert orchestrator.get_current_tdd_phase() == TDDPhase.GREEN

        orchestrator.transition(
            event(WorkflowEventType.GREEN_PHASE_COMPLETE, test_result=green_result())
        )
        assert orchestrator.get_current_tdd_phase() == TDDPhase.COMMIT
        assert not orchestrator.can_proceed()

        orchestrator.transition(event(WorkflowEventType.COMMIT_COMPLETE))
        assert orchestrator.get_current_tdd_phase() == TDDPhase.COMMIT
        assert orchestrator.can_proceed()
        assert orchestrator.get_progress().completed == 1

        orchestrator.transition(event(WorkflowEventType.ALL_SUBTASKS_COMPLETE))
        assert orchestrator.get_current_phase() == WorkflowPhase.FINALIZE
        assert orchestrator.get_current_tdd_phase() is None

        state = orchestrator.transition(event(WorkflowEventType.FINALIZE_COMPLETE))
        assert state.phase == WorkflowPhase.COMPLETE
        assert orchestrator.is_terminal()
        assert orchestrator.get_valid_events() == []

    def test_initial_progress(self, orchestrator):
        """Test progress before any subtask has been worked on."""
        expected = {"completed": 0, "total": 3, "current": 0, "percentage": 0}
        assert orchestrator.get_progress().model_dump() == expected

        start_loop(orchestrator)
        assert orchestrator.get_progress().model_dump() == expected

    def test_multiple_subtasks(self, orchestrator):
        """Test SUBTASK_COMPLETE moves on to the next subtask at RED."""
        start_loop(orchestrator)
        complete_subtask(orchestrator)

        orchestrator.transition(event(WorkflowEventType.SUBTASK_COMPLETE))
        assert orchestrator.get_current_tdd_phase() == TDDPhase.RED
        assert orchestrator.get_current_subtask().id == "1.2"
        assert orchestrator.get_current_subtask().status == SubtaskStatus.IN_PROGRESS

        progress = orchestrator.get_progress()
        assert progress.completed == 1
        assert progress.total == 3
        assert progress.current == 1
        assert progress.percentage == 33

    def test_completed_subtasks_are_skipped(self):
        """Test BRANCH_CREATED starts at the first open subtask."""
        orchestrator = WorkflowOrchestrator(make_context(3, completed=[0]))
        start_loop(orchestrator)
        assert orchestrator.get_current_subtask().id == "1.2"

    def test_transition_returns_snapshot(self, orchestrator):
        """Test transition returns an independent snapshot."""
        state = orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        assert isinstance(state, WorkflowState)
        assert state.phase == WorkflowPhase.BRANCH_PENDING
        state.context.metadata["changed"] = True
        assert "changed" not in orchestrator.get_context().metadata


class TestInvalidTransitions:
    """Test rejected events leave the machine untouched."""

    def test_wrong_phase_event(self, orchestrator):
        """Test an event from the wrong phase is rejected with valid events listed."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.transition(
                event(WorkflowEventType.RED_PHASE_COMPLETE, test_result=red_result())
            )
        assert "RED_PHASE_COMPLETE from PREFLIGHT" in str(exc_info.value)
        assert "PREFLIGHT_COMPLETE" in str(exc_info.value)
        assert orchestrator.get_current_phase() == WorkflowPhase.PREFLIGHT

    def test_wrong_tdd_event(self, orchestrator):
        """Test GREEN completion is rejected while in RED."""
        start_loop(orchestrator)
        with pytest.raises(InvalidTransitionError, match="SUBTASK_LOOP/RED"):
            orchestrator.transition(
                event(WorkflowEventType.GREEN_PHASE_COMPLETE, test_result=green_result())
            )
        assert orchestrator.get_current_tdd_phase() == TDDPhase.RED

    def test_branch_name_required(self, orchestrator):
        """Test BRANCH_CREATED without a branch name is rejected."""
        orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        with pytest.raises(InvalidTransitionError, match="requires a branch name"):
            orchestrator.transition(event(WorkflowEventType.BRANCH_CREATED))
        assert orchestrator.get_current_phase() == WorkflowPhase.BRANCH_PENDING

    def test_subtask_complete_before_commit(self, orchestrator):
        """Test SUBTASK_COMPLETE needs the commit to be recorded first."""
        start_loop(orchestrator)
        orchestrator.transition(
            event(WorkflowEventType.RED_PHASE_COMPLETE, test_result=red_result())
        )
        orchestrator.transition(
            event(WorkflowEventType.GREEN_PHASE_COMPLETE, test_result=green_result())
        )
        with pytest.raises(InvalidTransitionError, match="has not been committed"):
            orchestrator.transition(event(WorkflowEventType.SUBTASK_COMPLETE))

    def test_all_subtasks_complete_too_early(self, orchestrator):
        """Test the loop cannot be left while subtasks remain."""
        start_loop(orchestrator)
        complete_subtask(orchestrator)
        with pytest.raises(InvalidTransitionError, match="2 subtask"):
            orchestrator.transition(event(WorkflowEventType.ALL_SUBTASKS_COMPLETE))
        assert orchestrator.get_current_phase() == WorkflowPhase.SUBTASK_LOOP

    def test_subtask_complete_after_last(self):
        """Test SUBTASK_COMPLETE after the last commit points to ALL_SUBTASKS_COMPLETE."""
        orchestrator = WorkflowOrchestrator(make_context(1))
        start_loop(orchestrator)
        complete_subtask(orchestrator)
        with pytest.raises(InvalidTransitionError, match="ALL_SUBTASKS_COMPLETE"):
            orchestrator.transition(event(WorkflowEventType.SUBTASK_COMPLETE))

    def test_double_commit_complete(self, orchestrator):
        """Test COMMIT_COMPLETE cannot be applied twice."""
        start_loop(orchestrator)
        complete_subtask(orchestrator)
        with pytest.raises(InvalidTransitionError, match="awaiting COMMIT_COMPLETE"):
            orchestrator.transition(event(WorkflowEventType.COMMIT_COMPLETE))

    def test_terminal_phase_rejects_everything(self, orchestrator):
        """Test nothing is accepted after ABORT."""
        orchestrator.transition(event(WorkflowEventType.ABORT))
        with pytest.raises(InvalidTransitionError):
            orchestrator.transition(event(WorkflowEventType.ABORT))
        with pytest.raises(InvalidTransitionError):
            orchestrator.transition(event(WorkflowEventType.ERROR, message="late"))


class TestRedPhase:
    """Test RED phase handling."""

    def test_results_required(self, orchestrator):
        """Test RED completion needs test results."""
        start_loop(orchestrator)
        with pytest.raises(PhaseValidationError, match="Test results required for RED"):
            orchestrator.transition(event(WorkflowEventType.RED_PHASE_COMPLETE))

    def test_empty_suite_rejected(self, orchestrator):
        """Test an empty RED suite is rejected without any change."""
        start_loop(orchestrator)
        before = orchestrator.get_state()
        with pytest.raises(PhaseValidationError) as exc_info:
            orchestrator.transition(
                event(
                    WorkflowEventType.RED_PHASE_COMPLETE,
                    test_result=red_result(total=0, passed=0, failed=0),
                )
            )
        assert "Cannot validate empty test suite" in exc_info.value.errors
        assert orchestrator.get_state() == before

    def test_already_implemented_skips_subtask(self, orchestrator):
        """Test RED with no failures completes the subtask and moves on."""
        start_loop(orchestrator)
        seen = []
        orchestrator.add_listener(seen.append)

        orchestrator.transition(
            event(
                WorkflowEventType.RED_PHASE_COMPLETE,
                test_result=red_result(total=4, passed=4, failed=0),
            )
        )

        ctx = orchestrator.get_context()
        assert ctx.subtasks[0].status == SubtaskStatus.COMPLETED
        assert ctx.current_subtask_index == 1
        assert orchestrator.get_current_tdd_phase() == TDDPhase.RED
        assert "tdd:feature-already-implemented" in _kinds(seen)

    def test_already_implemented_last_subtask_finalizes(self):
        """Test skipping the last subtask enters FINALIZE."""
        orchestrator = WorkflowOrchestrator(make_context(1))
        start_loop(orchestrator)
        orchestrator.transition(
            event(
                WorkflowEventType.RED_PHASE_COMPLETE,
                test_result=red_result(total=2, passed=2, failed=0),
            )
        )
        assert orchestrator.get_current_phase() == WorkflowPhase.FINALIZE
        assert orchestrator.get_current_tdd_phase() is None


class TestGreenPhase:
    """Test GREEN phase gate and attempt accounting."""

    def _to_green(self, orchestrator):
        start_loop(orchestrator)
        orchestrator.transition(
            event(WorkflowEventType.RED_PHASE_COMPLETE, test_result=red_result())
        )

    def test_failure_counts_attempt(self, orchestrator):
        """Test a failing GREEN run raises and counts one attempt."""
        self._to_green(orchestrator)
        with pytest.raises(PhaseValidationError, match="attempt 1/3"):
            orchestrator.transition(
                event(
                    WorkflowEventType.GREEN_PHASE_COMPLETE,
                    test_result=green_result(passed=4, failed=1),
                )
            )
        assert orchestrator.get_current_tdd_phase() == TDDPhase.GREEN
        assert orchestrator.get_current_subtask().attempts == 1

    def test_failure_is_persisted(self, orchestrator):
        """Test the attempt increment reaches the persistence hook."""
        self._to_green(orchestrator)
        saved = []
        orchestrator.enable_auto_persist(saved.append)
        with pytest.raises(PhaseValidationError):
            orchestrator.transition(
                event(
                    WorkflowEventType.GREEN_PHASE_COMPLETE,
                    test_result=green_result(passed=4, failed=1),
                )
            )
        assert saved[-1].context.subtasks[0].attempts == 1

    def test_exhausted_attempts(self):
        """Test the last allowed failure marks the subtask as error."""
        orchestrator = WorkflowOrchestrator(make_context(2, max_attempts=2))
        self._to_green(orchestrator)
        failing = green_result(passed=4, failed=1)

        with pytest.raises(PhaseValidationError):
            orchestrator.transition(
                event(WorkflowEventType.GREEN_PHASE_COMPLETE, test_result=failing)
            )
        with pytest.raises(MaxAttemptsExceededError) as exc_info:
            orchestrator.transition(
                event(WorkflowEventType.GREEN_PHASE_COMPLETE, test_result=failing)
            )

        assert exc_info.value.attempts == 2
        subtask = orchestrator.get_current_subtask()
        assert subtask.status == SubtaskStatus.ERROR
        assert subtask.attempts == 2
        errors = orchestrator.get_context().errors
        assert errors[-1].phase == "GREEN"
        assert "exceeded max attempts" in errors[-1].message

        with pytest.raises(MaxAttemptsExceededError):
            orchestrator.transition(
                event(WorkflowEventType.GREEN_PHASE_COMPLETE, test_result=green_result())
            )

    def test_single_attempt(self):
        """Test max_attempts=1 fails on the first failing GREEN run."""
        orchestrator = WorkflowOrchestrator(make_context(1, max_attempts=1))
        self._to_green(orchestrator)
        with pytest.raises(MaxAttemptsExceededError):
            orchestrator.transition(
                event(
                    WorkflowEventType.GREEN_PHASE_COMPLETE,
                    test_result=green_result(passed=0, failed=1),
                )
            )
        assert orchestrator.get_current_subtask().status == SubtaskStatus.ERROR

    def test_no_passing_tests_keeps_attempts(self, orchestrator):
        """Test a GREEN run with nothing passing is rejected without using an attempt."""
        self._to_green(orchestrator)
        with pytest.raises(PhaseValidationError, match="at least one passing test"):
            orchestrator.transition(
                event(
                    WorkflowEventType.GREEN_PHASE_COMPLETE,
                    test_result=green_result(total=1, passed=0, failed=0, skipped=1),
                )
            )
        assert orchestrator.get_current_subtask().attempts == 0

    def test_retry_resets_failed_subtask(self):
        """Test RETRY after exhaustion restarts the subtask at RED."""
        orchestrator = WorkflowOrchestrator(make_context(1, max_attempts=1))
        self._to_green(orchestrator)
        with pytest.raises(MaxAttemptsExceededError):
            orchestrator.transition(
                event(
                    WorkflowEventType.GREEN_PHASE_COMPLETE,
                    test_result=green_result(passed=4, failed=1),
                )
            )

        orchestrator.transition(event(WorkflowEventType.RETRY))
        subtask = orchestrator.get_current_subtask()
        assert orchestrator.get_current_tdd_phase() == TDDPhase.RED
        assert subtask.status == SubtaskStatus.IN_PROGRESS
        assert subtask.attempts == 0


class TestGlobalEvents:
    """Test ABORT and ERROR."""

    def test_abort_records_reason(self, orchestrator):
        """Test ABORT records when and why in metadata."""
        start_loop(orchestrator)
        orchestrator.transition(event(WorkflowEventType.ABORT, reason="changed plans"))
        ctx = orchestrator.get_context()
        assert orchestrator.is_aborted()
        assert orchestrator.get_current_tdd_phase() is None
        assert ctx.metadata["abortReason"] == "changed plans"
        assert "abortedAt" in ctx.metadata

    def test_abort_mid_green_keeps_progress(self, orchestrator):
        """Test aborting during GREEN leaves progress untouched."""
        start_loop(orchestrator)
        complete_subtask(orchestrator)
        orchestrator.transition(event(WorkflowEventType.SUBTASK_COMPLETE))
        orchestrator.transition(
            event(WorkflowEventType.RED_PHASE_COMPLETE, test_result=red_result())
        )
        assert orchestrator.get_current_tdd_phase() == TDDPhase.GREEN
        before = orchestrator.get_progress()

        orchestrator.transition(event(WorkflowEventType.ABORT, reason="stop"))

        assert orchestrator.is_aborted()
        assert orchestrator.get_progress() == before
        assert before.model_dump() == {
            "completed": 1,
            "total": 3,
            "current": 1,
            "percentage": 33,
        }

    def test_error_appends_to_trail(self, orchestrator):
        """Test ERROR appends an entry without changing phase."""
        start_loop(orchestrator)
        orchestrator.transition(event(WorkflowEventType.ERROR, message="test runner crashed"))
        orchestrator.transition(event(WorkflowEventType.ERROR, message="again"))

        errors = orchestrator.get_context().errors
        assert [e.message for e in errors] == ["test runner crashed", "again"]
        assert errors[0].phase == "RED"
        assert orchestrator.get_current_tdd_phase() == TDDPhase.RED

    def test_error_requires_message(self, orchestrator):
        """Test ERROR without a message is rejected."""
        with pytest.raises(InvalidTransitionError):
            orchestrator.transition(event(WorkflowEventType.ERROR))


class TestPersistence:
    """Test the persistence hook."""

    def test_hook_called_after_each_transition(self, orchestrator):
        """Test each successful transition persists one snapshot."""
        saved = []
        orchestrator.enable_auto_persist(saved.append)
        start_loop(orchestrator)
        assert [s.phase for s in saved] == [
            WorkflowPhase.BRANCH_PENDING,
            WorkflowPhase.SUBTASK_LOOP,
        ]

    def test_rejected_event_not_persisted(self, orchestrator):
        """Test an invalid event does not call the hook."""
        saved = []
        orchestrator.enable_auto_persist(saved.append)
        with pytest.raises(InvalidTransitionError):
            orchestrator.transition(event(WorkflowEventType.FINALIZE_COMPLETE))
        assert saved == []

    def test_disable_auto_persist(self, orchestrator):
        """Test disabling stops persistence while persist_state still works."""
        saved = []
        orchestrator.enable_auto_persist(saved.append)
        orchestrator.disable_auto_persist()
        orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        assert saved == []

        orchestrator.persist_state()
        assert saved[0].phase == WorkflowPhase.BRANCH_PENDING

    def test_hook_failure_wrapped(self, orchestrator):
        """Test a failing hook surfaces as PersistenceError with the state advanced."""

        def failing_hook(state):
            raise RuntimeError("disk full")

        orchestrator.enable_auto_persist(failing_hook)
        with pytest.raises(PersistenceError, match="disk full"):
            orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        assert orchestrator.get_current_phase() == WorkflowPhase.BRANCH_PENDING

    def test_hook_runs_before_listeners(self, orchestrator):
        """Test listeners only hear about persisted transitions."""
        calls = []
        orchestrator.enable_auto_persist(lambda state: calls.append("persist"))
        orchestrator.add_listener(lambda n: calls.append(n.kind))
        orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        assert calls == ["persist", "phase:entered"]


class TestRestore:
    """Test restoring from snapshots."""

    def test_round_trip(self, orchestrator):
        """Test a restored orchestrator matches the original."""
        start_loop(orchestrator)
        orchestrator.transition(
            event(WorkflowEventType.RED_PHASE_COMPLETE, test_result=red_result())
        )
        state = orchestrator.get_state()

        restored = WorkflowOrchestrator.from_state(state)
        assert restored.get_state() == state
        assert restored.get_current_tdd_phase() == TDDPhase.GREEN
        assert restored.get_context().last_test_result == red_result()

    def test_restore_notifies_resume(self, orchestrator):
        """Test restore_state emits workflow:resumed."""
        start_loop(orchestrator)
        state = orchestrator.get_state()
        fresh = WorkflowOrchestrator(make_context(3))
        seen = []
        fresh.add_listener(seen.append)
        fresh.restore_state(state)
        assert _kinds(seen) == ["workflow:resumed"]
        assert seen[0].data["phase"] == "SUBTASK_LOOP"

    def test_restore_rejects_broken_snapshot(self, orchestrator):
        """Test a snapshot that breaks invariants is refused."""
        bad = WorkflowState(
            phase=WorkflowPhase.SUBTASK_LOOP,
            tdd_phase=None,
            context=make_context(3),
        )
        with pytest.raises(CorruptStateError, match="Cannot restore"):
            orchestrator.restore_state(bad)
        assert orchestrator.get_current_phase() == WorkflowPhase.PREFLIGHT

    def test_from_state_without_subtasks(self, orchestrator):
        """Test from_state reports an empty subtask list as corruption."""
        start_loop(orchestrator)
        state = orchestrator.get_state()
        empty = state.model_copy(
            update={"context": state.context.model_copy(update={"subtasks": []})}
        )
        with pytest.raises(CorruptStateError, match="at least one subtask"):
            WorkflowOrchestrator.from_state(empty)


class TestListeners:
    """Test listener notifications."""

    def test_notification_kinds(self, orchestrator):
        """Test the notifications emitted while entering the loop."""
        seen = []
        orchestrator.add_listener(seen.append)
        start_loop(orchestrator, branch="task-1-x")
        assert _kinds(seen) == [
            "phase:entered",
            "git:branch:created",
            "phase:entered",
            "subtask:started",
            "tdd:red:started",
        ]
        assert seen[1].data["branchName"] == "task-1-x"
        assert seen[3].subtask_id == "1.1"

    def test_remove_listener(self, orchestrator):
        """Test a removed listener hears nothing more."""
        seen = []
        orchestrator.add_listener(seen.append)
        orchestrator.remove_listener(seen.append)
        orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        assert seen == []

    def test_listener_error_propagates(self, orchestrator):
        """Test a failing listener surfaces after the state is committed."""

        def broken(notification):
            raise RuntimeError("listener boom")

        orchestrator.add_listener(broken)
        with pytest.raises(RuntimeError, match="listener boom"):
            orchestrator.transition(event(WorkflowEventType.PREFLIGHT_COMPLETE))
        assert orchestrator.get_current_phase() == WorkflowPhase.BRANCH_PENDING
