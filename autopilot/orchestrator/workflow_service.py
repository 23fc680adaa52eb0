"""Workflow service: the calling layer shared by the CLI and the RPC server.

Every public method is one stateless step. The service loads the persisted
snapshot on demand, drives the orchestrator, performs the git side effects
that must happen before an event is issued, and lets auto-persist write the
result back.
"""

import re
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from autopilot.config.loader import load_config
from autopilot.config.models import AutopilotConfig
from autopilot.core.commit_message import CommitMessageGenerator
from autopilot.core.exceptions import (
    AutopilotError,
    GitOperationError,
    InvalidTransitionError,
    StateNotFoundError,
    TaskSourceError,
    WorkflowError,
)
from autopilot.core.git_utils import CommitInfo, GitAdapter
from autopilot.core.state_machine import WorkflowOrchestrator
from autopilot.core.state_store import WorkflowStateStore
from autopilot.core.task_source import FileTaskSource, TaskSource, build_subtasks
from autopilot.core.workflow_types import (
    SubtaskStatus,
    TDDPhase,
    TestResult,
    WorkflowContext,
    WorkflowErrorEntry,
    WorkflowEvent,
    WorkflowEventType,
    WorkflowPhase,
    WorkflowProgress,
    utcnow,
)
from autopilot.tracking.activity_logger import WorkflowActivityLogger

ACTIVITY_LOG_NAME = "activity.jsonl"
MAX_SLUG_LENGTH = 50


class SubtaskSummary(BaseModel):
    """Current subtask as reported to callers."""

    id: str
    title: str
    status: SubtaskStatus
    attempts: int
    max_attempts: int


class WorkflowStatus(BaseModel):
    """Snapshot of a workflow for display."""

    task_id: str
    phase: WorkflowPhase
    tdd_phase: Optional[TDDPhase] = None
    branch_name: Optional[str] = None
    current_subtask: Optional[SubtaskSummary] = None
    progress: WorkflowProgress
    last_test_result: Optional[TestResult] = None
    errors: List[WorkflowErrorEntry] = Field(default_factory=list)


class NextAction(BaseModel):
    """What the driver of the workflow should do next."""

    action: str
    description: str
    next_steps: str
    phase: WorkflowPhase
    tdd_phase: Optional[TDDPhase] = None
    subtask: Optional[Dict[str, str]] = None


class CommitOutcome(BaseModel):
    """Result of ``WorkflowService.commit``."""

    commit_hash: str
    message: str
    status: WorkflowStatus


def generate_branch_name(
    task_id: str, title: str, tag: Optional[str] = None, prefix: str = ""
) -> str:
    """Build ``[prefix][tag/]task-<id>-<slug>`` for a task."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    formatted_id = str(task_id).replace(".", "-")
    tag_prefix = f"{tag}/" if tag else ""
    name = f"{prefix}{tag_prefix}task-{formatted_id}"
    return f"{name}-{slug}" if slug else name


class WorkflowService:
    """
    High-level workflow operations for one project.

    Collaborators default to the real implementations built from the
    project's configuration; tests inject their own.
    """

    def __init__(
        self,
        project_root: Union[str, Path],
        config: Optional[AutopilotConfig] = None,
        git: Optional[GitAdapter] = None,
        task_source: Optional[TaskSource] = None,
        store: Optional[WorkflowStateStore] = None,
        activity: Optional[WorkflowActivityLogger] = None,
    ):
        """
        Initialize the service.

        Args:
            project_root: Root of the project (a git repository)
            config: Configuration (default: loaded for the project)
            git: Git adapter (default: GitAdapter on the project root)
            task_source: Task lookup (default: configured task file)
            store: State store (default: configured state directory)
            activity: Activity logger (default: configured log, or none
                when logging is disabled)
        """
        self.project_root = Path(project_root).resolve()
        self.config = config or load_config(project_root=self.project_root)

        excluded = sorted(
            {
                _top_level_dir(self.config.workflow.state_dir),
                _top_level_dir(self.config.logging.output_dir),
            }
        )
        self.git = git or GitAdapter(self.project_root, excluded_paths=excluded)
        self.task_source: TaskSource = task_source or FileTaskSource(
            self.config.get_tasks_path(self.project_root), tag=self.config.tasks.tag
        )
        self.store = store or WorkflowStateStore(
            self.project_root,
            state_dir=self.config.workflow.state_dir,
            max_backups=self.config.workflow.max_backups,
        )
        if activity is None and self.config.logging.enabled:
            activity = WorkflowActivityLogger(
                self.config.get_log_dir(self.project_root) / ACTIVITY_LOG_NAME
            )
        self.activity = activity
        self.commit_generator = CommitMessageGenerator(
            template=self.config.git.commit_template
        )
        self._orchestrator: Optional[WorkflowOrchestrator] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def has_workflow(self) -> bool:
        """Check if the project has a persisted workflow."""
        return self.store.exists()

    def start_workflow(
        self,
        task_id: str,
        force: bool = False,
        max_attempts: Optional[int] = None,
        tag: Optional[str] = None,
    ) -> WorkflowStatus:
        """
        Start a workflow for a task.

        Args:
            task_id: Task to work on
            force: Replace an existing workflow
            max_attempts: GREEN attempts per subtask (default: configured)
            tag: Task tag; also prefixes the branch name when given

        Returns:
            Status after the branch has been created

        Raises:
            WorkflowError: If a workflow exists and force is not set
            TaskSourceError: If the task is unknown or has nothing to do
            GitOperationError: If the repository is unusable or dirty
        """
        if self.store.exists() and not force:
            raise WorkflowError(
                "A workflow is already in progress. "
                "Use resume to continue it or force to start over."
            )

        self.git.ensure_repository()
        self.git.ensure_clean_working_tree()

        if tag and tag != self.config.tasks.tag and isinstance(
            self.task_source, FileTaskSource
        ):
            self.task_source = FileTaskSource(self.task_source.path, tag=tag)

        task = self.task_source.get_task(task_id)
        subtasks = build_subtasks(
            task, max_attempts or self.config.workflow.max_attempts
        )
        if not subtasks:
            raise TaskSourceError(f"Task {task.id} has no subtasks to work on")

        first_open = next(
            (i for i, s in enumerate(subtasks) if s.status != SubtaskStatus.COMPLETED),
            None,
        )
        if first_open is None:
            raise TaskSourceError(f"Every subtask of task {task.id} is already done")

        if self.store.exists():
            self.store.create_backup()
            self.store.delete()
        self._detach()

        metadata: Dict[str, Any] = {
            "startedAt": utcnow().isoformat(),
            "taskTitle": task.title,
        }
        if tag:
            metadata["tag"] = tag
        if first_open > 0:
            metadata["resumedFromSubtask"] = subtasks[first_open].id

        context = WorkflowContext(
            task_id=task.id,
            subtasks=subtasks,
            current_subtask_index=first_open,
            metadata=metadata,
        )
        orchestrator = WorkflowOrchestrator(context)
        self._attach(orchestrator)

        orchestrator.transition(WorkflowEvent(type=WorkflowEventType.PREFLIGHT_COMPLETE))

        branch_name = generate_branch_name(
            task.id, task.title, tag=tag, prefix=self.config.git.branch_prefix
        )
        current_branch = self.git.get_current_branch()
        if current_branch != branch_name:
            if self.git.branch_exists(branch_name):
                self.git.checkout(branch_name)
            else:
                self.git.create_and_checkout_branch(branch_name)
        if self.activity:
            self.activity.log_workflow_start(task.id, branch_name, len(subtasks))
            self.activity.log_git_operation(
                "branch", {"branch_name": branch_name, "from_branch": current_branch}
            )

        orchestrator.transition(
            WorkflowEvent(type=WorkflowEventType.BRANCH_CREATED, branch_name=branch_name)
        )
        return self.get_status()

    def resume_workflow(self) -> WorkflowStatus:
        """
        Reload the persisted workflow.

        Raises:
            StateNotFoundError: If there is no workflow to resume
            CorruptStateError: If the snapshot cannot be trusted
        """
        state = self.store.load_required()
        orchestrator = WorkflowOrchestrator(state.context)
        if self.activity:
            self.activity.start(orchestrator)
        orchestrator.restore_state(state)
        orchestrator.enable_auto_persist(self.store.save)
        self._orchestrator = orchestrator
        return self.get_status()

    def abort_workflow(self, reason: Optional[str] = None) -> bool:
        """
        Abort the workflow and delete its snapshot.

        Commits and branches created so far are left in place.

        Returns:
            True if a workflow was aborted, False if there was none
        """
        if self._orchestrator is None and not self.store.exists():
            warnings.warn("No active workflow to abort", UserWarning, stacklevel=2)
            return False

        orchestrator = self._require_orchestrator()
        if not orchestrator.is_terminal():
            orchestrator.transition(
                WorkflowEvent(type=WorkflowEventType.ABORT, reason=reason)
            )
        self.store.delete()
        self._detach()
        return True

    def finalize_workflow(self) -> WorkflowStatus:
        """
        Complete a workflow whose subtasks are all done.

        Raises:
            InvalidTransitionError: If the workflow is not in FINALIZE
            GitOperationError: If the working tree has uncommitted changes
        """
        orchestrator = self._require_orchestrator()
        phase = orchestrator.get_current_phase()
        if phase != WorkflowPhase.FINALIZE:
            raise InvalidTransitionError(
                f"Cannot finalize workflow in {phase.value} phase. "
                f"Complete all subtasks first."
            )

        status = self.git.get_status()
        if not status.is_clean:
            raise GitOperationError(
                "Cannot finalize workflow: working tree has uncommitted changes "
                f"(staged: {len(status.staged)}, modified: {len(status.modified)}, "
                f"deleted: {len(status.deleted)}, untracked: {len(status.untracked)}). "
                "Commit all changes before finalizing."
            )

        orchestrator.transition(WorkflowEvent(type=WorkflowEventType.FINALIZE_COMPLETE))
        final_status = self.get_status()
        self.store.delete()
        self._detach()
        return final_status

    # ------------------------------------------------------------------
    # TDD cycle
    # ------------------------------------------------------------------

    def complete_phase(self, test_result: TestResult) -> WorkflowStatus:
        """
        Submit test results for the current RED or GREEN phase.

        Raises:
            InvalidTransitionError: Outside RED/GREEN
            PhaseValidationError: If the results fail the phase gate
            MaxAttemptsExceededError: If the subtask ran out of attempts
        """
        orchestrator = self._require_orchestrator()
        tdd_phase = orchestrator.get_current_tdd_phase()

        if tdd_phase is None:
            raise InvalidTransitionError("Not in an active TDD phase")
        if tdd_phase == TDDPhase.COMMIT:
            raise InvalidTransitionError(
                "Cannot complete COMMIT phase with test results. Use commit instead."
            )

        subtask = orchestrator.get_current_subtask()
        if self.activity:
            self.activity.log_test_run(
                test_result, subtask_id=subtask.id if subtask else None
            )

        event_type = (
            WorkflowEventType.RED_PHASE_COMPLETE
            if tdd_phase == TDDPhase.RED
            else WorkflowEventType.GREEN_PHASE_COMPLETE
        )
        try:
            orchestrator.transition(WorkflowEvent(type=event_type, test_result=test_result))
        except AutopilotError as e:
            if self.activity:
                self.activity.log_error(str(e), error_type=type(e).__name__)
            raise
        return self.get_status()

    def commit(self) -> CommitOutcome:
        """
        Commit the current subtask and advance the workflow.

        Stages every change when nothing is staged. With nothing to commit,
        a HEAD commit carrying this subtask's trailer (an earlier run that
        committed but stopped before recording it) is reused. If the commit
        was recorded but the move to the next subtask was not, only that
        move is made.

        Raises:
            InvalidTransitionError: Outside the COMMIT phase
            GitOperationError: If there is nothing to commit or git fails
        """
        orchestrator = self._require_orchestrator()
        tdd_phase = orchestrator.get_current_tdd_phase()
        if tdd_phase != TDDPhase.COMMIT:
            phase_name = tdd_phase.value if tdd_phase else orchestrator.get_current_phase().value
            raise InvalidTransitionError(
                f"Cannot commit in {phase_name} phase. Complete RED and GREEN phases first."
            )

        if orchestrator.can_proceed():
            # Commit already recorded; only the move to the next subtask is missing
            last = self.git.get_last_commit()
            self._advance_committed(orchestrator)
            return CommitOutcome(
                commit_hash=last.hash if last else "",
                message=last.message if last else "",
                status=self.get_status(),
            )

        subtask = orchestrator.get_current_subtask()
        if subtask is None or subtask.status != SubtaskStatus.IN_PROGRESS:
            raise InvalidTransitionError("No subtask is waiting to be committed")
        context = orchestrator.get_context()

        if not self.git.has_staged_changes():
            self.git.stage_files(["."])
        status = self.git.get_status()

        if status.staged:
            last_result = context.last_test_result
            message = self.commit_generator.generate(
                type=self.config.git.commit_type,
                description=subtask.title,
                changed_files=status.staged,
                task_id=context.task_id,
                subtask_id=subtask.id,
                phase=TDDPhase.COMMIT.value,
                tag=context.metadata.get("tag"),
                tests_passing=last_result.passed if last_result else None,
                tests_failing=last_result.failed if last_result else None,
            )
            commit_hash = self.git.create_commit(
                message,
                metadata={
                    "taskId": context.task_id,
                    "subtaskId": subtask.id,
                    "phase": TDDPhase.COMMIT.value,
                    "tddCycle": "complete",
                },
                enforce_non_default_branch=self.config.git.enforce_non_default_branch,
                protected_branches=self.config.git.protected_branches,
            )
            if self.activity:
                self.activity.log_git_operation(
                    "commit",
                    {
                        "commit_hash": commit_hash,
                        "subtask_id": subtask.id,
                        "files": status.staged,
                    },
                )
        else:
            recorded = self._find_recorded_commit(subtask.id)
            if recorded is None:
                raise GitOperationError(
                    f"No changes to commit for subtask {subtask.id}"
                )
            commit_hash, message = recorded.hash, recorded.message

        self.store.create_backup()
        orchestrator.transition(WorkflowEvent(type=WorkflowEventType.COMMIT_COMPLETE))
        self._advance_committed(orchestrator)

        return CommitOutcome(
            commit_hash=commit_hash, message=message or "", status=self.get_status()
        )

    def retry_subtask(self) -> WorkflowStatus:
        """Restart the current subtask at RED (resets a failed subtask)."""
        orchestrator = self._require_orchestrator()
        orchestrator.transition(WorkflowEvent(type=WorkflowEventType.RETRY))
        return self.get_status()

    def record_error(self, message: str) -> WorkflowStatus:
        """Append an entry to the workflow's error trail."""
        orchestrator = self._require_orchestrator()
        orchestrator.transition(WorkflowEvent(type=WorkflowEventType.ERROR, message=message))
        return self.get_status()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status(self) -> WorkflowStatus:
        """
        Raises:
            StateNotFoundError: If there is no workflow
        """
        orchestrator = self._require_orchestrator()
        context = orchestrator.get_context()
        subtask = context.current_subtask()

        return WorkflowStatus(
            task_id=context.task_id,
            phase=orchestrator.get_current_phase(),
            tdd_phase=orchestrator.get_current_tdd_phase(),
            branch_name=context.branch_name,
            current_subtask=(
                SubtaskSummary(
                    id=subtask.id,
                    title=subtask.title,
                    status=subtask.status,
                    attempts=subtask.attempts,
                    max_attempts=subtask.max_attempts,
                )
                if subtask
                else None
            ),
            progress=orchestrator.get_progress(),
            last_test_result=context.last_test_result,
            errors=context.errors,
        )

    def get_next_action(self) -> NextAction:
        """Describe the next step for whoever drives the workflow."""
        orchestrator = self._require_orchestrator()
        if orchestrator.can_proceed():
            self._advance_committed(orchestrator)
        phase = orchestrator.get_current_phase()
        tdd_phase = orchestrator.get_current_tdd_phase()
        subtask = orchestrator.get_current_subtask()

        if phase == WorkflowPhase.COMPLETE:
            return NextAction(
                action="workflow_complete",
                description="All subtasks completed",
                next_steps="Review the implementation and merge the branch when ready.",
                phase=phase,
            )

        if phase == WorkflowPhase.FINALIZE:
            return NextAction(
                action="finalize_workflow",
                description="Finalize and complete the workflow",
                next_steps=(
                    "All subtasks are complete. Run finalize to check that no "
                    "uncommitted changes remain and mark the workflow complete."
                ),
                phase=phase,
            )

        if phase != WorkflowPhase.SUBTASK_LOOP or tdd_phase is None or subtask is None:
            return NextAction(
                action="unknown",
                description="Workflow is not in an active state",
                next_steps="Run status to inspect the workflow.",
                phase=phase,
                tdd_phase=tdd_phase,
            )

        base = {
            "phase": phase,
            "tdd_phase": tdd_phase,
            "subtask": {"id": subtask.id, "title": subtask.title},
        }

        if subtask.status == SubtaskStatus.ERROR:
            return NextAction(
                action="resolve_failure",
                description="Subtask exceeded its GREEN attempts",
                next_steps=(
                    f'Subtask {subtask.id}: "{subtask.title}" failed '
                    f"{subtask.attempts}/{subtask.max_attempts} attempts. "
                    "Run retry to start it over at RED, or abort the workflow."
                ),
                **base,
            )

        if tdd_phase == TDDPhase.RED:
            return NextAction(
                action="generate_test",
                description="Write a failing test for the current subtask",
                next_steps=(
                    f'Write failing tests for subtask {subtask.id}: "{subtask.title}". '
                    "Run them and submit the results with complete. If nothing "
                    "fails, the feature already exists and the subtask is "
                    "completed automatically."
                ),
                **base,
            )

        if tdd_phase == TDDPhase.GREEN:
            return NextAction(
                action="implement_code",
                description="Implement code to make the tests pass",
                next_steps=(
                    f'Implement subtask {subtask.id}: "{subtask.title}" with the '
                    "minimal code that makes every test pass, then submit the "
                    "results with complete "
                    f"(attempt {subtask.attempts + 1}/{subtask.max_attempts})."
                ),
                **base,
            )

        return NextAction(
            action="commit_changes",
            description="Commit the RED-GREEN cycle",
            next_steps=(
                f'Review the changes for subtask {subtask.id}: "{subtask.title}" '
                "and run commit to record them and move on."
            ),
            **base,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_orchestrator(self) -> WorkflowOrchestrator:
        if self._orchestrator is None:
            state = self.store.load()
            if state is None:
                raise StateNotFoundError(
                    "No active workflow. Start or resume a workflow first."
                )
            orchestrator = WorkflowOrchestrator.from_state(state)
            self._attach(orchestrator)
        return self._orchestrator

    def _attach(self, orchestrator: WorkflowOrchestrator) -> None:
        if self.activity:
            self.activity.start(orchestrator)
        orchestrator.enable_auto_persist(self.store.save)
        self._orchestrator = orchestrator

    def _detach(self) -> None:
        if self.activity:
            self.activity.stop()
        self._orchestrator = None

    def _advance_committed(self, orchestrator: WorkflowOrchestrator) -> None:
        progress = orchestrator.get_progress()
        if progress.current < progress.total:
            orchestrator.transition(WorkflowEvent(type=WorkflowEventType.SUBTASK_COMPLETE))
        else:
            orchestrator.transition(
                WorkflowEvent(type=WorkflowEventType.ALL_SUBTASKS_COMPLETE)
            )

    def _find_recorded_commit(self, subtask_id: str) -> Optional[CommitInfo]:
        last = self.git.get_last_commit()
        if last is not None and f"[subtaskId:{subtask_id}]" in last.message:
            return last
        return None


def _top_level_dir(path: str) -> str:
    first = Path(path).parts[0] if Path(path).parts else path
    return first.rstrip("/") + "/"
