"""Versioned JSON codec for workflow state snapshots."""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .exceptions import CorruptStateError
from .workflow_types import WorkflowState

REVISION_KEY = "revision"

_REQUIRED_STATE_KEYS = ("schemaVersion", "phase", "tddPhase", "context")
_REQUIRED_CONTEXT_KEYS = ("taskId", "subtasks", "currentSubtaskIndex")
_REQUIRED_SUBTASK_KEYS = ("id", "title", "status", "attempts", "maxAttempts")


@dataclass(frozen=True)
class StoredState:
    """A decoded snapshot and the store revision it was written with."""

    state: WorkflowState
    revision: Optional[int]


class WorkflowStateCodec:
    """
    Serializes WorkflowState to JSON and back.

    Output is deterministic (sorted keys, fixed indentation) so equal
    snapshots produce equal bytes. Reads ignore unknown fields, which lets
    older code open snapshots written by newer versions, but every required
    field must be present: a missing one is reported as corruption rather
    than filled in with a default.
    """

    def dumps(self, state: WorkflowState, revision: Optional[int] = None) -> str:
        """
        Encode a snapshot.

        Args:
            state: Snapshot to encode
            revision: Store revision to embed, omitted when None

        Returns:
            JSON text ending in a newline
        """
        payload = state.model_dump(mode="json", by_alias=True)
        if revision is not None:
            payload[REVISION_KEY] = revision
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    def loads(self, text: str) -> StoredState:
        """
        Decode a snapshot.

        Args:
            text: JSON text produced by ``dumps``

        Returns:
            StoredState with the validated snapshot and its revision

        Raises:
            CorruptStateError: If the text is not a valid snapshot
        """
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"Workflow state is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise CorruptStateError("Workflow state must be a JSON object")

        self._check_required(payload)

        revision = payload.get(REVISION_KEY)
        if revision is not None and (
            not isinstance(revision, int) or isinstance(revision, bool)
        ):
            raise CorruptStateError(f"Invalid revision: {revision!r}")

        try:
            state = WorkflowState.model_validate(payload)
        except ValidationError as e:
            raise CorruptStateError(f"Invalid workflow state: {e}") from e

        violations = state.invariant_violations()
        if violations:
            raise CorruptStateError(
                f"Workflow state breaks invariants: {'; '.join(violations)}"
            )

        return StoredState(state=state, revision=revision)

    @staticmethod
    def _check_required(payload: Dict[str, Any]) -> None:
        missing = [key for key in _REQUIRED_STATE_KEYS if key not in payload]
        if missing:
            raise CorruptStateError(f"Workflow state is missing fields: {missing}")

        version = payload["schemaVersion"]
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise CorruptStateError(f"Unsupported schemaVersion: {version!r}")

        context = payload["context"]
        if not isinstance(context, dict):
            raise CorruptStateError("Workflow context must be a JSON object")

        missing = [key for key in _REQUIRED_CONTEXT_KEYS if key not in context]
        if missing:
            raise CorruptStateError(f"Workflow context is missing fields: {missing}")

        subtasks = context["subtasks"]
        if not isinstance(subtasks, list):
            raise CorruptStateError("context.subtasks must be a list")

        for position, subtask in enumerate(subtasks):
            if not isinstance(subtask, dict):
                raise CorruptStateError(f"Subtask #{position} must be a JSON object")
            missing = [key for key in _REQUIRED_SUBTASK_KEYS if key not in subtask]
            if missing:
                raise CorruptStateError(
                    f"Subtask #{position} is missing fields: {missing}"
                )
