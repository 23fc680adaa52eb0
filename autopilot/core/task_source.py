"""Task source adapter: loose task records to validated subtasks."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import TaskSourceError
from .workflow_types import DEFAULT_MAX_ATTEMPTS, SubtaskInfo, SubtaskStatus

# Task-file statuses that count as already done
_DONE_STATUSES = {"done", "completed", "complete"}


def _coerce_id(value: Any) -> Any:
    # Task files written by hand often use bare integers for ids
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class SubtaskRecord(BaseModel):
    """Subtask as read from a task file."""

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    status: str = "pending"
    description: Optional[str] = None
    max_attempts: Optional[int] = Field(None, ge=1)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return _coerce_id(v)


class TaskRecord(BaseModel):
    """Task as read from a task file."""

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: str = "pending"
    subtasks: List[SubtaskRecord] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return _coerce_id(v)


class TaskSource(Protocol):
    """Anything that can look up a task by id."""

    def get_task(self, task_id: str) -> TaskRecord: ...


class FileTaskSource:
    """
    Reads tasks from a YAML or JSON file.

    Two layouts are accepted: a top-level ``tasks`` list, or a mapping of
    tag name to ``{tasks: [...]}`` where ``tag`` selects the list.
    """

    def __init__(self, path: Union[str, Path], tag: str = "master"):
        self.path = Path(path)
        self.tag = tag

    def load_tasks(self) -> List[TaskRecord]:
        """
        Load every task in the file for the configured tag.

        Raises:
            TaskSourceError: If the file is missing or malformed
        """
        if not self.path.exists():
            raise TaskSourceError(f"Task file not found: {self.path}")

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise TaskSourceError(f"Invalid YAML in {self.path}: {e}") from e
        except OSError as e:
            raise TaskSourceError(f"Could not read {self.path}: {e}") from e

        raw_tasks = self._select_tasks(data)

        tasks = []
        for i, raw in enumerate(raw_tasks):
            try:
                tasks.append(TaskRecord.model_validate(raw))
            except ValidationError as e:
                raise TaskSourceError(
                    f"Invalid task #{i + 1} in {self.path}: {e}"
                ) from e
        return tasks

    def get_task(self, task_id: str) -> TaskRecord:
        """
        Look up a task by id.

        Raises:
            TaskSourceError: If no task has this id
        """
        for task in self.load_tasks():
            if task.id == str(task_id):
                return task
        raise TaskSourceError(f"Task {task_id} not found in {self.path}")

    def _select_tasks(self, data: Any) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            raise TaskSourceError(f"Task file must contain a mapping: {self.path}")

        if "tasks" in data:
            tasks = data["tasks"]
        elif self.tag in data and isinstance(data[self.tag], dict):
            tasks = data[self.tag].get("tasks", [])
        else:
            raise TaskSourceError(f"No tasks for tag '{self.tag}' in {self.path}")

        if not isinstance(tasks, list):
            raise TaskSourceError(f"'tasks' must be a list in {self.path}")
        return tasks


def build_subtasks(
    task: TaskRecord, max_attempts: int = DEFAULT_MAX_ATTEMPTS
) -> List[SubtaskInfo]:
    """
    Adapt a task's subtask records into SubtaskInfo values.

    Subtask ids are qualified with the parent id (``3`` under task ``7``
    becomes ``7.3``) unless already dotted. Done subtasks map to
    ``completed``; every other status starts as ``pending``.

    Args:
        task: Task record from a task source
        max_attempts: GREEN attempts allowed per subtask unless the record
            overrides it

    Returns:
        Subtasks ready for a WorkflowContext

    Raises:
        TaskSourceError: If subtask ids collide
    """
    subtasks: List[SubtaskInfo] = []
    seen = set()
    for record in task.subtasks:
        subtask_id = record.id if "." in record.id else f"{task.id}.{record.id}"
        if subtask_id in seen:
            raise TaskSourceError(f"Duplicate subtask id {subtask_id} in task {task.id}")
        seen.add(subtask_id)

        status = (
            SubtaskStatus.COMPLETED
            if record.status.lower() in _DONE_STATUSES
            else SubtaskStatus.PENDING
        )
        subtasks.append(
            SubtaskInfo(
                id=subtask_id,
                title=record.title,
                status=status,
                attempts=0,
                max_attempts=record.max_attempts or max_attempts,
            )
        )
    return subtasks
