"""Configuration models for autopilot."""

import os
import re
from pathlib import Path
from string import Template
from typing import Any, List

from pydantic import BaseModel, Field, field_validator

from autopilot.core.commit_message import CONVENTIONAL_TYPES, DEFAULT_COMMIT_TEMPLATE
from autopilot.core.workflow_types import DEFAULT_MAX_ATTEMPTS


class WorkflowConfig(BaseModel):
    """Workflow engine configuration."""

    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS, description="GREEN attempts allowed per subtask"
    )
    state_dir: str = Field(
        default=".autopilot/state", description="State directory, relative to project"
    )
    max_backups: int = Field(default=5, description="Workflow state backups to keep")

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """Validate attempt limit."""
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        if v > 20:
            raise ValueError("max_attempts cannot exceed 20")
        return v

    @field_validator("max_backups")
    @classmethod
    def validate_max_backups(cls, v: int) -> int:
        """Validate backup count."""
        if v < 0:
            raise ValueError("max_backups cannot be negative")
        if v > 50:
            raise ValueError("max_backups cannot exceed 50")
        return v


class TasksConfig(BaseModel):
    """Task source configuration."""

    path: str = Field(
        default=".autopilot/tasks.yaml", description="Task file, relative to project"
    )
    tag: str = Field(default="master", description="Tag whose tasks are used")


class GitConfig(BaseModel):
    """Git configuration."""

    branch_prefix: str = Field(default="", description="Prefix for workflow branches")
    commit_type: str = Field(default="feat", description="Conventional commit type")
    commit_template: str = Field(
        default=DEFAULT_COMMIT_TEMPLATE, description="Commit message template"
    )
    protected_branches: List[str] = Field(
        default=["main", "master", "develop"], description="Protected git branches"
    )
    enforce_non_default_branch: bool = Field(
        default=True, description="Refuse to commit on protected branches"
    )

    @field_validator("commit_type")
    @classmethod
    def validate_commit_type(cls, v: str) -> str:
        """Validate commit type."""
        if v not in CONVENTIONAL_TYPES:
            raise ValueError(
                f"commit_type must be one of: {', '.join(CONVENTIONAL_TYPES)}"
            )
        return v

    @field_validator("commit_template")
    @classmethod
    def validate_commit_template(cls, v: str) -> str:
        """Validate template placeholders."""
        for match in Template.pattern.finditer(v):
            if match.group("invalid") is not None:
                raise ValueError(
                    f"Invalid placeholder in commit template at position {match.start()}"
                )
        return v


class LoggingConfig(BaseModel):
    """Activity log configuration."""

    enabled: bool = Field(default=True, description="Write the activity log")
    output_dir: str = Field(
        default=".autopilot/logs", description="Log directory, relative to project"
    )


class AutopilotConfig(BaseModel):
    """Main autopilot configuration."""

    workflow: WorkflowConfig = Field(
        default_factory=WorkflowConfig, description="Workflow configuration"
    )
    tasks: TasksConfig = Field(
        default_factory=TasksConfig, description="Task source configuration"
    )
    git: GitConfig = Field(default_factory=GitConfig, description="Git configuration")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    def resolve_env_vars(self) -> "AutopilotConfig":
        """Resolve environment variables in configuration values."""
        config_dict = self.model_dump()
        resolved_dict = _resolve_env_vars_recursive(config_dict)
        return AutopilotConfig(**resolved_dict)

    def get_log_dir(self, project_root: Path) -> Path:
        """Get the activity log directory for a project."""
        return (Path(project_root) / Path(self.logging.output_dir).expanduser()).resolve()

    def get_tasks_path(self, project_root: Path) -> Path:
        """Get the task file for a project."""
        return (Path(project_root) / Path(self.tasks.path).expanduser()).resolve()


def _resolve_env_vars_recursive(obj: Any) -> Any:
    """Recursively resolve environment variables in configuration."""
    if isinstance(obj, dict):
        return {key: _resolve_env_vars_recursive(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [_resolve_env_vars_recursive(item) for item in obj]
    elif isinstance(obj, str):
        return _resolve_env_var_string(obj)
    else:
        return obj


def _resolve_env_var_string(value: str) -> str:
    """Resolve ${VAR} and ${VAR:default} references in a string."""
    # Upper-case names only, so commit template fields like ${header} survive
    pattern = r"\$\{([A-Z_][A-Z0-9_]*)(?::([^}]*))?\}"

    def replace_var(match):
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.getenv(var_name, default_value)

    return re.sub(pattern, replace_var, value)
