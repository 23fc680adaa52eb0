"""Configuration loading for autopilot."""

from autopilot.config.loader import get_config_paths, load_config, save_config
from autopilot.config.models import (
    AutopilotConfig,
    GitConfig,
    LoggingConfig,
    TasksConfig,
    WorkflowConfig,
)

__all__ = [
    "AutopilotConfig",
    "WorkflowConfig",
    "TasksConfig",
    "GitConfig",
    "LoggingConfig",
    "load_config",
    "save_config",
    "get_config_paths",
]
