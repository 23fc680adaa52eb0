"""Workflow activity tracking."""

from autopilot.tracking.activity_logger import (
    ActivityEvent,
    EventType,
    WorkflowActivityLogger,
)

__all__ = ["ActivityEvent", "EventType", "WorkflowActivityLogger"]
