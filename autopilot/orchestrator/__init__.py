"""Calling layer that drives workflows for the CLI and RPC server.

The service loads persisted workflow state, performs the git side effects
each step needs and feeds the resulting events to the orchestrator.
"""

from .workflow_service import (
    CommitOutcome,
    NextAction,
    SubtaskSummary,
    WorkflowService,
    WorkflowStatus,
    generate_branch_name,
)

__all__ = [
    "WorkflowService",
    "WorkflowStatus",
    "SubtaskSummary",
    "NextAction",
    "CommitOutcome",
    "generate_branch_name",
]
