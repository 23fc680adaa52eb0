"""
Autopilot: resumable test-first workflow driver

Walks a task's subtasks one at a time through RED (failing test), GREEN
(passing test) and COMMIT phases, persisting the workflow after every step so
each CLI or RPC invocation can pick up exactly where the previous one left off.
"""

__version__ = "0.1.0"

from autopilot.core.exceptions import AutopilotError

__all__ = ["AutopilotError", "__version__"]
