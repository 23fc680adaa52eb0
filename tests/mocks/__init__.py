"""Mock utilities for testing."""

from .memory_fs import MemoryFileSystem
from .workflow_factories import (
    complete_subtask,
    event,
    green_result,
    make_context,
    red_result,
    start_loop,
    write_file,
)

__all__ = [
    "MemoryFileSystem",
    "make_context",
    "red_result",
    "green_result",
    "event",
    "start_loop",
    "complete_subtask",
    "write_file",
]
