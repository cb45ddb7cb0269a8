"""
Built-in tool families, gated by ``core.state.Capability``:

- planning: ``write_todos``, ``read_todos``
- filesystem: ``ls``, ``read_file``, ``write_file``, ``edit_file``, ``glob``, ``grep``
- shell: ``execute``
- subagents: ``task``

Each family operates on a host-provided backend; a missing backend yields a
deterministic ``Error:`` message instead of an exception.
"""

from .filesystem import (
    FileSystemBackend,
    FileSystemError,
    InMemoryFileSystemBackend,
    normalize_path,
)
from .shell import ShellBackend, ShellExecutionRequest, ShellExecutionResult
from .subagents import SubagentDescriptor, SubagentRegistry, SubagentRequest, SubagentResult
from .todos import Todo, render_todos

__all__ = [
    "FileSystemBackend",
    "FileSystemError",
    "InMemoryFileSystemBackend",
    "normalize_path",
    "ShellBackend",
    "ShellExecutionRequest",
    "ShellExecutionResult",
    "SubagentDescriptor",
    "SubagentRegistry",
    "SubagentRequest",
    "SubagentResult",
    "Todo",
    "render_todos",
]
