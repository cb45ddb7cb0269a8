"""
Shell execution tool.

The agent runs commands only through a host-provided ``ShellBackend``;
sandboxing is the backend's concern.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

NOT_CONFIGURED = "Error: Shell backend not configured."


@dataclass(frozen=True)
class ShellExecutionRequest:
    command: str
    timeout_seconds: Optional[float] = None
    working_directory: Optional[str] = None


@dataclass(frozen=True)
class ShellExecutionResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ShellBackend(ABC):
    @abstractmethod
    async def execute(self, request: ShellExecutionRequest) -> ShellExecutionResult:
        ...


def format_shell_result(result: ShellExecutionResult) -> str:
    sections = [f"exit_code: {result.exit_code}"]
    if result.stdout:
        sections.append(f"stdout:\n{result.stdout}")
    if result.stderr:
        sections.append(f"stderr:\n{result.stderr}")
    if result.truncated:
        sections.append("warning: output truncated")
    return "\n\n".join(sections)


async def execute(backend: Optional[ShellBackend], args: Dict[str, Any]) -> tuple[str, bool]:
    """Run ``args["command"]``; returns (content, success)."""
    if backend is None:
        return NOT_CONFIGURED, False
    timeout = args.get("timeout_seconds")
    request = ShellExecutionRequest(
        command=args["command"],
        timeout_seconds=float(timeout) if timeout is not None else None,
        working_directory=args.get("working_directory"),
    )
    result = await backend.execute(request)
    return format_shell_result(result), result.success
