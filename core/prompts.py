"""System prompt assembly for the model node."""

import logging
from typing import Iterable, Optional, Sequence

from tools.base import ToolDefinition
from tools.builtin.filesystem import FileSystemBackend, FileSystemError

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = """In order to complete the objective that the user asks of you, you have access to a number of standard tools.

Follow these rules:
- Be concise and direct unless the user asks for detail.
- Prefer using tools over guessing.
- When operating on files, read before editing, and avoid unnecessary changes.
- Keep the todo list current with write_todos when a task spans several steps.
- If memory files are provided, update them via edit_file only when asked (never store secrets)."""


def build_system_prompt(
    additional: Optional[str] = None,
    memory: Optional[str] = None,
    tools: Sequence[ToolDefinition] = (),
    include_tool_list: bool = True,
) -> str:
    """
    Join the prompt sections with a blank line.

    Order: base prompt, additional prompt, ``Memory:``, ``Tools:``. Blank
    sections are omitted; tools are listed by name.
    """
    sections = [BASE_SYSTEM_PROMPT]
    if additional and additional.strip():
        sections.append(additional)
    if memory and memory.strip():
        sections.append("Memory:\n" + memory)
    if include_tool_list and tools:
        tool_list = "\n".join(
            f"- {tool.name}: {tool.description}"
            for tool in sorted(tools, key=lambda tool: tool.name)
        )
        sections.append("Tools:\n" + tool_list)
    return "\n\n".join(sections)


async def load_memory(filesystem: Optional[FileSystemBackend], sources: Iterable[str]) -> Optional[str]:
    """Concatenate configured memory files; missing files are skipped."""
    if filesystem is None:
        return None
    parts = []
    for source in sources:
        try:
            content = await filesystem.read(source)
        except FileSystemError as exc:
            logger.debug(f"Skipping memory source {source}: {exc}")
            continue
        if content.strip():
            parts.append(f"## {source}\n{content}")
    return "\n\n".join(parts) if parts else None
