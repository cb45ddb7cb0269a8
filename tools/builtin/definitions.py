"""Model-facing definitions of the built-in tools."""

from typing import Iterable, List

from ..base import ToolDefinition


def _schema(properties: dict, required: Iterable[str] = ()) -> dict:
    return {"type": "object", "properties": properties, "required": list(required)}


_STRING = {"type": "string"}
_INTEGER = {"type": "integer"}

LS = ToolDefinition(
    name="ls",
    description="List files in a directory (non-recursive).",
    parameters=_schema({"path": _STRING}),
)

READ_FILE = ToolDefinition(
    name="read_file",
    description="Read a file with line numbers. Use offset/limit for pagination.",
    parameters=_schema(
        {"file_path": _STRING, "offset": _INTEGER, "limit": _INTEGER},
        required=["file_path"],
    ),
)

WRITE_FILE = ToolDefinition(
    name="write_file",
    description="Create a new file. Fails if the file already exists.",
    parameters=_schema({"file_path": _STRING, "content": _STRING}, required=["file_path", "content"]),
)

EDIT_FILE = ToolDefinition(
    name="edit_file",
    description="Replace an exact string in a file.",
    parameters=_schema(
        {
            "file_path": _STRING,
            "old_string": _STRING,
            "new_string": _STRING,
            "replace_all": {"type": "boolean"},
        },
        required=["file_path", "old_string", "new_string"],
    ),
)

GLOB = ToolDefinition(
    name="glob",
    description="Find files matching a glob pattern.",
    parameters=_schema({"pattern": _STRING, "path": _STRING}, required=["pattern"]),
)

GREP = ToolDefinition(
    name="grep",
    description="Search for a literal string across files. Optionally filter files with glob.",
    parameters=_schema({"pattern": _STRING, "path": _STRING, "glob": _STRING}, required=["pattern"]),
)

WRITE_TODOS = ToolDefinition(
    name="write_todos",
    description="Replace the current todo list with the provided items.",
    parameters=_schema(
        {
            "todos": {
                "type": "array",
                "items": _schema(
                    {
                        "id": _STRING,
                        "title": _STRING,
                        "status": {"type": "string", "enum": ["pending", "in_progress", "completed"]},
                    },
                    required=["id", "title", "status"],
                ),
            }
        },
        required=["todos"],
    ),
)

READ_TODOS = ToolDefinition(
    name="read_todos",
    description="Read the current todo list.",
    parameters=_schema({}),
)

EXECUTE = ToolDefinition(
    name="execute",
    description="Execute a shell command using the configured sandbox backend.",
    parameters=_schema(
        {"command": _STRING, "timeout_seconds": {"type": "number"}, "working_directory": _STRING},
        required=["command"],
    ),
)

PLANNING_TOOLS: List[ToolDefinition] = [WRITE_TODOS, READ_TODOS]
FILESYSTEM_TOOLS: List[ToolDefinition] = [LS, READ_FILE, WRITE_FILE, EDIT_FILE, GLOB, GREP]
SHELL_TOOLS: List[ToolDefinition] = [EXECUTE]


def task_definition(subagent_names: Iterable[str]) -> ToolDefinition:
    available = ", ".join(sorted(subagent_names)) or "general-purpose"
    return ToolDefinition(
        name="task",
        description=f"Launch an isolated subagent task. Available subagents: {available}",
        parameters=_schema(
            {
                "description": _STRING,
                "subagent_type": _STRING,
                "context": {"type": "object"},
            },
            required=["description"],
        ),
    )
