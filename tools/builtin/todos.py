"""Planning tools: the agent's todo list lives in the ``todos`` channel."""

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict

TodoStatus = Literal["pending", "in_progress", "completed"]


class Todo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    status: TodoStatus = "pending"


def render_todos(todos: List[Todo]) -> str:
    if not todos:
        return "(No todos)"
    return "\n".join(f"[{todo.status}] {todo.id}: {todo.title}" for todo in todos)


def parse_todos(raw: Any) -> List[Todo]:
    return [item if isinstance(item, Todo) else Todo.model_validate(item) for item in raw or []]


def read_todos(current: List[Dict[str, Any]]) -> str:
    return render_todos(parse_todos(current))


def write_todos(args: Dict[str, Any]) -> tuple[str, List[Dict[str, Any]]]:
    """Replace the todo list; returns the rendering and the channel value."""
    todos = parse_todos(args.get("todos"))
    return render_todos(todos), [todo.model_dump() for todo in todos]
