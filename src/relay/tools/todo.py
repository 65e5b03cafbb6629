"""The ``todo`` tool: a flat per-session task list kept in the tool's own database."""

import json
import logging
from typing import (
    Any,
    Dict,
    List,
)

from pydantic import (
    BaseModel,
    Field,
    TypeAdapter,
)

from relay.core.plan import (
    VALID_STATUSES,
    PlanStatus,
)
from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import Scope
from relay.tools import (
    AgentTool,
    ToolContext,
    ToolExecutionError,
    parse_params,
    register_tool,
)
from relay.tools.stateful import StatefulTool

logger = logging.getLogger(__name__)

TODO_DESCRIPTION = """\
Create and manage a structured task list for the current session.

Send the complete, updated list on every call; it replaces the previous one.
Mark a todo in_progress before starting it and completed as soon as it is done.
Keep at most one todo in_progress at a time."""

TODO_SCHEMA = """
CREATE TABLE IF NOT EXISTS todos (
    session_id TEXT PRIMARY KEY,
    data TEXT NOT NULL DEFAULT '[]',
    created_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER)),
    updated_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER))
);

CREATE INDEX IF NOT EXISTS idx_todos_updated_at ON todos(updated_at);
"""


class TodoItem(BaseModel):
    """A todo as sent by the model; status is checked by the tool, not the parser."""

    content: str = Field(..., description="What needs to be done (imperative form)")
    status: str = Field(..., description="Todo status: pending, in_progress, or completed")
    active_form: str = Field("", description="Present continuous form (e.g., 'Running tests')")


class TodoParams(BaseModel):
    todos: List[TodoItem] = Field(default_factory=list, description="The updated todo list")


class Todo(BaseModel):
    """A todo as stored."""

    content: str
    status: PlanStatus
    active_form: str = ""


_TODO_LIST = TypeAdapter(List[Todo])


class TodoMetadata(BaseModel):
    """Change summary attached to a todo tool response for rich rendering."""

    is_new: bool
    todos: List[Todo]
    just_completed: List[str] = Field(default_factory=list)
    just_started: str = ""
    completed: int = 0
    total: int = 0


class TodoTool(StatefulTool):
    """Stateful todo list, one list per persisted session."""

    name = "todo"
    description = TODO_DESCRIPTION
    schema = TODO_SCHEMA

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "todos": {
                    "type": "array",
                    "description": "The updated todo list",
                    "items": {
                        "type": "object",
                        "properties": {
                            "content": {
                                "type": "string",
                                "description": "What needs to be done (imperative form)",
                            },
                            "status": {
                                "type": "string",
                                "description": "Todo status: pending, in_progress, or completed",
                                "enum": sorted(VALID_STATUSES),
                            },
                            "active_form": {
                                "type": "string",
                                "description": "Present continuous form (e.g., 'Running tests')",
                            },
                        },
                        "required": ["content", "status", "active_form"],
                    },
                }
            },
            "required": ["todos"],
        }

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        params = parse_params(call, TodoParams)
        if isinstance(params, ToolResponse):
            return params

        session_id = scope.session_id
        if not session_id:
            raise ToolExecutionError("todo tool requires a session; session ID not found in scope")

        self.ensure_initialized(scope)

        for item in params.todos:
            if item.status not in VALID_STATUSES:
                return ToolResponse.error(
                    f"invalid status {json.dumps(item.status)} for todo {json.dumps(item.content)}"
                )

        previous = {todo.content: todo.status for todo in self.get_todos(session_id)}
        todos = [
            Todo(content=i.content, status=i.status, active_form=i.active_form)
            for i in params.todos
        ]

        just_completed: List[str] = []
        just_started = ""
        counts = {status: 0 for status in PlanStatus}
        for todo in todos:
            counts[todo.status] += 1
            old = previous.get(todo.content)
            if todo.status == PlanStatus.COMPLETED:
                if old is not None and old != PlanStatus.COMPLETED:
                    just_completed.append(todo.content)
            elif todo.status == PlanStatus.IN_PROGRESS:
                if old != PlanStatus.IN_PROGRESS:
                    just_started = todo.active_form or todo.content

        self.save_todos(session_id, todos)

        content = (
            "Todo list updated successfully.\n\n"
            f"Status: {counts[PlanStatus.PENDING]} pending, "
            f"{counts[PlanStatus.IN_PROGRESS]} in progress, "
            f"{counts[PlanStatus.COMPLETED]} completed\n"
            "Todos have been modified successfully. Ensure that you continue to use the todo list "
            "to track your progress. Please proceed with the current todos if applicable."
        )
        metadata = TodoMetadata(
            is_new=not previous,
            todos=todos,
            just_completed=just_completed,
            just_started=just_started,
            completed=counts[PlanStatus.COMPLETED],
            total=len(todos),
        )
        return ToolResponse.text(content, metadata=metadata)

    # ------------------------------------------------------------------ #
    # Storage
    # ------------------------------------------------------------------ #
    def get_todos(self, session_id: str) -> List[Todo]:
        """Stored todos for *session_id*; an unknown session has none."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT data FROM todos WHERE session_id = ?", (session_id,)
            ).fetchone()
        if row is None:
            return []
        return _TODO_LIST.validate_json(row[0])

    def save_todos(self, session_id: str, todos: List[Todo]) -> None:
        """Replace the stored list for *session_id*."""
        data = _TODO_LIST.dump_json(todos).decode("utf-8")
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO todos (session_id, data, updated_at)
                VALUES (?, ?, CAST(strftime('%s', 'now') AS INTEGER))
                ON CONFLICT(session_id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = CAST(strftime('%s', 'now') AS INTEGER)
                """,
                (session_id, data),
            )


@register_tool("todo")
def _todo(context: ToolContext) -> AgentTool:  # pylint: disable=unused-argument
    return TodoTool()
