"""
The ``plan`` tool: a hierarchical task plan stored on the persisted session.

Plans can be structured as:
- just tasks (flat list), using ``tasks``
- phases containing tasks (2+ phases), using ``phases``
- tasks containing todos (atomic sub-items), using ``todos`` within tasks
"""

import json
import logging
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Tuple,
)

from pydantic import (
    BaseModel,
    Field,
)

from relay.core.plan import (
    VALID_STATUSES,
    Phase,
    Plan,
    PlanStatus,
    PlanTodo,
    Task,
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
    pydantic_parameters,
    register_tool,
)

logger = logging.getLogger(__name__)

PLAN_DESCRIPTION = """\
Create and update a plan for the current session.

Use a flat list of tasks for simple work. Group tasks into phases (at least 2) for larger work,
and break a task into todos when it has several atomic steps. Send the whole plan on every call;
it replaces the previous one. Keep statuses current as you work."""


class PlanParseError(ValueError):
    """Raised when a plan from the model is structurally invalid."""


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------
class TodoParam(BaseModel):
    content: str = Field("", description="What needs to be done (imperative form)")
    active_form: str = Field("", description="Present continuous form")
    status: str = Field("", description="Todo status: pending, in_progress, or completed")


class TaskParam(BaseModel):
    content: str = Field("", description="What needs to be done (imperative form)")
    active_form: str = Field("", description="Present continuous form (e.g., 'Running tests')")
    status: str = Field("", description="Task status: pending, in_progress, or completed")
    todos: List[TodoParam] = Field(
        default_factory=list, description="Optional atomic sub-items within this task"
    )


class PhaseParam(BaseModel):
    name: str = Field("", description="Phase name (e.g., 'Phase 1: Setup')")
    status: str = Field("", description="Phase status: pending, in_progress, or completed")
    tasks: List[TaskParam] = Field(
        default_factory=list, description="Tasks within this phase (at least 1 required)"
    )


class PlanParams(BaseModel):
    """Input for the plan tool."""

    phases: List[PhaseParam] = Field(
        default_factory=list, description="Optional high-level phases (requires 2+ if used)"
    )
    tasks: List[TaskParam] = Field(
        default_factory=list, description="Top-level tasks (when not using phases)"
    )


class PlanMetadata(BaseModel):
    """Change summary attached to a plan tool response for rich rendering."""

    is_new: bool
    plan: Plan
    just_completed: List[str] = Field(default_factory=list)
    just_started: str = ""
    completed: int = 0
    total: int = 0


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def _check_status(status: str, where: str) -> None:
    if status not in VALID_STATUSES:
        raise PlanParseError(
            f"{where}: invalid status {json.dumps(status)}; "
            "must be pending, in_progress, or completed"
        )


def _check_task(task: TaskParam, where: str) -> None:
    if not task.content:
        raise PlanParseError(f"{where}: content is required")
    _check_status(task.status, where)
    for index, todo in enumerate(task.todos, start=1):
        todo_where = f"{where} todo {index}"
        if not todo.content:
            raise PlanParseError(f"{todo_where}: content is required")
        _check_status(todo.status, todo_where)


def validate_plan_params(params: PlanParams) -> None:
    """
    Check the structure of a plan before anything is stored.

    Raises
    ------
    PlanParseError
        Describing the first problem found.
    """
    if params.phases and params.tasks:
        raise PlanParseError(
            "plan cannot have both phases and top-level tasks; "
            "use phases to group tasks or use tasks directly"
        )
    if len(params.phases) == 1:
        raise PlanParseError("if using phases, must have at least 2 phases; got 1")

    for index, phase in enumerate(params.phases, start=1):
        if not phase.name:
            raise PlanParseError(f"phase {index}: name is required")
        label = f"phase {json.dumps(phase.name)}"
        _check_status(phase.status, label)
        if not phase.tasks:
            raise PlanParseError(f"{label}: must have at least 1 task")
        for task_index, task in enumerate(phase.tasks, start=1):
            _check_task(task, f"{label} task {task_index}")

    for index, task in enumerate(params.tasks, start=1):
        _check_task(task, f"task {index}")


def _convert_task(param: TaskParam) -> Task:
    return Task(
        content=param.content,
        active_form=param.active_form,
        status=PlanStatus(param.status),
        todos=[
            PlanTodo(content=t.content, active_form=t.active_form, status=PlanStatus(t.status))
            for t in param.todos
        ],
    )


def params_to_plan(params: PlanParams) -> Plan:
    """Convert validated parameters into a :class:`Plan`."""
    return Plan(
        phases=[
            Phase(
                name=p.name,
                status=PlanStatus(p.status),
                tasks=[_convert_task(t) for t in p.tasks],
            )
            for p in params.phases
        ],
        tasks=[_convert_task(t) for t in params.tasks],
    )


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------
def build_status_map(plan: Plan) -> Dict[str, PlanStatus]:
    """Map ``phase:<name>``, ``task:<content>`` and ``todo:<content>`` to their statuses."""
    statuses: Dict[str, PlanStatus] = {}
    for phase in plan.phases:
        statuses[f"phase:{phase.name}"] = phase.status
    for task in plan.all_tasks():
        statuses[f"task:{task.content}"] = task.status
        for todo in task.todos:
            statuses[f"todo:{todo.content}"] = todo.status
    return statuses


def _transition(
    key: str, status: PlanStatus, old: Dict[str, PlanStatus]
) -> Tuple[bool, bool]:
    """``(just_completed, just_started)`` for one item against the previous status map."""
    previous: Optional[PlanStatus] = old.get(key)
    completed = status == PlanStatus.COMPLETED and previous != PlanStatus.COMPLETED
    started = status == PlanStatus.IN_PROGRESS and previous != PlanStatus.IN_PROGRESS
    return completed, started


def detect_changes(plan: Plan, old: Dict[str, PlanStatus]) -> Tuple[List[str], str]:
    """
    Compare *plan* against the previous status map.

    Anything now completed that was not completed before counts as just completed, even if it did
    not exist before.  The last item found starting wins ``just_started``.
    """
    just_completed: List[str] = []
    just_started = ""

    def visit_task(task: Task) -> None:
        nonlocal just_started
        done, started = _transition(f"task:{task.content}", task.status, old)
        if done:
            just_completed.append(task.content)
        if started:
            just_started = task.active_form or task.content
        for todo in task.todos:
            done, started = _transition(f"todo:{todo.content}", todo.status, old)
            if done:
                just_completed.append(todo.content)
            if started:
                just_started = todo.active_form or todo.content

    for phase in plan.phases:
        done, started = _transition(f"phase:{phase.name}", phase.status, old)
        if done:
            just_completed.append(phase.name)
        if started:
            just_started = phase.name
        for task in phase.tasks:
            visit_task(task)
    for task in plan.tasks:
        visit_task(task)
    return just_completed, just_started


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------
class PlanTool(AgentTool):
    """Hierarchical plan persisted through the session services."""

    name = "plan"
    description = PLAN_DESCRIPTION

    def parameters(self) -> Dict[str, Any]:
        return pydantic_parameters(PlanParams)

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        params = parse_params(call, PlanParams)
        if isinstance(params, ToolResponse):
            return params

        session_id = scope.session_id
        if not session_id:
            raise ToolExecutionError("plan tool requires a session; session ID not found in scope")
        services = scope.services
        if services is None:
            raise ToolExecutionError("plan tool requires session services; not found in scope")

        try:
            current = services.sessions.get(session_id)
        except KeyError as exc:
            raise ToolExecutionError(f"failed to get session: {exc}") from exc

        try:
            validate_plan_params(params)
        except PlanParseError as exc:
            return ToolResponse.error(str(exc))

        plan = params_to_plan(params)
        just_completed, just_started = detect_changes(plan, build_status_map(current.plan))

        try:
            services.sessions.update_plan(session_id, plan)
        except KeyError as exc:
            raise ToolExecutionError(f"failed to save plan: {exc}") from exc

        pending, in_progress, completed = plan.stats()
        status = f"Status: {pending} pending, {in_progress} in progress, {completed} completed\n"
        activity = plan.current_activity()
        if activity:
            status += f"Current: {activity}\n"
        content = (
            "Plan updated successfully.\n\n"
            + status
            + "Plan has been modified successfully. Continue to use the plan tool to track your "
            "progress. Proceed with the current tasks if applicable."
        )
        metadata = PlanMetadata(
            is_new=current.plan.is_empty(),
            plan=plan,
            just_completed=just_completed,
            just_started=just_started,
            completed=completed,
            total=pending + in_progress + completed,
        )
        return ToolResponse.text(content, metadata=metadata)


@register_tool("plan")
def _plan(context: ToolContext) -> AgentTool:  # pylint: disable=unused-argument
    return PlanTool()
