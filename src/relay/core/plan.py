"""
Plan data model.

Plans can be structured as:
- just tasks (flat list)
- phases containing tasks (2+ phases when used)
- tasks containing todos (atomic sub-items)
"""

from enum import Enum
from typing import (
    List,
    Tuple,
)

from pydantic import (
    BaseModel,
    Field,
)


class PlanStatus(str, Enum):
    """Status of a plan, phase, task or todo."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


VALID_STATUSES = frozenset(s.value for s in PlanStatus)


class PlanTodo(BaseModel):
    """An atomic item within a task."""

    content: str
    active_form: str = ""
    status: PlanStatus


class Task(BaseModel):
    """A unit of work within a plan or phase."""

    content: str
    active_form: str = ""
    status: PlanStatus
    todos: List[PlanTodo] = Field(default_factory=list)


class Phase(BaseModel):
    """A high-level grouping of tasks."""

    name: str
    status: PlanStatus
    tasks: List[Task] = Field(default_factory=list)


class Plan(BaseModel):
    """A hierarchical task plan."""

    phases: List[Phase] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)

    def is_empty(self) -> bool:
        """True if the plan has no phases and no tasks."""
        return not self.phases and not self.tasks

    def is_flat(self) -> bool:
        """True if the plan has no phases."""
        return not self.phases

    def all_tasks(self) -> List[Task]:
        """All tasks, flattened out of phases when needed."""
        if self.is_flat():
            return list(self.tasks)
        return [task for phase in self.phases for task in phase.tasks]

    def stats(self) -> Tuple[int, int, int]:
        """Return ``(pending, in_progress, completed)``; tasks with todos count their todos."""
        counts = {status: 0 for status in PlanStatus}
        for task in self.all_tasks():
            items = task.todos or [task]
            for item in items:
                counts[item.status] += 1
        return (
            counts[PlanStatus.PENDING],
            counts[PlanStatus.IN_PROGRESS],
            counts[PlanStatus.COMPLETED],
        )

    def current_activity(self) -> str:
        """Active form of the first in-progress item, or an empty string."""
        for task in self.all_tasks():
            for todo in task.todos:
                if todo.status == PlanStatus.IN_PROGRESS:
                    return todo.active_form or todo.content
            if task.status == PlanStatus.IN_PROGRESS:
                return task.active_form or task.content
        return ""
