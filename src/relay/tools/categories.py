"""
Tool categories.

A category is a semantic slot ("planning", "shell", ...) that agents can list instead of a concrete
tool, so the implementation can be swapped in configuration without touching agent definitions.
"""

from enum import Enum
from typing import (
    Dict,
    Mapping,
    Optional,
)


class Category(str, Enum):
    """Known tool categories."""

    PLANNING = "planning"  # task tracking during execution
    SHELL = "shell"  # command execution
    SEARCH = "search"  # web search; no built-in default, a plugin must provide it


_BUILTIN_DEFAULTS: Dict[Category, str] = {
    Category.PLANNING: "todo",
    Category.SHELL: "bash",
}


def is_category(name: str) -> bool:
    """True if *name* is a category with a built-in default."""
    return any(cat.value == name for cat in _BUILTIN_DEFAULTS)


def default_for_category(category: Category) -> str:
    """Built-in tool for *category*, or an empty string."""
    return _BUILTIN_DEFAULTS.get(category, "")


def resolve_tool_name(name: str, default_tools: Optional[Mapping[str, str]] = None) -> str:
    """
    Turn a category or alias into a concrete tool name.

    Resolution order:
    1. a category with a configured override resolves to the override;
    2. a category without one resolves to its built-in default;
    3. any other name with a configured alias resolves to the alias;
    4. otherwise *name* is returned unchanged.
    """
    overrides = default_tools or {}
    if is_category(name):
        override = overrides.get(name)
        if override:
            return override
        return default_for_category(Category(name))
    return overrides.get(name) or name
