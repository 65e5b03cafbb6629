"""Tests for tool categories and their resolution."""

from relay.tools import (
    ToolContext,
    ToolSet,
)
from relay.tools.categories import (
    Category,
    default_for_category,
    is_category,
    resolve_tool_name,
)


def test_builtin_categories() -> None:
    """Planning and shell have built-in defaults; search does not."""

    assert is_category("planning")
    assert is_category("shell")
    assert not is_category("search")
    assert not is_category("bash")
    assert default_for_category(Category.PLANNING) == "todo"
    assert default_for_category(Category.SEARCH) == ""


def test_resolve_tool_name() -> None:
    """Overrides beat built-in defaults; plain names pass through or follow an alias."""

    assert resolve_tool_name("planning") == "todo"
    assert resolve_tool_name("planning", {"planning": "plan"}) == "plan"
    assert resolve_tool_name("shell", {"planning": "plan"}) == "bash"
    assert resolve_tool_name("search", {"search": "websearch"}) == "websearch"
    assert resolve_tool_name("bash") == "bash"
    assert resolve_tool_name("grep", {"grep": "ripgrep"}) == "ripgrep"


def test_toolset_resolves_categories(tmp_path) -> None:
    """Agents listing a category get the concrete tool."""

    context = ToolContext(base_dir=str(tmp_path))
    toolset = ToolSet.build(["shell", "planning"], context)
    assert toolset.names() == ["bash", "todo"]
    assert toolset.has_tool("shell")

    toolset = ToolSet.build(["planning"], context, default_tools={"planning": "plan"})
    assert toolset.names() == ["plan"]


def test_toolset_defaults_and_unknown_tools(tmp_path) -> None:
    """No tools listed means the defaults; unknown names are skipped."""

    context = ToolContext(base_dir=str(tmp_path))
    assert ToolSet.build([], context).names() == ["bash", "plan"]
    toolset = ToolSet.build(["bash", "no-such-tool", "agent_call"], context)
    assert toolset.names() == ["bash"]
    assert toolset.has_tool("agent_call")
    assert [schema["name"] for schema in toolset.schemas()] == ["bash"]
