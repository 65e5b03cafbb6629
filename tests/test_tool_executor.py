"""
Basic sanity tests for the tool executor.

Run with:
$ pytest -q
"""

import json
from typing import (
    Any,
    Dict,
)

from relay.agent.tool_executor import execute_tool
from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import (
    Scope,
    ScopeDoneError,
)
from relay.tools import (
    AgentTool,
    ToolExecutionError,
    ToolSet,
)


# This is a stub tool for testing purposes.
class _AddTool(AgentTool):
    name = "add"
    description = "Return the sum of two integers (used only for tests)."

    def parameters(self) -> Dict[str, Any]:
        integer = {"type": "integer"}
        return {"type": "object", "properties": {"a": integer, "b": integer}}

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        args = json.loads(call.input)
        return ToolResponse.text(str(args["a"] + args["b"]))


class _RaisingTool(AgentTool):
    name = "boom"

    def __init__(self, exc: Exception):
        self.exc = exc

    def parameters(self) -> Dict[str, Any]:
        return {"type": "object", "properties": {}}

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        raise self.exc


def _call(name: str, payload: str = "{}") -> ToolCallPart:
    return ToolCallPart(id="call_1", name=name, input=payload)


def test_execute_tool_success() -> None:
    """Executor should return the tool's response when the tool is valid."""

    toolset = ToolSet([_AddTool()])
    response = execute_tool(Scope.background(), toolset, _call("add", '{"a": 2, "b": 3}'))
    assert response.content == "5"
    assert not response.is_error


def test_execute_tool_missing() -> None:
    """An unknown tool becomes an error response naming the tool."""

    response = execute_tool(Scope.background(), ToolSet(), _call("not_a_tool"))
    assert response.is_error
    assert "not_a_tool" in response.content


def test_execute_tool_bad_args() -> None:
    """A tool blowing up on its input is reported to the model, not raised."""

    response = execute_tool(Scope.background(), ToolSet([_AddTool()]), _call("add", '{"a": 2}'))
    assert response.is_error
    assert "raised an error" in response.content


def test_execute_tool_execution_error_aborts() -> None:
    """*ToolExecutionError* is not swallowed: it aborts the turn."""

    toolset = ToolSet([_RaisingTool(ToolExecutionError("no session"))])
    try:
        execute_tool(Scope.background(), toolset, _call("boom"))
    except ToolExecutionError as exc:
        assert "no session" in str(exc)
    else:  # pragma: no cover
        raise AssertionError("ToolExecutionError was not raised")


def test_execute_tool_cancelled_scope_propagates() -> None:
    """Cancellation raised inside a tool reaches the caller."""

    scope = Scope.background()
    scope.cancel()

    class _Checking(_RaisingTool):
        def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
            scope.check()
            return ToolResponse.text("unreachable")

    try:
        execute_tool(scope, ToolSet([_Checking(RuntimeError())]), _call("boom"))
    except ScopeDoneError as exc:
        assert not exc.timed_out
    else:  # pragma: no cover
        raise AssertionError("ScopeDoneError was not raised")
