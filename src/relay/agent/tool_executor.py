"""Dispatches tool calls to the tools of a :class:`ToolSet` and wraps errors."""

import logging

from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import (
    Scope,
    ScopeDoneError,
)
from relay.tools import (
    ToolExecutionError,
    ToolSet,
)

logger = logging.getLogger(__name__)


def execute_tool(scope: Scope, toolset: ToolSet, call: ToolCallPart) -> ToolResponse:
    """
    Look up ``call.name`` in *toolset* and run it.

    Parameters
    ----------
    scope:
        The turn scope; tools derive their own deadlines from it.
    toolset:
        The tools available to the running agent.
    call:
        The tool call emitted by the model.

    Returns
    -------
    ToolResponse
        The tool's response.  Unknown tools and unexpected tool failures become error responses
        so the model can recover.

    Raises
    ------
    ToolExecutionError
        If the tool cannot run at all (missing session, storage failure).  This aborts the turn.
    ScopeDoneError
        If the turn was cancelled or timed out.
    """
    tool = toolset.get(call.name)
    if tool is None:
        logger.warning("Model called unknown tool '%s'", call.name)
        return ToolResponse.error(f"Tool '{call.name}' is not available.")

    try:
        logger.debug("Executing tool '%s' with input=%s", call.name, call.input)
        return tool.run(scope, call)
    except (ToolExecutionError, ScopeDoneError):
        raise
    except Exception as exc:  # pylint: disable=broad-except
        logger.exception("Unhandled error in tool '%s'", call.name)
        return ToolResponse.error(f"Tool '{call.name}' raised an error: {exc}")
