"""
Agent-to-agent delegation (``agent_call``).

The tool itself is thin: it parses parameters and hands them to an executor supplied by the
runner, which owns sub-agent loading and the nested run.  The handle rules and limits live here.
"""

import logging
from typing import (
    Any,
    Callable,
    Dict,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from relay.config import settings
from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import Scope
from relay.tools import (
    AgentTool,
    parse_params,
    pydantic_parameters,
)

logger = logging.getLogger(__name__)

AGENT_CALL_TOOL = "agent_call"
RESERVED_NAMESPACE = "relay"


class AgentCallParams(BaseModel):
    """Input for the agent_call tool."""

    agent: str = Field(
        ..., description="The agent handle to call (e.g., '@relay'). Must be a builtin agent."
    )
    prompt: str = Field(..., description="The prompt/question to send to the agent")
    model: str = Field("", description="Optional model override for the called agent")
    timeout_seconds: int = Field(
        0, description="Optional timeout in seconds (default 120, max 300)"
    )


def normalize_handle(handle: str) -> str:
    """Ensure *handle* starts with ``@``."""
    handle = handle.strip()
    return handle if handle.startswith("@") else f"@{handle}"


def is_reserved_namespace(handle: str) -> bool:
    """True for built-in agents: ``@relay`` and anything under ``@relay.``."""
    name = handle[1:] if handle.startswith("@") else handle
    return name == RESERVED_NAMESPACE or name.startswith(f"{RESERVED_NAMESPACE}.")


def clamp_timeout(seconds: Optional[float]) -> float:
    """Default unset or non-positive timeouts, and cap the rest."""
    if not seconds or seconds <= 0:
        timeout = settings.AGENT_CALL_TIMEOUT
    else:
        timeout = float(seconds)
    return min(timeout, settings.AGENT_CALL_MAX_TIMEOUT)


def format_timeout(seconds: float) -> str:
    """``90s``, ``2m0s``: the way timeouts appear in delegation errors."""
    whole = int(seconds)
    if whole < 60:
        return f"{seconds:g}s"
    minutes, rest = divmod(whole, 60)
    return f"{minutes}m{rest}s"


def truncate_output(text: str, limit: Optional[int] = None) -> str:
    """Cut a sub-agent response to *limit* bytes of UTF-8, then trim surrounding whitespace."""
    limit = settings.AGENT_CALL_MAX_OUTPUT if limit is None else limit
    encoded = text.encode("utf-8")
    if len(encoded) > limit:
        text = encoded[:limit].decode("utf-8", errors="ignore")
    return text.strip()


AgentCallExecutor = Callable[[Scope, AgentCallParams, ToolCallPart], ToolResponse]


class AgentCallTool(AgentTool):
    """Delegates a prompt to another agent through *executor*."""

    name = AGENT_CALL_TOOL
    description = (
        "Call a builtin agent as a subprocess and get its response. "
        "Use this to delegate specialized tasks to other agents."
    )

    def __init__(self, executor: AgentCallExecutor):
        self.executor = executor

    def parameters(self) -> Dict[str, Any]:
        schema = pydantic_parameters(AgentCallParams)
        schema["required"] = ["agent", "prompt"]
        return schema

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        params = parse_params(call, AgentCallParams)
        if isinstance(params, ToolResponse):
            return params
        return self.executor(scope, params, call)
