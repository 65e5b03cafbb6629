"""
Tool registry for Relay.

This module provides the :class:`AgentTool` base class, a decorator to register built-in tool
factories, and :class:`ToolSet`, which assembles the tools an agent is allowed to use.

Built-in tools register themselves like this:
    @register_tool("bash")
    def _bash(context: ToolContext) -> AgentTool:
        return BashTool(context.base_dir)

A factory receives the :class:`ToolContext` of the run and returns a ready tool instance.
"""

import json
import logging
from abc import (
    ABC,
    abstractmethod,
)
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

from pydantic import (
    BaseModel,
    ValidationError,
)

from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import Scope

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


class ToolExecutionError(RuntimeError):
    """Raised when a tool cannot run at all; aborts the turn instead of informing the model."""


class AgentTool(ABC):
    """A tool the model can call."""

    name: str = ""
    description: str = ""

    @abstractmethod
    def parameters(self) -> Dict[str, Any]:
        """JSON schema (``type: object``) describing the tool input."""

    @abstractmethod
    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        """Execute *call* under *scope*."""

    def to_function_schema(self) -> Dict[str, Any]:
        """Tool description in the function-calling shape used by providers."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters(),
        }

    def close(self) -> None:
        """Release resources held by the tool."""


def parse_params(call: ToolCallPart, model: Type[P]) -> Union[P, ToolResponse]:
    """
    Parse the raw JSON input of *call* into *model*.

    Returns the parsed model, or an error :class:`ToolResponse` the dispatch loop can hand back
    to the model verbatim.
    """
    raw = call.input.strip() or "{}"
    try:
        return model.model_validate_json(raw)
    except ValidationError as exc:
        return ToolResponse.error(f"invalid parameters: {_summarize_validation(exc)}")


def _summarize_validation(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{location}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def pydantic_parameters(model: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema for a pydantic parameter model, without the title noise."""
    schema = model.model_json_schema()
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    return schema


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
@dataclass
class ToolContext:
    """Everything a tool factory may need to build a tool for one run."""

    base_dir: str
    depth: int = 0
    memory_service: Any = None
    memory_queue: Any = None
    progress: Any = None
    extras: Dict[str, Any] = field(default_factory=dict)


ToolFactory = Callable[[ToolContext], AgentTool]

TOOL_REGISTRY: Dict[str, ToolFactory] = {}
"""Global registry of built-in tool factories."""


def register_tool(name: str) -> Callable[[ToolFactory], ToolFactory]:
    """
    Register a built-in tool factory under *name*.

    Parameters
    ----------
    name: str
        The tool name agents list in their allowed tools.  Must be unique.
    Returns
    -------
    Callable
        A decorator that registers the factory.
    Raises
    ------
    ValueError
        If a factory with the same name is already registered.
    """
    if name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{name}' is already registered.")
    logger.debug("Registering tool '%s'", name)

    def wrapper(factory: ToolFactory) -> ToolFactory:
        TOOL_REGISTRY[name] = factory
        return factory

    return wrapper


def load_builtin_tools() -> Mapping[str, ToolFactory]:
    """Import the built-in tool modules so their factories register, then return the registry."""
    # Lazy imports: the tool modules import this package
    # pylint: disable=import-outside-toplevel,unused-import
    import relay.tools.memory  # noqa: F401
    import relay.tools.plan  # noqa: F401
    import relay.tools.sandbox  # noqa: F401
    import relay.tools.todo  # noqa: F401

    return TOOL_REGISTRY


# ---------------------------------------------------------------------------
# Tool sets
# ---------------------------------------------------------------------------
DEFAULT_ALLOWED_TOOLS = ("bash", "plan")
"""Tools an agent gets when it lists none."""


class ToolSet:
    """The concrete tools available to one agent run."""

    def __init__(
        self, tools: Optional[List[AgentTool]] = None, allowed: Optional[List[str]] = None
    ):
        self._tools: Dict[str, AgentTool] = {}
        for tool in tools or []:
            self.add(tool)
        self.allowed: List[str] = list(allowed or [])

    @classmethod
    def build(
        cls,
        allowed: List[str],
        context: ToolContext,
        plugins: Any = None,
        default_tools: Optional[Mapping[str, str]] = None,
    ) -> "ToolSet":
        """
        Assemble the tools named in *allowed*.

        Names are resolved through tool categories first, then matched against built-in tools and
        finally against external tools provided by *plugins*.  ``agent_call`` is never built here;
        the runner adds it because it needs the runner itself.
        """
        # pylint: disable=import-outside-toplevel
        from relay.tools.categories import resolve_tool_name
        from relay.tools.external import ExternalTool

        names = list(allowed) or list(DEFAULT_ALLOWED_TOOLS)
        registry = load_builtin_tools()
        toolset = cls(allowed=names)
        for raw_name in names:
            name = resolve_tool_name(raw_name, default_tools)
            if name == "agent_call" or toolset.get(name) is not None:
                continue
            factory = registry.get(name)
            if factory is not None:
                toolset.add(factory(context))
                continue
            external = plugins.find_tool(name) if plugins is not None else None
            if external is not None:
                definition, plugin_dir = external
                toolset.add(
                    ExternalTool(
                        definition,
                        plugin_dir,
                        context.base_dir,
                        context.depth,
                        context.progress,
                    )
                )
                continue
            logger.warning("Tool '%s' is not available; skipping", raw_name)
        return toolset

    def add(self, tool: AgentTool) -> None:
        """Add *tool*, replacing any tool with the same name."""
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[AgentTool]:
        """Look a tool up by name."""
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        """True if *name* was in the allowed list."""
        return name in self.allowed

    def tools(self) -> List[AgentTool]:
        """All tools in insertion order."""
        return list(self._tools.values())

    def names(self) -> List[str]:
        """Names of all tools in insertion order."""
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        """Function-calling schemas for every tool."""
        return [tool.to_function_schema() for tool in self._tools.values()]

    def close(self) -> None:
        """Close every tool, logging (not raising) failures."""
        for tool in self._tools.values():
            try:
                tool.close()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Failed to close tool '%s'", tool.name)


def metadata_json(metadata: Any) -> str:
    """Serialize tool metadata for display records."""
    if metadata is None:
        return ""
    if isinstance(metadata, BaseModel):
        return metadata.model_dump_json()
    return json.dumps(metadata, default=str)
