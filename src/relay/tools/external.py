"""
External (plugin-provided) command-line tools.

A plugin ships each tool as ``tools/<name>/tool.json``.  The manifest describes the command, its
static arguments and the parameters the model may pass; :func:`build_args` turns a parameter map
into an argv list and :func:`execute_external_tool` runs it through the sandbox executor.
"""

import json
import logging
import os
import re
import shlex
import shutil
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Tuple,
)

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from relay.config import settings
from relay.core.schema import (
    ToolCallPart,
    ToolResponse,
)
from relay.core.scope import Scope
from relay.tools import AgentTool
from relay.tools.sandbox import (
    WorkingDirError,
    resolve_working_dir,
    run_command,
)

logger = logging.getLogger(__name__)

TOOL_FILE = "tool.json"

_ARG_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


class ToolDefinitionError(ValueError):
    """Raised when a tool manifest is missing, unreadable or invalid."""


# ---------------------------------------------------------------------------
# Manifest model
# ---------------------------------------------------------------------------
class ParamKind(str, Enum):
    """How a parameter value turns into arguments; fixed when the manifest is loaded."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"

    @classmethod
    def from_type(cls, declared: str) -> "ParamKind":
        if declared == "integer":
            return cls.NUMBER
        return cls(declared)


VALID_PARAM_TYPES = frozenset({"string", "number", "integer", "boolean", "array", "object"})


class ToolParameter(BaseModel):
    """One parameter of an external tool."""

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    required: bool = False
    default: Any = None
    enum: List[str] = Field(default_factory=list)
    items: Optional["ToolParameter"] = None
    arg_template: str = ""
    position: Optional[int] = None
    omit_if_empty: bool = False
    kind: ParamKind = ParamKind.STRING

    @field_validator("type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in VALID_PARAM_TYPES:
            raise ValueError(f"invalid type: {value}")
        return value

    @model_validator(mode="after")
    def _resolve_kind(self) -> "ToolParameter":
        self.kind = ParamKind.from_type(self.type)
        return self

    def to_schema_property(self) -> Dict[str, Any]:
        """JSON-schema property for this parameter."""
        prop: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.default is not None:
            prop["default"] = self.default
        if self.enum:
            prop["enum"] = list(self.enum)
        if self.kind == ParamKind.ARRAY and self.items is not None:
            prop["items"] = self.items.to_schema_property()
        return prop


class WorkingDirPolicy(str, Enum):
    """Where an external tool runs."""

    INHERIT = "inherit"
    PLUGIN = "plugin"
    PARAM = "param"


class ToolDefinition(BaseModel):
    """An external tool manifest (``tool.json``)."""

    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    command: str = Field(..., min_length=1)
    args: List[str] = Field(default_factory=list)
    parameters: List[ToolParameter] = Field(default_factory=list)
    timeout: int = 0
    working_dir: WorkingDirPolicy = WorkingDirPolicy.INHERIT
    allow_any_dir: bool = False
    quiet: bool = False
    env: Dict[str, str] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)

    @field_validator("working_dir", mode="before")
    @classmethod
    def _default_policy(cls, value: Any) -> Any:
        return value or WorkingDirPolicy.INHERIT

    def required_params(self) -> List[str]:
        return [p.name for p in self.parameters if p.required]

    def to_json_schema(self) -> Dict[str, Any]:
        """Full ``type: object`` schema the model sees."""
        schema: Dict[str, Any] = {
            "type": "object",
            "properties": {p.name: p.to_schema_property() for p in self.parameters},
        }
        required = self.required_params()
        if required:
            schema["required"] = required
        return schema


def load_tool_definition(plugin_dir: str, name: str) -> ToolDefinition:
    """
    Read and validate ``<plugin_dir>/tools/<name>/tool.json``.

    Raises
    ------
    ToolDefinitionError
        If the file is missing, not JSON, or fails validation.
    """
    path = os.path.join(plugin_dir, "tools", name, TOOL_FILE)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = fh.read()
    except FileNotFoundError as exc:
        raise ToolDefinitionError(f"tool.json not found: {name}") from exc
    except OSError as exc:
        raise ToolDefinitionError(f"read tool definition: {exc}") from exc
    try:
        return ToolDefinition.model_validate_json(raw)
    except ValidationError as exc:
        raise ToolDefinitionError(f"invalid tool definition {name}: {exc}") from exc


def load_all_tool_definitions(plugin_dir: str) -> List[ToolDefinition]:
    """Load every tool under ``<plugin_dir>/tools``; a plugin without tools yields an empty list."""
    tools_dir = os.path.join(plugin_dir, "tools")
    if not os.path.isdir(tools_dir):
        return []
    definitions = []
    for entry in sorted(os.listdir(tools_dir)):
        if not os.path.isdir(os.path.join(tools_dir, entry)):
            continue
        definitions.append(load_tool_definition(plugin_dir, entry))
    return definitions


# ---------------------------------------------------------------------------
# Argument building
# ---------------------------------------------------------------------------
def format_value(value: Any) -> str:
    """Render a JSON value as a single argument string."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, list):
        return ",".join(format_value(item) for item in value)
    return json.dumps(value)


def is_empty_value(value: Any) -> bool:
    """Zero values: ``None``, blank strings, ``False``, ``0`` and empty collections."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, bool):
        return not value
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, (list, dict)):
        return not value
    return False


def expand_arg_template(template: str, params: Mapping[str, Any]) -> str:
    """Replace ``{{param}}`` placeholders; unknown parameters expand to nothing."""

    def _sub(match: "re.Match[str]") -> str:
        name = match.group(1)
        return format_value(params[name]) if name in params else ""

    return _ARG_PLACEHOLDER.sub(_sub, template)


def expand_param_template(template: str, name: str, value: Any) -> str:
    """Expand ``{{value}}`` and ``{{name}}`` in a parameter's own template."""
    return template.replace("{{value}}", format_value(value)).replace("{{name}}", name)


def split_args(text: str) -> List[str]:
    """Shell-style split of an expanded template; unbalanced quotes fall back to whitespace."""
    try:
        return shlex.split(text)
    except ValueError:
        logger.debug("Unbalanced quotes in %r; splitting on whitespace", text)
        return text.split()


def _flag_args(param: ToolParameter, value: Any) -> List[str]:
    if param.arg_template:
        expanded = expand_param_template(param.arg_template, param.name, value)
        return split_args(expanded) if expanded else []
    if param.kind == ParamKind.BOOLEAN:
        return [f"--{param.name}"] if value is True else []
    text = format_value(value)
    return [f"--{param.name}={text}"] if text else []


def build_args(definition: ToolDefinition, params: Mapping[str, Any]) -> List[str]:
    """
    Build the argv tail for *definition* from *params*.

    Order: static manifest args (with ``{{param}}`` substitution, empty results dropped), then flag
    args in parameter declaration order, then positional args by declared position.
    """
    args = []
    for template in definition.args:
        expanded = expand_arg_template(template, params)
        if expanded:
            args.append(expanded)

    positional: List[Tuple[int, str]] = []
    for param in definition.parameters:
        value = params.get(param.name)
        if value is None:
            continue
        if param.omit_if_empty and is_empty_value(value):
            continue
        if param.position is not None:
            text = format_value(value)
            if text:
                positional.append((param.position, text))
            continue
        args.extend(_flag_args(param, value))

    # sorted() is stable: equal positions keep declaration order
    args.extend(text for _, text in sorted(positional, key=lambda item: item[0]))
    return args


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
ProgressHook = Callable[[str, int, bool], None]
"""Called with ``(tool_name, depth, finished)`` around a non-quiet external tool run."""


def _validate_required(definition: ToolDefinition, params: Mapping[str, Any]) -> Optional[str]:
    for param in definition.parameters:
        if not param.required:
            continue
        value = params.get(param.name)
        if value is None:
            return f"parameter '{param.name}' is required"
        if isinstance(value, str) and not value.strip():
            return f"parameter '{param.name}' cannot be empty"
    return None


def _resolve_tool_dir(
    definition: ToolDefinition, plugin_dir: str, base_dir: str, params: Mapping[str, Any]
) -> str:
    if definition.working_dir == WorkingDirPolicy.PLUGIN:
        return plugin_dir
    if definition.working_dir == WorkingDirPolicy.PARAM:
        requested = params.get("working_dir")
        if isinstance(requested, str) and requested:
            if definition.allow_any_dir:
                target = os.path.abspath(os.path.join(base_dir, os.path.expanduser(requested)))
                if not os.path.isdir(target):
                    raise WorkingDirError(f"working_dir is not a directory: {target}")
                return target
            return resolve_working_dir(base_dir, requested)
    return os.path.abspath(base_dir)


def execute_external_tool(
    scope: Scope,
    definition: ToolDefinition,
    plugin_dir: str,
    base_dir: str,
    params: Mapping[str, Any],
    progress: Optional[ProgressHook] = None,
    depth: int = 0,
) -> ToolResponse:
    """Validate *params*, run the tool and wrap its result."""
    problem = _validate_required(definition, params)
    if problem:
        return ToolResponse.error(problem)

    for binary in definition.depends_on:
        if shutil.which(binary) is None:
            return ToolResponse.error(f"required binary not found: {binary}")

    command_path = shutil.which(definition.command)
    if command_path is None:
        return ToolResponse.error(f"command not found: {definition.command}")

    argv = [command_path, *build_args(definition, params)]

    try:
        cwd = _resolve_tool_dir(definition, plugin_dir, base_dir, params)
    except WorkingDirError as exc:
        return ToolResponse.error(f"invalid working_dir: {exc}")

    timeout = float(definition.timeout) if definition.timeout > 0 else settings.DEFAULT_TOOL_TIMEOUT
    show_progress = progress is not None and not definition.quiet
    if show_progress:
        progress(definition.name, depth, False)
    logger.debug("Running external tool %s: %s (cwd=%s)", definition.name, argv, cwd)
    try:
        result = run_command(
            scope,
            argv,
            cwd,
            timeout,
            name=definition.name,
            env=definition.env or None,
            stdout_limit=settings.OUTPUT_LIMIT_BYTES * 2,
            stderr_limit=settings.OUTPUT_LIMIT_BYTES,
        )
    finally:
        if show_progress:
            progress(definition.name, depth, True)
    return ToolResponse.text(result.to_text())


class ExternalTool(AgentTool):
    """Adapter exposing a :class:`ToolDefinition` as an agent tool."""

    def __init__(
        self,
        definition: ToolDefinition,
        plugin_dir: str,
        base_dir: str,
        depth: int = 0,
        progress: Optional[ProgressHook] = None,
    ):
        self.definition = definition
        self.plugin_dir = plugin_dir
        self.base_dir = base_dir or os.getcwd()
        self.depth = depth
        self.progress = progress
        self.name = definition.name
        self.description = definition.description

    def parameters(self) -> Dict[str, Any]:
        return self.definition.to_json_schema()

    def run(self, scope: Scope, call: ToolCallPart) -> ToolResponse:
        try:
            params = json.loads(call.input or "{}")
        except json.JSONDecodeError as exc:
            return ToolResponse.error(f"invalid parameters: {exc}")
        if not isinstance(params, dict):
            return ToolResponse.error("invalid parameters: expected a JSON object")
        return execute_external_tool(
            scope,
            self.definition,
            self.plugin_dir,
            self.base_dir,
            params,
            self.progress,
            self.depth,
        )
