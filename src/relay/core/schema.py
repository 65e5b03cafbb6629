"""
Schema definitions for agent <-> runner <-> tool messages.

These data models serve as the contract between agent definitions, the run loop, the model
providers and individual tools.  We keep them separate from runtime logic so they can be imported
anywhere without side-effects.
"""

import json
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

import jsonschema
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


# ---------------------------------------------------------------------------
# Agent definition
# ---------------------------------------------------------------------------
class MemorySettings(BaseModel):
    """Per-agent memory behaviour."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    auto_inject: bool = True
    explicit_only: bool = False
    on_correction: bool = True
    on_preference: bool = True
    on_project_fact: bool = True
    retrieval_limit: int = 5


class AgentDefinition(BaseModel):
    """An agent as seen by the runner.  Immutable for the duration of a run."""

    model_config = ConfigDict(frozen=True)

    handle: str = Field(..., description="Agent handle, e.g. '@relay'")
    model: str = Field("", description="Model identifier passed to the provider")
    provider: Optional[str] = Field(None, description="Provider name; defaults to settings")
    system_prompt: str = Field("", description="Combined system prompt")
    tools_prompt: str = ""
    skills_prompt: str = ""
    delegate_context: str = ""
    allowed_tools: List[str] = Field(default_factory=list)
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    built_in: bool = False
    memory: MemorySettings = Field(default_factory=MemorySettings)

    def has_output_schema(self) -> bool:
        """Return True if the agent declares a structured output schema."""
        return self.output_schema is not None

    def has_input_schema(self) -> bool:
        """Return True if the agent declares a structured input schema."""
        return self.input_schema is not None

    def validate_output(self, output: str) -> None:
        """Raise ``ValueError`` if *output* is not JSON matching the output schema."""
        _validate_against(self.output_schema, output, "output")

    def validate_input(self, text: str) -> None:
        """Raise ``ValueError`` if *text* is not JSON matching the input schema."""
        _validate_against(self.input_schema, text, "input")


def _validate_against(schema: Optional[Dict[str, Any]], text: str, label: str) -> None:
    if schema is None:
        return
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{label} is not valid JSON: {exc}") from exc
    try:
        jsonschema.validate(instance=data, schema=schema)
    except jsonschema.ValidationError as exc:
        location = "/".join(str(p) for p in exc.absolute_path) or "(root)"
        raise ValueError(f"{label} failed schema validation at {location}: {exc.message}") from exc


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class Role(str, Enum):
    """Message author role."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TextPart(BaseModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str


class ReasoningPart(BaseModel):
    """Model reasoning / thinking content."""

    type: Literal["reasoning"] = "reasoning"
    text: str


class FilePart(BaseModel):
    """Binary attachment sent to the model as a typed part."""

    type: Literal["file"] = "file"
    filename: str
    media_type: str
    data: bytes


class ToolCallPart(BaseModel):
    """A tool invocation requested by the model."""

    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    input: str = "{}"


class ToolResultPart(BaseModel):
    """The result of a tool invocation, fed back to the model."""

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    name: str = ""
    content: str
    is_error: bool = False


MessagePart = Annotated[
    Union[TextPart, ReasoningPart, FilePart, ToolCallPart, ToolResultPart],
    Field(discriminator="type"),
]


class Message(BaseModel):
    """A role plus an ordered sequence of typed parts."""

    role: Role
    parts: List[MessagePart] = Field(default_factory=list)

    @classmethod
    def system(cls, text: str) -> "Message":
        """Build a system message."""
        return cls(role=Role.SYSTEM, parts=[TextPart(text=text)])

    @classmethod
    def user(cls, text: str, files: Optional[List[FilePart]] = None) -> "Message":
        """Build a user message with optional binary attachments."""
        parts: List[Any] = [TextPart(text=text)]
        parts.extend(files or [])
        return cls(role=Role.USER, parts=parts)

    @classmethod
    def assistant(cls, text: str) -> "Message":
        """Build an assistant message containing only text."""
        return cls(role=Role.ASSISTANT, parts=[TextPart(text=text)])

    def text(self) -> str:
        """Return the first text part, or an empty string."""
        for part in self.parts:
            if isinstance(part, TextPart):
                return part.text
        return ""

    def tool_calls(self) -> List[ToolCallPart]:
        """Return the tool-call parts of this message in order."""
        return [p for p in self.parts if isinstance(p, ToolCallPart)]


# ---------------------------------------------------------------------------
# Tool calls as seen by tools and presentation
# ---------------------------------------------------------------------------
class ToolResponse(BaseModel):
    """What a tool hands back to the dispatch loop."""

    content: str = ""
    is_error: bool = False
    metadata: Any = None

    @classmethod
    def text(cls, content: str, metadata: Any = None) -> "ToolResponse":
        """Successful textual response."""
        return cls(content=content, metadata=metadata)

    @classmethod
    def error(cls, message: str) -> "ToolResponse":
        """Recoverable tool error: the model sees *message* and may adjust."""
        return cls(content=message, is_error=True)


class ToolCall(BaseModel):
    """A tool invocation in progress (display record)."""

    id: str
    name: str
    input: str = "{}"
    description: str = ""
    command: str = ""
    parent_id: str = ""


class ToolResult(BaseModel):
    """A completed tool invocation (display record)."""

    id: str
    name: str
    output: str = ""
    error: str = ""
    duration: float = 0.0  # seconds
    metadata: str = ""  # JSON text for rich rendering (e.g. todo snapshots)
