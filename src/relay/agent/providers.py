"""
Model provider interface for Relay.

This module is the only place that *directly* calls an LLM.  Everything else (runner, tools,
structured output) stays model-agnostic and talks to a :class:`BaseModelClient`.

We support three back-ends out of the box:

1. **OpenAI** (and OpenAI-compatible endpoints) via the ``openai`` SDK.
2. **Anthropic** via the ``anthropic`` SDK.
3. **Ollama** for self-hosted models, over its REST API with ``httpx``.

Additional providers can be added by subclassing :class:`BaseModelClient` and registering via
:func:`register_provider`.
"""

import base64
import json
import logging
import uuid
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
    Optional,
    Sequence,
    Tuple,
    Type,
)

import httpx

from relay.config import settings
from relay.core.schema import (
    FilePart,
    Message,
    ReasoningPart,
    Role,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from relay.core.scope import Scope

logger = logging.getLogger(__name__)


class ModelConfigError(RuntimeError):
    """Raised when a model client cannot be built (no model, unknown provider, SDK setup)."""


class ModelCallError(RuntimeError):
    """Raised when a provider request fails."""


# ---------------------------------------------------------------------------
# Streaming contract
# ---------------------------------------------------------------------------
class StreamHandler:
    """Callbacks a client invokes while one model step streams.  Defaults ignore everything."""

    def on_text_delta(self, delta: str) -> None:
        """A chunk of assistant text arrived."""

    def on_reasoning_delta(self, delta: str) -> None:
        """A chunk of reasoning arrived."""

    def on_tool_call(self, call: ToolCallPart) -> None:
        """The model finished emitting a tool call."""


@dataclass
class StepResult:
    """Outcome of one model round trip."""

    text: str = ""
    reasoning: str = ""
    tool_calls: List[ToolCallPart] = field(default_factory=list)

    def message(self) -> Message:
        """The assistant message to append to the conversation."""
        parts: List[Any] = []
        if self.reasoning:
            parts.append(ReasoningPart(text=self.reasoning))
        if self.text:
            parts.append(TextPart(text=self.text))
        parts.extend(self.tool_calls)
        return Message(role=Role.ASSISTANT, parts=parts)


def new_call_id() -> str:
    """Tool-call id for providers that do not assign one."""
    return f"call_{uuid.uuid4().hex[:24]}"


def _request_timeout(scope: Scope) -> Optional[float]:
    return scope.remaining()


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_PROVIDER_REGISTRY: Dict[str, Type["BaseModelClient"]] = {}


def register_provider(name: str) -> Callable:
    """Decorator to register a model client class under *name*."""

    def wrapper(cls: Type["BaseModelClient"]) -> Type["BaseModelClient"]:
        _PROVIDER_REGISTRY[name] = cls
        return cls

    return wrapper


def load_model(provider: Optional[str], model_id: str) -> "BaseModelClient":
    """
    Factory that returns an instantiated model client.

    Fallback order for the provider:
    1. *provider* arg
    2. ``settings.PROVIDER`` env option

    Raises
    ------
    ModelConfigError
        If *model_id* is blank, the provider is unknown, or the client cannot be constructed.
    """
    if not model_id or not model_id.strip():
        raise ModelConfigError("model is required")
    target = (provider or settings.PROVIDER).lower()
    cls = _PROVIDER_REGISTRY.get(target)
    if cls is None:
        raise ModelConfigError(f"Provider '{target}' is not registered.")
    return cls(model_id.strip())


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseModelClient(ABC):
    """A model bound to one provider."""

    provider: str = ""

    def __init__(self, model_id: str):
        self.model_id = model_id

    @abstractmethod
    def stream(
        self,
        scope: Scope,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        handler: StreamHandler,
    ) -> StepResult:
        """
        Run one streamed round trip.

        *tools* are function schemas ``{name, description, parameters}``.
        """

    @abstractmethod
    def generate(self, scope: Scope, messages: Sequence[Message]) -> str:
        """Plain, non-streamed completion without tools."""

    @abstractmethod
    def generate_object(
        self, scope: Scope, messages: Sequence[Message], schema: Dict[str, Any]
    ) -> Any:
        """Completion constrained to JSON matching *schema*; returns the decoded object."""


def _data_url(part: FilePart) -> str:
    return f"data:{part.media_type};base64,{base64.b64encode(part.data).decode('ascii')}"


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------
@register_provider("openai")
class OpenAIClient(BaseModelClient):
    """OpenAI chat completions (also any OpenAI-compatible base URL)."""

    provider = "openai"

    def __init__(self, model_id: str):
        super().__init__(model_id)
        try:
            import openai  # pylint: disable=import-outside-toplevel

            self._errors = (openai.OpenAIError,)
            self._client = openai.OpenAI(
                api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL
            )
        except ImportError as exc:
            raise ModelConfigError("OpenAI SDK not installed. Run 'pip install openai'") from exc
        except Exception as exc:  # pylint: disable=broad-except
            raise ModelConfigError(f"create language model: {exc}") from exc

    @staticmethod
    def _convert(messages: Sequence[Message]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                converted.append({"role": "system", "content": msg.text()})
            elif msg.role == Role.USER:
                content: List[Dict[str, Any]] = []
                for part in msg.parts:
                    if isinstance(part, TextPart):
                        content.append({"type": "text", "text": part.text})
                    elif isinstance(part, FilePart) and part.media_type.startswith("image/"):
                        content.append({"type": "image_url", "image_url": {"url": _data_url(part)}})
                    elif isinstance(part, FilePart):
                        content.append(
                            {
                                "type": "file",
                                "file": {"filename": part.filename, "file_data": _data_url(part)},
                            }
                        )
                converted.append({"role": "user", "content": content})
            elif msg.role == Role.ASSISTANT:
                entry: Dict[str, Any] = {"role": "assistant", "content": msg.text() or None}
                calls = msg.tool_calls()
                if calls:
                    entry["tool_calls"] = [
                        {
                            "id": c.id,
                            "type": "function",
                            "function": {"name": c.name, "arguments": c.input},
                        }
                        for c in calls
                    ]
                converted.append(entry)
            else:
                for part in msg.parts:
                    if isinstance(part, ToolResultPart):
                        converted.append(
                            {
                                "role": "tool",
                                "tool_call_id": part.tool_call_id,
                                "content": part.content,
                            }
                        )
        return converted

    def stream(
        self,
        scope: Scope,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        handler: StreamHandler,
    ) -> StepResult:
        kwargs: Dict[str, Any] = {
            "model": self.model_id,
            "messages": self._convert(messages),
            "stream": True,
            "timeout": _request_timeout(scope),
        }
        if tools:
            kwargs["tools"] = [{"type": "function", "function": t} for t in tools]

        result = StepResult()
        pending: Dict[int, Dict[str, str]] = {}
        try:
            response = self._client.chat.completions.create(**kwargs)
            try:
                for chunk in response:
                    scope.check()
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    reasoning = getattr(delta, "reasoning_content", None)
                    if reasoning:
                        result.reasoning += reasoning
                        handler.on_reasoning_delta(reasoning)
                    if delta.content:
                        result.text += delta.content
                        handler.on_text_delta(delta.content)
                    for tc in delta.tool_calls or []:
                        slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                        if tc.id:
                            slot["id"] = tc.id
                        if tc.function is not None:
                            slot["name"] += tc.function.name or ""
                            slot["arguments"] += tc.function.arguments or ""
            finally:
                response.close()
        except self._errors as exc:
            raise ModelCallError(f"openai request failed: {exc}") from exc

        for index in sorted(pending):
            slot = pending[index]
            call = ToolCallPart(
                id=slot["id"] or new_call_id(),
                name=slot["name"],
                input=slot["arguments"] or "{}",
            )
            result.tool_calls.append(call)
            handler.on_tool_call(call)
        return result

    def generate(self, scope: Scope, messages: Sequence[Message]) -> str:
        try:
            resp = self._client.chat.completions.create(
                model=self.model_id,
                messages=self._convert(messages),
                timeout=_request_timeout(scope),
            )
        except self._errors as exc:
            raise ModelCallError(f"openai request failed: {exc}") from exc
        return resp.choices[0].message.content or ""

    def generate_object(
        self, scope: Scope, messages: Sequence[Message], schema: Dict[str, Any]
    ) -> Any:
        try:
            resp = self._client.chat.completions.create(
                model=self.model_id,
                messages=self._convert(messages),
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "output", "schema": schema},
                },
                timeout=_request_timeout(scope),
            )
        except self._errors as exc:
            raise ModelCallError(f"openai request failed: {exc}") from exc
        content = resp.choices[0].message.content or ""
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ModelCallError(f"model returned invalid JSON: {exc}") from exc


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------
@register_provider("anthropic")
class AnthropicClient(BaseModelClient):
    """Anthropic messages API."""

    provider = "anthropic"
    OUTPUT_TOOL = "output"

    def __init__(self, model_id: str):
        super().__init__(model_id)
        try:
            import anthropic  # pylint: disable=import-outside-toplevel

            self._errors = (anthropic.AnthropicError,)
            self._client = anthropic.Anthropic(api_key=settings.ANTHROPIC_API_KEY)
        except ImportError as exc:
            raise ModelConfigError(
                "Anthropic SDK not installed. Run 'pip install anthropic'"
            ) from exc
        except Exception as exc:  # pylint: disable=broad-except
            raise ModelConfigError(f"create language model: {exc}") from exc

    @staticmethod
    def _convert(messages: Sequence[Message]) -> Tuple[str, List[Dict[str, Any]]]:
        """Split out the system prompt and convert the rest to Anthropic content blocks."""
        system: List[str] = []
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                system.append(msg.text())
                continue
            blocks: List[Dict[str, Any]] = []
            for part in msg.parts:
                if isinstance(part, TextPart) and part.text:
                    blocks.append({"type": "text", "text": part.text})
                elif isinstance(part, FilePart):
                    kind = "image" if part.media_type.startswith("image/") else "document"
                    blocks.append(
                        {
                            "type": kind,
                            "source": {
                                "type": "base64",
                                "media_type": part.media_type,
                                "data": base64.b64encode(part.data).decode("ascii"),
                            },
                        }
                    )
                elif isinstance(part, ToolCallPart):
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": part.id,
                            "name": part.name,
                            "input": json.loads(part.input or "{}"),
                        }
                    )
                elif isinstance(part, ToolResultPart):
                    blocks.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": part.tool_call_id,
                            "content": part.content,
                            "is_error": part.is_error,
                        }
                    )
            role = "assistant" if msg.role == Role.ASSISTANT else "user"
            converted.append({"role": role, "content": blocks})
        return "\n\n".join(system), converted

    def _base_kwargs(self, scope: Scope, messages: Sequence[Message]) -> Dict[str, Any]:
        system, converted = self._convert(messages)
        kwargs: Dict[str, Any] = {
            "model": self.model_id,
            "max_tokens": settings.MAX_TOKENS,
            "messages": converted,
            "timeout": _request_timeout(scope),
        }
        if system:
            kwargs["system"] = system
        return kwargs

    def stream(
        self,
        scope: Scope,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        handler: StreamHandler,
    ) -> StepResult:
        kwargs = self._base_kwargs(scope, messages)
        if tools:
            kwargs["tools"] = [
                {
                    "name": t["name"],
                    "description": t["description"],
                    "input_schema": t["parameters"],
                }
                for t in tools
            ]

        result = StepResult()
        try:
            with self._client.messages.stream(**kwargs) as events:
                for event in events:
                    scope.check()
                    if event.type != "content_block_delta":
                        continue
                    if event.delta.type == "text_delta":
                        result.text += event.delta.text
                        handler.on_text_delta(event.delta.text)
                    elif event.delta.type == "thinking_delta":
                        result.reasoning += event.delta.thinking
                        handler.on_reasoning_delta(event.delta.thinking)
                final = events.get_final_message()
        except self._errors as exc:
            raise ModelCallError(f"anthropic request failed: {exc}") from exc

        for block in final.content:
            if block.type == "tool_use":
                call = ToolCallPart(id=block.id, name=block.name, input=json.dumps(block.input))
                result.tool_calls.append(call)
                handler.on_tool_call(call)
        return result

    def generate(self, scope: Scope, messages: Sequence[Message]) -> str:
        try:
            response = self._client.messages.create(**self._base_kwargs(scope, messages))
        except self._errors as exc:
            raise ModelCallError(f"anthropic request failed: {exc}") from exc
        return "".join(b.text for b in response.content if b.type == "text")

    def generate_object(
        self, scope: Scope, messages: Sequence[Message], schema: Dict[str, Any]
    ) -> Any:
        # Forced tool use is how Anthropic models return schema-shaped JSON
        kwargs = self._base_kwargs(scope, messages)
        kwargs["tools"] = [
            {
                "name": self.OUTPUT_TOOL,
                "description": "Return the extracted data.",
                "input_schema": schema,
            }
        ]
        kwargs["tool_choice"] = {"type": "tool", "name": self.OUTPUT_TOOL}
        try:
            response = self._client.messages.create(**kwargs)
        except self._errors as exc:
            raise ModelCallError(f"anthropic request failed: {exc}") from exc
        for block in response.content:
            if block.type == "tool_use":
                return block.input
        raise ModelCallError("anthropic response did not contain structured output")


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------
@register_provider("ollama")
class OllamaClient(BaseModelClient):
    """Ollama ``/api/chat`` over httpx; streams newline-delimited JSON."""

    provider = "ollama"

    def __init__(self, model_id: str):
        super().__init__(model_id)
        self.endpoint = settings.OLLAMA_HOST.rstrip("/") + "/api/chat"

    @staticmethod
    def _convert(messages: Sequence[Message]) -> List[Dict[str, Any]]:
        converted: List[Dict[str, Any]] = []
        for msg in messages:
            if msg.role == Role.TOOL:
                for part in msg.parts:
                    if isinstance(part, ToolResultPart):
                        converted.append(
                            {"role": "tool", "content": part.content, "tool_name": part.name}
                        )
                continue
            entry: Dict[str, Any] = {"role": msg.role.value, "content": msg.text()}
            images = [
                base64.b64encode(p.data).decode("ascii")
                for p in msg.parts
                if isinstance(p, FilePart) and p.media_type.startswith("image/")
            ]
            if images:
                entry["images"] = images
            calls = msg.tool_calls()
            if calls:
                entry["tool_calls"] = [
                    {"function": {"name": c.name, "arguments": json.loads(c.input or "{}")}}
                    for c in calls
                ]
            converted.append(entry)
        return converted

    def _post(self, scope: Scope, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=_request_timeout(scope)) as client:
                resp = client.post(self.endpoint, json=payload)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPError as exc:
            raise ModelCallError(f"chat request: {exc}") from exc

    def stream(
        self,
        scope: Scope,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        handler: StreamHandler,
    ) -> StepResult:
        payload: Dict[str, Any] = {
            "model": self.model_id,
            "messages": self._convert(messages),
            "stream": True,
        }
        if tools:
            payload["tools"] = [{"type": "function", "function": t} for t in tools]

        result = StepResult()
        try:
            with httpx.Client(timeout=_request_timeout(scope)) as client:
                with client.stream("POST", self.endpoint, json=payload) as resp:
                    resp.raise_for_status()
                    for line in resp.iter_lines():
                        scope.check()
                        if not line.strip():
                            continue
                        try:
                            chunk = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        message = chunk.get("message") or {}
                        if message.get("thinking"):
                            result.reasoning += message["thinking"]
                            handler.on_reasoning_delta(message["thinking"])
                        if message.get("content"):
                            result.text += message["content"]
                            handler.on_text_delta(message["content"])
                        for tc in message.get("tool_calls") or []:
                            fn = tc.get("function") or {}
                            call = ToolCallPart(
                                id=tc.get("id") or new_call_id(),
                                name=fn.get("name", ""),
                                input=json.dumps(fn.get("arguments") or {}),
                            )
                            result.tool_calls.append(call)
                            handler.on_tool_call(call)
                        if chunk.get("done"):
                            break
        except httpx.HTTPError as exc:
            raise ModelCallError(f"chat request: {exc}") from exc
        return result

    def generate(self, scope: Scope, messages: Sequence[Message]) -> str:
        data = self._post(
            scope,
            {"model": self.model_id, "messages": self._convert(messages), "stream": False},
        )
        return (data.get("message") or {}).get("content", "")

    def generate_object(
        self, scope: Scope, messages: Sequence[Message], schema: Dict[str, Any]
    ) -> Any:
        data = self._post(
            scope,
            {
                "model": self.model_id,
                "messages": self._convert(messages),
                "stream": False,
                "format": schema,
            },
        )
        content = (data.get("message") or {}).get("content", "")
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ModelCallError(f"decode response: {exc}") from exc
