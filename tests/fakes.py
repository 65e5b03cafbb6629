"""Test doubles shared by the test modules: a scripted model client and memory collaborators."""

import json
import queue
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Union,
)

from relay.agent.providers import (
    BaseModelClient,
    StepResult,
    StreamHandler,
)
from relay.agent.stream import (
    EventType,
    QueueWriter,
    StreamEvent,
)
from relay.core.schema import (
    Message,
    ToolCallPart,
)
from relay.core.scope import Scope
from relay.services import (
    DedupDecision,
    ExistingMemory,
    FormationEvent,
    Memory,
    MemoryExtraction,
    MemorySearchResult,
)

Step = Union[StepResult, Callable[[Scope], StepResult]]


def tool_call(name: str, call_id: str = "call_1", **params: Any) -> ToolCallPart:
    """A tool call as a model would emit it."""
    return ToolCallPart(id=call_id, name=name, input=json.dumps(params))


class ScriptedModel(BaseModelClient):
    """Plays back a fixed list of steps; when the script runs out it answers ``done``."""

    provider = "scripted"

    def __init__(
        self,
        steps: Optional[Sequence[Step]] = None,
        title: str = "",
        objects: Optional[Sequence[Any]] = None,
    ):
        super().__init__("scripted-model")
        self.steps: List[Step] = list(steps or [])
        self.title = title
        self.objects: List[Any] = list(objects or [])
        self.seen: List[List[Message]] = []
        self.tool_names: List[List[str]] = []
        self.object_prompts: List[List[Message]] = []

    def stream(
        self,
        scope: Scope,
        messages: Sequence[Message],
        tools: Sequence[Dict[str, Any]],
        handler: StreamHandler,
    ) -> StepResult:
        self.seen.append(list(messages))
        self.tool_names.append([t["name"] for t in tools])
        step = self.steps.pop(0) if self.steps else StepResult(text="done")
        if callable(step):
            step = step(scope)
        if step.reasoning:
            handler.on_reasoning_delta(step.reasoning)
        if step.text:
            handler.on_text_delta(step.text)
        for call in step.tool_calls:
            handler.on_tool_call(call)
        return step

    def generate(self, scope: Scope, messages: Sequence[Message]) -> str:
        return self.title

    def generate_object(
        self, scope: Scope, messages: Sequence[Message], schema: Dict[str, Any]
    ) -> Any:
        self.object_prompts.append(list(messages))
        item = self.objects.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def factory_for(model: BaseModelClient) -> Callable[[Optional[str], str], BaseModelClient]:
    """A ``model_factory`` that always hands out *model*."""

    def _factory(provider: Optional[str], model_id: str) -> BaseModelClient:
        return model

    return _factory


def drain(writer: QueueWriter) -> List[StreamEvent]:
    """Everything *writer* has queued so far."""
    events = []
    while True:
        try:
            events.append(writer.events.get_nowait())
        except queue.Empty:
            return events


def types_of(events: Sequence[StreamEvent]) -> List[EventType]:
    return [event.type for event in events]


# ---------------------------------------------------------------------------
# Memory collaborators
# ---------------------------------------------------------------------------
class FakeMemoryService:
    """Memory service returning canned search results and recording writes."""

    def __init__(self, results: Optional[List[MemorySearchResult]] = None, embedder: bool = True):
        self.results = list(results or [])
        self.embedder = embedder
        self.created: List[Memory] = []
        self.superseded: List[tuple] = []
        self.forgotten: List[str] = []
        self.searches: List[Dict[str, Any]] = []
        self.fail_search = False

    def has_embedder(self) -> bool:
        return self.embedder

    def search(
        self, query: str, agent_handle: str = "", threshold: float = 0.0, limit: int = 10
    ) -> List[MemorySearchResult]:
        self.searches.append(
            {"query": query, "agent_handle": agent_handle, "threshold": threshold, "limit": limit}
        )
        if self.fail_search:
            raise RuntimeError("index unavailable")
        return self.results[:limit]

    def create(self, memory: Memory) -> Memory:
        stored = memory.model_copy(update={"id": f"mem-{len(self.created) + 1}"})
        self.created.append(stored)
        return stored

    def supersede(self, old_id: str, memory: Memory, reason: str = "") -> Memory:
        stored = memory.model_copy(update={"id": "mem-new"})
        self.superseded.append((old_id, stored, reason))
        return stored

    def list(self, agent_handle: str = "", limit: int = 10) -> List[Memory]:
        return self.created[:limit]

    def forget(self, memory_id: str) -> None:
        self.forgotten.append(memory_id)


class FakeSmallModel:
    """Small model with a fixed extraction and dedup decision."""

    def __init__(self, extraction: MemoryExtraction, decision: Optional[DedupDecision] = None):
        self.extraction = extraction
        self.decision = decision or DedupDecision()
        self.checked: List[Sequence[ExistingMemory]] = []

    def extract_memory(self, user_message: str) -> MemoryExtraction:
        return self.extraction

    def check_duplicate(self, content: str, existing: Sequence[ExistingMemory]) -> DedupDecision:
        self.checked.append(list(existing))
        return self.decision


class RecordingFormation:
    """Formation service that records every notification."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def on_formation(self, callback: Callable[[FormationEvent, str], None]) -> None:
        pass

    def notify_created(self, memory: Memory) -> None:
        self.events.append((FormationEvent.CREATED, memory.content))

    def notify_skipped(self, content: str, existing_id: str) -> None:
        self.events.append((FormationEvent.SKIPPED, existing_id))

    def notify_superseded(self, memory: Memory, old_id: str) -> None:
        self.events.append((FormationEvent.SUPERSEDED, old_id))

    def notify_failed(self, content: str, error: Exception) -> None:
        self.events.append((FormationEvent.FAILED, str(error)))

    def wait(self, timeout: float) -> None:
        pass
