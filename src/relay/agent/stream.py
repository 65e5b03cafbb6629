"""
Push-based streaming contract between the runner and whatever presents its output.

The runner talks to a single :class:`StreamWriter` per turn and never looks at which
implementation it was given.  :class:`QueueWriter` feeds an interactive display loop;
``relay.client.print_writer.PrintWriter`` renders straight to a terminal.
"""

import logging
import queue
from abc import (
    ABC,
    abstractmethod,
)
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from relay.core.schema import (
    ToolCall,
    ToolResult,
)

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of stream events."""

    TEXT_DELTA = "text_delta"
    TEXT_DONE = "text_done"
    REASONING_DELTA = "reasoning_delta"
    REASONING_DONE = "reasoning_done"
    TOOL_START = "tool_start"
    TOOL_RESULT = "tool_result"
    AGENT_START = "agent_start"
    AGENT_END = "agent_end"
    MEMORY = "memory"
    ERROR = "error"
    DONE = "done"


class StreamEvent(BaseModel):
    """One event; only the fields relevant to :attr:`type` are set."""

    type: EventType
    delta: str = ""
    content: str = ""
    duration: float = 0.0  # seconds
    call: Optional[ToolCall] = None
    result: Optional[ToolResult] = None
    handle: str = ""
    prompt: str = ""
    error: Optional[str] = None
    memory_event: str = ""
    memory_count: int = 0
    response: str = ""


class StreamWriter(ABC):
    """Sink for everything a turn produces, one method per event kind."""

    @abstractmethod
    def write_text(self, delta: str) -> None:
        """A chunk of assistant text."""

    @abstractmethod
    def write_text_done(self, content: str) -> None:
        """The assistant text of one model step is complete."""

    @abstractmethod
    def write_reasoning(self, delta: str) -> None:
        """A chunk of model reasoning."""

    @abstractmethod
    def write_reasoning_done(self, content: str, duration: float) -> None:
        """Reasoning finished after *duration* seconds."""

    @abstractmethod
    def write_tool_start(self, call: ToolCall) -> None:
        """A tool call is about to run."""

    @abstractmethod
    def write_tool_result(self, result: ToolResult) -> None:
        """A tool call finished."""

    @abstractmethod
    def write_agent_start(self, handle: str, prompt: str) -> None:
        """A delegated sub-agent started."""

    @abstractmethod
    def write_agent_end(self, handle: str, duration: float, error: Optional[Exception]) -> None:
        """A delegated sub-agent finished, possibly with *error*."""

    @abstractmethod
    def write_memory_event(self, event: str, count: int) -> None:
        """A memory was created, skipped, superseded or failed."""

    @abstractmethod
    def write_error(self, error: Exception) -> None:
        """The turn failed."""

    @abstractmethod
    def write_done(self, response: str) -> None:
        """The turn completed with *response*."""


class NullWriter(StreamWriter):
    """Discards every event (silent mode, tests and background work)."""

    def write_text(self, delta: str) -> None:
        pass

    def write_text_done(self, content: str) -> None:
        pass

    def write_reasoning(self, delta: str) -> None:
        pass

    def write_reasoning_done(self, content: str, duration: float) -> None:
        pass

    def write_tool_start(self, call: ToolCall) -> None:
        pass

    def write_tool_result(self, result: ToolResult) -> None:
        pass

    def write_agent_start(self, handle: str, prompt: str) -> None:
        pass

    def write_agent_end(self, handle: str, duration: float, error: Optional[Exception]) -> None:
        pass

    def write_memory_event(self, event: str, count: int) -> None:
        pass

    def write_error(self, error: Exception) -> None:
        pass

    def write_done(self, response: str) -> None:
        pass


class QueueWriter(StreamWriter):
    """Puts a :class:`StreamEvent` on a queue for every call; a display loop drains it."""

    def __init__(self, events: Optional["queue.Queue[StreamEvent]"] = None):
        self.events: "queue.Queue[StreamEvent]" = events if events is not None else queue.Queue()

    def _put(self, event: StreamEvent) -> None:
        logger.debug("Stream event: %s", event.type.value)
        self.events.put(event)

    def write_text(self, delta: str) -> None:
        self._put(StreamEvent(type=EventType.TEXT_DELTA, delta=delta))

    def write_text_done(self, content: str) -> None:
        self._put(StreamEvent(type=EventType.TEXT_DONE, content=content))

    def write_reasoning(self, delta: str) -> None:
        self._put(StreamEvent(type=EventType.REASONING_DELTA, delta=delta))

    def write_reasoning_done(self, content: str, duration: float) -> None:
        self._put(StreamEvent(type=EventType.REASONING_DONE, content=content, duration=duration))

    def write_tool_start(self, call: ToolCall) -> None:
        self._put(StreamEvent(type=EventType.TOOL_START, call=call))

    def write_tool_result(self, result: ToolResult) -> None:
        self._put(StreamEvent(type=EventType.TOOL_RESULT, result=result))

    def write_agent_start(self, handle: str, prompt: str) -> None:
        self._put(StreamEvent(type=EventType.AGENT_START, handle=handle, prompt=prompt))

    def write_agent_end(self, handle: str, duration: float, error: Optional[Exception]) -> None:
        self._put(
            StreamEvent(
                type=EventType.AGENT_END,
                handle=handle,
                duration=duration,
                error=str(error) if error is not None else None,
            )
        )

    def write_memory_event(self, event: str, count: int) -> None:
        self._put(StreamEvent(type=EventType.MEMORY, memory_event=event, memory_count=count))

    def write_error(self, error: Exception) -> None:
        self._put(StreamEvent(type=EventType.ERROR, error=str(error)))

    def write_done(self, response: str) -> None:
        self._put(StreamEvent(type=EventType.DONE, response=response))


def replay(event: StreamEvent, writer: StreamWriter) -> None:
    """Call the *writer* method that produced *event*; errors come back as RuntimeError."""
    if event.type == EventType.TEXT_DELTA:
        writer.write_text(event.delta)
    elif event.type == EventType.TEXT_DONE:
        writer.write_text_done(event.content)
    elif event.type == EventType.REASONING_DELTA:
        writer.write_reasoning(event.delta)
    elif event.type == EventType.REASONING_DONE:
        writer.write_reasoning_done(event.content, event.duration)
    elif event.type == EventType.TOOL_START and event.call is not None:
        writer.write_tool_start(event.call)
    elif event.type == EventType.TOOL_RESULT and event.result is not None:
        writer.write_tool_result(event.result)
    elif event.type == EventType.AGENT_START:
        writer.write_agent_start(event.handle, event.prompt)
    elif event.type == EventType.AGENT_END:
        error = RuntimeError(event.error) if event.error is not None else None
        writer.write_agent_end(event.handle, event.duration, error)
    elif event.type == EventType.MEMORY:
        writer.write_memory_event(event.memory_event, event.memory_count)
    elif event.type == EventType.ERROR:
        writer.write_error(RuntimeError(event.error or "unknown error"))
    elif event.type == EventType.DONE:
        writer.write_done(event.response)
