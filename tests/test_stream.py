"""Tests for stream writers: queue, replay and terminal rendering."""

import io
import time

from fakes import (
    drain,
    types_of,
)

from relay.agent.stream import (
    EventType,
    NullWriter,
    QueueWriter,
    replay,
)
from relay.client.print_writer import PrintWriter
from relay.client.spinner import (
    Spinner,
    ToolProgress,
)
from relay.core.schema import (
    ToolCall,
    ToolResult,
)


def _printer() -> tuple:
    out = io.StringIO()
    return PrintWriter(out=out, spinner=False), out


def test_queue_writer_records_events_in_order() -> None:
    """Each writer call becomes one event carrying its payload."""

    writer = QueueWriter()
    writer.write_reasoning("hmm")
    writer.write_reasoning_done("hmm", 1.5)
    writer.write_text("Hel")
    writer.write_text("lo")
    writer.write_text_done("Hello")
    writer.write_tool_start(ToolCall(id="1", name="bash", command="ls"))
    writer.write_tool_result(ToolResult(id="1", name="bash", output="a\n"))
    writer.write_agent_end("@relay", 2.0, RuntimeError("boom"))
    writer.write_memory_event("created", 1)
    writer.write_done("Hello")

    events = drain(writer)
    assert types_of(events) == [
        EventType.REASONING_DELTA,
        EventType.REASONING_DONE,
        EventType.TEXT_DELTA,
        EventType.TEXT_DELTA,
        EventType.TEXT_DONE,
        EventType.TOOL_START,
        EventType.TOOL_RESULT,
        EventType.AGENT_END,
        EventType.MEMORY,
        EventType.DONE,
    ]
    assert events[1].duration == 1.5
    assert events[5].call.command == "ls"
    assert events[7].error == "boom"
    assert events[8].memory_event == "created"
    assert events[9].response == "Hello"


def test_replay_reproduces_events() -> None:
    """Replaying queued events onto another writer yields the same stream."""

    source = QueueWriter()
    source.write_agent_start("@relay", "do it")
    source.write_text("x")
    source.write_agent_end("@relay", 0.5, None)
    source.write_error(ValueError("bad"))

    target = QueueWriter()
    for event in drain(source):
        replay(event, target)

    events = drain(target)
    assert types_of(events) == [
        EventType.AGENT_START,
        EventType.TEXT_DELTA,
        EventType.AGENT_END,
        EventType.ERROR,
    ]
    assert events[0].prompt == "do it"
    assert events[2].error is None
    assert events[3].error == "bad"


def test_null_writer_accepts_everything() -> None:
    """The null writer is a valid sink for every event."""

    writer = NullWriter()
    writer.write_text("x")
    writer.write_agent_end("@relay", 0.0, None)
    writer.write_done("x")


def test_print_writer_streams_text_and_tools() -> None:
    """Text streams verbatim; tools get a status line and a preview of their output."""

    writer, out = _printer()
    writer.write_text("Hello ")
    writer.write_text("world")
    writer.write_text_done("Hello world")
    writer.write_tool_start(ToolCall(id="1", name="bash", command="ls", description="Listing"))
    writer.write_tool_result(ToolResult(id="1", name="bash", output="a\nb\n", duration=0.25))
    writer.write_tool_result(ToolResult(id="2", name="bash", error="exit status 1", duration=2))
    writer.write_done("Hello world")

    text = out.getvalue()
    assert text.startswith("Hello world\n")
    assert "▶ bash: Listing $ ls" in text
    assert "✓ bash (250ms)" in text
    assert "  a\n" in text
    assert "✗ bash (2s): exit status 1" in text
    # the streamed response is not printed twice
    assert text.count("Hello world") == 1


def test_print_writer_truncates_long_output() -> None:
    """Only the first lines of tool output are shown."""

    writer, out = _printer()
    output = "\n".join(f"line {i}" for i in range(20))
    writer.write_tool_result(ToolResult(id="1", name="bash", output=output))
    text = out.getvalue()
    assert "line 7" in text
    assert "line 8" not in text
    assert "12 more lines" in text


def test_print_writer_indents_sub_agents() -> None:
    """Sub-agent output is indented and its completion does not end the turn."""

    writer, out = _printer()
    writer.write_agent_start("@relay", "look around")
    writer.write_tool_start(ToolCall(id="1", name="bash", command="ls"))
    writer.write_text("nested\nanswer")
    writer.write_text_done("nested\nanswer")
    writer.write_done("nested\nanswer")
    writer.write_agent_end("@relay", 1.0, None)
    writer.write_text("top")
    writer.write_text_done("top")
    writer.write_done("top")

    lines = out.getvalue().splitlines()
    assert lines[0] == "→ @relay: look around"
    assert lines[1] == "  ▶ bash: ls"
    assert lines[2] == "  nested"
    assert lines[3] == "  answer"
    assert lines[4] == "← @relay (1s)"
    assert lines[5] == "top"
    assert len(lines) == 6


def test_print_writer_prints_structured_response() -> None:
    """A response that differs from the streamed text (structured output) is printed."""

    writer, out = _printer()
    writer.write_text("The answer is 42")
    writer.write_text_done("The answer is 42")
    writer.write_done('{\n  "answer": 42\n}')
    assert '"answer": 42' in out.getvalue()


def test_print_writer_errors_and_memory() -> None:
    """Errors, failed sub-agents and memory events are all shown."""

    writer, out = _printer()
    writer.write_agent_start("@relay", "x")
    writer.write_agent_end("@relay", 0.1, RuntimeError("no model"))
    writer.write_memory_event("created", 1)
    writer.write_error(RuntimeError("model is required"))
    text = out.getvalue()
    assert "← @relay failed (100ms): no model" in text
    assert "[1 memory created]" in text
    assert "Error: model is required" in text


def test_spinner_start_stop() -> None:
    """The spinner animates on its stream and clears itself when stopped."""

    stream = io.StringIO()
    spinner = Spinner("working", stream=stream, interval=0.01)
    spinner.start()
    assert spinner.active
    time.sleep(0.05)
    spinner.stop()
    spinner.stop()
    assert not spinner.active
    assert "working" in stream.getvalue()
    assert stream.getvalue().endswith("\r\033[K")


def test_spinner_stop_with_error_leaves_marker() -> None:
    """Stopping with an error leaves a failure line behind."""

    stream = io.StringIO()
    spinner = Spinner(stream=stream, interval=0.01)
    spinner.start()
    spinner.stop_with_error("Failed")
    assert stream.getvalue().endswith("✗ Failed\n")


class TtyStream(io.StringIO):
    def isatty(self) -> bool:
        return True


def test_tool_progress_spins_per_tool() -> None:
    """Tool progress shows an indented spinner on a terminal and nothing elsewhere."""

    stream = TtyStream()
    progress = ToolProgress(stream)
    progress("fetch", 1, False)
    time.sleep(0.05)
    progress("fetch", 1, True)
    progress("fetch", 1, True)
    assert "  ⠋ running fetch..." in stream.getvalue()
    assert stream.getvalue().endswith("\r\033[K")

    plain = io.StringIO()
    ToolProgress(plain)("fetch", 0, False)
    assert plain.getvalue() == ""
