"""Renders stream events straight to a terminal."""

import sys
from typing import (
    Optional,
    TextIO,
)

from relay.agent.stream import StreamWriter
from relay.client.spinner import Spinner
from relay.common import (
    AnsiColors,
    colored_print,
    format_elapsed,
    truncate_with_ellipsis,
)
from relay.core.schema import (
    ToolCall,
    ToolResult,
)

MAX_OUTPUT_LINES = 8


class PrintWriter(StreamWriter):
    """
    Prints a turn as it happens.

    Sub-agent output is indented one level per delegation.  The spinner runs from construction
    (or from :meth:`begin_turn` when *start_spinner* is off) until the first event that shows
    something.
    """

    def __init__(
        self,
        out: Optional[TextIO] = None,
        spinner: Optional[bool] = None,
        start_spinner: bool = True,
    ):
        self.out = out or sys.stdout
        if spinner is None:
            spinner = sys.stderr.isatty()
        self.spinner: Optional[Spinner] = Spinner() if spinner else None
        if start_spinner:
            self.begin_turn()
        self.level = 0
        self.streamed = ""
        self._in_reasoning = False
        self._line_start = True

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @property
    def indent(self) -> str:
        return "  " * self.level

    def begin_turn(self) -> None:
        """Show the spinner until the next turn starts printing."""
        if self.spinner is not None:
            self.spinner.start()

    def _quiet_spinner(self) -> None:
        if self.spinner is not None:
            self.spinner.stop()

    def _line(self, text: str, color: AnsiColors) -> None:
        if not self._line_start:
            self.out.write("\n")
        colored_print(f"{self.indent}{text}", color, file=self.out)
        self._line_start = True

    def _stream(self, text: str) -> None:
        for piece in text.splitlines(keepends=True):
            if self._line_start and self.level:
                self.out.write(self.indent)
            self.out.write(piece)
            self._line_start = piece.endswith("\n")
        self.out.flush()

    # ------------------------------------------------------------------ #
    # StreamWriter
    # ------------------------------------------------------------------ #
    def write_text(self, delta: str) -> None:
        self._quiet_spinner()
        if self.level == 0:
            self.streamed += delta
        self._stream(delta)

    def write_text_done(self, content: str) -> None:
        if not self._line_start:
            self._stream("\n")

    def write_reasoning(self, delta: str) -> None:
        self._quiet_spinner()
        if not self._in_reasoning:
            self._in_reasoning = True
            self._line("thinking:", AnsiColors.GREY)
        self._stream(delta)

    def write_reasoning_done(self, content: str, duration: float) -> None:
        self._in_reasoning = False
        self._line(f"(thought for {format_elapsed(duration)})", AnsiColors.GREY)

    def write_tool_start(self, call: ToolCall) -> None:
        self._quiet_spinner()
        label = call.description or call.command or call.name
        detail = f" $ {call.command}" if call.command and call.description else ""
        self._line(f"▶ {call.name}: {label}{detail}", AnsiColors.BLUE)

    def write_tool_result(self, result: ToolResult) -> None:
        elapsed = format_elapsed(result.duration)
        if result.error:
            self._line(f"✗ {result.name} ({elapsed}): {result.error}", AnsiColors.RED)
            return
        self._line(f"✓ {result.name} ({elapsed})", AnsiColors.GREEN)
        lines = result.output.strip().splitlines()
        for line in lines[:MAX_OUTPUT_LINES]:
            self._line(f"  {line}", AnsiColors.GREY)
        if len(lines) > MAX_OUTPUT_LINES:
            self._line(f"  … {len(lines) - MAX_OUTPUT_LINES} more lines", AnsiColors.GREY)

    def write_agent_start(self, handle: str, prompt: str) -> None:
        self._quiet_spinner()
        self._line(f"→ {handle}: {truncate_with_ellipsis(prompt, 80)}", AnsiColors.MAGENTA)
        self.level += 1

    def write_agent_end(self, handle: str, duration: float, error: Optional[Exception]) -> None:
        self.level = max(0, self.level - 1)
        elapsed = format_elapsed(duration)
        if error is not None:
            self._line(f"← {handle} failed ({elapsed}): {error}", AnsiColors.RED)
        else:
            self._line(f"← {handle} ({elapsed})", AnsiColors.MAGENTA)

    def write_memory_event(self, event: str, count: int) -> None:
        noun = "memory" if count == 1 else "memories"
        self._line(f"[{count} {noun} {event}]", AnsiColors.GREY)

    def write_error(self, error: Exception) -> None:
        if self.spinner is not None:
            self.spinner.stop_with_error("Failed")
        self._line(f"Error: {error}", AnsiColors.RED)

    def write_done(self, response: str) -> None:
        self._quiet_spinner()
        if self.level:
            return
        # Structured output is produced after streaming, so it has not been shown yet
        if response.strip() and response.strip() != self.streamed.strip():
            colored_print(response, AnsiColors.YELLOW, file=self.out)
        self.streamed = ""
