"""A small threaded "thinking..." spinner for the terminal."""

import itertools
import sys
import threading
from typing import (
    Dict,
    Optional,
    TextIO,
    Tuple,
)

from relay.common import (
    AnsiColors,
    colored_print,
)

FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


class Spinner:
    """Animates *message* on one line until stopped.  Safe to stop more than once."""

    def __init__(
        self,
        message: str = "thinking...",
        stream: Optional[TextIO] = None,
        interval: float = 0.08,
        indent: int = 0,
    ):
        self.message = message
        self.stream = stream or sys.stderr
        self.interval = interval
        self.prefix = "  " * indent
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        """True while the animation thread runs."""
        return self._thread is not None

    def start(self) -> None:
        """Start animating; no-op if already running."""
        with self._lock:
            if self._thread is not None:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._spin, daemon=True)
            self._thread.start()

    def _spin(self) -> None:
        for frame in itertools.cycle(FRAMES):
            if self._stop.is_set():
                break
            self.stream.write(f"\r{self.prefix}{frame} {self.message}")
            self.stream.flush()
            self._stop.wait(self.interval)

    def stop(self) -> None:
        """Stop and clear the spinner line."""
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._stop.set()
        thread.join()
        self.stream.write("\r\033[K")
        self.stream.flush()

    def stop_with_error(self, message: str) -> None:
        """Stop and leave a failure marker with *message* in place of the spinner."""
        was_active = self.active
        self.stop()
        if was_active:
            colored_print(f"{self.prefix}✗ {message}", AnsiColors.RED, file=self.stream)


class ToolProgress:
    """Progress hook for external tools: one spinner per running tool, indented by depth."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stderr
        self._spinners: Dict[Tuple[str, int], Spinner] = {}
        self._lock = threading.Lock()

    def __call__(self, tool_name: str, depth: int, finished: bool) -> None:
        if not self.stream.isatty():
            return
        key = (tool_name, depth)
        with self._lock:
            if finished:
                spinner = self._spinners.pop(key, None)
            else:
                spinner = self._spinners.setdefault(
                    key, Spinner(f"running {tool_name}...", self.stream, indent=depth)
                )
        if spinner is None:
            return
        if finished:
            spinner.stop()
        else:
            spinner.start()
