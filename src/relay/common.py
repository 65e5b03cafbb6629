"""Common utility functions for the project."""

import sys
from enum import Enum
from typing import Any


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    GREY = "\033[90m"
    MAGENTA = "\033[95m"

    def __str__(self) -> str:
        return self.value


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    stream = kwargs.get("file", sys.stdout)
    if hasattr(stream, "isatty") and stream.isatty():
        print(f"{color}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end
    else:
        print(text, *args, **kwargs)


def format_elapsed(seconds: float) -> str:
    """Format a duration for display (``850ms``, ``12s``, ``2.5m``)."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.0f}s"
    return f"{seconds / 60:.1f}m"


def collapse_whitespace(text: str) -> str:
    """Trim *text* and collapse runs of whitespace (including newlines) to single spaces."""
    return " ".join(text.split())


def truncate_with_ellipsis(text: str, max_len: int) -> str:
    """Collapse whitespace in *text* and cut it to *max_len* characters, ending with an ellipsis."""
    text = collapse_whitespace(text)
    if len(text) <= max_len:
        return text
    return text[: max_len - 1] + "…"
