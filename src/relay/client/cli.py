"""Interactive chat loop for the Relay CLI."""

from __future__ import annotations

import logging
import queue
import threading
from typing import (
    Optional,
    TextIO,
    Tuple,
)

from relay.agent.runner import Runner
from relay.agent.sessions import SessionBusyError
from relay.agent.stream import (
    QueueWriter,
    StreamEvent,
    StreamWriter,
    replay,
)
from relay.client.print_writer import PrintWriter
from relay.common import (
    AnsiColors,
    colored_print,
)
from relay.core.schema import AgentDefinition
from relay.core.scope import Scope

logger = logging.getLogger(__name__)

EXIT_COMMANDS = {"exit", "quit"}


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------
def drain_events(events: "queue.Queue[Optional[StreamEvent]]", writer: StreamWriter) -> None:
    """Replay queued events onto *writer* until the ``None`` sentinel arrives."""
    while True:
        event = events.get()
        try:
            if event is None:
                return
            replay(event, writer)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Could not render %s event", event.type.value)
        finally:
            events.task_done()


class ChatDisplay:
    """
    Renders a whole chat session on one display thread.

    The thread outlives individual turns so that events written by background work after a
    turn has returned (memory formation) are still shown.  :meth:`close` stops it.
    """

    def __init__(self, out: Optional[TextIO] = None, spinner: Optional[bool] = None):
        self.writer = QueueWriter()
        self.printer = PrintWriter(out=out, spinner=spinner, start_spinner=False)
        self._thread = threading.Thread(
            target=drain_events, args=(self.writer.events, self.printer), daemon=True
        )
        self._thread.start()

    def begin_turn(self) -> None:
        self.printer.begin_turn()

    def flush(self) -> None:
        """Block until every event queued so far has been rendered."""
        self.writer.events.join()

    def close(self) -> None:
        if self._thread.is_alive():
            self.writer.events.put(None)
            self._thread.join()

    def __enter__(self) -> "ChatDisplay":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def chat_turn(
    runner: Runner,
    agent: AgentDefinition,
    text: str,
    display: ChatDisplay,
    scope: Optional[Scope] = None,
) -> Optional[str]:
    """
    Run one chat turn, rendering its events through *display*.

    Returns the response, or ``None`` if the turn failed (the error has already been shown).
    """
    scope = scope or Scope.background()
    writer = display.writer
    display.begin_turn()
    try:
        return runner.chat(scope, agent, text, writer)
    except SessionBusyError as exc:
        writer.write_error(exc)
        return None
    except KeyboardInterrupt:
        scope.cancel()
        writer.write_error(RuntimeError("interrupted"))
        return None
    except Exception as exc:  # pylint: disable=broad-except
        # Already reported through the writer by the runner
        logger.debug("Chat turn failed: %s", exc)
        return None
    finally:
        display.flush()


# ---------------------------------------------------------------------------
# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------
def run_cli(runner: Runner, agent: AgentDefinition) -> None:
    """Chat with *agent* until the user types exit/quit or closes stdin."""
    colored_print(
        f"\n🔮 Relay chat with {agent.handle} - type 'exit' or 'quit' (or Ctrl+C) to exit",
        AnsiColors.GREEN,
    )
    display = ChatDisplay()
    try:
        while True:
            colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
            user_msg, ok = get_user_message()
            if not ok:
                break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
            if not user_msg:
                continue
            if user_msg.lower() in EXIT_COMMANDS:
                break

            chat_turn(runner, agent, user_msg, display)
    finally:
        # Background memory events still render before the display stops
        runner.wait_for_background()
        display.close()
