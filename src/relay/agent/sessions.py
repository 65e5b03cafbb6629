"""In-memory chat sessions, one per agent handle per runner."""

import logging
import threading
from contextlib import contextmanager
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Dict,
    Iterator,
    List,
    Optional,
    Set,
)

from relay.core.schema import (
    AgentDefinition,
    Message,
)

logger = logging.getLogger(__name__)


class SessionBusyError(RuntimeError):
    """Raised when a turn starts on a handle whose previous turn is still running."""


@dataclass
class ChatSession:
    """Conversation state for one agent handle."""

    agent: AgentDefinition
    messages: List[Message] = field(default_factory=list)
    session_id: Optional[str] = None
    title_generated: bool = False


class SessionStore:
    """Handle -> :class:`ChatSession` map that allows one running turn per handle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, ChatSession] = {}
        self._busy: Set[str] = set()

    def get(self, handle: str) -> Optional[ChatSession]:
        """The session for *handle*, if one was started."""
        with self._lock:
            return self._sessions.get(handle)

    def put(self, session: ChatSession) -> ChatSession:
        """Install *session* under its agent handle, replacing any previous one."""
        with self._lock:
            self._sessions[session.agent.handle] = session
        return session

    @contextmanager
    def turn(self, handle: str) -> Iterator[None]:
        """
        Mark *handle* busy for the duration of a turn.

        Raises
        ------
        SessionBusyError
            If another turn on *handle* is in progress.
        """
        with self._lock:
            if handle in self._busy:
                raise SessionBusyError(f"a turn is already running for {handle}")
            self._busy.add(handle)
        try:
            yield
        finally:
            with self._lock:
                self._busy.discard(handle)
