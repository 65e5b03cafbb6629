"""Process-local session persistence for the CLI (when no database is configured) and tests."""

import logging
import threading
import uuid
from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

from relay.core.plan import Plan
from relay.core.schema import Role
from relay.services import (
    SessionRecord,
    StoredMessage,
)

logger = logging.getLogger(__name__)


class InMemorySessionService:
    """Sessions kept in a dict, guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionRecord] = {}

    def create(self, agent_handle: str, title: str) -> SessionRecord:
        """Create a new session for *agent_handle*."""
        record = SessionRecord(id=str(uuid.uuid4()), agent_handle=agent_handle, title=title)
        with self._lock:
            self._sessions[record.id] = record
        logger.debug("Created session %s for %s", record.id, agent_handle)
        return record

    def get(self, session_id: str) -> SessionRecord:
        """Return the session or raise ``KeyError``."""
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError as exc:
                raise KeyError(f"session not found: {session_id}") from exc

    def update_title(self, session_id: str, title: str) -> SessionRecord:
        """Replace the session title."""
        with self._lock:
            record = self._sessions[session_id].model_copy(update={"title": title})
            self._sessions[session_id] = record
        return record

    def update_plan(self, session_id: str, plan: Plan) -> SessionRecord:
        """Replace the session plan wholesale."""
        with self._lock:
            record = self._sessions[session_id].model_copy(update={"plan": plan})
            self._sessions[session_id] = record
        return record

    def all(self) -> List[SessionRecord]:
        """All sessions, oldest first."""
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.created_at)


class InMemoryMessageService:
    """Messages kept per session in insertion order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: Dict[str, List[StoredMessage]] = {}

    def create(
        self, session_id: str, role: Role, parts: Sequence[Any], model: str = ""
    ) -> StoredMessage:
        """Append a message to *session_id*."""
        message = StoredMessage(
            id=str(uuid.uuid4()),
            session_id=session_id,
            role=role,
            parts=list(parts),
            model=model,
        )
        with self._lock:
            self._messages.setdefault(session_id, []).append(message)
        return message

    def list(self, session_id: str) -> List[StoredMessage]:
        """Messages of *session_id* in append order."""
        with self._lock:
            return list(self._messages.get(session_id, []))


class InMemorySessionServices:
    """Bundle of in-memory session and message services."""

    def __init__(self) -> None:
        self.sessions = InMemorySessionService()
        self.messages = InMemoryMessageService()
