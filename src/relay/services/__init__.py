"""
Collaborator contracts consumed by the runner and its tools.

Persistence, memory and memory formation live outside this package.  The runner only talks to them
through the protocols below; :mod:`relay.services.inmemory` ships a process-local persistence
implementation for the CLI and tests.
"""

from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
)

from pydantic import (
    BaseModel,
    Field,
)

from relay.core.plan import Plan
from relay.core.schema import (
    MessagePart,
    Role,
)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
class SessionRecord(BaseModel):
    """A persisted chat session."""

    id: str
    agent_handle: str
    title: str = ""
    plan: Plan = Field(default_factory=Plan)
    created_at: datetime = Field(default_factory=datetime.now)


class StoredMessage(BaseModel):
    """A persisted message."""

    id: str
    session_id: str
    role: Role
    parts: List[MessagePart] = Field(default_factory=list)
    model: str = ""
    created_at: datetime = Field(default_factory=datetime.now)


class SessionService(Protocol):
    """Session CRUD."""

    def create(self, agent_handle: str, title: str) -> SessionRecord: ...

    def get(self, session_id: str) -> SessionRecord: ...

    def update_title(self, session_id: str, title: str) -> SessionRecord: ...

    def update_plan(self, session_id: str, plan: Plan) -> SessionRecord: ...


class MessageService(Protocol):
    """Message persistence."""

    def create(
        self, session_id: str, role: Role, parts: Sequence[Any], model: str = ""
    ) -> StoredMessage: ...

    def list(self, session_id: str) -> List[StoredMessage]: ...


class SessionServices(Protocol):
    """The persistence bundle handed to the runner and, through the scope, to tools."""

    sessions: SessionService
    messages: MessageService


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------
class MemoryCategory(str, Enum):
    """Kinds of memories."""

    PREFERENCE = "preference"
    FACT = "fact"
    CORRECTION = "correction"
    PATTERN = "pattern"

    @classmethod
    def parse(cls, value: Optional[str]) -> "MemoryCategory":
        """Map a free-form category string to a category, defaulting to FACT."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.FACT


class Memory(BaseModel):
    """A stored memory."""

    id: str = ""
    content: str
    category: MemoryCategory = MemoryCategory.FACT
    agent_handle: str = ""
    source_session_id: str = ""


class MemorySearchResult(BaseModel):
    """A memory with its similarity to the query."""

    memory: Memory
    similarity: float = 0.0


class MemoryService(Protocol):
    """Long-term memory storage and semantic search."""

    def has_embedder(self) -> bool: ...

    def search(
        self,
        query: str,
        agent_handle: str = "",
        threshold: float = 0.0,
        limit: int = 10,
    ) -> List[MemorySearchResult]: ...

    def create(self, memory: Memory) -> Memory: ...

    def supersede(self, old_id: str, memory: Memory, reason: str = "") -> Memory: ...

    def list(self, agent_handle: str = "", limit: int = 10) -> List[Memory]: ...

    def forget(self, memory_id: str) -> None: ...


class MemoryQueue(Protocol):
    """Async memory-write queue."""

    def enqueue(self, content: str, category: MemoryCategory, agent_handle: str = "") -> str: ...

    def start(self) -> None: ...

    def stop(self, timeout: float) -> None: ...


# ---------------------------------------------------------------------------
# Memory formation
# ---------------------------------------------------------------------------
SUPERSEDE_THRESHOLD = 0.85
"""Similarity above which an extracted memory is checked against existing ones."""


class FormationEvent(str, Enum):
    """Outcome of one memory formation."""

    CREATED = "created"
    SKIPPED = "skipped"
    SUPERSEDED = "superseded"
    FAILED = "failed"


class MemoryExtraction(BaseModel):
    """Small-model verdict on whether a user message holds something worth remembering."""

    should_remember: bool = False
    content: str = ""
    category: str = ""
    confidence: float = 0.0
    reason: str = ""


class ExistingMemory(BaseModel):
    """A candidate duplicate handed to the small model."""

    id: str
    content: str


class DedupDecision(BaseModel):
    """Small-model decision for a new memory against similar existing ones."""

    action: str = "new"  # new, duplicate, supersede
    target_id: str = ""
    reason: str = ""


class SmallModel(Protocol):
    """Lightweight model used for memory extraction and de-duplication."""

    def extract_memory(self, user_message: str) -> MemoryExtraction: ...

    def check_duplicate(
        self, content: str, existing: Sequence[ExistingMemory]
    ) -> DedupDecision: ...


class FormationService(Protocol):
    """Receives formation outcomes and fans them out to listeners."""

    def on_formation(self, callback: Callable[[FormationEvent, str], None]) -> None: ...

    def notify_created(self, memory: Memory) -> None: ...

    def notify_skipped(self, content: str, existing_id: str) -> None: ...

    def notify_superseded(self, memory: Memory, old_id: str) -> None: ...

    def notify_failed(self, content: str, error: Exception) -> None: ...

    def wait(self, timeout: float) -> None: ...
