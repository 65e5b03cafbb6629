"""
Cancellable execution scopes.

A :class:`Scope` carries an optional deadline, a cancellation flag and a few call-scoped values
(the persisted session id and the session services) down through a turn.  Every blocking step of
a turn (model stream, sandboxed process, external tool, sub-agent) runs under a child scope, so
cancelling the root stops all of them and a child's deadline never outlives its parent's.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import (
    Any,
    Dict,
    Optional,
)

SESSION_ID_KEY = "session_id"
SERVICES_KEY = "services"

_POLL_INTERVAL = 0.05


class ScopeError(str, Enum):
    """Why a scope is done."""

    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline exceeded"


class ScopeDoneError(RuntimeError):
    """Raised by :meth:`Scope.check` once a scope is cancelled or past its deadline."""

    def __init__(self, reason: ScopeError):
        super().__init__(reason.value)
        self.reason = reason

    @property
    def timed_out(self) -> bool:
        """True when the deadline expired (as opposed to an explicit cancel)."""
        return self.reason == ScopeError.DEADLINE_EXCEEDED


class Scope:
    """A node in a tree of cancellable scopes."""

    def __init__(
        self,
        parent: Optional["Scope"] = None,
        timeout: Optional[float] = None,
        values: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._cancelled = threading.Event()
        self._values: Dict[str, Any] = dict(values or {})

    @classmethod
    def background(cls) -> "Scope":
        """Root scope with no deadline."""
        return cls()

    # ------------------------------------------------------------------ #
    # Derivation
    # ------------------------------------------------------------------ #
    def with_timeout(self, seconds: float) -> "Scope":
        """Child scope that expires after *seconds* (or earlier, with its parent)."""
        return Scope(parent=self, timeout=seconds)

    def with_values(self, **values: Any) -> "Scope":
        """Child scope carrying extra call-scoped values."""
        return Scope(parent=self, values=values)

    def with_session(self, session_id: Optional[str], services: Any) -> "Scope":
        """Child scope carrying the persisted session id and session services for tools."""
        return self.with_values(**{SESSION_ID_KEY: session_id, SERVICES_KEY: services})

    # ------------------------------------------------------------------ #
    # Values
    # ------------------------------------------------------------------ #
    def get(self, key: str, default: Any = None) -> Any:
        """Look *key* up in this scope, then its ancestors."""
        if key in self._values:
            return self._values[key]
        if self._parent is not None:
            return self._parent.get(key, default)
        return default

    @property
    def session_id(self) -> Optional[str]:
        """Persisted session id for tools, if any."""
        return self.get(SESSION_ID_KEY) or None

    @property
    def services(self) -> Any:
        """Session services for tools, if any."""
        return self.get(SERVICES_KEY)

    # ------------------------------------------------------------------ #
    # Cancellation & deadlines
    # ------------------------------------------------------------------ #
    def cancel(self) -> None:
        """Cancel this scope and, implicitly, every scope derived from it."""
        self._cancelled.set()

    @property
    def deadline(self) -> Optional[float]:
        """Effective monotonic deadline: the earliest in the chain."""
        parent_deadline = self._parent.deadline if self._parent is not None else None
        candidates = [d for d in (self._deadline, parent_deadline) if d is not None]
        return min(candidates) if candidates else None

    def remaining(self) -> Optional[float]:
        """Seconds until the effective deadline (never negative), or None."""
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def cancelled(self) -> bool:
        """True if this scope or an ancestor was explicitly cancelled."""
        if self._cancelled.is_set():
            return True
        return self._parent.cancelled() if self._parent is not None else False

    def deadline_exceeded(self) -> bool:
        """True if the effective deadline has passed."""
        deadline = self.deadline
        return deadline is not None and time.monotonic() >= deadline

    def error(self) -> Optional[ScopeError]:
        """Why the scope is done, or None while it is still live."""
        if self.cancelled():
            return ScopeError.CANCELLED
        if self.deadline_exceeded():
            return ScopeError.DEADLINE_EXCEEDED
        return None

    def done(self) -> bool:
        """True once cancelled or past the deadline."""
        return self.error() is not None

    def check(self) -> None:
        """Raise :class:`ScopeDoneError` if the scope is done."""
        reason = self.error()
        if reason is not None:
            raise ScopeDoneError(reason)

    def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*, waking early when the scope is done.  Returns ``done()``."""
        end = time.monotonic() + seconds
        while not self.done():
            left = end - time.monotonic()
            if left <= 0:
                break
            self._cancelled.wait(min(left, _POLL_INTERVAL))
        return self.done()
