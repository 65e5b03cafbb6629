"""
Base class for tools that keep their own state in a local SQLite database.

Each stateful tool owns ``<DATA_DIR>/tools/<name>/`` and a database file ``<name>.db`` inside it.
The connection is opened lazily on first use, switched to WAL journaling, and shared by every
thread that runs the tool.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import (
    Iterator,
    Optional,
)

from relay.config import settings
from relay.core.scope import Scope
from relay.tools import (
    AgentTool,
    ToolExecutionError,
)

logger = logging.getLogger(__name__)


def tool_data_dir(name: str) -> str:
    """Data directory of the tool called *name*."""
    return os.path.join(os.path.expanduser(settings.DATA_DIR), "tools", name)


class StatefulTool(AgentTool):
    """An :class:`AgentTool` with a private SQLite database."""

    schema: str = ""
    """Migration run by :meth:`init`; must be idempotent (``CREATE ... IF NOT EXISTS``)."""

    def __init__(self) -> None:
        self._db: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Paths
    # ------------------------------------------------------------------ #
    def storage(self) -> str:
        """The tool's data directory."""
        return tool_data_dir(self.name)

    def database_path(self) -> str:
        """The tool's SQLite database file."""
        return os.path.join(self.storage(), f"{self.name}.db")

    def ensure_storage(self) -> None:
        os.makedirs(self.storage(), exist_ok=True)

    # ------------------------------------------------------------------ #
    # Database
    # ------------------------------------------------------------------ #
    def open_database(self) -> sqlite3.Connection:
        """Open (or reopen) the database with WAL journaling enabled."""
        try:
            self.ensure_storage()
        except OSError as exc:
            raise ToolExecutionError(f"create storage dir: {exc}") from exc
        try:
            conn = sqlite3.connect(self.database_path(), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as exc:
            raise ToolExecutionError(f"open database: {exc}") from exc
        with self._lock:
            if self._db is not None:
                self._db.close()
            self._db = conn
        return conn

    def db(self) -> Optional[sqlite3.Connection]:
        """The open connection, or None before :meth:`init`."""
        return self._db

    def run_migration(self, schema: str) -> None:
        if self._db is None:
            raise ToolExecutionError("database not opened")
        try:
            with self._lock:
                self._db.executescript(schema)
        except sqlite3.Error as exc:
            raise ToolExecutionError(f"run migration: {exc}") from exc

    def init(self, scope: Optional[Scope] = None) -> None:  # pylint: disable=unused-argument
        """Open the database and apply :attr:`schema`."""
        self.open_database()
        if self.schema:
            self.run_migration(self.schema)
        logger.debug("Initialized %s storage at %s", self.name, self.database_path())

    def ensure_initialized(self, scope: Optional[Scope] = None) -> None:
        with self._lock:
            if self._db is None:
                self.init(scope)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize access to the shared connection and commit on success."""
        if self._db is None:
            raise ToolExecutionError("database not initialized")
        with self._lock:
            try:
                with self._db:
                    yield self._db
            except sqlite3.Error as exc:
                raise ToolExecutionError(f"{self.name} storage error: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self._db is not None:
                self._db.close()
                self._db = None
