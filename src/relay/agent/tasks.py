"""Supervised fire-and-forget work (session titles, memory formation)."""

import logging
import threading
import time
from concurrent.futures import (
    Future,
    wait,
)
from typing import (
    Any,
    Callable,
    Set,
)

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """
    Runs background callables on daemon threads.

    Failures are logged at debug level and never reach the caller.  :meth:`drain` waits for
    outstanding work up to a timeout; whatever is still running after that is abandoned and
    does not keep the interpreter alive at exit.
    """

    def __init__(self, name: str = "relay-bg"):
        self.name = name
        self._lock = threading.Lock()
        self._pending: Set[Future] = set()
        self._closed = False

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Run ``fn(*args, **kwargs)`` in the background.  After :meth:`shutdown` nothing runs."""
        future: Future = Future()
        with self._lock:
            if self._closed:
                logger.debug("Supervisor closed; dropping background task '%s'", label)
                future.set_result(None)
                return future
            self._pending.add(future)
        future.add_done_callback(self._discard)

        def _guarded() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = fn(*args, **kwargs)
            except Exception:  # pylint: disable=broad-except
                logger.debug("Background task '%s' failed", label, exc_info=True)
                result = None
            future.set_result(result)

        threading.Thread(target=_guarded, name=f"{self.name}-{label}", daemon=True).start()
        return future

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def pending(self) -> int:
        """Number of tasks not finished yet."""
        with self._lock:
            return len(self._pending)

    def drain(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for outstanding tasks.  Returns True if all finished."""
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                pending = set(self._pending)
            if not pending:
                return True
            left = deadline - time.monotonic()
            if left <= 0:
                logger.debug("Gave up waiting for %d background task(s)", len(pending))
                return False
            wait(pending, timeout=left)

    def shutdown(self) -> None:
        """Stop accepting work; running tasks finish on their own or die with the process."""
        with self._lock:
            self._closed = True
