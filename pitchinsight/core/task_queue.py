"""
Task dispatch for pipeline workers.

Each worker invocation is a short-lived task for one video. There is no
pool: ThreadDispatcher starts one daemon thread per task so different videos
run in parallel, and InlineDispatcher runs the task in the caller.
"""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class InlineDispatcher:
    """Runs tasks synchronously. Used by tests and one-shot CLI commands."""

    def submit(self, name: str, fn: Callable, *args, **kwargs):
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.error("Task %s failed: %s", name, e, exc_info=True)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return True


class ThreadDispatcher:
    """Fire-and-forget: one daemon thread per submitted task."""

    def __init__(self):
        self._lock = threading.Lock()
        self._threads: set[threading.Thread] = set()

    def submit(self, name: str, fn: Callable, *args, **kwargs):
        def run():
            try:
                fn(*args, **kwargs)
            except Exception as e:
                logger.error("Task %s failed: %s", name, e, exc_info=True)
            finally:
                with self._lock:
                    self._threads.discard(threading.current_thread())

        thread = threading.Thread(target=run, name=name, daemon=True)
        with self._lock:
            self._threads.add(thread)
        thread.start()

    def active_count(self) -> int:
        with self._lock:
            return len(self._threads)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is running. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = list(self._threads)
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                thread.join(remaining)
