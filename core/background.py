"""
core/background.py -- Fire-and-forget task dispatch.

Used for work that must never block or fail the request that triggered it:
sending password-reset and verification emails, and issuing the first
verification token after registration.

submit() schedules the callable on a small thread pool and returns
immediately. A task's exception is logged with its traceback and then
dropped -- it never propagates to the caller and never takes down a worker.
drain() blocks until every task submitted so far (including tasks submitted
by other tasks) has finished; tests and shutdown use it.

Layer rule: core/ is the kernel. No imports from api/, auth/, cache/, notify/.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

logger = logging.getLogger("idcore.background")


class BackgroundDispatcher:
    def __init__(self, max_workers: int = 4, name: str = "idcore-bg") -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Schedule fn(*args, **kwargs) and return without waiting for it."""
        future = self._executor.submit(fn, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future) -> None:
        # Log before leaving _pending so drain() returns only after the record is written.
        try:
            if not future.cancelled():
                exc = future.exception()
                if exc is not None:
                    logger.error("Background task failed", exc_info=(type(exc), exc, exc.__traceback__))
        finally:
            with self._lock:
                self._pending.discard(future)

    def drain(self, timeout: float | None = None) -> None:
        """Wait until no submitted task is still pending."""
        while True:
            with self._lock:
                pending = list(self._pending)
            if not pending:
                return
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                logger.warning("Background drain timed out with %d task(s) still running", len(not_done))
                return

    def shutdown(self) -> None:
        self.drain()
        self._executor.shutdown(wait=True)
