from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Fire-and-forget runner for store writes that must not hold up a response.

    mode "thread" hands work to a small pool; mode "inline" runs it in the caller
    (tests, one-shot CLI use). Either way a failing job is logged and dropped.
    """

    def __init__(self, *, mode: str = "thread", workers: int = 4):
        if mode not in ("thread", "inline"):
            raise ValueError("dispatch mode must be 'thread' or 'inline'")
        self.mode = mode
        self._pool: Optional[ThreadPoolExecutor] = None
        if mode == "thread":
            self._pool = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="hit-writer")
        self._pending: List[Future[Any]] = []
        self._lock = threading.Lock()

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        if self._pool is None:
            self._run(label, fn, *args, **kwargs)
            return
        fut = self._pool.submit(self._run, label, fn, *args, **kwargs)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(fut)

    @staticmethod
    def _run(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            logger.exception("Background job failed: %s", label)

    def drain(self, timeout: Optional[float] = None) -> None:
        # Wait for whatever is queued right now; only used at shutdown and in tests.
        with self._lock:
            pending, self._pending = self._pending, []
        for fut in pending:
            fut.result(timeout=timeout)

    def shutdown(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
