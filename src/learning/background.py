"""Fire-and-forget runner for side channels (audit, snapshots, metrics)."""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock
from typing import Callable

import structlog

logger = structlog.get_logger()


class BestEffort:
    """Runs callables whose failures are logged and never raised.

    With inline=True work runs synchronously in submit(); otherwise on a small
    thread pool. wait() blocks until everything submitted so far has finished.
    """

    def __init__(self, inline: bool = False, max_workers: int = 2):
        self.inline = inline
        self._executor = None if inline else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="kblearn-side"
        )
        self._pending: set[Future] = set()
        self._lock = Lock()

    def submit(self, label: str, fn: Callable, *args, **kwargs) -> None:
        if self._executor is None:
            self._run(label, fn, *args, **kwargs)
            return
        future = self._executor.submit(self._run, label, fn, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _run(label: str, fn: Callable, *args, **kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.warning("side_channel_failed", task=label, error=str(e))

    def wait(self, timeout: float | None = None) -> None:
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
