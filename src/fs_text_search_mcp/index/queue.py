"""Per-path serialized operation queue with a bounded worker pool.

Guarantees:
- At most one operation per path is being applied at any time.
- Operations for different paths run concurrently on the worker pool.
- A path's operations are applied in arrival order; there is no ordering
  across paths.
- Keep-last: while an operation for a path is still pending (not yet
  dispatched), a newer one for the same path replaces it.

Paths with pending work are dispatched in FIFO order of when they first
became ready. A path whose operation is in flight is parked until the
worker finishes, then re-queued if a newer operation arrived meanwhile.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import TYPE_CHECKING

from .events import IndexOperation, OperationKind

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class OperationQueue:
    """
    Coordinates producers (loader, debouncer) and the index workers.

    Usage:
        ops = OperationQueue(handler=apply_operation, workers=4)
        ops.start()
        ops.enqueue(IndexOperation.upsert("/data/a.txt"))
        ops.join(timeout=5)
        ops.close()
    """

    def __init__(
        self,
        handler: Callable[[IndexOperation], None],
        workers: int = 4,
        on_idle: Callable[[], None] | None = None,
    ):
        """
        Initialize the queue.

        Args:
            handler: Applies one operation; exceptions are logged and the
                operation counted as failed
            workers: Size of the worker pool (at least 1)
            on_idle: Optional callback run whenever the queue drains
        """
        self.handler = handler
        self.workers = max(1, workers)
        self.on_idle = on_idle

        self._cond = threading.Condition()
        self._pending: dict[str, IndexOperation] = {}
        self._ready: deque[str] = deque()
        self._in_flight: dict[str, IndexOperation] = {}
        self._threads: list[threading.Thread] = []
        self._stopping = False
        self._closed = False

        self.enqueued_count = 0
        self.replaced_count = 0
        self.processed_count = 0
        self.failed_count = 0

    def start(self) -> None:
        """Spawn the worker pool."""
        with self._cond:
            self._stopping = False
            self._closed = False
        for i in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"IndexWorker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def enqueue(self, operation: IndexOperation) -> bool:
        """
        Submit an operation, replacing any pending one for the same path.

        Returns:
            True if accepted, False if the queue is closed
        """
        with self._cond:
            if self._closed:
                logger.warning(
                    "Queue closed, dropping %s %s",
                    operation.kind.value,
                    operation.path,
                )
                return False

            path = operation.path
            existing = self._pending.get(path)
            self._pending[path] = operation
            self.enqueued_count += 1

            if existing is not None:
                self.replaced_count += 1
                logger.debug(
                    "Replaced pending %s with %s for %s",
                    existing.kind.value,
                    operation.kind.value,
                    path,
                )
            elif path not in self._in_flight:
                self._ready.append(path)

            self._cond.notify_all()
        return True

    def pending_kind(self, path: str) -> OperationKind | None:
        """Latest queued or in-flight intent for path, if any."""
        with self._cond:
            operation = self._pending.get(path) or self._in_flight.get(path)
            return operation.kind if operation else None

    def __len__(self) -> int:
        with self._cond:
            return len(self._pending) + len(self._in_flight)

    @property
    def is_idle(self) -> bool:
        with self._cond:
            return not self._pending and not self._in_flight

    def join(self, timeout: float | None = None) -> bool:
        """
        Wait until every submitted operation has been applied.

        Returns:
            True if the queue drained, False on timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._pending or self._in_flight:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                self._cond.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> int:
        """
        Stop accepting work, drain up to timeout, then stop the workers.

        Returns:
            Number of operations abandoned because the drain timed out
        """
        with self._cond:
            self._closed = True

        drained = self.join(timeout)

        with self._cond:
            abandoned = len(self._pending)
            if not drained:
                logger.warning(
                    "Drain timed out, abandoning %d pending operations",
                    abandoned,
                )
                self._pending.clear()
                self._ready.clear()
            self._stopping = True
            self._cond.notify_all()

        for thread in self._threads:
            thread.join(timeout=1.0)
        self._threads = []
        return abandoned if not drained else 0

    def _next_operation(self) -> IndexOperation | None:
        with self._cond:
            while not self._ready and not self._stopping:
                self._cond.wait()
            if not self._ready:
                return None
            path = self._ready.popleft()
            operation = self._pending.pop(path)
            self._in_flight[path] = operation
            return operation

    def _worker_loop(self) -> None:
        while True:
            operation = self._next_operation()
            if operation is None:
                return

            failed = False
            try:
                self.handler(operation)
            except Exception:  # Broad: isolate one operation's failure
                failed = True
                logger.exception(
                    "Failed to apply %s %s",
                    operation.kind.value,
                    operation.path,
                )
            finally:
                with self._cond:
                    if failed:
                        self.failed_count += 1
                    else:
                        self.processed_count += 1
                    path = operation.path
                    del self._in_flight[path]
                    if path in self._pending:
                        self._ready.append(path)
                    idle = not self._pending and not self._in_flight
                    self._cond.notify_all()

            if idle and self.on_idle is not None:
                try:
                    self.on_idle()
                except Exception:  # Broad: user callback
                    logger.exception("Error in on_idle callback")
