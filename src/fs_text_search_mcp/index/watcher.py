"""Directory watcher producing raw change events.

Watches the root recursively with watchfiles (Rust notify backend) and
pushes one ChangeEvent per notification onto a bounded channel:
- added    -> CREATED
- modified -> MODIFIED
- deleted  -> REMOVED

Renames reach us from the backend as a delete of the old path plus an
add of the new one, which the debouncer and router already handle.

Backpressure: when the channel is full the watcher thread blocks (the
backend keeps buffering natively) rather than dropping events. The stop
flag is re-checked while blocked so shutdown is never stuck.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from watchfiles import Change, watch

from .errors import WatchError
from .events import ChangeEvent, ChangeKind, canonical_path

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .filter import ExtensionFileFilter

logger = logging.getLogger(__name__)

# Backend-level batching; per-path coalescing happens in the debouncer
BACKEND_DEBOUNCE_MS = 50
BACKEND_STEP_MS = 20
# Lets the loop observe the stop flag while the tree is quiet
BACKEND_TIMEOUT_MS = 200
# How long to wait for the backend to attach in start()
ATTACH_TIMEOUT_S = 10.0
# Poll interval for the stop flag while the channel is full
PUT_RETRY_S = 0.1

_CHANGE_KINDS = {
    Change.added: ChangeKind.CREATED,
    Change.modified: ChangeKind.MODIFIED,
    Change.deleted: ChangeKind.REMOVED,
}


class DirectoryWatcher:
    """
    Watches a directory tree and feeds raw events to a channel.

    Usage:
        channel = queue.Queue(maxsize=10_000)
        watcher = DirectoryWatcher(root, channel)
        watcher.start()   # raises WatchError if root can't be watched
        # ... later ...
        watcher.stop()
    """

    def __init__(
        self,
        root: str | os.PathLike[str],
        channel: queue.Queue,
        file_filter: ExtensionFileFilter | None = None,
    ):
        """
        Initialize the watcher.

        Args:
            root: Directory to watch recursively
            channel: Bounded queue receiving ChangeEvent objects
            file_filter: If given, events inside its excluded directories
                (the index storage) are not emitted
        """
        self.root = canonical_path(root)
        self.channel = channel
        self.file_filter = file_filter

        self._stop_event = threading.Event()
        self._ready = threading.Event()
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None
        self.emitted_count = 0
        self.blocked_count = 0

    def start(self) -> None:
        """
        Attach to the root and start emitting events.

        Raises:
            WatchError: If the root is missing, not a directory, or the
                backend could not attach
        """
        root = Path(self.root)
        if not root.is_dir():
            raise WatchError(f"Watch root is not a directory: {self.root}")
        if not os.access(root, os.R_OK | os.X_OK):
            raise WatchError(f"Watch root is not readable: {self.root}")

        self._stop_event.clear()
        self._ready.clear()
        self._error = None
        self._thread = threading.Thread(
            target=self._watch_loop,
            name="DirectoryWatcher",
            daemon=True,
        )
        self._thread.start()

        if not self._ready.wait(ATTACH_TIMEOUT_S):
            self.stop()
            raise WatchError(f"Timed out attaching watcher to {self.root}")
        if self._error is not None:
            self.stop()
            raise WatchError(
                f"Cannot watch {self.root}: {self._error}"
            ) from self._error

        logger.info("File watcher started for %s", self.root)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching and wait for thread to finish."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        """Check if watcher is running."""
        return self._thread is not None and self._thread.is_alive()

    def _watch_loop(self) -> None:
        """Main watch loop (runs in background thread)."""
        logger.debug("Starting watch loop on %s", self.root)
        try:
            for changes in watch(
                self.root,
                watch_filter=None,
                debounce=BACKEND_DEBOUNCE_MS,
                step=BACKEND_STEP_MS,
                stop_event=self._stop_event,
                rust_timeout=BACKEND_TIMEOUT_MS,
                yield_on_timeout=True,
                recursive=True,
                raise_interrupt=False,
            ):
                # First yield means the backend is attached
                self._ready.set()
                if self._stop_event.is_set():
                    break

                self._handle_batch(changes)
        except Exception as e:  # Broad: backend errors surface in start()
            if not self._ready.is_set():
                self._error = e
            else:
                logger.error("File watcher failed: %s", e)
        finally:
            self._ready.set()

    def _handle_batch(self, changes: Iterable[tuple[Change, str]]) -> None:
        """
        Emit one event per path in a backend batch, in path order.

        A batch is an unordered set, so a delete and re-create of the same
        path cannot be sequenced from it. Such paths collapse to MODIFIED
        or REMOVED depending on whether the file exists now.
        """
        by_path: dict[str, set[Change]] = {}
        for change_type, path_str in changes:
            by_path.setdefault(path_str, set()).add(change_type)

        for path_str in sorted(by_path):
            types = by_path[path_str]
            if len(types) == 1:
                (change_type,) = types
            elif os.path.exists(path_str):
                change_type = Change.modified
            else:
                change_type = Change.deleted
            self._handle_change(change_type, path_str)

    def _handle_change(self, change_type: Change, path_str: str) -> None:
        kind = _CHANGE_KINDS.get(change_type)
        if kind is None:
            return

        path = canonical_path(path_str)
        if self.file_filter is not None and self.file_filter.is_excluded(path):
            return

        self._emit(ChangeEvent(path=path, kind=kind))

    def _emit(self, event: ChangeEvent) -> None:
        """Put an event on the channel, blocking while it is full."""
        warned = False
        while not self._stop_event.is_set():
            try:
                self.channel.put(event, timeout=PUT_RETRY_S)
                self.emitted_count += 1
                return
            except queue.Full:
                if not warned:
                    self.blocked_count += 1
                    logger.warning(
                        "Event channel full, watcher waiting for consumer"
                    )
                    warned = True
        logger.debug("Dropping %s %s at shutdown", event.kind.value, event.path)
