"""Per-path debouncing and coalescing of raw change events.

Bursts of notifications for one path (editor save sequences, appends,
create-then-modify) collapse into a single index operation:

- Each path has one window; every event extends it and records the
  latest kind seen.
- A window flushes after `debounce_ms` without new events for the path,
  or once it is `max_window_ms` old so continuous writers still get
  indexed.
- Flush resolution: latest kind REMOVED -> DELETE, anything else -> UPSERT.

DebounceWindows holds the bookkeeping and takes the current time as an
argument. Debouncer runs it on a single consumer thread that waits for
either the next event or the next flush deadline.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .events import (
    ChangeEvent,
    ChangeKind,
    IndexOperation,
    OperationKind,
    canonical_path,
)

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

# Wakes the consumer thread on stop
_STOP = object()


@dataclass
class DebounceWindow:
    """Buffered state for one path."""

    path: str
    kind: ChangeKind
    first_seen: float
    last_seen: float


def resolve_kind(kind: ChangeKind) -> OperationKind:
    """Map the terminal observed change kind to an index operation."""
    if kind == ChangeKind.REMOVED:
        return OperationKind.DELETE
    return OperationKind.UPSERT


class DebounceWindows:
    """
    Open debounce windows keyed by path.

    Not thread-safe; owned by the debouncer thread.
    """

    def __init__(self, debounce_ms: int, max_window_ms: int):
        self.idle_interval = debounce_ms / 1000
        self.max_age = max(max_window_ms, debounce_ms) / 1000
        self._windows: dict[str, DebounceWindow] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def __contains__(self, path: str) -> bool:
        return path in self._windows

    def add(self, event: ChangeEvent, now: float) -> None:
        """Record an event. Renames are split into remove + create."""
        if event.kind == ChangeKind.RENAMED:
            self._record(canonical_path(event.path), ChangeKind.REMOVED, now)
            if event.dest_path:
                self._record(
                    canonical_path(event.dest_path), ChangeKind.CREATED, now
                )
            return
        self._record(canonical_path(event.path), event.kind, now)

    def _record(self, path: str, kind: ChangeKind, now: float) -> None:
        window = self._windows.get(path)
        if window is None:
            self._windows[path] = DebounceWindow(path, kind, now, now)
        else:
            window.kind = kind
            window.last_seen = now

    def deadline(self, window: DebounceWindow) -> float:
        return min(
            window.last_seen + self.idle_interval,
            window.first_seen + self.max_age,
        )

    def next_deadline(self) -> float | None:
        """Earliest flush deadline, or None when no window is open."""
        if not self._windows:
            return None
        return min(self.deadline(w) for w in self._windows.values())

    def pop_due(self, now: float) -> list[IndexOperation]:
        """Close every window whose deadline has passed."""
        due = [w for w in self._windows.values() if self.deadline(w) <= now]
        due.sort(key=lambda w: (self.deadline(w), w.path))
        for window in due:
            del self._windows[window.path]
        return [self._to_operation(w) for w in due]

    def drain(self) -> list[IndexOperation]:
        """Close all windows regardless of deadline (shutdown flush)."""
        windows = sorted(
            self._windows.values(), key=lambda w: (w.first_seen, w.path)
        )
        self._windows.clear()
        return [self._to_operation(w) for w in windows]

    @staticmethod
    def _to_operation(window: DebounceWindow) -> IndexOperation:
        return IndexOperation(path=window.path, kind=resolve_kind(window.kind))


class Debouncer:
    """
    Single consumer of the watcher channel.

    Usage:
        debouncer = Debouncer(channel, on_flush=router)
        debouncer.start()
        # ... later ...
        debouncer.stop()  # force-flushes open windows
    """

    def __init__(
        self,
        channel: queue.Queue,
        on_flush: Callable[[IndexOperation], None],
        debounce_ms: int = 1000,
        max_window_ms: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.channel = channel
        self.on_flush = on_flush
        self.windows = DebounceWindows(debounce_ms, max_window_ms)
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.flushed_count = 0

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="Debouncer",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop consuming and flush every open window."""
        self._stop_event.set()
        try:
            self.channel.put_nowait(_STOP)
        except queue.Full:
            pass  # Loop is busy draining and will see the flag
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        logger.debug("Debouncer started")
        while not self._stop_event.is_set():
            deadline = self.windows.next_deadline()
            timeout = None
            if deadline is not None:
                timeout = max(0.0, deadline - self._clock())

            try:
                item = self.channel.get(timeout=timeout)
            except queue.Empty:
                item = None

            if item is _STOP:
                break
            if item is not None:
                self.windows.add(item, self._clock())

            for operation in self.windows.pop_due(self._clock()):
                self._emit(operation)

        self._drain_channel()
        for operation in self.windows.drain():
            self._emit(operation)
        logger.debug("Debouncer stopped")

    def _drain_channel(self) -> None:
        """Absorb events that were queued before the watcher stopped."""
        while True:
            try:
                item = self.channel.get_nowait()
            except queue.Empty:
                return
            if item is not _STOP:
                self.windows.add(item, self._clock())

    def _emit(self, operation: IndexOperation) -> None:
        self.flushed_count += 1
        logger.debug("Coalesced %s %s", operation.kind.value, operation.path)
        try:
            self.on_flush(operation)
        except Exception:  # Broad: downstream callback
            logger.exception("Error routing %s", operation.path)
