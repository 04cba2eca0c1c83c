"""Tests for per-path debouncing and coalescing.

DebounceWindows is driven with explicit timestamps; the Debouncer thread
is exercised with short real timers.
"""

from __future__ import annotations

import queue
import threading

import pytest

from fs_text_search_mcp.index.debounce import (
    Debouncer,
    DebounceWindows,
    resolve_kind,
)
from fs_text_search_mcp.index.events import (
    ChangeEvent,
    ChangeKind,
    OperationKind,
    canonical_path,
)

A = canonical_path("/data/a.txt")
B = canonical_path("/data/b.txt")


def _event(path: str, kind: ChangeKind, dest: str | None = None) -> ChangeEvent:
    return ChangeEvent(path=path, kind=kind, dest_path=dest)


class TestResolveKind:
    """Terminal kind to operation mapping."""

    @pytest.mark.parametrize(
        "kind, expected",
        [
            (ChangeKind.CREATED, OperationKind.UPSERT),
            (ChangeKind.MODIFIED, OperationKind.UPSERT),
            (ChangeKind.REMOVED, OperationKind.DELETE),
        ],
    )
    def test_mapping(self, kind, expected):
        assert resolve_kind(kind) == expected


class TestDebounceWindows:
    """Window bookkeeping with an explicit clock."""

    @pytest.fixture
    def windows(self) -> DebounceWindows:
        return DebounceWindows(debounce_ms=1000, max_window_ms=10_000)

    def test_window_not_due_before_idle_interval(self, windows):
        windows.add(_event(A, ChangeKind.CREATED), now=0.0)
        assert windows.pop_due(0.5) == []
        assert A in windows

    def test_window_flushes_after_idle_interval(self, windows):
        windows.add(_event(A, ChangeKind.CREATED), now=0.0)

        ops = windows.pop_due(1.0)

        assert [(op.path, op.kind) for op in ops] == [
            (A, OperationKind.UPSERT)
        ]
        assert len(windows) == 0

    def test_burst_collapses_to_single_upsert(self, windows):
        """Many modifications within the window yield one operation."""
        for i in range(20):
            windows.add(_event(A, ChangeKind.MODIFIED), now=i * 0.1)

        assert windows.pop_due(2.5) == []
        ops = windows.pop_due(3.0)
        assert len(ops) == 1
        assert ops[0].kind == OperationKind.UPSERT

    def test_each_event_extends_idle_timer(self, windows):
        windows.add(_event(A, ChangeKind.CREATED), now=0.0)
        windows.add(_event(A, ChangeKind.MODIFIED), now=0.9)

        assert windows.pop_due(1.5) == []
        assert len(windows.pop_due(2.0)) == 1

    def test_latest_kind_wins(self, windows):
        windows.add(_event(A, ChangeKind.CREATED), now=0.0)
        windows.add(_event(A, ChangeKind.MODIFIED), now=0.1)
        windows.add(_event(A, ChangeKind.REMOVED), now=0.2)

        ops = windows.pop_due(5.0)
        assert [op.kind for op in ops] == [OperationKind.DELETE]

    def test_remove_then_create_is_upsert(self, windows):
        windows.add(_event(A, ChangeKind.REMOVED), now=0.0)
        windows.add(_event(A, ChangeKind.CREATED), now=0.1)

        ops = windows.pop_due(5.0)
        assert [op.kind for op in ops] == [OperationKind.UPSERT]

    def test_max_window_bounds_continuous_writer(self, windows):
        """A path written every 0.5s still flushes after max_window_ms."""
        t = 0.0
        while t < 10.0:
            windows.add(_event(A, ChangeKind.MODIFIED), now=t)
            assert windows.pop_due(t) == []
            t += 0.5

        ops = windows.pop_due(10.0)
        assert [op.path for op in ops] == [A]

    def test_rename_splits_into_delete_and_upsert(self, windows):
        windows.add(_event(A, ChangeKind.RENAMED, dest=B), now=0.0)

        ops = windows.pop_due(1.0)

        assert sorted((op.path, op.kind) for op in ops) == [
            (A, OperationKind.DELETE),
            (B, OperationKind.UPSERT),
        ]

    def test_paths_are_canonicalized(self, windows):
        windows.add(_event("/data/./sub/../a.txt", ChangeKind.CREATED), 0.0)
        windows.add(_event("/data/a.txt", ChangeKind.MODIFIED), 0.1)
        assert len(windows) == 1

    def test_due_windows_ordered_by_deadline_then_path(self, windows):
        windows.add(_event(B, ChangeKind.CREATED), now=0.0)
        windows.add(_event(A, ChangeKind.CREATED), now=0.0)
        c = canonical_path("/data/c.txt")
        windows.add(_event(c, ChangeKind.CREATED), now=-0.5)

        ops = windows.pop_due(1.0)
        assert [op.path for op in ops] == [c, A, B]

    def test_operation_sequence_increases(self, windows):
        windows.add(_event(A, ChangeKind.CREATED), now=0.0)
        windows.add(_event(B, ChangeKind.CREATED), now=0.0)
        first, second = windows.pop_due(1.0)
        assert second.sequence > first.sequence

    def test_next_deadline(self, windows):
        assert windows.next_deadline() is None
        windows.add(_event(A, ChangeKind.CREATED), now=2.0)
        assert windows.next_deadline() == pytest.approx(3.0)

    def test_drain_flushes_everything(self, windows):
        windows.add(_event(A, ChangeKind.CREATED), now=0.0)
        windows.add(_event(B, ChangeKind.REMOVED), now=0.1)

        ops = windows.drain()

        assert [(op.path, op.kind) for op in ops] == [
            (A, OperationKind.UPSERT),
            (B, OperationKind.DELETE),
        ]
        assert len(windows) == 0


class TestDebouncer:
    """The consumer thread."""

    @pytest.fixture
    def channel(self) -> queue.Queue:
        return queue.Queue(maxsize=100)

    def test_flushes_after_idle_interval(self, channel, wait):
        flushed = []
        debouncer = Debouncer(channel, flushed.append, debounce_ms=50)
        debouncer.start()
        try:
            for _ in range(5):
                channel.put(_event(A, ChangeKind.MODIFIED))
            wait(lambda: flushed, timeout=5)
        finally:
            debouncer.stop()

        assert [(op.path, op.kind) for op in flushed] == [
            (A, OperationKind.UPSERT)
        ]
        assert debouncer.flushed_count == 1

    def test_stop_force_flushes_open_windows(self, channel, wait):
        flushed = []
        debouncer = Debouncer(channel, flushed.append, debounce_ms=60_000)
        debouncer.start()
        channel.put(_event(A, ChangeKind.CREATED))
        channel.put(_event(B, ChangeKind.REMOVED))
        wait(lambda: channel.empty(), timeout=5)

        debouncer.stop()

        assert sorted((op.path, op.kind) for op in flushed) == [
            (A, OperationKind.UPSERT),
            (B, OperationKind.DELETE),
        ]
        assert not debouncer.is_running

    def test_callback_errors_do_not_stop_consumer(self, channel, wait):
        seen = []
        ready = threading.Event()

        def on_flush(op):
            seen.append(op.path)
            if op.path == A:
                raise RuntimeError("downstream failure")
            ready.set()

        debouncer = Debouncer(channel, on_flush, debounce_ms=20)
        debouncer.start()
        try:
            channel.put(_event(A, ChangeKind.CREATED))
            wait(lambda: A in seen, timeout=5)
            channel.put(_event(B, ChangeKind.CREATED))
            assert ready.wait(5)
        finally:
            debouncer.stop()

        assert seen == [A, B]
