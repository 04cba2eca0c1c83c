"""Tests for the per-path serialized operation queue."""

from __future__ import annotations

import threading
import time

import pytest

from fs_text_search_mcp.index.events import IndexOperation, OperationKind
from fs_text_search_mcp.index.queue import OperationQueue


class RecordingHandler:
    """Handler that records operations and can block on chosen paths."""

    def __init__(self):
        self.applied: list[IndexOperation] = []
        self.active: dict[str, int] = {}
        self.max_active_per_path = 0
        self.max_concurrent = 0
        self.gates: dict[str, threading.Event] = {}
        self.started: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._running = 0

    def block(self, path: str) -> threading.Event:
        self.gates[path] = threading.Event()
        self.started[path] = threading.Event()
        return self.gates[path]

    def __call__(self, op: IndexOperation) -> None:
        with self._lock:
            self.active[op.path] = self.active.get(op.path, 0) + 1
            self._running += 1
            self.max_active_per_path = max(
                self.max_active_per_path, self.active[op.path]
            )
            self.max_concurrent = max(self.max_concurrent, self._running)
        try:
            if op.path in self.started:
                self.started[op.path].set()
            gate = self.gates.get(op.path)
            if gate is not None:
                assert gate.wait(5)
            else:
                time.sleep(0.005)
            with self._lock:
                self.applied.append(op)
        finally:
            with self._lock:
                self.active[op.path] -= 1
                self._running -= 1


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def ops(handler: RecordingHandler):
    queue = OperationQueue(handler, workers=4)
    queue.start()
    yield queue
    queue.close(timeout=5)


class TestOrdering:
    """Per-path serialization and keep-last coalescing."""

    def test_applies_single_operation(self, ops, handler):
        ops.enqueue(IndexOperation.upsert("/a.txt"))
        assert ops.join(timeout=5)
        assert [op.path for op in handler.applied] == ["/a.txt"]
        assert ops.is_idle

    def test_never_two_in_flight_for_one_path(self, ops, handler):
        for i in range(50):
            kind = OperationKind.UPSERT if i % 2 else OperationKind.DELETE
            ops.enqueue(IndexOperation(path="/same.txt", kind=kind))
            ops.enqueue(IndexOperation.upsert(f"/other{i}.txt"))

        assert ops.join(timeout=10)
        assert handler.max_active_per_path == 1

    def test_distinct_paths_run_concurrently(self, ops, handler):
        gate_a = handler.block("/a.txt")
        gate_b = handler.block("/b.txt")
        ops.enqueue(IndexOperation.upsert("/a.txt"))
        ops.enqueue(IndexOperation.upsert("/b.txt"))

        assert handler.started["/a.txt"].wait(5)
        assert handler.started["/b.txt"].wait(5)
        gate_a.set()
        gate_b.set()
        assert ops.join(timeout=5)
        assert handler.max_concurrent >= 2

    def test_pending_operation_replaced_by_newer(self, ops, handler):
        """While one op is in flight, later ones collapse to the latest."""
        gate = handler.block("/a.txt")
        ops.enqueue(IndexOperation.upsert("/a.txt"))
        assert handler.started["/a.txt"].wait(5)

        ops.enqueue(IndexOperation.upsert("/a.txt"))
        ops.enqueue(IndexOperation.upsert("/a.txt"))
        last = IndexOperation.delete("/a.txt")
        ops.enqueue(last)
        assert ops.pending_kind("/a.txt") == OperationKind.DELETE

        gate.set()
        assert ops.join(timeout=5)

        applied = [op for op in handler.applied if op.path == "/a.txt"]
        assert len(applied) == 2
        assert applied[-1] is last
        assert ops.replaced_count == 2

    def test_per_path_order_preserved(self, ops, handler):
        gate = handler.block("/a.txt")
        first = IndexOperation.upsert("/a.txt")
        second = IndexOperation.delete("/a.txt")
        ops.enqueue(first)
        assert handler.started["/a.txt"].wait(5)
        ops.enqueue(second)
        gate.set()

        assert ops.join(timeout=5)
        applied = [op for op in handler.applied if op.path == "/a.txt"]
        assert applied == [first, second]


class TestFailureIsolation:
    """A failing operation doesn't affect others."""

    def test_handler_exception_counted_and_isolated(self):
        applied = []

        def handler(op: IndexOperation) -> None:
            if op.path == "/bad.txt":
                raise RuntimeError("boom")
            applied.append(op.path)

        queue = OperationQueue(handler, workers=2)
        queue.start()
        try:
            queue.enqueue(IndexOperation.upsert("/bad.txt"))
            queue.enqueue(IndexOperation.upsert("/good.txt"))
            assert queue.join(timeout=5)
        finally:
            queue.close()

        assert applied == ["/good.txt"]
        assert queue.failed_count == 1
        assert queue.processed_count == 1


class TestLifecycle:
    """Idle callbacks, drain and close."""

    def test_on_idle_called_when_drained(self):
        idle = threading.Event()
        queue = OperationQueue(lambda op: None, workers=2, on_idle=idle.set)
        queue.start()
        try:
            queue.enqueue(IndexOperation.upsert("/a.txt"))
            assert idle.wait(5)
        finally:
            queue.close()

    def test_close_drains_pending_work(self, handler):
        queue = OperationQueue(handler, workers=1)
        queue.start()
        for i in range(10):
            queue.enqueue(IndexOperation.upsert(f"/f{i}.txt"))

        abandoned = queue.close(timeout=5)

        assert abandoned == 0
        assert len(handler.applied) == 10

    def test_close_timeout_abandons_pending(self, handler):
        gate = handler.block("/slow.txt")
        queue = OperationQueue(handler, workers=1)
        queue.start()
        queue.enqueue(IndexOperation.upsert("/slow.txt"))
        assert handler.started["/slow.txt"].wait(5)
        queue.enqueue(IndexOperation.upsert("/waiting.txt"))

        abandoned = queue.close(timeout=0.1)
        gate.set()

        assert abandoned == 1
        assert "/waiting.txt" not in [op.path for op in handler.applied]

    def test_enqueue_after_close_rejected(self, handler):
        queue = OperationQueue(handler, workers=1)
        queue.start()
        queue.close()

        assert queue.enqueue(IndexOperation.upsert("/late.txt")) is False

    def test_join_times_out_while_blocked(self, ops, handler):
        gate = handler.block("/a.txt")
        ops.enqueue(IndexOperation.upsert("/a.txt"))

        assert ops.join(timeout=0.05) is False
        assert len(ops) == 1
        gate.set()
        assert ops.join(timeout=5)
