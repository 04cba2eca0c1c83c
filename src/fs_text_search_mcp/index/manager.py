"""IndexManager - Central interface for the watched-directory index.

Provides:
- start(): Open the index, attach the watcher, seed from disk
- seed(): Initial scan plus reconciliation of a reopened index
- search(): FTS5 search over the last committed snapshot
- load_file(): Read a file inside the watch root
- path_state(): Lifecycle state of one path
- shutdown(): Ordered stop with a bounded drain

Pipeline:
    DirectoryWatcher -> channel -> Debouncer -> route() -> OperationQueue
    -> _apply() -> TextIndex (committed in batches)

Thread Safety:
- get_instance() uses class-level lock
- Every stage owns its state; stages hand work over through queues
- TextIndex serializes writers internally
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from ..config import PipelineSettings
from .debounce import Debouncer
from .engine import IndexStats, TextIndex
from .errors import (
    IndexUnavailableError,
    IndexWriteFailure,
    ReadFailure,
    WatchError,
)
from .events import (
    ChangeEvent,
    IndexOperation,
    OperationKind,
    PathState,
    canonical_path,
)
from .filter import ExtensionFileFilter
from .loader import LazyDirectoryLoader
from .queue import OperationQueue

if TYPE_CHECKING:
    from .search import SearchHit
    from .watcher import DirectoryWatcher

logger = logging.getLogger(__name__)


@dataclass
class PipelineStatus:
    """Snapshot of index and pipeline health for status reporting."""

    watch_dir: str
    document_count: int
    pending_operations: int
    uncommitted_changes: int
    last_commit: datetime | None
    db_size_mb: float
    persistent: bool
    watcher_running: bool
    processed: int
    read_failures: int
    dropped_writes: int


class IndexManager:
    """
    Owns the pipeline for one watch root.

    Configure with PipelineSettings (FS_SEARCH_* environment variables by
    default, see config.py).

    Usage:
        manager = IndexManager(PipelineSettings(watch_dir=Path("notes")))
        manager.start()
        manager.search("hello")
        manager.shutdown()
    """

    _instance: IndexManager | None = None
    _instance_lock = threading.Lock()

    def __init__(self, settings: PipelineSettings | None = None):
        """
        Initialize the IndexManager.

        Args:
            settings: Pipeline settings (read from environment if None)
        """
        self.settings = settings or PipelineSettings.from_env()
        self.watch_root = canonical_path(self.settings.watch_dir)

        exclude = []
        if self.settings.index_dir is not None:
            exclude.append(self.settings.index_dir)
        self.file_filter = ExtensionFileFilter(
            self.settings.extensions, exclude=exclude
        )
        self.loader = LazyDirectoryLoader(
            self.file_filter, max_file_bytes=self.settings.max_file_bytes
        )

        self._index: TextIndex | None = None
        self._channel: queue.Queue = queue.Queue(
            maxsize=self.settings.channel_capacity
        )
        self._queue = OperationQueue(
            handler=self._apply,
            workers=self.settings.workers,
            on_idle=self.commit,
        )
        self._debouncer = Debouncer(
            self._channel,
            on_flush=self.route,
            debounce_ms=self.settings.debounce_ms,
            max_window_ms=self.settings.max_window_ms,
        )
        self._watcher: DirectoryWatcher | None = None

        self._lifecycle_lock = threading.Lock()
        self._commit_stop = threading.Event()
        self._commit_thread: threading.Thread | None = None
        self._started = False

        self.read_failures = 0
        self.dropped_writes = 0
        self._counter_lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> IndexManager:
        """Get the singleton IndexManager instance (thread-safe)."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = IndexManager()
            return cls._instance

    @classmethod
    def set_instance(cls, manager: IndexManager | None) -> None:
        """Install (or clear) the singleton, e.g. after CLI configuration."""
        with cls._instance_lock:
            cls._instance = manager

    @property
    def index(self) -> TextIndex:
        """The open index (raises IndexUnavailableError otherwise)."""
        if self._index is None or self._index.is_closed:
            raise IndexUnavailableError("Index is not open")
        return self._index

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def watcher_running(self) -> bool:
        """Check if the file watcher is running."""
        return self._watcher is not None and self._watcher.is_running

    def open_index(self) -> TextIndex:
        """
        Open the index storage if not already open.

        Raises:
            IndexUnavailableError: If the storage cannot be opened
        """
        if self._index is None:
            self._index = TextIndex(self.settings.db_path)
            location = self.settings.db_path or "temporary storage"
            logger.info("Index opened at %s", location)
        return self._index

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def start(self, watch: bool = True) -> int:
        """
        Bring the pipeline up.

        The watcher attaches before the initial scan so that no change
        made during the scan is missed.

        Args:
            watch: Attach the directory watcher (False for one-shot builds)

        Returns:
            Number of files enqueued by the initial scan

        Raises:
            WatchError: If the watch root is not a readable directory or
                cannot be watched
            IndexUnavailableError: If the index storage cannot be opened
        """
        from .watcher import DirectoryWatcher

        with self._lifecycle_lock:
            if self._started:
                return 0

            # An empty scan of a missing root would reconcile the index away
            self._check_watch_root()
            self.open_index()
            self._queue.start()
            self._debouncer.start()
            self._start_commit_timer()
            self._started = True

            if watch:
                watcher = DirectoryWatcher(
                    self.watch_root, self._channel, self.file_filter
                )
                try:
                    watcher.start()
                except Exception:
                    self._stop_pipeline()
                    raise
                self._watcher = watcher

        return self.seed()

    def _check_watch_root(self) -> None:
        if not os.path.isdir(self.watch_root):
            raise WatchError(f"Watch root is not a directory: {self.watch_root}")
        if not os.access(self.watch_root, os.R_OK | os.X_OK):
            raise WatchError(f"Watch root is not readable: {self.watch_root}")

    def seed(self) -> int:
        """
        Enqueue an UPSERT for every admitted file under the watch root.

        Documents already in a reopened index whose files are gone (or no
        longer admitted) are enqueued for DELETE.

        Returns:
            Number of files enqueued for indexing
        """
        known = self.index.indexed_paths()
        seen: set[str] = set()

        for path in self.loader.scan(self.watch_root):
            seen.add(path)
            self._queue.enqueue(IndexOperation.upsert(path))

        stale = sorted(known - seen)
        for path in stale:
            self._queue.enqueue(IndexOperation.delete(path))

        if stale:
            logger.info(
                "Scanned %d files, %d stale documents to remove",
                len(seen),
                len(stale),
            )
        else:
            logger.info("Scanned %d files under %s", len(seen), self.watch_root)
        return len(seen)

    def flush(self, timeout: float | None = None) -> bool:
        """
        Wait for queued operations to be applied, then commit.

        Returns:
            True if the queue drained within timeout
        """
        drained = self._queue.join(timeout)
        self.commit()
        return drained

    def shutdown(self) -> None:
        """
        Stop the pipeline in order.

        watcher -> debouncer (force flush) -> queue drain -> final commit
        -> index closed.
        """
        with self._lifecycle_lock:
            if not self._started:
                if self._index is not None:
                    self._index.close()
                return
            self._stop_pipeline()

    def _stop_pipeline(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

        self._debouncer.stop()

        abandoned = self._queue.close(timeout=self.settings.drain_timeout)
        if abandoned:
            logger.warning(
                "Shutdown abandoned %d operations; paths may be stale",
                abandoned,
            )

        self._commit_stop.set()
        if self._commit_thread is not None:
            self._commit_thread.join(timeout=5.0)
            self._commit_thread = None

        if self._index is not None:
            self._index.close()
        self._started = False
        logger.info("Pipeline stopped")

    # ─────────────────────────────────────────────────────────────────
    # Routing and applying
    # ─────────────────────────────────────────────────────────────────

    def submit_event(self, event: ChangeEvent) -> None:
        """Feed a raw change event into the pipeline (blocks when full)."""
        self._channel.put(event)

    def route(self, operation: IndexOperation) -> None:
        """
        Filter a coalesced operation and enqueue it.

        Directory operations fan out: an UPSERT for a directory (created or
        moved in) upserts the admitted files beneath it that are not yet
        indexed, and a DELETE removes every document under the path as well
        as the path itself.
        """
        path = operation.path
        if self.file_filter.is_excluded(path):
            return

        if operation.kind == OperationKind.UPSERT and os.path.isdir(path):
            # Files already indexed get their own change events
            known = set(self.index.paths_under(path))
            count = 0
            for child in self.loader.scan(path):
                if child not in known:
                    self._queue.enqueue(IndexOperation.upsert(child))
                    count += 1
            logger.debug("Directory %s: %d files to index", path, count)
            return

        if operation.kind == OperationKind.DELETE:
            children = self.index.paths_under(path)
            for child in children:
                self._queue.enqueue(IndexOperation.delete(child))
            if children:
                logger.debug(
                    "Directory %s removed: %d documents", path, len(children)
                )

        if not self.file_filter.is_target(path):
            return

        self._queue.enqueue(operation)

    def _apply(self, operation: IndexOperation) -> None:
        """Apply one operation to the index (runs on a queue worker)."""
        path = operation.path
        index = self.index

        if operation.kind == OperationKind.DELETE:
            self._write(index.delete, operation, path)
        else:
            try:
                document = self.loader.load_file(path)
            except FileNotFoundError:
                logger.debug("%s vanished before indexing, deleting", path)
                self._write(index.delete, operation, path)
            except ReadFailure as e:
                with self._counter_lock:
                    self.read_failures += 1
                logger.warning("%s", e)
                return
            else:
                self._write(index.upsert_document, operation, document)

        if index.pending_count >= self.settings.commit_batch_size:
            self.commit()

    def _write(self, mutation, operation: IndexOperation, arg) -> None:
        try:
            mutation(arg)
        except IndexWriteFailure as e:
            with self._counter_lock:
                self.dropped_writes += 1
            logger.error(
                "Dropping %s %s: %s",
                operation.kind.value,
                operation.path,
                e,
            )

    def commit(self) -> int:
        """Publish pending mutations. Failures are logged and dropped."""
        index = self._index
        if index is None or index.is_closed:
            return 0
        try:
            return index.commit()
        except IndexWriteFailure as e:
            with self._counter_lock:
                self.dropped_writes += 1
            logger.error("%s", e)
        except IndexUnavailableError:
            logger.debug("Index closed before commit")
        return 0

    def _start_commit_timer(self) -> None:
        self._commit_stop.clear()
        self._commit_thread = threading.Thread(
            target=self._commit_loop,
            name="IndexCommitter",
            daemon=True,
        )
        self._commit_thread.start()

    def _commit_loop(self) -> None:
        interval = self.settings.commit_interval_ms / 1000
        while not self._commit_stop.wait(interval):
            index = self._index
            if index is not None and not index.is_closed and index.pending_count:
                self.commit()

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    def search(self, keyword: str, limit: int | None = None) -> list[SearchHit]:
        """
        Search the committed index.

        Args:
            keyword: Search keyword (supports FTS5 syntax)
            limit: Maximum results (default: settings.result_limit)

        Returns:
            List of SearchHit ordered by score, then path

        Raises:
            IndexUnavailableError: If the index is not open
        """
        return self.index.search(
            keyword, limit=limit or self.settings.result_limit
        )

    def resolve_path(self, file_path: str) -> str:
        """
        Canonicalize a caller-supplied path against the watch root.

        Raises:
            FileNotFoundError: If the path lies outside the watch root
        """
        if not os.path.isabs(file_path):
            file_path = os.path.join(self.watch_root, file_path)
        path = canonical_path(file_path)
        real_root = os.path.realpath(self.watch_root)
        real_path = os.path.realpath(path)
        if real_path != real_root and not real_path.startswith(
            real_root.rstrip(os.sep) + os.sep
        ):
            raise FileNotFoundError(f"File not found: {file_path}")
        return path

    def load_file(self, file_path: str) -> str:
        """
        Read a file under the watch root as text.

        Undecodable bytes are replaced rather than failing the read.

        Raises:
            FileNotFoundError: If the path is outside the root, missing,
                not a regular file, or unreadable
        """
        path = self.resolve_path(file_path)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"File not found: {file_path}")
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise FileNotFoundError(f"File not found: {file_path}") from e
        return data.decode("utf-8", errors="replace")

    def path_state(self, file_path: str) -> PathState:
        """
        Lifecycle state of a path.

        Pending means queued, in flight, or applied but not yet committed.
        """
        path = canonical_path(file_path)
        kind = self._queue.pending_kind(path) or self.index.pending_kind(path)
        if kind == OperationKind.UPSERT:
            return PathState.PENDING_UPSERT
        if kind == OperationKind.DELETE:
            return PathState.PENDING_DELETE
        if self.index.has_document(path):
            return PathState.INDEXED
        return PathState.ABSENT

    def get_stats(self) -> IndexStats:
        """Index statistics (documents, size, last commit)."""
        return self.index.get_stats()

    def get_status(self) -> PipelineStatus:
        """Index statistics plus pipeline counters."""
        stats = self.get_stats()
        return PipelineStatus(
            watch_dir=self.watch_root,
            document_count=stats.document_count,
            pending_operations=len(self._queue),
            uncommitted_changes=stats.pending_count,
            last_commit=stats.last_commit,
            db_size_mb=stats.db_size_mb,
            persistent=stats.persistent,
            watcher_running=self.watcher_running,
            processed=self._queue.processed_count,
            read_failures=self.read_failures,
            dropped_writes=self.dropped_writes,
        )
