"""Watched-directory full-text index.

This module provides:
- IndexManager: Owns the watch -> debounce -> queue -> index pipeline
- DirectoryWatcher: Real-time file watcher feeding change events
- TextIndex: SQLite FTS5 document store with batched commits
- FTS5 full-text search with BM25 ranking
"""

from .engine import IndexStats, TextIndex
from .errors import (
    IndexingError,
    IndexUnavailableError,
    IndexWriteFailure,
    ReadFailure,
    WatchError,
)
from .events import PathState
from .manager import IndexManager, PipelineStatus
from .search import SearchHit
from .watcher import DirectoryWatcher

__all__ = [
    "DirectoryWatcher",
    "IndexManager",
    "IndexStats",
    "IndexUnavailableError",
    "IndexWriteFailure",
    "IndexingError",
    "PathState",
    "PipelineStatus",
    "ReadFailure",
    "SearchHit",
    "TextIndex",
    "WatchError",
]
