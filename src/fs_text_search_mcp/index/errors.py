"""Error taxonomy for the indexing pipeline.

Only WatchError and IndexUnavailableError are process-fatal (and only at
startup). Everything else is isolated to the single path or operation
involved and never stops the pipeline.
"""

from __future__ import annotations


class IndexingError(Exception):
    """Base class for pipeline errors."""


class WatchError(IndexingError):
    """The watch root could not be attached (missing, unreadable, ...)."""


class ReadFailure(IndexingError):
    """A file's content could not be materialized for indexing."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class IndexWriteFailure(IndexingError):
    """A mutation or commit was rejected by the index backend."""


class IndexUnavailableError(IndexingError):
    """The index is closed, corrupt, or its storage cannot be opened."""
