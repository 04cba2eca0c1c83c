"""Value types passed between pipeline stages."""

from __future__ import annotations

import itertools
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum


class ChangeKind(str, Enum):
    """Kind of a raw filesystem notification."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


class OperationKind(str, Enum):
    """Kind of an index mutation intent."""

    UPSERT = "upsert"
    DELETE = "delete"


class PathState(str, Enum):
    """Lifecycle state of an observed path."""

    ABSENT = "absent"
    INDEXED = "indexed"
    PENDING_UPSERT = "pending_upsert"
    PENDING_DELETE = "pending_delete"


def canonical_path(path: str | os.PathLike[str]) -> str:
    """
    Return the canonical document id for a path.

    Absolute and normalized, without following symlinks so that paths of
    already-deleted files canonicalize the same way as live ones.
    """
    return os.path.normpath(os.path.abspath(os.fspath(path)))


@dataclass(frozen=True)
class ChangeEvent:
    """A raw change notification emitted by the watcher."""

    path: str
    kind: ChangeKind
    timestamp: float = field(default_factory=time.monotonic)
    # Only set for RENAMED
    dest_path: str | None = None


_sequence = itertools.count(1)
_sequence_lock = threading.Lock()


def next_sequence() -> int:
    """Process-wide monotonically increasing operation number."""
    with _sequence_lock:
        return next(_sequence)


@dataclass(frozen=True)
class IndexOperation:
    """A single mutation intent for one path."""

    path: str
    kind: OperationKind
    sequence: int = field(default_factory=next_sequence)

    @classmethod
    def upsert(cls, path: str) -> IndexOperation:
        return cls(path=path, kind=OperationKind.UPSERT)

    @classmethod
    def delete(cls, path: str) -> IndexOperation:
        return cls(path=path, kind=OperationKind.DELETE)


@dataclass(frozen=True)
class Document:
    """File content materialized for the index. Id is the canonical path."""

    path: str
    content: str
    size: int
    mtime: float
