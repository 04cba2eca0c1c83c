"""TextIndex - the authoritative document index.

Backed by SQLite FTS5 with two connections on the same WAL database:
- writer: receives upserts/deletes inside one open transaction; commit()
  publishes everything since the previous commit atomically
- reader: serves search() and lookups; in WAL mode every statement sees
  the last committed state, never a half-applied batch

Thread Safety:
- All mutations go through _write_lock (single writer regardless of how
  many queue workers call in)
- Reads use _read_lock around the shared reader connection and never
  wait on the writer

Without a storage location the index lives in a private temporary
directory that is removed on close().
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .errors import IndexUnavailableError, IndexWriteFailure
from .events import Document, OperationKind
from .schema import (
    DELETE_DOCUMENT_SQL,
    SET_STATE_SQL,
    UPSERT_DOCUMENT_SQL,
    create_connection,
    init_database,
    optimize_fts_index,
)
from .search import SearchHit, search_fts

logger = logging.getLogger(__name__)

# Attempts per mutation or commit before the write is dropped
WRITE_ATTEMPTS = 2


@dataclass
class IndexStats:
    """Statistics about the search index."""

    document_count: int
    pending_count: int
    last_commit: datetime | None
    db_size_mb: float
    persistent: bool


class TextIndex:
    """
    Full-text index keyed by canonical file path.

    Usage:
        index = TextIndex(db_path)      # or TextIndex() for ephemeral
        index.upsert("/data/a.txt", "hello world")
        index.commit()
        index.search("hello")
        index.close()
    """

    def __init__(self, db_path: Path | None = None):
        """
        Open (or create) the index.

        Args:
            db_path: Database file; None for an ephemeral index

        Raises:
            IndexUnavailableError: If the storage cannot be opened
        """
        self._tmpdir: str | None = None
        if db_path is None:
            self._tmpdir = tempfile.mkdtemp(prefix="fs-text-search-")
            db_path = Path(self._tmpdir) / "index.db"

        self._db_path = db_path
        try:
            self._writer = init_database(db_path)
            self._reader = create_connection(db_path)
        except (OSError, sqlite3.Error) as e:
            self._cleanup_tmpdir()
            raise IndexUnavailableError(
                f"Cannot open index at {db_path}: {e}"
            ) from e

        self._write_lock = threading.RLock()
        self._read_lock = threading.Lock()
        self._uncommitted: dict[str, OperationKind] = {}
        self._closed = False
        self.last_commit: datetime | None = self._load_last_commit()
        self.commit_count = 0

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_persistent(self) -> bool:
        return self._tmpdir is None

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise IndexUnavailableError("Index is closed")

    def _load_last_commit(self) -> datetime | None:
        row = self._reader.execute(
            "SELECT value FROM index_state WHERE key = 'last_commit'"
        ).fetchone()
        if row and row["value"]:
            return datetime.fromisoformat(row["value"])
        return None

    # ─────────────────────────────────────────────────────────────────
    # Mutations (writer)
    # ─────────────────────────────────────────────────────────────────

    def _execute_write(self, sql: str, params: tuple) -> None:
        """Execute one mutation, retrying once before giving up."""
        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                self._writer.execute(sql, params)
                return
            except sqlite3.ProgrammingError as e:
                raise IndexUnavailableError(str(e)) from e
            except sqlite3.Error as e:
                if attempt < WRITE_ATTEMPTS:
                    logger.warning("Index write failed, retrying: %s", e)
                    continue
                raise IndexWriteFailure(f"Index write failed: {e}") from e

    def upsert(
        self,
        path: str,
        content: str,
        size: int = 0,
        mtime: float = 0.0,
    ) -> None:
        """Insert or fully replace the document for path (uncommitted)."""
        with self._write_lock:
            self._ensure_open()
            self._execute_write(UPSERT_DOCUMENT_SQL, (path, content, size, mtime))
            self._uncommitted[path] = OperationKind.UPSERT
        logger.debug("Upserted document %s", path)

    def upsert_document(self, document: Document) -> None:
        self.upsert(
            document.path, document.content, document.size, document.mtime
        )

    def delete(self, path: str) -> None:
        """Remove the document for path; no-op if absent (uncommitted)."""
        with self._write_lock:
            self._ensure_open()
            self._execute_write(DELETE_DOCUMENT_SQL, (path,))
            self._uncommitted[path] = OperationKind.DELETE
        logger.debug("Deleted document %s", path)

    def commit(self) -> int:
        """
        Atomically publish all mutations since the last commit.

        A failed commit is retried once. If it fails again the batch is
        rolled back and IndexWriteFailure is raised; the affected paths
        keep their previously committed versions.

        Returns:
            Number of paths whose change became visible
        """
        with self._write_lock:
            self._ensure_open()
            if not self._uncommitted and not self._writer.in_transaction:
                return 0

            now = datetime.now()
            for attempt in range(1, WRITE_ATTEMPTS + 1):
                try:
                    self._writer.execute(
                        SET_STATE_SQL, ("last_commit", now.isoformat())
                    )
                    self._writer.commit()
                    break
                except sqlite3.Error as e:
                    if attempt < WRITE_ATTEMPTS:
                        logger.warning("Index commit failed, retrying: %s", e)
                        continue
                    dropped = len(self._uncommitted)
                    self._uncommitted.clear()
                    try:
                        self._writer.rollback()
                    except sqlite3.Error as rollback_error:
                        logger.error("Rollback failed: %s", rollback_error)
                    raise IndexWriteFailure(
                        f"Commit failed, dropped {dropped} changes: {e}"
                    ) from e

            count = len(self._uncommitted)
            self._uncommitted.clear()
            self.last_commit = now
            self.commit_count += 1

        if count:
            logger.debug("Committed %d changes", count)
        return count

    @property
    def pending_count(self) -> int:
        """Mutations applied but not yet visible to search."""
        with self._write_lock:
            return len(self._uncommitted)

    def pending_kind(self, path: str) -> OperationKind | None:
        with self._write_lock:
            return self._uncommitted.get(path)

    def paths_under(self, directory: str) -> list[str]:
        """
        Document paths below a directory, including uncommitted ones.

        Uses the writer connection so documents upserted in the current
        batch are included.
        """
        prefix = directory.rstrip("/\\")
        with self._write_lock:
            self._ensure_open()
            cursor = self._writer.execute(
                "SELECT path FROM documents "
                "WHERE substr(path, 1, length(?)) = ? ORDER BY path",
                (prefix, prefix),
            )
            return [
                row["path"]
                for row in cursor
                if len(row["path"]) > len(prefix)
                and row["path"][len(prefix)] in "/\\"
            ]

    # ─────────────────────────────────────────────────────────────────
    # Reads (last committed snapshot)
    # ─────────────────────────────────────────────────────────────────

    def _read(self, fn, *args, **kwargs):
        with self._read_lock:
            self._ensure_open()
            try:
                return fn(self._reader, *args, **kwargs)
            except sqlite3.Error as e:
                raise IndexUnavailableError(f"Index read failed: {e}") from e

    def search(self, keyword: str, limit: int = 10) -> list[SearchHit]:
        """
        Search the committed snapshot.

        Returns:
            Hits ordered by score desc, then path; empty for no match or
            a malformed keyword

        Raises:
            IndexUnavailableError: If the index cannot be read
        """
        return self._read(search_fts, keyword, limit=limit)

    def get_document(self, path: str) -> Document | None:
        """Committed document for path, or None."""

        def fetch(conn: sqlite3.Connection) -> Document | None:
            row = conn.execute(
                "SELECT path, content, size, mtime FROM documents "
                "WHERE path = ?",
                (path,),
            ).fetchone()
            if row is None:
                return None
            return Document(
                path=row["path"],
                content=row["content"] or "",
                size=row["size"] or 0,
                mtime=row["mtime"] or 0.0,
            )

        return self._read(fetch)

    def has_document(self, path: str) -> bool:
        return self.get_document(path) is not None

    def indexed_paths(self) -> set[str]:
        """All committed document paths."""
        return self._read(
            lambda conn: {
                row["path"] for row in conn.execute("SELECT path FROM documents")
            }
        )

    def document_count(self) -> int:
        return self._read(
            lambda conn: conn.execute("SELECT COUNT(*) FROM documents").fetchone()[
                0
            ]
        )

    def get_stats(self) -> IndexStats:
        """
        Get index statistics.

        Returns:
            IndexStats with counts, size, and last commit time
        """
        db_size = 0
        for suffix in ("", "-wal"):
            candidate = Path(f"{self._db_path}{suffix}")
            if candidate.exists():
                db_size += candidate.stat().st_size

        return IndexStats(
            document_count=self.document_count(),
            pending_count=self.pending_count,
            last_commit=self.last_commit,
            db_size_mb=db_size / (1024 * 1024),
            persistent=self.is_persistent,
        )

    def optimize(self) -> None:
        """Merge FTS segments; call after bulk builds."""
        with self._write_lock:
            self._ensure_open()
            self.commit()
            optimize_fts_index(self._writer)

    # ─────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Commit outstanding changes and close. Safe to call repeatedly."""
        with self._write_lock, self._read_lock:
            if self._closed:
                return
            try:
                self.commit()
            except IndexWriteFailure as e:
                logger.error("Final commit failed: %s", e)
            self._closed = True
            self._writer.close()
            self._reader.close()
        self._cleanup_tmpdir()
        logger.info("Index closed")

    def _cleanup_tmpdir(self) -> None:
        if self._tmpdir is not None:
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            self._tmpdir = None
