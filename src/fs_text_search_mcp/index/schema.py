"""SQLite schema for the FTS5 document index.

The schema uses:
- documents: Base table, one row per indexed file, keyed by canonical path
- documents_fts: FTS5 virtual table with external content (documents)
- index_state: Small key/value table (last commit time, watch root)

Documents are written with an ON CONFLICT upsert rather than
INSERT OR REPLACE: REPLACE deletes the old row without firing the delete
trigger, which would leave orphaned terms in the FTS index.
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version for migrations
SCHEMA_VERSION = 1

# Default PRAGMAs for all connections (centralized to avoid drift)
DEFAULT_PRAGMAS = {
    "journal_mode": "WAL",  # Readers see the last commit, never a partial one
    "synchronous": "NORMAL",  # Good balance of safety and speed
    "busy_timeout": 5000,  # Wait up to 5s for locks
}

UPSERT_DOCUMENT_SQL = """INSERT INTO documents (path, content, size, mtime)
    VALUES (?, ?, ?, ?)
    ON CONFLICT(path) DO UPDATE SET
        content = excluded.content,
        size = excluded.size,
        mtime = excluded.mtime,
        indexed_at = datetime('now')"""

DELETE_DOCUMENT_SQL = "DELETE FROM documents WHERE path = ?"

SET_STATE_SQL = """INSERT INTO index_state (key, value) VALUES (?, ?)
    ON CONFLICT(key) DO UPDATE SET value = excluded.value"""


def create_connection(db_path: Path) -> sqlite3.Connection:
    """
    Create a database connection with standard configuration.

    Used for both the writer and the reader connection of TextIndex so
    PRAGMA settings never drift between them.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        Configured connection with WAL mode, busy timeout, and Row factory
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    for pragma, value in DEFAULT_PRAGMAS.items():
        conn.execute(f"PRAGMA {pragma}={value}")

    return conn


def get_schema_sql() -> str:
    """Return the complete schema creation SQL."""
    return """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- One row per indexed file; path is the canonical absolute path
CREATE TABLE IF NOT EXISTS documents (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    content TEXT,
    size INTEGER DEFAULT 0,
    mtime REAL DEFAULT 0,
    indexed_at TEXT DEFAULT (datetime('now'))
);

-- FTS5 index (external content - shares storage with documents table)
-- Uses porter stemmer for English + unicode61 for international text
CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
    content,
    content='documents',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

-- Triggers to keep FTS index in sync with documents table
CREATE TRIGGER IF NOT EXISTS documents_ai AFTER INSERT ON documents BEGIN
    INSERT INTO documents_fts(rowid, content) VALUES (new.rowid, new.content);
END;

CREATE TRIGGER IF NOT EXISTS documents_ad AFTER DELETE ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, content)
    VALUES('delete', old.rowid, old.content);
END;

CREATE TRIGGER IF NOT EXISTS documents_au AFTER UPDATE ON documents BEGIN
    INSERT INTO documents_fts(documents_fts, rowid, content)
    VALUES('delete', old.rowid, old.content);
    INSERT INTO documents_fts(rowid, content) VALUES (new.rowid, new.content);
END;

-- Index-level state (last_commit, watch_dir)
CREATE TABLE IF NOT EXISTS index_state (
    key TEXT PRIMARY KEY,
    value TEXT
);
"""


def init_database(db_path: Path) -> sqlite3.Connection:
    """
    Initialize the database with schema, creating parent directories if needed.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        Open database connection with check_same_thread=False

    Raises:
        OSError: If the parent directory cannot be created
        sqlite3.Error: If the database cannot be opened or initialized

    Security:
        Sets file permissions to 0600 (owner read/write only) on new databases
        since the index holds full copies of the indexed files.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    is_new_db = not db_path.exists()

    conn = create_connection(db_path)

    if is_new_db:
        try:
            os.chmod(db_path, 0o600)
            logger.debug("Set secure permissions (0600) on %s", db_path)
        except OSError as e:
            logger.warning(
                "Could not set secure permissions on %s: %s", db_path, e
            )

    sql = "SELECT name FROM sqlite_master "
    sql += "WHERE type='table' AND name='schema_version'"
    cursor = conn.execute(sql)
    if cursor.fetchone() is None:
        logger.info(
            "Creating fresh database schema (version %d)", SCHEMA_VERSION
        )
        conn.executescript(get_schema_sql())
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        conn.commit()
    else:
        cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
        row = cursor.fetchone()
        current_version = row[0] if row else 0

        if current_version != SCHEMA_VERSION:
            logger.info(
                "Migrating database from version %d to %d",
                current_version,
                SCHEMA_VERSION,
            )
            _run_migrations(conn, current_version, SCHEMA_VERSION)

    return conn


def _run_migrations(
    conn: sqlite3.Connection, from_version: int, to_version: int
) -> None:
    """
    Run schema migrations.

    The index is a cache of the watched tree and the startup scan
    re-upserts every file, so an incompatible version is simply dropped
    and recreated.

    Args:
        conn: Database connection
        from_version: Current schema version
        to_version: Target schema version
    """
    logger.warning(
        "Index schema v%d is not compatible with v%d, recreating. "
        "All files will be re-indexed.",
        from_version,
        to_version,
    )
    conn.executescript("""
        DROP TRIGGER IF EXISTS documents_ai;
        DROP TRIGGER IF EXISTS documents_ad;
        DROP TRIGGER IF EXISTS documents_au;
        DROP TABLE IF EXISTS documents_fts;
        DROP TABLE IF EXISTS documents;
        DROP TABLE IF EXISTS index_state;
        DELETE FROM schema_version;
    """)
    conn.executescript(get_schema_sql())
    conn.execute("INSERT INTO schema_version (version) VALUES (?)", (to_version,))
    conn.commit()


def optimize_fts_index(conn: sqlite3.Connection) -> None:
    """
    Optimize the FTS index for better query performance.

    Call after bulk builds.
    """
    conn.execute("INSERT INTO documents_fts(documents_fts) VALUES('optimize')")
    conn.commit()
