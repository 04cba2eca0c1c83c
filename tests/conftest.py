"""Shared pytest fixtures for fs-text-search-mcp tests."""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path

import pytest

from fs_text_search_mcp.config import PipelineSettings
from fs_text_search_mcp.index.engine import TextIndex
from fs_text_search_mcp.index.events import canonical_path
from fs_text_search_mcp.index.manager import IndexManager
from fs_text_search_mcp.index.schema import (
    SCHEMA_VERSION,
    UPSERT_DOCUMENT_SQL,
    get_schema_sql,
)


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Poll predicate until it is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    pytest.fail(f"Condition not met within {timeout}s")


@pytest.fixture
def temp_db():
    """Create an in-memory database with the schema."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.executescript(get_schema_sql())
    conn.execute(
        "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
    )
    conn.commit()
    yield conn
    conn.close()


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Return a temporary path for a database file."""
    return tmp_path / "index" / "test_index.db"


@pytest.fixture
def sample_documents() -> list[dict]:
    """Return sample document rows for testing."""
    return [
        {
            "path": "/notes/meeting.md",
            "content": "Please review the quarterly report before the meeting.",
        },
        {
            "path": "/notes/invoice.txt",
            "content": "Your invoice for January is attached. Total: 500",
        },
        {
            "path": "/notes/deadline.txt",
            "content": "The project deadline has been extended to Friday.",
        },
        {
            "path": "/archive/old-meeting.md",
            "content": "These are archived meeting notes from last year.",
        },
    ]


@pytest.fixture
def populated_db(temp_db: sqlite3.Connection, sample_documents: list[dict]):
    """Database with sample documents inserted through the upsert SQL."""
    for doc in sample_documents:
        temp_db.execute(
            UPSERT_DOCUMENT_SQL,
            (doc["path"], doc["content"], len(doc["content"]), 0.0),
        )
    temp_db.commit()
    return temp_db


@pytest.fixture
def text_index(temp_db_path: Path):
    """A persisted TextIndex, closed after the test."""
    index = TextIndex(temp_db_path)
    yield index
    index.close()


@pytest.fixture
def watch_root(tmp_path: Path) -> Path:
    """An empty directory to watch."""
    root = tmp_path / "watched"
    root.mkdir()
    return root


@pytest.fixture
def fast_settings(watch_root: Path) -> PipelineSettings:
    """Pipeline settings with short timers for tests."""
    return PipelineSettings(
        watch_dir=watch_root,
        debounce_ms=100,
        max_window_ms=1000,
        workers=2,
        commit_interval_ms=50,
    )


@pytest.fixture
def manager(fast_settings: PipelineSettings):
    """An IndexManager that is not started; shut down after the test."""
    mgr = IndexManager(fast_settings)
    yield mgr
    mgr.shutdown()
    IndexManager._instance = None


@pytest.fixture
def canon():
    """Canonicalize a path the way the index keys documents."""
    return lambda path: canonical_path(path)


@pytest.fixture
def wait():
    """The wait_until polling helper."""
    return wait_until
