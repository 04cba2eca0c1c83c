"""
FS Text Search MCP Server

Provides MCP tools over a full-text index that is kept in sync with a
watched directory tree.

TOOLS (3 total):
- search_index(keyword) - Ranked FTS5 search over indexed files
- load_file(file_path) - Raw content of a file under the watch root
- index_status() - Index and pipeline statistics
"""

from __future__ import annotations

import asyncio
from typing_extensions import TypedDict

from fastmcp import FastMCP

mcp = FastMCP("FS Text Search")


# ========== Response Type Definitions ==========


class SearchMatch(TypedDict):
    """A file matching a search keyword."""

    path: str
    snippet: str
    score: float


class IndexStatus(TypedDict):
    """Index and pipeline statistics."""

    watch_dir: str
    documents: int
    pending_operations: int
    uncommitted_changes: int
    last_commit: str | None
    db_size_mb: float
    persistent: bool
    watcher_running: bool
    read_failures: int
    dropped_writes: int


# ========== Helper Functions ==========


def _get_index_manager():
    """Get the IndexManager singleton, lazily imported."""
    from .index import IndexManager

    return IndexManager.get_instance()


# ========== MCP Tools (3 total) ==========


@mcp.tool
async def search_index(keyword: str) -> list[SearchMatch]:
    """
    Search indexed files for a keyword.

    Supports FTS5 syntax: plain terms, "exact phrases", OR/NOT and
    prefix* matching. A keyword with no matches, or one that cannot be
    parsed, returns an empty list.

    Args:
        keyword: Search term or phrase

    Returns:
        Matching files with a highlighted snippet, best match first
        (ties ordered by path).

    Example:
        >>> search_index("meeting notes")
        [{"path": "/notes/monday.md", "snippet": "...**meeting** **notes**...",
          "score": 4.21}]
    """
    manager = _get_index_manager()
    hits = await asyncio.to_thread(manager.search, keyword)
    return [
        {"path": hit.path, "snippet": hit.snippet, "score": hit.score}
        for hit in hits
    ]


@mcp.tool
async def load_file(file_path: str) -> str:
    """
    Get the full content of a file under the watched directory.

    Use after search_index to read a matching file. Relative paths are
    resolved against the watched directory. Bytes that are not valid
    UTF-8 are replaced.

    Args:
        file_path: Absolute path, or path relative to the watched directory

    Returns:
        The file's text content
    """
    manager = _get_index_manager()
    return await asyncio.to_thread(manager.load_file, file_path)


@mcp.tool
async def index_status() -> IndexStatus:
    """
    Show index statistics.

    Returns:
        Document count, pending work, database size, last commit time,
        and failure counters.
    """
    manager = _get_index_manager()
    status = await asyncio.to_thread(manager.get_status)
    return {
        "watch_dir": status.watch_dir,
        "documents": status.document_count,
        "pending_operations": status.pending_operations,
        "uncommitted_changes": status.uncommitted_changes,
        "last_commit": (
            status.last_commit.isoformat() if status.last_commit else None
        ),
        "db_size_mb": round(status.db_size_mb, 3),
        "persistent": status.persistent,
        "watcher_running": status.watcher_running,
        "read_failures": status.read_failures,
        "dropped_writes": status.dropped_writes,
    }
