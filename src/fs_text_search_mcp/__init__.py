"""FS Text Search MCP - keeps an FTS5 index in sync with a directory tree.

Features:
- Real-time indexing of a watched directory (debounced, per-path ordered)
- FTS5 full-text search with BM25 ranking exposed as MCP tools

Usage:
    fs-text-search-mcp            # Run MCP server (default)
    fs-text-search-mcp index      # Build a persisted index and exit
    fs-text-search-mcp status     # Show index statistics
    fs-text-search-mcp search Q   # One-shot search from the terminal
"""

from .cli import main
from .server import mcp

__all__ = ["main", "mcp"]
