"""FTS5 full-text search over indexed documents.

Provides:
- search_fts(): Search documents with BM25 ranking
- sanitize_fts_query(): Escape special FTS5 syntax characters

FTS5 query syntax supported:
- Simple terms: "meeting notes"
- Phrases: '"exact phrase"'
- Boolean: "meeting OR notes"
- Prefix: "meet*"

A keyword that is still malformed after escaping yields no results
rather than an error.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Characters that make a bare FTS5 token dangerous
# (hyphens = NOT, colons = column filter, parens = grouping, etc.)
_HAS_SPECIAL = re.compile(r"['\-\(\)\:\^\.\/\\\+\{\}\[\],;]")

# FTS5 boolean operators that should be passed through
_FTS5_OPERATORS = {"OR", "AND", "NOT"}

# Tokens around each match in snippet()
SNIPPET_TOKENS = 16


@dataclass(frozen=True)
class SearchHit:
    """A single search result."""

    path: str
    snippet: str
    score: float


def _tokenize_fts_query(query: str) -> list[str]:
    """Split query into phrase blocks and bare tokens.

    Balanced double-quoted segments are kept intact (including quotes).
    Unbalanced quotes are dropped.
    """
    tokens: list[str] = []
    i = 0
    n = len(query)

    while i < n:
        if query[i].isspace():
            i += 1
            continue

        if query[i] == '"':
            end = query.find('"', i + 1)
            if end != -1:
                if end > i + 1:
                    tokens.append(query[i : end + 1])
                i = end + 1
            else:
                i += 1
        else:
            start = i
            while i < n and not query[i].isspace() and query[i] != '"':
                i += 1
            tokens.append(query[start:i])

    return tokens


def _sanitize_bare_token(token: str) -> str:
    """Sanitize a single bare FTS5 token.

    FTS5 escaping works by wrapping in double quotes; backslash escaping
    is NOT supported. Preserves a trailing ``*`` (prefix search) and the
    boolean operators.
    """
    if token in _FTS5_OPERATORS:
        return token

    has_wildcard = token.endswith("*") and len(token) > 1
    core = token[:-1] if has_wildcard else token

    if _HAS_SPECIAL.search(core) or "*" in core:
        safe_core = '"' + core.replace('"', '""') + '"'
        return safe_core + "*" if has_wildcard else safe_core

    return token


def _escape_all_special(query: str) -> str:
    """Quote every term as a last-resort fallback after a syntax error."""
    escaped: list[str] = []
    for word in query.split():
        if word in _FTS5_OPERATORS:
            continue
        stripped = word.replace('"', "")
        if stripped:
            escaped.append('"' + stripped + '"')
    return " ".join(escaped)


def sanitize_fts_query(query: str) -> str:
    """Sanitize a query string for safe FTS5 use.

    Args:
        query: Raw keyword from the caller

    Returns:
        Sanitized query safe for FTS5 ("" if nothing searchable remains)
    """
    if not query or not query.strip():
        return ""

    sanitized_parts: list[str] = []
    for token in _tokenize_fts_query(query.strip()):
        if token.startswith('"') and token.endswith('"'):
            sanitized_parts.append(token)
        else:
            sanitized_parts.append(_sanitize_bare_token(token))

    # A query made only of operators is not searchable
    if all(part in _FTS5_OPERATORS for part in sanitized_parts):
        return ""
    return " ".join(sanitized_parts)


def _is_query_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "fts5" in message or "syntax error" in message or (
        "unterminated" in message
    )


def search_fts(
    conn: sqlite3.Connection,
    query: str,
    limit: int = 10,
    *,
    _is_retry: bool = False,
) -> list[SearchHit]:
    """
    Search indexed documents using FTS5 with BM25 ranking.

    Results are ordered by score (descending) with the path as a
    deterministic tie-break.

    Args:
        conn: Database connection (reader)
        query: Search keyword (supports FTS5 syntax)
        limit: Maximum results

    Returns:
        List of SearchHit, empty if nothing matched

    Raises:
        sqlite3.Error: For failures other than a malformed query
    """
    if not query or not query.strip():
        return []

    safe_query = query if _is_retry else sanitize_fts_query(query)
    if not safe_query:
        return []

    # BM25 returns negative scores (more negative = better match);
    # negate for intuitive positive scores
    sql = f"""
        SELECT
            d.path,
            snippet(documents_fts, 0, '**', '**', '...', {SNIPPET_TOKENS})
                as snippet,
            -bm25(documents_fts) as score
        FROM documents_fts
        JOIN documents d ON documents_fts.rowid = d.rowid
        WHERE documents_fts MATCH ?
        ORDER BY score DESC, d.path ASC
        LIMIT ?
    """

    try:
        cursor = conn.execute(sql, (safe_query, limit))
        return [
            SearchHit(
                path=row["path"],
                snippet=row["snippet"] or "",
                score=round(row["score"], 3),
            )
            for row in cursor
        ]

    except sqlite3.OperationalError as e:
        if not _is_query_error(e):
            raise
        if _is_retry:
            logger.debug("Unsearchable keyword %r: %s", query, e)
            return []
        escaped_query = _escape_all_special(query)
        if not escaped_query:
            return []
        return search_fts(conn, escaped_query, limit=limit, _is_retry=True)
