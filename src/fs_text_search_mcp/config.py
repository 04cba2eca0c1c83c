"""Configuration for the filesystem text search MCP server."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

DEFAULT_EXTENSIONS = "txt,md"

# Name of the database file inside --index-dir
INDEX_DB_NAME = "index.db"


def get_watch_dir() -> Path:
    """
    Get the directory tree to watch and index.

    Set FS_SEARCH_WATCH_DIR to customize. Defaults to the current directory.

    Returns:
        Watch root (not yet resolved).
    """
    return Path(os.environ.get("FS_SEARCH_WATCH_DIR", ".")).expanduser()


def get_index_dir() -> Path | None:
    """
    Get the directory holding the persisted index.

    Set FS_SEARCH_INDEX_DIR to keep the index across restarts.
    If not set, an ephemeral index is used and rebuilt on every start.

    Returns:
        Index directory or None for an ephemeral index.
    """
    env_path = os.environ.get("FS_SEARCH_INDEX_DIR")
    if env_path:
        return Path(env_path).expanduser()
    return None


def parse_extensions(value: str) -> frozenset[str]:
    """Parse a comma-separated extension list ("txt, .MD") into a set."""
    return frozenset(
        ext.strip().lstrip(".").lower()
        for ext in value.split(",")
        if ext.strip().lstrip(".")
    )


def get_extensions() -> frozenset[str]:
    """
    Get the extension allow-list.

    Set FS_SEARCH_EXTENSIONS to a comma-separated list.
    Defaults to "txt,md".
    """
    return parse_extensions(
        os.environ.get("FS_SEARCH_EXTENSIONS", DEFAULT_EXTENSIONS)
    )


def get_log_level() -> str | None:
    """Get an explicit log level override (FS_SEARCH_LOG_LEVEL)."""
    return os.environ.get("FS_SEARCH_LOG_LEVEL")


# ========== Pipeline Tuning ==========


def _int_env(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _float_env(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


@dataclass(frozen=True)
class PipelineSettings:
    """
    Tunables for the watch → debounce → queue → index pipeline.

    Every field can be set through an FS_SEARCH_* environment variable
    (see from_env) and overridden from the command line.
    """

    watch_dir: Path
    index_dir: Path | None = None
    extensions: frozenset[str] = frozenset({"txt", "md"})
    debounce_ms: int = 1000
    max_window_ms: int = 10_000
    workers: int = 4
    commit_batch_size: int = 10
    commit_interval_ms: int = 500
    channel_capacity: int = 10_000
    result_limit: int = 10
    max_file_bytes: int = 10 * 1024 * 1024
    drain_timeout: float = 5.0

    @classmethod
    def from_env(cls) -> PipelineSettings:
        """Build settings from FS_SEARCH_* environment variables."""
        return cls(
            watch_dir=get_watch_dir(),
            index_dir=get_index_dir(),
            extensions=get_extensions(),
            debounce_ms=_int_env("FS_SEARCH_DEBOUNCE_MS", 1000),
            max_window_ms=_int_env("FS_SEARCH_MAX_WINDOW_MS", 10_000),
            workers=_int_env("FS_SEARCH_WORKERS", 4),
            commit_batch_size=_int_env("FS_SEARCH_COMMIT_BATCH_SIZE", 10),
            commit_interval_ms=_int_env("FS_SEARCH_COMMIT_INTERVAL_MS", 500),
            channel_capacity=_int_env("FS_SEARCH_CHANNEL_CAPACITY", 10_000),
            result_limit=_int_env("FS_SEARCH_RESULT_LIMIT", 10),
            max_file_bytes=_int_env(
                "FS_SEARCH_MAX_FILE_BYTES", 10 * 1024 * 1024
            ),
            drain_timeout=_float_env("FS_SEARCH_DRAIN_TIMEOUT", 5.0),
        )

    def with_overrides(self, **overrides) -> PipelineSettings:
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @property
    def db_path(self) -> Path | None:
        """Database file for a persisted index, None when ephemeral."""
        if self.index_dir is None:
            return None
        return self.index_dir / INDEX_DB_NAME
