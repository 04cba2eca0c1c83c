"""Command-line interface for fs-text-search-mcp.

Provides commands for:
- serve: Run the MCP server with a live index (default)
- index: Build a persisted index from disk and exit
- status: Show index statistics
- search: Run one query from the terminal

Usage:
    fs-text-search-mcp                      # Serve the current directory
    fs-text-search-mcp -w ~/notes -e txt,md # Serve ~/notes
    fs-text-search-mcp index -i ~/.fs-index # Build a persisted index
    fs-text-search-mcp status -i ~/.fs-index
    fs-text-search-mcp search "meeting notes" -w ~/notes
"""

import logging
import sys
import time
from pathlib import Path
from typing import Annotated

import cyclopts

from .config import PipelineSettings, get_log_level, parse_extensions

app = cyclopts.App(
    name="fs-text-search-mcp",
    help="MCP server keeping a full-text index in sync with a directory.",
)

WatchDir = Annotated[
    Path | None,
    cyclopts.Parameter(
        name=["--watch-dir", "-w"],
        help="Directory to watch and index (default: current directory)",
    ),
]
IndexDir = Annotated[
    Path | None,
    cyclopts.Parameter(
        name=["--index-dir", "-i"],
        help="Directory for a persisted index (default: in-memory)",
    ),
]
Extensions = Annotated[
    str | None,
    cyclopts.Parameter(
        name=["--extensions", "-e"],
        help="Comma-separated file extensions to index (default: txt,md)",
    ),
]
Verbose = Annotated[
    bool,
    cyclopts.Parameter(name=["--verbose", "-v"], help="Enable debug logging"),
]
Quiet = Annotated[
    bool,
    cyclopts.Parameter(name=["--quiet", "-q"], help="Only log errors"),
]


def _format_size(size_mb: float) -> str:
    """Format file size for display."""
    if size_mb < 1:
        return f"{size_mb * 1024:.1f} KB"
    return f"{size_mb:.1f} MB"


def _format_time(seconds: float) -> str:
    """Format duration for display."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.1f}s"


def _configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Send logs to stderr; stdout carries the MCP protocol."""
    level = "INFO"
    if verbose:
        level = "DEBUG"
    elif quiet:
        level = "ERROR"
    level = (get_log_level() or level).upper()

    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _build_settings(
    watch_dir: Path | None,
    index_dir: Path | None,
    extensions: str | None,
) -> PipelineSettings:
    """Environment settings with command-line overrides applied."""
    return PipelineSettings.from_env().with_overrides(
        watch_dir=watch_dir.expanduser() if watch_dir else None,
        index_dir=index_dir.expanduser() if index_dir else None,
        extensions=parse_extensions(extensions) if extensions else None,
    )


def _fail(message: str) -> None:
    print(f"✗ {message}", file=sys.stderr)
    sys.exit(1)


def _run_serve(settings: PipelineSettings) -> None:
    """Internal function to run the MCP server."""
    from .index import IndexManager, IndexUnavailableError, WatchError
    from .server import mcp

    manager = IndexManager(settings)
    IndexManager.set_instance(manager)

    try:
        start = time.time()
        count = manager.start(watch=True)
        print(
            f"Watching {manager.watch_root} "
            f"({count} files queued in {_format_time(time.time() - start)})",
            file=sys.stderr,
        )
    except WatchError as e:
        _fail(f"Cannot watch directory: {e}")
    except IndexUnavailableError as e:
        _fail(f"Index unavailable: {e}")

    try:
        mcp.run()
    finally:
        manager.shutdown()
        IndexManager.set_instance(None)


@app.command
def serve(
    watch_dir: WatchDir = None,
    index_dir: IndexDir = None,
    extensions: Extensions = None,
    verbose: Verbose = False,
    quiet: Quiet = False,
) -> None:
    """
    Run the MCP server.

    This is the default command when no subcommand is specified.
    The watched directory is scanned at startup and then kept in sync
    in real time. Logs go to stderr.
    """
    _configure_logging(verbose, quiet)
    _run_serve(_build_settings(watch_dir, index_dir, extensions))


@app.command
def index(
    watch_dir: WatchDir = None,
    index_dir: IndexDir = None,
    extensions: Extensions = None,
    verbose: Verbose = False,
    quiet: Quiet = False,
) -> None:
    """
    Build a persisted index from disk and exit.

    Requires --index-dir (or FS_SEARCH_INDEX_DIR). A later 'serve' with
    the same index directory starts from this index and only applies
    what changed since.
    """
    from .index import IndexManager, IndexUnavailableError, WatchError

    _configure_logging(verbose, quiet)
    settings = _build_settings(watch_dir, index_dir, extensions)
    if settings.index_dir is None:
        _fail("--index-dir (or FS_SEARCH_INDEX_DIR) is required to build")

    print(f"Building index for {settings.watch_dir.resolve()}...")
    print(f"Index location: {settings.db_path}")
    print()

    manager = IndexManager(settings)
    start = time.time()
    try:
        count = manager.start(watch=False)
        manager.flush()
        manager.index.optimize()
        elapsed = time.time() - start

        stats = manager.get_stats()
        print(f"✓ Indexed {count:,} files in {_format_time(elapsed)}")
        print(f"  Documents: {stats.document_count:,}")
        print(f"  Database size: {_format_size(stats.db_size_mb)}")
        if manager.read_failures:
            print(f"  Skipped (unreadable): {manager.read_failures}")
    except WatchError as e:
        _fail(f"Cannot watch directory: {e}")
    except IndexUnavailableError as e:
        _fail(f"Index unavailable: {e}")
    finally:
        manager.shutdown()


@app.command
def status(
    index_dir: IndexDir = None,
    verbose: Verbose = False,
) -> None:
    """
    Show index statistics.

    Displays:
    - Document count
    - Last commit time
    - Database file size
    """
    from .index import IndexUnavailableError, TextIndex

    _configure_logging(verbose, quiet=not verbose)
    settings = _build_settings(None, index_dir, None)
    db_path = settings.db_path

    if db_path is None or not db_path.exists():
        print("No index found.")
        if db_path is not None:
            print(f"Expected location: {db_path}")
        print()
        print("Run 'fs-text-search-mcp index -i DIR' to build the index.")
        sys.exit(1)

    try:
        text_index = TextIndex(db_path)
    except IndexUnavailableError as e:
        _fail(f"Index unavailable: {e}")

    try:
        stats = text_index.get_stats()
    finally:
        text_index.close()

    print("FS Text Search Index Status")
    print("=" * 40)
    print(f"Location:     {db_path}")
    print(f"Documents:    {stats.document_count:,}")
    print(f"Database:     {_format_size(stats.db_size_mb)}")
    print()
    if stats.last_commit:
        print(f"Last commit:  {stats.last_commit.strftime('%Y-%m-%d %H:%M:%S')}")
    else:
        print("Last commit:  Never")


@app.command
def search(
    keyword: str,
    watch_dir: WatchDir = None,
    index_dir: IndexDir = None,
    extensions: Extensions = None,
    limit: Annotated[
        int | None,
        cyclopts.Parameter(name=["--limit", "-n"], help="Maximum results"),
    ] = None,
    verbose: Verbose = False,
) -> None:
    """
    Search from the terminal.

    Uses the persisted index when --index-dir is given (after bringing it
    up to date with the watched directory), otherwise builds a temporary
    one first.
    """
    from .index import IndexManager, IndexUnavailableError, WatchError

    _configure_logging(verbose, quiet=not verbose)
    settings = _build_settings(watch_dir, index_dir, extensions)

    manager = IndexManager(settings)
    try:
        manager.start(watch=False)
        manager.flush()
        hits = manager.search(keyword, limit=limit)
    except WatchError as e:
        _fail(f"Cannot watch directory: {e}")
    except IndexUnavailableError as e:
        _fail(f"Index unavailable: {e}")
    finally:
        manager.shutdown()

    if not hits:
        print("No matches.")
        return

    for hit in hits:
        print(f"{hit.score:8.3f}  {hit.path}")
        if hit.snippet:
            print(f"          {hit.snippet}")


@app.default
def default_handler(
    watch_dir: WatchDir = None,
    index_dir: IndexDir = None,
    extensions: Extensions = None,
    verbose: Verbose = False,
    quiet: Quiet = False,
) -> None:
    """Run the MCP server (default when no command specified)."""
    _configure_logging(verbose, quiet)
    _run_serve(_build_settings(watch_dir, index_dir, extensions))


def main() -> None:
    """Entry point for the CLI."""
    app()
