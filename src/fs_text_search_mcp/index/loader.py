"""Directory scanning and file materialization.

Provides:
- LazyDirectoryLoader.scan(): cold-start walk of the watch root
- LazyDirectoryLoader.load_file(): read one file into a Document
- read_file_with_retry(): UTF-8 read with backoff for transient errors

Scanning never reads file content; content is read lazily by the queue
workers when an UPSERT is applied.
"""

from __future__ import annotations

import logging
import os
import time
from typing import TYPE_CHECKING

from .errors import ReadFailure
from .events import Document, canonical_path

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .filter import ExtensionFileFilter

logger = logging.getLogger(__name__)

MAX_READ_RETRIES = 3
RETRY_DELAY_MS = 10  # Multiplied by attempt number


def read_file_with_retry(path: str, max_retries: int = MAX_READ_RETRIES) -> str:
    """
    Read a file as strict UTF-8, retrying transient OS errors.

    A writer may still hold the file when the change notification arrives,
    so OSErrors are retried with a short linear backoff. Decode errors are
    permanent and are not retried.

    Raises:
        FileNotFoundError: If the file does not exist (not retried)
        OSError: If every attempt failed
        UnicodeDecodeError: If the content is not valid UTF-8
    """
    attempt = 0
    while True:
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            raise
        except OSError as e:
            if attempt >= max_retries:
                raise
            attempt += 1
            logger.debug("Retry %d for %s: %s", attempt, path, e)
            time.sleep(RETRY_DELAY_MS * attempt / 1000)


class LazyDirectoryLoader:
    """Enumerates admitted files under a root and loads their content."""

    def __init__(
        self,
        file_filter: ExtensionFileFilter,
        max_file_bytes: int = 10 * 1024 * 1024,
    ):
        self.file_filter = file_filter
        self.max_file_bytes = max_file_bytes

    def scan(self, root: str | os.PathLike[str]) -> Iterator[str]:
        """
        Recursively yield canonical paths of admitted regular files.

        Unreadable directories are logged and skipped; the walk continues.
        """

        def on_error(error: OSError) -> None:
            logger.warning("Skipping unreadable directory: %s", error)

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
            # Don't descend into the index's own storage
            dirnames[:] = [
                d
                for d in dirnames
                if not self.file_filter.is_excluded(
                    canonical_path(os.path.join(dirpath, d))
                )
            ]
            dirnames.sort()
            for name in sorted(filenames):
                path = canonical_path(os.path.join(dirpath, name))
                if not self.file_filter.is_target(path):
                    continue
                try:
                    if not os.path.isfile(path):
                        continue
                except OSError as e:
                    logger.warning("Skipping %s: %s", path, e)
                    continue
                yield path

    def load_file(self, path: str) -> Document:
        """
        Materialize a file into a Document.

        Raises:
            FileNotFoundError: If the file no longer exists
            ReadFailure: If the file is too large, unreadable, or not UTF-8
        """
        try:
            stat = os.stat(path)
        except FileNotFoundError:
            raise
        except OSError as e:
            raise ReadFailure(path, str(e)) from e

        if stat.st_size > self.max_file_bytes:
            raise ReadFailure(
                path,
                f"file size {stat.st_size} exceeds limit "
                f"{self.max_file_bytes}",
            )

        try:
            content = read_file_with_retry(path)
        except FileNotFoundError:
            raise
        except UnicodeDecodeError as e:
            raise ReadFailure(path, f"not valid UTF-8 ({e.reason})") from e
        except OSError as e:
            raise ReadFailure(path, str(e)) from e

        return Document(
            path=path,
            content=content,
            size=stat.st_size,
            mtime=stat.st_mtime,
        )
