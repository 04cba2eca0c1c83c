"""Path admission rules for the index.

A path is indexed only when its extension is on the allow-list and it does
not live under one of the excluded directories (the index's own storage).
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable

from ..config import parse_extensions
from .events import canonical_path

logger = logging.getLogger(__name__)


class ExtensionFileFilter:
    """
    Admits paths by extension (case-insensitive) and location.

    Usage:
        file_filter = ExtensionFileFilter({"txt", "md"}, exclude=[index_dir])
        file_filter.is_target("/notes/todo.TXT")  # True
    """

    def __init__(
        self,
        extensions: Iterable[str] | str,
        exclude: Iterable[str | os.PathLike[str]] = (),
    ):
        if isinstance(extensions, str):
            self.extensions = parse_extensions(extensions)
        else:
            self.extensions = parse_extensions(",".join(extensions))
        self._excluded = tuple(canonical_path(p) for p in exclude)

    def is_excluded(self, path: str) -> bool:
        """Check whether path is inside (or is) an excluded directory."""
        for excluded in self._excluded:
            if path == excluded or path.startswith(excluded + os.sep):
                return True
        return False

    def has_allowed_extension(self, path: str) -> bool:
        _, ext = os.path.splitext(path)
        return ext[1:].lower() in self.extensions if ext else False

    def is_target(self, path: str) -> bool:
        """Return True if path should be indexed."""
        canonical = canonical_path(path)
        if self.is_excluded(canonical):
            logger.debug("Skipping %s: inside index storage", canonical)
            return False
        if not self.has_allowed_extension(canonical):
            logger.debug("Skipping %s: extension not allowed", canonical)
            return False
        return True
