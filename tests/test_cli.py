"""Tests for the command-line interface."""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from fs_text_search_mcp import cli
from fs_text_search_mcp.index.errors import WatchError
from fs_text_search_mcp.index.manager import IndexManager


class TestBuildSettings:
    """Command-line overrides on top of the environment."""

    def test_defaults_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FS_SEARCH_WATCH_DIR", str(tmp_path))
        monkeypatch.delenv("FS_SEARCH_INDEX_DIR", raising=False)
        monkeypatch.delenv("FS_SEARCH_EXTENSIONS", raising=False)

        settings = cli._build_settings(None, None, None)

        assert settings.watch_dir == tmp_path
        assert settings.index_dir is None
        assert settings.extensions == {"txt", "md"}
        assert settings.db_path is None

    def test_flags_override_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("FS_SEARCH_EXTENSIONS", "rst")

        settings = cli._build_settings(tmp_path, tmp_path / "idx", "log, .CSV")

        assert settings.watch_dir == tmp_path
        assert settings.extensions == {"log", "csv"}
        assert settings.db_path == tmp_path / "idx" / "index.db"


class TestConfigureLogging:
    """Log level selection."""

    @pytest.mark.parametrize(
        "verbose, quiet, expected",
        [
            (False, False, logging.INFO),
            (True, False, logging.DEBUG),
            (False, True, logging.ERROR),
        ],
    )
    def test_levels(self, monkeypatch, verbose, quiet, expected):
        monkeypatch.delenv("FS_SEARCH_LOG_LEVEL", raising=False)
        cli._configure_logging(verbose, quiet)
        assert logging.getLogger().level == expected

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("FS_SEARCH_LOG_LEVEL", "warning")
        cli._configure_logging(verbose=True)
        assert logging.getLogger().level == logging.WARNING


class TestServe:
    """Server startup."""

    def teardown_method(self):
        IndexManager._instance = None

    def test_watch_error_exits_with_message(self, tmp_path, capsys):
        """A missing watch root is fatal at startup."""
        settings = cli._build_settings(tmp_path / "missing", None, None)

        with pytest.raises(SystemExit) as exc_info:
            cli._run_serve(settings)

        assert exc_info.value.code == 1
        assert "✗ Cannot watch directory" in capsys.readouterr().err

    def test_runs_server_and_shuts_down(self, watch_root):
        settings = cli._build_settings(watch_root, None, None)
        mock_mcp = MagicMock()

        with (
            patch("fs_text_search_mcp.server.mcp", mock_mcp),
            patch.object(IndexManager, "start", return_value=0) as mock_start,
            patch.object(IndexManager, "shutdown") as mock_shutdown,
        ):
            cli._run_serve(settings)

        mock_start.assert_called_once_with(watch=True)
        mock_mcp.run.assert_called_once()
        mock_shutdown.assert_called_once()
        assert IndexManager._instance is None

    def test_start_failure_does_not_run_server(self, watch_root):
        settings = cli._build_settings(watch_root, None, None)
        mock_mcp = MagicMock()

        with (
            patch("fs_text_search_mcp.server.mcp", mock_mcp),
            patch.object(
                IndexManager, "start", side_effect=WatchError("boom")
            ),
        ):
            with pytest.raises(SystemExit):
                cli._run_serve(settings)

        mock_mcp.run.assert_not_called()


class TestCommands:
    """One-shot commands."""

    def test_index_requires_index_dir(self, monkeypatch, watch_root, capsys):
        monkeypatch.delenv("FS_SEARCH_INDEX_DIR", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            cli.index(watch_dir=watch_root, quiet=True)

        assert exc_info.value.code == 1
        assert "--index-dir" in capsys.readouterr().err

    def test_index_then_status(self, watch_root: Path, tmp_path, capsys):
        (watch_root / "a.txt").write_text("hello")
        (watch_root / "b.md").write_text("world")
        index_dir = tmp_path / "idx"

        cli.index(watch_dir=watch_root, index_dir=index_dir, quiet=True)
        out = capsys.readouterr().out
        assert "✓ Indexed 2 files" in out
        assert (index_dir / "index.db").exists()

        cli.status(index_dir=index_dir)
        out = capsys.readouterr().out
        assert "Documents:    2" in out

    def test_index_missing_root_keeps_existing_index(
        self, watch_root: Path, tmp_path, capsys
    ):
        """A mistyped --watch-dir fails instead of emptying the index."""
        (watch_root / "a.txt").write_text("hello")
        index_dir = tmp_path / "idx"
        cli.index(watch_dir=watch_root, index_dir=index_dir, quiet=True)
        capsys.readouterr()

        with pytest.raises(SystemExit) as exc_info:
            cli.index(
                watch_dir=tmp_path / "typo", index_dir=index_dir, quiet=True
            )

        assert exc_info.value.code == 1
        assert "✗ Cannot watch directory" in capsys.readouterr().err

        cli.status(index_dir=index_dir)
        assert "Documents:    1" in capsys.readouterr().out

    def test_search_missing_root_fails(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.search("hello", watch_dir=tmp_path / "typo")

        assert exc_info.value.code == 1
        assert "not a directory" in capsys.readouterr().err

    def test_status_without_index(self, tmp_path, capsys):
        with pytest.raises(SystemExit):
            cli.status(index_dir=tmp_path / "nothing")
        assert "No index found." in capsys.readouterr().out

    def test_search_prints_hits(self, watch_root: Path, capsys):
        (watch_root / "a.txt").write_text("needle in a haystack")
        (watch_root / "b.txt").write_text("just hay")

        cli.search("needle", watch_dir=watch_root)

        out = capsys.readouterr().out
        assert str(watch_root / "a.txt") in out
        assert "b.txt" not in out

    def test_search_no_matches(self, watch_root: Path, capsys):
        cli.search("absent", watch_dir=watch_root)
        assert "No matches." in capsys.readouterr().out
