"""Unit tests for swarm_handoff.shared.paths module."""

import stat
import tempfile
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest


@pytest.mark.cli_unit
class TestPaths:
    """Tests for path constants and functions."""

    def test_handoff_dir_is_in_home(self):
        """Test HANDOFF_DIR is in user's home directory."""
        from swarm_handoff.shared.paths import HANDOFF_DIR

        assert HANDOFF_DIR == Path.home() / ".swarm-handoff"

    def test_config_file_location(self):
        """Test CONFIG_FILE is in HANDOFF_DIR."""
        from swarm_handoff.shared.paths import CONFIG_FILE, HANDOFF_DIR

        assert CONFIG_FILE == HANDOFF_DIR / "config.yaml"

    def test_rendered_dir_location(self):
        """Test rendered definitions go to the temp directory."""
        from swarm_handoff.shared.paths import RENDERED_DIR

        assert RENDERED_DIR == Path(tempfile.gettempdir()) / "stacks_rendered"

    def test_get_log_file(self):
        """Test log file naming."""
        from swarm_handoff.shared.paths import LOG_DIR, get_log_file

        assert get_log_file() == LOG_DIR / "deploy.log"
        assert get_log_file("reconcile") == LOG_DIR / "reconcile.log"


@pytest.mark.cli_unit
class TestEnsureDirs:
    """Tests for ensure_dirs function."""

    def test_ensure_dirs_creates_directory_with_secure_permissions(self):
        """Test ensure_dirs creates HANDOFF_DIR with 0o700 permissions."""
        with TemporaryDirectory() as tmpdir:
            test_dir = Path(tmpdir) / ".swarm-handoff"

            with patch("swarm_handoff.shared.paths.HANDOFF_DIR", test_dir):
                from swarm_handoff.shared.paths import ensure_dirs

                assert not test_dir.exists()
                ensure_dirs()
                assert test_dir.exists()
                assert stat.S_IMODE(test_dir.stat().st_mode) == 0o700

                # Idempotent
                ensure_dirs()
