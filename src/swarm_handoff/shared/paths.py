"""Path management for swarm-handoff.

Manages the ~/.swarm-handoff/ directory structure.
"""

import tempfile
from pathlib import Path

# Base directory for CLI config and logs
HANDOFF_DIR = Path.home() / ".swarm-handoff"

# CLI configuration file
CONFIG_FILE = HANDOFF_DIR / "config.yaml"

# Log directory (same as base for simplicity)
LOG_DIR = HANDOFF_DIR

# Rendered stack definitions (file apply mode and control plane uploads)
RENDERED_DIR = Path(tempfile.gettempdir()) / "stacks_rendered"


def ensure_dirs() -> None:
    """Create directory structure if missing.

    Creates ~/.swarm-handoff/ (mode 0o700, user-only access since the
    rendered definitions and logs may contain credentials).
    """
    HANDOFF_DIR.mkdir(mode=0o700, parents=True, exist_ok=True)


def get_log_file(name: str = "deploy") -> Path:
    """Get path to a log file.

    Args:
        name: Log file name (without extension)

    Returns:
        Path to the log file
    """
    return LOG_DIR / f"{name}.log"
