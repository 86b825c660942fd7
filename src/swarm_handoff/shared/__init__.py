"""Shared modules for swarm-handoff.

Logging setup and filesystem locations used by every command.
"""

from .logging import bind_run_context, configure_logging
from .paths import (
    CONFIG_FILE,
    HANDOFF_DIR,
    LOG_DIR,
    RENDERED_DIR,
    ensure_dirs,
    get_log_file,
)

__all__ = [
    # Paths
    "HANDOFF_DIR",
    "CONFIG_FILE",
    "LOG_DIR",
    "RENDERED_DIR",
    "ensure_dirs",
    "get_log_file",
    # Logging
    "configure_logging",
    "bind_run_context",
]
