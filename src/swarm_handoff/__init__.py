"""swarm-handoff - Deploy interdependent stacks to Docker Swarm and hand them to Portainer."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("swarm-handoff")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"  # Fallback for editable installs without metadata

from .main import main

__all__ = ["main", "__version__"]
