"""Prerequisite detection for the deploy command.

Checks that the docker CLI and daemon are available and that the local
node is a swarm manager, initializing a single-node swarm when needed.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass

import structlog

from .cluster import DockerSwarmCluster, Outcome

logger = structlog.get_logger(__name__)


@dataclass
class DockerInfo:
    """Docker runtime detection result."""

    docker_available: bool
    docker_version: str | None = None
    swarm_state: str | None = None
    error: str | None = None

    @property
    def swarm_active(self) -> bool:
        return self.swarm_state == "active"


class DockerDetector:
    """Detect Docker Engine and swarm mode."""

    def __init__(self, docker_bin: str = "docker"):
        self.docker_bin = docker_bin

    def detect(self) -> DockerInfo:
        """Check for Docker and read the local swarm state."""
        if not shutil.which(self.docker_bin):
            return DockerInfo(
                docker_available=False,
                error="Docker not found. Install Docker: https://docs.docker.com/get-docker/",
            )

        try:
            result = subprocess.run(
                [self.docker_bin, "version", "--format", "{{.Server.Version}}"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            if result.returncode != 0:
                return DockerInfo(
                    docker_available=False,
                    error=f"Docker not responding: {result.stderr.strip()}",
                )
            docker_version = result.stdout.strip()

            result = subprocess.run(
                [self.docker_bin, "info", "--format", "{{.Swarm.LocalNodeState}}"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            swarm_state = result.stdout.strip() if result.returncode == 0 else None
        except subprocess.TimeoutExpired:
            return DockerInfo(
                docker_available=False,
                error="Docker not responding (timeout)",
            )

        return DockerInfo(
            docker_available=True,
            docker_version=docker_version,
            swarm_state=swarm_state,
        )


def ensure_swarm(
    cluster: DockerSwarmCluster,
    advertise_addr: str,
    detector: DockerDetector | None = None,
) -> tuple[bool, str]:
    """Make sure the local node runs in swarm mode.

    Args:
        cluster: Cluster access used for ``swarm init``.
        advertise_addr: Address to advertise when initializing the swarm.
        detector: Docker detector (default: one for the cluster's binary).

    Returns:
        Tuple of (success, message).
    """
    detector = detector or DockerDetector(cluster.docker_bin)
    info = detector.detect()
    if not info.docker_available:
        return False, info.error or "Docker not available"

    if info.swarm_active:
        return True, f"Docker {info.docker_version}, swarm active"

    logger.info("Initializing swarm", advertise_addr=advertise_addr)
    outcome = cluster.init_swarm(advertise_addr)
    if outcome == Outcome.EXISTS:
        return True, f"Docker {info.docker_version}, swarm already initialized"
    return True, f"Docker {info.docker_version}, swarm initialized on {advertise_addr}"
