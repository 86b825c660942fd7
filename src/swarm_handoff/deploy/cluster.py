"""Cluster manager access for Docker Swarm.

This module wraps the ``docker`` CLI. "Already exists" and "not found"
responses are returned as typed outcomes; every other failure raises, so
callers never have to suppress errors wholesale.
"""

from __future__ import annotations

import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import structlog

from ..errors import ClusterCommandError, ClusterUnreachable, SubmissionRejected

logger = structlog.get_logger(__name__)

# stderr fragments the docker daemon uses for idempotency outcomes
ALREADY_EXISTS_MARKERS = ("already exists", "AlreadyExists")
NOT_FOUND_MARKERS = ("not found", "No such", "NotFound", "Nothing found in stack")
UNREACHABLE_MARKERS = (
    "Cannot connect to the Docker daemon",
    "error during connect",
    "Is the docker daemon running",
    "connection refused",
)


class Outcome(Enum):
    """Result of an idempotent cluster operation."""

    CREATED = "created"
    EXISTS = "exists"
    REMOVED = "removed"
    NOT_FOUND = "not_found"


@dataclass
class ExecResult:
    """Result of a command run inside a service container."""

    exit_code: int
    output: str = ""
    container: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ClusterManager(Protocol):
    """Operations the orchestrator needs from the cluster manager."""

    def create_network(self, name: str, driver: str = "overlay") -> Outcome: ...

    def create_volume(self, name: str) -> Outcome: ...

    def create_secret(self, name: str, data: bytes) -> Outcome: ...

    def delete_secret(self, name: str) -> Outcome: ...

    def deploy_unit(
        self, name: str, definition: str | None = None, path: Path | None = None
    ) -> str: ...

    def remove_unit(self, name: str) -> Outcome: ...

    def list_services(self, stacks: Iterable[str] | None = None) -> int: ...

    def cluster_id(self) -> str: ...

    def exec_in_service(
        self,
        name_filter: str,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
    ) -> ExecResult: ...


def _matches(text: str, markers: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(marker.lower() in lowered for marker in markers)


class DockerSwarmCluster:
    """ClusterManager implementation over the docker CLI."""

    def __init__(self, docker_bin: str = "docker", timeout_seconds: float = 120.0):
        """Initialize cluster access.

        Args:
            docker_bin: docker executable name or path.
            timeout_seconds: Timeout for each docker invocation.
        """
        self.docker_bin = docker_bin
        self.timeout_seconds = timeout_seconds

    def _run(
        self, args: list[str], input_data: str | bytes | None = None
    ) -> subprocess.CompletedProcess:
        """Run a docker command, raising ClusterUnreachable on transport failure."""
        cmd = [self.docker_bin, *args]
        logger.debug(f"Running: {' '.join(cmd[:4])}")
        try:
            result = subprocess.run(
                cmd,
                input=input_data,
                capture_output=True,
                text=not isinstance(input_data, bytes),
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError:
            raise ClusterUnreachable(f"{self.docker_bin} not found. Is Docker installed?")
        except subprocess.TimeoutExpired:
            raise ClusterUnreachable(
                f"docker {args[0]} timed out after {self.timeout_seconds}s",
                details={"command": args[:2]},
            )

        if result.returncode != 0:
            stderr = result.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode(errors="replace")
            if _matches(stderr or "", UNREACHABLE_MARKERS):
                raise ClusterUnreachable(
                    f"Cluster manager unreachable: {stderr.strip()}",
                    details={"command": args[:2]},
                )
        return result

    @staticmethod
    def _stderr(result: subprocess.CompletedProcess) -> str:
        stderr = result.stderr or ""
        if isinstance(stderr, bytes):
            stderr = stderr.decode(errors="replace")
        return stderr.strip()

    def _create(self, kind: str, name: str, args: list[str], input_data=None) -> Outcome:
        result = self._run(args, input_data)
        if result.returncode == 0:
            logger.info(f"Created {kind} {name}")
            return Outcome.CREATED
        stderr = self._stderr(result)
        if _matches(stderr, ALREADY_EXISTS_MARKERS):
            logger.debug(f"{kind} {name} already exists")
            return Outcome.EXISTS
        raise ClusterCommandError(
            f"Failed to create {kind} {name}: {stderr}",
            details={"kind": kind, "name": name},
        )

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def create_network(self, name: str, driver: str = "overlay") -> Outcome:
        return self._create(
            "network", name, ["network", "create", f"--driver={driver}", "--attachable", name]
        )

    def create_volume(self, name: str) -> Outcome:
        # docker volume create succeeds silently for existing volumes
        if self._run(["volume", "inspect", name]).returncode == 0:
            return Outcome.EXISTS
        return self._create("volume", name, ["volume", "create", name])

    def create_secret(self, name: str, data: bytes) -> Outcome:
        return self._create("secret", name, ["secret", "create", name, "-"], input_data=data)

    def delete_secret(self, name: str) -> Outcome:
        result = self._run(["secret", "rm", name])
        if result.returncode == 0:
            return Outcome.REMOVED
        stderr = self._stderr(result)
        if _matches(stderr, NOT_FOUND_MARKERS):
            return Outcome.NOT_FOUND
        raise ClusterCommandError(f"Failed to remove secret {name}: {stderr}")

    # -------------------------------------------------------------------------
    # Stacks
    # -------------------------------------------------------------------------

    def deploy_unit(
        self, name: str, definition: str | None = None, path: Path | None = None
    ) -> str:
        """Deploy or update a stack.

        Args:
            name: Stack name.
            definition: Rendered definition piped on stdin (direct apply).
            path: Rendered definition file (file apply).

        Returns:
            docker output.

        Raises:
            SubmissionRejected: The definition was refused.
            ClusterUnreachable: The daemon could not be reached.
        """
        if (definition is None) == (path is None):
            raise ValueError("Pass exactly one of definition or path")

        source = "-" if path is None else str(path)
        result = self._run(
            ["stack", "deploy", "--with-registry-auth", "-c", source, name],
            input_data=definition,
        )
        if result.returncode != 0:
            raise SubmissionRejected(
                f"Stack {name} rejected: {self._stderr(result)}",
                unit=name,
                details={"stderr": self._stderr(result)},
            )
        return (result.stdout or "").strip()

    def remove_unit(self, name: str) -> Outcome:
        result = self._run(["stack", "rm", name])
        stderr = self._stderr(result)
        if result.returncode == 0:
            # "Nothing found in stack" is reported with exit code 0 by older engines
            if _matches(stderr, NOT_FOUND_MARKERS):
                return Outcome.NOT_FOUND
            return Outcome.REMOVED
        if _matches(stderr, NOT_FOUND_MARKERS):
            return Outcome.NOT_FOUND
        raise ClusterCommandError(f"Failed to remove stack {name}: {stderr}")

    def list_services(self, stacks: Iterable[str] | None = None) -> int:
        """Count active services, optionally limited to the given stacks."""
        if stacks is None:
            result = self._run(["service", "ls", "-q"])
            if result.returncode != 0:
                raise ClusterCommandError(f"Failed to list services: {self._stderr(result)}")
            return len([line for line in result.stdout.splitlines() if line.strip()])

        total = 0
        for stack in stacks:
            result = self._run(
                ["service", "ls", "-q", "--filter", f"label=com.docker.stack.namespace={stack}"]
            )
            if result.returncode != 0:
                raise ClusterCommandError(f"Failed to list services: {self._stderr(result)}")
            total += len([line for line in result.stdout.splitlines() if line.strip()])
        return total

    def cluster_id(self) -> str:
        result = self._run(["info", "-f", "{{.Swarm.Cluster.ID}}"])
        cluster_id = (result.stdout or "").strip()
        if result.returncode != 0 or not cluster_id:
            raise ClusterCommandError(
                f"Cannot read swarm cluster id: {self._stderr(result) or 'swarm not active'}"
            )
        return cluster_id

    def init_swarm(self, advertise_addr: str) -> Outcome:
        result = self._run(["swarm", "init", f"--advertise-addr={advertise_addr}"])
        if result.returncode == 0:
            return Outcome.CREATED
        stderr = self._stderr(result)
        if "already part of a swarm" in stderr:
            return Outcome.EXISTS
        raise ClusterCommandError(f"Failed to initialize swarm: {stderr}")

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def exec_in_service(
        self,
        name_filter: str,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
    ) -> ExecResult:
        """Run a command in the first running container matching ``name_filter``.

        A missing container is reported as exit code 127 rather than raised:
        during cold start the container simply may not exist yet.
        """
        ps = self._run(["ps", "--filter", f"name={name_filter}", "-q"])
        containers = [line for line in (ps.stdout or "").splitlines() if line.strip()]
        if ps.returncode != 0 or not containers:
            return ExecResult(127, f"No running container matches {name_filter}")

        container = containers[0]
        args = ["exec", "-i"]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(container)
        args.extend(command)

        result = self._run(args)
        output = (result.stdout or "") + (self._stderr(result) if result.returncode else "")
        return ExecResult(result.returncode, output.strip(), container)
