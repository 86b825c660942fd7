"""Shared test fixtures for swarm-handoff tests.

This module provides in-memory collaborators for the orchestration tests:
- FakeCluster: Records every cluster manager call, with scriptable failures
- FakeClock: Advances time on sleep instead of waiting
- FakeControlPlane: Portainer-style API served through httpx.MockTransport
"""

import json
import re
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import pytest

from swarm_handoff.deploy import ControlPlaneClient, ExecResult, Outcome, ServiceUnit
from swarm_handoff.errors import ClusterCommandError, ClusterUnreachable, SubmissionRejected

# =============================================================================
# Fake cluster manager
# =============================================================================


class FakeCluster:
    """ClusterManager that keeps state in memory and records calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []
        self.networks: set[str] = set()
        self.volumes: set[str] = set()
        self.secrets: dict[str, bytes] = {}
        self.stacks: dict[str, str] = {}

        # Scripted behaviour
        self.fail_create: dict[str, str] = {}
        self.reject_deploy: set[str] = set()
        self.unreachable = False
        self.service_counts: list[int] = []
        self.exec_exit_codes: dict[str, list[int]] = defaultdict(list)
        self.execs: list[tuple[str, tuple[str, ...], dict[str, str]]] = []

    def _record(self, method: str, name: str) -> None:
        if self.unreachable:
            raise ClusterUnreachable("Cannot connect to the Docker daemon")
        with self._lock:
            self.calls.append((method, name))

    def calls_to(self, method: str) -> list[str]:
        return [name for m, name in self.calls if m == method]

    def _create(self, store: Any, name: str) -> Outcome:
        if name in self.fail_create:
            raise ClusterCommandError(self.fail_create[name])
        if name in store:
            return Outcome.EXISTS
        return Outcome.CREATED

    def create_network(self, name: str, driver: str = "overlay") -> Outcome:
        self._record("create_network", name)
        outcome = self._create(self.networks, name)
        self.networks.add(name)
        return outcome

    def create_volume(self, name: str) -> Outcome:
        self._record("create_volume", name)
        outcome = self._create(self.volumes, name)
        self.volumes.add(name)
        return outcome

    def create_secret(self, name: str, data: bytes) -> Outcome:
        self._record("create_secret", name)
        outcome = self._create(self.secrets, name)
        self.secrets.setdefault(name, data)
        return outcome

    def delete_secret(self, name: str) -> Outcome:
        self._record("delete_secret", name)
        if self.secrets.pop(name, None) is None:
            return Outcome.NOT_FOUND
        return Outcome.REMOVED

    def deploy_unit(self, name: str, definition: str | None = None, path: Path | None = None) -> str:
        self._record("deploy_unit", name)
        if name in self.reject_deploy:
            raise SubmissionRejected(f"Stack {name} rejected", unit=name)
        with self._lock:
            self.stacks[name] = definition if definition is not None else Path(path).read_text()
        return f"Creating service {name}"

    def remove_unit(self, name: str) -> Outcome:
        self._record("remove_unit", name)
        with self._lock:
            if self.stacks.pop(name, None) is None:
                return Outcome.NOT_FOUND
        return Outcome.REMOVED

    def list_services(self, stacks=None) -> int:
        self._record("list_services", ",".join(stacks or []))
        if self.service_counts:
            return self.service_counts.pop(0)
        return 0

    def cluster_id(self) -> str:
        self._record("cluster_id", "")
        return "swarm-cluster-1"

    def exec_in_service(self, name_filter, command, env=None) -> ExecResult:
        self._record("exec_in_service", name_filter)
        with self._lock:
            self.execs.append((name_filter, tuple(command), dict(env or {})))
            codes = self.exec_exit_codes[name_filter]
            code = codes.pop(0) if codes else 0
        return ExecResult(code, "" if code == 0 else "command failed", f"{name_filter}.1")


# =============================================================================
# Fake clock
# =============================================================================


class FakeClock:
    """Clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.current = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def now(self) -> float:
        return self.current

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.current += seconds


# =============================================================================
# Fake control plane
# =============================================================================


def _form_field(content: bytes, name: str) -> str | None:
    match = re.search(rb'name="' + name.encode() + rb'"\r\n\r\n([^\r]*)\r\n', content)
    return match.group(1).decode() if match else None


@dataclass
class FakeControlPlane:
    """Portainer-style control plane API."""

    username: str = "admin"
    password: str = "secret-password"
    token: str | None = "jwt-token"
    stacks: list[dict[str, Any]] = field(default_factory=list)
    reject: set[str] = field(default_factory=set)
    forbid: set[str] = field(default_factory=set)
    # connections are refused once this many stacks were created
    fail_after: int | None = None
    unreachable: bool = False
    requests: list[httpx.Request] = field(default_factory=list)

    @property
    def created(self) -> list[str]:
        return [
            _form_field(r.content, "Name")
            for r in self.requests
            if r.url.path == "/api/stacks/create/swarm/file"
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)

        if request.url.path == "/api/auth":
            body = json.loads(request.content)
            if body != {"Username": self.username, "Password": self.password}:
                return httpx.Response(422, json={"message": "Invalid credentials"})
            return httpx.Response(200, json={"jwt": self.token})

        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"message": "Unauthorized"})

        if request.method == "GET" and request.url.path == "/api/stacks":
            return httpx.Response(200, json=self.stacks)

        if request.method == "POST" and request.url.path == "/api/stacks/create/swarm/file":
            if self.fail_after is not None and len(self.stacks) >= self.fail_after:
                raise httpx.ConnectError("Connection refused", request=request)
            name = _form_field(request.content, "Name")
            if name in self.forbid:
                return httpx.Response(403, json={"message": "Access denied to resource"})
            if name in self.reject:
                return httpx.Response(400, json={"message": f"Invalid stack file for {name}"})
            stack = {"Id": len(self.stacks) + 1, "Name": name}
            self.stacks.append(stack)
            return httpx.Response(200, json=stack)

        return httpx.Response(404, json={"message": "Not found"})

    def client_factory(self, endpoint):
        return ControlPlaneClient(endpoint, transport=httpx.MockTransport(self.handler))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def params() -> dict[str, str]:
    return {
        "SERVER_IP": "203.0.113.10",
        "DOMAIN": "example.com",
        "EMAIL": "ops@example.com",
        "PASSWORD_32": "secret-password",
    }


@pytest.fixture
def stacks_dir(tmp_path: Path):
    """Directory with a template per unit name, created on demand."""
    directory = tmp_path / "stacks"
    directory.mkdir()

    def write(name: str, body: str | None = None) -> Path:
        path = directory / f"{name}.yaml"
        path.write_text(
            body
            if body is not None
            else (
                'version: "3.7"\n'
                "services:\n"
                f"  {name}:\n"
                "    image: nginx\n"
                "    deploy:\n"
                "      labels:\n"
                f"        - traefik.http.routers.{name}.rule=Host(`{name}.${{DOMAIN}}`)\n"
            )
        )
        return path

    write.path = directory  # type: ignore[attr-defined]
    return write


@pytest.fixture
def make_unit(stacks_dir):
    """Build a ServiceUnit whose template exists."""

    def make(name: str, **kwargs: Any) -> ServiceUnit:
        template = stacks_dir(name, kwargs.pop("body", None))
        return ServiceUnit(name=name, template=template, **kwargs)

    return make
