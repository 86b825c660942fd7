"""Data model for deployment runs.

Units, probes and resources are built once per run from the orchestration
definition and never mutated. Reconciliation records are the only mutable
state and each one is written by a single owner at a time.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ResourceKind(Enum):
    """Kind of cluster-level prerequisite."""

    NETWORK = "network"
    VOLUME = "volume"
    SECRET = "secret"


@dataclass(frozen=True)
class ClusterResource:
    """A network, volume or secret identified by kind and name."""

    kind: ResourceKind
    name: str
    driver: str | None = field(default=None, compare=False)
    data: bytes | None = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> str:
        return f"{self.kind.value}/{self.name}"

    @classmethod
    def network(cls, name: str, driver: str = "overlay") -> ClusterResource:
        return cls(ResourceKind.NETWORK, name, driver=driver)

    @classmethod
    def volume(cls, name: str) -> ClusterResource:
        return cls(ResourceKind.VOLUME, name)

    @classmethod
    def secret(cls, name: str, data: bytes) -> ClusterResource:
        return cls(ResourceKind.SECRET, name, data=data)


@dataclass(frozen=True)
class SecretRef:
    """Secret a unit needs, with the environment key holding its value."""

    name: str
    env_key: str


@dataclass(frozen=True)
class ReadinessProbe:
    """Health probe for a unit.

    For ``http``/``https`` the endpoint is a URL template and ``expected`` is
    a status code, or None for any 2xx. For ``exec`` the endpoint is a
    container name filter, ``command`` runs inside the first matching
    container and ``expected`` is the exit code (default 0).
    """

    protocol: str
    endpoint: str
    expected: int | None = None
    command: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.protocol not in ("http", "https", "exec"):
            raise ValueError(f"Unsupported probe protocol: {self.protocol}")
        if self.protocol == "exec" and not self.command:
            raise ValueError("exec probes require a command")


@dataclass(frozen=True)
class UnitHook:
    """Command run inside a unit's container once the unit is ready."""

    service: str
    command: tuple[str, ...]
    env: tuple[tuple[str, str], ...] = ()
    description: str = ""


@dataclass(frozen=True)
class ServiceUnit:
    """A named stack deployed from a parameterized template."""

    name: str
    template: Path
    volumes: tuple[str, ...] = ()
    networks: tuple[str, ...] = ()
    secrets: tuple[SecretRef, ...] = ()
    probe: ReadinessProbe | None = None
    depends_on: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()
    hooks: tuple[UnitHook, ...] = ()
    # false for units the control plane itself runs on; they stay direct deployments
    handoff: bool = True

    def resources(self) -> set[ClusterResource]:
        """Volumes and networks this unit requires (secrets excluded)."""
        required = {ClusterResource.volume(v) for v in self.volumes}
        required |= {ClusterResource.network(n) for n in self.networks}
        return required


@dataclass(frozen=True)
class DeploymentStage:
    """Units with no interdependency, deployed together."""

    index: int
    units: tuple[ServiceUnit, ...]

    @property
    def names(self) -> list[str]:
        return [u.name for u in self.units]


@dataclass(frozen=True)
class DeployHandle:
    """Result of a stack submission, consumed by the readiness gate."""

    unit: str
    apply_mode: str
    definition_path: Path | None = None
    output: str = ""


class UnitState(Enum):
    """Per-unit reconciliation state."""

    PENDING = "pending"
    DEPLOYED_DIRECT = "deployed-direct"
    READY = "ready"
    TIMED_OUT = "timed-out"
    TORN_DOWN = "torn-down"
    DEPLOYED_MANAGED = "deployed-managed"
    FAILED = "failed"


@dataclass
class ReconciliationRecord:
    """Outcome of one unit over the run."""

    unit: str
    state: UnitState = UnitState.PENDING
    history: list[tuple[int, UnitState]] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def sequence_of(self, state: UnitState) -> int | None:
        """Sequence number of the first transition into ``state``."""
        for seq, recorded in self.history:
            if recorded == state:
                return seq
        return None


class RunReport:
    """Per-unit records for one orchestration run.

    Record creation and the sequence counter are guarded by a lock. Each
    record is then mutated only by the component that currently owns the
    unit (one scheduler worker, later the reconciler).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sequence = 0
        self.records: dict[str, ReconciliationRecord] = {}
        self.warnings: list[str] = []

    def record(self, unit: str) -> ReconciliationRecord:
        with self._lock:
            if unit not in self.records:
                self.records[unit] = ReconciliationRecord(unit)
            return self.records[unit]

    def transition(self, unit: str, state: UnitState, error: str | None = None) -> None:
        record = self.record(unit)
        with self._lock:
            self._sequence += 1
            seq = self._sequence
        record.state = state
        record.history.append((seq, state))
        if error is not None:
            record.error = error

    def state_of(self, unit: str) -> UnitState:
        record = self.records.get(unit)
        return record.state if record else UnitState.PENDING

    def units_in(self, *states: UnitState) -> list[str]:
        return [name for name, rec in self.records.items() if rec.state in states]

    def warn(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    @property
    def failed(self) -> list[str]:
        return self.units_in(UnitState.FAILED)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, object]:
        return {
            "units": {
                name: {
                    "state": rec.state.value,
                    "error": rec.error,
                    "warnings": list(rec.warnings),
                }
                for name, rec in self.records.items()
            },
            "warnings": list(self.warnings),
        }
