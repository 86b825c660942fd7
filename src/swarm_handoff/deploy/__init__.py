"""Deployment package for swarm-handoff.

This package provides the `swarm-handoff deploy` command which:
1. Checks Docker and swarm mode prerequisites
2. Provisions networks, volumes and secrets
3. Deploys stacks stage by stage, gated on readiness
4. Hands every stack over to the control plane
5. Reports hostnames that still need DNS records
"""

from .clock import Clock, SystemClock
from .cluster import ClusterManager, DockerSwarmCluster, ExecResult, Outcome
from .controlplane import (
    ControlPlaneClient,
    ControlPlaneEndpoint,
    ControlPlaneSession,
    Credentials,
)
from .definition import DeploymentDefinition, load_definition, parse_definition
from .deployer import StackDeployer
from .graph import DependencyGraph
from .model import (
    ClusterResource,
    DeployHandle,
    DeploymentStage,
    ReadinessProbe,
    ReconciliationRecord,
    ResourceKind,
    RunReport,
    SecretRef,
    ServiceUnit,
    UnitHook,
    UnitState,
)
from .prerequisites import DockerDetector, DockerInfo, ensure_swarm
from .provisioner import ProvisionResult, ResourceProvisioner
from .readiness import ExecProbe, HttpProbe, ProbeState, ReadinessGate, ReadinessResult
from .reconciler import ControlPlaneReconciler
from .scheduler import DependencyScheduler
from .summary import DnsEntry, dns_entries, missing_records
from .template import TemplateRenderer

__all__ = [
    # Model
    "ClusterResource",
    "DeployHandle",
    "DeploymentStage",
    "ReadinessProbe",
    "ReconciliationRecord",
    "ResourceKind",
    "RunReport",
    "SecretRef",
    "ServiceUnit",
    "UnitHook",
    "UnitState",
    # Collaborators
    "Clock",
    "SystemClock",
    "ClusterManager",
    "DockerSwarmCluster",
    "ExecResult",
    "Outcome",
    "TemplateRenderer",
    # Prerequisites
    "DockerDetector",
    "DockerInfo",
    "ensure_swarm",
    # Definition
    "DeploymentDefinition",
    "load_definition",
    "parse_definition",
    # Orchestration
    "ResourceProvisioner",
    "ProvisionResult",
    "StackDeployer",
    "HttpProbe",
    "ExecProbe",
    "ProbeState",
    "ReadinessGate",
    "ReadinessResult",
    "DependencyGraph",
    "DependencyScheduler",
    # Control plane
    "ControlPlaneClient",
    "ControlPlaneEndpoint",
    "ControlPlaneSession",
    "Credentials",
    "ControlPlaneReconciler",
    # Summary
    "DnsEntry",
    "dns_entries",
    "missing_records",
]
