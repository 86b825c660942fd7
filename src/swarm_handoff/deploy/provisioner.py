"""Cluster prerequisite provisioning.

Networks, volumes and secrets are created if absent. Existing resources are
success, never errors, and nothing is ever deleted here.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from ..errors import ClusterCommandError, ProvisionError
from .cluster import ClusterManager, Outcome
from .model import ClusterResource, ResourceKind

logger = structlog.get_logger(__name__)

# networks first: services reference them, and volumes/secrets do not
_KIND_ORDER = {ResourceKind.NETWORK: 0, ResourceKind.VOLUME: 1, ResourceKind.SECRET: 2}


@dataclass
class ProvisionResult:
    """Outcome of an ensure() call."""

    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)


class ResourceProvisioner:
    """Idempotently ensure cluster resources exist."""

    def __init__(self, cluster: ClusterManager):
        self.cluster = cluster

    def ensure(self, resources: Iterable[ClusterResource]) -> ProvisionResult:
        """Create every resource that does not exist yet.

        All resources are attempted; failures are collected and raised
        together once every sibling has been tried. ClusterUnreachable is
        not a per-resource failure and propagates immediately.

        Args:
            resources: Resources to ensure.

        Returns:
            ProvisionResult listing created and pre-existing resource keys.

        Raises:
            ProvisionError: One or more resources could not be created.
        """
        result = ProvisionResult()
        failures: dict[str, str] = {}

        for resource in sorted(set(resources), key=lambda r: (_KIND_ORDER[r.kind], r.name)):
            try:
                outcome = self._create(resource)
            except ClusterCommandError as e:
                logger.warning(f"Failed to ensure {resource.key}: {e.message}")
                failures[resource.key] = e.message
                continue

            if outcome == Outcome.CREATED:
                result.created.append(resource.key)
            else:
                result.existing.append(resource.key)

        logger.info(
            "Resources ensured",
            created=len(result.created),
            existing=len(result.existing),
            failed=len(failures),
        )

        if failures:
            raise ProvisionError(
                f"Failed to provision {len(failures)} resource(s): {', '.join(sorted(failures))}",
                failures=failures,
            )
        return result

    def _create(self, resource: ClusterResource) -> Outcome:
        if resource.kind == ResourceKind.NETWORK:
            return self.cluster.create_network(resource.name, resource.driver or "overlay")
        if resource.kind == ResourceKind.VOLUME:
            return self.cluster.create_volume(resource.name)
        if resource.data is None:
            raise ClusterCommandError(f"Secret {resource.name} has no value")
        return self.cluster.create_secret(resource.name, resource.data)
