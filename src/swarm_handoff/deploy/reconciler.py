"""Hand ownership of deployed stacks to the control plane.

The control plane only takes full lifecycle ownership of stacks created
through its "create from file" endpoint; adopting an existing stack is not
possible. Stacks are therefore removed from the cluster and recreated
through the API. Every step is idempotent, so an interrupted handoff can be
resumed by running it again.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence

import structlog

from ..errors import OrchestratorError, RunCancelled
from .clock import Clock, SystemClock
from .cluster import ClusterManager, Outcome
from .controlplane import ControlPlaneClient, ControlPlaneEndpoint, Credentials
from .deployer import StackDeployer
from .model import RunReport, ServiceUnit, UnitState

logger = structlog.get_logger(__name__)

ClientFactory = Callable[[ControlPlaneEndpoint], ControlPlaneClient]
ProgressCallback = Callable[[str, str], None]


class ControlPlaneReconciler:
    """Delete direct deployments and recreate them as managed stacks."""

    def __init__(
        self,
        cluster: ClusterManager,
        deployer: StackDeployer,
        params: Mapping[str, str],
        client_factory: ClientFactory = ControlPlaneClient,
        clock: Clock | None = None,
        drain_attempts: int = 60,
        drain_interval: float = 3.0,
        cancel_event: threading.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        """Initialize reconciler.

        Args:
            cluster: Cluster manager.
            deployer: Used to render unit templates.
            params: Environment used for rendering.
            client_factory: Builds the control plane client for an endpoint.
            clock: Time source for the drain wait.
            drain_attempts: Maximum polls of the active service count.
            drain_interval: Seconds between drain polls.
            cancel_event: Checked before the destructive steps start.
            on_progress: Optional callback called with (unit, message).
        """
        self.cluster = cluster
        self.deployer = deployer
        self.params = params
        self.client_factory = client_factory
        self.clock = clock or SystemClock()
        self.drain_attempts = drain_attempts
        self.drain_interval = drain_interval
        self.cancel_event = cancel_event
        self.on_progress = on_progress

    def _progress(self, unit: str, message: str) -> None:
        if self.on_progress:
            self.on_progress(unit, message)

    def reconcile(
        self,
        units: Sequence[ServiceUnit],
        endpoint: ControlPlaneEndpoint,
        credentials: Credentials,
        report: RunReport | None = None,
    ) -> RunReport:
        """Transfer ownership of ``units`` to the control plane.

        Args:
            units: Units in deployment order.
            endpoint: Control plane location.
            credentials: Control plane login.
            report: Report to record into (a new one by default).

        Returns:
            RunReport. Units whose recreation fails are recorded as failed and
            redeployed directly; units with ``handoff`` off are left alone.

        Raises:
            AuthError: No valid session. Nothing has been torn down.
            ConfigError: A template cannot be rendered. Nothing torn down.
            ControlPlaneUnreachable: The API cannot be reached before teardown.
            ClusterUnreachable: The cluster cannot be reached before recreation.
            RunCancelled: Cancellation requested before teardown.
        """
        report = report or RunReport()

        with self.client_factory(endpoint) as client:
            session = client.authenticate(credentials)

            managed = client.managed_stack_names(session)
            pending: list[ServiceUnit] = []
            for unit in units:
                if not unit.handoff:
                    self._progress(unit.name, "hosts the control plane, kept as direct deployment")
                    continue
                if unit.name in managed or report.state_of(unit.name) == UnitState.DEPLOYED_MANAGED:
                    if report.state_of(unit.name) != UnitState.DEPLOYED_MANAGED:
                        report.transition(unit.name, UnitState.DEPLOYED_MANAGED)
                    self._progress(unit.name, "already managed, skipped")
                else:
                    pending.append(unit)

            if not pending:
                logger.info("All stacks already managed by the control plane")
                return report

            # everything that can fail without side effects happens before teardown
            swarm_id = self.cluster.cluster_id()
            definitions = {unit.name: self.deployer.render(unit, self.params) for unit in pending}

            if self.cancel_event is not None and self.cancel_event.is_set():
                raise RunCancelled("Reconciliation cancelled before teardown")

            torn_down = self._teardown(pending, report)
            self._drain(torn_down, report)

            for unit in pending:
                try:
                    client.create_stack(session, unit.name, swarm_id, definitions[unit.name])
                except OrchestratorError as e:
                    logger.warning(f"Recreating {unit.name} through the control plane failed: {e.message}")
                    report.transition(unit.name, UnitState.FAILED, error=e.message)
                    self._progress(unit.name, f"recreate failed: {e.message}")
                    self._redeploy_direct(unit, report)
                    continue
                report.transition(unit.name, UnitState.DEPLOYED_MANAGED)
                self._progress(unit.name, "recreated under control plane")

        return report

    def _redeploy_direct(self, unit: ServiceUnit, report: RunReport) -> None:
        """Bring a torn-down unit back without the control plane.

        The unit stays ``failed`` so the run exits non-zero; a rerun tears it
        down again and retries the handoff.
        """
        record = report.record(unit.name)
        try:
            self.deployer.deploy(unit, self.params)
        except OrchestratorError as e:
            logger.error(f"Direct redeploy of {unit.name} failed: {e.message}")
            record.warnings.append(f"left removed, direct redeploy failed: {e.message}")
            self._progress(unit.name, "direct redeploy failed, stack is not running")
            return
        record.warnings.append("redeployed directly, rerun to hand it over")
        self._progress(unit.name, "redeployed directly")

    def _teardown(self, units: Sequence[ServiceUnit], report: RunReport) -> list[str]:
        removed: list[str] = []
        for unit in units:
            outcome = self.cluster.remove_unit(unit.name)
            if outcome == Outcome.NOT_FOUND:
                logger.debug(f"Stack {unit.name} not found, nothing to remove")
            report.transition(unit.name, UnitState.TORN_DOWN)
            self._progress(unit.name, "removed")
            removed.append(unit.name)
        return removed

    def _drain(self, stacks: list[str], report: RunReport) -> None:
        """Wait for services of removed stacks to disappear.

        Exhausting the attempts is only a warning: recreation proceeds.
        """
        if not stacks or self.drain_attempts <= 0:
            return

        active = 0
        for attempt in range(1, self.drain_attempts + 1):
            active = self.cluster.list_services(stacks)
            if active == 0:
                logger.info("Services drained", attempts=attempt)
                return
            if attempt < self.drain_attempts:
                self.clock.sleep(self.drain_interval)

        warning = f"{active} service(s) still active after {self.drain_attempts} drain checks"
        logger.warning(warning)
        report.warn(warning)
