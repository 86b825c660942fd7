"""Stage-by-stage deployment of the dependency graph.

Stages come from the topological layering of the graph. Within a stage,
units deploy concurrently; every unit of a stage must pass (or soft-fail)
its readiness gate before the next stage starts. That is the only ordering
guarantee the scheduler gives.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor

import structlog

from ..errors import (
    ClusterCommandError,
    ClusterUnreachable,
    ConfigError,
    DeployError,
    ProvisionError,
    ReadinessTimeoutError,
    RunCancelled,
    StageFailed,
)
from .cluster import ClusterManager
from .deployer import StackDeployer
from .graph import DependencyGraph
from .model import (
    ClusterResource,
    DeploymentStage,
    RunReport,
    ServiceUnit,
    UnitState,
)
from .provisioner import ResourceProvisioner
from .readiness import ReadinessGate, ReadinessResult
from .template import TemplateRenderer

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[str, str], None]


class DependencyScheduler:
    """Deploy units stage by stage according to their dependencies."""

    def __init__(
        self,
        cluster: ClusterManager,
        deployer: StackDeployer,
        gate: ReadinessGate,
        provisioner: ResourceProvisioner | None = None,
        readiness_timeout: float = 120.0,
        readiness_interval: float = 3.0,
        max_parallel: int = 4,
        resources: Iterable[ClusterResource] = (),
        cancel_event: threading.Event | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        """Initialize scheduler.

        Args:
            cluster: Cluster manager (used for post-ready hooks).
            deployer: Stack deployer.
            gate: Readiness gate.
            provisioner: Resource provisioner (built from cluster by default).
            readiness_timeout: Per-unit readiness timeout in seconds.
            readiness_interval: Seconds between readiness attempts.
            max_parallel: Upper bound on concurrent deployments in a stage.
            resources: Cluster-wide resources ensured before the first stage.
            cancel_event: When set, the run stops at the next stage boundary.
            on_progress: Optional callback called with (unit, message).
        """
        self.cluster = cluster
        self.deployer = deployer
        self.gate = gate
        self.provisioner = provisioner or ResourceProvisioner(cluster)
        self.readiness_timeout = readiness_timeout
        self.readiness_interval = readiness_interval
        self.max_parallel = max(1, max_parallel)
        self.resources = tuple(resources)
        self.cancel_event = cancel_event
        self.on_progress = on_progress
        self.renderer = TemplateRenderer()

    def _progress(self, unit: str, message: str) -> None:
        if self.on_progress:
            self.on_progress(unit, message)

    # -------------------------------------------------------------------------
    # Preflight
    # -------------------------------------------------------------------------

    def preflight(self, graph: DependencyGraph, params: Mapping[str, str]) -> list[DeploymentStage]:
        """Validate everything that can be validated without side effects.

        Returns:
            The deployment stages.

        Raises:
            ConfigError: Cycle, unknown dependency, missing template
                parameter or missing secret value.
        """
        stages = graph.layers()

        problems: list[str] = []
        for unit in graph.units.values():
            try:
                self.deployer.render(unit, params)
            except ConfigError as e:
                problems.append(e.message)
            for ref in unit.secrets:
                if not params.get(ref.env_key):
                    problems.append(f"Secret {ref.name} of {unit.name} needs {ref.env_key}")

            snippets: list[str] = []
            if unit.probe is not None:
                snippets.append(unit.probe.endpoint)
                snippets.extend(unit.probe.command)
            for hook in unit.hooks:
                snippets.extend(hook.command)
                snippets.extend(value for _, value in hook.env)
            missing = sorted({name for s in snippets for name in self.renderer.missing(s, params)})
            if missing:
                problems.append(f"{unit.name} probe/hooks need: {', '.join(missing)}")

        if problems:
            raise ConfigError(
                "Invalid deployment configuration:\n  " + "\n  ".join(problems),
                details={"problems": problems},
            )
        return stages

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(
        self,
        graph: DependencyGraph,
        params: Mapping[str, str],
        report: RunReport | None = None,
        managed: Iterable[str] = (),
    ) -> RunReport:
        """Deploy every unit of the graph.

        Args:
            graph: Units and their dependencies.
            params: Environment used to render templates.
            report: Report to record into (a new one by default).
            managed: Units the control plane already owns (rerun); they are
                not redeployed but still pass through readiness.

        Returns:
            RunReport with one record per unit.

        Raises:
            ConfigError: Invalid graph or parameters (before any side effect).
            ProvisionError: Cluster resources could not be created.
            ClusterUnreachable: The cluster manager could not be reached.
            StageFailed: A unit of a stage could not be deployed.
            RunCancelled: Cancellation was requested at a stage boundary.
        """
        stages = self.preflight(graph, params)
        report = report or RunReport()
        managed = set(managed)
        for name in graph.units:
            report.record(name)

        required: set[ClusterResource] = set(self.resources)
        for unit in graph.units.values():
            required |= unit.resources()
        self.provisioner.ensure(required)

        for stage in stages:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise RunCancelled(f"Run cancelled before stage {stage.index}")

            logger.info(f"Stage {stage.index}: {', '.join(stage.names)}")
            self._deploy_stage(stage, params, report, managed)
            self._await_stage(stage, params, report, managed)

        return report

    def _deploy_stage(
        self,
        stage: DeploymentStage,
        params: Mapping[str, str],
        report: RunReport,
        managed: set[str],
    ) -> None:
        failures: dict[str, str] = {}
        unreachable: ClusterUnreachable | None = None

        workers = min(len(stage.units), self.max_parallel)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._deploy_unit, unit, params, report, managed): unit
                for unit in stage.units
            }
            for future, unit in futures.items():
                try:
                    future.result()
                except ClusterUnreachable as e:
                    unreachable = unreachable or e
                    failures[unit.name] = e.message
                except (DeployError, ConfigError, ProvisionError, ClusterCommandError) as e:
                    failures[unit.name] = e.message

        if unreachable is not None:
            raise unreachable
        if failures:
            raise StageFailed(
                f"Stage {stage.index} failed for: {', '.join(sorted(failures))}",
                stage=stage.index,
                failures=failures,
            )

    def _deploy_unit(
        self,
        unit: ServiceUnit,
        params: Mapping[str, str],
        report: RunReport,
        managed: set[str],
    ) -> None:
        if unit.name in managed:
            report.transition(unit.name, UnitState.DEPLOYED_MANAGED)
            self._progress(unit.name, "already managed by the control plane, skipped")
            return

        try:
            if unit.secrets:
                # created here, after earlier stages, so secrets only exist once
                # the units they depend on are up
                self.provisioner.ensure(
                    ClusterResource.secret(ref.name, params[ref.env_key].encode())
                    for ref in unit.secrets
                )
            self.deployer.deploy(unit, params)
        except Exception as e:
            report.transition(unit.name, UnitState.FAILED, error=str(e))
            self._progress(unit.name, f"deploy failed: {e}")
            raise

        report.transition(unit.name, UnitState.DEPLOYED_DIRECT)
        self._progress(unit.name, "deployed")

    def _await_stage(
        self,
        stage: DeploymentStage,
        params: Mapping[str, str],
        report: RunReport,
        managed: set[str],
    ) -> None:
        workers = min(len(stage.units), self.max_parallel)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self._await_unit, unit, params, report, managed)
                for unit in stage.units
            ]
            for future in futures:
                future.result()

    def _await_unit(
        self,
        unit: ServiceUnit,
        params: Mapping[str, str],
        report: RunReport,
        managed: set[str],
    ) -> ReadinessResult:
        record = report.record(unit.name)
        try:
            result = self.gate.await_ready(unit, self.readiness_timeout, self.readiness_interval)
        except ReadinessTimeoutError as e:
            record.warnings.append(e.message)
            if unit.name not in managed:
                report.transition(unit.name, UnitState.TIMED_OUT, error=e.message)
            self._progress(unit.name, "readiness timed out")
            raise

        if result.timed_out:
            warning = f"{unit.name} not ready after {result.elapsed_seconds:.0f}s ({result.error})"
            record.warnings.append(warning)
            if unit.name not in managed:
                report.transition(unit.name, UnitState.TIMED_OUT)
            self._progress(unit.name, "readiness timed out, continuing")
            return result

        if unit.name not in managed:
            report.transition(unit.name, UnitState.READY)
        self._progress(unit.name, "ready")
        self._run_hooks(unit, params, report)
        return result

    def _run_hooks(self, unit: ServiceUnit, params: Mapping[str, str], report: RunReport) -> None:
        record = report.record(unit.name)
        for hook in unit.hooks:
            render = self.renderer.render_string
            command = [render(part, params, name=f"{unit.name} hook") for part in hook.command]
            env = {key: render(value, params, name=f"{unit.name} hook") for key, value in hook.env}
            label = hook.description or " ".join(command)

            result = self.cluster.exec_in_service(hook.service, command, env)
            if result.ok:
                logger.info(f"{unit.name} hook succeeded: {label}")
                self._progress(unit.name, f"hook ok: {label}")
            else:
                warning = f"{unit.name} hook failed: {label}: {result.output}"
                logger.warning(warning)
                record.warnings.append(warning)
                self._progress(unit.name, f"hook failed: {label}")
