"""Deploy commands.

This module provides the `swarm-handoff deploy`, `plan` and `reconcile`
commands. `deploy` runs the full flow: prerequisites, staged deployment,
control plane handoff and the DNS summary. `reconcile` runs only the
handoff, so an interrupted run can be resumed.
"""

from __future__ import annotations

import signal
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.markup import escape

from ..config import (
    REQUIRED_KEYS,
    OrchestratorConfig,
    ensure_generated_secret,
    load_environment,
    validate_environment,
)
from ..deploy import (
    ControlPlaneClient,
    ControlPlaneEndpoint,
    ControlPlaneReconciler,
    Credentials,
    DependencyGraph,
    DependencyScheduler,
    DeploymentDefinition,
    DockerSwarmCluster,
    ExecProbe,
    HttpProbe,
    ReadinessGate,
    RunReport,
    StackDeployer,
    TemplateRenderer,
    dns_entries,
    ensure_swarm,
    load_definition,
    missing_records,
)
from ..errors import AuthError, ClusterUnreachable, ControlPlaneUnreachable, OrchestratorError
from ..formatters import print_dns_summary, print_plan, print_report

logger = structlog.get_logger(__name__)

console = Console(stderr=True)

env_file_option = click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path(".env"),
    show_default=True,
    help="Environment file with SERVER_IP, DOMAIN, EMAIL",
)
definition_option = click.option(
    "--definition",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Orchestration definition (default: built-in stacks)",
)
stacks_dir_option = click.option(
    "--stacks-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding the stack templates",
)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {escape(message)}")
    sys.exit(1)


def _progress(unit: str, message: str) -> None:
    click.echo(f"  [{unit}] {message}")


def _load_definition(
    config: OrchestratorConfig, definition: Path | None, stacks_dir: Path | None
) -> DeploymentDefinition:
    path = definition or (Path(config.definition) if config.definition else None)
    return load_definition(path, stacks_dir)


def _load_params(env_file: Path, definition: DeploymentDefinition) -> Mapping[str, str]:
    params = load_environment(env_file)
    # the built-in stacks need all of them, custom definitions at least the address
    validate_environment(params, REQUIRED_KEYS if definition.source is None else ("SERVER_IP",))
    return params


def _control_plane(
    config: OrchestratorConfig, params: Mapping[str, str]
) -> tuple[ControlPlaneEndpoint, Credentials]:
    url = TemplateRenderer().render_string(config.control_plane_url, params, name="control plane url")
    endpoint = ControlPlaneEndpoint(url, endpoint_id=config.endpoint_id, verify=config.verify_tls)
    password = params.get(config.password_key)
    if not password:
        raise AuthError(f"No control plane password: {config.password_key} is not set")
    return endpoint, Credentials(config.control_plane_user, password)


def _managed_units(endpoint: ControlPlaneEndpoint, credentials: Credentials) -> set[str]:
    """Stacks the control plane already owns; empty before it is up."""
    try:
        with ControlPlaneClient(endpoint) as client:
            return client.managed_stack_names(client.authenticate(credentials))
    except (ControlPlaneUnreachable, AuthError) as e:
        logger.info(f"Control plane not available yet, deploying everything: {e.message}")
        return set()


@contextmanager
def _cancel_on_interrupt() -> Iterator[threading.Event]:
    """First Ctrl-C stops the run at the next stage boundary, the second aborts."""
    cancel = threading.Event()
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum, frame):
        click.echo("\nCancelling after the current stage (Ctrl-C again to abort)...", err=True)
        cancel.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    # signal handlers can only be installed from the main thread
    installed = threading.current_thread() is threading.main_thread()
    if installed:
        signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        if installed:
            signal.signal(signal.SIGINT, previous)


def _deployer(cluster: DockerSwarmCluster, config: OrchestratorConfig) -> StackDeployer:
    return StackDeployer(
        cluster,
        apply_mode=config.apply_mode,
        rendered_dir=Path(config.rendered_dir) if config.rendered_dir else None,
    )


def _reconciler(
    cluster: DockerSwarmCluster,
    deployer: StackDeployer,
    params: Mapping[str, str],
    config: OrchestratorConfig,
    cancel: threading.Event,
) -> ControlPlaneReconciler:
    return ControlPlaneReconciler(
        cluster,
        deployer,
        params,
        client_factory=ControlPlaneClient,
        drain_attempts=config.drain_attempts,
        drain_interval=config.drain_interval,
        cancel_event=cancel,
        on_progress=_progress,
    )


@click.command()
@env_file_option
@definition_option
@stacks_dir_option
@click.option("--strict-readiness", is_flag=True, help="Fail when a unit never becomes ready")
@click.option("--skip-reconcile", is_flag=True, help="Do not hand stacks to the control plane")
@click.option(
    "--apply-mode",
    type=click.Choice(["direct", "file"]),
    default=None,
    help="Pipe definitions on stdin or write them to files first",
)
@click.pass_context
def deploy(ctx, env_file, definition, stacks_dir, strict_readiness, skip_reconcile, apply_mode):
    """Deploy every stack and hand it to the control plane.

    Examples:

        # Deploy the built-in stacks
        swarm-handoff deploy --env-file .env

        # Deploy a custom definition without the control plane handoff
        swarm-handoff deploy --definition stacks.yaml --skip-reconcile
    """
    config: OrchestratorConfig = ctx.obj["config"]
    if strict_readiness:
        config = replace(config, strict_readiness=True)
    if apply_mode:
        config = replace(config, apply_mode=apply_mode)

    try:
        report = _run_deploy(config, env_file, definition, stacks_dir, skip_reconcile)
    except OrchestratorError as e:
        logger.debug("Deploy aborted", error_type=type(e).__name__, details=e.details)
        _fail(e.message)
        return

    print_report(report, json_output=ctx.obj.get("json_output", False))
    if not report.ok:
        sys.exit(1)


def _run_deploy(
    config: OrchestratorConfig,
    env_file: Path,
    definition_path: Path | None,
    stacks_dir: Path | None,
    skip_reconcile: bool,
) -> RunReport:
    """Execute the full deploy flow."""
    click.echo("\n📋 Step 1: Environment\n")
    definition = _load_definition(config, definition_path, stacks_dir)
    if ensure_generated_secret(env_file, config.password_key):
        click.echo(f"  ✓ Generated {config.password_key} in {env_file}")
    params = _load_params(env_file, definition)
    graph = DependencyGraph(definition.units)
    click.echo(f"  ✓ {len(graph)} stacks from {definition.source or 'built-in definition'}")

    click.echo("\n📋 Step 2: Prerequisites\n")
    cluster = DockerSwarmCluster()
    ok, message = ensure_swarm(cluster, params["SERVER_IP"])
    if not ok:
        raise ClusterUnreachable(message)
    click.echo(f"  ✓ {message}")

    endpoint = credentials = None
    managed: set[str] = set()
    if not skip_reconcile:
        endpoint, credentials = _control_plane(config, params)
        managed = _managed_units(endpoint, credentials)
        if managed:
            click.echo(f"  ✓ Already managed: {', '.join(sorted(managed))}")

    deployer = _deployer(cluster, config)
    gate = ReadinessGate(
        params,
        http_probe=HttpProbe(verify=config.verify_tls),
        exec_probe=ExecProbe(cluster),
        strict=config.strict_readiness,
    )

    with _cancel_on_interrupt() as cancel:
        click.echo("\n📋 Step 3: Deploy stacks\n")
        scheduler = DependencyScheduler(
            cluster,
            deployer,
            gate,
            readiness_timeout=config.readiness_timeout,
            readiness_interval=config.readiness_interval,
            max_parallel=config.max_parallel,
            resources=definition.resources,
            cancel_event=cancel,
            on_progress=_progress,
        )
        report = scheduler.run(graph, params, managed=managed)

        if endpoint is not None and credentials is not None:
            click.echo("\n📋 Step 4: Control plane handoff\n")
            ordered = [unit for stage in graph.layers() for unit in stage.units]
            reconciler = _reconciler(cluster, deployer, params, config, cancel)
            reconciler.reconcile(ordered, endpoint, credentials, report=report)

    missing = missing_records(dns_entries(definition.units, params), params["SERVER_IP"])
    print_dns_summary(missing, params["SERVER_IP"])
    return report


@click.command()
@env_file_option
@definition_option
@stacks_dir_option
@click.pass_context
def plan(ctx, env_file, definition, stacks_dir):
    """Show deployment stages and validate templates without side effects."""
    config: OrchestratorConfig = ctx.obj["config"]
    try:
        loaded = _load_definition(config, definition, stacks_dir)
        params = dict(_load_params(env_file, loaded))
        # deploy generates it when absent
        params.setdefault(config.password_key, "<generated>")

        graph = DependencyGraph(loaded.units)
        cluster = DockerSwarmCluster()
        scheduler = DependencyScheduler(
            cluster, StackDeployer(cluster), ReadinessGate(params), resources=loaded.resources
        )
        stages = scheduler.preflight(graph, params)
    except OrchestratorError as e:
        _fail(e.message)
        return

    print_plan(stages)
    click.echo(f"\n✓ {len(graph)} stacks in {len(stages)} stages, all templates render.")


@click.command()
@env_file_option
@definition_option
@stacks_dir_option
@click.pass_context
def reconcile(ctx, env_file, definition, stacks_dir):
    """Hand already deployed stacks to the control plane.

    Stacks the control plane already manages are skipped, so this can be
    rerun after an interrupted handoff.
    """
    config: OrchestratorConfig = ctx.obj["config"]
    try:
        loaded = _load_definition(config, definition, stacks_dir)
        params = _load_params(env_file, loaded)
        graph = DependencyGraph(loaded.units)
        endpoint, credentials = _control_plane(config, params)
        ordered = [unit for stage in graph.layers() for unit in stage.units]

        cluster = DockerSwarmCluster()
        with _cancel_on_interrupt() as cancel:
            reconciler = _reconciler(cluster, _deployer(cluster, config), params, config, cancel)
            report = reconciler.reconcile(ordered, endpoint, credentials)
    except OrchestratorError as e:
        _fail(e.message)
        return

    print_report(report, json_output=ctx.obj.get("json_output", False))
    if not report.ok:
        sys.exit(1)
