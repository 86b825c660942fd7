"""CLI output formatting helpers."""

import json
from collections.abc import Sequence

import click

from .deploy import DeploymentStage, DnsEntry, RunReport, UnitState

STATE_MARKS = {
    UnitState.READY: "✓",
    UnitState.DEPLOYED_MANAGED: "✓",
    UnitState.DEPLOYED_DIRECT: "✓",
    UnitState.TIMED_OUT: "⚠",
    UnitState.TORN_DOWN: "⚠",
    UnitState.FAILED: "✗",
    UnitState.PENDING: "·",
}


def print_plan(stages: Sequence[DeploymentStage]) -> None:
    """Print deployment stages in order.

    Args:
        stages: Stages from the dependency graph
    """
    for stage in stages:
        click.echo(f"Stage {stage.index}:")
        for unit in stage.units:
            deps = f" (after {', '.join(unit.depends_on)})" if unit.depends_on else ""
            probe = f" [{unit.probe.protocol} probe]" if unit.probe else ""
            click.echo(f"  • {unit.name}{deps}{probe}")


def print_report(report: RunReport, json_output: bool = False) -> None:
    """Print the per-unit outcome of a run.

    Args:
        report: Run report
        json_output: Print the report as JSON instead
    """
    if json_output:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    click.echo("\nSummary:")
    for name, record in report.records.items():
        mark = STATE_MARKS.get(record.state, "·")
        line = f"  {mark} {name}: {record.state.value}"
        if record.error:
            line += f" ({record.error})"
        click.echo(line)
        for warning in record.warnings:
            click.echo(f"      ⚠ {warning}")

    for warning in report.warnings:
        click.echo(f"  ⚠ {warning}")


def print_dns_summary(missing: Sequence[DnsEntry], server_ip: str) -> None:
    """Print hostnames that need an A record pointing at the server."""
    if not missing:
        click.echo("\n✓ All published hostnames resolve to this server.")
        return

    click.echo(f"\nCreate these DNS A records pointing to {server_ip}:")
    for entry in missing:
        current = entry.resolved or "unresolved"
        click.echo(f"  • {entry.hostname} ({entry.unit}, currently {current})")
