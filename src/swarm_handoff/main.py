"""CLI main entry point."""

from pathlib import Path

import click

from .commands.deploy import deploy, plan, reconcile
from .config import load_config
from .errors import ConfigError
from .shared import bind_run_context, configure_logging, ensure_dirs, get_log_file

VERBOSITY_LEVELS = {1: "info", 2: "debug"}


@click.group()
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), help="Config file path")
@click.option("-v", "--verbose", count=True, help="Increase verbosity")
@click.option("--json", "json_output", is_flag=True, help="Print the run report as JSON")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None, help="Write logs to a file")
@click.option("--save-log", is_flag=True, help="Write logs to ~/.swarm-handoff/<command>.log")
@click.version_option(package_name="swarm-handoff")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    verbose: int,
    json_output: bool,
    json_logs: bool,
    log_file: str | None,
    save_log: bool,
) -> None:
    """Deploy interdependent stacks to Docker Swarm and hand them to Portainer."""
    try:
        config = load_config(Path(config_path) if config_path else None)
    except ConfigError as e:
        raise click.ClickException(e.message)

    level = VERBOSITY_LEVELS.get(min(verbose, 2), config.log_level)
    if save_log and not log_file:
        ensure_dirs()
        log_file = get_log_file(ctx.invoked_subcommand or "swarm-handoff")
    configure_logging(level=level, log_file=log_file, json_output=json_logs)
    bind_run_context(ctx.invoked_subcommand)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["json_output"] = json_output


cli.add_command(deploy)
cli.add_command(plan)
cli.add_command(reconcile)


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
