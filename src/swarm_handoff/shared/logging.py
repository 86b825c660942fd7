"""Logging configuration for swarm-handoff.

Every module logs through ``structlog.get_logger(__name__)``. A deployment
run binds its command name and a short run id once; both are merged into
every event, so the lines of one run can be picked out of a shared log file
(``--save-log`` appends across runs).
"""

import logging
import sys
import uuid
from pathlib import Path

import structlog

# Libraries that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(
    level: str = "warning",
    log_file: str | Path | None = None,
    json_output: bool = False,
) -> None:
    """Configure stdlib logging and structlog for one CLI invocation.

    Args:
        level: Log level (debug, info, warning, error, critical)
        log_file: Append JSON lines to this file instead of writing to stderr
        json_output: Emit JSON on stderr as well
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    if log_file:
        handler: logging.Handler = logging.FileHandler(str(log_file))
        json_output = True
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    logging.basicConfig(level=log_level, handlers=[handler], format="%(message)s", force=True)

    # control plane requests are only interesting when debugging
    noisy_level = logging.WARNING if log_level > logging.DEBUG else logging.NOTSET
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_run_context(command: str | None, **fields: object) -> str:
    """Attach the command name and a fresh run id to all later log events.

    Returns:
        The run id.
    """
    run_id = uuid.uuid4().hex[:8]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(command=command or "swarm-handoff", run_id=run_id, **fields)
    return run_id
