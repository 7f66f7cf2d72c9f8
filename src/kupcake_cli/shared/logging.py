"""Logging configuration for kupcake-cli.

Deploy modules log key/value events through structlog; the docker, readiness
and p2p helpers use plain stdlib loggers. Both end up on the same handler.

Output of the containers themselves (``docker logs -f``) goes to the
CONTAINER_LOGGER logger. It is hidden unless container logs are requested,
optionally only for some containers.
"""

import logging
import sys
from collections.abc import Iterable
from pathlib import Path

import structlog

CONTAINER_LOGGER = "kupcake_cli.containers"

# Chatty below warning during readiness polling
QUIET_LOGGERS = ("httpx", "httpcore", "watchdog")


class ContainerLogFilter(logging.Filter):
    """Drop container output unless enabled, optionally keeping only some containers.

    Records from other loggers always pass. Container records carry the
    container name in ``record.container_name``; ``containers`` holds name
    fragments, so "op-reth" matches every op-reth of the fleet.
    """

    def __init__(self, enabled: bool = False, containers: Iterable[str] = ()):
        super().__init__()
        self.enabled = enabled
        self.containers = tuple(containers)

    def filter(self, record: logging.LogRecord) -> bool:
        if not record.name.startswith(CONTAINER_LOGGER):
            return True
        if not self.enabled:
            return False
        if not self.containers:
            return True
        name = getattr(record, "container_name", "")
        return any(fragment in name for fragment in self.containers)


def configure_logging(
    level: str = "warning",
    log_file: str | Path | None = None,
    json_output: bool = False,
    container_logs: bool | None = None,
    containers: Iterable[str] = (),
) -> None:
    """Configure logging for the application.

    Called once on startup. Configures both standard logging and structlog.

    Args:
        level: Log level (debug, info, warning, error, critical)
        log_file: Optional path to log file
        json_output: If True, output JSON format
        container_logs: Show container output; defaults to on at debug level
        containers: Only show output of containers whose name contains one of these
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)
    containers = tuple(containers)
    if container_logs is None:
        container_logs = log_level <= logging.DEBUG or bool(containers)

    if log_file:
        handler: logging.Handler = logging.FileHandler(str(log_file))
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(ContainerLogFilter(container_logs, containers))

    logging.basicConfig(
        level=log_level,
        handlers=[handler],
        format="%(message)s",
        force=True,
    )

    # Container lines are emitted at debug; let them through at any level once enabled
    logging.getLogger(CONTAINER_LOGGER).setLevel(logging.DEBUG if container_logs else logging.WARNING)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(log_level if log_level <= logging.DEBUG else logging.WARNING)

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def verbosity_to_level(verbose: int, default: str = "warning") -> str:
    """Map a repeated -v flag count to a log level name."""
    if verbose >= 2:
        return "debug"
    if verbose == 1:
        return "info"
    return default


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
