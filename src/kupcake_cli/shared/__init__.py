"""Shared modules for kupcake-cli.

This module provides functionality used by every command:
- Logging setup (structlog over stdlib logging)
- The ~/.kupcake directory and per-deployment output layout
"""

from .logging import CONTAINER_LOGGER, ContainerLogFilter, configure_logging, get_logger, verbosity_to_level
from .paths import (
    CONFIG_FILE,
    DESCRIPTOR_FILENAME,
    KUPCAKE_DIR,
    default_outdata,
    descriptor_file,
    l2_stack_dir,
    version_file,
)

__all__ = [
    # Paths
    "KUPCAKE_DIR",
    "CONFIG_FILE",
    "DESCRIPTOR_FILENAME",
    "default_outdata",
    "descriptor_file",
    "l2_stack_dir",
    "version_file",
    # Logging
    "CONTAINER_LOGGER",
    "ContainerLogFilter",
    "configure_logging",
    "get_logger",
    "verbosity_to_level",
]
