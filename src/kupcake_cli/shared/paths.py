"""Path management for kupcake-cli.

Manages the ~/.kupcake/ directory and the per-deployment output layout.
"""

from pathlib import Path

# Base directory for user-level kupcake state
KUPCAKE_DIR = Path.home() / ".kupcake"

# User defaults (see kupcake_cli.config)
CONFIG_FILE = KUPCAKE_DIR / "config.yaml"

# Name of the persisted deployment descriptor inside an outdata directory
DESCRIPTOR_FILENAME = "Kupcake.yaml"

# Subdirectory holding op-deployer artifacts and per-node config
L2_STACK_DIRNAME = "l2-stack"

# Idempotency record written after a successful contract deployment
VERSION_FILENAME = ".deployment-version.json"


def default_outdata(network_name: str, root: Path | None = None) -> Path:
    """Default output directory for a network.

    Args:
        network_name: Deployment network name
        root: Parent directory (default: current working directory)

    Returns:
        Path like ./data-<network_name>
    """
    return (root or Path.cwd()) / f"data-{network_name}"


def l2_stack_dir(outdata: Path) -> Path:
    """Directory holding L2 configuration for a deployment."""
    return outdata / L2_STACK_DIRNAME


def version_file(outdata: Path) -> Path:
    """Path of the deployment version record for a deployment."""
    return l2_stack_dir(outdata) / VERSION_FILENAME


def descriptor_file(outdata: Path) -> Path:
    """Path of the persisted deployment descriptor."""
    return outdata / DESCRIPTOR_FILENAME
