"""CLI configuration management.

Handles persistent user defaults stored in ~/.kupcake/config.yaml.
Supports environment variable overrides and CLI flag precedence.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .shared.paths import CONFIG_FILE

# Default values
DEFAULT_NETWORK_NAME = "kup-devnet"
DEFAULT_BLOCK_TIME = 12
DEFAULT_L2_NODES = 2
DEFAULT_SEQUENCERS = 1
DEFAULT_NETWORK_MODE = "bridge"
DEFAULT_LOG_LEVEL = "warning"

# Environment variable mappings
ENV_VARS = {
    "network_name": "KUP_NETWORK_NAME",
    "outdata_root": "KUP_OUTDATA_ROOT",
    "l1_chain_id": "KUP_L1_CHAIN_ID",
    "l1_rpc_url": "KUP_L1_RPC_URL",
    "block_time": "KUP_BLOCK_TIME",
    "l2_nodes": "KUP_L2_NODES",
    "sequencers": "KUP_SEQUENCERS",
    "network_mode": "KUP_NETWORK_MODE",
    "monitoring": "KUP_MONITORING",
    "log_level": "KUP_LOG_LEVEL",
}

INT_KEYS = {"l1_chain_id", "block_time", "l2_nodes", "sequencers"}
BOOL_KEYS = {"monitoring"}
VALID_KEYS = list(ENV_VARS)


@dataclass
class KupConfig:
    """User-level defaults for `kup deploy`."""

    network_name: str = DEFAULT_NETWORK_NAME
    outdata_root: str | None = None
    l1_chain_id: int | None = None
    l1_rpc_url: str | None = None
    block_time: int = DEFAULT_BLOCK_TIME
    l2_nodes: int = DEFAULT_L2_NODES
    sequencers: int = DEFAULT_SEQUENCERS
    network_mode: str = DEFAULT_NETWORK_MODE
    monitoring: bool = True
    log_level: str = DEFAULT_LOG_LEVEL

    # Track where each value came from
    _sources: dict[str, str] = field(default_factory=dict)

    def get_source(self, key: str) -> str:
        """Get the source of a config value."""
        return self._sources.get(key, "default")

    def values(self) -> dict[str, Any]:
        """Public config values keyed by name."""
        return {key: getattr(self, key) for key in VALID_KEYS}


def get_config_path() -> Path:
    """Get the CLI config file path.

    Returns:
        Path to ~/.kupcake/config.yaml
    """
    return CONFIG_FILE


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw file/env value to the type of the config field."""
    if key in INT_KEYS:
        return int(value)
    if key in BOOL_KEYS:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    return str(value)


def load_config() -> KupConfig:
    """Load CLI configuration.

    Precedence (highest to lowest):
    1. Environment variables
    2. Config file (~/.kupcake/config.yaml)
    3. Defaults

    Returns:
        KupConfig with values and sources
    """
    config = KupConfig()
    sources: dict[str, str] = {key: "default" for key in VALID_KEYS}

    config_path = get_config_path()
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            file_config = {}  # Unreadable config file falls back to defaults

        for key in VALID_KEYS:
            if key in file_config and file_config[key] is not None:
                try:
                    setattr(config, key, _coerce(key, file_config[key]))
                    sources[key] = "config file"
                except (TypeError, ValueError):
                    pass

    for key, env_var in ENV_VARS.items():
        raw = os.environ.get(env_var)
        if not raw:
            continue
        try:
            setattr(config, key, _coerce(key, raw))
            sources[key] = "environment"
        except ValueError:
            pass

    config._sources = sources
    return config


def save_config(key: str, value: Any) -> None:
    """Save a config value to the config file.

    Args:
        key: Config key (one of VALID_KEYS)
        value: Value to save

    Raises:
        KeyError: If key is not a known config key
    """
    if key not in ENV_VARS:
        raise KeyError(key)

    config_path = get_config_path()

    existing: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                existing = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError):
            existing = {}

    existing[key] = _coerce(key, value)

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)


def unset_config(key: str) -> bool:
    """Remove a config value from the config file.

    Args:
        key: Config key to remove

    Returns:
        True if key was removed, False if not found
    """
    config_path = get_config_path()
    if not config_path.exists():
        return False

    try:
        with open(config_path) as f:
            existing = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return False

    if key not in existing:
        return False

    del existing[key]

    with open(config_path, "w") as f:
        yaml.dump(existing, f, default_flow_style=False)

    return True
