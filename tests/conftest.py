"""Shared test fixtures for kupcake-cli tests.

This module provides fakes for the docker boundary:
- FakeDockerCLI: records docker invocations and answers with canned output
- FakeDockerManager: DockerManager whose containers "run" by writing the
  files the real services would produce into their bind mounts
"""

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from kupcake_cli.deploy.docker import (
    CommandResult,
    ContainerHandle,
    DockerCLI,
    DockerManager,
    NetworkMode,
    ServiceConfig,
    StartOptions,
)
from kupcake_cli.deploy.services.anvil import AnvilAccounts, AnvilHandle
from kupcake_cli.deploy.services.op_deployer import ContractsHandle
from kupcake_cli.deploy.stages import L2Context
from kupcake_cli.errors import ResourceError

# =============================================================================
# Docker CLI fake
# =============================================================================


class FakeDockerCLI(DockerCLI):
    """DockerCLI that never spawns a process."""

    def __init__(self, outputs: dict[str, str] | None = None, failing: set[str] | None = None, delay: float = 0):
        super().__init__("docker")
        self.outputs = outputs or {}
        self.failing = failing or set()
        self.delay = delay
        self.calls: list[tuple[str, ...]] = []

    async def run(self, *args: str, timeout: float | None = None) -> CommandResult:
        self.calls.append(args)
        if self.delay and args[0] in ("stop", "rm"):
            await asyncio.sleep(self.delay)
        if args[0] in self.failing:
            return CommandResult(1, "", f"{args[0]} failed")
        return CommandResult(0, self.outputs.get(args[0], ""), "")

    def commands(self, name: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == name]


# =============================================================================
# Docker manager fake
# =============================================================================

ACCOUNT_COUNT = 12


def anvil_accounts_json() -> dict[str, Any]:
    """Content anvil writes with --config-out."""
    return {
        "available_accounts": [f"0x{i:040x}" for i in range(1, ACCOUNT_COUNT + 1)],
        "private_keys": [f"0x{i:064x}" for i in range(1, ACCOUNT_COUNT + 1)],
    }


GAME_FACTORY = "0x00000000000000000000000000000000000000fa"


def _host_dir(config: ServiceConfig) -> Path:
    return Path(config.binds[0].split(":")[0])


class FakeDockerManager(DockerManager):
    """DockerManager whose start_service simulates the deployed services."""

    def __init__(self, network_mode: NetworkMode = NetworkMode.BRIDGE, fail_on: str | None = None):
        super().__init__("test-network", network_mode=network_mode, cli=FakeDockerCLI())
        self.fail_on = fail_on
        self.started: list[tuple[str, ServiceConfig]] = []
        self._next_port = 32000

    def names(self) -> list[str]:
        return [name for name, _ in self.started]

    def config_of(self, name: str) -> ServiceConfig:
        return dict(self.started)[name]

    async def start_service(
        self, name: str, config: ServiceConfig, options: StartOptions | None = None
    ) -> ContainerHandle:
        if self.fail_on and self.fail_on in name:
            raise ResourceError(message=f"Container '{name}' failed to start")

        self.started.append((name, config))
        container_id = f"id-{name}"
        self.containers[container_id] = name
        self._simulate(name, config)

        bound: dict[str, int] = {}
        for mapping in config.ports:
            if self.is_host_mode:
                bound[mapping.key] = mapping.container_port
            else:
                self._next_port += 1
                bound[mapping.key] = self._next_port
        return ContainerHandle(container_id=container_id, container_name=name, bound_ports=bound)

    def _simulate(self, name: str, config: ServiceConfig) -> None:
        host_dir = _host_dir(config) if config.binds else None
        if host_dir is None:
            return
        if name.endswith("-anvil"):
            (host_dir / "anvil.json").write_text(json.dumps(anvil_accounts_json()))
        elif name.endswith("-init"):
            (host_dir / "intent.toml").write_text('configType = "standard-overrides"\n\n[[chains]]\nid = "0x01"\n')
        elif name.endswith("-apply"):
            state = {"opChainDeployments": [{"DisputeGameFactoryProxy": GAME_FACTORY}]}
            (host_dir / "state.json").write_text(json.dumps(state))
        elif name.endswith("-inspect-genesis"):
            (host_dir / "genesis.json").write_text("{}")
        elif name.endswith("-inspect-rollup"):
            (host_dir / "rollup.json").write_text("{}")


@pytest.fixture
def fake_cli() -> FakeDockerCLI:
    return FakeDockerCLI()


@pytest.fixture
def fake_docker() -> FakeDockerManager:
    return FakeDockerManager()


@pytest.fixture
def kupcake_home(tmp_path, monkeypatch):
    """Point ~/.kupcake at a temporary directory and clear KUP_* variables."""
    home = tmp_path / ".kupcake"
    monkeypatch.setattr("kupcake_cli.config.CONFIG_FILE", home / "config.yaml")
    for var in (
        "KUP_NETWORK_NAME",
        "KUP_OUTDATA_ROOT",
        "KUP_L1_CHAIN_ID",
        "KUP_L1_RPC_URL",
        "KUP_BLOCK_TIME",
        "KUP_L2_NODES",
        "KUP_SEQUENCERS",
        "KUP_NETWORK_MODE",
        "KUP_MONITORING",
        "KUP_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def make_cli():
    """Factory for FakeDockerCLI with custom outputs or failures."""
    return FakeDockerCLI


@pytest.fixture
def make_docker():
    """Factory for FakeDockerManager with a network mode or a failing container."""
    return FakeDockerManager


@pytest.fixture
def anvil_config_json() -> dict[str, Any]:
    return anvil_accounts_json()


@pytest.fixture
def anvil_handle():
    """AnvilHandle for a local L1 with the conftest dev accounts."""
    return AnvilHandle(
        container=ContainerHandle("id-anvil", "kup-anvil", {"8545/tcp": 32001}),
        rpc_url="http://kup-anvil:8545/",
        host_rpc_url="http://localhost:32001/",
        accounts=AnvilAccounts.from_anvil_config(anvil_accounts_json()),
        chain_id=1337,
        timestamp=1700000000,
    )


@pytest.fixture
def l2_context(fake_docker, anvil_handle, tmp_path):
    """L2 stage context on top of fake_docker, with state.json in place."""
    l2_dir = tmp_path / "out" / "l2-stack"
    l2_dir.mkdir(parents=True)
    state = {"opChainDeployments": [{"DisputeGameFactoryProxy": GAME_FACTORY}]}
    (l2_dir / "state.json").write_text(json.dumps(state))
    return L2Context(
        fake_docker,
        tmp_path / "out",
        1337,
        42069,
        anvil=anvil_handle,
        contracts=ContractsHandle(l2_dir=l2_dir),
    )
