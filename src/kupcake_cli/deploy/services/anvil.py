"""Anvil L1 chain emulator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ...errors import ConfigError
from ...shared.logging import get_logger
from .. import rpc
from ..docker import ContainerHandle, DockerImage, PortMapping, ServiceConfig, StartOptions, port_mappings
from ..readiness import wait_for_file
from ..stages import L1Context, Stage
from .base import ServiceSpec, StageService, config_bind, container_path, entrypoint_for

logger = get_logger(__name__)

DEFAULT_IMAGE = "ghcr.io/foundry-rs/foundry"
DEFAULT_TAG = "latest"
DEFAULT_CONTAINER_NAME = "kupcake-anvil"

RPC_PORT = 8545
DEFAULT_BLOCK_TIME = 12
ACCOUNT_COUNT = 30

# Written by anvil once it is serving
CONFIG_FILENAME = "anvil.json"
STATE_FILENAME = "state.json"
CONFIG_TIMEOUT = 30.0


@dataclass(frozen=True)
class Account:
    """Funded dev account."""

    address: str
    private_key: str


@dataclass(frozen=True)
class AnvilAccounts:
    """Dev accounts bound to their deployment roles, by index."""

    MIN_REQUIRED_ACCOUNTS: ClassVar[int] = 10

    deployer: Account
    base_fee_vault_recipient: Account
    l1_fee_vault_recipient: Account
    l1_proxy_admin_owner: Account
    l2_proxy_admin_owner: Account
    system_config_owner: Account
    unsafe_block_signer: Account
    batcher: Account
    proposer: Account
    challenger: Account
    extra: tuple[Account, ...] = ()

    @classmethod
    def from_accounts(cls, accounts: list[Account]) -> AnvilAccounts:
        """Assign roles to accounts in order.

        Raises:
            ConfigError: If fewer than MIN_REQUIRED_ACCOUNTS are given.
        """
        if len(accounts) < cls.MIN_REQUIRED_ACCOUNTS:
            raise ConfigError(
                message=(
                    f"Not enough accounts provided. Need at least "
                    f"{cls.MIN_REQUIRED_ACCOUNTS}, got {len(accounts)}"
                ),
                data={"accounts": len(accounts)},
            )
        roles = accounts[: cls.MIN_REQUIRED_ACCOUNTS]
        return cls(*roles, extra=tuple(accounts[cls.MIN_REQUIRED_ACCOUNTS :]))

    @classmethod
    def from_anvil_config(cls, data: dict[str, Any]) -> AnvilAccounts:
        """Build from the JSON anvil writes with --config-out."""
        try:
            addresses = data["available_accounts"]
            private_keys = data["private_keys"]
        except (KeyError, TypeError):
            raise ConfigError(message="Anvil config is missing available_accounts/private_keys")
        return cls.from_accounts([Account(a, k) for a, k in zip(addresses, private_keys)])

    def all(self) -> list[Account]:
        return [
            self.deployer,
            self.base_fee_vault_recipient,
            self.l1_fee_vault_recipient,
            self.l1_proxy_admin_owner,
            self.l2_proxy_admin_owner,
            self.system_config_owner,
            self.unsafe_block_signer,
            self.batcher,
            self.proposer,
            self.challenger,
            *self.extra,
        ]


@dataclass
class AnvilHandle:
    """Running anvil instance."""

    container: ContainerHandle
    rpc_url: str
    host_rpc_url: str | None
    accounts: AnvilAccounts
    chain_id: int
    fork_url: str | None = None
    fork_block_number: int | None = None
    timestamp: int | None = None

    @property
    def container_name(self) -> str:
        return self.container.container_name

    async def block_number(self) -> int:
        """Current L1 block height (via the host URL)."""
        if self.host_rpc_url is None:
            raise ConfigError(message=f"RPC of {self.container_name} is not published to the host")
        return await rpc.block_number(self.host_rpc_url)


@dataclass
class AnvilConfig(ServiceSpec, StageService):
    """L1 chain emulator, optionally forking a remote chain."""

    SERVICE_NAME: ClassVar[str] = "anvil"
    STAGE: ClassVar[Stage] = Stage.L1

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    rpc_port: int = RPC_PORT
    rpc_host_port: int | None = 0
    block_time: int = DEFAULT_BLOCK_TIME
    fork_url: str | None = None
    fork_block_number: int | None = None
    timestamp: int | None = None
    extra_args: list[str] = field(default_factory=list)

    def build_cmd(self, chain_id: int) -> list[str]:
        cmd = [
            "--host", "0.0.0.0",
            "--port", str(self.rpc_port),
            "--chain-id", str(chain_id),
            "--block-time", str(self.block_time),
            "--accounts", str(ACCOUNT_COUNT),
        ]
        if self.timestamp is not None:
            cmd += ["--timestamp", str(self.timestamp)]
        if self.fork_block_number is not None:
            cmd += ["--fork-block-number", str(self.fork_block_number)]
        if self.fork_url:
            cmd += ["--fork-url", self.fork_url]
        cmd += [
            "--state", container_path(STATE_FILENAME),
            "--config-out", container_path(CONFIG_FILENAME),
        ]
        return cmd + list(self.extra_args)

    async def start(self, ctx: L1Context) -> AnvilHandle:
        config_dir = ctx.service_dir("anvil")
        config_file = config_dir / CONFIG_FILENAME

        # A config left by a previous run would satisfy the wait below immediately
        config_file.unlink(missing_ok=True)

        service_config = ServiceConfig(
            image=self.image,
            entrypoint=entrypoint_for(self.image, "anvil"),
            cmd=self.build_cmd(ctx.l1_chain_id),
            ports=port_mappings(PortMapping.tcp_optional(self.rpc_port, self.rpc_host_port)),
            binds=[config_bind(config_dir)],
        )

        container = await ctx.docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )

        await wait_for_file(config_file, CONFIG_TIMEOUT)
        try:
            data = json.loads(config_file.read_text())
        except ValueError as e:
            raise ConfigError(
                message=f"Failed to parse anvil config {config_file}: {e}",
                data={"path": str(config_file)},
            )
        accounts = AnvilAccounts.from_anvil_config(data)

        handle = AnvilHandle(
            container=container,
            rpc_url=ctx.docker.internal_http_url(self.container_name, self.rpc_port),
            host_rpc_url=ctx.docker.host_http_url(container, self.rpc_port),
            accounts=accounts,
            chain_id=ctx.l1_chain_id,
            fork_url=self.fork_url,
            fork_block_number=self.fork_block_number,
            timestamp=self.timestamp,
        )
        logger.info(
            "anvil started",
            container_name=self.container_name,
            host_rpc_url=handle.host_rpc_url,
            accounts=len(accounts.all()),
        )
        return handle
