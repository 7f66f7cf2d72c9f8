"""op-proposer: publishes L2 output proposals as dispute games."""

from __future__ import annotations

from dataclasses import dataclass, field

from ...shared.logging import get_logger
from ..docker import ContainerHandle, DockerImage, PortMapping, ServiceConfig, StartOptions, port_mappings
from ..stages import L2Context
from .base import ServiceSpec, config_bind, entrypoint_for
from .kona_node import KonaNodeHandle

logger = get_logger(__name__)

DEFAULT_IMAGE = "us-docker.pkg.dev/oplabs-tools-artifacts/images/op-proposer"
DEFAULT_TAG = "develop"
DEFAULT_CONTAINER_NAME = "kupcake-op-proposer"

RPC_PORT = 8560
METRICS_PORT = 7302

# Permissioned dispute game
PERMISSIONED_GAME_TYPE = 254


@dataclass
class OpProposerHandle:
    """Running op-proposer instance."""

    container: ContainerHandle
    rpc_url: str
    rpc_host_url: str | None
    metrics_port: int = METRICS_PORT

    @property
    def container_name(self) -> str:
        return self.container.container_name


@dataclass
class OpProposerConfig(ServiceSpec):
    """op-proposer container settings."""

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    rpc_port: int = RPC_PORT
    metrics_port: int = METRICS_PORT
    rpc_host_port: int | None = 0
    metrics_host_port: int | None = None
    proposal_interval: str = "12s"
    extra_args: list[str] = field(default_factory=list)

    def build_cmd(self, l1_rpc: str, rollup_rpc: str, private_key: str, game_factory: str) -> list[str]:
        return [
            "--l1-eth-rpc", l1_rpc,
            "--rollup-rpc", rollup_rpc,
            "--private-key", private_key,
            "--game-factory-address", game_factory,
            "--game-type", str(PERMISSIONED_GAME_TYPE),
            "--proposal-interval", self.proposal_interval,
            "--rpc.addr", "0.0.0.0",
            "--rpc.port", str(self.rpc_port),
            "--metrics.enabled",
            "--metrics.addr", "0.0.0.0",
            "--metrics.port", str(self.metrics_port),
            *self.extra_args,
        ]

    async def start(self, ctx: L2Context, kona_node: KonaNodeHandle) -> OpProposerHandle:
        """Start the proposer against the primary sequencer's kona-node."""
        cmd = self.build_cmd(
            ctx.anvil.rpc_url,
            kona_node.rpc_url,
            ctx.anvil.accounts.proposer.private_key,
            ctx.contracts.dispute_game_factory(),
        )
        service_config = ServiceConfig(
            image=self.image,
            entrypoint=entrypoint_for(self.image, "op-proposer"),
            cmd=cmd,
            ports=port_mappings(
                PortMapping.tcp_optional(self.rpc_port, self.rpc_host_port),
                PortMapping.tcp_optional(self.metrics_port, self.metrics_host_port),
            ),
            binds=[config_bind(ctx.l2_dir)],
        )

        container = await ctx.docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )
        handle = OpProposerHandle(
            container=container,
            rpc_url=ctx.docker.internal_http_url(self.container_name, self.rpc_port),
            rpc_host_url=ctx.docker.host_http_url(container, self.rpc_port),
            metrics_port=self.metrics_port,
        )
        logger.info("op-proposer started", container_name=self.container_name, rpc_host_url=handle.rpc_host_url)
        return handle
