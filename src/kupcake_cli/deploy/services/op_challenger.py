"""op-challenger: plays the permissioned dispute games."""

from __future__ import annotations

from dataclasses import dataclass, field

from ...shared.logging import get_logger
from ..docker import ContainerHandle, DockerImage, PortMapping, ServiceConfig, StartOptions, port_mappings
from ..stages import L2Context
from .base import ServiceSpec, config_bind, container_path, entrypoint_for
from .kona_node import KonaNodeHandle
from .op_proposer import PERMISSIONED_GAME_TYPE
from .op_reth import OpRethHandle

logger = get_logger(__name__)

DEFAULT_IMAGE = "us-docker.pkg.dev/oplabs-tools-artifacts/images/op-challenger"
DEFAULT_TAG = "develop"
DEFAULT_CONTAINER_NAME = "kupcake-op-challenger"

RPC_PORT = 8561
METRICS_PORT = 7303


@dataclass
class OpChallengerHandle:
    """Running op-challenger instance."""

    container: ContainerHandle
    metrics_port: int = METRICS_PORT

    @property
    def container_name(self) -> str:
        return self.container.container_name


@dataclass
class OpChallengerConfig(ServiceSpec):
    """op-challenger container settings."""

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    metrics_port: int = METRICS_PORT
    metrics_host_port: int | None = None
    trace_type: str = "permissioned"
    extra_args: list[str] = field(default_factory=list)

    def build_cmd(
        self, l1_rpc: str, l2_rpc: str, rollup_rpc: str, private_key: str, game_factory: str
    ) -> list[str]:
        return [
            "--l1-eth-rpc", l1_rpc,
            "--l1-beacon", l1_rpc,
            "--l2-eth-rpc", l2_rpc,
            "--rollup-rpc", rollup_rpc,
            "--private-key", private_key,
            "--game-factory-address", game_factory,
            "--datadir", container_path("challenger-data"),
            "--trace-type", self.trace_type,
            "--rollup-config", container_path("rollup.json"),
            "--l2-genesis", container_path("genesis.json"),
            "--game-allowlist", str(PERMISSIONED_GAME_TYPE),
            "--metrics.enabled",
            "--metrics.addr", "0.0.0.0",
            "--metrics.port", str(self.metrics_port),
            *self.extra_args,
        ]

    async def start(
        self, ctx: L2Context, op_reth: OpRethHandle, kona_node: KonaNodeHandle
    ) -> OpChallengerHandle:
        """Start the challenger against the primary sequencer."""
        cmd = self.build_cmd(
            ctx.anvil.rpc_url,
            op_reth.http_rpc_url,
            kona_node.rpc_url,
            ctx.anvil.accounts.challenger.private_key,
            ctx.contracts.dispute_game_factory(),
        )
        service_config = ServiceConfig(
            image=self.image,
            entrypoint=entrypoint_for(self.image, "op-challenger"),
            cmd=cmd,
            ports=port_mappings(PortMapping.tcp_optional(self.metrics_port, self.metrics_host_port)),
            binds=[config_bind(ctx.l2_dir)],
        )

        container = await ctx.docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )
        logger.info("op-challenger started", container_name=self.container_name)
        return OpChallengerHandle(container=container, metrics_port=self.metrics_port)
