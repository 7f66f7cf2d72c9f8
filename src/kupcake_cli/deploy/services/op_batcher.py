"""op-batcher: posts L2 transaction batches to L1."""

from __future__ import annotations

from dataclasses import dataclass, field

from ...shared.logging import get_logger
from ..docker import ContainerHandle, DockerImage, PortMapping, ServiceConfig, StartOptions, port_mappings
from ..stages import L2Context
from .base import ServiceSpec, config_bind, entrypoint_for
from .kona_node import KonaNodeHandle
from .op_reth import OpRethHandle

logger = get_logger(__name__)

DEFAULT_IMAGE = "us-docker.pkg.dev/oplabs-tools-artifacts/images/op-batcher"
DEFAULT_TAG = "v1.15.0"
DEFAULT_CONTAINER_NAME = "kupcake-op-batcher"

RPC_PORT = 8548
METRICS_PORT = 7301


@dataclass
class OpBatcherHandle:
    """Running op-batcher instance."""

    container: ContainerHandle
    rpc_url: str
    rpc_host_url: str | None
    metrics_port: int = METRICS_PORT

    @property
    def container_name(self) -> str:
        return self.container.container_name


@dataclass
class OpBatcherConfig(ServiceSpec):
    """op-batcher container settings."""

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    rpc_port: int = RPC_PORT
    metrics_port: int = METRICS_PORT
    rpc_host_port: int | None = 0
    metrics_host_port: int | None = None
    data_availability_type: str = "blobs"
    target_num_frames: int | None = 1
    sub_safety_margin: int | None = 10
    max_l1_tx_size_bytes: int | None = None
    poll_interval: str | None = None
    extra_args: list[str] = field(default_factory=list)

    def build_cmd(self, l1_rpc: str, l2_rpc: str, rollup_rpc: str, private_key: str) -> list[str]:
        cmd = [
            "--l1-eth-rpc", l1_rpc,
            "--l2-eth-rpc", l2_rpc,
            "--rollup-rpc", rollup_rpc,
            "--private-key", private_key,
            "--rpc.addr", "0.0.0.0",
            "--rpc.port", str(self.rpc_port),
            "--rpc.enable-admin",
            "--metrics.enabled",
            "--metrics.addr", "0.0.0.0",
            "--metrics.port", str(self.metrics_port),
            "--data-availability-type", self.data_availability_type,
            # No DA throttling on a local devnet
            "--throttle.unsafe-da-bytes-lower-threshold", "0",
        ]
        if self.max_l1_tx_size_bytes is not None:
            cmd += ["--max-l1-tx-size-bytes", str(self.max_l1_tx_size_bytes)]
        if self.target_num_frames is not None:
            cmd += ["--target-num-frames", str(self.target_num_frames)]
        if self.sub_safety_margin is not None:
            cmd += ["--sub-safety-margin", str(self.sub_safety_margin)]
        if self.poll_interval:
            cmd += ["--poll-interval", self.poll_interval]
        return cmd + list(self.extra_args)

    async def start(self, ctx: L2Context, op_reth: OpRethHandle, kona_node: KonaNodeHandle) -> OpBatcherHandle:
        """Start the batcher against the primary sequencer."""
        cmd = self.build_cmd(
            ctx.anvil.rpc_url,
            op_reth.http_rpc_url,
            kona_node.rpc_url,
            ctx.anvil.accounts.batcher.private_key,
        )
        service_config = ServiceConfig(
            image=self.image,
            entrypoint=entrypoint_for(self.image, "op-batcher"),
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
        handle = OpBatcherHandle(
            container=container,
            rpc_url=ctx.docker.internal_http_url(self.container_name, self.rpc_port),
            rpc_host_url=ctx.docker.host_http_url(container, self.rpc_port),
            metrics_port=self.metrics_port,
        )
        logger.info("op-batcher started", container_name=self.container_name, rpc_host_url=handle.rpc_host_url)
        return handle
