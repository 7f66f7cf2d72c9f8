"""op-conductor: Raft coordination of multiple sequencers.

The first sequencer's conductor bootstraps the Raft cluster and leads it;
every other conductor starts without bootstrapping and its kona-node starts
with the sequencer stopped until the cluster hands it leadership.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from ...shared.logging import get_logger
from ..docker import ContainerHandle, DockerImage, PortMapping, ServiceConfig, StartOptions, port_mappings
from ..stages import ServiceContext
from .base import ServiceSpec, config_bind, container_path, entrypoint_for
from .op_reth import OpRethHandle, p2p_host, shift_port

logger = get_logger(__name__)

DEFAULT_IMAGE = "us-docker.pkg.dev/oplabs-tools-artifacts/images/op-conductor"
DEFAULT_TAG = "v0.9.0"
DEFAULT_CONTAINER_NAME = "kupcake-op-conductor"

RPC_PORT = 8547
CONSENSUS_PORT = 50050


class ConductorRole(Enum):
    """Position of a sequencer in the conductor cluster."""

    NONE = "none"  # No conductor
    LEADER = "leader"  # Bootstraps the Raft cluster
    FOLLOWER = "follower"  # Joins the existing cluster


@dataclass(frozen=True)
class ConductorContext:
    """How a sequencer's kona-node and conductor are wired together.

    rpc_url is the conductor's RPC URL, known before the conductor starts so
    that kona-node can be pointed at it.
    """

    role: ConductorRole = ConductorRole.NONE
    index: int = 0
    rpc_url: str = ""

    @classmethod
    def none(cls) -> ConductorContext:
        return cls()

    @classmethod
    def leader(cls, index: int, rpc_url: str) -> ConductorContext:
        return cls(ConductorRole.LEADER, index, rpc_url)

    @classmethod
    def follower(cls, index: int, rpc_url: str) -> ConductorContext:
        return cls(ConductorRole.FOLLOWER, index, rpc_url)

    @property
    def enabled(self) -> bool:
        return self.role is not ConductorRole.NONE

    @property
    def is_leader(self) -> bool:
        return self.role is ConductorRole.LEADER

    @property
    def raft_bootstrap(self) -> bool:
        """Only the leader bootstraps the cluster."""
        return self.is_leader

    @property
    def sequencer_stopped(self) -> bool:
        """Followers start with the sequencer stopped."""
        return self.role is ConductorRole.FOLLOWER


@dataclass
class OpConductorHandle:
    """Running op-conductor instance."""

    container: ContainerHandle
    server_id: str
    rpc_url: str
    rpc_host_url: str | None
    leader: bool

    @property
    def container_name(self) -> str:
        return self.container.container_name


@dataclass
class OpConductorConfig(ServiceSpec):
    """op-conductor container settings."""

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    rpc_port: int = RPC_PORT
    consensus_port: int = CONSENSUS_PORT
    rpc_host_port: int | None = 0
    consensus_host_port: int | None = None
    healthcheck_interval: int = 5
    healthcheck_unsafe_interval: int = 600
    healthcheck_min_peer_count: int = 1
    paused: bool = False
    extra_args: list[str] = field(default_factory=list)

    def with_port_offset(self, offset: int) -> OpConductorConfig:
        return replace(
            self,
            rpc_port=self.rpc_port + offset,
            consensus_port=self.consensus_port + offset,
            rpc_host_port=shift_port(self.rpc_host_port, offset),
            consensus_host_port=shift_port(self.consensus_host_port, offset),
        )

    def rpc_url(self, ctx: ServiceContext) -> str:
        """RPC URL of this conductor, before it is started."""
        return ctx.docker.internal_http_url(self.container_name, self.rpc_port)

    @property
    def raft_dir(self) -> str:
        # One storage dir per conductor; they all share the l2-stack mount
        return container_path(f"raft-{self.container_name}")

    def build_cmd(
        self, kona_rpc_url: str, op_reth: OpRethHandle, bootstrap: bool, consensus_addr: str | None = None
    ) -> list[str]:
        cmd = [
            "--node.rpc", kona_rpc_url,
            "--execution.rpc", op_reth.http_rpc_url,
            "--raft.server.id", self.container_name,
            "--raft.storage.dir", self.raft_dir,
            "--rollup.config", container_path("rollup.json"),
            "--consensus.addr", consensus_addr or self.container_name,
            "--consensus.port", str(self.consensus_port),
            "--rpc.addr", "0.0.0.0",
            "--rpc.port", str(self.rpc_port),
            "--healthcheck.interval", str(self.healthcheck_interval),
            "--healthcheck.unsafe-interval", str(self.healthcheck_unsafe_interval),
            "--healthcheck.min-peer-count", str(self.healthcheck_min_peer_count),
            "--log.level", "info",
        ]
        if bootstrap:
            cmd.append("--raft.bootstrap")
        if self.paused:
            cmd.append("--paused")
        return cmd + list(self.extra_args)

    async def start(
        self,
        ctx: ServiceContext,
        conductor: ConductorContext,
        op_reth: OpRethHandle,
        kona_rpc_url: str,
    ) -> OpConductorHandle:
        """Start the conductor of one sequencer.

        The leader starts with --raft.bootstrap; followers join without it.
        """
        service_config = ServiceConfig(
            image=self.image,
            entrypoint=entrypoint_for(self.image, "op-conductor"),
            cmd=self.build_cmd(
                kona_rpc_url,
                op_reth,
                conductor.raft_bootstrap,
                consensus_addr=p2p_host(ctx.docker, self.container_name),
            ),
            ports=port_mappings(
                PortMapping.tcp_optional(self.rpc_port, self.rpc_host_port),
                PortMapping.tcp_optional(self.consensus_port, self.consensus_host_port),
            ),
            binds=[config_bind(ctx.l2_dir)],
        )

        container = await ctx.docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )

        handle = OpConductorHandle(
            container=container,
            server_id=self.container_name,
            rpc_url=self.rpc_url(ctx),
            rpc_host_url=ctx.docker.host_http_url(container, self.rpc_port),
            leader=conductor.is_leader,
        )
        logger.info(
            "op-conductor started",
            container_name=self.container_name,
            bootstrap=conductor.raft_bootstrap,
            rpc_host_url=handle.rpc_host_url,
        )
        return handle
