"""op-reth L2 execution client."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from ...errors import ConfigError
from ...shared.logging import get_logger
from .. import rpc
from ..docker import (
    ContainerHandle,
    DockerImage,
    DockerManager,
    PortMapping,
    ServiceConfig,
    StartOptions,
    port_mappings,
)
from ..snapshot import reth_datadir_name
from ..stages import ServiceContext
from .base import ServiceSpec, config_bind, container_path
from .p2p import P2pKeypair, key_filename

logger = get_logger(__name__)

DEFAULT_IMAGE = "ghcr.io/paradigmxyz/op-reth"
DEFAULT_TAG = "latest"
DEFAULT_CONTAINER_NAME = "kupcake-op-reth"

HTTP_PORT = 9545
WS_PORT = 9546
AUTHRPC_PORT = 9551
DISCOVERY_PORT = 30303
METRICS_PORT = 9001

RPC_APIS = "admin,debug,eth,net,trace,txpool,web3,rpc,reth,miner"


def p2p_host(docker: DockerManager, container_name: str) -> str:
    """Address peers use to reach a container."""
    return "127.0.0.1" if docker.is_host_mode else container_name


@dataclass
class OpRethHandle:
    """Running op-reth instance."""

    container: ContainerHandle
    http_rpc_url: str
    ws_rpc_url: str
    authrpc_url: str
    http_host_url: str | None
    ws_host_url: str | None
    enode: str
    metrics_port: int = METRICS_PORT

    @property
    def container_name(self) -> str:
        return self.container.container_name

    async def sync_status(self) -> rpc.ExecutionSyncStatus:
        """Sync state and block height (via the host URL)."""
        if self.http_host_url is None:
            raise ConfigError(message=f"HTTP RPC of {self.container_name} is not published to the host")
        return await rpc.execution_sync_status(self.http_host_url)


@dataclass
class OpRethConfig(ServiceSpec):
    """op-reth container settings. Host ports: None keeps a port internal."""

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    http_port: int = HTTP_PORT
    ws_port: int = WS_PORT
    authrpc_port: int = AUTHRPC_PORT
    discovery_port: int = DISCOVERY_PORT
    metrics_port: int = METRICS_PORT
    http_host_port: int | None = 0
    ws_host_port: int | None = 0
    authrpc_host_port: int | None = None
    metrics_host_port: int | None = None
    discovery_host_port: int | None = None
    extra_args: list[str] = field(default_factory=list)

    def with_port_offset(self, offset: int) -> OpRethConfig:
        """Copy with every container port (and fixed host port) shifted."""
        return replace(
            self,
            http_port=self.http_port + offset,
            ws_port=self.ws_port + offset,
            authrpc_port=self.authrpc_port + offset,
            discovery_port=self.discovery_port + offset,
            metrics_port=self.metrics_port + offset,
            http_host_port=shift_port(self.http_host_port, offset),
            ws_host_port=shift_port(self.ws_host_port, offset),
            authrpc_host_port=shift_port(self.authrpc_host_port, offset),
            metrics_host_port=shift_port(self.metrics_host_port, offset),
            discovery_host_port=shift_port(self.discovery_host_port, offset),
        )

    @property
    def datadir_name(self) -> str:
        return reth_datadir_name(self.container_name)

    def build_cmd(self, jwt_filename: str, trusted_peers: list[str], sequencer_http: str) -> list[str]:
        cmd = [
            "node",
            "--chain", container_path("genesis.json"),
            "--datadir", container_path(self.datadir_name),
            "--http",
            "--http.addr", "0.0.0.0",
            "--http.port", str(self.http_port),
            "--http.api", RPC_APIS,
            "--ws",
            "--ws.addr", "0.0.0.0",
            "--ws.port", str(self.ws_port),
            "--ws.api", RPC_APIS,
            "--authrpc.addr", "0.0.0.0",
            "--authrpc.port", str(self.authrpc_port),
            "--authrpc.jwtsecret", container_path(jwt_filename),
            "--port", str(self.discovery_port),
            "--p2p-secret-key", container_path(key_filename(self.container_name)),
            "--metrics", f"0.0.0.0:{self.metrics_port}",
            "--disable-discovery",
        ]
        if trusted_peers:
            cmd += ["--trusted-peers", ",".join(trusted_peers)]
        cmd += ["--rollup.sequencer-http", sequencer_http]
        cmd += ["--log.stdout.format", "terminal"]
        return cmd + list(self.extra_args)

    async def start(
        self,
        ctx: ServiceContext,
        jwt_filename: str,
        trusted_peers: list[str],
        sequencer_http: str | None = None,
        extra_binds: list[str] | None = None,
    ) -> OpRethHandle:
        """Start op-reth.

        Args:
            ctx: Service context.
            jwt_filename: Engine API secret shared with the paired kona-node.
            trusted_peers: Enodes of every op-reth started before this one.
            sequencer_http: Upstream sequencer for validators (sequencers use themselves).
            extra_binds: Additional bind mounts (snapshot databases).
        """
        l2_dir = ctx.l2_dir
        keypair = P2pKeypair.load_or_create(l2_dir / key_filename(self.container_name))
        docker = ctx.docker

        own_http = docker.internal_http_url(self.container_name, self.http_port)
        cmd = self.build_cmd(jwt_filename, trusted_peers, sequencer_http or own_http)

        service_config = ServiceConfig(
            image=self.image,
            cmd=cmd,
            ports=port_mappings(
                PortMapping.tcp_optional(self.http_port, self.http_host_port),
                PortMapping.tcp_optional(self.ws_port, self.ws_host_port),
                PortMapping.tcp_optional(self.authrpc_port, self.authrpc_host_port),
                PortMapping.tcp_optional(self.metrics_port, self.metrics_host_port),
                PortMapping.tcp_optional(self.discovery_port, self.discovery_host_port),
                PortMapping.udp_optional(self.discovery_port, self.discovery_host_port),
            ),
            binds=[config_bind(l2_dir), *(extra_binds or [])],
        )

        container = await docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )

        handle = OpRethHandle(
            container=container,
            http_rpc_url=own_http,
            ws_rpc_url=docker.internal_ws_url(self.container_name, self.ws_port),
            authrpc_url=docker.internal_http_url(self.container_name, self.authrpc_port),
            http_host_url=docker.host_http_url(container, self.http_port),
            ws_host_url=docker.host_ws_url(container, self.ws_port),
            enode=keypair.enode(p2p_host(docker, self.container_name), self.discovery_port),
            metrics_port=self.metrics_port,
        )
        logger.info(
            "op-reth started",
            container_name=self.container_name,
            http_host_url=handle.http_host_url,
            trusted_peers=len(trusted_peers),
        )
        return handle


def shift_port(port: int | None, offset: int) -> int | None:
    # None (internal) and 0 (ephemeral) stay as they are
    return port + offset if port else port
