"""kona-node L2 consensus client.

Each kona-node drives exactly one op-reth through the Engine API. Sequencers
build blocks and sign them with the unsafe block signer key; validators
derive the chain from L1 and gossip with the sequencers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from ...errors import ConfigError
from ...shared.logging import get_logger
from .. import rpc
from ..docker import ContainerHandle, DockerImage, PortMapping, ServiceConfig, StartOptions, port_mappings
from ..stages import L2Context
from .base import ServiceSpec, config_bind, container_path
from .op_reth import OpRethHandle, p2p_host, shift_port
from .p2p import P2pKeypair, key_filename

if TYPE_CHECKING:
    from .op_conductor import ConductorContext

logger = get_logger(__name__)

DEFAULT_IMAGE = "ghcr.io/op-rs/kona/kona-node"
DEFAULT_TAG = "latest"
DEFAULT_CONTAINER_NAME = "kupcake-kona-node"

RPC_PORT = 7545
METRICS_PORT = 7300
P2P_PORT = 9222

L1_SLOT_DURATION = 12
LOCAL_L1_BLOCK_TIME = 2
L1_CONFIG_FILENAME = "l1-config.json"

# L1 chains kona-node ships configs for (mainnet, sepolia)
KNOWN_L1_CHAINS = frozenset({1, 11155111})

# Hardforks activated at genesis on a local L1, by block and by timestamp
L1_BLOCK_FORKS = (
    "homestead",
    "dao_fork",
    "eip150",
    "eip155",
    "eip158",
    "byzantium",
    "constantinople",
    "petersburg",
    "istanbul",
    "muir_glacier",
    "berlin",
    "london",
    "arrow_glacier",
    "gray_glacier",
    "merge_netsplit",
)
L1_TIME_FORKS = ("shanghai", "cancun", "prague")


class NodeRole(Enum):
    """Role of an L2 node."""

    SEQUENCER = "sequencer"  # Builds blocks
    VALIDATOR = "validator"  # Follows the sequencers


def is_known_l1_chain(chain_id: int) -> bool:
    return chain_id in KNOWN_L1_CHAINS


def write_local_l1_config(l2_dir: Path, chain_id: int) -> Path:
    """Write the L1 chain config kona-node needs for a local L1 chain."""
    config = {
        "chain_id": chain_id,
        "genesis_time": 0,
        "block_time": LOCAL_L1_BLOCK_TIME,
        **{f"{fork}_block": 0 for fork in L1_BLOCK_FORKS},
        **{f"{fork}_time": 0 for fork in L1_TIME_FORKS},
        "terminal_total_difficulty": 0,
        "terminal_total_difficulty_passed": True,
    }
    path = l2_dir / L1_CONFIG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2))
    logger.debug("wrote local L1 config", path=str(path), chain_id=chain_id)
    return path


@dataclass
class KonaNodeHandle:
    """Running kona-node instance."""

    container: ContainerHandle
    role: NodeRole
    rpc_url: str
    rpc_host_url: str | None
    p2p_enode: str
    metrics_port: int = METRICS_PORT

    @property
    def container_name(self) -> str:
        return self.container.container_name

    async def sync_status(self) -> rpc.RollupSyncStatus:
        """Unsafe/safe/finalized heads (via the host URL)."""
        if self.rpc_host_url is None:
            raise ConfigError(message=f"RPC of {self.container_name} is not published to the host")
        return await rpc.rollup_sync_status(self.rpc_host_url)


@dataclass
class KonaNodeConfig(ServiceSpec):
    """kona-node container settings."""

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    rpc_port: int = RPC_PORT
    metrics_port: int = METRICS_PORT
    p2p_port: int = P2P_PORT
    rpc_host_port: int | None = 0
    metrics_host_port: int | None = None
    p2p_host_port: int | None = None
    metrics_enabled: bool = True
    l1_slot_duration: int = L1_SLOT_DURATION
    extra_args: list[str] = field(default_factory=list)

    def with_port_offset(self, offset: int) -> KonaNodeConfig:
        return replace(
            self,
            rpc_port=self.rpc_port + offset,
            metrics_port=self.metrics_port + offset,
            p2p_port=self.p2p_port + offset,
            rpc_host_port=shift_port(self.rpc_host_port, offset),
            metrics_host_port=shift_port(self.metrics_host_port, offset),
            p2p_host_port=shift_port(self.p2p_host_port, offset),
        )

    def build_cmd(
        self,
        ctx: L2Context,
        role: NodeRole,
        op_reth: OpRethHandle,
        jwt_filename: str,
        keypair: P2pKeypair,
        advertise_ip: str,
        bootnodes: list[str],
        conductor: ConductorContext | None = None,
    ) -> list[str]:
        cmd: list[str] = []
        if self.metrics_enabled:
            cmd += ["--metrics.enabled", "--metrics.port", str(self.metrics_port)]

        l1_url = ctx.anvil.rpc_url
        cmd += [
            "node",
            "--mode", role.value,
            "--l1", l1_url,
            "--l1-beacon", l1_url,
            "--l1.slot-duration", str(self.l1_slot_duration),
            "--l2", op_reth.authrpc_url,
            "--rollup-cfg", container_path("rollup.json"),
            "--l2.jwt-secret", container_path(jwt_filename),
            "--rpc.port", str(self.rpc_port),
            "--p2p.listen.ip", "0.0.0.0",
            "--p2p.listen.tcp", str(self.p2p_port),
            "--p2p.listen.udp", str(self.p2p_port),
            "--p2p.advertise.ip", advertise_ip,
            "--p2p.priv.raw", keypair.private_key,
        ]
        if bootnodes:
            cmd += ["--p2p.bootnodes", ",".join(bootnodes)]
        if role is NodeRole.SEQUENCER:
            cmd += ["--p2p.sequencer.key", ctx.anvil.accounts.unsafe_block_signer.private_key]
        if not is_known_l1_chain(ctx.l1_chain_id):
            cmd += ["--l1-config-file", container_path(L1_CONFIG_FILENAME)]
        if conductor is not None and conductor.enabled:
            cmd += ["--conductor.rpc", conductor.rpc_url]
            if conductor.sequencer_stopped:
                cmd.append("--sequencer.stopped")
        return cmd + list(self.extra_args)

    async def start(
        self,
        ctx: L2Context,
        role: NodeRole,
        op_reth: OpRethHandle,
        jwt_filename: str,
        bootnodes: list[str],
        conductor: ConductorContext | None = None,
    ) -> KonaNodeHandle:
        """Start kona-node paired with op_reth.

        Args:
            ctx: L2 stage context.
            role: Sequencer or validator.
            op_reth: The execution client this node drives.
            jwt_filename: Engine API secret shared with op_reth.
            bootnodes: Enodes of every kona-node started before this one.
            conductor: Conductor attachment for sequencers under op-conductor.
        """
        docker = ctx.docker
        l2_dir = ctx.l2_dir
        keypair = P2pKeypair.load_or_create(l2_dir / key_filename(self.container_name))
        advertise_ip = p2p_host(docker, self.container_name)

        if not is_known_l1_chain(ctx.l1_chain_id):
            write_local_l1_config(l2_dir, ctx.l1_chain_id)

        cmd = self.build_cmd(ctx, role, op_reth, jwt_filename, keypair, advertise_ip, bootnodes, conductor)
        service_config = ServiceConfig(
            image=self.image,
            cmd=cmd,
            ports=port_mappings(
                PortMapping.tcp_optional(self.rpc_port, self.rpc_host_port),
                PortMapping.tcp_optional(self.metrics_port, self.metrics_host_port),
                PortMapping.tcp_optional(self.p2p_port, self.p2p_host_port),
                PortMapping.udp_optional(self.p2p_port, self.p2p_host_port),
            ),
            binds=[config_bind(l2_dir)],
        )

        container = await docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )

        handle = KonaNodeHandle(
            container=container,
            role=role,
            rpc_url=docker.internal_http_url(self.container_name, self.rpc_port),
            rpc_host_url=docker.host_http_url(container, self.rpc_port),
            p2p_enode=keypair.enode(advertise_ip, self.p2p_port),
            metrics_port=self.metrics_port,
        )
        logger.info(
            "kona-node started",
            container_name=self.container_name,
            role=role.value,
            rpc_host_url=handle.rpc_host_url,
            bootnodes=len(bootnodes),
        )
        return handle
