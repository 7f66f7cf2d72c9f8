"""L2 node fleet orchestration.

Sequencers start first, then validators, one node at a time: every node is
told about the peers of all nodes started before it, so the order matters
and nothing here runs concurrently.

Per node:

1. write a fresh Engine API JWT shared by the node's op-reth and kona-node
2. start op-reth with the op-reth peers seen so far
3. load (or create) the kona-node P2P key
4. for a sequencer under op-conductor, work out the conductor RPC URL and
   whether this node leads the Raft cluster
5. start kona-node with the kona-node peers seen so far
6. record both enodes for the nodes that follow
7. for a conductor node, wait for both RPCs and start the conductor

The batcher, proposer and challenger then start against the primary
sequencer. Snapshot deployments skip the proposer and challenger.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..errors import ConfigError
from ..shared.logging import get_logger
from .readiness import RPC_READY_TIMEOUT, wait_for_rpc, wait_until_ready
from .services.base import ServiceSpec, StageService
from .services.kona_node import KonaNodeConfig, KonaNodeHandle, NodeRole
from .services.op_batcher import OpBatcherConfig, OpBatcherHandle
from .services.op_challenger import OpChallengerConfig, OpChallengerHandle
from .services.op_conductor import ConductorContext, OpConductorConfig, OpConductorHandle
from .services.op_proposer import OpProposerConfig, OpProposerHandle
from .services.op_reth import OpRethConfig, OpRethHandle
from .stages import L2Context, Stage

logger = get_logger(__name__)

DEFAULT_PREFIX = "kupcake"

# Port shift between consecutive nodes when every container shares the host network
PORT_STRIDE = 10


def jwt_filename(op_reth_container: str) -> str:
    return f"jwt-{op_reth_container}.hex"


@dataclass
class PeerRegistry:
    """Enodes of the nodes started so far, in start order.

    A node is registered only once it is running, so the peer lists handed
    to a node never contain the node itself.
    """

    kona_node_enodes: list[str] = field(default_factory=list)
    op_reth_enodes: list[str] = field(default_factory=list)

    def kona_node_peers(self) -> list[str]:
        return list(self.kona_node_enodes)

    def op_reth_peers(self) -> list[str]:
        return list(self.op_reth_enodes)

    def add_kona_node(self, enode: str) -> None:
        self.kona_node_enodes.append(enode)

    def add_op_reth(self, enode: str) -> None:
        self.op_reth_enodes.append(enode)


@dataclass
class L2NodeConfig(ServiceSpec):
    """An op-reth + kona-node pair, with an op-conductor for HA sequencers."""

    role: NodeRole
    op_reth: OpRethConfig = field(default_factory=OpRethConfig)
    kona_node: KonaNodeConfig = field(default_factory=KonaNodeConfig)
    op_conductor: OpConductorConfig | None = None

    @classmethod
    def named(cls, role: NodeRole, prefix: str = DEFAULT_PREFIX, suffix: str = "") -> L2NodeConfig:
        """Node whose containers are called <prefix>-op-reth<suffix> and <prefix>-kona-node<suffix>."""
        return cls(
            role=role,
            op_reth=OpRethConfig(container_name=f"{prefix}-op-reth{suffix}"),
            kona_node=KonaNodeConfig(container_name=f"{prefix}-kona-node{suffix}"),
        )

    @property
    def is_sequencer(self) -> bool:
        return self.role is NodeRole.SEQUENCER

    def with_port_offset(self, offset: int) -> L2NodeConfig:
        return L2NodeConfig(
            role=self.role,
            op_reth=self.op_reth.with_port_offset(offset),
            kona_node=self.kona_node.with_port_offset(offset),
            op_conductor=self.op_conductor.with_port_offset(offset) if self.op_conductor else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "op_reth": self.op_reth.to_dict(),
            "kona_node": self.kona_node.to_dict(),
            "op_conductor": self.op_conductor.to_dict() if self.op_conductor else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> L2NodeConfig:
        try:
            role = NodeRole(data["role"])
        except (KeyError, ValueError):
            raise ConfigError(message=f"Invalid L2 node role: {data.get('role')!r}")
        conductor = data.get("op_conductor")
        return cls(
            role=role,
            op_reth=OpRethConfig.from_dict(data.get("op_reth") or {}),
            kona_node=KonaNodeConfig.from_dict(data.get("kona_node") or {}),
            op_conductor=OpConductorConfig.from_dict(conductor) if conductor else None,
        )


@dataclass
class L2NodeHandle:
    """A running node pair."""

    role: NodeRole
    op_reth: OpRethHandle
    kona_node: KonaNodeHandle
    op_conductor: OpConductorHandle | None = None

    @property
    def is_sequencer(self) -> bool:
        return self.role is NodeRole.SEQUENCER


@dataclass
class L2StackHandle:
    """The running L2 fleet and its L1-facing services."""

    sequencers: list[L2NodeHandle]
    validators: list[L2NodeHandle]
    op_batcher: OpBatcherHandle
    op_proposer: OpProposerHandle | None = None
    op_challenger: OpChallengerHandle | None = None
    kona_node_enodes: list[str] = field(default_factory=list)
    op_reth_enodes: list[str] = field(default_factory=list)

    @property
    def nodes(self) -> list[L2NodeHandle]:
        """Every node in fleet order."""
        return [*self.sequencers, *self.validators]

    @property
    def primary_sequencer(self) -> L2NodeHandle:
        return self.sequencers[0]


class FleetOrchestrator:
    """Starts the nodes of one L2StackConfig in order."""

    def __init__(self, config: L2StackConfig, ctx: L2Context, rpc_timeout: float = RPC_READY_TIMEOUT):
        self.config = config
        self.ctx = ctx
        self.rpc_timeout = rpc_timeout
        self.registry = PeerRegistry()

    def write_jwt_secret(self, op_reth_container: str) -> str:
        """Write a fresh 32-byte hex JWT for one node pair and return its file name."""
        filename = jwt_filename(op_reth_container)
        path = self.ctx.l2_dir / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(secrets.token_hex(32))
        logger.debug("jwt secret written", path=str(path))
        return filename

    def conductor_context(self, index: int, node: L2NodeConfig) -> ConductorContext:
        """Leader for the first sequencer, follower for the others, none without a conductor."""
        if node.op_conductor is None:
            return ConductorContext.none()
        rpc_url = node.op_conductor.rpc_url(self.ctx)
        if index == 0:
            return ConductorContext.leader(index, rpc_url)
        return ConductorContext.follower(index, rpc_url)

    def snapshot_binds(self, index: int, node: L2NodeConfig) -> list[str]:
        """Make a symlinked snapshot database visible inside the primary op-reth."""
        database = self.ctx.contracts.snapshot_database
        if index != 0 or not node.is_sequencer or database is None:
            return []
        return [f"{database}:{database}:rw"]

    async def wait_for_node_rpcs(self, op_reth: OpRethHandle, kona_node: KonaNodeHandle) -> None:
        """Block until both RPCs of a node pair answer.

        Raises:
            ConfigError: If either RPC is not published to the host.
            ReadinessTimeoutError: If an RPC does not answer in time.
        """
        if op_reth.http_host_url is None or kona_node.rpc_host_url is None:
            raise ConfigError(
                message=f"Cannot check readiness of {op_reth.container_name}/{kona_node.container_name}: "
                "RPC not published to the host",
                data={"op_reth": op_reth.http_host_url, "kona_node": kona_node.rpc_host_url},
            )
        await wait_for_rpc(op_reth.container_name, op_reth.http_host_url, timeout=self.rpc_timeout)
        await wait_until_ready(kona_node.container_name, kona_node.sync_status, timeout=self.rpc_timeout)

    async def start_node(
        self,
        index: int,
        node: L2NodeConfig,
        sequencer_http: str | None = None,
        conductor: ConductorContext | None = None,
    ) -> L2NodeHandle:
        """Run the per-node steps for one fleet entry."""
        ctx = self.ctx
        conductor = conductor or ConductorContext.none()

        jwt = self.write_jwt_secret(node.op_reth.container_name)

        op_reth = await node.op_reth.start(
            ctx,
            jwt,
            self.registry.op_reth_peers(),
            sequencer_http=sequencer_http,
            extra_binds=self.snapshot_binds(index, node),
        )

        kona_node = await node.kona_node.start(
            ctx,
            node.role,
            op_reth,
            jwt,
            self.registry.kona_node_peers(),
            conductor=conductor,
        )

        self.registry.add_kona_node(kona_node.p2p_enode)
        self.registry.add_op_reth(op_reth.enode)

        op_conductor = None
        if node.op_conductor is not None and conductor.enabled:
            # The conductor dials both RPCs as soon as it starts
            await self.wait_for_node_rpcs(op_reth, kona_node)
            op_conductor = await node.op_conductor.start(ctx, conductor, op_reth, kona_node.rpc_url)

        logger.info(
            "l2 node started",
            role=node.role.value,
            index=index,
            op_reth=op_reth.container_name,
            kona_node=kona_node.container_name,
            conductor=op_conductor.container_name if op_conductor else None,
        )
        return L2NodeHandle(role=node.role, op_reth=op_reth, kona_node=kona_node, op_conductor=op_conductor)

    async def run(self) -> L2StackHandle:
        config = self.config
        ctx = self.ctx
        config.validate()

        sequencers = []
        for i, node in enumerate(config.sequencers):
            sequencers.append(await self.start_node(i, node, conductor=self.conductor_context(i, node)))

        # Validators follow the primary sequencer
        sequencer_http = sequencers[0].op_reth.http_rpc_url
        validators = []
        for i, node in enumerate(config.validators):
            validators.append(await self.start_node(len(sequencers) + i, node, sequencer_http=sequencer_http))

        logger.info(
            "l2 nodes started",
            sequencers=len(sequencers),
            validators=len(validators),
            kona_node_peers=len(self.registry.kona_node_enodes),
            op_reth_peers=len(self.registry.op_reth_enodes),
        )

        primary = sequencers[0]
        op_batcher = await config.op_batcher.start(ctx, primary.op_reth, primary.kona_node)

        op_proposer = None
        op_challenger = None
        if ctx.contracts.snapshot:
            logger.info("snapshot deployment, not starting op-proposer and op-challenger")
        else:
            op_proposer = await config.op_proposer.start(ctx, primary.kona_node)
            op_challenger = await config.op_challenger.start(ctx, primary.op_reth, primary.kona_node)

        return L2StackHandle(
            sequencers=sequencers,
            validators=validators,
            op_batcher=op_batcher,
            op_proposer=op_proposer,
            op_challenger=op_challenger,
            kona_node_enodes=list(self.registry.kona_node_enodes),
            op_reth_enodes=list(self.registry.op_reth_enodes),
        )


@dataclass
class L2StackConfig(ServiceSpec, StageService):
    """The L2 stage: node fleet plus batcher, proposer and challenger."""

    SERVICE_NAME: ClassVar[str] = "l2-stack"
    STAGE: ClassVar[Stage] = Stage.L2

    sequencers: list[L2NodeConfig] = field(default_factory=lambda: [L2NodeConfig.named(NodeRole.SEQUENCER)])
    validators: list[L2NodeConfig] = field(default_factory=list)
    op_batcher: OpBatcherConfig = field(default_factory=OpBatcherConfig)
    op_proposer: OpProposerConfig = field(default_factory=OpProposerConfig)
    op_challenger: OpChallengerConfig = field(default_factory=OpChallengerConfig)

    @classmethod
    def with_counts(cls, sequencers: int, validators: int, prefix: str = DEFAULT_PREFIX) -> L2StackConfig:
        """Fleet of sequencers then validators.

        With more than one sequencer every sequencer gets an op-conductor.

        Raises:
            ConfigError: If sequencers < 1.
        """
        if sequencers < 1:
            raise ConfigError(
                message="At least one sequencer node is required",
                data={"sequencers": sequencers},
            )

        needs_conductor = sequencers > 1
        sequencer_nodes = []
        for i in range(sequencers):
            node = L2NodeConfig.named(NodeRole.SEQUENCER, prefix, f"-sequencer-{i}" if i else "")
            if needs_conductor:
                node.op_conductor = OpConductorConfig(
                    container_name=f"{prefix}-op-conductor-{i}" if i else f"{prefix}-op-conductor"
                )
            sequencer_nodes.append(node)

        validator_nodes = [
            L2NodeConfig.named(NodeRole.VALIDATOR, prefix, f"-validator-{i + 1}") for i in range(validators)
        ]

        return cls(
            sequencers=sequencer_nodes,
            validators=validator_nodes,
            op_batcher=OpBatcherConfig(container_name=f"{prefix}-op-batcher"),
            op_proposer=OpProposerConfig(container_name=f"{prefix}-op-proposer"),
            op_challenger=OpChallengerConfig(container_name=f"{prefix}-op-challenger"),
        )

    @classmethod
    def for_fleet(cls, total: int, sequencer_count: int, prefix: str = DEFAULT_PREFIX) -> L2StackConfig:
        """Fleet of `total` nodes, the first `sequencer_count` of them sequencers (clamped to [1, total])."""
        total = max(total, 1)
        sequencer_count = min(max(sequencer_count, 1), total)
        return cls.with_counts(sequencer_count, total - sequencer_count, prefix)

    @property
    def nodes(self) -> list[L2NodeConfig]:
        return [*self.sequencers, *self.validators]

    @property
    def primary_sequencer(self) -> L2NodeConfig:
        return self.sequencers[0]

    @property
    def needs_conductor(self) -> bool:
        return any(node.op_conductor is not None for node in self.sequencers)

    def validate(self) -> None:
        """Check the fleet can be bootstrapped before any container starts.

        A conductor is started only once its node's RPCs answer, which is
        checked from the host, so conductor nodes must publish both RPCs.

        Raises:
            ConfigError: If a conductor node keeps an RPC internal.
        """
        unpublished = [
            name
            for node in self.sequencers
            if node.op_conductor is not None
            for name, host_port in (
                (node.op_reth.container_name, node.op_reth.http_host_port),
                (node.kona_node.container_name, node.kona_node.rpc_host_port),
            )
            if host_port is None
        ]
        if unpublished:
            raise ConfigError(
                message=f"Sequencers under op-conductor must publish their RPCs: {', '.join(unpublished)}",
                data={"containers": unpublished},
            )

    def with_host_port_offsets(self, stride: int = PORT_STRIDE) -> L2StackConfig:
        """Copy where node i listens on its ports shifted by i * stride.

        Needed when every container shares the host network.
        """
        shifted = [node.with_port_offset(i * stride) for i, node in enumerate(self.nodes)]
        return L2StackConfig(
            sequencers=shifted[: len(self.sequencers)],
            validators=shifted[len(self.sequencers) :],
            op_batcher=self.op_batcher,
            op_proposer=self.op_proposer,
            op_challenger=self.op_challenger,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequencers": [node.to_dict() for node in self.sequencers],
            "validators": [node.to_dict() for node in self.validators],
            "op_batcher": self.op_batcher.to_dict(),
            "op_proposer": self.op_proposer.to_dict(),
            "op_challenger": self.op_challenger.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> L2StackConfig:
        sequencers = [L2NodeConfig.from_dict(node) for node in data.get("sequencers") or []]
        if not sequencers:
            raise ConfigError(message="L2 stack has no sequencer nodes")
        return cls(
            sequencers=sequencers,
            validators=[L2NodeConfig.from_dict(node) for node in data.get("validators") or []],
            op_batcher=OpBatcherConfig.from_dict(data.get("op_batcher") or {}),
            op_proposer=OpProposerConfig.from_dict(data.get("op_proposer") or {}),
            op_challenger=OpChallengerConfig.from_dict(data.get("op_challenger") or {}),
        )

    async def start(self, ctx: L2Context) -> L2StackHandle:
        return await FleetOrchestrator(self, ctx).run()


__all__ = [
    "ConductorContext",
    "FleetOrchestrator",
    "L2NodeConfig",
    "L2NodeHandle",
    "L2StackConfig",
    "L2StackHandle",
    "PORT_STRIDE",
    "PeerRegistry",
    "jwt_filename",
]
