"""Service adapters for the containers of a devnet.

Each service is a dataclass spec (serializable into Kupcake.yaml) with an
async start() returning a typed handle:
- anvil: L1 chain emulator
- op-deployer: contract deployment or snapshot restore
- op-reth / kona-node: execution and consensus clients of each L2 node
- op-conductor: Raft coordination of multiple sequencers
- op-batcher / op-proposer / op-challenger: L1 interaction
- prometheus / grafana: monitoring
"""

from .anvil import Account, AnvilAccounts, AnvilConfig, AnvilHandle
from .base import ServiceSpec, StageService
from .kona_node import KonaNodeConfig, KonaNodeHandle, NodeRole
from .monitoring import GrafanaConfig, MetricsTarget, MonitoringConfig, MonitoringHandle, PrometheusConfig
from .op_batcher import OpBatcherConfig, OpBatcherHandle
from .op_challenger import OpChallengerConfig, OpChallengerHandle
from .op_conductor import ConductorContext, ConductorRole, OpConductorConfig, OpConductorHandle
from .op_deployer import ContractsHandle, OpDeployerConfig, SnapshotConfig
from .op_proposer import OpProposerConfig, OpProposerHandle
from .op_reth import OpRethConfig, OpRethHandle
from .p2p import P2pKeypair

__all__ = [
    # Adapter interface
    "ServiceSpec",
    "StageService",
    # L1
    "Account",
    "AnvilAccounts",
    "AnvilConfig",
    "AnvilHandle",
    # Contracts
    "ContractsHandle",
    "OpDeployerConfig",
    "SnapshotConfig",
    # L2 nodes
    "NodeRole",
    "OpRethConfig",
    "OpRethHandle",
    "KonaNodeConfig",
    "KonaNodeHandle",
    "P2pKeypair",
    "ConductorContext",
    "ConductorRole",
    "OpConductorConfig",
    "OpConductorHandle",
    # L1 interaction
    "OpBatcherConfig",
    "OpBatcherHandle",
    "OpProposerConfig",
    "OpProposerHandle",
    "OpChallengerConfig",
    "OpChallengerHandle",
    # Monitoring
    "MetricsTarget",
    "MonitoringConfig",
    "MonitoringHandle",
    "PrometheusConfig",
    "GrafanaConfig",
]
