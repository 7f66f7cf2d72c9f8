"""Deployment of OP Stack devnets on Docker.

`kup deploy` runs four stages in order:
1. L1: anvil, local or forked from a remote chain
2. Contracts: op-deployer, skipped when nothing changed or a snapshot is used
3. L2: sequencers, validators, batcher, proposer and challenger
4. Monitoring: Prometheus and Grafana
"""

from .deployer import Deployer, DeployOptions, Endpoint, run_until_interrupted
from .docker import DockerImage, DockerManager, NetworkMode, cleanup_by_prefix
from .fingerprint import ConfigFingerprint, DeploymentVersion, RedeployDecision, needs_contract_deployment
from .fleet import L2NodeConfig, L2StackConfig, L2StackHandle, PeerRegistry
from .health import HealthReport, health_check
from .stages import DeploymentResult, Stage, StagePipeline, validate_stage_order

__all__ = [
    # Deployer
    "Deployer",
    "DeployOptions",
    "Endpoint",
    "run_until_interrupted",
    # Docker
    "DockerImage",
    "DockerManager",
    "NetworkMode",
    "cleanup_by_prefix",
    # Idempotency
    "ConfigFingerprint",
    "DeploymentVersion",
    "RedeployDecision",
    "needs_contract_deployment",
    # Pipeline
    "DeploymentResult",
    "Stage",
    "StagePipeline",
    "validate_stage_order",
    # L2 fleet
    "L2NodeConfig",
    "L2StackConfig",
    "L2StackHandle",
    "PeerRegistry",
    # Health
    "HealthReport",
    "health_check",
]
