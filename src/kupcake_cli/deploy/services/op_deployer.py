"""op-deployer: L1 contract deployment and L2 chain artifacts.

Runs op-deployer as a series of one-shot containers sharing the l2-stack
directory:

1. init     - write intent.toml (standard-overrides)
2. (update) - bind the anvil dev accounts to the chain roles in the intent
3. apply    - deploy the contracts, producing state.json
4. inspect  - write genesis.json and rollup.json for the L2 nodes

The whole sequence is skipped when the deployment fingerprint matches the
one recorded by the previous run.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

import toml

from ...errors import ConfigError
from ...shared.logging import get_logger
from ...shared.paths import version_file
from ..docker import DockerImage, ServiceConfig, StartOptions, host_user
from ..fingerprint import (
    ConfigFingerprint,
    DeploymentVersion,
    RedeployDecision,
    needs_contract_deployment,
)
from ..readiness import wait_for_file
from ..snapshot import SnapshotLayout, restore_snapshot
from ..stages import ContractsContext, ServiceContext, Stage
from .anvil import AnvilAccounts
from .base import ServiceSpec, StageService, config_bind, container_path, entrypoint_for

logger = get_logger(__name__)

DEFAULT_IMAGE = "us-docker.pkg.dev/oplabs-tools-artifacts/images/op-deployer"
DEFAULT_TAG = "v0.5.0-rc.2"
DEFAULT_CONTAINER_NAME = "kupcake-op-deployer"

INTENT_FILENAME = "intent.toml"
STATE_FILENAME = "state.json"
GENESIS_FILENAME = "genesis.json"
ROLLUP_FILENAME = "rollup.json"
ARTIFACT_TIMEOUT = 30.0

# Files regenerated by every deployment
DEPLOYMENT_ARTIFACTS = (INTENT_FILENAME, STATE_FILENAME, GENESIS_FILENAME, ROLLUP_FILENAME)


@dataclass
class SnapshotConfig(ServiceSpec):
    """Start from a snapshot instead of deploying contracts."""

    path: str
    copy: bool = False


@dataclass
class ContractsHandle:
    """Outcome of the contracts stage."""

    l2_dir: Path
    decision: RedeployDecision | None = None
    snapshot: bool = False
    snapshot_database: Path | None = None

    @property
    def deployed(self) -> bool:
        """Whether contracts were deployed in this run."""
        return self.decision is not None and self.decision.should_deploy

    def dispute_game_factory(self) -> str:
        """DisputeGameFactoryProxy address recorded in state.json.

        Raises:
            ConfigError: If state.json is missing or has no such address.
        """
        state_file = self.l2_dir / STATE_FILENAME
        try:
            state = json.loads(state_file.read_text())
            return state["opChainDeployments"][0]["DisputeGameFactoryProxy"]
        except (OSError, ValueError) as e:
            raise ConfigError(
                message=f"Failed to read {state_file} for the DisputeGameFactory address: {e}",
                data={"path": str(state_file)},
            )
        except (KeyError, IndexError, TypeError):
            raise ConfigError(
                message=f"DisputeGameFactory address not found in {state_file}",
                data={"path": str(state_file)},
            )


def update_intent_roles(intent_path: Path, accounts: AnvilAccounts, fingerprint: ConfigFingerprint) -> None:
    """Point every chain role in intent.toml at the matching dev account."""
    intent = toml.load(intent_path)

    for chain in intent.get("chains", []):
        chain["baseFeeVaultRecipient"] = accounts.base_fee_vault_recipient.address
        chain["l1FeeVaultRecipient"] = accounts.l1_fee_vault_recipient.address
        chain["sequencerFeeVaultRecipient"] = accounts.deployer.address
        chain["eip1559Denominator"] = fingerprint.eip1559_denominator
        chain["eip1559DenominatorCanyon"] = fingerprint.eip1559_denominator_canyon
        chain["eip1559Elasticity"] = fingerprint.eip1559_elasticity

        roles = chain.setdefault("roles", {})
        roles["l1ProxyAdminOwner"] = accounts.l1_proxy_admin_owner.address
        roles["l2ProxyAdminOwner"] = accounts.l2_proxy_admin_owner.address
        roles["systemConfigOwner"] = accounts.system_config_owner.address
        roles["unsafeBlockSigner"] = accounts.unsafe_block_signer.address
        roles["batcher"] = accounts.batcher.address
        roles["proposer"] = accounts.proposer.address
        roles["challenger"] = accounts.challenger.address

    intent_path.write_text(toml.dumps(intent))


@dataclass
class OpDeployerConfig(ServiceSpec, StageService):
    """Contract deployment (or snapshot restore) stage."""

    SERVICE_NAME: ClassVar[str] = "op-deployer"
    STAGE: ClassVar[Stage] = Stage.CONTRACTS

    image: DockerImage = field(default_factory=lambda: DockerImage(DEFAULT_IMAGE, DEFAULT_TAG))
    container_name: str = DEFAULT_CONTAINER_NAME
    redeploy: bool = False
    snapshot: SnapshotConfig | None = None
    # Primary op-reth container; receives the snapshot database
    op_reth_container: str = "kupcake-op-reth"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["snapshot"] = self.snapshot.to_dict() if self.snapshot else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OpDeployerConfig:
        data = dict(data)
        snapshot = data.pop("snapshot", None)
        config = super().from_dict(data)
        config.snapshot = SnapshotConfig.from_dict(snapshot) if snapshot else None
        return config

    # ── One-shot containers ──

    async def _run(self, ctx: ServiceContext, step: str, args: list[str]) -> None:
        l2_dir = ctx.l2_dir
        l2_dir.mkdir(parents=True, exist_ok=True)
        service_config = ServiceConfig(
            image=self.image,
            entrypoint=entrypoint_for(self.image, "op-deployer"),
            cmd=["--cache-dir", container_path(".cache"), *args],
            binds=[config_bind(l2_dir)],
            user=host_user(),
        )
        await ctx.docker.start_service(
            f"{self.container_name}-{step}",
            service_config,
            StartOptions(stream_logs=True, wait=True),
        )
        logger.debug("op-deployer step completed", step=step)

    async def init_intent(self, ctx: ServiceContext) -> Path:
        """Generate intent.toml for the configured chain ids."""
        await self._run(
            ctx,
            "init",
            [
                "init",
                "--l1-chain-id", str(ctx.l1_chain_id),
                "--l2-chain-ids", str(ctx.l2_chain_id),
                "--workdir", container_path(),
                "--intent-type", "standard-overrides",
            ],
        )
        return await wait_for_file(ctx.l2_dir / INTENT_FILENAME, ARTIFACT_TIMEOUT)

    async def apply(self, ctx: ContractsContext) -> None:
        """Deploy the contracts to L1."""
        await self._run(
            ctx,
            "apply",
            [
                "apply",
                "--workdir", container_path(),
                "--l1-rpc-url", ctx.anvil.rpc_url,
                "--private-key", ctx.anvil.accounts.deployer.private_key,
            ],
        )

    async def inspect(self, ctx: ServiceContext, kind: str) -> Path:
        """Write <kind>.json (genesis or rollup) for the L2 chain."""
        filename = f"{kind}.json"
        await self._run(
            ctx,
            f"inspect-{kind}",
            [
                "inspect", kind,
                "--workdir", container_path(),
                "--outfile", container_path(filename),
                str(ctx.l2_chain_id),
            ],
        )
        return await wait_for_file(ctx.l2_dir / filename, ARTIFACT_TIMEOUT)

    # ── Stage ──

    def fingerprint(self, ctx: ContractsContext) -> ConfigFingerprint:
        return ConfigFingerprint(
            l1_chain_id=ctx.l1_chain_id,
            l2_chain_id=ctx.l2_chain_id,
            fork_url=ctx.anvil.fork_url,
            fork_block_number=ctx.anvil.fork_block_number,
            timestamp=ctx.anvil.timestamp,
        )

    async def deploy_contracts(self, ctx: ContractsContext, fingerprint: ConfigFingerprint) -> None:
        """Full deployment: init, bind roles, apply, inspect."""
        l2_dir = ctx.l2_dir
        l2_dir.mkdir(parents=True, exist_ok=True)
        for name in DEPLOYMENT_ARTIFACTS:
            (l2_dir / name).unlink(missing_ok=True)

        intent_path = await self.init_intent(ctx)
        update_intent_roles(intent_path, ctx.anvil.accounts, fingerprint)
        logger.debug("intent updated with anvil accounts", path=str(intent_path))

        await self.apply(ctx)
        await self.inspect(ctx, "genesis")
        await self.inspect(ctx, "rollup")

    async def start(self, ctx: ContractsContext) -> ContractsHandle:
        if self.snapshot is not None:
            layout = SnapshotLayout.from_directory(self.snapshot.path)
            database = await restore_snapshot(
                ctx, layout, self, self.op_reth_container, copy=self.snapshot.copy
            )
            logger.info("restored snapshot", path=str(layout.root), database=database.name)
            return ContractsHandle(
                l2_dir=ctx.l2_dir,
                snapshot=True,
                snapshot_database=None if self.snapshot.copy else layout.database.resolve(),
            )

        fingerprint = self.fingerprint(ctx)
        current_hash = fingerprint.compute_hash()
        decision = needs_contract_deployment(
            self.redeploy, ctx.l2_dir, version_file(ctx.outdata), current_hash
        )

        if not decision.should_deploy:
            logger.info("skipping contract deployment", reason=decision.reason, config_hash=current_hash)
            return ContractsHandle(l2_dir=ctx.l2_dir, decision=decision)

        logger.info("deploying contracts", reason=decision.reason, config_hash=current_hash)
        await self.deploy_contracts(ctx, fingerprint)
        DeploymentVersion.new(current_hash).save(version_file(ctx.outdata))

        return ContractsHandle(l2_dir=ctx.l2_dir, decision=decision)
