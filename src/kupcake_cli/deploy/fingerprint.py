"""Deployment fingerprinting for idempotent contract deployment.

Contract deployment is the slowest part of bringing a network up. The
fingerprint captures every setting that changes its on-chain outcome; when
the fingerprint stored after the last deployment still matches, the
deployment is skipped and the existing artifacts are reused.
"""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .. import __version__
from ..errors import ConfigError

# Fee-curve constants baked into the deployment intent
EIP1559_DENOMINATOR = 50
EIP1559_DENOMINATOR_CANYON = 250
EIP1559_ELASTICITY = 6


@dataclass(frozen=True)
class ConfigFingerprint:
    """Settings that determine the outcome of contract deployment."""

    l1_chain_id: int
    l2_chain_id: int
    fork_url: str | None = None
    fork_block_number: int | None = None
    timestamp: int | None = None
    eip1559_denominator: int = EIP1559_DENOMINATOR
    eip1559_denominator_canyon: int = EIP1559_DENOMINATOR_CANYON
    eip1559_elasticity: int = EIP1559_ELASTICITY

    def canonical_json(self) -> str:
        """Stable textual form: sorted keys, no whitespace."""
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))

    def compute_hash(self) -> str:
        """SHA-256 hex digest of the canonical form."""
        return hashlib.sha256(self.canonical_json().encode()).hexdigest()


@dataclass(frozen=True)
class DeploymentVersion:
    """Record written after a successful contract deployment."""

    config_hash: str
    deployed_at: int
    kupcake_version: str

    @classmethod
    def new(cls, config_hash: str) -> DeploymentVersion:
        """Version record for a deployment completed now."""
        return cls(config_hash=config_hash, deployed_at=int(time.time()), kupcake_version=__version__)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def save(self, path: Path) -> None:
        """Write the record as pretty-printed JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")

    @classmethod
    def load(cls, path: Path) -> DeploymentVersion:
        """Read a record written by save().

        Raises:
            ConfigError: If the file is missing or not a valid record.
        """
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            raise ConfigError(
                message=f"Deployment version file not found: {path}",
                data={"path": str(path)},
            )
        except (OSError, ValueError) as e:
            raise ConfigError(
                message=f"Failed to parse deployment version file {path}: {e}",
                data={"path": str(path)},
            )

        try:
            return cls(
                config_hash=str(data["config_hash"]),
                deployed_at=int(data["deployed_at"]),
                kupcake_version=str(data["kupcake_version"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(
                message=f"Invalid deployment version file {path}: {e}",
                data={"path": str(path)},
            )


class RedeployDecision(Enum):
    """Outcome of the contract deployment gate, in evaluation order."""

    FORCED = "forced"  # --redeploy flag
    NO_PRIOR_STATE = "no_prior_state"  # l2-stack directory absent
    VERSION_INVALID = "version_invalid"  # Version file missing or unreadable
    HASH_MISMATCH = "hash_mismatch"  # Configuration changed
    SKIP = "skip"  # Reuse existing deployment

    @property
    def should_deploy(self) -> bool:
        return self is not RedeployDecision.SKIP

    @property
    def reason(self) -> str:
        return _REASONS[self]


_REASONS = {
    RedeployDecision.FORCED: "redeploy requested",
    RedeployDecision.NO_PRIOR_STATE: "no existing deployment found",
    RedeployDecision.VERSION_INVALID: "deployment version file missing or invalid",
    RedeployDecision.HASH_MISMATCH: "deployment configuration changed",
    RedeployDecision.SKIP: "configuration unchanged, reusing existing deployment",
}


def needs_contract_deployment(
    force: bool,
    l2_dir: Path,
    version_file: Path,
    current_hash: str,
) -> RedeployDecision:
    """Decide whether contracts must be (re)deployed.

    Args:
        force: Redeploy regardless of existing state.
        l2_dir: Directory holding the previous deployment's artifacts.
        version_file: DeploymentVersion written by the previous deployment.
        current_hash: Fingerprint hash of the current configuration.

    Returns:
        The first applicable RedeployDecision.
    """
    if force:
        return RedeployDecision.FORCED

    if not l2_dir.is_dir():
        return RedeployDecision.NO_PRIOR_STATE

    try:
        stored = DeploymentVersion.load(version_file)
    except ConfigError:
        return RedeployDecision.VERSION_INVALID

    if stored.config_hash != current_hash:
        return RedeployDecision.HASH_MISMATCH

    return RedeployDecision.SKIP
