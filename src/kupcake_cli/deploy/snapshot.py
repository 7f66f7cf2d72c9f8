"""Snapshot restore.

Starts an L2 from an existing op-reth database instead of deploying
contracts. A snapshot directory looks like:

    snapshot/
        rollup.json      (required)
        intent.toml      (optional, regenerated when absent)
        <database>/      (exactly one subdirectory: the op-reth datadir)
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import SnapshotError
from ..shared.logging import get_logger

if TYPE_CHECKING:
    from .services.op_deployer import OpDeployerConfig
    from .stages import ContractsContext

logger = get_logger(__name__)

ROLLUP_FILENAME = "rollup.json"
INTENT_FILENAME = "intent.toml"


def reth_datadir_name(op_reth_container: str) -> str:
    """Name of an op-reth datadir inside the l2-stack directory."""
    return f"reth-data-{op_reth_container}"


@dataclass(frozen=True)
class SnapshotLayout:
    """A validated snapshot directory."""

    root: Path
    database: Path
    rollup: Path
    intent: Path | None = None

    @classmethod
    def from_directory(cls, path: Path | str) -> SnapshotLayout:
        """Validate a snapshot directory.

        Raises:
            SnapshotError: If the directory is missing, has no rollup.json,
                or does not contain exactly one database subdirectory.
        """
        root = Path(path).expanduser()
        if not root.is_dir():
            raise SnapshotError(
                message=f"Snapshot directory does not exist: {root}",
                data={"path": str(root)},
            )

        subdirs = sorted(p for p in root.iterdir() if p.is_dir())
        if not subdirs:
            raise SnapshotError(
                message=f"No database directory found in snapshot {root}",
                data={"path": str(root)},
            )
        if len(subdirs) > 1:
            names = ", ".join(p.name for p in subdirs)
            raise SnapshotError(
                message=(
                    f"Snapshot {root} must contain exactly one database directory, "
                    f"found {len(subdirs)}: {names}"
                ),
                data={"path": str(root), "directories": [p.name for p in subdirs]},
            )

        rollup = root / ROLLUP_FILENAME
        if not rollup.is_file():
            raise SnapshotError(
                message=f"Snapshot {root} is missing {ROLLUP_FILENAME}",
                data={"path": str(root)},
            )

        intent = root / INTENT_FILENAME
        return cls(
            root=root,
            database=subdirs[0],
            rollup=rollup,
            intent=intent if intent.is_file() else None,
        )


def attach_database(source: Path, target: Path, copy: bool = False) -> Path:
    """Place a snapshot database at target.

    Symlinks by default; copy=True makes a full recursive copy.
    Anything already at target is replaced.
    """
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.is_dir():
        shutil.rmtree(target)

    target.parent.mkdir(parents=True, exist_ok=True)
    if copy:
        logger.info("copying snapshot database", source=str(source), target=str(target))
        shutil.copytree(source, target, symlinks=True)
    else:
        target.symlink_to(source.resolve(), target_is_directory=True)
        logger.info("linked snapshot database", source=str(source), target=str(target))
    return target


async def restore_snapshot(
    ctx: ContractsContext,
    layout: SnapshotLayout,
    deployer: OpDeployerConfig,
    op_reth_container: str,
    copy: bool = False,
) -> Path:
    """Prepare the l2-stack directory from a snapshot.

    Args:
        ctx: Contracts stage context.
        layout: Validated snapshot.
        deployer: op-deployer used to regenerate the intent and genesis.
        op_reth_container: Primary op-reth container that will own the database.
        copy: Copy the database instead of symlinking it.

    Returns:
        The attached database path inside the l2-stack directory.
    """
    l2_dir = ctx.l2_dir
    l2_dir.mkdir(parents=True, exist_ok=True)

    if layout.intent is not None:
        shutil.copy2(layout.intent, l2_dir / INTENT_FILENAME)
        logger.info("reusing snapshot intent", path=str(layout.intent))
    else:
        logger.info("snapshot has no intent, generating one")
        await deployer.init_intent(ctx)

    # The genesis is not part of the snapshot; regenerate it from the intent
    await deployer.inspect(ctx, "genesis")

    shutil.copy2(layout.rollup, l2_dir / ROLLUP_FILENAME)

    return attach_database(layout.database, l2_dir / reth_datadir_name(op_reth_container), copy=copy)
