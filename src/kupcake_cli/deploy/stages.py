"""Stage pipeline for deployments.

A deployment runs four stages in a fixed order:

    L1 -> CONTRACTS -> L2 -> MONITORING

Each stage owns exactly one service and receives a context scoped to what
that service needs. The order is checked when the pipeline is constructed,
so a misordered pipeline fails before any container is started. The
builder returned by StagePipeline.builder() only exposes the next legal
stage, which makes misordering impossible to express in the first place.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Sequence

from ..errors import PipelineOrderError, wrap_stage_error
from ..shared.logging import get_logger
from ..shared.paths import l2_stack_dir

if TYPE_CHECKING:
    from .docker import DockerManager
    from .fleet import L2StackConfig, L2StackHandle
    from .services.anvil import AnvilConfig, AnvilHandle
    from .services.base import StageService
    from .services.monitoring import MonitoringConfig, MonitoringHandle
    from .services.op_deployer import ContractsHandle, OpDeployerConfig

logger = get_logger(__name__)


class Stage(Enum):
    """Deployment stages, in execution order."""

    L1 = "l1"  # L1 chain emulator
    CONTRACTS = "contracts"  # Contract deployment (or snapshot restore)
    L2 = "l2"  # L2 node fleet + batcher/proposer/challenger
    MONITORING = "monitoring"  # Prometheus + Grafana


# Legal successor of each stage; MONITORING is terminal
STAGE_TRANSITIONS: dict[Stage, Stage | None] = {
    Stage.L1: Stage.CONTRACTS,
    Stage.CONTRACTS: Stage.L2,
    Stage.L2: Stage.MONITORING,
    Stage.MONITORING: None,
}

# Stages a pipeline may end on
TERMINAL_STAGES = (Stage.L2, Stage.MONITORING)


# ── Contexts ──


@dataclass
class ServiceContext:
    """What every service gets: docker, the output directory and chain ids."""

    docker: DockerManager
    outdata: Path
    l1_chain_id: int
    l2_chain_id: int

    def service_dir(self, name: str) -> Path:
        """Host directory mounted into a service's containers."""
        path = self.outdata / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def l2_dir(self) -> Path:
        return l2_stack_dir(self.outdata)


@dataclass
class L1Context(ServiceContext):
    """Context of the L1 stage."""


@dataclass
class ContractsContext(ServiceContext):
    """Context of the contracts stage: adds the L1 handle."""

    anvil: AnvilHandle


@dataclass
class L2Context(ContractsContext):
    """Context of the L2 stage: adds the contract deployment outcome."""

    contracts: ContractsHandle


@dataclass
class MonitoringContext:
    """Context of the monitoring stage: the finished L2 fleet."""

    docker: DockerManager
    outdata: Path
    l2_stack: L2StackHandle
    dashboards_path: Path | None = None


@dataclass
class DeploymentResult:
    """Everything a completed pipeline started."""

    anvil: AnvilHandle
    contracts: ContractsHandle
    l2_stack: L2StackHandle
    monitoring: MonitoringHandle | None = None


# ── Pipeline ──


def validate_stage_order(stages: Sequence[Stage]) -> None:
    """Check a sequence of stages against STAGE_TRANSITIONS.

    Raises:
        PipelineOrderError: If the sequence is not L1, CONTRACTS, L2
            optionally followed by MONITORING.
    """
    names = [s.value for s in stages]

    if not stages or stages[0] != Stage.L1:
        raise PipelineOrderError(
            message=f"Pipeline must start with the l1 stage, got: {names or 'no stages'}",
            data={"stages": names},
        )

    for current, following in zip(stages, stages[1:]):
        expected = STAGE_TRANSITIONS[current]
        if expected is None:
            raise PipelineOrderError(
                message=f"No stage may follow {current.value}, got {following.value}",
                data={"stages": names},
            )
        if following != expected:
            raise PipelineOrderError(
                message=f"Stage {following.value} cannot follow {current.value} (expected {expected.value})",
                data={"stages": names},
            )

    if stages[-1] not in TERMINAL_STAGES:
        raise PipelineOrderError(
            message=f"Pipeline cannot end on the {stages[-1].value} stage",
            data={"stages": names},
        )


class StagePipeline:
    """Run stage services in order, threading each handle into the next context."""

    def __init__(self, services: Sequence[StageService], dashboards_path: Path | None = None):
        """Create a pipeline.

        Args:
            services: One service per stage, in stage order.
            dashboards_path: Grafana dashboards copied by the monitoring stage.

        Raises:
            PipelineOrderError: If services are not in stage order.
        """
        validate_stage_order([service.STAGE for service in services])
        self.services = list(services)
        self.dashboards_path = dashboards_path

    @staticmethod
    def builder() -> _L1Step:
        """Builder exposing only the next legal stage."""
        return _L1Step()

    @property
    def stages(self) -> list[Stage]:
        return [service.STAGE for service in self.services]

    async def run(
        self,
        docker: DockerManager,
        outdata: Path,
        l1_chain_id: int,
        l2_chain_id: int,
    ) -> DeploymentResult:
        """Run every stage in order.

        Returns:
            DeploymentResult aggregating the stage handles.

        Raises:
            StageError: Wrapping the first stage failure.
        """
        by_stage = {service.STAGE: service for service in self.services}

        anvil = await self._run_stage(
            Stage.L1,
            by_stage[Stage.L1],
            L1Context(docker, outdata, l1_chain_id, l2_chain_id),
        )
        contracts = await self._run_stage(
            Stage.CONTRACTS,
            by_stage[Stage.CONTRACTS],
            ContractsContext(docker, outdata, l1_chain_id, l2_chain_id, anvil=anvil),
        )
        l2_stack = await self._run_stage(
            Stage.L2,
            by_stage[Stage.L2],
            L2Context(docker, outdata, l1_chain_id, l2_chain_id, anvil=anvil, contracts=contracts),
        )

        monitoring = None
        if Stage.MONITORING in by_stage:
            monitoring = await self._run_stage(
                Stage.MONITORING,
                by_stage[Stage.MONITORING],
                MonitoringContext(docker, outdata, l2_stack, self.dashboards_path),
            )

        return DeploymentResult(anvil=anvil, contracts=contracts, l2_stack=l2_stack, monitoring=monitoring)

    async def _run_stage(self, stage: Stage, service: StageService, ctx: Any) -> Any:
        logger.info("stage starting", stage=stage.value, service=service.SERVICE_NAME)
        try:
            handle = await service.start(ctx)
        except Exception as e:
            raise wrap_stage_error(stage.value, e) from e
        logger.info("stage completed", stage=stage.value, service=service.SERVICE_NAME)
        return handle


# ── Builder ──


class _L1Step:
    def l1(self, service: AnvilConfig) -> _ContractsStep:
        return _ContractsStep([service])


class _ContractsStep:
    def __init__(self, services: list[Any]):
        self._services = services

    def contracts(self, service: OpDeployerConfig) -> _L2Step:
        return _L2Step(self._services + [service])


class _L2Step:
    def __init__(self, services: list[Any]):
        self._services = services

    def l2(self, service: L2StackConfig) -> _FinalStep:
        return _FinalStep(self._services + [service])


class _FinalStep:
    def __init__(self, services: list[Any]):
        self._services = services

    def monitoring(self, service: MonitoringConfig, dashboards_path: Path | None = None) -> StagePipeline:
        return StagePipeline(self._services + [service], dashboards_path=dashboards_path)

    def build(self) -> StagePipeline:
        return StagePipeline(self._services)
