"""Top-level deployment configuration and driver.

A Deployer holds the whole configuration tree of one devnet: chain ids,
output directory, network settings and every service spec. It is what
`kup deploy` builds from its options, what gets saved as Kupcake.yaml next
to the deployment's artifacts, and what `kup deploy --config` and
`kup health` load back.
"""

from __future__ import annotations

import asyncio
import random
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import yaml

from ..errors import ConfigError, RpcError
from ..shared.logging import get_logger
from ..shared.paths import DESCRIPTOR_FILENAME, default_outdata, descriptor_file
from . import rpc
from .docker import DockerImage, DockerManager, NetworkMode
from .fleet import L2StackConfig
from .services.anvil import DEFAULT_BLOCK_TIME, AnvilConfig
from .services.monitoring import (
    GrafanaConfig,
    MetricsTarget,
    MonitoringConfig,
    PrometheusConfig,
    build_metrics_targets,
)
from .services.op_deployer import OpDeployerConfig, SnapshotConfig
from .stages import DeploymentResult, StagePipeline

logger = get_logger(__name__)

T = TypeVar("T")

# Random chain ids are drawn from this range
CHAIN_ID_RANGE = (10000, 99999)

# Services whose image can be overridden, by --image/--binary name
IMAGE_SERVICES = (
    "anvil",
    "op-deployer",
    "op-reth",
    "kona-node",
    "op-conductor",
    "op-batcher",
    "op-proposer",
    "op-challenger",
    "prometheus",
    "grafana",
)


def random_chain_id() -> int:
    return random.randint(*CHAIN_ID_RANGE)


@dataclass
class DeployOptions:
    """Inputs of `kup deploy` before chain ids and paths are resolved."""

    network_name: str
    outdata: Path | None = None
    l1_rpc_url: str | None = None
    l1_chain_id: int | None = None
    l2_chain_id: int | None = None
    block_time: int = DEFAULT_BLOCK_TIME
    genesis_timestamp: int | None = None
    l2_nodes: int = 2
    sequencers: int = 1
    network_mode: NetworkMode = NetworkMode.BRIDGE
    redeploy: bool = False
    no_cleanup: bool = False
    detach: bool = False
    monitoring: bool = True
    dashboards_path: Path | None = None
    snapshot: Path | None = None
    copy_snapshot: bool = False
    images: dict[str, DockerImage] = field(default_factory=dict)


@dataclass
class Endpoint:
    """One line of the endpoint summary."""

    name: str
    host_url: str | None
    internal_url: str


@dataclass
class Deployer:
    """Configuration tree of one deployment."""

    network_name: str
    outdata: Path
    l1_chain_id: int
    l2_chain_id: int
    anvil: AnvilConfig
    op_deployer: OpDeployerConfig
    l2_stack: L2StackConfig
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    network_mode: NetworkMode = NetworkMode.BRIDGE
    no_cleanup: bool = False
    detach: bool = False
    dashboards_path: Path | None = None

    # ── Construction ──

    @classmethod
    async def create(cls, options: DeployOptions) -> Deployer:
        """Resolve chain ids, genesis time and container names from options.

        Without an L1 RPC URL the L1 is a fresh local chain; with one, anvil
        forks it at its latest block and the L1 chain id is read from it.
        """
        name = options.network_name
        l1_chain_id = options.l1_chain_id
        fork_block_number = None
        timestamp = options.genesis_timestamp

        if options.l1_rpc_url:
            try:
                latest = await rpc.latest_block(options.l1_rpc_url)
                if l1_chain_id is None:
                    l1_chain_id = await rpc.chain_id(options.l1_rpc_url)
            except httpx.HTTPError as e:
                raise RpcError(
                    message=f"Cannot reach L1 RPC {options.l1_rpc_url}: {e}",
                    data={"url": options.l1_rpc_url},
                ) from e
            fork_block_number = latest.number
            if timestamp is None:
                timestamp = max(latest.timestamp - options.block_time * latest.number, 0)
        else:
            if l1_chain_id is None:
                l1_chain_id = random_chain_id()
            if timestamp is None:
                timestamp = int(time.time())

        outdata = (options.outdata or default_outdata(name)).expanduser()
        outdata.mkdir(parents=True, exist_ok=True)

        l2_stack = L2StackConfig.for_fleet(options.l2_nodes, options.sequencers, prefix=name)
        for node in l2_stack.nodes:
            node.kona_node.l1_slot_duration = options.block_time
        if options.network_mode is NetworkMode.HOST:
            l2_stack = l2_stack.with_host_port_offsets()

        deployer = cls(
            network_name=name,
            outdata=outdata.resolve(),
            l1_chain_id=l1_chain_id,
            l2_chain_id=options.l2_chain_id or random_chain_id(),
            anvil=AnvilConfig(
                container_name=f"{name}-anvil",
                block_time=options.block_time,
                fork_url=options.l1_rpc_url,
                fork_block_number=fork_block_number,
                timestamp=timestamp,
            ),
            op_deployer=OpDeployerConfig(
                container_name=f"{name}-op-deployer",
                redeploy=options.redeploy,
                snapshot=(
                    SnapshotConfig(path=str(options.snapshot), copy=options.copy_snapshot)
                    if options.snapshot
                    else None
                ),
                op_reth_container=l2_stack.primary_sequencer.op_reth.container_name,
            ),
            l2_stack=l2_stack,
            monitoring=MonitoringConfig(
                prometheus=PrometheusConfig(container_name=f"{name}-prometheus"),
                grafana=GrafanaConfig(container_name=f"{name}-grafana"),
                enabled=options.monitoring,
            ),
            network_mode=options.network_mode,
            no_cleanup=options.no_cleanup or options.detach,
            detach=options.detach,
            dashboards_path=options.dashboards_path,
        )
        for service, image in options.images.items():
            deployer.set_image(service, image)

        logger.info(
            "deployment configured",
            network_name=name,
            l1_chain_id=deployer.l1_chain_id,
            l2_chain_id=deployer.l2_chain_id,
            outdata=str(deployer.outdata),
            sequencers=len(l2_stack.sequencers),
            validators=len(l2_stack.validators),
        )
        return deployer

    def set_image(self, service: str, image: DockerImage) -> None:
        """Use image for every container of one service.

        Raises:
            ConfigError: If the service name is unknown.
        """
        if service not in IMAGE_SERVICES:
            raise ConfigError(
                message=f"Unknown service '{service}'. Valid: {', '.join(IMAGE_SERVICES)}",
                data={"service": service},
            )
        if image.is_local_binary and not image.binary_name:
            image.binary_name = service

        if service == "anvil":
            self.anvil.image = image
        elif service == "op-deployer":
            self.op_deployer.image = image
        elif service == "op-batcher":
            self.l2_stack.op_batcher.image = image
        elif service == "op-proposer":
            self.l2_stack.op_proposer.image = image
        elif service == "op-challenger":
            self.l2_stack.op_challenger.image = image
        elif service == "prometheus":
            self.monitoring.prometheus.image = image
        elif service == "grafana":
            self.monitoring.grafana.image = image
        else:
            for node in self.l2_stack.nodes:
                if service == "op-reth":
                    node.op_reth.image = image
                elif service == "kona-node":
                    node.kona_node.image = image
                elif node.op_conductor is not None:
                    node.op_conductor.image = image

    # ── Persistence ──

    def to_dict(self) -> dict[str, Any]:
        return {
            "network_name": self.network_name,
            "outdata": str(self.outdata),
            "l1_chain_id": self.l1_chain_id,
            "l2_chain_id": self.l2_chain_id,
            "network_mode": self.network_mode.value,
            "no_cleanup": self.no_cleanup,
            "detach": self.detach,
            "dashboards_path": str(self.dashboards_path) if self.dashboards_path else None,
            "anvil": self.anvil.to_dict(),
            "op_deployer": self.op_deployer.to_dict(),
            "l2_stack": self.l2_stack.to_dict(),
            "monitoring": self.monitoring.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Deployer:
        try:
            return cls(
                network_name=data["network_name"],
                outdata=Path(data["outdata"]),
                l1_chain_id=int(data["l1_chain_id"]),
                l2_chain_id=int(data["l2_chain_id"]),
                anvil=AnvilConfig.from_dict(data.get("anvil") or {}),
                op_deployer=OpDeployerConfig.from_dict(data.get("op_deployer") or {}),
                l2_stack=L2StackConfig.from_dict(data.get("l2_stack") or {}),
                monitoring=MonitoringConfig.from_dict(data.get("monitoring") or {}),
                network_mode=NetworkMode(data.get("network_mode", NetworkMode.BRIDGE.value)),
                no_cleanup=bool(data.get("no_cleanup", False)),
                detach=bool(data.get("detach", False)),
                dashboards_path=Path(data["dashboards_path"]) if data.get("dashboards_path") else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(message=f"Invalid deployment descriptor: {e}")

    def save(self, path: Path | None = None) -> Path:
        """Write the descriptor as YAML (default: <outdata>/Kupcake.yaml)."""
        path = path or descriptor_file(self.outdata)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        logger.info("configuration saved", path=str(path))
        return path

    @classmethod
    def load(cls, path: Path | str) -> Deployer:
        """Load a descriptor file, or the Kupcake.yaml inside a directory.

        Raises:
            ConfigError: If the file is missing or invalid.
        """
        path = Path(path).expanduser()
        if path.is_dir():
            path = path / DESCRIPTOR_FILENAME
        if not path.is_file():
            raise ConfigError(
                message=f"Configuration file not found: {path}",
                data={"path": str(path)},
            )
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(message=f"Failed to parse {path}: {e}", data={"path": str(path)})
        if not isinstance(data, dict):
            raise ConfigError(message=f"Invalid deployment descriptor: {path}", data={"path": str(path)})
        logger.info("configuration loaded", path=str(path))
        return cls.from_dict(data)

    # ── Running ──

    def docker_manager(self) -> DockerManager:
        return DockerManager(
            network_name=f"{self.network_name}-network",
            network_mode=self.network_mode,
            no_cleanup=self.no_cleanup,
        )

    def build_pipeline(self) -> StagePipeline:
        self.l2_stack.validate()
        steps = StagePipeline.builder().l1(self.anvil).contracts(self.op_deployer).l2(self.l2_stack)
        if self.monitoring.enabled:
            return steps.monitoring(self.monitoring, self.dashboards_path)
        return steps.build()

    async def deploy(
        self,
        docker: DockerManager | None = None,
        wait: bool = False,
        on_ready: Callable[[DeploymentResult], None] | None = None,
    ) -> DeploymentResult:
        """Run the whole pipeline.

        Args:
            docker: Manager to use (default: one built from this config).
            wait: After deploying, keep running until cancelled.
            on_ready: Called with the result once every stage is up.

        Teardown runs on every exit path, including cancellation, unless
        cleanup is disabled.
        """
        docker = docker or self.docker_manager()
        pipeline = self.build_pipeline()
        try:
            await docker.connect()
            await docker.create_network()
            self.save()

            result = await pipeline.run(docker, self.outdata, self.l1_chain_id, self.l2_chain_id)
            logger.info("deployment complete", network_name=self.network_name)
            if on_ready is not None:
                on_ready(result)
            if wait:
                await asyncio.Event().wait()
            return result
        finally:
            await docker.shutdown()

    # ── Reporting ──

    def metrics_targets(self, result: DeploymentResult) -> list[MetricsTarget]:
        return build_metrics_targets(result.l2_stack, host_mode=self.network_mode is NetworkMode.HOST)

    @staticmethod
    def endpoints(result: DeploymentResult) -> list[Endpoint]:
        """Host and internal URLs of everything that serves RPC."""
        endpoints = [Endpoint("L1 (anvil)", result.anvil.host_rpc_url, result.anvil.rpc_url)]
        stack = result.l2_stack
        for i, node in enumerate(stack.sequencers):
            label = f"sequencer-{i}" if i else "sequencer"
            endpoints += _node_endpoints(label, node)
        for i, node in enumerate(stack.validators):
            endpoints += _node_endpoints(f"validator-{i + 1}", node)
        endpoints.append(Endpoint("op-batcher", stack.op_batcher.rpc_host_url, stack.op_batcher.rpc_url))
        if stack.op_proposer is not None:
            endpoints.append(Endpoint("op-proposer", stack.op_proposer.rpc_host_url, stack.op_proposer.rpc_url))
        if result.monitoring is not None:
            mon = result.monitoring
            endpoints.append(Endpoint("prometheus", mon.prometheus_url, mon.prometheus.container_name))
            endpoints.append(Endpoint("grafana", mon.grafana_url, mon.grafana.container_name))
        return endpoints

    @staticmethod
    def container_names(result: DeploymentResult) -> list[str]:
        names = [result.anvil.container_name]
        stack = result.l2_stack
        for node in stack.nodes:
            names += [node.op_reth.container_name, node.kona_node.container_name]
            if node.op_conductor is not None:
                names.append(node.op_conductor.container_name)
        names.append(stack.op_batcher.container_name)
        if stack.op_proposer is not None:
            names.append(stack.op_proposer.container_name)
        if stack.op_challenger is not None:
            names.append(stack.op_challenger.container_name)
        if result.monitoring is not None:
            names += [result.monitoring.prometheus.container_name, result.monitoring.grafana.container_name]
        return names


def _node_endpoints(label: str, node: Any) -> list[Endpoint]:
    endpoints = [
        Endpoint(f"{label} op-reth http", node.op_reth.http_host_url, node.op_reth.http_rpc_url),
        Endpoint(f"{label} op-reth ws", node.op_reth.ws_host_url, node.op_reth.ws_rpc_url),
        Endpoint(f"{label} kona-node", node.kona_node.rpc_host_url, node.kona_node.rpc_url),
    ]
    if node.op_conductor is not None:
        endpoints.append(
            Endpoint(f"{label} op-conductor", node.op_conductor.rpc_host_url, node.op_conductor.rpc_url)
        )
    return endpoints


async def run_until_interrupted(coro: Awaitable[T]) -> T | None:
    """Run coro, cancelling it on SIGINT/SIGTERM.

    Returns:
        The coroutine's result, or None if it was interrupted.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(coro)
    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        loop.add_signal_handler(sig, task.cancel)
    try:
        return await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        logger.info("deployment interrupted")
        return None
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)


__all__ = [
    "DeployOptions",
    "Deployer",
    "Endpoint",
    "IMAGE_SERVICES",
    "MetricsTarget",
    "build_metrics_targets",
    "random_chain_id",
    "run_until_interrupted",
]
