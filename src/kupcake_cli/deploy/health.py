"""Read-only health inspection of a deployed network."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

from ..errors import KupError
from ..shared.logging import get_logger
from . import rpc
from .docker import DockerManager, NetworkMode, PortMapping

if TYPE_CHECKING:
    from .deployer import Deployer

logger = get_logger(__name__)


@dataclass
class ContainerStatus:
    """Running state of one container."""

    name: str
    service: str
    running: bool


@dataclass
class ChainStatus:
    """Chain id and height reported by one execution endpoint."""

    name: str
    url: str | None
    chain_id: int | None = None
    block_number: int | None = None
    error: str | None = None


@dataclass
class NodeHeads:
    """L2 heads reported by one kona-node."""

    name: str
    unsafe: int | None = None
    safe: int | None = None
    finalized: int | None = None
    error: str | None = None


@dataclass
class HealthReport:
    """Snapshot of a deployment's state."""

    network_name: str
    l1_chain_id: int
    l2_chain_id: int
    containers: list[ContainerStatus] = field(default_factory=list)
    l1: ChainStatus | None = None
    execution: list[ChainStatus] = field(default_factory=list)
    consensus: list[NodeHeads] = field(default_factory=list)

    @property
    def all_running(self) -> bool:
        return all(c.running for c in self.containers)

    @property
    def chain_ids_match(self) -> bool:
        if self.l1 is None or self.l1.chain_id != self.l1_chain_id:
            return False
        return all(status.chain_id == self.l2_chain_id for status in self.execution)

    @property
    def heights_known(self) -> bool:
        statuses = [self.l1, *self.execution]
        return all(s is not None and s.block_number is not None for s in statuses)

    @property
    def healthy(self) -> bool:
        return self.all_running and self.chain_ids_match and self.heights_known


def expected_containers(deployer: Deployer) -> list[tuple[str, str]]:
    """(container_name, service) of every container a deployment runs."""
    stack = deployer.l2_stack
    containers = [(deployer.anvil.container_name, "anvil")]
    for node in stack.nodes:
        containers.append((node.op_reth.container_name, "op-reth"))
        containers.append((node.kona_node.container_name, "kona-node"))
        if node.op_conductor is not None:
            containers.append((node.op_conductor.container_name, "op-conductor"))
    containers.append((stack.op_batcher.container_name, "op-batcher"))
    # Snapshot deployments run without proposer and challenger
    if deployer.op_deployer.snapshot is None:
        containers.append((stack.op_proposer.container_name, "op-proposer"))
        containers.append((stack.op_challenger.container_name, "op-challenger"))
    if deployer.monitoring.enabled:
        containers.append((deployer.monitoring.prometheus.container_name, "prometheus"))
        containers.append((deployer.monitoring.grafana.container_name, "grafana"))
    return containers


async def published_url(docker: DockerManager, container_name: str, port: int) -> str | None:
    """Host URL of a running container's port, or None if unpublished."""
    if docker.is_host_mode:
        return DockerManager.build_http_url("localhost", port)
    mapping = PortMapping(port)
    try:
        bound = await docker.get_bound_ports(container_name, [mapping])
    except KupError as e:
        logger.debug("port lookup failed", container_name=container_name, port=port, error=str(e))
        return None
    host_port = bound.get(mapping.key)
    return None if host_port is None else DockerManager.build_http_url("localhost", host_port)


async def _chain_status(name: str, url: str | None) -> ChainStatus:
    status = ChainStatus(name=name, url=url)
    if url is None:
        status.error = "RPC not published"
        return status
    try:
        status.chain_id = await rpc.chain_id(url)
        status.block_number = await rpc.block_number(url)
    except (httpx.HTTPError, KupError) as e:
        status.error = str(e) or type(e).__name__
    return status


async def _node_heads(name: str, url: str | None) -> NodeHeads:
    heads = NodeHeads(name=name)
    if url is None:
        heads.error = "RPC not published"
        return heads
    try:
        sync = await rpc.rollup_sync_status(url)
    except (httpx.HTTPError, KupError, KeyError) as e:
        heads.error = str(e) or type(e).__name__
        return heads
    heads.unsafe = sync.unsafe_l2.number
    heads.safe = sync.safe_l2.number
    heads.finalized = sync.finalized_l2.number
    return heads


async def health_check(deployer: Deployer, docker: DockerManager | None = None) -> HealthReport:
    """Inspect a deployment described by a loaded descriptor.

    Nothing is started or stopped. Endpoints are queried through the host
    ports docker reports for each running container.
    """
    docker = docker or DockerManager(
        network_name=f"{deployer.network_name}-network",
        network_mode=deployer.network_mode,
        no_cleanup=True,
    )
    report = HealthReport(
        network_name=deployer.network_name,
        l1_chain_id=deployer.l1_chain_id,
        l2_chain_id=deployer.l2_chain_id,
    )

    expected = expected_containers(deployer)
    running = await asyncio.gather(*(docker.is_running(name) for name, _ in expected))
    report.containers = [
        ContainerStatus(name=name, service=service, running=up)
        for (name, service), up in zip(expected, running)
    ]
    is_up = {c.name: c.running for c in report.containers}

    async def url_of(name: str, port: int) -> str | None:
        if not is_up.get(name):
            return None
        return await published_url(docker, name, port)

    anvil = deployer.anvil
    report.l1 = await _chain_status(anvil.container_name, await url_of(anvil.container_name, anvil.rpc_port))

    for node in deployer.l2_stack.nodes:
        reth, kona = node.op_reth, node.kona_node
        report.execution.append(
            await _chain_status(reth.container_name, await url_of(reth.container_name, reth.http_port))
        )
        report.consensus.append(
            await _node_heads(kona.container_name, await url_of(kona.container_name, kona.rpc_port))
        )

    logger.info(
        "health check complete",
        network_name=deployer.network_name,
        healthy=report.healthy,
        host_mode=deployer.network_mode is NetworkMode.HOST,
    )
    return report
