"""Prometheus + Grafana monitoring stage.

Prometheus scrapes every container of the L2 fleet; Grafana is provisioned
with Prometheus as its default datasource and with any dashboards found in
the dashboards directory.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

import yaml

from ...shared.logging import get_logger
from ..docker import ContainerHandle, DockerImage, PortMapping, ServiceConfig, StartOptions, port_mappings
from ..stages import MonitoringContext, Stage
from .base import ServiceSpec, StageService

if TYPE_CHECKING:
    from ..fleet import L2StackHandle

logger = get_logger(__name__)

PROMETHEUS_IMAGE = "prom/prometheus"
GRAFANA_IMAGE = "grafana/grafana"
DEFAULT_TAG = "latest"

PROMETHEUS_PORT = 9090
PROMETHEUS_HOST_PORT = 9099
GRAFANA_PORT = 3000
GRAFANA_HOST_PORT = 3019

MONITORING_DIRNAME = "monitoring"
PROVISIONING_DIR = "/etc/grafana/provisioning"

# Prometheus labels for each layer of the stack
LAYER_EXECUTION = "execution"
LAYER_CONSENSUS = "consensus"
LAYER_L1_INTERACTION = "l1-interaction"


@dataclass(frozen=True)
class MetricsTarget:
    """One Prometheus scrape target."""

    job_name: str
    host: str
    port: int
    service: str
    layer: str

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def build_metrics_targets(l2_stack: L2StackHandle, host_mode: bool = False) -> list[MetricsTarget]:
    """Scrape targets for every container of the L2 fleet.

    Args:
        l2_stack: The running fleet.
        host_mode: Containers share the host network (scrape localhost).
    """

    def target(container_name: str, port: int, service: str, layer: str) -> MetricsTarget:
        host = "localhost" if host_mode else container_name
        return MetricsTarget(container_name, host, port, service, layer)

    targets = []
    for node in l2_stack.nodes:
        targets.append(
            target(node.op_reth.container_name, node.op_reth.metrics_port, "op-reth", LAYER_EXECUTION)
        )
        targets.append(
            target(node.kona_node.container_name, node.kona_node.metrics_port, "kona-node", LAYER_CONSENSUS)
        )

    batcher = l2_stack.op_batcher
    targets.append(target(batcher.container_name, batcher.metrics_port, "op-batcher", LAYER_L1_INTERACTION))
    if l2_stack.op_proposer is not None:
        proposer = l2_stack.op_proposer
        targets.append(
            target(proposer.container_name, proposer.metrics_port, "op-proposer", LAYER_L1_INTERACTION)
        )
    if l2_stack.op_challenger is not None:
        challenger = l2_stack.op_challenger
        targets.append(
            target(challenger.container_name, challenger.metrics_port, "op-challenger", LAYER_L1_INTERACTION)
        )
    return targets


def prometheus_config(targets: list[MetricsTarget], scrape_interval: int, port: int) -> dict[str, Any]:
    """prometheus.yml contents as a dict."""
    scrape_configs = [
        {
            "job_name": t.job_name,
            "metrics_path": "/metrics",
            "scrape_interval": f"{scrape_interval}s",
            "static_configs": [
                {"targets": [t.address], "labels": {"service": t.service, "layer": t.layer}}
            ],
        }
        for t in targets
    ]
    scrape_configs.append(
        {
            "job_name": "prometheus",
            "metrics_path": "/metrics",
            "scrape_interval": "30s",
            "static_configs": [{"targets": [f"localhost:{port}"], "labels": {"service": "prometheus"}}],
        }
    )
    return {
        "global": {
            "scrape_interval": f"{scrape_interval}s",
            "evaluation_interval": f"{scrape_interval}s",
            "scrape_timeout": "10s",
            "external_labels": {"cluster": "kupcake-op-stack", "environment": "dev"},
        },
        "scrape_configs": scrape_configs,
    }


@dataclass
class PrometheusConfig(ServiceSpec):
    """Prometheus container settings."""

    image: DockerImage = field(default_factory=lambda: DockerImage(PROMETHEUS_IMAGE, DEFAULT_TAG))
    container_name: str = "kupcake-prometheus"
    port: int = PROMETHEUS_PORT
    host_port: int | None = PROMETHEUS_HOST_PORT
    scrape_interval: int = 15

    async def start(self, ctx: MonitoringContext, config_file: Path) -> ContainerHandle:
        service_config = ServiceConfig(
            image=self.image,
            cmd=[
                "--config.file=/etc/prometheus/prometheus.yml",
                "--storage.tsdb.path=/prometheus",
                f"--web.listen-address=0.0.0.0:{self.port}",
                "--web.enable-lifecycle",
            ],
            ports=port_mappings(PortMapping.tcp_optional(self.port, self.host_port)),
        ).bind(config_file.resolve(), "/etc/prometheus/prometheus.yml", "ro")
        return await ctx.docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )


@dataclass
class GrafanaConfig(ServiceSpec):
    """Grafana container settings."""

    image: DockerImage = field(default_factory=lambda: DockerImage(GRAFANA_IMAGE, DEFAULT_TAG))
    container_name: str = "kupcake-grafana"
    host_port: int | None = GRAFANA_HOST_PORT
    admin_user: str = "admin"
    admin_password: str = "admin"

    async def start(self, ctx: MonitoringContext, provisioning_dir: Path) -> ContainerHandle:
        service_config = ServiceConfig(
            image=self.image,
            ports=port_mappings(PortMapping.tcp_optional(GRAFANA_PORT, self.host_port)),
            env={
                "GF_SECURITY_ADMIN_USER": self.admin_user,
                "GF_SECURITY_ADMIN_PASSWORD": self.admin_password,
                "GF_USERS_ALLOW_SIGN_UP": "false",
                "GF_AUTH_ANONYMOUS_ENABLED": "true",
                "GF_AUTH_ANONYMOUS_ORG_ROLE": "Viewer",
            },
        ).bind(provisioning_dir.resolve(), PROVISIONING_DIR, "ro")
        return await ctx.docker.start_service(
            self.container_name, service_config, StartOptions(stream_logs=True)
        )


@dataclass
class MonitoringHandle:
    """Running monitoring containers."""

    prometheus: ContainerHandle
    grafana: ContainerHandle
    targets: list[MetricsTarget]
    prometheus_url: str | None
    grafana_url: str | None


@dataclass
class MonitoringConfig(ServiceSpec, StageService):
    """Monitoring stage: Prometheus then Grafana."""

    SERVICE_NAME: ClassVar[str] = "monitoring"
    STAGE: ClassVar[Stage] = Stage.MONITORING

    prometheus: PrometheusConfig = field(default_factory=PrometheusConfig)
    grafana: GrafanaConfig = field(default_factory=GrafanaConfig)
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "prometheus": self.prometheus.to_dict(),
            "grafana": self.grafana.to_dict(),
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitoringConfig:
        return cls(
            prometheus=PrometheusConfig.from_dict(data.get("prometheus") or {}),
            grafana=GrafanaConfig.from_dict(data.get("grafana") or {}),
            enabled=data.get("enabled", True),
        )

    # ── Generated files ──

    def write_prometheus_config(self, config_dir: Path, targets: list[MetricsTarget]) -> Path:
        path = config_dir / "prometheus.yml"
        content = prometheus_config(targets, self.prometheus.scrape_interval, self.prometheus.port)
        with open(path, "w") as f:
            yaml.safe_dump(content, f, default_flow_style=False, sort_keys=False)
        logger.debug("prometheus config written", path=str(path), targets=len(targets))
        return path

    def write_grafana_provisioning(self, config_dir: Path, prometheus_url: str) -> Path:
        provisioning = config_dir / "grafana" / "provisioning"
        datasources = provisioning / "datasources"
        dashboards = provisioning / "dashboards"
        datasources.mkdir(parents=True, exist_ok=True)
        dashboards.mkdir(parents=True, exist_ok=True)

        datasource = {
            "apiVersion": 1,
            "datasources": [
                {
                    "name": "Prometheus",
                    "type": "prometheus",
                    "access": "proxy",
                    "url": prometheus_url,
                    "isDefault": True,
                    "editable": True,
                    "jsonData": {
                        "timeInterval": f"{self.prometheus.scrape_interval}s",
                        "httpMethod": "POST",
                    },
                }
            ],
        }
        providers = {
            "apiVersion": 1,
            "providers": [
                {
                    "name": "Kupcake Dashboards",
                    "orgId": 1,
                    "folder": "",
                    "type": "file",
                    "disableDeletion": False,
                    "editable": True,
                    "options": {"path": f"{PROVISIONING_DIR}/dashboards"},
                }
            ],
        }
        with open(datasources / "prometheus.yml", "w") as f:
            yaml.safe_dump(datasource, f, default_flow_style=False, sort_keys=False)
        with open(dashboards / "dashboards.yml", "w") as f:
            yaml.safe_dump(providers, f, default_flow_style=False, sort_keys=False)
        return provisioning

    @staticmethod
    def copy_dashboards(source: Path | None, provisioning: Path) -> int:
        """Copy *.json dashboards into the provisioning directory."""
        if source is None or not source.is_dir():
            if source is not None:
                logger.warning("dashboards directory not found", path=str(source))
            return 0
        copied = 0
        for dashboard in sorted(source.glob("*.json")):
            shutil.copy2(dashboard, provisioning / "dashboards" / dashboard.name)
            copied += 1
        logger.debug("dashboards copied", source=str(source), count=copied)
        return copied

    # ── Stage ──

    async def start(self, ctx: MonitoringContext) -> MonitoringHandle:
        docker = ctx.docker
        config_dir = ctx.outdata / MONITORING_DIRNAME
        config_dir.mkdir(parents=True, exist_ok=True)

        targets = build_metrics_targets(ctx.l2_stack, host_mode=docker.is_host_mode)
        prometheus_file = self.write_prometheus_config(config_dir, targets)
        provisioning = self.write_grafana_provisioning(
            config_dir,
            docker.internal_http_url(self.prometheus.container_name, self.prometheus.port).rstrip("/"),
        )
        self.copy_dashboards(ctx.dashboards_path, provisioning)

        prometheus = await self.prometheus.start(ctx, prometheus_file)
        grafana = await self.grafana.start(ctx, provisioning)

        handle = MonitoringHandle(
            prometheus=prometheus,
            grafana=grafana,
            targets=targets,
            prometheus_url=docker.host_http_url(prometheus, self.prometheus.port),
            grafana_url=docker.host_http_url(grafana, GRAFANA_PORT),
        )
        logger.info(
            "monitoring started",
            targets=len(targets),
            prometheus_url=handle.prometheus_url,
            grafana_url=handle.grafana_url,
        )
        return handle
