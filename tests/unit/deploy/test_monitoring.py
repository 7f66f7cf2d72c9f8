"""Unit tests for the monitoring stage."""

import json

import pytest
import yaml

from kupcake_cli.deploy.fleet import L2StackConfig
from kupcake_cli.deploy.services.monitoring import (
    LAYER_CONSENSUS,
    LAYER_EXECUTION,
    LAYER_L1_INTERACTION,
    MetricsTarget,
    MonitoringConfig,
    build_metrics_targets,
    prometheus_config,
)
from kupcake_cli.deploy.stages import MonitoringContext


async def start_fleet(l2_context):
    return await L2StackConfig.with_counts(1, 1, prefix="net").start(l2_context)


@pytest.mark.cli_unit
class TestMetricsTargets:
    """Tests for build_metrics_targets and prometheus_config."""

    @pytest.mark.asyncio
    async def test_every_container_is_scraped(self, l2_context):
        """Test each node pair and each L1-facing service becomes a target."""
        l2_stack = await start_fleet(l2_context)
        targets = build_metrics_targets(l2_stack)

        assert [t.job_name for t in targets] == [
            "net-op-reth",
            "net-kona-node",
            "net-op-reth-validator-1",
            "net-kona-node-validator-1",
            "net-op-batcher",
            "net-op-proposer",
            "net-op-challenger",
        ]
        assert targets[0] == MetricsTarget("net-op-reth", "net-op-reth", 9001, "op-reth", LAYER_EXECUTION)
        assert targets[1].address == "net-kona-node:7300"
        assert targets[1].layer == LAYER_CONSENSUS
        assert {t.layer for t in targets[4:]} == {LAYER_L1_INTERACTION}

    @pytest.mark.asyncio
    async def test_host_mode_scrapes_localhost(self, l2_context):
        """Test host networking points every target at localhost."""
        l2_stack = await start_fleet(l2_context)
        targets = build_metrics_targets(l2_stack, host_mode=True)
        assert {t.host for t in targets} == {"localhost"}

    @pytest.mark.asyncio
    async def test_snapshot_fleet_has_no_proposer_target(self, l2_context):
        """Test absent services are not scraped."""
        l2_context.contracts.snapshot = True
        stack = await L2StackConfig.with_counts(1, 0, prefix="net").start(l2_context)

        services = [t.service for t in build_metrics_targets(stack)]

        assert services == ["op-reth", "kona-node", "op-batcher"]

    def test_prometheus_config(self):
        """Test scrape jobs carry labels and prometheus scrapes itself."""
        targets = [MetricsTarget("kup-op-reth", "kup-op-reth", 9001, "op-reth", LAYER_EXECUTION)]

        config = prometheus_config(targets, scrape_interval=5, port=9090)

        assert config["global"]["scrape_interval"] == "5s"
        first, own = config["scrape_configs"]
        assert first["static_configs"] == [
            {"targets": ["kup-op-reth:9001"], "labels": {"service": "op-reth", "layer": "execution"}}
        ]
        assert own["job_name"] == "prometheus"
        assert own["static_configs"][0]["targets"] == ["localhost:9090"]


@pytest.mark.cli_unit
class TestMonitoringConfig:
    """Tests for MonitoringConfig files and start."""

    def test_grafana_provisioning(self, tmp_path):
        """Test the datasource points at prometheus and the dashboards provider is written."""
        provisioning = MonitoringConfig().write_grafana_provisioning(tmp_path, "http://kup-prometheus:9090")

        with open(provisioning / "datasources" / "prometheus.yml") as f:
            datasource = yaml.safe_load(f)
        with open(provisioning / "dashboards" / "dashboards.yml") as f:
            providers = yaml.safe_load(f)

        assert datasource["datasources"][0]["url"] == "http://kup-prometheus:9090"
        assert datasource["datasources"][0]["isDefault"] is True
        assert providers["providers"][0]["options"]["path"] == "/etc/grafana/provisioning/dashboards"

    def test_copy_dashboards(self, tmp_path):
        """Test only JSON dashboards are copied."""
        source = tmp_path / "dashboards"
        source.mkdir()
        (source / "op-stack.json").write_text(json.dumps({"title": "OP"}))
        (source / "README.md").write_text("docs")
        provisioning = MonitoringConfig().write_grafana_provisioning(tmp_path / "cfg", "http://p:9090")

        assert MonitoringConfig.copy_dashboards(source, provisioning) == 1
        assert (provisioning / "dashboards" / "op-stack.json").exists()

    def test_copy_dashboards_missing_source(self, tmp_path):
        """Test a missing dashboards directory copies nothing."""
        assert MonitoringConfig.copy_dashboards(None, tmp_path) == 0
        assert MonitoringConfig.copy_dashboards(tmp_path / "nope", tmp_path) == 0

    @pytest.mark.asyncio
    async def test_start(self, l2_context, fake_docker, tmp_path):
        """Test prometheus then grafana start with their generated config mounted."""
        l2_stack = await start_fleet(l2_context)
        outdata = tmp_path / "out"
        ctx = MonitoringContext(fake_docker, outdata, l2_stack)

        handle = await MonitoringConfig().start(ctx)

        assert fake_docker.names()[-2:] == ["kupcake-prometheus", "kupcake-grafana"]
        prometheus_file = outdata / "monitoring" / "prometheus.yml"
        with open(prometheus_file) as f:
            jobs = [job["job_name"] for job in yaml.safe_load(f)["scrape_configs"]]
        assert jobs[0] == "net-op-reth"
        assert jobs[-1] == "prometheus"

        binds = fake_docker.config_of("kupcake-prometheus").binds
        assert binds == [f"{prometheus_file.resolve()}:/etc/prometheus/prometheus.yml:ro"]
        assert len(handle.targets) == 7
        assert handle.prometheus_url.startswith("http://localhost:")
        assert handle.grafana_url is not None
