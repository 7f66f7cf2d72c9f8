"""CLI output formatting helpers."""

from __future__ import annotations

from typing import Any

import click
import yaml
from rich.console import Console
from rich.table import Table

from .config import KupConfig
from .deploy.deployer import Endpoint
from .deploy.health import HealthReport

console = Console()


def print_config_yaml(data: dict[str, Any], section: str | None = None) -> None:
    """Print config as YAML.

    Args:
        data: Configuration data
        section: Optional section name for header
    """
    if section:
        click.echo(f"{section}:")
        yaml_str = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
        for line in yaml_str.splitlines():
            click.echo(f"  {line}")
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def print_config_sources(config: KupConfig) -> None:
    """Print each user default with where it came from."""
    for key, value in config.values().items():
        shown = "-" if value is None else value
        click.echo(f"  {key}: {shown}  ({config.get_source(key)})")


def endpoints_table(endpoints: list[Endpoint], title: str = "Endpoints") -> Table:
    table = Table(title=title)
    table.add_column("Service", style="cyan")
    table.add_column("Host URL", style="green")
    table.add_column("Internal URL", style="blue")
    for endpoint in endpoints:
        table.add_row(endpoint.name, endpoint.host_url or "-", endpoint.internal_url)
    return table


def print_endpoints(endpoints: list[Endpoint]) -> None:
    console.print(endpoints_table(endpoints))


def print_health_report(report: HealthReport) -> None:
    """Print containers, chain heights and L2 heads of a health report."""
    containers = Table(title=f"Containers ({report.network_name})")
    containers.add_column("Container", style="cyan")
    containers.add_column("Service", style="blue")
    containers.add_column("Status")
    for status in report.containers:
        state = "[green]running[/green]" if status.running else "[red]down[/red]"
        containers.add_row(status.name, status.service, state)
    console.print(containers)

    chains = Table(title="Chains")
    chains.add_column("Endpoint", style="cyan")
    chains.add_column("Chain ID", style="magenta")
    chains.add_column("Block", style="yellow")
    chains.add_column("Error", style="red")
    for status in [s for s in (report.l1, *report.execution) if s is not None]:
        chains.add_row(
            status.name,
            _or_dash(status.chain_id),
            _or_dash(status.block_number),
            status.error or "",
        )
    console.print(chains)

    heads = Table(title="L2 heads")
    heads.add_column("Node", style="cyan")
    heads.add_column("Unsafe", style="yellow")
    heads.add_column("Safe", style="yellow")
    heads.add_column("Finalized", style="yellow")
    heads.add_column("Error", style="red")
    for node in report.consensus:
        heads.add_row(
            node.name, _or_dash(node.unsafe), _or_dash(node.safe), _or_dash(node.finalized), node.error or ""
        )
    console.print(heads)

    if report.healthy:
        click.echo("✓ Deployment is healthy")
    else:
        click.echo("✗ Deployment is unhealthy")
        if not report.all_running:
            click.echo("  - some containers are not running")
        if not report.chain_ids_match:
            click.echo(f"  - chain ids differ from L1={report.l1_chain_id} L2={report.l2_chain_id}")
        if not report.heights_known:
            click.echo("  - some block heights could not be read")


def _or_dash(value: int | None) -> str:
    return "-" if value is None else str(value)
