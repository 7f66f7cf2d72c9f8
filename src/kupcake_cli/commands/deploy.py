"""Deploy, cleanup and health commands.

This module provides `kup deploy`, which brings up a complete OP Stack
devnet on Docker, plus `kup cleanup` and `kup health` for deployments that
were left running with --detach.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from ..config import load_config
from ..deploy import (
    Deployer,
    DeploymentResult,
    DeployOptions,
    DockerImage,
    NetworkMode,
    cleanup_by_prefix,
    health_check,
    run_until_interrupted,
)
from ..errors import KupError
from ..formatters import print_endpoints, print_health_report
from ..shared.paths import default_outdata


def parse_overrides(values: tuple[str, ...], option: str) -> dict[str, str]:
    """Parse repeated SERVICE=VALUE options."""
    overrides: dict[str, str] = {}
    for value in values:
        service, sep, target = value.partition("=")
        if not sep or not service or not target:
            raise click.BadParameter(f"expected SERVICE=VALUE, got '{value}'", param_hint=option)
        overrides[service.strip()] = target.strip()
    return overrides


def image_overrides(images: tuple[str, ...], binaries: tuple[str, ...]) -> dict[str, DockerImage]:
    """Image overrides by service; a --binary wins over an --image for the same service."""
    overrides = {service: DockerImage.parse(ref) for service, ref in parse_overrides(images, "--image").items()}
    for service, path in parse_overrides(binaries, "--binary").items():
        binary = Path(path).expanduser()
        if not binary.is_file():
            raise click.BadParameter(f"binary not found: {binary}", param_hint="--binary")
        overrides[service] = DockerImage.from_binary(binary.resolve(), service)
    return overrides


def print_detach_hint(deployer: Deployer, result: DeploymentResult) -> None:
    names = " ".join(Deployer.container_names(result))
    click.echo("\nContainers left running. To stop them:")
    click.echo(f"  docker stop {names} && docker network rm {deployer.network_name}-network")
    click.echo(f"or: kup cleanup {deployer.network_name}")


@click.command()
@click.option("--network", "--name", "network_name", help="Network name, also the container name prefix")
@click.option("--l1-rpc-url", help="Fork this L1 instead of running a local one")
@click.option("--l1-chain-id", type=int, help="L1 chain id (detected when forking)")
@click.option("--l2-chain-id", type=int, help="L2 chain id (random by default)")
@click.option("--redeploy", is_flag=True, help="Deploy contracts even if nothing changed")
@click.option("--outdata", type=click.Path(file_okay=False, path_type=Path), help="Output directory")
@click.option("--no-cleanup", is_flag=True, help="Leave containers running on exit")
@click.option("--detach", is_flag=True, help="Exit once deployed and leave containers running")
@click.option("--block-time", type=int, help="L1 block time in seconds")
@click.option("--l2-nodes", type=int, help="Total number of L2 nodes")
@click.option("--sequencers", type=int, help="How many of the L2 nodes are sequencers")
@click.option(
    "--network-mode",
    type=click.Choice([mode.value for mode in NetworkMode]),
    help="Docker network mode",
)
@click.option("--no-monitoring", is_flag=True, help="Skip Prometheus and Grafana")
@click.option(
    "--dashboards",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory of Grafana dashboard JSON files",
)
@click.option(
    "--snapshot",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Start the L2 from a snapshot instead of deploying contracts",
)
@click.option("--copy-snapshot", is_flag=True, help="Copy the snapshot database instead of linking it")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    help="Redeploy from a saved Kupcake.yaml (or its directory)",
)
@click.option("--image", "images", multiple=True, help="Image override SERVICE=IMAGE:TAG")
@click.option("--binary", "binaries", multiple=True, help="Local binary override SERVICE=PATH")
def deploy(
    network_name,
    l1_rpc_url,
    l1_chain_id,
    l2_chain_id,
    redeploy,
    outdata,
    no_cleanup,
    detach,
    block_time,
    l2_nodes,
    sequencers,
    network_mode,
    no_monitoring,
    dashboards,
    snapshot,
    copy_snapshot,
    config_path,
    images,
    binaries,
):
    """Deploy an OP Stack devnet.

    Runs anvil, deploys the L1 contracts, starts the L2 nodes and the
    batcher/proposer/challenger, then Prometheus and Grafana. Without
    --detach the devnet keeps running until Ctrl+C and is then torn down.

    Examples:

        # Local L1, one sequencer and one validator
        kup deploy

        # Fork Sepolia with three nodes, two of them sequencers
        kup deploy --l1-rpc-url https://sepolia.example --l2-nodes 3 --sequencers 2

        # Run a locally built op-batcher
        kup deploy --binary op-batcher=./bin/op-batcher
    """
    overrides = image_overrides(images, binaries)

    async def _deploy() -> None:
        if config_path:
            deployer = Deployer.load(config_path)
            deployer.detach = deployer.detach or detach
            deployer.no_cleanup = deployer.no_cleanup or no_cleanup or deployer.detach
            for service, image in overrides.items():
                deployer.set_image(service, image)
        else:
            defaults = load_config()
            name = network_name or defaults.network_name
            root = Path(defaults.outdata_root).expanduser() if defaults.outdata_root else None
            options = DeployOptions(
                network_name=name,
                outdata=outdata or default_outdata(name, root),
                l1_rpc_url=l1_rpc_url or defaults.l1_rpc_url,
                l1_chain_id=l1_chain_id or defaults.l1_chain_id,
                l2_chain_id=l2_chain_id,
                block_time=block_time or defaults.block_time,
                l2_nodes=l2_nodes or defaults.l2_nodes,
                sequencers=sequencers or defaults.sequencers,
                network_mode=NetworkMode(network_mode or defaults.network_mode),
                redeploy=redeploy,
                no_cleanup=no_cleanup,
                detach=detach,
                monitoring=defaults.monitoring and not no_monitoring,
                dashboards_path=dashboards,
                snapshot=snapshot,
                copy_snapshot=copy_snapshot,
                images=overrides,
            )
            click.echo("Configuring deployment...")
            deployer = await Deployer.create(options)

        click.echo(f"  ✓ Network: {deployer.network_name}")
        click.echo(f"  ✓ L1 chain id: {deployer.l1_chain_id}")
        click.echo(f"  ✓ L2 chain id: {deployer.l2_chain_id}")
        click.echo(f"  ✓ Output: {deployer.outdata}")
        click.echo("\nDeploying...")

        def on_ready(result: DeploymentResult) -> None:
            click.echo("\n✓ Deployment ready\n")
            print_endpoints(Deployer.endpoints(result))
            if deployer.detach:
                print_detach_hint(deployer, result)
            else:
                click.echo("\nPress Ctrl+C to stop and clean up.")

        result = await run_until_interrupted(deployer.deploy(wait=not deployer.detach, on_ready=on_ready))
        if result is None and not deployer.detach:
            click.echo("\n✓ Stopped")

    try:
        asyncio.run(_deploy())
    except KupError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@click.command()
@click.argument("prefix")
def cleanup(prefix):
    """Remove containers whose name starts with PREFIX, and their network."""
    try:
        result = asyncio.run(cleanup_by_prefix(prefix))
    except KupError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    if not result.containers_removed and not result.network_removed:
        click.echo(f"Nothing to clean up for '{prefix}'")
        return
    for name in result.containers_removed:
        click.echo(f"  ✓ Removed container {name}")
    if result.network_removed:
        click.echo(f"  ✓ Removed network {result.network_removed}")


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Kupcake.yaml (or its directory); defaults to the configured network's output directory",
)
def health(config_path):
    """Check a running deployment."""
    try:
        if config_path is None:
            defaults = load_config()
            root = Path(defaults.outdata_root).expanduser() if defaults.outdata_root else None
            config_path = default_outdata(defaults.network_name, root)
        deployer = Deployer.load(config_path)
        report = asyncio.run(health_check(deployer))
    except KupError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    print_health_report(report)
    if not report.healthy:
        sys.exit(1)
