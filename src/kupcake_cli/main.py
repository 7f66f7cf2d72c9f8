"""CLI main entry point."""

import json
import sys

import click

from . import __version__
from .commands.deploy import cleanup, deploy, health
from .config import VALID_KEYS, get_config_path, load_config, save_config, unset_config
from .shared.logging import configure_logging, verbosity_to_level


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Write logs to this file")
@click.option("--json-logs", is_flag=True, help="Log as JSON")
@click.option(
    "--container-logs",
    "container_logs",
    multiple=True,
    metavar="NAME",
    help="Show output of containers whose name contains NAME (repeatable; 'all' for every container)",
)
@click.pass_context
def cli(
    ctx: click.Context, verbose: int, log_file: str | None, json_logs: bool, container_logs: tuple[str, ...]
) -> None:
    """Local OP Stack rollup devnets on Docker."""
    ctx.ensure_object(dict)
    config = load_config()
    level = verbosity_to_level(verbose, default=config.log_level)
    containers = [name for name in container_logs if name != "all"]
    configure_logging(
        level,
        log_file=log_file,
        json_output=json_logs,
        container_logs=True if container_logs else None,
        containers=containers,
    )
    ctx.obj["verbose"] = verbose
    ctx.obj["log_level"] = level


cli.add_command(deploy)
cli.add_command(cleanup)
cli.add_command(health)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"kupcake-cli version {__version__}")


@cli.group()
def config() -> None:
    """Manage user defaults (~/.kupcake/config.yaml)."""
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(json_output: bool) -> None:
    """Show current defaults and where each one comes from."""
    from .formatters import print_config_sources

    loaded = load_config()
    if json_output:
        data = {key: {"value": value, "source": loaded.get_source(key)} for key, value in loaded.values().items()}
        click.echo(json.dumps(data, indent=2, default=str))
        return

    click.echo("Kupcake configuration")
    click.echo(f"Config file: {get_config_path()}\n")
    print_config_sources(loaded)


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set a default."""
    if key not in VALID_KEYS:
        click.echo(f"✗ Unknown key '{key}'", err=True)
        click.echo(f"\nValid keys:\n  {', '.join(VALID_KEYS)}")
        sys.exit(1)
    try:
        save_config(key, value)
    except ValueError:
        click.echo(f"✗ Invalid value for {key}: {value}", err=True)
        sys.exit(1)
    click.echo(f"✓ Set {key} = {value}")


@config.command("unset")
@click.argument("key")
def config_unset(key: str) -> None:
    """Remove a default, falling back to the built-in value."""
    if unset_config(key):
        click.echo(f"✓ Unset {key}")
    else:
        click.echo(f"{key} is not set in {get_config_path()}")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
