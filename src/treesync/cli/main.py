"""treesync CLI - tsync command."""

from pathlib import Path

import click

from treesync import __version__
from treesync.cli.listing import list_command
from treesync.cli.patterns import patterns_command
from treesync.cli.watch import watch_command
from treesync.core.logging import configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="tsync")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML config file (overrides ~/.config/treesync/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """treesync - filtered, live directory listings for LLM prompts."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config_path"] = config_path
    configure_logging(level="DEBUG" if verbose else "WARNING")


cli.add_command(list_command, name="list")
cli.add_command(watch_command, name="watch")
cli.add_command(patterns_command, name="patterns")


if __name__ == "__main__":
    cli()
