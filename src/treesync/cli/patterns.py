"""tsync patterns command - show the resolved ignore rules."""

import asyncio
import json
from pathlib import Path

import click

from treesync.cli.utils import build_settings, ignore_option, load_cli_config, mode_option
from treesync.core.errors import ConfigError
from treesync.core.progress import get_console
from treesync.sync.models import IgnorePatterns
from treesync.sync.ops import SyncCoordinator


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, file_okay=False, path_type=Path))
@mode_option
@ignore_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def patterns_command(
    ctx: click.Context,
    path: Path,
    mode: str | None,
    patterns: tuple[str, ...],
    as_json: bool,
) -> None:
    """Show default, custom and discovered ignore patterns for PATH."""
    config = load_cli_config(ctx)
    settings = build_settings(config, mode, patterns)

    async def _run() -> IgnorePatterns:
        async with SyncCoordinator(config) as coordinator:
            return await coordinator.get_ignore_patterns(
                path.resolve(), settings.mode, settings.custom_patterns
            )

    try:
        resolved = asyncio.run(_run())
    except ConfigError as e:
        raise click.ClickException(e.message) from e

    if as_json:
        click.echo(json.dumps(resolved.to_dict(), indent=2))
        return

    console = get_console()
    console.print(f"Mode: {resolved.mode.value}", style="bold", highlight=False)
    console.print(f"Default ({len(resolved.default)}):", style="cyan", highlight=False)
    for pattern in resolved.default:
        console.print(f"  {pattern}", highlight=False)
    console.print(f"Custom ({len(resolved.custom)}):", style="cyan", highlight=False)
    for pattern in resolved.custom:
        console.print(f"  {pattern}", highlight=False)
    if resolved.discovered:
        console.print("Discovered:", style="cyan", highlight=False)
        for source, found in resolved.discovered.items():
            console.print(f"  {source}", style="dim", highlight=False)
            for pattern in found:
                console.print(f"    {pattern}", highlight=False)
