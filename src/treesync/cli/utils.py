"""CLI utilities."""

from pathlib import Path

import click

from treesync.config.loader import load_config
from treesync.config.models import TreeSyncConfig
from treesync.core.errors import ConfigError
from treesync.sync.models import IgnoreSettings

mode_option = click.option(
    "--mode",
    type=click.Choice(["automatic", "global"]),
    default=None,
    help="automatic reads .gitignore files in the tree; global uses defaults and --ignore only",
)
ignore_option = click.option(
    "--ignore",
    "patterns",
    multiple=True,
    metavar="PATTERN",
    help="Extra gitignore-style pattern (repeatable)",
)


def load_cli_config(ctx: click.Context) -> TreeSyncConfig:
    """Load config from the group's --config option, as a ClickException on failure."""
    config_path: Path | None = ctx.obj.get("config_path") if ctx.obj else None
    try:
        return load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(e.message) from e


def build_settings(
    config: TreeSyncConfig, mode: str | None, patterns: tuple[str, ...]
) -> IgnoreSettings:
    """Ignore settings from config, overridden by command-line flags.

    --ignore patterns are added to the configured custom patterns.
    """
    return IgnoreSettings.create(
        mode or config.ignore.mode,
        [*config.ignore.custom_patterns, *patterns],
    )
