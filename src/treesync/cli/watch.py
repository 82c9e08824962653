"""tsync watch command - list once, then print changes until interrupted."""

import asyncio
from pathlib import Path

import click

from treesync.cli.utils import build_settings, ignore_option, load_cli_config, mode_option
from treesync.core.errors import ConfigError, TreeSyncError
from treesync.core.progress import get_console, pluralize, status
from treesync.sync.models import FileRecord
from treesync.sync.ops import SyncCoordinator, SyncListener

_STYLES = {"added": "green", "updated": "yellow", "removed": "red"}


class _ConsoleListener(SyncListener):
    """Prints each reconciled change as one line."""

    def __init__(self) -> None:
        self._console = get_console()
        self.stopped = asyncio.Event()

    def _line(self, kind: str, relative_path: str, detail: str = "") -> None:
        self._console.print(
            f"[{_STYLES[kind]}]{kind:>7}[/{_STYLES[kind]}]  {relative_path}{detail}",
            highlight=False,
        )

    def file_added(self, record: FileRecord) -> None:
        self._line("added", record.relative_path, _detail(record))

    def file_updated(self, record: FileRecord) -> None:
        self._line("updated", record.relative_path, _detail(record))

    def file_removed(self, path: str, relative_path: str) -> None:
        self._line("removed", relative_path)

    def on_error(self, error: TreeSyncError) -> None:
        status(error.message, style="error")
        self.stopped.set()


def _detail(record: FileRecord) -> str:
    if record.error:
        return f"  ({record.error})"
    if record.is_binary:
        return f"  (binary {record.file_type})"
    return f"  ({record.token_count} tokens)"


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, file_okay=False, path_type=Path))
@mode_option
@ignore_option
@click.pass_context
def watch_command(
    ctx: click.Context,
    path: Path,
    mode: str | None,
    patterns: tuple[str, ...],
) -> None:
    """Watch PATH and print added, updated and removed files.

    Runs in foreground until Ctrl-C or until the directory disappears.
    """
    config = load_cli_config(ctx)
    settings = build_settings(config, mode, patterns)

    async def _run() -> None:
        listener = _ConsoleListener()
        async with SyncCoordinator(config, listener=listener) as coordinator:
            result = await coordinator.open_root(path.resolve(), settings)
            if not result.is_complete:
                status(f"Listing {result.status.value}; not watching", style="warning")
                return
            status(
                f"Watching {pluralize(len(result.records), 'file')} under {result.root}",
                style="success",
            )
            await listener.stopped.wait()

    try:
        asyncio.run(_run())
    except ConfigError as e:
        raise click.ClickException(e.message) from e
    except KeyboardInterrupt:
        click.echo("\nStopped")
