"""tsync list command - one-shot filtered listing."""

import asyncio
import json
from collections import Counter
from pathlib import Path

import click

from treesync.cli.utils import build_settings, ignore_option, load_cli_config, mode_option
from treesync.core.errors import ConfigError
from treesync.core.progress import get_console, make_extension_table, pluralize, scan_status
from treesync.sync._internal.scanner import ProgressCallback
from treesync.sync.models import ScanProgress, ScanResult
from treesync.sync.ops import SyncCoordinator


def _print_summary(result: ScanResult) -> None:
    console = get_console()
    for record in sorted(result.records, key=lambda r: r.relative_path):
        if record.is_skipped:
            console.print(f"  {record.relative_path}  [red]{record.error}[/red]", highlight=False)
        elif record.is_binary:
            console.print(
                f"  {record.relative_path}  [dim]binary {record.file_type}[/dim]", highlight=False
            )
        else:
            marker = "  [yellow](deselected)[/yellow]" if record.excluded_by_default else ""
            console.print(
                f"  {record.relative_path}  [dim]{record.token_count} tokens[/dim]{marker}",
                highlight=False,
            )

    files: Counter[str] = Counter()
    tokens_by_ext: Counter[str] = Counter()
    for record in result.records:
        ext = record.extension or "(none)"
        files[ext] += 1
        if not record.excluded_by_default:
            tokens_by_ext[ext] += record.token_count or 0
    if files:
        console.print()
        breakdown = {ext: (count, tokens_by_ext[ext]) for ext, count in files.items()}
        console.print(make_extension_table(breakdown))

    tokens = sum(tokens_by_ext.values())
    console.print()
    console.print(
        f"{pluralize(len(result.records), 'file')}, "
        f"{pluralize(result.progress.directories_visited, 'directory', 'directories')}, "
        f"~{tokens} tokens ({result.status.value}, {result.elapsed_sec:.2f}s)",
        style="green" if result.is_complete else "yellow",
        highlight=False,
    )
    if result.error_count:
        console.print(f"{pluralize(result.error_count, 'file')} could not be read", style="red")


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, file_okay=False, path_type=Path))
@mode_option
@ignore_option
@click.option("--max-size", type=int, default=None, help="Skip files larger than BYTES")
@click.option("--timeout", type=float, default=None, help="Give up after SEC seconds")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--content", "with_content", is_flag=True, help="Include file content in JSON")
@click.pass_context
def list_command(
    ctx: click.Context,
    path: Path,
    mode: str | None,
    patterns: tuple[str, ...],
    max_size: int | None,
    timeout: float | None,
    as_json: bool,
    with_content: bool,
) -> None:
    """List the files under PATH that survive the ignore rules.

    PATH is the root directory (default: current directory).
    """
    config = load_cli_config(ctx)
    if max_size is not None:
        config.scan.max_file_size_bytes = max_size
    settings = build_settings(config, mode, patterns)

    async def _run(on_progress: ProgressCallback | None = None) -> ScanResult:
        async with SyncCoordinator(config) as coordinator:
            return await coordinator.open_root(
                path.resolve(),
                settings,
                on_progress=on_progress,
                watch=False,
                timeout=timeout,
            )

    try:
        if as_json:
            result = asyncio.run(_run())
        else:
            with scan_status(f"Scanning {path}") as line:

                def _progress(progress: ScanProgress) -> None:
                    line.update(
                        directories=progress.directories_visited,
                        files=progress.files_processed,
                    )

                result = asyncio.run(_run(_progress))
    except ConfigError as e:
        raise click.ClickException(e.message) from e

    if as_json:
        click.echo(json.dumps(result.to_dict(include_content=with_content), indent=2))
    else:
        _print_summary(result)
