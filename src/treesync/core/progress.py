"""User-facing progress feedback for CLI operations.

Design principles:
- Single line updates, no spam
- Graceful degradation in non-TTY (CI, pipes)
- Suppress structlog console output during live displays

Usage::

    from treesync.core.progress import scan_status, status

    status("Ready", style="success")  # ✓ Ready

    with scan_status("Scanning ~/src/app") as line:
        line.update(directories=12, files=340)
"""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from structlog.stdlib import BoundLogger

_console = Console(stderr=True)

_STYLES = {
    "success": "[green]✓[/green] ",
    "error": "[red]✗[/red] ",
    "warning": "[yellow]![/yellow] ",
    "info": "  ",
    "none": "",
}

_suppress_console_logs = threading.local()


def is_console_suppressed() -> bool:
    """Check if console logging is currently suppressed."""
    return getattr(_suppress_console_logs, "active", False)


@contextmanager
def suppress_console_logs() -> Iterator[None]:
    """Suppress structlog console output while a live display owns the line.

    Logs are still written to file handlers.
    """
    _suppress_console_logs.active = True
    try:
        yield
    finally:
        _suppress_console_logs.active = False


def _get_logger() -> BoundLogger:
    """Get logger lazily to respect runtime config."""
    from treesync.core.logging import get_logger

    return get_logger("progress")


def _is_tty() -> bool:
    return hasattr(sys.stderr, "isatty") and sys.stderr.isatty()


def get_console() -> Console:
    """Get the shared Rich console instance."""
    return _console


def status(message: str, *, style: str = "info", indent: int = 0) -> None:
    """Print a styled status message to stderr."""
    prefix = _STYLES.get(style, "")
    padding = " " * indent
    _console.print(f"{padding}{prefix}{message}", highlight=False)
    _get_logger().debug("status", message=message, style=style)


def pluralize(count: int, singular: str, plural: str | None = None) -> str:
    """Return "1 file" / "3 files" style counts."""
    if plural is None:
        plural = singular + "s"
    word = singular if count == 1 else plural
    return f"{count} {word}"


class ScanStatusLine:
    """A single self-updating "N directories, M files" line."""

    def __init__(self, message: str, live: Live | None) -> None:
        self._message = message
        self._live = live
        self.directories = 0
        self.files = 0

    def render(self) -> Text:
        return Text.assemble(
            (self._message, "cyan"),
            f" ({pluralize(self.directories, 'directory', 'directories')}, "
            f"{pluralize(self.files, 'file')} processed)",
        )

    def update(self, *, directories: int, files: int) -> None:
        self.directories = directories
        self.files = files
        if self._live is not None:
            self._live.update(self.render())


@contextmanager
def scan_status(message: str) -> Iterator[ScanStatusLine]:
    """Live scan counter on a TTY, a single plain line otherwise."""
    if not _is_tty():
        _console.print(f"{message}...", highlight=False)
        yield ScanStatusLine(message, None)
        return

    line = ScanStatusLine(message, None)
    with (
        suppress_console_logs(),
        Live(line.render(), console=_console, refresh_per_second=12, transient=True) as live,
    ):
        line._live = live
        yield line


def make_extension_table(
    extensions: Mapping[str, tuple[int, int]], *, max_bar_width: int = 20
) -> Table:
    """Per-extension breakdown of a listing.

    Args:
        extensions: Extension (``.py``, ``(none)``) to ``(files, tokens)``.
        max_bar_width: Width of the token share bar.

    Rows are ordered by token count, then file count. The bar is linear in
    each extension's share of the listed tokens.
    """
    table = Table(show_header=True, header_style="dim", box=None, padding=(0, 1), pad_edge=False)
    table.add_column("ext", style="cyan", min_width=8)
    table.add_column("files", justify="right")
    table.add_column("tokens", justify="right")
    table.add_column("share", width=max_bar_width)

    rows = sorted(extensions.items(), key=lambda item: (-item[1][1], -item[1][0], item[0]))
    total_tokens = sum(tokens for _, (_, tokens) in rows)
    for ext, (files, tokens) in rows:
        width = round(max_bar_width * tokens / total_tokens) if total_tokens else 0
        table.add_row(ext, str(files), f"{tokens:,}", Text("▇" * width, style="blue"))

    return table
