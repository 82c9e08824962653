"""structlog setup for the engine and the CLI.

Every event goes through stdlib logging so several outputs (console, JSON
file) can run with their own levels. Events emitted while a listing is open
carry ``listing_id`` and ``listing_root`` through structlog's contextvars,
which asyncio copies into the watch tasks started for that listing.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, unbind_contextvars

if TYPE_CHECKING:
    from treesync.config.models import LoggingConfig, LogOutputConfig

_LISTING_KEYS = ("listing_id", "listing_root")

# Third-party loggers that report every filtered notification at DEBUG.
_NOISY_LOGGERS = ("watchfiles.main", "watchfiles.watcher")


def begin_listing(root: str, listing_id: str | None = None) -> str:
    """Tag subsequent events in this context with a listing id and root."""
    lid = listing_id or uuid4().hex[:12]
    bind_contextvars(listing_id=lid, listing_root=root)
    return lid


def end_listing() -> None:
    unbind_contextvars(*_LISTING_KEYS)


def current_listing_id() -> str | None:
    value = get_contextvars().get("listing_id")
    return value if isinstance(value, str) else None


class LiveDisplayFilter(logging.Filter):
    """Drops console records while a rich Live display owns the terminal."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: ARG002
        from treesync.core.progress import is_console_suppressed

        return not is_console_suppressed()


def _level(name: str | None, default: int) -> int:
    if name is None:
        return default
    return logging.getLevelNamesMapping().get(name.upper(), default)


def _formatter(
    output: LogOutputConfig, pre_chain: list[structlog.types.Processor]
) -> logging.Formatter:
    renderer: structlog.types.Processor
    if output.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        colors = output.destination == "stderr" and sys.stderr.isatty()
        renderer = structlog.dev.ConsoleRenderer(colors=colors, pad_event_to=0, pad_level=False)
    return structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=pre_chain)


def _handler(output: LogOutputConfig) -> logging.Handler:
    handler: logging.Handler
    if output.destination == "stderr":
        handler = logging.StreamHandler(sys.stderr)
        handler.addFilter(LiveDisplayFilter())
    elif output.destination == "stdout":
        handler = logging.StreamHandler(sys.stdout)
        handler.addFilter(LiveDisplayFilter())
    else:
        path = Path(output.destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a")
    return handler


def configure_logging(
    *,
    config: LoggingConfig | None = None,
    json_format: bool = False,
    level: str = "INFO",
) -> None:
    """Route structlog through stdlib handlers, one per configured output.

    Args:
        config: Full logging section. When omitted, a single stderr output
            is built from ``json_format`` and ``level``.
        json_format: Render the single stderr output as JSON lines.
        level: Root level for the single-output setup.
    """
    from treesync.config.models import LoggingConfig, LogOutputConfig

    if config is None:
        config = LoggingConfig(
            level=level,  # type: ignore[arg-type]
            outputs=[LogOutputConfig(format="json" if json_format else "console")],
        )
    root_level = _level(config.level, logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", key="timestamp"),
    ]
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration (CLI -v, tests) must reach module-level loggers.
        cache_logger_on_first_use=False,
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(root_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    for output in config.outputs:
        handler = _handler(output)
        handler.setLevel(_level(output.level, root_level))
        handler.setFormatter(_formatter(output, pre_chain))
        root.addHandler(handler)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(logger=name)
    return logger  # type: ignore[no-any-return]
