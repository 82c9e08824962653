"""Config module exports."""

from treesync.config.loader import load_config
from treesync.config.models import (
    IgnoreConfig,
    LoggingConfig,
    LogOutputConfig,
    ScanConfig,
    TreeSyncConfig,
    WatchConfig,
)

__all__ = [
    "load_config",
    "IgnoreConfig",
    "LoggingConfig",
    "LogOutputConfig",
    "ScanConfig",
    "TreeSyncConfig",
    "WatchConfig",
]
