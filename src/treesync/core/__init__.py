"""Core module exports."""

from treesync.core.errors import (
    ConfigError,
    ErrorCode,
    InternalError,
    TreeSyncError,
    WatchRuntimeError,
    WatchSetupError,
)
from treesync.core.logging import (
    begin_listing,
    configure_logging,
    current_listing_id,
    end_listing,
    get_logger,
)
from treesync.core.progress import status

__all__ = [
    # Errors
    "ConfigError",
    "ErrorCode",
    "InternalError",
    "TreeSyncError",
    "WatchRuntimeError",
    "WatchSetupError",
    # Logging
    "begin_listing",
    "configure_logging",
    "current_listing_id",
    "end_listing",
    "get_logger",
    # Progress
    "status",
]
