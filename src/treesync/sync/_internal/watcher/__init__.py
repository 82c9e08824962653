"""Live watch sessions and the change queue they feed."""

from treesync.sync._internal.watcher.watcher import (
    ChangeQueue,
    WatchHandlers,
    WatchSession,
)

__all__ = [
    "ChangeQueue",
    "WatchHandlers",
    "WatchSession",
]
