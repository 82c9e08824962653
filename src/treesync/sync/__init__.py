"""Directory listing and live synchronization engine.

Public entry point is SyncCoordinator. The components it drives (ignore
resolution, classification, scanning, watching) live in ``_internal``.
"""

from treesync.sync.models import (
    ChangeKind,
    FileChange,
    FileRecord,
    IgnoreMode,
    IgnorePatterns,
    IgnoreSettings,
    ScanProgress,
    ScanResult,
    ScanStatus,
    SessionState,
)
from treesync.sync.ops import SyncCoordinator, SyncListener

__all__ = [
    "ChangeKind",
    "FileChange",
    "FileRecord",
    "IgnoreMode",
    "IgnorePatterns",
    "IgnoreSettings",
    "ScanProgress",
    "ScanResult",
    "ScanStatus",
    "SessionState",
    "SyncCoordinator",
    "SyncListener",
]
