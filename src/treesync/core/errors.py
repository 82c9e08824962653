"""treesync error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Scan
- 4xxx: Watch
- 9xxx: Internal

Per-file failures (unreadable or oversized files) are not raised. They are
recorded as text on the affected FileRecord so one bad file never aborts a
listing; see ``describe_os_error``.
"""

import errno
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_INVALID_ROOT = 2003

    # Scan (3xxx)
    SCAN_IO_ERROR = 3001
    SCAN_CLASSIFICATION_ERROR = 3002

    # Watch (4xxx)
    WATCH_SETUP_FAILED = 4001
    WATCH_RUNTIME_FAILED = 4002

    # Internal (9xxx)
    INTERNAL_ERROR = 9001


@dataclass(frozen=True, slots=True)
class TreeSyncError(Exception):
    """Base error with structured context."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'CONFIG_INVALID_ROOT')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(TreeSyncError):
    """Configuration-related errors. Fatal to the requested operation."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def invalid_root(cls, root: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_ROOT,
            message=f"Cannot use '{root}' as a root directory: {reason}",
            details={"root": root, "reason": reason},
        )


class WatchSetupError(TreeSyncError):
    """A filesystem watch could not be established.

    The listing already delivered stays valid; live updates resume only
    when the caller asks again.
    """

    @classmethod
    def cannot_watch(cls, root: str, reason: str) -> "WatchSetupError":
        return cls(
            code=ErrorCode.WATCH_SETUP_FAILED,
            message=f"Cannot watch {root}: {reason}",
            retryable=True,
            details={"root": root, "reason": reason},
        )


class WatchRuntimeError(TreeSyncError):
    """A live watch became invalid mid-session. The session stops itself."""

    @classmethod
    def root_lost(cls, root: str) -> "WatchRuntimeError":
        return cls(
            code=ErrorCode.WATCH_RUNTIME_FAILED,
            message=f"Watched root is no longer accessible: {root}",
            retryable=True,
            details={"root": root},
        )

    @classmethod
    def watcher_failed(cls, root: str, reason: str) -> "WatchRuntimeError":
        return cls(
            code=ErrorCode.WATCH_RUNTIME_FAILED,
            message=f"Watcher for {root} failed: {reason}",
            retryable=True,
            details={"root": root, "reason": reason},
        )


class InternalError(TreeSyncError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )


_OS_ERROR_TEXT: dict[int, str] = {
    errno.EPERM: "Permission denied",
    errno.EACCES: "Permission denied",
    errno.ENOENT: "File not found",
    errno.EBUSY: "File busy",
    errno.EMFILE: "Too many open files",
}


def describe_os_error(error: OSError) -> str:
    """Short, user-facing text for a per-file OSError."""
    if error.errno is None:
        return "Could not read file"
    return _OS_ERROR_TEXT.get(error.errno, "Could not read file")
