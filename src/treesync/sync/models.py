"""Data model shared by the scanner, the watcher and the coordinator.

Records are immutable: a change on disk replaces a FileRecord wholesale,
it is never patched in place.
"""

from __future__ import annotations

import posixpath
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from treesync.config.models import IgnoreConfig


class IgnoreMode(str, Enum):
    """How the ignore predicate is assembled."""

    AUTOMATIC = "automatic"  # defaults + custom + discovered exclusion files
    GLOBAL = "global"  # defaults + custom only


class ScanStatus(str, Enum):
    """Terminal outcome of one scan."""

    COMPLETE = "complete"
    CANCELLED = "cancelled"
    TIMED_OUT = "timedOut"


class ChangeKind(str, Enum):
    """Kind of change delivered to listeners."""

    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


class SessionState(str, Enum):
    """Watch session lifecycle: idle -> starting -> active -> stopping -> idle."""

    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass(frozen=True, slots=True)
class IgnoreSettings:
    """Ignore mode plus caller-supplied patterns.

    Patterns are stripped, de-duplicated and sorted so two settings built
    from the same patterns in a different order compare equal.
    """

    mode: IgnoreMode = IgnoreMode.AUTOMATIC
    custom_patterns: tuple[str, ...] = ()

    @classmethod
    def create(
        cls,
        mode: IgnoreMode | str = IgnoreMode.AUTOMATIC,
        custom_patterns: Iterable[str] | None = None,
    ) -> IgnoreSettings:
        cleaned = {p.strip() for p in (custom_patterns or ()) if p and p.strip()}
        return cls(mode=IgnoreMode(mode), custom_patterns=tuple(sorted(cleaned)))

    @classmethod
    def from_config(cls, config: IgnoreConfig) -> IgnoreSettings:
        return cls.create(config.mode, config.custom_patterns)


@dataclass(frozen=True, slots=True)
class FileRecord:
    """One file's eligibility, classification and (optionally) content."""

    path: str
    relative_path: str
    size: int = 0
    is_binary: bool = False
    is_skipped: bool = False
    error: str | None = None
    file_type: str | None = None
    excluded_by_default: bool = False
    content: str | None = None
    token_count: int | None = None

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.name)[1].lower()

    def to_dict(self, *, include_content: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "path": self.path,
            "relativePath": self.relative_path,
            "size": self.size,
            "extension": self.extension,
            "isBinary": self.is_binary,
            "isSkipped": self.is_skipped,
            "excludedByDefault": self.excluded_by_default,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.file_type is not None:
            data["fileType"] = self.file_type
        if self.token_count is not None:
            data["tokenCount"] = self.token_count
        if include_content and self.content is not None:
            data["content"] = self.content
        return data


@dataclass(frozen=True, slots=True)
class ScanProgress:
    """Snapshot of one scan's counters."""

    directories_visited: int = 0
    files_processed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "directoriesVisited": self.directories_visited,
            "filesProcessed": self.files_processed,
        }


@dataclass
class ScanResult:
    """Terminal result of a scan: status, records and final counters."""

    root: str
    status: ScanStatus
    records: list[FileRecord] = field(default_factory=list)
    progress: ScanProgress = field(default_factory=ScanProgress)
    error_count: int = 0
    elapsed_sec: float = 0.0

    @property
    def is_complete(self) -> bool:
        return self.status is ScanStatus.COMPLETE

    def to_dict(self, *, include_content: bool = False) -> dict[str, Any]:
        return {
            "root": self.root,
            "status": self.status.value,
            "records": [r.to_dict(include_content=include_content) for r in self.records],
            "progress": self.progress.to_dict(),
            "errorCount": self.error_count,
            "elapsedSec": round(self.elapsed_sec, 3),
        }


@dataclass(frozen=True, slots=True)
class FileChange:
    """A reconciled change to the listing."""

    kind: ChangeKind
    path: str
    relative_path: str
    record: FileRecord | None = None  # None for removals

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "path": self.path,
            "relativePath": self.relative_path,
        }
        if self.record is not None:
            data["record"] = self.record.to_dict(include_content=False)
        return data


@dataclass(frozen=True)
class IgnorePatterns:
    """Resolved pattern sets for display and audit."""

    mode: IgnoreMode
    default: tuple[str, ...]
    custom: tuple[str, ...]
    discovered: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "default": list(self.default),
            "custom": list(self.custom),
            "discovered": {k: list(v) for k, v in self.discovered.items()},
        }
