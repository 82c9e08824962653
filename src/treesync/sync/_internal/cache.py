"""Process-wide memoization for file records and ignore predicates.

Both tables are owned by one EngineCache instance, which the coordinator
creates and hands to the resolver, classifier and scanner. Only the
coordinator clears it. All mutation happens on the event-loop thread;
worker threads return records and never write here.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from treesync.core.paths import ensure_absolute

if TYPE_CHECKING:
    from treesync.sync._internal.ignore import IgnorePredicate
    from treesync.sync.models import FileRecord

logger = structlog.get_logger()


class EngineCache:
    """Path -> FileRecord and root -> IgnorePredicate caches."""

    def __init__(self) -> None:
        self._records: dict[str, FileRecord] = {}
        self._predicates: dict[str, IgnorePredicate] = {}

    @property
    def record_count(self) -> int:
        return len(self._records)

    @property
    def predicate_count(self) -> int:
        return len(self._predicates)

    # Records

    def get_record(self, path: str) -> FileRecord | None:
        return self._records.get(ensure_absolute(path))

    def store_record(self, record: FileRecord) -> None:
        self._records[record.path] = record

    def forget_record(self, path: str) -> None:
        self._records.pop(ensure_absolute(path), None)

    def clear_records(self, root: str | None = None) -> None:
        """Drop cached records under *root*, or every record."""
        if not self._records:
            return
        if root is None:
            dropped = len(self._records)
            self._records.clear()
        else:
            prefix = ensure_absolute(root).rstrip("/") + "/"
            doomed = [p for p in self._records if p.startswith(prefix)]
            for path in doomed:
                del self._records[path]
            dropped = len(doomed)
        logger.debug("record_cache_cleared", root=root, dropped=dropped)

    # Predicates

    def get_predicate(self, root: str) -> IgnorePredicate | None:
        return self._predicates.get(ensure_absolute(root))

    def store_predicate(self, predicate: IgnorePredicate) -> None:
        self._predicates[predicate.root] = predicate

    def clear_predicates(self, root: str | None = None) -> None:
        """Drop the predicate for *root*, or every predicate."""
        if not self._predicates:
            return
        if root is None:
            self._predicates.clear()
        else:
            self._predicates.pop(ensure_absolute(root), None)
        logger.debug("predicate_cache_cleared", root=root)

    def clear(self) -> None:
        self.clear_predicates()
        self.clear_records()
