"""Concurrent directory walk producing the initial listing.

The walk is depth-first over a stack of pending directories. Directory
listing and file classification run on a per-scan thread pool; the
coroutine itself only touches the cache and the progress counters, so all
shared state is mutated on the event-loop thread.

Ignore checks happen on names returned by ``os.scandir`` before anything is
stat'ed or opened. Excluded directories are never entered. Symlinks are
never followed into directories; a non-excluded link is stat'ed once to
decide whether it points at a file.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import structlog

from treesync.core.errors import ConfigError
from treesync.core.paths import ensure_absolute, normalize_path, safe_relative
from treesync.sync._internal.cache import EngineCache
from treesync.sync._internal.classifier import FileClassifier
from treesync.sync._internal.ignore import IgnorePredicate
from treesync.sync.models import FileRecord, ScanProgress, ScanResult, ScanStatus

logger = structlog.get_logger()

ProgressCallback = Callable[[ScanProgress], None]

DEFAULT_TIMEOUT_SEC = 300.0


@dataclass(slots=True)
class _Entry:
    name: str
    is_dir: bool
    is_symlink: bool


@dataclass
class _Counters:
    """Scan-local progress. Never shared between scans."""

    directories_visited: int = 0
    files_processed: int = 0

    def snapshot(self) -> ScanProgress:
        return ScanProgress(
            directories_visited=self.directories_visited,
            files_processed=self.files_processed,
        )


def _list_directory(directory: str) -> list[_Entry] | None:
    """Names under *directory*, or None if it cannot be read.

    Entry types come from ``os.scandir`` without following links. On
    filesystems that do not report types, ``DirEntry`` falls back to one
    ``lstat`` per entry.
    """
    try:
        with os.scandir(directory) as it:
            entries = []
            for entry in it:
                try:
                    is_symlink = entry.is_symlink()
                    is_dir = entry.is_dir(follow_symlinks=False)
                except OSError:
                    is_symlink, is_dir = False, False
                entries.append(_Entry(entry.name, is_dir, is_symlink))
    except OSError as e:
        logger.warning("scan_directory_unreadable", path=normalize_path(directory), error=str(e))
        return None
    entries.sort(key=lambda e: e.name)
    return entries


def _partition(
    directory: str, entries: list[_Entry], root: str, predicate: IgnorePredicate
) -> tuple[list[str], list[str]]:
    """Split listed entries into (subdirectories to enter, files to classify).

    Every name is checked against *predicate* first. A symlink that survives
    that check is stat'ed once to tell a link to a directory, which is never
    followed, from a link to a file.
    """
    subdirs: list[str] = []
    files: list[str] = []
    for entry in entries:
        path = f"{directory.rstrip('/')}/{entry.name}"
        rel = safe_relative(root, path)
        if rel is None:
            continue
        if entry.is_symlink:
            if not predicate.is_excluded(rel) and not os.path.isdir(path):
                files.append(path)
        elif entry.is_dir:
            if not predicate.is_excluded(rel, is_dir=True):
                subdirs.append(path)
        elif not predicate.is_excluded(rel):
            files.append(path)
    return subdirs, files


def collect_files(directory: str, root: str, predicate: IgnorePredicate) -> list[str]:
    """Every eligible file under *directory*, walked with the scan's rules.

    Blocking; used for directories that appear while a root is watched.
    """
    files: list[str] = []
    pending = [directory]
    while pending:
        current = pending.pop()
        entries = _list_directory(current)
        if entries is None:
            continue
        subdirs, found = _partition(current, entries, root, predicate)
        files.extend(found)
        pending.extend(reversed(subdirs))
    return files


class DirectoryScanner:
    """Walks one root at a time with bounded parallelism."""

    def __init__(
        self,
        classifier: FileClassifier,
        cache: EngineCache,
        *,
        concurrency: int = 4,
        progress_interval: float = 0.2,
    ) -> None:
        self._classifier = classifier
        self._cache = cache
        self.concurrency = max(1, concurrency)
        self.progress_interval = progress_interval

    async def scan(
        self,
        root: str,
        predicate: IgnorePredicate,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = DEFAULT_TIMEOUT_SEC,
    ) -> ScanResult:
        """Walk *root* and return every non-excluded file's record.

        Args:
            root: Directory to walk.
            predicate: Exclusion decisions, relative to *root*.
            on_progress: Throttled progress snapshots. A final snapshot is
                delivered before a complete or timed-out scan returns; none
                is delivered once cancellation has been observed.
            cancel_event: Set by the caller to stop the scan early.
            timeout: Wall-clock budget in seconds. None or 0 disables it.

        Raises:
            ConfigError: *root* is missing or not a directory.
        """
        root = ensure_absolute(root)
        if not os.path.isdir(root):
            raise ConfigError.invalid_root(root, "not an existing directory")

        loop = asyncio.get_running_loop()
        started = time.monotonic()
        deadline = started + timeout if timeout else None
        counters = _Counters()
        records: list[FileRecord] = []
        last_emit = started

        def interrupted() -> ScanStatus | None:
            if cancel_event is not None and cancel_event.is_set():
                return ScanStatus.CANCELLED
            if deadline is not None and time.monotonic() >= deadline:
                return ScanStatus.TIMED_OUT
            return None

        def maybe_emit() -> None:
            nonlocal last_emit
            if on_progress is None or (cancel_event is not None and cancel_event.is_set()):
                return
            now = time.monotonic()
            if now - last_emit >= self.progress_interval:
                last_emit = now
                on_progress(counters.snapshot())

        logger.info("scan_started", root=root, concurrency=self.concurrency)

        status = ScanStatus.COMPLETE
        pending: list[str] = [root]
        executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="treesync-scan"
        )
        try:
            while pending:
                if (outcome := interrupted()) is not None:
                    status = outcome
                    break

                directory = pending.pop()
                entries = await loop.run_in_executor(executor, _list_directory, directory)
                if entries is None:
                    continue
                counters.directories_visited += 1

                subdirs, files = await loop.run_in_executor(
                    executor, _partition, directory, entries, root, predicate
                )

                # Reversed so the stack pops siblings in name order.
                pending.extend(reversed(subdirs))
                maybe_emit()

                for chunk in itertools.batched(files, self.concurrency):
                    if (outcome := interrupted()) is not None:
                        status = outcome
                        break
                    records.extend(await self._classify_chunk(loop, executor, chunk, root))
                    counters.files_processed += len(chunk)
                    maybe_emit()
                else:
                    continue
                break
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if status is not ScanStatus.CANCELLED and on_progress is not None:
            on_progress(counters.snapshot())

        elapsed = time.monotonic() - started
        error_count = sum(1 for r in records if r.error is not None)
        logger.info(
            "scan_finished",
            root=root,
            status=status.value,
            files=len(records),
            directories=counters.directories_visited,
            errors=error_count,
            elapsed_sec=round(elapsed, 3),
        )
        return ScanResult(
            root=root,
            status=status,
            records=records,
            progress=counters.snapshot(),
            error_count=error_count,
            elapsed_sec=elapsed,
        )

    async def _classify_chunk(
        self,
        loop: asyncio.AbstractEventLoop,
        executor: ThreadPoolExecutor,
        chunk: tuple[str, ...],
        root: str,
    ) -> list[FileRecord]:
        """Classify one chunk of sibling files, reusing cached records."""
        results: list[FileRecord | None] = []
        work: list[tuple[int, str]] = []
        for path in chunk:
            cached = self._cache.get_record(path)
            if cached is None:
                work.append((len(results), path))
            results.append(cached)

        if work:
            fresh = await asyncio.gather(
                *(
                    loop.run_in_executor(executor, self._classifier.classify_uncached, path, root)
                    for _, path in work
                )
            )
            for (index, _), record in zip(work, fresh, strict=True):
                self._cache.store_record(record)
                results[index] = record

        return [r for r in results if r is not None]
