"""High-level orchestration of the synchronization engine.

This module implements the SyncCoordinator - the entry point for all listing
and watch operations. It enforces the engine's serialization invariants:

- _lock: Only ONE lifecycle operation (open, close, ignore change) at a time
- At most one WatchSession exists; the previous one is fully stopped before
  a new scan starts, so its stop is always logged before the next start
- The watch is seeded with the exact predicate the scan used

The Coordinator owns the shared EngineCache and is the only component that
clears it. Flow: resolve predicate -> scan -> watch -> reconcile changes.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Iterable
from types import TracebackType
from typing import Self

import structlog

from treesync.config.models import TreeSyncConfig
from treesync.core.errors import ConfigError, TreeSyncError, WatchSetupError
from treesync.core.logging import begin_listing, end_listing
from treesync.core.paths import ensure_absolute
from treesync.sync._internal.cache import EngineCache
from treesync.sync._internal.classifier import FileClassifier
from treesync.sync._internal.ignore import IgnorePredicate, IgnoreResolver
from treesync.sync._internal.scanner import DirectoryScanner, ProgressCallback
from treesync.sync._internal.watcher import ChangeQueue, WatchHandlers, WatchSession
from treesync.sync.models import (
    ChangeKind,
    FileChange,
    FileRecord,
    IgnoreMode,
    IgnorePatterns,
    IgnoreSettings,
    ScanResult,
    SessionState,
)

logger = structlog.get_logger()


class SyncListener:
    """Receives reconciled changes. Override the methods you need.

    Called on the event-loop thread, in per-path order.
    """

    def file_added(self, record: FileRecord) -> None:
        pass

    def file_updated(self, record: FileRecord) -> None:
        pass

    def file_removed(self, path: str, relative_path: str) -> None:
        pass

    def on_error(self, error: TreeSyncError) -> None:
        pass


class SyncCoordinator:
    """
    Facade over resolver, scanner and watch session for one open root.

    SERIALIZATION:
    - _lock: open_root, close_root and ignore changes run one at a time
    - A new open_root (or ignore change) cancels the running scan before
      waiting for the lock, so it never queues behind a long walk

    Usage::

        async with SyncCoordinator(config, listener=my_listener) as sync:
            result = await sync.open_root("/path/to/project")
            async for change in sync.changes():
                ...
    """

    def __init__(
        self,
        config: TreeSyncConfig | None = None,
        *,
        listener: SyncListener | None = None,
        change_queue_size: int = 10000,
    ) -> None:
        self.config = config or TreeSyncConfig()

        self._cache = EngineCache()
        self._resolver = IgnoreResolver(
            self._cache, exclusion_filenames=self.config.ignore.exclusion_filenames
        )
        self._classifier = FileClassifier.from_config(self._cache, self.config.scan)
        self._scanner = DirectoryScanner(
            self._classifier,
            self._cache,
            concurrency=self.config.scan.concurrency,
            progress_interval=self.config.scan.progress_interval_sec,
        )

        self._lock = asyncio.Lock()
        self._listeners: list[SyncListener] = [listener] if listener is not None else []
        self._changes = ChangeQueue(max_size=change_queue_size)

        self._settings = IgnoreSettings.from_config(self.config.ignore)
        self._root: str | None = None
        self._predicate: IgnorePredicate | None = None
        self._session: WatchSession | None = None
        self._view: dict[str, FileRecord] = {}
        self._cancel_event: asyncio.Event | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # State

    @property
    def root(self) -> str | None:
        return self._root

    @property
    def settings(self) -> IgnoreSettings:
        return self._settings

    @property
    def predicate(self) -> IgnorePredicate | None:
        """Predicate used by the last scan and the live watch."""
        return self._predicate

    @property
    def cache(self) -> EngineCache:
        return self._cache

    @property
    def records(self) -> list[FileRecord]:
        """Current listing, ordered by relative path."""
        return sorted(self._view.values(), key=lambda r: r.relative_path)

    @property
    def session_state(self) -> SessionState:
        if self._session is None:
            return SessionState.IDLE
        return self._session.state

    @property
    def changes_dropped(self) -> int:
        return self._changes.dropped_count

    def add_listener(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Operations

    async def open_root(
        self,
        root: str | os.PathLike[str],
        settings: IgnoreSettings | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        watch: bool = True,
        timeout: float | None = None,
    ) -> ScanResult:
        """Scan *root* and, when the scan completes, keep it watched.

        Args:
            root: Directory to list.
            settings: Ignore settings. Defaults to the active ones.
            on_progress: Throttled scan progress.
            watch: Start a WatchSession after a complete scan.
            timeout: Scan budget in seconds. Defaults to ``scan.timeout_sec``.

        Returns:
            The terminal ScanResult. Only a ``complete`` result is watched.

        Raises:
            ConfigError: *root* is missing or not a directory.
        """
        self._cancel_running_scan()
        async with self._lock:
            return await self._open_locked(
                ensure_absolute(root),
                settings if settings is not None else self._settings,
                on_progress=on_progress,
                watch=watch,
                timeout=timeout,
            )

    request_listing = open_root

    def cancel_listing(self) -> bool:
        """Ask the running scan to stop. Returns False if none is running."""
        if self._cancel_event is None or self._cancel_event.is_set():
            return False
        logger.info("listing_cancel_requested", root=self._root)
        self._cancel_event.set()
        return True

    async def close_root(self) -> None:
        """Cancel any scan, stop the watch and forget the listing."""
        self._cancel_running_scan()
        async with self._lock:
            root = self._root
            await self._stop_session()
            if root is not None:
                self._cache.clear_records(root)
                logger.info("root_closed", root=root)
            self._view.clear()
            self._root = None
            self._predicate = None
            end_listing()

    async def aclose(self) -> None:
        """Close the root and end the ``changes()`` stream."""
        await self.close_root()
        self._changes.close()

    async def set_ignore_config(
        self,
        mode: IgnoreMode | str,
        custom_patterns: Iterable[str] | None = None,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ScanResult | None:
        """Switch ignore mode/patterns. Re-lists the open root, if any."""
        return await self.change_ignore_config(
            IgnoreSettings.create(mode, custom_patterns), on_progress=on_progress
        )

    async def change_ignore_config(
        self,
        settings: IgnoreSettings,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> ScanResult | None:
        """Apply new ignore settings.

        Both caches are cleared before anything else runs, so no record or
        predicate built under the old settings can leak into the next listing.
        Returns the new ScanResult, or None when no root is open.
        """
        self._cancel_running_scan()
        async with self._lock:
            self._invalidate_caches(reason="ignore_config_changed")
            self._settings = settings
            if self._root is None:
                return None
            return await self._open_locked(
                self._root, settings, on_progress=on_progress, watch=True, timeout=None
            )

    async def get_ignore_patterns(
        self,
        root: str | os.PathLike[str],
        mode: IgnoreMode | str | None = None,
        custom_patterns: Iterable[str] | None = None,
    ) -> IgnorePatterns:
        """Resolved pattern sets for *root*. Never mutates a cache."""
        if mode is None and custom_patterns is None:
            settings = self._settings
        else:
            settings = IgnoreSettings.create(
                mode if mode is not None else self._settings.mode,
                custom_patterns if custom_patterns is not None else self._settings.custom_patterns,
            )
        return await asyncio.to_thread(self._resolver.describe, ensure_absolute(root), settings)

    async def changes(self) -> AsyncIterator[FileChange]:
        """Reconciled changes, until ``aclose``."""
        async for change in self._changes:
            yield change

    # Internals

    def _cancel_running_scan(self) -> None:
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def _open_locked(
        self,
        root: str,
        settings: IgnoreSettings,
        *,
        on_progress: ProgressCallback | None,
        watch: bool,
        timeout: float | None,
    ) -> ScanResult:
        if not os.path.isdir(root):
            raise ConfigError.invalid_root(root, "not an existing directory")

        begin_listing(root)
        if settings != self._settings:
            self._invalidate_caches(reason="ignore_config_changed")
            self._settings = settings

        # Stopping drops pending debounced updates and undelivered events, so
        # no cached record for the root can be trusted past this point.
        await self._stop_session()
        self._cache.clear_records(root)
        if self._root is not None and self._root != root:
            self._cache.clear_records(self._root)
        self._view.clear()
        self._root = root

        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event
        try:
            predicate = await self._resolve_predicate(root, settings)
            result = await self._scanner.scan(
                root,
                predicate,
                on_progress=on_progress,
                cancel_event=cancel_event,
                timeout=timeout if timeout is not None else self.config.scan.timeout_sec,
            )
        finally:
            if self._cancel_event is cancel_event:
                self._cancel_event = None

        self._predicate = predicate
        self._view = {record.path: record for record in result.records}
        logger.info(
            "root_opened",
            root=root,
            mode=settings.mode.value,
            status=result.status.value,
            files=len(result.records),
        )

        if result.is_complete and watch:
            await self._start_session(root, predicate)
        return result

    async def _resolve_predicate(self, root: str, settings: IgnoreSettings) -> IgnorePredicate:
        """Cached predicate, or one built off the event loop and then cached."""
        cached = self._resolver.lookup(root, settings)
        if cached is not None:
            return cached
        predicate = await asyncio.to_thread(self._resolver.build, root, settings)
        return self._resolver.remember(predicate)

    def _invalidate_caches(self, *, reason: str) -> None:
        logger.info(reason, root=self._root, records=self._cache.record_count)
        self._resolver.invalidate()
        self._cache.clear_records()

    async def _start_session(self, root: str, predicate: IgnorePredicate) -> None:
        watch_config = self.config.watch
        session = WatchSession(
            root=root,
            predicate=predicate,
            classifier=self._classifier,
            handlers=WatchHandlers(
                on_added=self._on_added,
                on_updated=self._on_updated,
                on_removed=self._on_removed,
                on_error=self._on_watch_error,
            ),
            debounce_sec=watch_config.debounce_sec,
            step_ms=watch_config.step_ms,
            force_polling=watch_config.force_polling,
        )
        try:
            await session.start()
        except WatchSetupError as e:
            logger.warning("watch_unavailable", root=root, error=e.message)
            self._notify_error(e)
            return
        self._session = session

    async def _stop_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.stop()

    # Reconciliation (event-loop thread, called by the watch session)

    def _on_added(self, record: FileRecord) -> None:
        kind = ChangeKind.UPDATED if record.path in self._view else ChangeKind.ADDED
        self._apply(record, kind)

    def _on_updated(self, record: FileRecord) -> None:
        kind = ChangeKind.UPDATED if record.path in self._view else ChangeKind.ADDED
        self._apply(record, kind)

    def _apply(self, record: FileRecord, kind: ChangeKind) -> None:
        self._view[record.path] = record
        self._cache.store_record(record)
        self._publish(FileChange(kind, record.path, record.relative_path, record))

    def _on_removed(self, path: str, relative_path: str) -> None:
        if path in self._view:
            doomed = [path]
        else:
            # A removed directory takes every listed file below it.
            prefix = path.rstrip("/") + "/"
            doomed = sorted(p for p in self._view if p.startswith(prefix))
        if not doomed:
            logger.debug("removal_ignored", path=path)
            return
        for doomed_path in doomed:
            record = self._view.pop(doomed_path)
            self._cache.forget_record(doomed_path)
            self._publish(FileChange(ChangeKind.REMOVED, doomed_path, record.relative_path))

    def _on_watch_error(self, error: TreeSyncError) -> None:
        logger.warning("watch_lost", root=self._root, error=error.error_name)
        if self._root is not None:
            self._cache.clear_records(self._root)
        self._notify_error(error)

    def _publish(self, change: FileChange) -> None:
        for listener in list(self._listeners):
            try:
                if change.kind is ChangeKind.ADDED and change.record is not None:
                    listener.file_added(change.record)
                elif change.kind is ChangeKind.UPDATED and change.record is not None:
                    listener.file_updated(change.record)
                elif change.kind is ChangeKind.REMOVED:
                    listener.file_removed(change.path, change.relative_path)
            except Exception:
                logger.exception("listener_failed", kind=change.kind.value, path=change.path)
        if not self._changes.put(change) and not self._changes.closed:
            logger.debug("change_dropped", path=change.path, dropped=self._changes.dropped_count)

    def _notify_error(self, error: TreeSyncError) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_error(error)
            except Exception:
                logger.exception("listener_failed", error=error.error_name)
