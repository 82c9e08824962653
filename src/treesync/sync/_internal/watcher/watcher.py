"""Live filesystem watch for one root.

Design:
- watchfiles ``awatch`` watches the root recursively; its ``watch_filter`` is
  the same IgnorePredicate the scan used
- Every raw notification becomes a _SessionEvent on one asyncio.Queue and a
  single dispatcher task handles them in arrival order
- An added directory (a rename or move into the root) is walked with the
  scan's rules and each eligible file under it is reported as added
- Per-path debounce timers (``loop.call_later``) enqueue a ``flush`` event
  instead of doing work themselves, so updates for one path are never
  reordered against its removal
- Losing the root, or the watcher failing, reports through ``on_error`` and
  stops the session
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import os
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Literal

import structlog
from watchfiles import Change, awatch

from treesync.core.errors import TreeSyncError, WatchRuntimeError, WatchSetupError
from treesync.core.paths import ensure_absolute, safe_relative
from treesync.sync._internal.classifier import FileClassifier
from treesync.sync._internal.ignore import IgnorePredicate
from treesync.sync._internal.scanner import collect_files
from treesync.sync.models import FileChange, FileRecord, SessionState

logger = structlog.get_logger()

DEFAULT_DEBOUNCE_SEC = 0.5
DEFAULT_STEP_MS = 50
# How long watchfiles groups raw notifications before yielding a batch.
_BATCH_MS = 100
# How often an idle watch wakes up to check that the root still exists.
_ROOT_CHECK_MS = 1000
_STOP_TIMEOUT_SEC = 2.0


def _is_cross_filesystem(path: str) -> bool:
    """Detect mounts where native notifications are unreliable (WSL /mnt/*, network)."""
    resolved = os.path.realpath(path)
    # WSL view of a Windows drive: /mnt/c/, /mnt/d/, but not /mnt/data/
    if (
        resolved.startswith("/mnt/")
        and len(resolved) > 6
        and resolved[5].isalpha()
        and resolved[6] == "/"
    ):
        return True
    return resolved.startswith(("/run/user/", "/media/", "/net/"))


@dataclass
class WatchHandlers:
    """Callbacks a session reports to. Called on the event-loop thread."""

    on_added: Callable[[FileRecord], None]
    on_updated: Callable[[FileRecord], None]
    on_removed: Callable[[str, str], None]  # (path, relative_path)
    on_error: Callable[[TreeSyncError], None] | None = None


_EventKind = Literal["added", "modified", "removed", "flush", "root_lost", "failed"]


@dataclass(slots=True)
class _SessionEvent:
    kind: _EventKind
    path: str = ""
    relative_path: str = ""
    reason: str = ""
    token: int = 0


@dataclass
class WatchSession:
    """One live watch: ``idle -> starting -> active -> stopping -> idle``.

    A session is single-use per start: ``start`` on a session that is not
    idle is rejected, ``stop`` on an idle session does nothing.
    """

    root: str
    predicate: IgnorePredicate
    classifier: FileClassifier
    handlers: WatchHandlers
    debounce_sec: float = DEFAULT_DEBOUNCE_SEC
    step_ms: int = DEFAULT_STEP_MS
    force_polling: bool | None = None

    state: SessionState = field(default=SessionState.IDLE, init=False)
    _real_root: str = field(init=False)
    _queue: asyncio.Queue[_SessionEvent] = field(init=False)
    _stop_event: asyncio.Event = field(init=False)
    _stopped: asyncio.Event = field(init=False)
    _timers: dict[str, tuple[asyncio.TimerHandle, int]] = field(default_factory=dict, init=False)
    _tokens: itertools.count[int] = field(default_factory=itertools.count, init=False)
    _watch_task: asyncio.Task[None] | None = field(default=None, init=False)
    _dispatch_task: asyncio.Task[None] | None = field(default=None, init=False)
    _auto_stop_task: asyncio.Task[None] | None = field(default=None, init=False)
    _setup_error: BaseException | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        self.root = ensure_absolute(self.root)
        self._real_root = ensure_absolute(os.path.realpath(self.root))
        if self.force_polling is None and _is_cross_filesystem(self.root):
            self.force_polling = True

    @property
    def pending_updates(self) -> int:
        """Paths with an update waiting out the debounce interval."""
        return len(self._timers)

    async def start(self) -> None:
        """Begin watching.

        Raises:
            WatchSetupError: The session is not idle, the root cannot be
                watched, or the native watcher could not be created. The
                session is idle again afterwards.
        """
        if self.state is not SessionState.IDLE:
            raise WatchSetupError.cannot_watch(self.root, f"session is {self.state.value}")

        self.state = SessionState.STARTING
        if not os.path.isdir(self.root):
            self.state = SessionState.IDLE
            raise WatchSetupError.cannot_watch(self.root, "not an existing directory")
        if not os.access(self.root, os.R_OK | os.X_OK):
            self.state = SessionState.IDLE
            raise WatchSetupError.cannot_watch(self.root, "permission denied")

        self._queue = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self._stopped = asyncio.Event()
        self._setup_error = None
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._watch_task = asyncio.create_task(self._watch_loop())

        # The native watcher is constructed before awatch first suspends.
        await asyncio.sleep(0)
        if self._setup_error is not None:
            reason = str(self._setup_error) or type(self._setup_error).__name__
            await self._release()
            self.state = SessionState.IDLE
            raise WatchSetupError.cannot_watch(self.root, reason)

        self.state = SessionState.ACTIVE
        logger.info(
            "watch_session_started",
            root=self.root,
            debounce_sec=self.debounce_sec,
            mode="polling" if self.force_polling else "native",
        )

    async def stop(self) -> None:
        """Stop watching and release every resource. Idempotent.

        A call made while another stop is in progress waits for it.
        """
        if self.state is SessionState.IDLE:
            return
        if self.state is SessionState.STOPPING:
            await self._stopped.wait()
            return

        self.state = SessionState.STOPPING
        dropped = len(self._timers)
        await self._release()
        self.state = SessionState.IDLE
        self._stopped.set()
        logger.info("watch_session_stopped", root=self.root, dropped_updates=dropped)

    async def _release(self) -> None:
        self._stop_event.set()
        for handle, _token in self._timers.values():
            handle.cancel()
        self._timers.clear()

        current = asyncio.current_task()
        for task in (self._watch_task, self._dispatch_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(task, timeout=_STOP_TIMEOUT_SEC)
        self._watch_task = None
        self._dispatch_task = None

    # Raw notifications

    def _relativize(self, path: str) -> tuple[str, str] | None:
        """(absolute path under root, relative path), or None if outside it."""
        rel = safe_relative(self.root, path)
        if rel is None and self._real_root != self.root:
            rel = safe_relative(self._real_root, path)
        if rel is None:
            return None
        return f"{self.root.rstrip('/')}/{rel}", rel

    def _accept(self, change: Change, path: str) -> bool:
        """watchfiles filter: drop paths outside the root or excluded."""
        resolved = self._relativize(path)
        if resolved is None:
            return False
        return not self.predicate.is_excluded(resolved[1])

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.root,
                watch_filter=self._accept,
                stop_event=self._stop_event,
                debounce=_BATCH_MS,
                step=self.step_ms,
                rust_timeout=_ROOT_CHECK_MS,
                yield_on_timeout=True,
                recursive=True,
                force_polling=self.force_polling,
                ignore_permission_denied=True,
            ):
                if changes:
                    self._enqueue_batch(changes)
                if not os.path.isdir(self.root):
                    self._queue.put_nowait(_SessionEvent("root_lost", self.root))
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.state is SessionState.STARTING:
                self._setup_error = e
                return
            if self._stop_event.is_set():
                return
            logger.error("watch_session_failed", root=self.root, error=str(e))
            if not os.path.isdir(self.root):
                self._queue.put_nowait(_SessionEvent("root_lost", self.root))
            else:
                self._queue.put_nowait(_SessionEvent("failed", self.root, reason=str(e)))

    def _enqueue_batch(self, changes: set[tuple[Change, str]]) -> None:
        """Collapse one batch to a single event per path.

        watchfiles batches are unordered sets, so the current state on disk
        decides between add/modify and remove when a path appears with
        several kinds (atomic saves show up as delete + add).
        """
        kinds: defaultdict[str, set[Change]] = defaultdict(set)
        rels: dict[str, str] = {}
        for change, raw in changes:
            resolved = self._relativize(raw)
            if resolved is None:
                continue
            path, rel = resolved
            kinds[path].add(change)
            rels[path] = rel

        for path in sorted(kinds):
            seen = kinds[path]
            if os.path.lexists(path):
                kind: _EventKind = "added" if Change.added in seen else "modified"
            elif Change.deleted in seen:
                kind = "removed"
            else:
                continue
            self._queue.put_nowait(_SessionEvent(kind, path, rels[path]))

    # Dispatch

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._queue.get()
            if event.kind in ("root_lost", "failed"):
                self._fail(event)
                return
            await self._handle(event)

    async def _handle(self, event: _SessionEvent) -> None:
        if event.kind == "modified":
            self._schedule_flush(event)
            return

        if event.kind == "removed":
            self._cancel_flush(event.path)
            self._notify(self.handlers.on_removed, event.path, event.relative_path)
            return

        if event.kind == "added":
            self._cancel_flush(event.path)
        else:
            pending = self._timers.get(event.path)
            if pending is None or pending[1] != event.token:
                # Superseded by a later change, add or removal for the path.
                return
            del self._timers[event.path]

        if event.kind == "added" and os.path.isdir(event.path) and not os.path.islink(event.path):
            await self._add_directory(event)
            return
        # Vanished files are reported by their own removal event.
        if not os.path.isfile(event.path):
            return
        record = await asyncio.to_thread(self.classifier.classify_uncached, event.path, self.root)
        if self.state is not SessionState.ACTIVE:
            return
        callback = self.handlers.on_added if event.kind == "added" else self.handlers.on_updated
        self._notify(callback, record)

    async def _add_directory(self, event: _SessionEvent) -> None:
        """Report every eligible file under a directory that appeared in one move.

        A renamed or moved-in directory arrives as a single notification, so
        its contents are walked with the scan's rules.
        """
        if self.predicate.is_excluded(event.relative_path, is_dir=True):
            return
        records = await asyncio.to_thread(self._classify_tree, event.path)
        logger.debug("watch_directory_added", path=event.relative_path, files=len(records))
        if self.state is not SessionState.ACTIVE:
            return
        for record in records:
            self._notify(self.handlers.on_added, record)

    def _classify_tree(self, directory: str) -> list[FileRecord]:
        return [
            self.classifier.classify_uncached(path, self.root)
            for path in collect_files(directory, self.root, self.predicate)
        ]

    def _schedule_flush(self, event: _SessionEvent) -> None:
        self._cancel_flush(event.path)
        loop = asyncio.get_running_loop()
        token = next(self._tokens)
        flush = _SessionEvent("flush", event.path, event.relative_path, token=token)
        handle = loop.call_later(self.debounce_sec, self._queue.put_nowait, flush)
        self._timers[event.path] = (handle, token)

    def _cancel_flush(self, path: str) -> None:
        pending = self._timers.pop(path, None)
        if pending is not None:
            pending[0].cancel()

    def _fail(self, event: _SessionEvent) -> None:
        if event.kind == "root_lost":
            error: TreeSyncError = WatchRuntimeError.root_lost(self.root)
        else:
            error = WatchRuntimeError.watcher_failed(self.root, event.reason)
        logger.warning("watch_session_aborted", root=self.root, error=error.error_name)
        if self.handlers.on_error is not None:
            self._notify(self.handlers.on_error, error)
        self._auto_stop_task = asyncio.create_task(self.stop())

    def _notify(self, callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("watch_handler_failed", root=self.root)


class ChangeQueue:
    """Bounded queue of reconciled changes. Never blocks the producer."""

    def __init__(self, max_size: int = 10000) -> None:
        self._queue: asyncio.Queue[FileChange | None] = asyncio.Queue(maxsize=max_size)
        self._dropped = 0
        self._closed = False

    @property
    def dropped_count(self) -> int:
        """Number of changes dropped due to queue full."""
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, change: FileChange) -> bool:
        """Add a change. Returns False if the queue is full or closed."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(change)
            return True
        except asyncio.QueueFull:
            self._dropped += 1
            return False

    async def get(self) -> FileChange | None:
        """Next change, or None once the queue is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def empty(self) -> bool:
        return self._queue.empty()

    def close(self) -> None:
        """Wake the waiting consumer; subsequent puts are refused."""
        if self._closed:
            return
        self._closed = True
        # Sentinel for a consumer blocked in get(); drop a change if needed.
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self._dropped += 1

    async def __aiter__(self) -> AsyncIterator[FileChange]:
        while (change := await self.get()) is not None:
            yield change
