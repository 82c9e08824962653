"""Tests for SyncCoordinator.

Covers the end-to-end flows: listing with ignore modes, live updates,
ignore-mode switches, the stop-before-start ordering of watch sessions,
cancellation and change reconciliation.
"""

from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import Callable
from pathlib import Path

import pytest
import structlog

from treesync.config.models import ScanConfig, TreeSyncConfig, WatchConfig
from treesync.core.errors import ConfigError, ErrorCode, TreeSyncError, WatchSetupError
from treesync.core.paths import normalize_path
from treesync.sync import SyncCoordinator, SyncListener
from treesync.sync._internal.watcher import WatchSession
from treesync.sync.models import (
    ChangeKind,
    FileRecord,
    IgnoreMode,
    IgnoreSettings,
    ScanStatus,
    SessionState,
)

SETTLE_SEC = 0.2


class RecordingListener(SyncListener):
    def __init__(self) -> None:
        self.added: list[FileRecord] = []
        self.updated: list[FileRecord] = []
        self.removed: list[str] = []
        self.errors: list[TreeSyncError] = []

    def file_added(self, record: FileRecord) -> None:
        self.added.append(record)

    def file_updated(self, record: FileRecord) -> None:
        self.updated.append(record)

    def file_removed(self, path: str, relative_path: str) -> None:
        self.removed.append(relative_path)

    def on_error(self, error: TreeSyncError) -> None:
        self.errors.append(error)


async def wait_until(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        await asyncio.sleep(0.05)
    return condition()


def make_config(*, debounce_sec: float = 0.2) -> TreeSyncConfig:
    return TreeSyncConfig(
        scan=ScanConfig(concurrency=2, progress_interval_sec=0.0),
        watch=WatchConfig(debounce_sec=debounce_sec),
    )


def slow_down(coordinator: SyncCoordinator, delay: float) -> None:
    classifier = coordinator._classifier
    original = classifier.classify_uncached

    def _sleepy(path: str, root: str) -> FileRecord:
        time.sleep(delay)
        return original(path, root)

    classifier.classify_uncached = _sleepy  # type: ignore[method-assign]


def make_tree(root: Path, dirs: int, files_per_dir: int) -> None:
    for d in range(dirs):
        directory = root / f"d{d:02d}"
        directory.mkdir()
        for f in range(files_per_dir):
            (directory / f"f{f:02d}.md").write_text("x")


class TestListing:
    """Initial listing through the coordinator."""

    @pytest.mark.asyncio
    async def test_global_mode_with_custom_pattern(self, tmp_path: Path) -> None:
        """Global mode with '*.txt' lists only b.md."""
        (tmp_path / "a.txt").write_text("a" * 50)
        (tmp_path / "b.md").write_text("b" * 100)

        async with SyncCoordinator(make_config()) as sync:
            result = await sync.open_root(
                tmp_path, IgnoreSettings.create("global", ["*.txt"]), watch=False
            )

            assert result.status is ScanStatus.COMPLETE
            assert [r.relative_path for r in result.records] == ["b.md"]
            assert result.records[0].size == 100
            assert [r.relative_path for r in sync.records] == ["b.md"]
            assert sync.session_state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_invalid_root(self, tmp_path: Path) -> None:
        async with SyncCoordinator(make_config()) as sync:
            with pytest.raises(ConfigError) as exc_info:
                await sync.open_root(tmp_path / "missing")

        assert exc_info.value.code is ErrorCode.CONFIG_INVALID_ROOT

    @pytest.mark.asyncio
    async def test_progress_reported(self, tmp_path: Path) -> None:
        make_tree(tmp_path, dirs=3, files_per_dir=4)
        progress = []

        async with SyncCoordinator(make_config()) as sync:
            result = await sync.open_root(tmp_path, on_progress=progress.append, watch=False)

        assert progress
        assert progress[-1] == result.progress
        assert result.progress.files_processed == 12

    @pytest.mark.asyncio
    async def test_request_listing_alias(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_text("x")
        async with SyncCoordinator(make_config()) as sync:
            result = await sync.request_listing(tmp_path, watch=False)
        assert [r.relative_path for r in result.records] == ["a.md"]

    @pytest.mark.asyncio
    async def test_open_other_root_forgets_previous(self, tmp_path: Path) -> None:
        first = tmp_path / "one"
        second = tmp_path / "two"
        first.mkdir()
        second.mkdir()
        (first / "a.md").write_text("x")
        (second / "b.md").write_text("x")

        async with SyncCoordinator(make_config()) as sync:
            await sync.open_root(first, watch=False)
            await sync.open_root(second, watch=False)

            assert [r.relative_path for r in sync.records] == ["b.md"]
            assert sync.cache.get_record(normalize_path(first / "a.md")) is None
            assert sync.root == normalize_path(second)


class TestIgnoreModes:
    """Switching between automatic and global mode."""

    @pytest.mark.asyncio
    async def test_global_mode_reveals_gitignored_files(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("secret.env\nartifacts/\n")
        (tmp_path / "secret.env").write_text("TOKEN=1")
        (tmp_path / "artifacts").mkdir()
        (tmp_path / "artifacts" / "out.js").write_text("x")
        (tmp_path / "main.py").write_text("x")

        async with SyncCoordinator(make_config()) as sync:
            automatic = await sync.open_root(tmp_path, watch=False)
            assert {r.relative_path for r in automatic.records} == {".gitignore", "main.py"}

            switched = await sync.set_ignore_config("global")

            assert switched is not None
            assert {r.relative_path for r in switched.records} == {
                ".gitignore",
                "secret.env",
                "artifacts/out.js",
                "main.py",
            }
            assert sync.settings.mode is IgnoreMode.GLOBAL

    @pytest.mark.asyncio
    async def test_ignore_change_without_root(self) -> None:
        async with SyncCoordinator(make_config()) as sync:
            assert await sync.set_ignore_config("global", ["*.log"]) is None
            assert sync.settings == IgnoreSettings.create("global", ["*.log"])

    @pytest.mark.asyncio
    async def test_ignore_change_clears_caches(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_text("x")
        async with SyncCoordinator(make_config()) as sync:
            await sync.open_root(tmp_path, watch=False)
            stale = sync.cache.get_record(normalize_path(tmp_path / "a.md"))

            await sync.set_ignore_config("global")

            fresh = sync.cache.get_record(normalize_path(tmp_path / "a.md"))
            assert fresh is not None
            assert fresh is not stale
            assert sync.predicate is not None
            assert sync.predicate.settings.mode is IgnoreMode.GLOBAL

    @pytest.mark.asyncio
    async def test_get_ignore_patterns_leaves_cache_alone(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("*.tmp\n")
        async with SyncCoordinator(make_config()) as sync:
            before = sync.cache.predicate_count

            patterns = await sync.get_ignore_patterns(tmp_path, "automatic", ["*.bak"])

            assert sync.cache.predicate_count == before
            assert patterns.mode is IgnoreMode.AUTOMATIC
            assert patterns.custom == ("*.bak",)
            assert "node_modules" in patterns.default
            assert any("*.tmp" in p for p in patterns.discovered.get(".gitignore", ()))


class TestWatching:
    """Live updates after a complete scan."""

    @pytest.mark.asyncio
    async def test_rapid_rewrites_emit_one_update(self, tmp_path: Path) -> None:
        """Five rewrites inside 200ms produce one update with the final content."""
        target = tmp_path / "x.txt"
        target.write_text("v0")
        listener = RecordingListener()

        async with SyncCoordinator(make_config(debounce_sec=0.5), listener=listener) as sync:
            await sync.open_root(tmp_path)
            assert sync.session_state is SessionState.ACTIVE
            await asyncio.sleep(SETTLE_SEC)

            for i in range(1, 6):
                target.write_text(f"v{i}")
                await asyncio.sleep(0.04)

            assert await wait_until(lambda: bool(listener.updated))
            await asyncio.sleep(1.0)

            assert len(listener.updated) == 1
            assert listener.updated[0].content == "v5"
            assert listener.added == []
            assert sync.records[0].content == "v5"

    @pytest.mark.asyncio
    async def test_changes_stream(self, tmp_path: Path) -> None:
        async with SyncCoordinator(make_config()) as sync:
            await sync.open_root(tmp_path)
            await asyncio.sleep(SETTLE_SEC)
            stream = sync.changes()

            (tmp_path / "new.md").write_text("hi")
            change = await asyncio.wait_for(anext(stream), timeout=5.0)

            assert change.kind is ChangeKind.ADDED
            assert change.relative_path == "new.md"
            assert change.record is not None
            assert change.record.content == "hi"

            (tmp_path / "new.md").unlink()
            change = await asyncio.wait_for(anext(stream), timeout=5.0)
            assert change.kind is ChangeKind.REMOVED
            assert change.record is None

    @pytest.mark.asyncio
    async def test_changes_stream_ends_on_close(self) -> None:
        sync = SyncCoordinator(make_config())
        consumer = asyncio.create_task(_drain(sync))
        await asyncio.sleep(0)

        await sync.aclose()

        assert await asyncio.wait_for(consumer, timeout=1.0) == []

    @pytest.mark.asyncio
    async def test_previous_session_stopped_before_next_starts(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_text("x")
        with structlog.testing.capture_logs() as logs:
            async with SyncCoordinator(make_config()) as sync:
                await sync.open_root(tmp_path)
                await sync.open_root(tmp_path)
                await sync.set_ignore_config("global")

        events = [e["event"] for e in logs if e["event"].startswith("watch_session_")]
        assert events == [
            "watch_session_started",
            "watch_session_stopped",
            "watch_session_started",
            "watch_session_stopped",
            "watch_session_started",
            "watch_session_stopped",
        ]

    @pytest.mark.asyncio
    async def test_watch_setup_failure_keeps_listing(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (tmp_path / "a.md").write_text("x")
        listener = RecordingListener()

        async def _refuse(self: WatchSession) -> None:
            raise WatchSetupError.cannot_watch(self.root, "too many watches")

        monkeypatch.setattr(WatchSession, "start", _refuse)

        async with SyncCoordinator(make_config(), listener=listener) as sync:
            result = await sync.open_root(tmp_path)

            assert result.status is ScanStatus.COMPLETE
            assert [r.relative_path for r in sync.records] == ["a.md"]
            assert sync.session_state is SessionState.IDLE
        assert [e.code for e in listener.errors] == [ErrorCode.WATCH_SETUP_FAILED]

    @pytest.mark.asyncio
    async def test_root_removed_reports_error(self, tmp_path: Path) -> None:
        root = tmp_path / "project"
        root.mkdir()
        (root / "a.md").write_text("x")
        listener = RecordingListener()

        async with SyncCoordinator(make_config(), listener=listener) as sync:
            await sync.open_root(root)
            await asyncio.sleep(SETTLE_SEC)

            shutil.rmtree(root)

            assert await wait_until(lambda: bool(listener.errors), timeout=8.0)
            assert listener.errors[-1].code is ErrorCode.WATCH_RUNTIME_FAILED
            assert await wait_until(lambda: sync.session_state is SessionState.IDLE)
            assert sync.cache.get_record(normalize_path(root / "a.md")) is None

    @pytest.mark.asyncio
    async def test_reopen_with_change_in_flight_rereads(self, tmp_path: Path) -> None:
        target = tmp_path / "x.txt"
        target.write_text("old")

        async with SyncCoordinator(make_config(debounce_sec=0.5)) as sync:
            await sync.open_root(tmp_path)
            await asyncio.sleep(SETTLE_SEC)

            # Rewritten but still inside the debounce window when re-opened.
            target.write_text("new")
            await asyncio.sleep(0.25)
            await sync.open_root(tmp_path)

            assert [r.content for r in sync.records] == ["new"]
            cached = sync.cache.get_record(normalize_path(target))
            assert cached is not None
            assert cached.content == "new"

    @pytest.mark.asyncio
    async def test_renamed_directory_moves_its_files(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.py").write_text("a = 1\n")
        listener = RecordingListener()

        async with SyncCoordinator(make_config(), listener=listener) as sync:
            await sync.open_root(tmp_path)
            await asyncio.sleep(SETTLE_SEC)

            (tmp_path / "src").rename(tmp_path / "lib")

            assert await wait_until(
                lambda: [r.relative_path for r in sync.records] == ["lib/a.py"]
            )
            assert listener.removed == ["src/a.py"]
            assert [r.relative_path for r in listener.added] == ["lib/a.py"]
            assert sync.records[0].content == "a = 1\n"

    @pytest.mark.asyncio
    async def test_directory_deleted_on_disk(self, tmp_path: Path) -> None:
        (tmp_path / "keep.md").write_text("x")
        (tmp_path / "pkg" / "sub").mkdir(parents=True)
        (tmp_path / "pkg" / "b.md").write_text("x")
        (tmp_path / "pkg" / "sub" / "c.md").write_text("x")
        listener = RecordingListener()

        async with SyncCoordinator(make_config(), listener=listener) as sync:
            await sync.open_root(tmp_path)
            await asyncio.sleep(SETTLE_SEC)

            shutil.rmtree(tmp_path / "pkg")

            assert await wait_until(
                lambda: [r.relative_path for r in sync.records] == ["keep.md"]
            )
            assert sorted(listener.removed) == ["pkg/b.md", "pkg/sub/c.md"]
            assert sync.cache.get_record(normalize_path(tmp_path / "pkg" / "b.md")) is None
            assert sync.session_state is SessionState.ACTIVE


async def _drain(sync: SyncCoordinator) -> list[object]:
    return [change async for change in sync.changes()]


class TestCancellation:
    """Cancelling a running listing."""

    @pytest.mark.asyncio
    async def test_cancel_without_scan(self) -> None:
        async with SyncCoordinator(make_config()) as sync:
            assert sync.cancel_listing() is False

    @pytest.mark.asyncio
    async def test_cancel_listing(self, tmp_path: Path) -> None:
        make_tree(tmp_path, dirs=20, files_per_dir=20)
        async with SyncCoordinator(make_config()) as sync:
            slow_down(sync, 0.002)
            task = asyncio.create_task(sync.open_root(tmp_path))
            await asyncio.sleep(0.05)

            assert sync.cancel_listing() is True
            result = await task

            assert result.status is ScanStatus.CANCELLED
            assert sync.session_state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_new_open_cancels_running_scan(self, tmp_path: Path) -> None:
        make_tree(tmp_path, dirs=20, files_per_dir=20)
        other = tmp_path / "d00"
        async with SyncCoordinator(make_config()) as sync:
            slow_down(sync, 0.002)
            first = asyncio.create_task(sync.open_root(tmp_path, watch=False))
            await asyncio.sleep(0.05)

            second = await sync.open_root(other, watch=False)
            first_result = await first

            assert first_result.status is ScanStatus.CANCELLED
            assert second.status is ScanStatus.COMPLETE
            assert sync.root == normalize_path(other)

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path: Path) -> None:
        make_tree(tmp_path, dirs=10, files_per_dir=20)
        async with SyncCoordinator(make_config()) as sync:
            slow_down(sync, 0.002)
            result = await sync.open_root(tmp_path, timeout=0.05)

            assert result.status is ScanStatus.TIMED_OUT
            assert sync.session_state is SessionState.IDLE


class TestReconciliation:
    """How watch callbacks map onto the listing."""

    async def _opened(self, sync: SyncCoordinator, root: Path) -> None:
        (root / "a.md").write_text("x")
        (root / "pkg").mkdir()
        (root / "pkg" / "b.md").write_text("x")
        (root / "pkg" / "c.md").write_text("x")
        await sync.open_root(root, watch=False)

    def _record(self, root: Path, rel: str, content: str = "y") -> FileRecord:
        return FileRecord(path=normalize_path(root / rel), relative_path=rel, content=content)

    @pytest.mark.asyncio
    async def test_add_for_known_path_is_update(self, tmp_path: Path) -> None:
        listener = RecordingListener()
        async with SyncCoordinator(make_config(), listener=listener) as sync:
            await self._opened(sync, tmp_path)

            sync._on_added(self._record(tmp_path, "a.md"))

            assert [r.relative_path for r in listener.updated] == ["a.md"]
            assert listener.added == []

    @pytest.mark.asyncio
    async def test_update_for_unknown_path_is_add(self, tmp_path: Path) -> None:
        listener = RecordingListener()
        async with SyncCoordinator(make_config(), listener=listener) as sync:
            await self._opened(sync, tmp_path)

            sync._on_updated(self._record(tmp_path, "new.md"))

            assert [r.relative_path for r in listener.added] == ["new.md"]
            assert sync.cache.get_record(normalize_path(tmp_path / "new.md")) is not None

    @pytest.mark.asyncio
    async def test_directory_removal_removes_children(self, tmp_path: Path) -> None:
        listener = RecordingListener()
        async with SyncCoordinator(make_config(), listener=listener) as sync:
            await self._opened(sync, tmp_path)

            sync._on_removed(normalize_path(tmp_path / "pkg"), "pkg")

            assert listener.removed == ["pkg/b.md", "pkg/c.md"]
            assert [r.relative_path for r in sync.records] == ["a.md"]
            assert sync.cache.get_record(normalize_path(tmp_path / "pkg" / "b.md")) is None

    @pytest.mark.asyncio
    async def test_unknown_removal_ignored(self, tmp_path: Path) -> None:
        listener = RecordingListener()
        async with SyncCoordinator(make_config(), listener=listener) as sync:
            await self._opened(sync, tmp_path)

            sync._on_removed(normalize_path(tmp_path / "ghost.md"), "ghost.md")

            assert listener.removed == []
            assert len(sync.records) == 3

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, tmp_path: Path) -> None:
        class Broken(SyncListener):
            def file_added(self, record: FileRecord) -> None:
                raise RuntimeError("listener bug")

        healthy = RecordingListener()
        async with SyncCoordinator(make_config(), listener=Broken()) as sync:
            sync.add_listener(healthy)
            await self._opened(sync, tmp_path)

            sync._on_added(self._record(tmp_path, "new.md"))

            assert [r.relative_path for r in healthy.added] == ["new.md"]

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self, tmp_path: Path) -> None:
        listener = RecordingListener()
        async with SyncCoordinator(make_config(), listener=listener) as sync:
            sync.remove_listener(listener)
            await self._opened(sync, tmp_path)

            sync._on_added(self._record(tmp_path, "new.md"))

        assert listener.added == []


class TestClose:
    """close_root and the context manager."""

    @pytest.mark.asyncio
    async def test_close_root(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_text("x")
        sync = SyncCoordinator(make_config())
        await sync.open_root(tmp_path)
        assert sync.session_state is SessionState.ACTIVE

        await sync.close_root()

        assert sync.root is None
        assert sync.records == []
        assert sync.predicate is None
        assert sync.session_state is SessionState.IDLE
        assert sync.cache.record_count == 0
        await sync.aclose()

    @pytest.mark.asyncio
    async def test_close_without_root(self) -> None:
        sync = SyncCoordinator(make_config())
        await sync.close_root()
        await sync.aclose()
        assert sync.root is None
