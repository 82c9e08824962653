"""Tests for the concurrent directory scanner.

Covers:
- Listing, exclusion and classification of a tree
- Ignore-before-I/O: excluded paths are never listed, stat'ed or read
- Progress throttling and monotonic counters
- Cancellation and timeout outcomes
- Cached record reuse, unreadable directories, symlinks
- Walking a directory added under a watched root
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from unittest.mock import patch

import pytest
import structlog

from treesync.core.errors import ConfigError
from treesync.core.paths import normalize_path
from treesync.sync._internal import scanner as scanner_module
from treesync.sync._internal.cache import EngineCache
from treesync.sync._internal.classifier import FileClassifier
from treesync.sync._internal.ignore import IgnorePredicate, IgnoreResolver
from treesync.sync._internal.scanner import DirectoryScanner
from treesync.sync.models import FileRecord, IgnoreSettings, ScanProgress, ScanStatus


class _Engine:
    """Cache, resolver, classifier and scanner wired together."""

    def __init__(self, *, max_file_size: int = 1024 * 1024, concurrency: int = 4) -> None:
        self.cache = EngineCache()
        self.resolver = IgnoreResolver(self.cache)
        self.classifier = FileClassifier(self.cache, max_file_size=max_file_size)
        self.scanner = DirectoryScanner(
            self.classifier, self.cache, concurrency=concurrency, progress_interval=0.0
        )
        self.classified: list[str] = []
        original = self.classifier.classify_uncached

        def _counting(path: str, root: str) -> FileRecord:
            self.classified.append(path)
            return original(path, root)

        self.classifier.classify_uncached = _counting  # type: ignore[method-assign]

    def predicate(self, root: Path, mode: str = "global", *patterns: str) -> IgnorePredicate:
        return self.resolver.resolve(str(root), IgnoreSettings.create(mode, patterns))


def _make_tree(root: Path, dirs: int, files_per_dir: int) -> int:
    for d in range(dirs):
        directory = root / f"dir{d:03d}"
        directory.mkdir()
        for f in range(files_per_dir):
            (directory / f"file{f:03d}.txt").write_text(f"{d}-{f}\n")
    return dirs * files_per_dir


def _slow(engine: _Engine, delay: float) -> None:
    counting = engine.classifier.classify_uncached

    def _sleepy(path: str, root: str) -> FileRecord:
        time.sleep(delay)
        return counting(path, root)

    engine.classifier.classify_uncached = _sleepy  # type: ignore[method-assign]


class TestScan:
    """Basic listing behavior."""

    @pytest.mark.asyncio
    async def test_lists_files_recursively(self, tmp_path: Path) -> None:
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("print('hi')\n")
        (tmp_path / "README.md").write_text("# readme\n")
        engine = _Engine()

        result = await engine.scanner.scan(str(tmp_path), engine.predicate(tmp_path))

        assert result.status is ScanStatus.COMPLETE
        assert {r.relative_path for r in result.records} == {"src/main.py", "README.md"}
        assert result.progress == ScanProgress(directories_visited=2, files_processed=2)
        assert result.error_count == 0
        assert result.root == normalize_path(tmp_path)

    @pytest.mark.asyncio
    async def test_custom_pattern_excludes_file(self, tmp_path: Path) -> None:
        """Global mode with '*.txt': only b.md is listed."""
        (tmp_path / "a.txt").write_text("a" * 50)
        (tmp_path / "b.md").write_text("b" * 100)
        engine = _Engine()

        result = await engine.scanner.scan(
            str(tmp_path), engine.predicate(tmp_path, "global", "*.txt")
        )

        assert [r.relative_path for r in result.records] == ["b.md"]
        assert result.records[0].size == 100

    @pytest.mark.asyncio
    async def test_oversized_file_listed_as_skipped(self, tmp_path: Path) -> None:
        big = tmp_path / "huge.log.txt"
        with big.open("wb") as f:
            f.truncate(20 * 1024 * 1024)
        engine = _Engine(max_file_size=1024 * 1024)

        result = await engine.scanner.scan(str(tmp_path), engine.predicate(tmp_path))

        (record,) = result.records
        assert record.is_skipped
        assert record.error
        assert record.content is None
        assert record.token_count is None
        assert result.error_count == 1

    @pytest.mark.asyncio
    async def test_records_stored_in_cache(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_text("a")
        engine = _Engine()

        await engine.scanner.scan(str(tmp_path), engine.predicate(tmp_path))

        assert engine.cache.get_record(str(tmp_path / "a.md")) is not None

    @pytest.mark.asyncio
    async def test_cached_record_reused_without_io(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_text("fresh")
        engine = _Engine()
        cached = FileRecord(
            path=normalize_path(tmp_path / "a.md"), relative_path="a.md", content="cached"
        )
        engine.cache.store_record(cached)

        result = await engine.scanner.scan(str(tmp_path), engine.predicate(tmp_path))

        assert result.records == [cached]
        assert engine.classified == []

    @pytest.mark.asyncio
    async def test_invalid_root(self, tmp_path: Path) -> None:
        engine = _Engine()
        predicate = engine.predicate(tmp_path)
        with pytest.raises(ConfigError):
            await engine.scanner.scan(str(tmp_path / "missing"), predicate)


class TestIgnoreBeforeIo:
    """Excluded paths never reach stat, read or directory listing."""

    @pytest.mark.asyncio
    async def test_excluded_paths_never_touched(self, tmp_path: Path) -> None:
        (tmp_path / "node_modules" / "pkg").mkdir(parents=True)
        (tmp_path / "node_modules" / "pkg" / "index.js").write_text("x")
        (tmp_path / "generated").mkdir()
        (tmp_path / "generated" / "out.py").write_text("x")
        (tmp_path / "notes.txt").write_text("x")
        (tmp_path / "keep.md").write_text("x")
        (tmp_path / ".gitignore").write_text("generated/\n")
        engine = _Engine()
        predicate = engine.predicate(tmp_path, "automatic", "*.txt")

        listed: list[str] = []
        original = scanner_module._list_directory

        def _recording(directory: str) -> object:
            listed.append(normalize_path(directory))
            return original(directory)

        with patch.object(scanner_module, "_list_directory", _recording):
            result = await engine.scanner.scan(str(tmp_path), predicate)

        assert {r.relative_path for r in result.records} == {"keep.md", ".gitignore"}
        assert listed == [normalize_path(tmp_path)]
        classified = {Path(p).name for p in engine.classified}
        assert classified == {"keep.md", ".gitignore"}


class TestProgress:
    """Progress delivery."""

    @pytest.mark.asyncio
    async def test_counters_monotonic_and_final_snapshot(self, tmp_path: Path) -> None:
        total = _make_tree(tmp_path, dirs=5, files_per_dir=7)
        engine = _Engine(concurrency=2)
        events: list[ScanProgress] = []

        result = await engine.scanner.scan(
            str(tmp_path), engine.predicate(tmp_path), on_progress=events.append
        )

        assert len(events) >= 2
        for before, after in zip(events, events[1:], strict=False):
            assert after.directories_visited >= before.directories_visited
            assert after.files_processed >= before.files_processed
        assert events[-1] == result.progress
        assert result.progress.files_processed == total
        assert result.progress.directories_visited == 6

    @pytest.mark.asyncio
    async def test_throttled(self, tmp_path: Path) -> None:
        _make_tree(tmp_path, dirs=3, files_per_dir=10)
        engine = _Engine(concurrency=1)
        engine.scanner.progress_interval = 60.0
        events: list[ScanProgress] = []

        await engine.scanner.scan(
            str(tmp_path), engine.predicate(tmp_path), on_progress=events.append
        )

        # Only the final snapshot fits in a 60s throttle window.
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_counters_are_per_scan(self, tmp_path: Path) -> None:
        _make_tree(tmp_path, dirs=2, files_per_dir=3)
        engine = _Engine()
        predicate = engine.predicate(tmp_path)

        first = await engine.scanner.scan(str(tmp_path), predicate)
        second = await engine.scanner.scan(str(tmp_path), predicate)

        assert first.progress == second.progress


class TestCancellation:
    """Cooperative cancellation and timeout."""

    @pytest.mark.asyncio
    async def test_cancel_shortly_after_start(self, tmp_path: Path) -> None:
        total = _make_tree(tmp_path, dirs=40, files_per_dir=25)
        engine = _Engine(concurrency=2)
        _slow(engine, 0.002)
        cancel_event = asyncio.Event()
        seen_after_cancel: list[bool] = []
        events: list[ScanProgress] = []

        def _on_progress(progress: ScanProgress) -> None:
            seen_after_cancel.append(cancel_event.is_set())
            events.append(progress)

        task = asyncio.create_task(
            engine.scanner.scan(
                str(tmp_path),
                engine.predicate(tmp_path),
                on_progress=_on_progress,
                cancel_event=cancel_event,
            )
        )
        await asyncio.sleep(0.01)
        cancel_event.set()
        result = await task
        emitted = len(events)
        await asyncio.sleep(0.05)

        assert result.status is ScanStatus.CANCELLED
        assert len(result.records) < total
        assert not any(seen_after_cancel)
        assert len(events) == emitted
        for before, after in zip(events, events[1:], strict=False):
            assert after.files_processed >= before.files_processed

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, tmp_path: Path) -> None:
        _make_tree(tmp_path, dirs=2, files_per_dir=2)
        engine = _Engine()
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await engine.scanner.scan(
            str(tmp_path), engine.predicate(tmp_path), cancel_event=cancel_event
        )

        assert result.status is ScanStatus.CANCELLED
        assert result.records == []

    @pytest.mark.asyncio
    async def test_timeout_returns_partial(self, tmp_path: Path) -> None:
        total = _make_tree(tmp_path, dirs=20, files_per_dir=20)
        engine = _Engine(concurrency=2)
        _slow(engine, 0.002)
        events: list[ScanProgress] = []

        result = await engine.scanner.scan(
            str(tmp_path), engine.predicate(tmp_path), on_progress=events.append, timeout=0.05
        )

        assert result.status is ScanStatus.TIMED_OUT
        assert len(result.records) < total
        assert events[-1] == result.progress


class TestUnusualEntries:
    """Unreadable and symlinked directories."""

    @pytest.mark.skipif(
        os.name == "nt" or (hasattr(os, "geteuid") and os.geteuid() == 0),
        reason="permission bits are not enforced",
    )
    @pytest.mark.asyncio
    async def test_unreadable_directory_skipped(self, tmp_path: Path) -> None:
        (tmp_path / "ok.md").write_text("x")
        locked = tmp_path / "locked"
        locked.mkdir()
        (locked / "hidden.md").write_text("x")
        locked.chmod(0)
        engine = _Engine()
        try:
            with structlog.testing.capture_logs() as logs:
                result = await engine.scanner.scan(str(tmp_path), engine.predicate(tmp_path))
        finally:
            locked.chmod(0o755)

        assert result.status is ScanStatus.COMPLETE
        assert [r.relative_path for r in result.records] == ["ok.md"]
        assert any(entry["event"] == "scan_directory_unreadable" for entry in logs)

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    @pytest.mark.asyncio
    async def test_symlinked_directory_not_followed(self, tmp_path: Path) -> None:
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "far.md").write_text("x")
        root = tmp_path / "root"
        root.mkdir()
        (root / "near.md").write_text("x")
        (root / "link").symlink_to(outside, target_is_directory=True)
        engine = _Engine()

        result = await engine.scanner.scan(str(root), engine.predicate(root))

        assert [r.relative_path for r in result.records] == ["near.md"]

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    @pytest.mark.asyncio
    async def test_symlinked_file_listed(self, tmp_path: Path) -> None:
        (tmp_path / "real.md").write_text("shared")
        (tmp_path / "alias.md").symlink_to(tmp_path / "real.md")
        engine = _Engine()

        result = await engine.scanner.scan(str(tmp_path), engine.predicate(tmp_path))

        records = {r.relative_path: r for r in result.records}
        assert set(records) == {"alias.md", "real.md"}
        assert records["alias.md"].content == "shared"

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    @pytest.mark.asyncio
    async def test_excluded_symlink_never_stated(self, tmp_path: Path) -> None:
        outside = tmp_path / "outside"
        outside.mkdir()
        root = tmp_path / "root"
        root.mkdir()
        (root / "keep.md").write_text("x")
        (root / "build.log").symlink_to(outside, target_is_directory=True)
        engine = _Engine()
        predicate = engine.predicate(root, "global", "*.log")

        checked: list[str] = []
        original = os.path.isdir

        def _recording(path: str) -> bool:
            checked.append(normalize_path(path))
            return original(path)

        with patch.object(scanner_module.os.path, "isdir", _recording):
            result = await engine.scanner.scan(str(root), predicate)

        assert [r.relative_path for r in result.records] == ["keep.md"]
        assert not any(path.endswith("/build.log") for path in checked)


class TestCollectFiles:
    """Walking a directory that appears while a root is watched."""

    def test_applies_scan_rules(self, tmp_path: Path) -> None:
        added = tmp_path / "lib"
        (added / "deep").mkdir(parents=True)
        (added / "node_modules").mkdir()
        (added / "node_modules" / "dep.js").write_text("x")
        (added / "a.py").write_text("x")
        (added / "trace.log").write_text("x")
        (added / "deep" / "b.py").write_text("x")
        engine = _Engine()
        predicate = engine.predicate(tmp_path, "global", "*.log")

        files = scanner_module.collect_files(
            normalize_path(added), normalize_path(tmp_path), predicate
        )

        assert sorted(Path(p).relative_to(tmp_path).as_posix() for p in files) == [
            "lib/a.py",
            "lib/deep/b.py",
        ]

    def test_unreadable_start_returns_nothing(self, tmp_path: Path) -> None:
        engine = _Engine()
        predicate = engine.predicate(tmp_path)

        with structlog.testing.capture_logs() as logs:
            files = scanner_module.collect_files(
                normalize_path(tmp_path / "gone"), normalize_path(tmp_path), predicate
            )

        assert files == []
        assert any(entry["event"] == "scan_directory_unreadable" for entry in logs)
