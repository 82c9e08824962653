"""Layered ignore predicate construction.

Single source of truth for path exclusion used by:
- DirectoryScanner (skip before any stat/read)
- WatchSession (drop notifications for excluded paths)
- SyncCoordinator (pattern audit for display)

Layered Architecture (a path is excluded if ANY layer excludes it):
- Layer 1 (DEFAULT_PATTERNS): always applied, not overridable
- Layer 2 (custom patterns): caller-supplied, applied in every mode
- Layer 3 (discovered): directory-local exclusion files found under the
  root, automatic mode only

Pattern syntax is gitignore (``pathspec`` gitwildmatch). Negation with
``!`` works inside a layer but cannot re-include a path another layer
excludes.
"""

from __future__ import annotations

import functools
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

import structlog
from pathspec import GitIgnoreSpec

from treesync.core.errors import ConfigError
from treesync.core.excludes import DEFAULT_PATTERNS, EXCLUDED_BY_DEFAULT_PATTERNS
from treesync.core.paths import ensure_absolute, normalize_path, safe_relative
from treesync.sync._internal.cache import EngineCache
from treesync.sync.models import IgnoreMode, IgnorePatterns, IgnoreSettings

__all__ = [
    "IgnorePredicate",
    "IgnoreResolver",
    "anchor_pattern",
    "is_excluded_by_default",
    "normalize_pattern",
    "parse_ignore_lines",
]

logger = structlog.get_logger()

DEFAULT_EXCLUSION_FILENAMES: tuple[str, ...] = (".gitignore",)


@functools.cache
def _default_spec() -> GitIgnoreSpec:
    return GitIgnoreSpec.from_lines(DEFAULT_PATTERNS)


@functools.cache
def _excluded_by_default_spec() -> GitIgnoreSpec:
    return GitIgnoreSpec.from_lines(EXCLUDED_BY_DEFAULT_PATTERNS)


def is_excluded_by_default(relative_path: str) -> bool:
    """True for files listed but deselected by default (lock files, logs, ...)."""
    return _excluded_by_default_spec().match_file(relative_path)


# Characters a gitignore backslash escapes rather than separates.
_ESCAPABLE = frozenset("#! *?[]\\")


def normalize_pattern(pattern: str) -> str:
    r"""Turn Windows separators into ``/`` while keeping gitignore escapes.

    ``docs\private`` becomes ``docs/private``; ``\#file``, ``\!name`` and
    ``\*`` are left alone.
    """
    out: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\":
            escaped = pattern[i + 1 : i + 2]
            if escaped and escaped in _ESCAPABLE:
                out.append(ch + escaped)
                i += 2
                continue
            ch = "/"
        out.append(ch)
        i += 1
    return "".join(out)


def parse_ignore_lines(content: str) -> list[str]:
    """Strip comments and blank lines; normalize separators to ``/``.

    Trailing whitespace is dropped unless escaped (``name\\ ``).
    """
    patterns: list[str] = []
    for raw in content.splitlines():
        line = raw.lstrip().rstrip("\r\n")
        stripped = line.rstrip()
        if stripped.endswith("\\") and len(stripped) < len(line):
            stripped += " "
        if not stripped or stripped.startswith("#"):
            continue
        patterns.append(normalize_pattern(stripped))
    return patterns


def anchor_pattern(pattern: str, rel_dir: str) -> str:
    """Re-root a pattern declared in ``rel_dir``'s exclusion file.

    Follows gitignore scoping:
    - ``/x`` and ``a/b`` are relative to the declaring directory
    - a bare name (``x``, ``*.log``) matches at any depth below it
    """
    if not rel_dir:
        return pattern

    negated = pattern.startswith("!")
    body = pattern[1:] if negated else pattern

    if body.startswith("/"):
        anchored = f"{rel_dir}/{body[1:]}"
    elif "/" in body.rstrip("/"):
        anchored = f"{rel_dir}/{body}"
    elif body.startswith("**"):
        anchored = f"{rel_dir}/{body}"
    else:
        anchored = f"{rel_dir}/**/{body}"

    return f"!{anchored}" if negated else anchored


def _dedupe(patterns: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(patterns))


def _compile(patterns: Sequence[str], *, source: str) -> tuple[tuple[str, ...], GitIgnoreSpec]:
    """Compile patterns, dropping (and logging) any the matcher rejects."""
    try:
        return tuple(patterns), GitIgnoreSpec.from_lines(patterns)
    except ValueError:
        pass

    valid: list[str] = []
    for pattern in patterns:
        try:
            GitIgnoreSpec.from_lines([pattern])
        except ValueError as e:
            logger.warning("ignore_pattern_invalid", pattern=pattern, source=source, error=str(e))
            continue
        valid.append(pattern)
    return tuple(valid), GitIgnoreSpec.from_lines(valid)


@dataclass(frozen=True)
class IgnorePredicate:
    """Immutable, composed exclusion decision for one root and settings."""

    root: str
    settings: IgnoreSettings
    custom_patterns: tuple[str, ...]
    discovered_patterns: tuple[str, ...]
    discovered_sources: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    _custom_spec: GitIgnoreSpec = field(
        default_factory=lambda: GitIgnoreSpec.from_lines([]), repr=False, compare=False
    )
    _discovered_spec: GitIgnoreSpec = field(
        default_factory=lambda: GitIgnoreSpec.from_lines([]), repr=False, compare=False
    )

    def is_excluded(self, relative_path: str, *, is_dir: bool = False) -> bool:
        """Decide whether a root-relative path is excluded.

        Empty, absolute and root-escaping paths are always excluded.
        """
        rel = normalize_path(relative_path)
        while rel.startswith("./"):
            rel = rel[2:]
        if not rel or rel == "." or rel.startswith("/") or ".." in rel.split("/"):
            return True

        candidate = rel if not is_dir or rel.endswith("/") else f"{rel}/"
        return (
            _default_spec().match_file(candidate)
            or self._custom_spec.match_file(candidate)
            or self._discovered_spec.match_file(candidate)
        )

    def patterns(self) -> IgnorePatterns:
        return IgnorePatterns(
            mode=self.settings.mode,
            default=DEFAULT_PATTERNS,
            custom=self.custom_patterns,
            discovered=dict(self.discovered_sources),
        )


class IgnoreResolver:
    """Builds and caches one IgnorePredicate per root.

    Discovery is synchronous: the predicate returned by ``resolve`` already
    contains every exclusion file under the root. Callers on an event loop
    run ``resolve`` in a worker thread.
    """

    def __init__(
        self,
        cache: EngineCache,
        *,
        exclusion_filenames: Sequence[str] = DEFAULT_EXCLUSION_FILENAMES,
    ) -> None:
        self._cache = cache
        self._exclusion_filenames = tuple(exclusion_filenames)

    def resolve(self, root: str, settings: IgnoreSettings) -> IgnorePredicate:
        """Return the cached predicate for *root*, building it on a miss.

        A cached predicate built for different settings is replaced.
        """
        root = _validate_root(root)
        cached = self.lookup(root, settings)
        if cached is not None:
            return cached
        return self.remember(self.build(root, settings))

    def lookup(self, root: str, settings: IgnoreSettings) -> IgnorePredicate | None:
        """Cached predicate for *root*, or None if missing or built for other settings."""
        cached = self._cache.get_predicate(ensure_absolute(root))
        if cached is not None and cached.settings == settings:
            return cached
        return None

    def remember(self, predicate: IgnorePredicate) -> IgnorePredicate:
        """Cache a predicate from ``build``, replacing any entry for its root."""
        self._cache.store_predicate(predicate)
        return predicate

    def invalidate(self, root: str | None = None) -> None:
        """Drop the cached predicate for *root*, or all of them."""
        self._cache.clear_predicates(root)

    def describe(self, root: str, settings: IgnoreSettings) -> IgnorePatterns:
        """Resolved pattern sets for display. Never writes to the cache."""
        root = _validate_root(root)
        cached = self.lookup(root, settings)
        if cached is not None:
            return cached.patterns()
        return self.build(root, settings).patterns()

    def build(self, root: str, settings: IgnoreSettings) -> IgnorePredicate:
        """Construct a predicate without consulting the cache."""
        root = _validate_root(root)
        custom, custom_spec = _compile(
            _dedupe(normalize_pattern(p.strip()) for p in settings.custom_patterns),
            source="custom",
        )

        sources: dict[str, tuple[str, ...]] = {}
        discovered: tuple[str, ...] = ()
        discovered_spec = GitIgnoreSpec.from_lines([])
        if settings.mode is IgnoreMode.AUTOMATIC:
            sources, discovered, discovered_spec = self._discover(root, custom_spec)

        logger.info(
            "ignore_predicate_built",
            root=root,
            mode=settings.mode.value,
            default_patterns=len(DEFAULT_PATTERNS),
            custom_patterns=len(custom),
            discovered_patterns=len(discovered),
            exclusion_files=len(sources),
        )
        return IgnorePredicate(
            root=root,
            settings=settings,
            custom_patterns=custom,
            discovered_patterns=discovered,
            discovered_sources=sources,
            _custom_spec=custom_spec,
            _discovered_spec=discovered_spec,
        )

    def _discover(
        self, root: str, custom_spec: GitIgnoreSpec
    ) -> tuple[dict[str, tuple[str, ...]], tuple[str, ...], GitIgnoreSpec]:
        """Walk the tree collecting exclusion files.

        Each directory's own exclusion file is merged before its children
        are considered, so a subtree excluded by rules found so far is never
        entered.
        """
        sources: dict[str, tuple[str, ...]] = {}
        merged: list[str] = []
        spec = GitIgnoreSpec.from_lines([])

        def _on_walk_error(error: OSError) -> None:
            logger.warning("ignore_discovery_unreadable_dir", path=error.filename, error=str(error))

        for dirpath, dirnames, _filenames in os.walk(root, onerror=_on_walk_error):
            rel_dir = safe_relative(root, dirpath) or ""

            found_here = False
            for filename in self._exclusion_filenames:
                patterns = self._read_exclusion_file(os.path.join(dirpath, filename))
                if not patterns:
                    continue
                source_key = f"{rel_dir}/{filename}" if rel_dir else filename
                sources[source_key] = tuple(patterns)
                merged.extend(anchor_pattern(p, rel_dir) for p in patterns)
                found_here = True

            if found_here:
                deduped, spec = _compile(_dedupe(merged), source=rel_dir or ".")
                merged = list(deduped)

            kept: list[str] = []
            for name in sorted(dirnames):
                child_rel = f"{rel_dir}/{name}/" if rel_dir else f"{name}/"
                if (
                    _default_spec().match_file(child_rel)
                    or custom_spec.match_file(child_rel)
                    or spec.match_file(child_rel)
                ):
                    continue
                kept.append(name)
            dirnames[:] = kept

        return sources, tuple(merged), spec

    def _read_exclusion_file(self, path: str) -> list[str]:
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                content = f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("ignore_file_unreadable", path=normalize_path(path), error=str(e))
            return []
        patterns = parse_ignore_lines(content)
        if patterns:
            logger.debug("ignore_file_loaded", path=normalize_path(path), patterns=len(patterns))
        return patterns


def _validate_root(root: str) -> str:
    normalized = ensure_absolute(root)
    if not os.path.exists(normalized):
        raise ConfigError.invalid_root(normalized, "path does not exist")
    if not os.path.isdir(normalized):
        raise ConfigError.invalid_root(normalized, "not a directory")
    return normalized
