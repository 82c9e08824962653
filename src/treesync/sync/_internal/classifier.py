"""Per-file classification: size ceiling, binary detection, token estimate.

``classify_uncached`` is a pure function of the file on disk and runs on
worker threads. ``classify`` adds memoization through the EngineCache and
must only be called from the event-loop thread.
"""

from __future__ import annotations

import functools
import math
import os
import posixpath
from typing import TYPE_CHECKING, Any, Literal

import structlog

from treesync.core.errors import describe_os_error
from treesync.core.excludes import is_binary_extension
from treesync.core.paths import ensure_absolute, safe_relative
from treesync.sync._internal.cache import EngineCache
from treesync.sync._internal.ignore import is_excluded_by_default
from treesync.sync.models import FileRecord

if TYPE_CHECKING:
    from treesync.config.models import ScanConfig

logger = structlog.get_logger()

Tokenizer = Literal["heuristic", "tiktoken"]

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024
DEFAULT_SAMPLE_BYTES = 8000
TOO_LARGE_ERROR = "File too large to process"

_END_OF_TEXT = "<|endoftext|>"
# Control bytes that plain text legitimately contains.
_TEXT_CONTROL_BYTES = frozenset(b"\t\n\r\f\b\x1b")
_CONTROL_RATIO_LIMIT = 0.3


@functools.cache
def _get_encoding(encoding_name: str) -> Any:
    import tiktoken

    return tiktoken.get_encoding(encoding_name)


def estimate_tokens(
    text: str,
    *,
    tokenizer: Tokenizer = "heuristic",
    encoding_name: str = "o200k_base",
) -> int:
    """Approximate token count. Same text always yields the same count.

    The tiktoken path falls back to the character heuristic if the encoder
    cannot be loaded or rejects the input.
    """
    if not text:
        return 0
    if tokenizer == "tiktoken":
        try:
            encoding = _get_encoding(encoding_name)
            return len(encoding.encode(text.replace(_END_OF_TEXT, ""), disallowed_special=()))
        except Exception as e:
            logger.warning("token_count_fallback", encoding=encoding_name, error=str(e))
    return math.ceil(len(text) / 4)


def looks_binary(sample: bytes) -> bool:
    """NUL byte, or too many non-text control bytes, in a leading sample."""
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    control = sum(1 for b in sample if (b < 0x20 and b not in _TEXT_CONTROL_BYTES) or b == 0x7F)
    return control / len(sample) > _CONTROL_RATIO_LIMIT


def _file_type(path: str) -> str:
    ext = posixpath.splitext(path)[1]
    return ext[1:].upper() if ext else "BINARY"


class FileClassifier:
    """Builds FileRecords for single files."""

    def __init__(
        self,
        cache: EngineCache,
        *,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        sample_bytes: int = DEFAULT_SAMPLE_BYTES,
        tokenizer: Tokenizer = "heuristic",
        encoding_name: str = "o200k_base",
    ) -> None:
        self._cache = cache
        self.max_file_size = max_file_size
        self.sample_bytes = sample_bytes
        self.tokenizer: Tokenizer = tokenizer
        self.encoding_name = encoding_name

    @classmethod
    def from_config(cls, cache: EngineCache, config: ScanConfig) -> FileClassifier:
        return cls(
            cache,
            max_file_size=config.max_file_size_bytes,
            sample_bytes=config.sample_bytes,
            tokenizer=config.tokenizer,
            encoding_name=config.encoding_name,
        )

    def classify(self, path: str, root: str) -> FileRecord:
        """Cached classification. Event-loop thread only."""
        abs_path = ensure_absolute(path)
        cached = self._cache.get_record(abs_path)
        if cached is not None:
            return cached
        record = self.classify_uncached(abs_path, root)
        self._cache.store_record(record)
        return record

    def classify_uncached(self, path: str, root: str) -> FileRecord:
        """Stat, size-check, sniff and read one file. Safe on any thread.

        Failures never raise: they become a skipped record with an error.
        """
        abs_path = ensure_absolute(path)
        rel_path = safe_relative(root, abs_path) or posixpath.basename(abs_path)
        flagged = is_excluded_by_default(rel_path)

        try:
            size = os.stat(abs_path).st_size
        except OSError as e:
            return self._failed(abs_path, rel_path, 0, e, flagged)

        if size > self.max_file_size:
            return FileRecord(
                path=abs_path,
                relative_path=rel_path,
                size=size,
                is_skipped=True,
                error=TOO_LARGE_ERROR,
                excluded_by_default=flagged,
            )

        if is_binary_extension(posixpath.splitext(abs_path)[1]):
            return FileRecord(
                path=abs_path,
                relative_path=rel_path,
                size=size,
                is_binary=True,
                file_type=_file_type(abs_path),
                excluded_by_default=flagged,
            )

        try:
            with open(abs_path, "rb") as f:
                data = f.read(self.max_file_size + 1)
        except OSError as e:
            return self._failed(abs_path, rel_path, size, e, flagged)

        # The file may have grown between stat and read.
        if len(data) > self.max_file_size:
            return FileRecord(
                path=abs_path,
                relative_path=rel_path,
                size=len(data),
                is_skipped=True,
                error=TOO_LARGE_ERROR,
                excluded_by_default=flagged,
            )

        if looks_binary(data[: self.sample_bytes]):
            return FileRecord(
                path=abs_path,
                relative_path=rel_path,
                size=len(data),
                is_binary=True,
                file_type=_file_type(abs_path),
                excluded_by_default=flagged,
            )

        content = data.decode("utf-8", errors="replace")
        return FileRecord(
            path=abs_path,
            relative_path=rel_path,
            size=len(data),
            excluded_by_default=flagged,
            content=content,
            token_count=estimate_tokens(
                content, tokenizer=self.tokenizer, encoding_name=self.encoding_name
            ),
        )

    def _failed(
        self, path: str, rel_path: str, size: int, error: OSError, flagged: bool
    ) -> FileRecord:
        message = describe_os_error(error)
        logger.debug("file_classification_failed", path=path, error=message, errno=error.errno)
        return FileRecord(
            path=path,
            relative_path=rel_path,
            size=size,
            is_skipped=True,
            error=message,
            excluded_by_default=flagged,
        )
