"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (TREESYNC__SECTION__KEY)
3. Explicit YAML file passed to load_config()
4. Global YAML (~/.config/treesync/config.yaml)
5. Built-in defaults (this file)

Examples:
    TREESYNC__LOGGING__LEVEL=DEBUG
    TREESYNC__SCAN__MAX_FILE_SIZE_BYTES=1048576
    TREESYNC__WATCH__DEBOUNCE_SEC=0.25
    TREESYNC__IGNORE__MODE=global
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _default_concurrency() -> int:
    return max(2, min(os.cpu_count() or 1, 8))


class LogOutputConfig(BaseModel):
    """Single logging output configuration."""

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        TREESYNC__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every skipped path.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class ScanConfig(BaseModel):
    """Directory scan and file classification.

    Env vars:
        TREESYNC__SCAN__MAX_FILE_SIZE_BYTES: Skip content of larger files
        TREESYNC__SCAN__CONCURRENCY: Worker threads per scan
        TREESYNC__SCAN__TIMEOUT_SEC: Wall-clock budget per scan
    """

    max_file_size_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Files above this size are listed as skipped; content is never read.",
    )
    concurrency: int = Field(
        default_factory=_default_concurrency,
        description="Worker threads for directory listing and classification.",
    )
    timeout_sec: float = Field(
        default=300.0,
        description="Scans running longer than this return a partial, timed-out listing.",
    )
    progress_interval_sec: float = Field(
        default=0.2,
        description="Minimum interval between progress callbacks.",
    )
    sample_bytes: int = Field(
        default=8000,
        description="Leading bytes inspected for binary detection.",
    )
    tokenizer: Literal["heuristic", "tiktoken"] = Field(
        default="heuristic",
        description="Token estimator. 'tiktoken' is exact but loads an encoding on first use.",
    )
    encoding_name: str = Field(
        default="o200k_base",
        description="tiktoken encoding used when tokenizer is 'tiktoken'.",
    )

    @field_validator("max_file_size_bytes", "concurrency", "sample_bytes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Must be positive, got {v}")
        return v

    @field_validator("timeout_sec", "progress_interval_sec")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Must not be negative, got {v}")
        return v


class WatchConfig(BaseModel):
    """Live filesystem watch.

    Env vars:
        TREESYNC__WATCH__DEBOUNCE_SEC: Quiet interval before a change is emitted
        TREESYNC__WATCH__FORCE_POLLING: Poll instead of native notifications
    """

    debounce_sec: float = Field(
        default=0.5,
        description="Per-path quiet window. Repeated writes inside it collapse into one update.",
    )
    step_ms: int = Field(
        default=50,
        description="How often the native watcher is checked for new notifications.",
    )
    force_polling: bool | None = Field(
        default=None,
        description="Force mtime polling (network drives, WSL /mnt/*). None lets watchfiles decide.",
    )

    @field_validator("debounce_sec")
    @classmethod
    def validate_debounce(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"Debounce must not be negative, got {v}")
        return v


class IgnoreConfig(BaseModel):
    """Ignore rules.

    Env vars:
        TREESYNC__IGNORE__MODE: automatic (read .gitignore files) or global
    """

    mode: Literal["automatic", "global"] = Field(
        default="automatic",
        description="automatic merges exclusion files found in the tree; "
        "global uses defaults plus custom patterns only.",
    )
    custom_patterns: list[str] = Field(
        default_factory=list,
        description="Extra gitignore-style patterns applied in both modes.",
    )
    exclusion_filenames: list[str] = Field(
        default_factory=lambda: [".gitignore"],
        description="Names of directory-local exclusion files read in automatic mode.",
    )


class TreeSyncConfig(BaseModel):
    """Root configuration model."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    ignore: IgnoreConfig = Field(default_factory=IgnoreConfig)
