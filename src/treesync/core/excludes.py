"""Canonical exclusion tables.

Three tables, each with a different effect on a listing:

DEFAULT_PATTERNS: Never listed. Layer 1 of every ignore predicate.
    - VCS internals, dependency trees, build output, editor state,
      OS housekeeping files
    - Applied in every ignore mode, cannot be switched off

EXCLUDED_BY_DEFAULT_PATTERNS: Listed, but flagged ``excluded_by_default``.
    - Lock files, tool configs, logs, secrets
    - Rarely useful in a prompt; the caller deselects them initially

BINARY_EXTENSIONS: Listed as binary without reading content.

All patterns use gitignore syntax.
"""

from __future__ import annotations

import sys

# =============================================================================
# Layer 1: DEFAULT_PATTERNS - never listed
# =============================================================================

_VCS_PATTERNS: tuple[str, ...] = (
    ".git",
    ".svn",
    ".hg",
    ".bzr",
)

_DEPENDENCY_PATTERNS: tuple[str, ...] = (
    "node_modules",
    "bower_components",
    "vendor",
    ".pnpm-store",
    ".yarn",
    "__pycache__",
    ".venv",
    "venv",
    ".tox",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".gradle",
    ".dart_tool",
)

_BUILD_PATTERNS: tuple[str, ...] = (
    "dist",
    "build",
    "out",
    ".next",
    ".nuxt",
    "target",
    "bin",
    "obj",
    "Debug",
    "Release",
    "x64",
    "x86",
    ".output",
    "release-builds",
    "*.min.js",
    "*.min.css",
    "*.bundle.js",
    "*.compiled.*",
    "*.generated.*",
    "*.asar",
    ".cache",
    ".parcel-cache",
    ".webpack",
    ".turbo",
)

_EDITOR_PATTERNS: tuple[str, ...] = (
    ".idea",
    ".vscode",
    ".vs",
)

# OS housekeeping files and platform system directories
_OS_PATTERNS: tuple[str, ...] = (
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    ".Spotlight-V100",
    ".Trashes",
    ".fseventsd",
)

# Reserved device names cannot be opened as regular files on Windows
_WINDOWS_RESERVED_PATTERNS: tuple[str, ...] = (
    "CON",
    "PRN",
    "AUX",
    "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
)


def _platform_patterns() -> tuple[str, ...]:
    if sys.platform == "win32":
        return _WINDOWS_RESERVED_PATTERNS
    return ()


DEFAULT_PATTERNS: tuple[str, ...] = (
    *_VCS_PATTERNS,
    *_DEPENDENCY_PATTERNS,
    *_BUILD_PATTERNS,
    *_EDITOR_PATTERNS,
    *_OS_PATTERNS,
    *_platform_patterns(),
)

# =============================================================================
# EXCLUDED_BY_DEFAULT_PATTERNS - listed but deselected
# =============================================================================

EXCLUDED_BY_DEFAULT_PATTERNS: tuple[str, ...] = (
    # Node.js
    "package-lock.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "npm-debug.log*",
    "yarn-debug.log*",
    "yarn-error.log*",
    ".npmrc",
    ".yarnrc",
    ".nvmrc",
    # JavaScript/TypeScript
    ".eslintrc*",
    ".prettierrc*",
    "tsconfig*.json",
    "*.d.ts",
    "*.map",
    # Python
    "*.pyc",
    "*.pyo",
    "*.pyd",
    ".coverage",
    ".python-version",
    "*.egg-info/",
    "pip-log.txt",
    "pip-delete-this-directory.txt",
    # Go
    "go.sum",
    "go.mod",
    # JVM
    "*.class",
    "*.jar",
    # Ruby / PHP / Rust
    "Gemfile.lock",
    "composer.lock",
    "Cargo.lock",
    # .NET
    "*.suo",
    "*.user",
    # Archives
    "*.zip",
    "*.tar.gz",
    "*.tgz",
    "*.rar",
    # Editors
    "*.swp",
    "*.swo",
    # Logs
    "logs/",
    "*.log",
    # Databases
    "*.sqlite",
    "*.db",
    # Environment and secrets
    ".env*",
    ".aws/",
    "*.pem",
    "*.key",
    # Docker
    "docker-compose.override.yml",
)

# =============================================================================
# BINARY_EXTENSIONS - never read
# =============================================================================

BINARY_EXTENSIONS: frozenset[str] = frozenset(
    (
        # Images
        ".svg",
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".bmp",
        ".tiff",
        ".ico",
        ".icns",
        ".webp",
        ".psd",
        ".heic",
        ".heif",
        # Video
        ".mp4",
        ".avi",
        ".mov",
        ".mkv",
        # Audio
        ".mp3",
        ".wav",
        ".ogg",
        ".flac",
        # Documents
        ".pdf",
        ".doc",
        ".docx",
        ".xls",
        ".xlsx",
        ".ppt",
        ".pptx",
        # Archives and compiled artifacts
        ".zip",
        ".rar",
        ".tar",
        ".gz",
        ".7z",
        ".exe",
        ".dll",
        ".so",
        ".class",
        ".o",
        ".pyc",
        # Data
        ".db",
        ".sqlite",
        ".sqlite3",
        ".bin",
        ".dat",
        # Fonts
        ".ttf",
        ".otf",
        ".woff",
        ".woff2",
    )
)


def is_binary_extension(suffix: str) -> bool:
    """Check a file suffix (with leading dot) against BINARY_EXTENSIONS."""
    return suffix.lower() in BINARY_EXTENSIONS
