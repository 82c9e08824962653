"""Path canonicalization shared by every engine component.

All paths handed across component boundaries use forward slashes. Relative
paths are POSIX-style and never start with ``./``. These helpers are pure
and hold no state; nothing in this module imports from the sync engine.
"""

from __future__ import annotations

import os
import sys

_WSL_PREFIXES = ("//wsl.localhost/", "//wsl$/")


def normalize_path(path: str | os.PathLike[str]) -> str:
    r"""Convert backslashes to forward slashes.

    UNC paths (``\\server\share``) keep their double leading slash.
    """
    text = os.fspath(path)
    if not text:
        return text
    return text.replace("\\", "/")


def is_wsl_path(path: str | os.PathLike[str]) -> bool:
    """True for Windows-side views of a WSL filesystem."""
    text = normalize_path(path)
    return bool(text) and text.lower().startswith(_WSL_PREFIXES)


def ensure_absolute(path: str | os.PathLike[str]) -> str:
    """Absolute, normalized form of *path* (symlinks are not resolved)."""
    text = os.fspath(path)
    if not os.path.isabs(text):
        text = os.path.abspath(text)
    normalized = normalize_path(os.path.normpath(text))
    if len(normalized) > 1 and normalized.endswith("/") and not normalized.endswith(":/"):
        normalized = normalized.rstrip("/")
    return normalized


def _fold_case(root: str, path: str) -> bool:
    return sys.platform == "win32" or is_wsl_path(root) or is_wsl_path(path)


def safe_relative(root: str | os.PathLike[str], path: str | os.PathLike[str]) -> str | None:
    """Relative POSIX path from *root* to *path*.

    Returns None when *path* is the root itself or lies outside it, so a
    caller can never mistake an unresolvable path for a real entry.
    Comparison is case-insensitive on Windows and for WSL paths.
    """
    root_text = ensure_absolute(root)
    path_text = ensure_absolute(path)
    if _fold_case(root_text, path_text):
        root_cmp, path_cmp = root_text.lower(), path_text.lower()
    else:
        root_cmp, path_cmp = root_text, path_text

    prefix = root_cmp if root_cmp.endswith("/") else root_cmp + "/"
    if not path_cmp.startswith(prefix):
        return None
    rel = path_text[len(prefix) :]
    if not rel or rel == ".":
        return None
    return rel
