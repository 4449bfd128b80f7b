"""
Core Host - Path Utilities

Pure path helpers: absolute normalization, posix conversion, relative path
computation and root containment checks. No filesystem access.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Union

PathLike = Union[str, Path]


def to_posix(value: PathLike) -> str:
    """Convert a path to forward-slash form."""
    return str(value).replace("\\", "/")


def normalize_absolute_path(value: PathLike) -> str:
    """Return a normalized absolute path (symlinks are not resolved)."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(value))))


def relative_to_root(root: PathLike, target: PathLike) -> str:
    """Posix relative path from ``root`` to ``target`` ("" when equal)."""
    rel = os.path.relpath(normalize_absolute_path(target), normalize_absolute_path(root))
    if rel == ".":
        return ""
    return to_posix(rel)


def ensure_within_root(root: PathLike, target: PathLike) -> bool:
    """True when ``target`` is ``root`` itself or lies underneath it."""
    root_abs = normalize_absolute_path(root)
    target_abs = normalize_absolute_path(target)
    try:
        common = os.path.commonpath([root_abs, target_abs])
    except ValueError:
        # Different drives on Windows
        return False
    return common == root_abs


def join_root(root: PathLike, relative: str) -> str:
    """Join a posix relative path under ``root`` and normalize the result.

    The result is not clamped to ``root``; callers classify it afterwards,
    so a traversal out of the root simply lands outside every zone.
    """
    parts = [part for part in to_posix(relative).split("/") if part]
    return normalize_absolute_path(os.path.join(normalize_absolute_path(root), *parts))
