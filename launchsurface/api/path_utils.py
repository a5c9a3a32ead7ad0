"""
Helpers for system-root path handling.

Scans may run against the live system (`/`) or against a mounted image /
fixture tree. Descriptor and executable paths are always recorded in their
on-system form (`/usr/libexec/foo`) while file access goes through the
system root, and symbolic links are followed without ever escaping it.
"""

from __future__ import annotations

import os
import stat
from pathlib import Path, PurePosixPath
from typing import Union

Pathish = Union[str, Path]

MAX_SYMLINK_HOPS = 32


class LinkLoopError(OSError):
    """Raised when a symlink chain exceeds `MAX_SYMLINK_HOPS`."""


def ensure_absolute(path: Pathish, root: Path) -> Path:
    """Map an on-system absolute path (`/usr/libexec/x`) under `root`."""
    p = PurePosixPath(str(path))
    if not p.is_absolute():
        raise ValueError(f"expected an absolute path, got {path!s}")
    rel = PurePosixPath(*p.parts[1:]) if len(p.parts) > 1 else PurePosixPath()
    return Path(root) / rel


def to_system_path(path: Pathish, root: Path) -> str:
    """Inverse of `ensure_absolute`: return the on-system form of a path under `root`."""
    p = Path(path)
    try:
        rel = p.relative_to(Path(root))
    except ValueError:
        return str(p)
    return "/" + rel.as_posix() if rel.parts else "/"


def _normalize(parts: list[str]) -> list[str]:
    out: list[str] = []
    for part in parts:
        if part in ("", "."):
            continue
        if part == "..":
            if out:
                out.pop()
            continue
        out.append(part)
    return out


def resolve_in_root(path: Pathish, root: Path, max_hops: int = MAX_SYMLINK_HOPS) -> Path:
    """
    Resolve `path` (on-system, absolute) under `root`, following symlinks.

    Absolute link targets are re-rooted; `..` never climbs above the root.
    Raises `LinkLoopError` after `max_hops` links and `FileNotFoundError`
    when a component is missing.
    """
    pending = _normalize(PurePosixPath(str(path)).parts[1:])
    resolved: list[str] = []
    hops = 0
    while pending:
        part = pending.pop(0)
        candidate = Path(root).joinpath(*resolved, part)
        try:
            st = os.lstat(candidate)
        except FileNotFoundError:
            raise FileNotFoundError(f"no such file: /{'/'.join(resolved + [part])}") from None
        if not stat.S_ISLNK(st.st_mode):
            resolved.append(part)
            continue
        hops += 1
        if hops > max_hops:
            raise LinkLoopError(f"too many symbolic links resolving {path}")
        target = os.readlink(candidate)
        target_parts = PurePosixPath(target).parts
        if PurePosixPath(target).is_absolute():
            pending = _normalize(list(target_parts[1:]) + pending)
            resolved = []
        else:
            pending = _normalize(resolved + list(target_parts) + pending)
            resolved = []
    return Path(root).joinpath(*resolved)
