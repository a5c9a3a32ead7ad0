"""
Executable resolution for service definitions.

Turns a definition's declared program path into the byte range the Mach-O
readers should parse: the path is re-rooted under the system root, symlinks
are followed, the target must be a readable regular file, and fat containers
are narrowed to the host's slice. Nothing outside that slice is handed on.
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional

from loguru import logger as log

from launchsurface.api import path_utils
from launchsurface.api.errors import ResolutionError
from launchsurface.api.launchd.descriptors import ServiceDefinition
from launchsurface.api.macho import fat
from launchsurface.api.macho.bytes_util import Err, Ok, Result

DEFAULT_MAX_BINARY_SIZE = 512 * 1024 * 1024


@dataclass(frozen=True)
class ResolvedBinary:
    declared_path: str
    resolved_path: str  # on-system path after following links
    file_size: int
    data: memoryview  # the selected slice only
    slice_offset: int = 0
    arch: Optional[str] = None  # set when a fat slice was selected


def _read_file(path: Path, max_size: int) -> bytes:
    with open(path, "rb") as fh:
        st = os.fstat(fh.fileno())
        if not stat.S_ISREG(st.st_mode):
            raise ResolutionError("not a regular file")
        if st.st_size > max_size:
            raise ResolutionError(f"file is {st.st_size} bytes, limit is {max_size}")
        return fh.read(st.st_size)


def resolve_executable(
    definition: ServiceDefinition,
    *,
    system_root: Path,
    host_arch: fat.HostArch,
    max_size: int = DEFAULT_MAX_BINARY_SIZE,
) -> Result[ResolvedBinary, ResolutionError]:
    declared = definition.program
    context = {"path": declared, "label": definition.label}
    if not PurePosixPath(declared).is_absolute():
        return Err(ResolutionError("executable path is not absolute", **context))
    try:
        target = path_utils.resolve_in_root(declared, system_root)
    except FileNotFoundError:
        return Err(ResolutionError("executable not found", **context))
    except OSError as exc:
        return Err(ResolutionError(f"cannot resolve executable: {exc}", **context))
    if not os.access(target, os.R_OK):
        return Err(ResolutionError("executable not readable", **context))
    try:
        blob = _read_file(target, max_size)
    except ResolutionError as exc:
        return Err(exc.with_context(**context))
    except OSError as exc:
        return Err(ResolutionError(f"cannot read executable: {exc.strerror or exc}", **context))

    resolved_path = path_utils.to_system_path(target, system_root)
    view = memoryview(blob)
    if not fat.is_fat(view):
        return Ok(ResolvedBinary(declared, resolved_path, len(blob), view))

    chosen = fat.select_slice(view, host_arch)
    if isinstance(chosen, Err):
        return Err(chosen.error.with_context(path=resolved_path, label=definition.label))
    arch = chosen.value
    log.debug("{}: selected {} slice at {:#x}+{:#x}", definition.label, arch.arch_name, arch.offset, arch.size)
    return Ok(
        ResolvedBinary(
            declared_path=declared,
            resolved_path=resolved_path,
            file_size=len(blob),
            data=view[arch.offset : arch.offset + arch.size],
            slice_offset=arch.offset,
            arch=arch.arch_name,
        )
    )
