"""
Fat/universal container parsing and host-architecture slice selection.

A fat file is a big-endian header followed by `fat_arch` (or `fat_arch_64`)
records, each naming a cputype/cpusubtype and the byte range of one thin
Mach-O inside the file. `select_slice` picks exactly one of those ranges; the
caller narrows all further parsing to it.
"""

from __future__ import annotations

import platform
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from launchsurface.api.errors import ResolutionError
from launchsurface.api.macho import constants as C
from launchsurface.api.macho.bytes_util import Buffer, Err, Ok, Result, Truncated, unpack_at


@dataclass(frozen=True)
class FatArch:
    cputype: int
    cpusubtype: int
    offset: int
    size: int
    align: int

    @property
    def subtype(self) -> int:
        return self.cpusubtype & ~C.CPU_SUBTYPE_MASK & 0xFFFFFFFF

    @property
    def arch_name(self) -> str:
        return arch_name(self.cputype, self.cpusubtype)


@dataclass(frozen=True)
class HostArch:
    """cputype plus the subtype this host prefers for system binaries."""

    name: str
    cputype: int
    preferred_subtype: Optional[int]
    # cputypes this host can still execute (e.g. via translation), in order.
    compatible: Tuple[int, ...] = ()


HOST_ARCHES = {
    "arm64": HostArch("arm64", C.CPU_TYPE_ARM64, C.CPU_SUBTYPE_ARM64E, (C.CPU_TYPE_X86_64,)),
    "arm64e": HostArch("arm64e", C.CPU_TYPE_ARM64, C.CPU_SUBTYPE_ARM64E, (C.CPU_TYPE_X86_64,)),
    "x86_64": HostArch("x86_64", C.CPU_TYPE_X86_64, None, (C.CPU_TYPE_X86,)),
    "i386": HostArch("i386", C.CPU_TYPE_X86, None, ()),
}
_MACHINE_ALIASES = {"aarch64": "arm64", "amd64": "x86_64", "x86-64": "x86_64", "i686": "i386"}


def arch_name(cputype: int, cpusubtype: int) -> str:
    name = C.CPU_TYPE_NAMES.get(cputype, f"cpu{cputype:#x}")
    sub = cpusubtype & ~C.CPU_SUBTYPE_MASK & 0xFFFFFFFF
    if cputype == C.CPU_TYPE_ARM64 and sub == C.CPU_SUBTYPE_ARM64E:
        return "arm64e"
    if cputype == C.CPU_TYPE_X86_64 and sub == C.CPU_SUBTYPE_X86_64_H:
        return "x86_64h"
    return name


def host_arch(name: Optional[str] = None) -> HostArch:
    """Map `name` (default: `platform.machine()`) to a `HostArch`."""
    raw = (name or platform.machine() or "").strip().lower()
    raw = _MACHINE_ALIASES.get(raw, raw)
    try:
        return HOST_ARCHES[raw]
    except KeyError:
        raise ValueError(f"unsupported host architecture: {raw or '<empty>'}") from None


def is_fat(data: Buffer) -> bool:
    if len(data) < C.FAT_HEADER_SIZE:
        return False
    magic = int.from_bytes(bytes(data[0:4]), "big")
    return magic in (C.FAT_MAGIC, C.FAT_MAGIC_64)


def parse_fat(data: Buffer) -> Result[List[FatArch], ResolutionError]:
    """Parse the fat header; every slice range must lie inside `data`."""
    try:
        magic, nfat = unpack_at(">II", data, 0, "fat header")
        if magic not in (C.FAT_MAGIC, C.FAT_MAGIC_64):
            return Err(ResolutionError(f"not a fat container (magic {magic:#010x})"))
        if nfat == 0 or nfat > C.FAT_MAX_ARCHS:
            return Err(ResolutionError(f"implausible fat arch count {nfat}"))
        wide = magic == C.FAT_MAGIC_64
        rec_size = C.FAT_ARCH_64_SIZE if wide else C.FAT_ARCH_SIZE
        archs: List[FatArch] = []
        for idx in range(nfat):
            off = C.FAT_HEADER_SIZE + idx * rec_size
            if wide:
                cputype, cpusubtype, offset, size, align, _reserved = unpack_at(">IIQQII", data, off, "fat_arch_64")
            else:
                cputype, cpusubtype, offset, size, align = unpack_at(">IIIII", data, off, "fat_arch")
            if size == 0 or offset + size > len(data):
                return Err(
                    ResolutionError(
                        f"fat slice {idx} ({arch_name(cputype, cpusubtype)}) range "
                        f"{offset:#x}+{size:#x} exceeds file size {len(data):#x}"
                    )
                )
            archs.append(FatArch(cputype, cpusubtype, offset, size, align))
    except Truncated as exc:
        return Err(ResolutionError(str(exc)))
    return Ok(archs)


def choose_arch(archs: Sequence[FatArch], host: HostArch) -> Optional[FatArch]:
    """
    Pick the slice for `host`.

    Order: exact cputype + preferred subtype, then any slice of the host's
    cputype, then the first slice of a cputype the host can still execute.
    """
    same_type = [a for a in archs if a.cputype == host.cputype]
    if host.preferred_subtype is not None:
        for arch in same_type:
            if arch.subtype == host.preferred_subtype:
                return arch
    if same_type:
        return same_type[0]
    for cputype in host.compatible:
        for arch in archs:
            if arch.cputype == cputype:
                return arch
    return None


def select_slice(data: Buffer, host: HostArch) -> Result[FatArch, ResolutionError]:
    parsed = parse_fat(data)
    if isinstance(parsed, Err):
        return parsed
    chosen = choose_arch(parsed.value, host)
    if chosen is None:
        available = ", ".join(a.arch_name for a in parsed.value)
        return Err(ResolutionError(f"no slice for host architecture {host.name} (have: {available})"))
    return Ok(chosen)
