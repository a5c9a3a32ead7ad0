"""
Thin Mach-O header and load-command walker.

`parse_image` recognizes the four thin magics (32/64-bit, either byte order)
and returns a `MachOImage` holding the slice buffer, its layout (word width,
byte order) and the validated load-command table. The signature and import
readers work from that image; nothing here interprets individual commands
beyond their `cmd`/`cmdsize` framing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from launchsurface.api.errors import ImportParseError
from launchsurface.api.macho import constants as C
from launchsurface.api.macho.bytes_util import Buffer, Err, Ok, Result, Truncated, hex_preview, unpack_at


@dataclass(frozen=True)
class LoadCommand:
    cmd: int
    cmdsize: int
    offset: int  # absolute offset of the command inside the slice


@dataclass
class MachOImage:
    data: Buffer
    is_64: bool
    endian: str  # "<" or ">" for struct formats
    cputype: int
    cpusubtype: int
    filetype: int
    flags: int
    commands: List[LoadCommand] = field(default_factory=list)

    @property
    def header_size(self) -> int:
        return C.MACH_HEADER_64_SIZE if self.is_64 else C.MACH_HEADER_SIZE

    def iter_commands(self, *cmds: int) -> Iterator[LoadCommand]:
        wanted = set(cmds)
        for lc in self.commands:
            if not wanted or lc.cmd in wanted:
                yield lc

    def first_command(self, cmd: int) -> Optional[LoadCommand]:
        for lc in self.iter_commands(cmd):
            return lc
        return None

    def unpack(self, fmt: str, offset: int, what: str) -> tuple:
        """Unpack a struct in the image's byte order (bounds-checked)."""
        return unpack_at(self.endian + fmt, self.data, offset, what)


def _layout_for_magic(magic_le: int) -> Optional[tuple[bool, str]]:
    if magic_le == C.MH_MAGIC:
        return False, "<"
    if magic_le == C.MH_CIGAM:
        return False, ">"
    if magic_le == C.MH_MAGIC_64:
        return True, "<"
    if magic_le == C.MH_CIGAM_64:
        return True, ">"
    return None


def parse_image(data: Buffer) -> Result[MachOImage, ImportParseError]:
    """
    Parse the Mach-O header and frame every load command.

    The command table must fit in the buffer and every `cmdsize` must be at
    least 8 bytes and stay inside `sizeofcmds`; anything else is reported as
    an `ImportParseError`.
    """
    if len(data) < 4:
        return Err(ImportParseError(f"file too small for a Mach-O header ({len(data)} bytes)"))
    magic_le = int.from_bytes(bytes(data[0:4]), "little")
    layout = _layout_for_magic(magic_le)
    if layout is None:
        return Err(ImportParseError(f"unsupported magic {hex_preview(data, 4)}"))
    is_64, endian = layout
    try:
        _magic, cputype, cpusubtype, filetype, ncmds, sizeofcmds, flags = unpack_at(
            endian + "IIIIIII", data, 0, "mach header"
        )
        image = MachOImage(
            data=data,
            is_64=is_64,
            endian=endian,
            cputype=cputype,
            cpusubtype=cpusubtype,
            filetype=filetype,
            flags=flags,
        )
        start = image.header_size
        end = start + sizeofcmds
        if end > len(data):
            return Err(
                ImportParseError(f"load commands ({sizeofcmds:#x} bytes) run past end of slice ({len(data):#x})")
            )
        if ncmds * C.LOAD_COMMAND_HEADER_SIZE > sizeofcmds:
            return Err(ImportParseError(f"ncmds {ncmds} cannot fit in sizeofcmds {sizeofcmds:#x}"))
        offset = start
        for idx in range(ncmds):
            if offset + C.LOAD_COMMAND_HEADER_SIZE > end:
                return Err(ImportParseError(f"load command {idx} header past sizeofcmds"))
            cmd, cmdsize = unpack_at(endian + "II", data, offset, "load command")
            if cmdsize < C.LOAD_COMMAND_HEADER_SIZE or offset + cmdsize > end:
                return Err(ImportParseError(f"load command {idx} ({cmd:#x}) has bad cmdsize {cmdsize:#x}"))
            image.commands.append(LoadCommand(cmd=cmd, cmdsize=cmdsize, offset=offset))
            offset += cmdsize
    except Truncated as exc:
        return Err(ImportParseError(str(exc)))
    return Ok(image)
