"""
Linked-library and imported-symbol recovery from a parsed Mach-O slice.

Libraries come from the dylib load commands (plain, weak, re-export, lazy and
upward). Imported symbols are the external undefined entries of the symbol
table; when a dynamic symbol table is present its undefined range and the
indirect symbol table are walked as well, and the union is reported.

Every table offset/count is validated against the slice before it is read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from launchsurface.api.errors import ImportParseError
from launchsurface.api.macho import constants as C
from launchsurface.api.macho.bytes_util import Err, Ok, Result, Truncated, check_range, read_cstring
from launchsurface.api.macho.loader import LoadCommand, MachOImage


@dataclass(frozen=True)
class LinkedLibrary:
    name: str
    path: str
    weak: bool = False


@dataclass
class ImportInfo:
    libraries: List[LinkedLibrary] = field(default_factory=list)
    symbols: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Symtab:
    symoff: int
    nsyms: int
    stroff: int
    strsize: int


def library_short_name(path: str) -> str:
    """`/usr/lib/libSystem.B.dylib` -> `libSystem.B.dylib`."""
    stripped = path.rstrip("/")
    return stripped.rsplit("/", 1)[-1] or path


def strip_symbol_prefix(name: str) -> str:
    """Drop the C-level leading underscore the Mach-O toolchain adds."""
    return name[1:] if name.startswith("_") else name


def _read_dylib(image: MachOImage, lc: LoadCommand) -> LinkedLibrary:
    if lc.cmdsize < C.DYLIB_COMMAND_SIZE:
        raise ImportParseError(f"dylib command at {lc.offset:#x} too small ({lc.cmdsize:#x})")
    (name_offset,) = image.unpack("I", lc.offset + 8, "dylib_command")
    if name_offset < C.DYLIB_COMMAND_SIZE or name_offset >= lc.cmdsize:
        raise ImportParseError(f"dylib name offset {name_offset:#x} outside command at {lc.offset:#x}")
    path = read_cstring(image.data, lc.offset + name_offset, lc.offset + lc.cmdsize, "dylib name")
    if not path:
        raise ImportParseError(f"empty dylib path in command at {lc.offset:#x}")
    return LinkedLibrary(name=library_short_name(path), path=path, weak=lc.cmd == C.LC_LOAD_WEAK_DYLIB)


def linked_libraries(image: MachOImage) -> List[LinkedLibrary]:
    seen: Set[str] = set()
    out: List[LinkedLibrary] = []
    for lc in image.iter_commands(*C.DYLIB_LOAD_COMMANDS):
        lib = _read_dylib(image, lc)
        if lib.path in seen:
            continue
        seen.add(lib.path)
        out.append(lib)
    return out


def _read_symtab(image: MachOImage) -> Optional[_Symtab]:
    lc = image.first_command(C.LC_SYMTAB)
    if lc is None:
        return None
    if lc.cmdsize < C.SYMTAB_COMMAND_SIZE:
        raise ImportParseError(f"LC_SYMTAB too small ({lc.cmdsize:#x})")
    symoff, nsyms, stroff, strsize = image.unpack("IIII", lc.offset + 8, "symtab_command")
    nlist_size = C.NLIST_64_SIZE if image.is_64 else C.NLIST_SIZE
    check_range(image.data, symoff, nsyms * nlist_size, "symbol table")
    check_range(image.data, stroff, strsize, "string table")
    return _Symtab(symoff, nsyms, stroff, strsize)


def _symbol_name(image: MachOImage, symtab: _Symtab, strx: int) -> str:
    if strx == 0:
        return ""
    if strx >= symtab.strsize:
        raise ImportParseError(f"string index {strx:#x} outside string table ({symtab.strsize:#x})")
    start = symtab.stroff + strx
    return read_cstring(image.data, start, symtab.stroff + symtab.strsize, "symbol name")


def _imported_name(image: MachOImage, symtab: _Symtab, index: int) -> Optional[str]:
    """Return the symbol name when entry `index` is an external undefined symbol."""
    if index >= symtab.nsyms:
        raise ImportParseError(f"symbol index {index} outside symbol table ({symtab.nsyms} entries)")
    if image.is_64:
        strx, n_type, _n_sect, _n_desc, _n_value = image.unpack(
            "IBBHQ", symtab.symoff + index * C.NLIST_64_SIZE, "nlist_64"
        )
    else:
        strx, n_type, _n_sect, _n_desc, _n_value = image.unpack(
            "IBBHI", symtab.symoff + index * C.NLIST_SIZE, "nlist"
        )
    if n_type & C.N_STAB:
        return None
    if not n_type & C.N_EXT or (n_type & C.N_TYPE) != C.N_UNDF:
        return None
    name = _symbol_name(image, symtab, strx)
    return name or None


def _dysymtab_ranges(image: MachOImage, symtab: _Symtab) -> tuple[range, List[int]]:
    """Return (undefined symbol index range, indirect symbol indices)."""
    lc = image.first_command(C.LC_DYSYMTAB)
    if lc is None:
        return range(symtab.nsyms), []
    if lc.cmdsize < C.DYSYMTAB_COMMAND_SIZE:
        raise ImportParseError(f"LC_DYSYMTAB too small ({lc.cmdsize:#x})")
    fields = image.unpack("18I", lc.offset + 8, "dysymtab_command")
    iundefsym, nundefsym = fields[4], fields[5]
    indirectsymoff, nindirectsyms = fields[12], fields[13]
    if iundefsym + nundefsym > symtab.nsyms:
        raise ImportParseError(
            f"undefined symbol range {iundefsym}+{nundefsym} exceeds symbol table ({symtab.nsyms} entries)"
        )
    indirect: List[int] = []
    if nindirectsyms:
        check_range(image.data, indirectsymoff, nindirectsyms * 4, "indirect symbol table")
        for idx in range(nindirectsyms):
            (entry,) = image.unpack("I", indirectsymoff + idx * 4, "indirect symbol")
            if entry & (C.INDIRECT_SYMBOL_LOCAL | C.INDIRECT_SYMBOL_ABS):
                continue
            indirect.append(entry)
    return range(iundefsym, iundefsym + nundefsym), indirect


def imported_symbols(image: MachOImage) -> List[str]:
    symtab = _read_symtab(image)
    if symtab is None:
        return []
    undef_range, indirect = _dysymtab_ranges(image, symtab)
    names: Set[str] = set()
    indices: Iterable[int] = list(undef_range) + indirect
    for index in indices:
        name = _imported_name(image, symtab, index)
        if name:
            names.add(strip_symbol_prefix(name))
    names.discard("")
    return sorted(names)


def analyze_imports(image: MachOImage) -> Result[ImportInfo, ImportParseError]:
    try:
        libraries = linked_libraries(image)
        symbols = imported_symbols(image)
    except ImportParseError as exc:
        return Err(exc)
    except Truncated as exc:
        return Err(ImportParseError(str(exc)))
    return Ok(ImportInfo(libraries=libraries, symbols=symbols))
