"""
Entitlement recovery from the embedded code signature.

`LC_CODE_SIGNATURE` points at a big-endian superblob: a header (magic,
length, count) followed by `count` (slot type, offset) index entries, each
offset naming a blob inside the superblob. The entitlements blob (magic
`0xfade7171`) carries an XML property list whose top-level keys are the
entitlement names.

Absence of a signature, or of an entitlements blob, is a normal outcome and
yields an empty mapping. Structural damage is reported as a
`SignatureParseError` through an `Err` result.
"""

from __future__ import annotations

import plistlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from xml.parsers.expat import ExpatError

from launchsurface.api.errors import SignatureParseError
from launchsurface.api.macho import constants as C
from launchsurface.api.macho.bytes_util import Buffer, Err, Ok, Result, Truncated, read_cstring, u32be
from launchsurface.api.macho.loader import MachOImage
from launchsurface.api.plist_util import canonical_value


@dataclass(frozen=True)
class BlobRef:
    slot: int
    magic: int
    offset: int  # relative to the superblob
    length: int


@dataclass
class SignatureInfo:
    signed: bool = False
    identifier: Optional[str] = None
    cd_flags: Optional[int] = None
    has_der_entitlements: bool = False
    blobs: List[BlobRef] = field(default_factory=list)
    entitlements: Dict[str, Any] = field(default_factory=dict)

    @property
    def hardened_runtime(self) -> bool:
        return self.cd_flags is not None and bool(self.cd_flags & C.CS_RUNTIME)


def _signature_region(image: MachOImage) -> Optional[memoryview]:
    lc = image.first_command(C.LC_CODE_SIGNATURE)
    if lc is None:
        return None
    if lc.cmdsize < C.LINKEDIT_DATA_COMMAND_SIZE:
        raise SignatureParseError(f"LC_CODE_SIGNATURE too small ({lc.cmdsize:#x})")
    dataoff, datasize = image.unpack("II", lc.offset + 8, "linkedit_data_command")
    if dataoff + datasize > len(image.data):
        raise SignatureParseError(
            f"signature range {dataoff:#x}+{datasize:#x} exceeds slice size {len(image.data):#x}"
        )
    return memoryview(image.data)[dataoff : dataoff + datasize]


def iter_superblob(region: Buffer) -> List[BlobRef]:
    """Validate the superblob framing and return its blob index."""
    magic = u32be(region, 0, "superblob magic")
    if magic != C.CSMAGIC_EMBEDDED_SIGNATURE:
        raise SignatureParseError(f"bad superblob magic {magic:#010x}")
    length = u32be(region, 4, "superblob length")
    count = u32be(region, 8, "superblob count")
    if length < C.CS_SUPERBLOB_HEADER_SIZE or length > len(region):
        raise SignatureParseError(f"superblob length {length:#x} does not fit region ({len(region):#x})")
    if C.CS_SUPERBLOB_HEADER_SIZE + count * C.CS_BLOB_INDEX_SIZE > length:
        raise SignatureParseError(f"superblob index of {count} entries overruns length {length:#x}")
    blobs: List[BlobRef] = []
    for idx in range(count):
        entry = C.CS_SUPERBLOB_HEADER_SIZE + idx * C.CS_BLOB_INDEX_SIZE
        slot = u32be(region, entry, "blob index type")
        offset = u32be(region, entry + 4, "blob index offset")
        if offset + C.CS_BLOB_HEADER_SIZE > length:
            raise SignatureParseError(f"blob {idx} (slot {slot:#x}) header at {offset:#x} past superblob end")
        blob_magic = u32be(region, offset, "blob magic")
        blob_length = u32be(region, offset + 4, "blob length")
        if blob_length < C.CS_BLOB_HEADER_SIZE or offset + blob_length > length:
            raise SignatureParseError(f"blob {idx} (magic {blob_magic:#010x}) length {blob_length:#x} truncated")
        if (blob_magic & C.CSMAGIC_FAMILY_MASK) != C.CSMAGIC_FAMILY:
            raise SignatureParseError(f"unsupported blob type {blob_magic:#010x} in slot {slot:#x}")
        blobs.append(BlobRef(slot=slot, magic=blob_magic, offset=offset, length=blob_length))
    return blobs


def _code_directory(region: Buffer, blob: BlobRef) -> Tuple[Optional[str], Optional[int]]:
    if blob.length < C.CS_CODEDIRECTORY_MIN_SIZE:
        return None, None
    flags = u32be(region, blob.offset + 12, "code directory flags")
    ident_offset = u32be(region, blob.offset + 20, "code directory identOffset")
    if ident_offset == 0 or ident_offset >= blob.length:
        return None, flags
    ident = read_cstring(region, blob.offset + ident_offset, blob.offset + blob.length, "identifier")
    return ident or None, flags


def _entitlements_plist(region: Buffer, blob: BlobRef) -> Dict[str, Any]:
    payload = bytes(region[blob.offset + C.CS_BLOB_HEADER_SIZE : blob.offset + blob.length])
    if not payload.startswith(b"bplist"):
        # XML payloads are NUL padded; a binary trailer must stay intact
        payload = payload.rstrip(b"\x00").strip()
    if not payload:
        return {}
    try:
        value = plistlib.loads(payload)
    except (
        plistlib.InvalidFileException,
        ExpatError,
        ValueError,
        OverflowError,
        EOFError,
        TypeError,
        RecursionError,
    ) as exc:
        raise SignatureParseError(f"entitlements blob is not a valid plist: {exc}") from exc
    if not isinstance(value, dict):
        raise SignatureParseError(f"entitlements plist top level is {type(value).__name__}, expected dict")
    if not all(isinstance(k, str) for k in value):
        raise SignatureParseError("entitlements plist has non-string keys")
    return value


def extract_entitlements(image: MachOImage) -> Result[SignatureInfo, SignatureParseError]:
    try:
        region = _signature_region(image)
        if region is None:
            return Ok(SignatureInfo(signed=False))
        info = SignatureInfo(signed=True, blobs=iter_superblob(region))
        for blob in info.blobs:
            if blob.magic == C.CSMAGIC_CODEDIRECTORY and blob.slot == C.CSSLOT_CODEDIRECTORY:
                info.identifier, info.cd_flags = _code_directory(region, blob)
            elif blob.magic == C.CSMAGIC_EMBEDDED_ENTITLEMENTS:
                info.entitlements = _entitlements_plist(region, blob)
            elif blob.magic == C.CSMAGIC_EMBEDDED_DER_ENTITLEMENTS:
                info.has_der_entitlements = True
    except SignatureParseError as exc:
        return Err(exc)
    except Truncated as exc:
        return Err(SignatureParseError(str(exc)))
    return Ok(info)


def entitlement_rows(entitlements: Dict[str, Any]) -> List[Tuple[str, str]]:
    """
    Flatten an entitlements dict into (name, value) rows.

    Arrays fan out to one row per element; an empty array keeps a single
    `"[]"` row so the grant is not lost. Rows are unique and sorted. A value
    that has no canonical text raises SignatureParseError.
    """
    rows = set()
    for name, value in entitlements.items():
        try:
            if isinstance(value, (list, tuple)):
                if not value:
                    rows.add((name, "[]"))
                for item in value:
                    rows.add((name, canonical_value(item)))
            else:
                rows.add((name, canonical_value(value)))
        except ValueError as exc:
            raise SignatureParseError(f"entitlement {name!r}: {exc}") from exc
    return sorted(rows)
