"""
Mach-O readers for the launchd surface scan (stable API exports).

Everything here is pure and read-only over an in-memory slice buffer:
- `fat`: universal container parsing and host slice selection.
- `loader`: thin header + load-command framing.
- `codesign`: superblob walking and entitlement extraction.
- `imports`: linked libraries and imported symbols.
"""

from __future__ import annotations

from launchsurface.api.macho.bytes_util import Err, Ok, Result
from launchsurface.api.macho.codesign import SignatureInfo, entitlement_rows, extract_entitlements
from launchsurface.api.macho.fat import FatArch, HostArch, host_arch, is_fat, select_slice
from launchsurface.api.macho.imports import ImportInfo, LinkedLibrary, analyze_imports
from launchsurface.api.macho.loader import MachOImage, parse_image

__all__ = [
    "Err",
    "FatArch",
    "HostArch",
    "ImportInfo",
    "LinkedLibrary",
    "MachOImage",
    "Ok",
    "Result",
    "SignatureInfo",
    "analyze_imports",
    "entitlement_rows",
    "extract_entitlements",
    "host_arch",
    "is_fat",
    "parse_image",
    "select_slice",
]
