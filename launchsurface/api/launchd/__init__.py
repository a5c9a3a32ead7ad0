"""
launchd descriptor surface (stable API exports).
"""

from launchsurface.api.launchd.descriptors import (
    DESCRIPTOR_ROOTS,
    ServiceDefinition,
    definition_from_plist,
    parse_descriptor,
    readable_roots,
    scan_descriptors,
)
from launchsurface.api.launchd.host import OSIdentity, read_os_identity

__all__ = [
    "DESCRIPTOR_ROOTS",
    "OSIdentity",
    "ServiceDefinition",
    "definition_from_plist",
    "parse_descriptor",
    "read_os_identity",
    "readable_roots",
    "scan_descriptors",
]
