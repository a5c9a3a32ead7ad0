"""
Host OS identity (product name, version, build) for naming stores.

Read from `SystemVersion.plist` under the system root so a scan of a mounted
image is named after that image rather than the machine running the scan.
"""

from __future__ import annotations

import plistlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from xml.parsers.expat import ExpatError

from loguru import logger as log

from launchsurface.api import path_utils

SYSTEM_VERSION_PLIST = "/System/Library/CoreServices/SystemVersion.plist"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class OSIdentity:
    product_name: str
    product_version: str
    build_version: str

    def slug(self) -> str:
        parts = (self.product_name, self.product_version, self.build_version)
        return "_".join(_UNSAFE.sub("", p) or "unknown" for p in parts)


UNKNOWN_OS = OSIdentity("unknown", "unknown", "unknown")


def read_os_identity(system_root: Path) -> Optional[OSIdentity]:
    path = path_utils.ensure_absolute(SYSTEM_VERSION_PLIST, system_root)
    try:
        data = plistlib.loads(path.read_bytes())
    except FileNotFoundError:
        return None
    except (OSError, plistlib.InvalidFileException, ExpatError, ValueError) as exc:
        log.warning("cannot read {}: {}", path, exc)
        return None
    if not isinstance(data, dict):
        return None
    return OSIdentity(
        product_name=str(data.get("ProductName") or "unknown"),
        product_version=str(data.get("ProductVersion") or "unknown"),
        build_version=str(data.get("ProductBuildVersion") or "unknown"),
    )
