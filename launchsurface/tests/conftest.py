from __future__ import annotations

import os
import plistlib
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from launchsurface.api.surface.config import ScanConfig  # noqa: E402

AGENTS = "System/Library/LaunchAgents"
DAEMONS = "System/Library/LaunchDaemons"


class SystemTree:
    """A fake system root with launchd descriptor directories and binaries."""

    def __init__(self, root: Path):
        self.root = root
        (root / AGENTS).mkdir(parents=True)
        (root / DAEMONS).mkdir(parents=True)

    def path(self, system_path: str) -> Path:
        return self.root / system_path.lstrip("/")

    def descriptor(
        self,
        filename: str,
        plist: Any,
        *,
        domain: str = "daemon",
        fmt: plistlib.PlistFormat = plistlib.FMT_XML,
    ) -> Path:
        target = self.root / (DAEMONS if domain == "daemon" else AGENTS) / filename
        target.write_bytes(plistlib.dumps(plist, fmt=fmt))
        return target

    def raw_descriptor(self, filename: str, data: bytes, *, domain: str = "daemon") -> Path:
        target = self.root / (DAEMONS if domain == "daemon" else AGENTS) / filename
        target.write_bytes(data)
        return target

    def binary(self, system_path: str, data: bytes) -> Path:
        target = self.path(system_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        os.chmod(target, 0o755)
        return target

    def symlink(self, system_path: str, target: str) -> Path:
        link = self.path(system_path)
        link.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, link)
        return link

    def service(
        self,
        label: str,
        data: Optional[bytes],
        *,
        domain: str = "daemon",
        program: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Write a descriptor (and its executable when `data` is given); return the plist's system path."""
        program = program or f"/usr/libexec/{label}"
        if data is not None:
            self.binary(program, data)
        plist: Dict[str, Any] = {"Label": label, "ProgramArguments": [program]}
        plist.update(extra or {})
        path = self.descriptor(f"{label}.plist", plist, domain=domain)
        return "/" + path.relative_to(self.root).as_posix()


@pytest.fixture
def system_tree(tmp_path: Path) -> SystemTree:
    return SystemTree(tmp_path / "root")


@pytest.fixture
def scan_config(system_tree: SystemTree, tmp_path: Path) -> ScanConfig:
    return ScanConfig(
        system_root=system_tree.root,
        db=tmp_path / "store.sqlite",
        workers=2,
        host_arch="arm64",
    )
