"""
Scan configuration.

Defaults come from `LAUNCHSURFACE_*` environment variables; the CLI overrides
them with flags via `ScanConfig.with_overrides`.

- LAUNCHSURFACE_SYSTEM_ROOT     root the descriptor directories live under (default `/`)
- LAUNCHSURFACE_DB              store file (default: OS-identity name in the cwd)
- LAUNCHSURFACE_WORKERS         extraction threads (default: CPU count, at most 8)
- LAUNCHSURFACE_HOST_ARCH       slice to select from fat binaries (default: this machine)
- LAUNCHSURFACE_MAX_BINARY_SIZE largest executable read, in bytes
- LAUNCHSURFACE_POLICY          `replace` or `append` association handling
"""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from loguru import logger as log

from launchsurface.api.resolver import DEFAULT_MAX_BINARY_SIZE
from launchsurface.api.store.ingest import AssociationPolicy
from launchsurface.api.store.schema import default_store_name

ENV_PREFIX = "LAUNCHSURFACE_"
MAX_DEFAULT_WORKERS = 8


def _default_workers() -> int:
    return max(1, min(os.cpu_count() or 1, MAX_DEFAULT_WORKERS))


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw, 0)
    except ValueError:
        log.warning("ignoring {}{}={!r}: not an integer", ENV_PREFIX, name, raw)
        return default
    if value < 1:
        log.warning("ignoring {}{}={!r}: must be positive", ENV_PREFIX, name, raw)
        return default
    return value


@dataclass(frozen=True)
class ScanConfig:
    system_root: Path = Path("/")
    db: Optional[Path] = None
    workers: int = 1
    host_arch: str = ""
    max_binary_size: int = DEFAULT_MAX_BINARY_SIZE
    policy: AssociationPolicy = AssociationPolicy.REPLACE

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScanConfig":
        env = os.environ if environ is None else environ
        db = env.get(ENV_PREFIX + "DB")
        policy_raw = env.get(ENV_PREFIX + "POLICY") or AssociationPolicy.REPLACE.value
        try:
            policy = AssociationPolicy(policy_raw.lower())
        except ValueError:
            log.warning("ignoring {}POLICY={!r}", ENV_PREFIX, policy_raw)
            policy = AssociationPolicy.REPLACE
        return cls(
            system_root=Path(env.get(ENV_PREFIX + "SYSTEM_ROOT") or "/"),
            db=Path(db) if db else None,
            workers=_env_int(env, "WORKERS", _default_workers()),
            host_arch=env.get(ENV_PREFIX + "HOST_ARCH") or platform.machine(),
            max_binary_size=_env_int(env, "MAX_BINARY_SIZE", DEFAULT_MAX_BINARY_SIZE),
            policy=policy,
        )

    def with_overrides(self, **overrides: Any) -> "ScanConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "system_root" in changes:
            changes["system_root"] = Path(changes["system_root"])
        if "db" in changes:
            changes["db"] = Path(changes["db"])
        if "policy" in changes:
            changes["policy"] = AssociationPolicy(changes["policy"])
        return replace(self, **changes)

    def store_path(self) -> Path:
        if self.db is not None:
            return self.db
        return Path.cwd() / default_store_name(self.system_root)
