"""
Store schema and connection setup.

The schema lives in `schema.sql` beside this module and is applied on every
open (all statements are `IF NOT EXISTS`). Writers get a connection in
autocommit mode so the ingestor can drive `BEGIN IMMEDIATE` itself.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List

from launchsurface.api.errors import StoreError
from launchsurface.api.launchd.host import UNKNOWN_OS, read_os_identity

SCHEMA_PATH = Path(__file__).with_name("schema.sql")
STORE_PREFIX = "launchsurface_"
STORE_SUFFIX = ".sqlite"

TABLES = (
    "service",
    "mach_service",
    "entitlement",
    "service_entitlement",
    "library",
    "service_library",
    "symbol",
    "service_symbol",
)


def load_schema() -> str:
    return SCHEMA_PATH.read_text()


def open_store(path: Path) -> sqlite3.Connection:
    """Open (creating if needed) a writable store with WAL and foreign keys on."""
    try:
        conn = sqlite3.connect(str(path), isolation_level=None)
    except sqlite3.Error as exc:
        raise StoreError(f"cannot open store: {exc}", path=path) from exc
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.executescript(load_schema())
    except (sqlite3.Error, OSError) as exc:
        conn.close()
        raise StoreError(f"cannot initialize store: {exc}", path=path) from exc
    return conn


def readonly_uri(path: Path) -> str:
    return f"{Path(path).resolve().as_uri()}?mode=ro"


def store_has_services(path: Path) -> bool:
    """True when `path` is an existing store holding at least one service."""
    if not path.is_file():
        return False
    try:
        conn = sqlite3.connect(readonly_uri(path), uri=True)
    except sqlite3.Error:
        return False
    try:
        row = conn.execute("SELECT EXISTS (SELECT 1 FROM service)").fetchone()
    except sqlite3.Error:
        return False
    finally:
        conn.close()
    return bool(row and row[0])


def default_store_name(system_root: Path) -> str:
    identity = read_os_identity(system_root) or UNKNOWN_OS
    return f"{STORE_PREFIX}{identity.slug()}{STORE_SUFFIX}"


def is_valid_store_name(name: str) -> bool:
    return (
        name.startswith(STORE_PREFIX)
        and name.endswith(STORE_SUFFIX)
        and len(name) > len(STORE_PREFIX) + len(STORE_SUFFIX)
        and "/" not in name
        and "\\" not in name
    )


def available_stores(directory: Path) -> List[str]:
    if not directory.is_dir():
        return []
    return sorted(p.name for p in directory.iterdir() if p.is_file() and is_valid_store_name(p.name))
