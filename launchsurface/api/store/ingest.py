"""
Write side of the store.

`Ingestor` persists one service at a time inside its own `BEGIN IMMEDIATE`
transaction. A failure rolls back only that service and surfaces as
`StoreError`; services committed earlier in the batch stay committed.

Identity rules:
- services are keyed by label, mach services by name, catalog rows
  (entitlement, library, symbol) by name, so ids stay stable across rescans;
- a library is looked up by install path. When its short name is already
  taken by a different path, the full path is used as its name, and when
  that is taken too (a bare install name), the path with a numeric suffix;
- association rows are inserted with `ON CONFLICT DO NOTHING`.

Under the default `replace` policy a service's association rows are rebuilt
from the latest observation, and `prune` removes services whose descriptor
disappeared plus catalog rows nothing points at. Under `append` nothing is
ever deleted.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Iterator, Optional, Sequence, Set, Tuple

from loguru import logger as log

from launchsurface.api.errors import StoreError
from launchsurface.api.launchd.descriptors import ServiceDefinition
from launchsurface.api.macho.imports import LinkedLibrary
from launchsurface.api.plist_util import canonical_optional, canonical_value


class AssociationPolicy(str, Enum):
    REPLACE = "replace"
    APPEND = "append"


@dataclass(frozen=True)
class ServiceFacts:
    """Everything observed about one service, ready to be written."""

    definition: ServiceDefinition
    entitlements: Tuple[Tuple[str, str], ...] = ()
    libraries: Tuple[LinkedLibrary, ...] = ()
    symbols: Tuple[str, ...] = ()


_ASSOCIATIONS = ("service_entitlement", "service_library", "service_symbol")
_CATALOGS = (
    ("entitlement", "service_entitlement", "entitlement_id"),
    ("library", "service_library", "library_id"),
    ("symbol", "service_symbol", "symbol_id"),
)


class Ingestor:
    def __init__(self, conn: sqlite3.Connection, policy: AssociationPolicy = AssociationPolicy.REPLACE) -> None:
        self.conn = conn
        self.policy = AssociationPolicy(policy)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        try:
            yield cur
        except BaseException:
            cur.execute("ROLLBACK")
            raise
        else:
            cur.execute("COMMIT")
        finally:
            cur.close()

    # -- services ---------------------------------------------------------

    def ingest(self, facts: ServiceFacts) -> int:
        """Write one service and its facts; return the service id."""
        d = facts.definition
        try:
            with self._transaction() as cur:
                self._drop_renamed(cur, d)
                service_id = self._upsert_service(cur, d)
                if self.policy is AssociationPolicy.REPLACE:
                    for table in _ASSOCIATIONS:
                        cur.execute(f"DELETE FROM {table} WHERE service_id = ?", (service_id,))
                self._write_mach_services(cur, service_id, d.mach_services)
                self._write_entitlements(cur, service_id, facts.entitlements)
                self._write_libraries(cur, service_id, facts.libraries)
                self._write_symbols(cur, service_id, facts.symbols)
        except sqlite3.Error as exc:
            raise StoreError(f"ingest failed: {exc}", path=d.plist_path, label=d.label) from exc
        return service_id

    def _drop_renamed(self, cur: sqlite3.Cursor, d: ServiceDefinition) -> None:
        cur.execute("SELECT id, label FROM service WHERE plist_path = ? AND label != ?", (d.plist_path, d.label))
        for service_id, old_label in cur.fetchall():
            log.info("{} replaces {} from {}", d.label, old_label, d.plist_path)
            self._delete_service(cur, service_id)

    def _delete_service(self, cur: sqlite3.Cursor, service_id: int) -> None:
        for table in _ASSOCIATIONS:
            cur.execute(f"DELETE FROM {table} WHERE service_id = ?", (service_id,))
        cur.execute("DELETE FROM mach_service WHERE service_id = ?", (service_id,))
        cur.execute("DELETE FROM service WHERE id = ?", (service_id,))

    def _upsert_service(self, cur: sqlite3.Cursor, d: ServiceDefinition) -> int:
        cur.execute(
            """
            INSERT INTO service (label, path, run_as_user, run_at_load, keep_alive, plist_path)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(label) DO UPDATE SET
                path = excluded.path,
                run_as_user = excluded.run_as_user,
                run_at_load = excluded.run_at_load,
                keep_alive = excluded.keep_alive,
                plist_path = excluded.plist_path
            """,
            (
                d.label,
                d.program,
                d.run_as_user,
                canonical_value(d.run_at_load),
                canonical_optional(d.keep_alive),
                d.plist_path,
            ),
        )
        cur.execute("SELECT id FROM service WHERE label = ?", (d.label,))
        return cur.fetchone()[0]

    def _write_mach_services(self, cur: sqlite3.Cursor, service_id: int, mach: Dict[str, object]) -> None:
        if self.policy is AssociationPolicy.REPLACE:
            cur.execute("SELECT name FROM mach_service WHERE service_id = ?", (service_id,))
            stale = [(name,) for (name,) in cur.fetchall() if name not in mach]
            cur.executemany("DELETE FROM mach_service WHERE name = ?", stale)
        for name, value in mach.items():
            cur.execute(
                """
                INSERT INTO mach_service (name, value, service_id) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value, service_id = excluded.service_id
                """,
                (name, canonical_value(value), service_id),
            )

    # -- catalogs -----------------------------------------------------------

    def _catalog_id(self, cur: sqlite3.Cursor, table: str, name: str) -> int:
        cur.execute(f"INSERT INTO {table} (name) VALUES (?) ON CONFLICT(name) DO NOTHING", (name,))
        cur.execute(f"SELECT id FROM {table} WHERE name = ?", (name,))
        return cur.fetchone()[0]

    def _free_library_name(self, cur: sqlite3.Cursor, lib: LinkedLibrary) -> str:
        # short name, then full path, then path with a counter
        candidates = [lib.name, lib.path]
        candidates.extend(f"{lib.path} ({n})" for n in range(2, 1000))
        for name in candidates:
            cur.execute("SELECT 1 FROM library WHERE name = ?", (name,))
            if cur.fetchone() is None:
                return name
        raise StoreError(f"no free library name for {lib.path}")

    def _library_id(self, cur: sqlite3.Cursor, lib: LinkedLibrary) -> int:
        cur.execute("SELECT id FROM library WHERE path = ?", (lib.path,))
        row = cur.fetchone()
        if row is not None:
            return row[0]
        name = self._free_library_name(cur, lib)
        cur.execute("INSERT INTO library (name, path) VALUES (?, ?)", (name, lib.path))
        return cur.lastrowid

    def _write_entitlements(self, cur: sqlite3.Cursor, service_id: int, rows: Iterable[Tuple[str, str]]) -> None:
        for name, value in rows:
            ent_id = self._catalog_id(cur, "entitlement", name)
            cur.execute(
                "INSERT INTO service_entitlement (service_id, entitlement_id, value) VALUES (?, ?, ?)"
                " ON CONFLICT DO NOTHING",
                (service_id, ent_id, value),
            )

    def _write_libraries(self, cur: sqlite3.Cursor, service_id: int, libraries: Iterable[LinkedLibrary]) -> None:
        for lib in libraries:
            lib_id = self._library_id(cur, lib)
            cur.execute(
                "INSERT INTO service_library (service_id, library_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
                (service_id, lib_id),
            )

    def _write_symbols(self, cur: sqlite3.Cursor, service_id: int, symbols: Iterable[str]) -> None:
        for name in symbols:
            sym_id = self._catalog_id(cur, "symbol", name)
            cur.execute(
                "INSERT INTO service_symbol (service_id, symbol_id) VALUES (?, ?) ON CONFLICT DO NOTHING",
                (service_id, sym_id),
            )

    # -- housekeeping -------------------------------------------------------

    def prune(self, seen_plist_paths: Sequence[str]) -> Dict[str, int]:
        """
        Remove services whose descriptor was not seen and catalog rows no
        service references. Only meaningful after a complete scan.
        """
        if self.policy is not AssociationPolicy.REPLACE:
            return {}
        seen: Set[Optional[str]] = set(seen_plist_paths)
        removed: Dict[str, int] = {}
        try:
            with self._transaction() as cur:
                cur.execute("SELECT id, label, plist_path FROM service")
                gone = [(sid, label) for sid, label, plist_path in cur.fetchall() if plist_path not in seen]
                for service_id, label in gone:
                    log.info("pruning vanished service {}", label)
                    self._delete_service(cur, service_id)
                removed["service"] = len(gone)
                for table, assoc, column in _CATALOGS:
                    cur.execute(f"DELETE FROM {table} WHERE id NOT IN (SELECT {column} FROM {assoc})")
                    removed[table] = cur.rowcount
        except sqlite3.Error as exc:
            raise StoreError(f"prune failed: {exc}") from exc
        return removed
