"""
Read-only lookups over a launchsurface store.

`QueryStore` never writes: the database is opened with `mode=ro`, so a scan
running in another process (WAL mode) is not blocked by readers. Every
lookup returns the matching services with the matched facts joined in.

Pattern semantics follow SQLite:
- entitlement and library lookups use `LIKE` (case-insensitive, `%`/`_`);
- symbol and label lookups use `GLOB` (case-sensitive, `*`/`?`).
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from launchsurface.api.errors import StoreError
from launchsurface.api.store.schema import TABLES, readonly_uri


@dataclass(frozen=True)
class ServiceMatch:
    label: str
    path: str
    facts: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ServiceDetail:
    label: str
    path: str
    plist_path: Optional[str]
    run_as_user: Optional[str]
    run_at_load: Optional[str]
    keep_alive: Optional[str]
    mach_services: List[Dict[str, Any]] = field(default_factory=list)
    entitlements: List[Dict[str, Any]] = field(default_factory=list)
    libraries: List[Dict[str, Any]] = field(default_factory=list)
    symbols: List[str] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


class QueryStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        if not self.path.is_file():
            raise StoreError("store does not exist", path=self.path)
        try:
            self.conn = sqlite3.connect(readonly_uri(self.path), uri=True)
        except sqlite3.Error as exc:
            raise StoreError(f"cannot open store read-only: {exc}", path=self.path) from exc
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> "QueryStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _rows(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"query failed: {exc}", path=self.path) from exc

    # -- lookups ------------------------------------------------------------

    def services_by_entitlement(self, name: str, value: Optional[str] = None) -> List[ServiceMatch]:
        sql = """
            SELECT s.label, s.path, e.name AS entitlement, se.value
            FROM service s
            JOIN service_entitlement se ON se.service_id = s.id
            JOIN entitlement e ON e.id = se.entitlement_id
            WHERE e.name LIKE ?
        """
        params: List[Any] = [name]
        if value is not None:
            sql += " AND se.value LIKE ?"
            params.append(value)
        sql += " ORDER BY s.label, e.name, se.value"
        return [
            ServiceMatch(r["label"], r["path"], {"entitlement": r["entitlement"], "value": r["value"]})
            for r in self._rows(sql, params)
        ]

    def services_by_library(self, name_or_path: str) -> List[ServiceMatch]:
        rows = self._rows(
            """
            SELECT s.label, s.path, l.name AS library, l.path AS library_path
            FROM service s
            JOIN service_library sl ON sl.service_id = s.id
            JOIN library l ON l.id = sl.library_id
            WHERE l.name LIKE ? OR l.path LIKE ?
            ORDER BY s.label, l.path
            """,
            (name_or_path, name_or_path),
        )
        return [
            ServiceMatch(r["label"], r["path"], {"library": r["library"], "library_path": r["library_path"]})
            for r in rows
        ]

    def services_by_symbol(self, pattern: str) -> List[ServiceMatch]:
        rows = self._rows(
            """
            SELECT s.label, s.path, y.name AS symbol
            FROM service s
            JOIN service_symbol ss ON ss.service_id = s.id
            JOIN symbol y ON y.id = ss.symbol_id
            WHERE y.name GLOB ?
            ORDER BY s.label, y.name
            """,
            (pattern,),
        )
        return [ServiceMatch(r["label"], r["path"], {"symbol": r["symbol"]}) for r in rows]

    def services_by_label(self, pattern: str) -> List[ServiceMatch]:
        rows = self._rows(
            """
            SELECT label, path, plist_path, run_as_user, run_at_load, keep_alive
            FROM service WHERE label GLOB ? ORDER BY label
            """,
            (pattern,),
        )
        return [
            ServiceMatch(
                r["label"],
                r["path"],
                {
                    "plist_path": r["plist_path"],
                    "run_as_user": r["run_as_user"],
                    "run_at_load": r["run_at_load"],
                    "keep_alive": r["keep_alive"],
                },
            )
            for r in rows
        ]

    def services_by_entitlement_and_symbol(self, entitlement: str, symbol: str) -> List[ServiceMatch]:
        """Services holding an entitlement (LIKE) that also import a symbol (GLOB)."""
        rows = self._rows(
            """
            SELECT s.label, s.path, e.name AS entitlement, se.value, y.name AS symbol
            FROM service s
            JOIN service_entitlement se ON se.service_id = s.id
            JOIN entitlement e ON e.id = se.entitlement_id
            JOIN service_symbol ss ON ss.service_id = s.id
            JOIN symbol y ON y.id = ss.symbol_id
            WHERE e.name LIKE ? AND y.name GLOB ?
            ORDER BY s.label, e.name, se.value, y.name
            """,
            (entitlement, symbol),
        )
        return [
            ServiceMatch(
                r["label"],
                r["path"],
                {"entitlement": r["entitlement"], "value": r["value"], "symbol": r["symbol"]},
            )
            for r in rows
        ]

    # -- per-service facts --------------------------------------------------

    def mach_services(self, label: str) -> List[Dict[str, Any]]:
        rows = self._rows(
            """
            SELECT m.name, m.value FROM mach_service m
            JOIN service s ON s.id = m.service_id
            WHERE s.label = ? COLLATE NOCASE ORDER BY m.name
            """,
            (label,),
        )
        return [{"name": r["name"], "value": r["value"]} for r in rows]

    def entitlements(self, label: str) -> List[Dict[str, Any]]:
        rows = self._rows(
            """
            SELECT e.name, se.value FROM entitlement e
            JOIN service_entitlement se ON se.entitlement_id = e.id
            JOIN service s ON s.id = se.service_id
            WHERE s.label = ? COLLATE NOCASE ORDER BY e.name, se.value
            """,
            (label,),
        )
        return [{"name": r["name"], "value": r["value"]} for r in rows]

    def libraries(self, label: str) -> List[Dict[str, Any]]:
        rows = self._rows(
            """
            SELECT l.name, l.path FROM library l
            JOIN service_library sl ON sl.library_id = l.id
            JOIN service s ON s.id = sl.service_id
            WHERE s.label = ? COLLATE NOCASE ORDER BY l.name
            """,
            (label,),
        )
        return [{"name": r["name"], "path": r["path"]} for r in rows]

    def symbols(self, label: str) -> List[str]:
        rows = self._rows(
            """
            SELECT y.name FROM symbol y
            JOIN service_symbol ss ON ss.symbol_id = y.id
            JOIN service s ON s.id = ss.service_id
            WHERE s.label = ? COLLATE NOCASE ORDER BY y.name
            """,
            (label,),
        )
        return [r["name"] for r in rows]

    def service(self, label: str) -> Optional[ServiceDetail]:
        rows = self._rows(
            """
            SELECT label, path, plist_path, run_as_user, run_at_load, keep_alive
            FROM service WHERE label = ? COLLATE NOCASE
            """,
            (label,),
        )
        if not rows:
            return None
        r = rows[0]
        canonical = r["label"]
        return ServiceDetail(
            label=canonical,
            path=r["path"],
            plist_path=r["plist_path"],
            run_as_user=r["run_as_user"],
            run_at_load=r["run_at_load"],
            keep_alive=r["keep_alive"],
            mach_services=self.mach_services(canonical),
            entitlements=self.entitlements(canonical),
            libraries=self.libraries(canonical),
            symbols=self.symbols(canonical),
        )

    # -- raw access ---------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run arbitrary SQL against the read-only connection; rows as dicts."""
        return [dict(r) for r in self._rows(sql, params)]

    def counts(self) -> Dict[str, int]:
        return {table: self._rows(f"SELECT COUNT(*) FROM {table}")[0][0] for table in TABLES}
