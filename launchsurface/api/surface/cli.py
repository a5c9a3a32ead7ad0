"""CLI entrypoint for building and querying a launchsurface store."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from loguru import logger as log

from launchsurface.api.errors import FatalScanError, StoreError
from launchsurface.api.store.query import QueryStore
from launchsurface.api.store.schema import available_stores, store_has_services
from launchsurface.api.surface.config import ScanConfig
from launchsurface.api.surface.pipeline import run_scan


def _emit(report: Dict[str, Any]) -> int:
    print(json.dumps(report, indent=2, sort_keys=True))
    return 0 if report.get("ok") else 1


def configure_logging(verbose: bool = False) -> None:
    log.remove()
    log.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _has_query(args: argparse.Namespace) -> bool:
    return any(
        v is not None for v in (args.service, args.label, args.entitlement, args.library, args.symbol, args.sql)
    )


def _run_queries(store: QueryStore, args: argparse.Namespace) -> Dict[str, Any]:
    results: Dict[str, Any] = {}
    if args.service is not None:
        detail = store.service(args.service)
        results["service"] = detail.to_json() if detail is not None else None
    if args.label is not None:
        results["label"] = [m.to_json() for m in store.services_by_label(args.label)]
    if args.entitlement is not None and args.symbol is not None:
        matches = store.services_by_entitlement_and_symbol(args.entitlement, args.symbol)
        results["entitlement_and_symbol"] = [m.to_json() for m in matches]
    else:
        if args.entitlement is not None:
            matches = store.services_by_entitlement(args.entitlement, args.value)
            results["entitlement"] = [m.to_json() for m in matches]
        if args.symbol is not None:
            results["symbol"] = [m.to_json() for m in store.services_by_symbol(args.symbol)]
    if args.library is not None:
        results["library"] = [m.to_json() for m in store.services_by_library(args.library)]
    if args.sql is not None:
        results["sql"] = store.execute(args.sql)
    return results


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="launchsurface",
        description="Map entitlements, libraries and imported symbols of launchd services into SQLite.",
    )
    scan = ap.add_argument_group("scan")
    scan.add_argument("--db", default=None, help="Store path (default: launchsurface_<os>_<version>_<build>.sqlite)")
    scan.add_argument("--system-root", default=None, help="Root holding System/Library/Launch* (default: /)")
    scan.add_argument("--rescan", action="store_true", help="Re-run the scan even if the store has services")
    scan.add_argument("--workers", type=int, default=None, help="Extraction threads")
    scan.add_argument("--host-arch", default=None, help="Slice to select from universal binaries (arm64, x86_64, ...)")
    scan.add_argument("--max-binary-size", type=int, default=None, help="Largest executable read, in bytes")
    scan.add_argument("--policy", choices=("replace", "append"), default=None, help="Association handling on rescan")
    scan.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    query = ap.add_argument_group("query")
    query.add_argument("--service", default=None, help="Full facts for one label (case-insensitive)")
    query.add_argument("--label", default=None, help="Services whose label matches a GLOB pattern")
    query.add_argument("--entitlement", default=None, help="Services holding an entitlement (LIKE pattern)")
    query.add_argument("--value", default=None, help="Restrict --entitlement to values matching (LIKE pattern)")
    query.add_argument("--library", default=None, help="Services linking a library by name or path (LIKE pattern)")
    query.add_argument("--symbol", default=None, help="Services importing a symbol (GLOB pattern)")
    query.add_argument("--sql", default=None, help="Arbitrary read-only SQL")
    query.add_argument(
        "--list-stores",
        nargs="?",
        const=".",
        default=None,
        metavar="DIR",
        help="List launchsurface stores in DIR (default: cwd) and exit",
    )
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = build_arg_parser()
    args = ap.parse_args(argv)
    if args.value is not None and args.entitlement is None:
        ap.error("--value requires --entitlement")
    configure_logging(args.verbose)

    if args.list_stores is not None:
        directory = Path(args.list_stores)
        return _emit({"ok": True, "directory": str(directory), "stores": available_stores(directory)})

    try:
        config = ScanConfig.from_env().with_overrides(
            db=args.db,
            system_root=args.system_root,
            workers=args.workers,
            host_arch=args.host_arch,
            max_binary_size=args.max_binary_size,
            policy=args.policy,
        )
    except ValueError as exc:
        return _emit({"ok": False, "error": f"invalid configuration: {exc}"})
    store_path = config.store_path()
    report: Dict[str, Any] = {"ok": True, "store": str(store_path)}

    if args.rescan or not store_has_services(store_path):
        try:
            report["scan"] = run_scan(config).to_json()
        except FatalScanError as exc:
            return _emit({"ok": False, "error": str(exc), "kind": exc.kind, "store": str(store_path)})

    try:
        with QueryStore(store_path) as store:
            if _has_query(args):
                report["results"] = _run_queries(store, args)
            else:
                report["counts"] = store.counts()
    except StoreError as exc:
        return _emit({"ok": False, "error": str(exc), "kind": exc.kind, "store": str(store_path)})
    return _emit(report)


if __name__ == "__main__":
    raise SystemExit(main())
