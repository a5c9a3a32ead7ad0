"""
Scan pipeline: descriptors -> executables -> signature/imports -> store.

Extraction (resolution, Mach-O parsing, signature and import analysis) is
read-only and runs on a thread pool. Ingestion runs on the calling thread in
descriptor order, one transaction per service. Per-service failures become
`ScanIssue` records; only `FatalScanError` ends a scan early.
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

from loguru import logger as log

from launchsurface.api.errors import ExtractionError, FatalScanError, SignatureParseError, StoreError, SurfaceError
from launchsurface.api.launchd.descriptors import ServiceDefinition, readable_roots, scan_descriptors
from launchsurface.api.macho import fat
from launchsurface.api.macho.bytes_util import Err
from launchsurface.api.macho.codesign import entitlement_rows, extract_entitlements
from launchsurface.api.macho.imports import LinkedLibrary, analyze_imports
from launchsurface.api.macho.loader import parse_image
from launchsurface.api.resolver import resolve_executable
from launchsurface.api.store.ingest import AssociationPolicy, Ingestor, ServiceFacts
from launchsurface.api.store.schema import open_store
from launchsurface.api.surface.config import ScanConfig


@dataclass(frozen=True)
class ScanIssue:
    kind: str
    message: str
    path: Optional[str] = None
    label: Optional[str] = None

    @classmethod
    def from_error(cls, exc: SurfaceError) -> "ScanIssue":
        return cls(kind=exc.kind, message=exc.message, path=exc.path, label=exc.label)

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ServiceExtraction:
    """What one worker learned about one service."""

    definition: ServiceDefinition
    binary_path: Optional[str] = None
    arch: Optional[str] = None
    signed: bool = False
    identifier: Optional[str] = None
    hardened_runtime: bool = False
    entitlements: List[Tuple[str, str]] = field(default_factory=list)
    libraries: List[LinkedLibrary] = field(default_factory=list)
    symbols: List[str] = field(default_factory=list)
    issues: List[ScanIssue] = field(default_factory=list)

    def facts(self) -> ServiceFacts:
        return ServiceFacts(
            definition=self.definition,
            entitlements=tuple(self.entitlements),
            libraries=tuple(self.libraries),
            symbols=tuple(self.symbols),
        )


def extract_service(
    definition: ServiceDefinition,
    *,
    system_root: Path,
    host: fat.HostArch,
    max_size: int,
) -> ServiceExtraction:
    """
    Resolve, parse and analyze one service's executable. Never raises.

    Parser failures arrive as `Err` results. Anything else escaping the
    parsers is recorded as an `ExtractionError` so it costs only this service.
    """
    try:
        return _extract(definition, system_root=system_root, host=host, max_size=max_size)
    except Exception as exc:
        log.opt(exception=exc).debug("extraction of {} failed", definition.label)
        err = ExtractionError(f"{type(exc).__name__}: {exc}", path=definition.program, label=definition.label)
        return ServiceExtraction(definition=definition, issues=[ScanIssue.from_error(err)])


def _extract(
    definition: ServiceDefinition,
    *,
    system_root: Path,
    host: fat.HostArch,
    max_size: int,
) -> ServiceExtraction:
    out = ServiceExtraction(definition=definition)
    resolved = resolve_executable(definition, system_root=system_root, host_arch=host, max_size=max_size)
    if isinstance(resolved, Err):
        out.issues.append(ScanIssue.from_error(resolved.error))
        return out
    binary = resolved.value
    out.binary_path = binary.resolved_path
    out.arch = binary.arch

    parsed = parse_image(binary.data)
    if isinstance(parsed, Err):
        err = parsed.error.with_context(path=binary.resolved_path, label=definition.label)
        out.issues.append(ScanIssue.from_error(err))
        return out
    image = parsed.value

    # Signature and imports are independent: one failing leaves the other intact.
    sig = extract_entitlements(image)
    if isinstance(sig, Err):
        err = sig.error.with_context(path=binary.resolved_path, label=definition.label)
        out.issues.append(ScanIssue.from_error(err))
    else:
        info = sig.value
        out.signed = info.signed
        out.identifier = info.identifier
        out.hardened_runtime = info.hardened_runtime
        try:
            out.entitlements = entitlement_rows(info.entitlements)
        except SignatureParseError as exc:
            err = exc.with_context(path=binary.resolved_path, label=definition.label)
            out.issues.append(ScanIssue.from_error(err))
        if info.has_der_entitlements and not info.entitlements:
            log.debug("{}: DER entitlements only, not decoded", definition.label)

    imports = analyze_imports(image)
    if isinstance(imports, Err):
        err = imports.error.with_context(path=binary.resolved_path, label=definition.label)
        out.issues.append(ScanIssue.from_error(err))
    else:
        out.libraries = list(imports.value.libraries)
        out.symbols = list(imports.value.symbols)
    return out


@dataclass
class ScanReport:
    store: str
    system_root: str
    host_arch: str
    policy: str
    descriptors: int = 0
    ingested: int = 0
    signed: int = 0
    cancelled: bool = False
    pruned: Dict[str, int] = field(default_factory=dict)
    issues: List[ScanIssue] = field(default_factory=list)

    def issue_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for issue in self.issues:
            counts[issue.kind] = counts.get(issue.kind, 0) + 1
        return dict(sorted(counts.items()))

    def to_json(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "store": self.store,
            "system_root": self.system_root,
            "host_arch": self.host_arch,
            "policy": self.policy,
            "descriptors": self.descriptors,
            "ingested": self.ingested,
            "signed": self.signed,
            "cancelled": self.cancelled,
            "pruned": self.pruned,
            "issue_counts": self.issue_counts(),
            "issues": [i.to_json() for i in self.issues],
        }


def _record(report: ScanReport, issue: ScanIssue) -> None:
    report.issues.append(issue)
    where = ", ".join(f"{k}={v}" for k, v in (("label", issue.label), ("path", issue.path)) if v)
    log.warning("{}: {} ({})", issue.kind, issue.message, where or "no context")


def run_scan(config: ScanConfig, *, cancel: Optional[threading.Event] = None) -> ScanReport:
    """
    Run the full pipeline against `config.system_root` into `config.store_path()`.

    Raises FatalScanError when the host architecture is unknown, neither
    descriptor root is readable, or the store cannot be opened.
    """
    try:
        host = fat.host_arch(config.host_arch)
    except ValueError as exc:
        raise FatalScanError(str(exc)) from exc
    store_path = config.store_path()
    report = ScanReport(
        store=str(store_path),
        system_root=str(config.system_root),
        host_arch=host.name,
        policy=config.policy.value,
    )

    roots = readable_roots(config.system_root)
    if not roots:
        raise FatalScanError("no descriptor root is readable", path=config.system_root)
    try:
        conn = open_store(store_path)
    except StoreError as exc:
        raise FatalScanError(f"store cannot be opened: {exc.message}", path=store_path) from exc

    workers = max(1, config.workers)
    window_size = 2 * workers
    seen: List[str] = []
    log.info("scanning {} into {} ({} workers, host {})", config.system_root, store_path, workers, host.name)
    try:
        ingestor = Ingestor(conn, config.policy)
        descriptors = scan_descriptors(
            config.system_root,
            roots=roots,
            on_error=lambda exc: _record(report, ScanIssue.from_error(exc)),
        )
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="launchsurface") as pool:
            window: Deque[Future] = deque()
            exhausted = False
            while True:
                while not exhausted and len(window) < window_size and not (cancel and cancel.is_set()):
                    definition = next(descriptors, None)
                    if definition is None:
                        exhausted = True
                        break
                    report.descriptors += 1
                    seen.append(definition.plist_path)
                    window.append(
                        pool.submit(
                            extract_service,
                            definition,
                            system_root=config.system_root,
                            host=host,
                            max_size=config.max_binary_size,
                        )
                    )
                if not window:
                    break
                extraction: ServiceExtraction = window.popleft().result()
                for issue in extraction.issues:
                    _record(report, issue)
                try:
                    ingestor.ingest(extraction.facts())
                except StoreError as exc:
                    _record(report, ScanIssue.from_error(exc))
                else:
                    report.ingested += 1
                    report.signed += int(extraction.signed)
                    log.debug(
                        "{} [{}] {}: {} entitlements, {} libraries, {} symbols (identifier={}, hardened={})",
                        extraction.definition.label,
                        extraction.definition.domain,
                        extraction.arch or "thin",
                        len(extraction.entitlements),
                        len(extraction.libraries),
                        len(extraction.symbols),
                        extraction.identifier,
                        extraction.hardened_runtime,
                    )
                if cancel is not None and cancel.is_set():
                    for pending in window:
                        pending.cancel()
                    window.clear()
                    report.cancelled = True
                    log.info("scan cancelled after {} services", report.ingested)
                    break
        if cancel is not None and cancel.is_set() and not exhausted:
            report.cancelled = True

        if not report.cancelled and config.policy is AssociationPolicy.REPLACE:
            try:
                report.pruned = ingestor.prune(seen)
            except StoreError as exc:
                _record(report, ScanIssue.from_error(exc))
    finally:
        conn.close()

    log.info(
        "scan finished: {} descriptors, {} ingested, {} issues",
        report.descriptors,
        report.ingested,
        len(report.issues),
    )
    return report
