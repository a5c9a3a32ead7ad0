import sqlite3
import threading

import pytest

from loguru import logger

from launchsurface.api.errors import FatalScanError
from launchsurface.api.macho import constants as C
from launchsurface.api.store.schema import TABLES
from launchsurface.api.surface import pipeline
from launchsurface.api.surface.pipeline import run_scan

from macho_builder import blob, bplist, build_fat, build_macho, code_directory, superblob

LIBSYSTEM = "/usr/lib/libSystem.B.dylib"


def _snapshot(db):
    conn = sqlite3.connect(str(db))
    try:
        return {table: sorted(conn.execute(f"SELECT * FROM {table}").fetchall(), key=repr) for table in TABLES}
    finally:
        conn.close()


def _populate(tree):
    tree.service(
        "com.apple.tccd",
        build_macho(
            libraries=[LIBSYSTEM, "/System/Library/Frameworks/Security.framework/Versions/A/Security"],
            imports=["_xpc_connection_create", "_SecTaskCopyValueForEntitlement"],
            entitlements={"com.apple.private.tcc.allow": ["a", "b"], "com.apple.private.tcc.manager": True},
            identifier="com.apple.tccd",
        ),
        extra={"MachServices": {"com.apple.tccd": True}, "RunAtLoad": True},
    )
    tree.service(
        "com.apple.unsigned",
        build_macho(libraries=[LIBSYSTEM], imports=["_open"]),
        domain="agent",
        extra={"KeepAlive": True},
    )
    tree.service(
        "com.apple.universal",
        build_fat(
            [
                (C.CPU_TYPE_X86_64, C.CPU_SUBTYPE_X86_64_ALL, build_macho(cputype=C.CPU_TYPE_X86_64, imports=["_intel_only"])),
                (C.CPU_TYPE_ARM64, C.CPU_SUBTYPE_ARM64E, build_macho(libraries=[LIBSYSTEM], imports=["_arm_only"])),
            ]
        ),
    )
    tree.service("com.apple.missing", None)


def test_scan_populates_store(system_tree, scan_config):
    _populate(system_tree)
    report = run_scan(scan_config)
    assert report.descriptors == 4
    assert report.ingested == 4
    assert report.signed == 1
    assert not report.cancelled
    assert [i.kind for i in report.issues] == ["ResolutionError"]
    assert report.issues[0].label == "com.apple.missing"

    conn = sqlite3.connect(str(scan_config.db))
    labels = [r[0] for r in conn.execute("SELECT label FROM service ORDER BY label")]
    assert labels == ["com.apple.missing", "com.apple.tccd", "com.apple.universal", "com.apple.unsigned"]
    # one library row shared by three services
    assert conn.execute("SELECT COUNT(*) FROM library WHERE path = ?", (LIBSYSTEM,)).fetchone()[0] == 1
    assert conn.execute("SELECT COUNT(*) FROM service_library sl JOIN library l ON l.id = sl.library_id WHERE l.path = ?", (LIBSYSTEM,)).fetchone()[0] == 3
    conn.close()


def test_entitlement_array_fans_out(system_tree, scan_config):
    _populate(system_tree)
    run_scan(scan_config)
    conn = sqlite3.connect(str(scan_config.db))
    rows = conn.execute(
        """
        SELECT e.id, se.value FROM service_entitlement se
        JOIN entitlement e ON e.id = se.entitlement_id
        WHERE e.name = 'com.apple.private.tcc.allow' ORDER BY se.value
        """
    ).fetchall()
    conn.close()
    assert [v for _, v in rows] == ["a", "b"]
    assert rows[0][0] == rows[1][0]


def test_unsigned_binary_has_no_entitlements(system_tree, scan_config):
    _populate(system_tree)
    run_scan(scan_config)
    conn = sqlite3.connect(str(scan_config.db))
    count = conn.execute(
        "SELECT COUNT(*) FROM service_entitlement se JOIN service s ON s.id = se.service_id WHERE s.label = ?",
        ("com.apple.unsigned",),
    ).fetchone()[0]
    symbols = [r[0] for r in conn.execute(
        "SELECT y.name FROM symbol y JOIN service_symbol ss ON ss.symbol_id = y.id "
        "JOIN service s ON s.id = ss.service_id WHERE s.label = ?",
        ("com.apple.unsigned",),
    )]
    conn.close()
    assert count == 0
    assert symbols == ["open"]


def test_fat_binary_uses_host_slice_only(system_tree, scan_config):
    _populate(system_tree)
    run_scan(scan_config)
    conn = sqlite3.connect(str(scan_config.db))
    names = {r[0] for r in conn.execute("SELECT name FROM symbol")}
    conn.close()
    assert "arm_only" in names
    assert "intel_only" not in names


def test_rescan_is_idempotent(system_tree, scan_config):
    _populate(system_tree)
    run_scan(scan_config)
    first = _snapshot(scan_config.db)
    report = run_scan(scan_config)
    assert _snapshot(scan_config.db) == first
    assert report.pruned == {"service": 0, "entitlement": 0, "library": 0, "symbol": 0}


def test_rescan_prunes_vanished_descriptor(system_tree, scan_config):
    _populate(system_tree)
    run_scan(scan_config)
    (system_tree.root / "System/Library/LaunchDaemons/com.apple.tccd.plist").unlink()
    report = run_scan(scan_config)
    assert report.pruned["service"] == 1
    conn = sqlite3.connect(str(scan_config.db))
    assert conn.execute("SELECT COUNT(*) FROM entitlement").fetchone()[0] == 0
    assert conn.execute("SELECT COUNT(*) FROM mach_service").fetchone()[0] == 0
    conn.close()


def test_malformed_descriptor_logged_once(system_tree, scan_config):
    for idx in range(3):
        system_tree.service(f"com.apple.svc{idx}", build_macho(imports=["_open"]))
    system_tree.raw_descriptor("com.apple.broken.plist", b"<?xml version='1.0'?><plist><dict><key>Label</key>")

    messages = []
    handler = logger.add(lambda m: messages.append(str(m)), level="WARNING", format="{message}")
    try:
        report = run_scan(scan_config)
    finally:
        logger.remove(handler)

    assert report.ingested == 3
    kinds = [i.kind for i in report.issues]
    assert kinds == ["DescriptorReadError"]
    assert report.issue_counts() == {"DescriptorReadError": 1}
    assert sum("DescriptorReadError" in m for m in messages) == 1


def test_signature_failure_keeps_imports(system_tree, scan_config):
    bad_sig = superblob([(C.CSSLOT_CODEDIRECTORY, b"\x12\x34\x56\x78\x00\x00\x00\x08")])
    system_tree.service("com.apple.badsig", build_macho(imports=["_open"], signature_blob=bad_sig))
    report = run_scan(scan_config)
    assert [i.kind for i in report.issues] == ["SignatureParseError"]
    assert report.issues[0].path == "/usr/libexec/com.apple.badsig"
    conn = sqlite3.connect(str(scan_config.db))
    assert conn.execute("SELECT COUNT(*) FROM service_symbol").fetchone()[0] == 1
    conn.close()


def test_corrupt_binary_ingested_without_facts(system_tree, scan_config):
    system_tree.service("com.apple.garbage", b"\x00" * 64)
    report = run_scan(scan_config)
    assert [i.kind for i in report.issues] == ["ImportParseError"]
    assert report.ingested == 1


def test_no_readable_root_is_fatal(tmp_path):
    config = pipeline.ScanConfig(system_root=tmp_path / "empty", db=tmp_path / "s.sqlite", host_arch="arm64")
    with pytest.raises(FatalScanError):
        run_scan(config)
    assert not (tmp_path / "s.sqlite").exists()


def test_unopenable_store_is_fatal(system_tree, scan_config, tmp_path):
    config = scan_config.with_overrides(db=tmp_path / "no-such-dir" / "s.sqlite")
    with pytest.raises(FatalScanError) as info:
        run_scan(config)
    assert "store cannot be opened" in info.value.message


def test_unknown_host_arch_is_fatal(scan_config):
    with pytest.raises(FatalScanError):
        run_scan(scan_config.with_overrides(host_arch="sparc"))


def test_cancelled_scan_stops_between_services(system_tree, scan_config):
    for idx in range(6):
        system_tree.service(f"com.apple.svc{idx}", build_macho(imports=["_open"]))
    cancel = threading.Event()
    cancel.set()
    report = run_scan(scan_config, cancel=cancel)
    assert report.cancelled
    assert report.ingested == 0
    assert report.pruned == {}


def test_cancel_after_first_service_keeps_committed_rows(system_tree, scan_config, monkeypatch):
    for idx in range(6):
        system_tree.service(f"com.apple.svc{idx}", build_macho(imports=["_open"]))
    cancel = threading.Event()
    original = pipeline.Ingestor.ingest

    def ingest_then_cancel(self, facts):
        service_id = original(self, facts)
        cancel.set()
        return service_id

    monkeypatch.setattr(pipeline.Ingestor, "ingest", ingest_then_cancel)
    report = run_scan(scan_config.with_overrides(workers=1), cancel=cancel)
    assert report.cancelled
    assert report.ingested == 1
    conn = sqlite3.connect(str(scan_config.db))
    assert [r[0] for r in conn.execute("SELECT label FROM service")] == ["com.apple.svc0"]
    conn.close()


def test_binary_descriptor_with_mixed_keys_is_skipped(system_tree, scan_config):
    system_tree.service("com.apple.good", build_macho(imports=["_open"]))
    system_tree.raw_descriptor(
        "com.apple.weird.plist",
        bplist({"Label": "com.apple.weird", "Program": "/usr/libexec/weird", "MachServices": {1: True, "a": True}}),
    )
    report = run_scan(scan_config)
    assert report.ingested == 1
    assert report.issue_counts() == {"DescriptorReadError": 1}
    assert report.issues[0].label == "com.apple.weird"


def test_entitlements_with_non_string_keys_cost_only_entitlements(system_tree, scan_config):
    sig = superblob(
        [
            (C.CSSLOT_CODEDIRECTORY, code_directory("com.apple.oddents")),
            (C.CSSLOT_ENTITLEMENTS, blob(C.CSMAGIC_EMBEDDED_ENTITLEMENTS, bplist({1: True, "com.x": True}))),
        ]
    )
    system_tree.service("com.apple.oddents", build_macho(imports=["_open"], signature_blob=sig))
    system_tree.service("com.apple.fine", build_macho(imports=["_close"]))
    report = run_scan(scan_config)
    assert report.ingested == 2
    assert [i.kind for i in report.issues] == ["SignatureParseError"]
    conn = sqlite3.connect(str(scan_config.db))
    assert conn.execute("SELECT COUNT(*) FROM service_entitlement").fetchone()[0] == 0
    assert conn.execute("SELECT COUNT(*) FROM service_symbol").fetchone()[0] == 2
    conn.close()


def test_unexpected_worker_exception_is_a_service_issue(system_tree, scan_config, monkeypatch):
    system_tree.service("com.apple.first", build_macho(imports=["_open"]))
    system_tree.service("com.apple.second", build_macho(imports=["_close"]))
    original = pipeline.analyze_imports

    def explode_on_close(image):
        result = original(image)
        if result.ok and "close" in result.value.symbols:
            raise RuntimeError("analyzer bug")
        return result

    monkeypatch.setattr(pipeline, "analyze_imports", explode_on_close)
    report = run_scan(scan_config)
    assert report.ingested == 2
    assert [(i.kind, i.label) for i in report.issues] == [("ExtractionError", "com.apple.second")]
    assert "RuntimeError: analyzer bug" in report.issues[0].message


def test_hardened_runtime_reported_in_debug_log(system_tree, scan_config):
    system_tree.service("com.apple.hardened", build_macho(identifier="com.apple.hardened", cd_flags=C.CS_RUNTIME))
    messages = []
    handler = logger.add(lambda m: messages.append(str(m)), level="DEBUG", format="{message}")
    try:
        run_scan(scan_config)
    finally:
        logger.remove(handler)
    assert any("com.apple.hardened" in m and "hardened=True" in m for m in messages)
