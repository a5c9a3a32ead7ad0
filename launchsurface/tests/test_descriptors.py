import plistlib
from pathlib import Path

import pytest

from launchsurface.api.errors import DescriptorReadError
from launchsurface.api.launchd import descriptors
from launchsurface.api.launchd.descriptors import definition_from_plist, parse_descriptor, scan_descriptors
from launchsurface.api.launchd.host import read_os_identity

from macho_builder import bplist


def test_parse_xml_descriptor(system_tree):
    path = system_tree.descriptor(
        "com.apple.exampled.plist",
        {
            "Label": "com.apple.exampled",
            "ProgramArguments": ["/usr/libexec/exampled", "--daemon"],
            "UserName": "_example",
            "RunAtLoad": True,
            "KeepAlive": {"SuccessfulExit": False},
            "MachServices": {"com.apple.exampled.xpc": True, "com.apple.exampled.a": {"ResetAtClose": True}},
        },
    )
    d = parse_descriptor(path, domain="daemon", system_root=system_tree.root)
    assert d.label == "com.apple.exampled"
    assert d.program == "/usr/libexec/exampled"
    assert d.program_arguments == ("/usr/libexec/exampled", "--daemon")
    assert d.run_as_user == "_example"
    assert d.run_at_load is True
    assert d.keep_alive == {"SuccessfulExit": False}
    assert list(d.mach_services) == ["com.apple.exampled.a", "com.apple.exampled.xpc"]
    assert d.plist_path == "/System/Library/LaunchDaemons/com.apple.exampled.plist"
    assert d.domain == "daemon"


def test_parse_binary_descriptor(system_tree):
    path = system_tree.descriptor(
        "com.apple.binary.plist",
        {"Label": "com.apple.binary", "Program": "/usr/sbin/binaryd"},
        domain="agent",
        fmt=plistlib.FMT_BINARY,
    )
    d = parse_descriptor(path, domain="agent", system_root=system_tree.root)
    assert d.program == "/usr/sbin/binaryd"
    assert d.plist_path == "/System/Library/LaunchAgents/com.apple.binary.plist"
    assert d.run_at_load is False
    assert d.mach_services == {}


def test_program_takes_precedence_over_arguments():
    d = definition_from_plist(
        {"Label": "x", "Program": "/usr/libexec/real", "ProgramArguments": ["/bin/sh", "-c", "true"]},
        plist_path="/x.plist",
        domain="daemon",
    )
    assert d.program == "/usr/libexec/real"
    assert d.program_arguments == ("/bin/sh", "-c", "true")


@pytest.mark.parametrize(
    "plist,fragment",
    [
        (["not", "a", "dict"], "expected dict"),
        ({"Program": "/bin/x"}, "Label"),
        ({"Label": ""}, "Label"),
        ({"Label": "x"}, "no Program"),
        ({"Label": "x", "ProgramArguments": []}, "no Program"),
        ({"Label": "x", "ProgramArguments": [1, 2]}, "list of strings"),
        ({"Label": "x", "Program": "/bin/x", "UserName": 0}, "UserName"),
        ({"Label": "x", "Program": "/bin/x", "RunAtLoad": "yes"}, "RunAtLoad"),
        ({"Label": "x", "Program": "/bin/x", "MachServices": ["a"]}, "MachServices"),
    ],
)
def test_invalid_definitions(plist, fragment):
    with pytest.raises(DescriptorReadError) as info:
        definition_from_plist(plist, plist_path="/Library/x.plist", domain="daemon")
    assert fragment in info.value.message
    assert info.value.path == "/Library/x.plist"


def test_malformed_plist_raises_descriptor_error(system_tree):
    path = system_tree.raw_descriptor("broken.plist", b"<?xml version='1.0'?><plist><dict><key>Label")
    with pytest.raises(DescriptorReadError) as info:
        parse_descriptor(path, domain="daemon", system_root=system_tree.root)
    assert info.value.path == "/System/Library/LaunchDaemons/broken.plist"


def test_missing_file_raises_descriptor_error(tmp_path):
    with pytest.raises(DescriptorReadError):
        parse_descriptor(tmp_path / "absent.plist", domain="daemon", system_root=tmp_path)


def test_scan_skips_bad_descriptors_and_reports_each_once(system_tree):
    for idx in range(4):
        system_tree.service(f"com.apple.svc{idx}", None)
    system_tree.raw_descriptor("truncated.plist", b"bplist00\x00\x01")
    system_tree.raw_descriptor("notes.txt", b"ignored")
    system_tree.raw_descriptor(".hidden.plist", b"ignored")
    system_tree.service("com.apple.agent", None, domain="agent")

    errors = []
    found = list(scan_descriptors(system_tree.root, on_error=errors.append))
    labels = [d.label for d in found]
    # agents first, then daemons, each sorted by file name
    assert labels == ["com.apple.agent", "com.apple.svc0", "com.apple.svc1", "com.apple.svc2", "com.apple.svc3"]
    assert len(errors) == 1
    assert errors[0].path == "/System/Library/LaunchDaemons/truncated.plist"


def test_scan_is_a_fresh_enumeration_each_call(system_tree):
    system_tree.service("com.apple.one", None)
    first = scan_descriptors(system_tree.root)
    assert [d.label for d in first] == ["com.apple.one"]
    assert list(first) == []
    assert [d.label for d in scan_descriptors(system_tree.root)] == ["com.apple.one"]


def test_readable_roots_warns_for_missing_root(tmp_path):
    (tmp_path / "System/Library/LaunchDaemons").mkdir(parents=True)
    roots = descriptors.readable_roots(tmp_path)
    assert roots == [(tmp_path / "System/Library/LaunchDaemons", "daemon")]


def test_os_identity_from_system_version(tmp_path):
    target = tmp_path / "System/Library/CoreServices/SystemVersion.plist"
    target.parent.mkdir(parents=True)
    target.write_bytes(
        plistlib.dumps({"ProductName": "macOS", "ProductVersion": "14.4.1", "ProductBuildVersion": "23E224"})
    )
    identity = read_os_identity(tmp_path)
    assert identity.slug() == "macOS_14.4.1_23E224"
    assert read_os_identity(Path(tmp_path / "elsewhere")) is None


@pytest.mark.parametrize(
    "extra,fragment",
    [
        ({"MachServices": {1: True, "com.apple.weird.xpc": True}}, "keys must be strings"),
        ({"KeepAlive": {"PathState": {1: True, "a": False}}}, "unstorable KeepAlive"),
    ],
)
def test_binary_descriptor_with_non_string_keys(system_tree, extra, fragment):
    plist = {"Label": "com.apple.weird", "Program": "/usr/libexec/weird"}
    plist.update(extra)
    path = system_tree.raw_descriptor("com.apple.weird.plist", bplist(plist))
    with pytest.raises(DescriptorReadError) as info:
        parse_descriptor(path, domain="daemon", system_root=system_tree.root)
    assert fragment in info.value.message
    assert info.value.label == "com.apple.weird"


def test_binary_descriptor_with_hand_encoded_keys_parses(system_tree):
    plist = {"Label": "com.apple.plain", "Program": "/usr/libexec/plain", "MachServices": {"b": True, "a": 1}}
    path = system_tree.raw_descriptor("com.apple.plain.plist", bplist(plist))
    definition = parse_descriptor(path, domain="daemon", system_root=system_tree.root)
    assert list(definition.mach_services) == ["a", "b"]
