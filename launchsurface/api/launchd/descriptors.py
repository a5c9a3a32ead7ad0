"""
launchd descriptor discovery and parsing.

Descriptors live in two fixed directories (agents and daemons) under the
system root. Each `*.plist` there is parsed with `plistlib` (XML and binary
forms) into a `ServiceDefinition`. A file that cannot be read or does not
describe a runnable service raises `DescriptorReadError`; `scan_descriptors`
reports it through `on_error` and moves on.
"""

from __future__ import annotations

import os
import plistlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from xml.parsers.expat import ExpatError

from loguru import logger as log

from launchsurface.api import path_utils
from launchsurface.api.errors import DescriptorReadError
from launchsurface.api.plist_util import canonical_optional, canonical_value

# (on-system directory, domain)
DESCRIPTOR_ROOTS: Tuple[Tuple[str, str], ...] = (
    ("/System/Library/LaunchAgents", "agent"),
    ("/System/Library/LaunchDaemons", "daemon"),
)
DESCRIPTOR_SUFFIX = ".plist"


@dataclass(frozen=True)
class ServiceDefinition:
    label: str
    program: str
    plist_path: str  # on-system path of the descriptor
    domain: str
    program_arguments: Tuple[str, ...] = ()
    run_as_user: Optional[str] = None
    run_at_load: bool = False
    keep_alive: Any = None  # raw: bool or condition dict, not interpreted
    mach_services: Dict[str, Any] = field(default_factory=dict)


def _invocation(plist: Dict[str, Any]) -> Tuple[str, Tuple[str, ...]]:
    program = plist.get("Program")
    args = plist.get("ProgramArguments")
    if args is not None:
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise DescriptorReadError("ProgramArguments must be a list of strings")
    arguments = tuple(args or ())
    if program is not None:
        if not isinstance(program, str) or not program:
            raise DescriptorReadError("Program must be a non-empty string")
        return program, arguments
    if arguments and arguments[0]:
        return arguments[0], arguments
    raise DescriptorReadError("no Program or ProgramArguments[0]")


def definition_from_plist(plist: Any, *, plist_path: str, domain: str) -> ServiceDefinition:
    """Validate a loaded plist and build the typed definition."""
    if not isinstance(plist, dict):
        raise DescriptorReadError(f"top level is {type(plist).__name__}, expected dict", path=plist_path)
    label = plist.get("Label")
    if not isinstance(label, str) or not label:
        raise DescriptorReadError("missing or empty Label", path=plist_path)
    try:
        program, arguments = _invocation(plist)
        user = plist.get("UserName")
        if user is not None and not isinstance(user, str):
            raise DescriptorReadError("UserName must be a string")
        run_at_load = plist.get("RunAtLoad", False)
        if not isinstance(run_at_load, bool):
            raise DescriptorReadError("RunAtLoad must be a boolean")
        mach = plist.get("MachServices", {})
        if not isinstance(mach, dict):
            raise DescriptorReadError("MachServices must be a dictionary")
        if not all(isinstance(k, str) for k in mach):
            raise DescriptorReadError("MachServices keys must be strings")
        keep_alive = plist.get("KeepAlive")
        try:
            # ingest stores these as canonical text
            canonical_optional(keep_alive)
            for value in mach.values():
                canonical_value(value)
        except ValueError as exc:
            raise DescriptorReadError(f"unstorable KeepAlive or MachServices value: {exc}") from exc
    except DescriptorReadError as exc:
        raise exc.with_context(path=plist_path, label=label)
    return ServiceDefinition(
        label=label,
        program=program,
        plist_path=plist_path,
        domain=domain,
        program_arguments=arguments,
        run_as_user=user,
        run_at_load=run_at_load,
        keep_alive=keep_alive,
        mach_services=dict(sorted(mach.items())),
    )


def parse_descriptor(path: Path, *, domain: str, system_root: Path = Path("/")) -> ServiceDefinition:
    plist_path = path_utils.to_system_path(path, system_root)
    try:
        with open(path, "rb") as fh:
            plist = plistlib.load(fh)
    except OSError as exc:
        raise DescriptorReadError(f"unreadable descriptor: {exc.strerror or exc}", path=plist_path) from exc
    except (
        plistlib.InvalidFileException,
        ExpatError,
        ValueError,
        OverflowError,
        EOFError,
        TypeError,  # unhashable key in a binary plist dict
        RecursionError,
    ) as exc:
        raise DescriptorReadError(f"malformed plist: {exc}", path=plist_path) from exc
    return definition_from_plist(plist, plist_path=plist_path, domain=domain)


def readable_roots(system_root: Path) -> List[Tuple[Path, str]]:
    roots: List[Tuple[Path, str]] = []
    for rel, domain in DESCRIPTOR_ROOTS:
        root = path_utils.ensure_absolute(rel, system_root)
        if root.is_dir() and os.access(root, os.R_OK | os.X_OK):
            roots.append((root, domain))
        else:
            log.warning("descriptor root not readable: {}", root)
    return roots


def _descriptor_files(root: Path) -> List[Path]:
    try:
        entries = sorted(root.iterdir())
    except OSError as exc:
        log.warning("cannot list {}: {}", root, exc)
        return []
    return [p for p in entries if p.suffix == DESCRIPTOR_SUFFIX and not p.name.startswith(".") and p.is_file()]


def scan_descriptors(
    system_root: Path,
    *,
    roots: Optional[List[Tuple[Path, str]]] = None,
    on_error: Optional[Callable[[DescriptorReadError], None]] = None,
) -> Iterator[ServiceDefinition]:
    """
    Yield a definition for every valid descriptor under the fixed roots.

    Lazy and single-pass; call again for a fresh enumeration.
    """
    for root, domain in roots if roots is not None else readable_roots(system_root):
        for path in _descriptor_files(root):
            try:
                yield parse_descriptor(path, domain=domain, system_root=system_root)
            except DescriptorReadError as exc:
                if on_error is not None:
                    on_error(exc)
                else:
                    log.warning("skipping descriptor: {}", exc)
