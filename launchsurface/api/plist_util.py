"""
Canonical string forms for property-list values.

Descriptor attributes (KeepAlive, MachServices values) and entitlement values
are stored as text. The same plist value must always map to the same string
so rescans converge on identical rows.
"""

from __future__ import annotations

import datetime as dt
import json
import plistlib
from typing import Any, Optional


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dt.datetime):
        return value.isoformat()
    if isinstance(value, plistlib.UID):
        return value.data
    raise TypeError(f"unserializable plist value of type {type(value).__name__}")


def canonical_value(value: Any) -> str:
    """
    Bools lowercase, numbers via str(), data as hex, containers as compact sorted JSON.

    Raises ValueError for containers JSON cannot order or nest (mixed key
    types from a binary plist, runaway nesting).
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dt.datetime):
        return value.isoformat()
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_json_default)
    except (TypeError, RecursionError) as exc:
        raise ValueError(f"cannot canonicalize {type(value).__name__}: {exc}") from exc


def canonical_optional(value: Any) -> Optional[str]:
    return None if value is None else canonical_value(value)
