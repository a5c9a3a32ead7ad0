"""
Small byte/record helpers shared across the Mach-O readers.

These helpers are intentionally low-level and format-structural: every read
is checked against the remaining buffer so a corrupt or adversarial binary
can only ever produce a `Truncated` error, never an out-of-range slice or an
unbounded loop.

Parsers in this package return tagged results (`Ok` / `Err`) to their callers
instead of raising, so the non-fatal error policy is visible at each call
site. `Truncated` is only used internally to unwind a parser to its public
entry point.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Generic, Tuple, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=Exception)

Buffer = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


class Truncated(Exception):
    """A read would run past the end of the buffer (or before its start)."""

    def __init__(self, what: str, offset: int, size: int, available: int) -> None:
        super().__init__(f"truncated {what}: need {size} bytes at {offset:#x}, buffer is {available:#x}")
        self.what = what
        self.offset = offset
        self.size = size
        self.available = available


def check_range(buf: Buffer, offset: int, size: int, what: str) -> None:
    if offset < 0 or size < 0 or offset + size > len(buf):
        raise Truncated(what, offset, size, len(buf))


def unpack_at(fmt: str, buf: Buffer, offset: int, what: str) -> Tuple[int, ...]:
    """`struct.unpack_from` with an explicit bounds check."""
    check_range(buf, offset, struct.calcsize(fmt), what)
    return struct.unpack_from(fmt, buf, offset)


def u32be(buf: Buffer, offset: int, what: str = "u32") -> int:
    return unpack_at(">I", buf, offset, what)[0]


def read_cstring(buf: Buffer, start: int, end: int, what: str) -> str:
    """
    Read a NUL-terminated string from `buf[start:end]`.

    A missing terminator is treated as running to `end` (load-command strings
    are padded, string tables are not always terminated on the last entry).
    Invalid UTF-8 is kept as `\\xNN` escapes so distinct byte strings stay
    distinct.
    """
    end = min(end, len(buf))
    if start < 0 or start > end:
        raise Truncated(what, start, 1, len(buf))
    raw = bytes(buf[start:end])
    nul = raw.find(b"\x00")
    if nul >= 0:
        raw = raw[:nul]
    return raw.decode("utf-8", errors="backslashreplace")


def hex_preview(buf: Buffer, limit: int = 16) -> str:
    return bytes(buf[:limit]).hex()
