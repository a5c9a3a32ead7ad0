"""
Error taxonomy for the launchd attack-surface scan.

Every per-file or per-service failure is one of the `SurfaceError`
subclasses below. They carry enough context (file path, service label) to
diagnose a problem from the scan report alone. Only `FatalScanError` stops a
scan; everything else is recorded and the batch continues.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

Pathish = Union[str, Path]


class SurfaceError(Exception):
    """Base error for descriptor, binary and store failures."""

    kind = "SurfaceError"

    def __init__(self, message: str, *, path: Optional[Pathish] = None, label: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = str(path) if path is not None else None
        self.label = label

    def with_context(self, *, path: Optional[Pathish] = None, label: Optional[str] = None) -> "SurfaceError":
        """Fill in path/label when the raising site did not know them."""
        if path is not None and self.path is None:
            self.path = str(path)
        if label is not None and self.label is None:
            self.label = label
        return self

    def __str__(self) -> str:
        where = []
        if self.label:
            where.append(f"label={self.label}")
        if self.path:
            where.append(f"path={self.path}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"


class DescriptorReadError(SurfaceError):
    """Raised when a descriptor file is missing, unreadable or malformed."""

    kind = "DescriptorReadError"


class ResolutionError(SurfaceError):
    """Raised when a service's executable cannot be located, read or sliced."""

    kind = "ResolutionError"


class SignatureParseError(SurfaceError):
    """Raised when an embedded code-signature superblob is corrupt."""

    kind = "SignatureParseError"


class ImportParseError(SurfaceError):
    """Raised when Mach-O headers, load commands or symbol tables are corrupt."""

    kind = "ImportParseError"


class ExtractionError(SurfaceError):
    """Raised when extracting one service fails outside the parsers' own checks."""

    kind = "ExtractionError"


class StoreError(SurfaceError):
    """Raised when a store transaction fails or the store cannot be opened."""

    kind = "StoreError"


class FatalScanError(SurfaceError):
    """Raised when no descriptor root is readable or the store is unusable."""

    kind = "FatalScanError"
