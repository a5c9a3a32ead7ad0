"""
Scan orchestration: configuration, the extraction pipeline and the CLI.
"""

from launchsurface.api.surface.config import ScanConfig
from launchsurface.api.surface.pipeline import (
    ScanIssue,
    ScanReport,
    ServiceExtraction,
    extract_service,
    run_scan,
)

__all__ = [
    "ScanConfig",
    "ScanIssue",
    "ScanReport",
    "ServiceExtraction",
    "extract_service",
    "run_scan",
]
