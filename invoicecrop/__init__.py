"""
invoicecrop: locate invoices on scanned pages with a vision model and
crop each one out as its own image.

This package provides:
- Multi-strategy parsing of free-form model answers into boxes
- Coordinate-space inference (pixels, 0-1 ratios, 0-1000 grid)
- Bounds validation and padded cropping
- A per-page job pipeline with progress tracking, CLI and HTTP API
"""

__version__ = "0.1.0"
__author__ = "invoicecrop Team"

from invoicecrop.config import Config, load_config
from invoicecrop.types import (
    CoordinateSpace,
    Job,
    JobStatus,
    PageResult,
    RawRegion,
    RegionArtifact,
)

__all__ = [
    "Config",
    "load_config",
    "CoordinateSpace",
    "Job",
    "JobStatus",
    "PageResult",
    "RawRegion",
    "RegionArtifact",
    "__version__",
]
