"""Vision model response parsing."""

from invoicecrop.extract.bbox_parser import BboxExtractor, extract_regions

__all__ = [
    "BboxExtractor",
    "extract_regions",
]
