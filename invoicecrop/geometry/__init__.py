"""Coordinate resolution and bounds validation."""

from invoicecrop.geometry.coordinates import CoordinateResolver, round_half_up
from invoicecrop.geometry.validator import RegionValidator

__all__ = [
    "CoordinateResolver",
    "RegionValidator",
    "round_half_up",
]
