"""
Coordinate-space inference and rescaling.

The model is told to answer on a 0-1000 grid, but it also emits plain
ratios in [0, 1] and, occasionally, literal pixel coordinates. Nothing in
the response says which one it used, so the space is inferred per region
from the numbers themselves and the page size:

1. Ratios: all values <= ratio_ceiling, the source text had a decimal
   point, and x1 or y1 is non-zero.
2. 0-1000 grid: max value <= normalized_ceiling, and either the page is
   large or the box overshoots the page in pixel terms.
3. Pixels: everything else.
"""

import math
from typing import Optional, Sequence

from loguru import logger

from invoicecrop.config import CoordinateConfig
from invoicecrop.types import CoordinateSpace, PixelBox, RawRegion, ResolvedRegion


def round_half_up(value: float) -> int:
    """Round to nearest integer with halves rounded up (0.5 -> 1, 2.5 -> 3)."""
    return int(math.floor(value + 0.5))


class CoordinateResolver:
    """Turn raw model numbers into integer pixel coordinates for one page."""

    def __init__(self, config: Optional[CoordinateConfig] = None):
        self.config = config or CoordinateConfig()

    def infer_space(
        self,
        coords: Sequence[float],
        width: int,
        height: int,
        has_decimal_point: bool,
    ) -> CoordinateSpace:
        """
        Decide which coordinate convention ``coords`` are expressed in.

        Args:
            coords: Raw (x1, y1, x2, y2)
            width: Page width in pixels
            height: Page height in pixels
            has_decimal_point: Whether the source text contained a '.'

        Returns:
            Inferred CoordinateSpace
        """
        cfg = self.config
        x1, y1, x2, y2 = coords

        if (
            all(v <= cfg.ratio_ceiling for v in coords)
            and has_decimal_point
            and (x1 > 0 or y1 > 0)
        ):
            return CoordinateSpace.NORMALIZED_0_1

        max_coord = max(coords)
        if max_coord <= cfg.normalized_ceiling and (
            width > cfg.large_page_threshold
            or height > cfg.large_page_threshold
            or x2 > width
            or y2 > height
        ):
            return CoordinateSpace.NORMALIZED_0_1000

        return CoordinateSpace.PIXEL

    def to_pixels(
        self,
        coords: Sequence[float],
        width: int,
        height: int,
        space: CoordinateSpace,
    ) -> PixelBox:
        """Rescale ``coords`` from ``space`` into pixel coordinates."""
        x1, y1, x2, y2 = coords

        if space == CoordinateSpace.NORMALIZED_0_1:
            return [
                round_half_up(x1 * width),
                round_half_up(y1 * height),
                round_half_up(x2 * width),
                round_half_up(y2 * height),
            ]

        if space == CoordinateSpace.NORMALIZED_0_1000:
            scale = float(self.config.normalized_scale)

            def _norm(v: float) -> float:
                return max(0.0, min(scale, v)) / scale

            return [
                round_half_up(_norm(x1) * width),
                round_half_up(_norm(y1) * height),
                round_half_up(_norm(x2) * width),
                round_half_up(_norm(y2) * height),
            ]

        return [round_half_up(v) for v in coords]

    def resolve_coords(
        self,
        coords: Sequence[float],
        width: int,
        height: int,
        has_decimal_point: bool = False,
    ) -> PixelBox:
        """Infer the space of ``coords`` and return pixel coordinates."""
        if len(coords) != 4:
            raise ValueError(f"Expected 4 coordinates, got {len(coords)}")
        space = self.infer_space(coords, width, height, has_decimal_point)
        return self.to_pixels(coords, width, height, space)

    def resolve(self, region: RawRegion, width: int, height: int) -> ResolvedRegion:
        """
        Resolve a raw region against the page it was extracted from.

        Args:
            region: Raw region from the extractor
            width: Page width in pixels
            height: Page height in pixels

        Returns:
            ResolvedRegion carrying the pixel bbox and the inferred space
        """
        if len(region.bbox) != 4:
            raise ValueError(f"Expected 4 coordinates, got {len(region.bbox)}")

        space = self.infer_space(region.bbox, width, height, region.has_decimal_point)
        bbox = self.to_pixels(region.bbox, width, height, space)

        if space == CoordinateSpace.PIXEL:
            logger.debug(f"Region {region.index}: pixel coordinates {bbox} on {width}x{height}")
        else:
            logger.info(
                f"Region {region.index}: {space.value} coordinates {region.bbox} "
                f"-> pixels {bbox} on {width}x{height}"
            )

        return ResolvedRegion(raw=region, bbox=bbox, space=space)
