"""
Region geometry validation against page bounds.

Rules:
- Exactly 4 coordinates are required.
- Non-positive area (x2 <= x1 or y2 <= y1) is rejected, never repaired.
- Out-of-bounds edges are clamped independently to the page; the clamped
  box is accepted if it still has positive area, and flagged as corrected.

Overlapping boxes are deliberately left alone: every detected region is
its own artifact.
"""

from typing import Optional, Sequence

from loguru import logger

from invoicecrop.types import ValidationOutcome


class RegionValidator:
    """Clamp or reject pixel rectangles for a page of size ``width`` x ``height``."""

    name = "region_bounds"

    def validate(
        self,
        bbox: Optional[Sequence[int]],
        width: int,
        height: int,
    ) -> ValidationOutcome:
        """
        Validate a pixel rectangle.

        Args:
            bbox: (x1, y1, x2, y2) in pixels
            width: Page width in pixels
            height: Page height in pixels

        Returns:
            ValidationOutcome with the accepted box or a rejection reason
        """
        if bbox is None or len(bbox) != 4:
            return ValidationOutcome(
                accepted=False,
                reason="bbox must have exactly 4 coordinates",
            )

        x1, y1, x2, y2 = (int(v) for v in bbox)

        if x2 <= x1 or y2 <= y1:
            return ValidationOutcome(
                accepted=False,
                reason=f"non-positive area: x2({x2}) <= x1({x1}) or y2({y2}) <= y1({y1})",
            )

        if x1 < 0 or y1 < 0 or x2 > width or y2 > height:
            cx1 = max(0, x1)
            cy1 = max(0, y1)
            cx2 = min(width, x2)
            cy2 = min(height, y2)

            if cx2 <= cx1 or cy2 <= cy1:
                return ValidationOutcome(
                    accepted=False,
                    reason=f"degenerate after clamping: [{cx1},{cy1},{cx2},{cy2}]",
                )

            message = f"clamped [{x1},{y1},{x2},{y2}] -> [{cx1},{cy1},{cx2},{cy2}]"
            logger.debug(f"Bbox {message} on {width}x{height} page")
            return ValidationOutcome(
                accepted=True,
                bbox=[cx1, cy1, cx2, cy2],
                corrected=True,
                reason=message,
            )

        return ValidationOutcome(accepted=True, bbox=[x1, y1, x2, y2])

    def __call__(self, bbox: Optional[Sequence[int]], width: int, height: int) -> ValidationOutcome:
        return self.validate(bbox, width, height)
