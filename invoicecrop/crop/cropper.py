"""
Invoice region cropping.

Takes a validated pixel rectangle, grows it by a padding margin, clamps
the result to the page and cuts the sub-raster out without any resizing.
Crops are normalized to 3-channel BGR before encoding so grayscale and
alpha sources produce ordinary JPEG/PNG files.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from loguru import logger

from invoicecrop.config import CropConfig
from invoicecrop.io.image import ensure_bgr
from invoicecrop.io.storage import ArtifactStore
from invoicecrop.types import CropSpec, PixelBox


@dataclass
class CropResult:
    """Cropped raster plus the rectangle it was cut from."""
    image: np.ndarray
    bbox: PixelBox
    spec: CropSpec
    small: bool = False
    anomaly: Optional[str] = None
    artifact_id: Optional[str] = None

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]


def expand_and_clamp(
    bbox: Sequence[int],
    padding: int,
    width: int,
    height: int,
) -> PixelBox:
    """
    Grow ``bbox`` by ``padding`` on every side and clamp it to the page.

    Args:
        bbox: (x1, y1, x2, y2) in pixels
        padding: Margin in pixels
        width: Page width
        height: Page height

    Returns:
        Clamped (x1, y1, x2, y2)

    Raises:
        ValueError: If the clamped rectangle has no area
    """
    x1, y1, x2, y2 = (int(v) for v in bbox)

    x1 = max(0, x1 - padding)
    y1 = max(0, y1 - padding)
    x2 = min(width, x2 + padding)
    y2 = min(height, y2 + padding)

    if x2 <= x1 or y2 <= y1:
        raise ValueError(
            f"Invalid crop area: x2({x2}) <= x1({x1}) or y2({y2}) <= y1({y1})"
        )

    return [x1, y1, x2, y2]


class Cropper:
    """Cut padded invoice regions out of a page and persist them."""

    def __init__(
        self,
        store: Optional[ArtifactStore] = None,
        padding: int = 10,
        min_crop_size: int = 10,
        verify_roundtrip: bool = True,
    ):
        """
        Initialize cropper.

        Args:
            store: Where crops are written; ``crop`` works without one
            padding: Default margin around each region in pixels
            min_crop_size: Crops narrower or shorter than this are flagged
            verify_roundtrip: Re-read each stored crop and compare its size
        """
        if padding < 0:
            raise ValueError(f"padding must be >= 0, got {padding}")
        self.store = store
        self.padding = padding
        self.min_crop_size = min_crop_size
        self.verify_roundtrip = verify_roundtrip

    @classmethod
    def from_config(cls, config: CropConfig, store: Optional[ArtifactStore] = None) -> "Cropper":
        return cls(
            store=store,
            padding=config.padding,
            min_crop_size=config.min_crop_size,
            verify_roundtrip=config.verify_roundtrip,
        )

    def build_spec(
        self,
        bbox: Sequence[int],
        padding: Optional[int] = None,
        region_index: int = 0,
        page: int = 1,
    ) -> CropSpec:
        """Padded rectangle before clamping to the page."""
        pad = self.padding if padding is None else padding
        x1, y1, x2, y2 = (int(v) for v in bbox)
        return CropSpec(
            region_index=region_index,
            page=page,
            bbox=[x1 - pad, y1 - pad, x2 + pad, y2 + pad],
            padding=pad,
        )

    def crop(
        self,
        image: np.ndarray,
        bbox: Sequence[int],
        padding: Optional[int] = None,
        region_index: int = 0,
        page: int = 1,
    ) -> CropResult:
        """
        Crop a padded region from ``image``.

        Args:
            image: Page raster (any channel layout)
            bbox: Validated (x1, y1, x2, y2) in pixels
            padding: Margin override for this crop
            region_index: Index of the region on its page
            page: 1-based page number

        Returns:
            CropResult with a 3-channel BGR image

        Raises:
            ValueError: If the padded, clamped rectangle has no area
        """
        if len(bbox) != 4:
            raise ValueError(f"bbox must have exactly 4 coordinates, got {len(bbox)}")

        pad = self.padding if padding is None else padding
        if pad < 0:
            raise ValueError(f"padding must be >= 0, got {pad}")

        height, width = image.shape[:2]
        spec = self.build_spec(bbox, pad, region_index, page)
        x1, y1, x2, y2 = expand_and_clamp(bbox, pad, width, height)

        crop_w, crop_h = x2 - x1, y2 - y1
        small = crop_w < self.min_crop_size or crop_h < self.min_crop_size
        if small:
            logger.warning(
                f"Page {page} region {region_index}: crop is very small "
                f"({crop_w}x{crop_h}), result may be inaccurate"
            )

        cropped = ensure_bgr(image[y1:y2, x1:x2].copy())

        anomaly = None
        if cropped.shape[1] != crop_w or cropped.shape[0] != crop_h:
            anomaly = (
                f"crop size mismatch: expected {crop_w}x{crop_h}, "
                f"got {cropped.shape[1]}x{cropped.shape[0]}"
            )
            logger.error(f"Page {page} region {region_index}: {anomaly}")

        logger.debug(
            f"Page {page} region {region_index}: bbox {list(bbox)} padding {pad} "
            f"-> crop [{x1},{y1},{x2},{y2}] ({crop_w}x{crop_h}) on {width}x{height}"
        )

        return CropResult(
            image=cropped,
            bbox=[x1, y1, x2, y2],
            spec=spec,
            small=small,
            anomaly=anomaly,
        )

    def save(self, result: CropResult, name: str) -> str:
        """
        Persist a crop through the artifact store.

        When round-trip verification is enabled the stored file is read
        back; a size mismatch is recorded on ``result.anomaly`` and logged,
        it does not fail the region.

        Returns:
            Artifact id
        """
        if self.store is None:
            raise RuntimeError("Cropper has no artifact store configured")

        artifact_id = self.store.save(result.image, name)
        result.artifact_id = artifact_id

        if self.verify_roundtrip:
            reloaded = self.store.load(artifact_id)
            if reloaded.shape[:2] != result.image.shape[:2]:
                result.anomaly = (
                    f"stored size {reloaded.shape[1]}x{reloaded.shape[0]} differs from "
                    f"crop size {result.width}x{result.height}"
                )
                logger.warning(f"Artifact {artifact_id}: {result.anomaly}")

        return artifact_id

    def crop_and_save(
        self,
        image: np.ndarray,
        bbox: Sequence[int],
        name: str,
        padding: Optional[int] = None,
        region_index: int = 0,
        page: int = 1,
    ) -> CropResult:
        """Crop a region and store it under ``name``."""
        result = self.crop(image, bbox, padding, region_index, page)
        self.save(result, name)
        return result
