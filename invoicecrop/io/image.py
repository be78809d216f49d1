"""
Image loading utilities for invoicecrop.

Handles various image formats with EXIF orientation correction and
normalizes everything to 3-channel BGR so downstream geometry and
encoding never depend on the source colorspace.
"""

from pathlib import Path
from typing import Union
import io
import numpy as np
import cv2
from PIL import Image, ImageOps
from loguru import logger


# Supported image formats
SUPPORTED_FORMATS = {".jpg", ".jpeg", ".png", ".tiff", ".tif", ".bmp", ".webp"}


class ImageLoader:
    """
    Load and normalize page images.

    Handles EXIF orientation, CMYK / palette / alpha conversion, and basic
    validation.
    """

    def __init__(self, auto_orient: bool = True):
        """
        Initialize image loader.

        Args:
            auto_orient: Automatically correct EXIF orientation
        """
        self.auto_orient = auto_orient

    def load(self, image_path: str) -> np.ndarray:
        """
        Load image from file.

        Args:
            image_path: Path to image file

        Returns:
            Image as numpy array (BGR format)
        """
        path = Path(image_path)

        if not path.exists():
            raise FileNotFoundError(f"Image file not found: {image_path}")

        if path.suffix.lower() not in SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported image format: {path.suffix}")

        logger.debug(f"Loading image: {image_path}")

        with Image.open(path) as pil_image:
            image = self._pil_to_bgr(pil_image)

        logger.debug(f"Loaded image: {image.shape}")
        return image

    def load_from_bytes(self, data: bytes) -> np.ndarray:
        """
        Load image from bytes.

        Args:
            data: Image data as bytes

        Returns:
            Image as numpy array (BGR format)
        """
        try:
            with Image.open(io.BytesIO(data)) as pil_image:
                return self._pil_to_bgr(pil_image)
        except (OSError, ValueError) as e:
            raise ValueError(f"Failed to decode image from bytes: {e}") from e

    def _pil_to_bgr(self, pil_image: "Image.Image") -> np.ndarray:
        if self.auto_orient:
            pil_image = ImageOps.exif_transpose(pil_image)

        # CMYK, palette, grayscale and alpha sources all end up as plain RGB
        if pil_image.mode != "RGB":
            pil_image = pil_image.convert("RGB")

        image = np.array(pil_image)
        return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)


def load_image(
    source: Union[str, Path, bytes, np.ndarray],
    auto_orient: bool = True
) -> np.ndarray:
    """
    Convenience function to load image from various sources.

    Args:
        source: File path, bytes, or existing numpy array
        auto_orient: Automatically correct EXIF orientation

    Returns:
        Image as numpy array (BGR format)
    """
    if isinstance(source, np.ndarray):
        return ensure_bgr(source)

    loader = ImageLoader(auto_orient=auto_orient)

    if isinstance(source, bytes):
        return loader.load_from_bytes(source)
    elif isinstance(source, (str, Path)):
        return loader.load(str(source))

    raise ValueError(f"Unsupported image source type: {type(source)}")


def ensure_bgr(image: np.ndarray) -> np.ndarray:
    """
    Convert an image to 3-channel 8-bit BGR.

    Grayscale, single-channel and BGRA inputs are converted; BGR input is
    returned unchanged.
    """
    if image.dtype != np.uint8:
        image = np.clip(image, 0, 255).astype(np.uint8)

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)

    channels = image.shape[2]
    if channels == 1:
        return cv2.cvtColor(image[:, :, 0], cv2.COLOR_GRAY2BGR)
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    if channels == 3:
        return image

    raise ValueError(f"Unsupported channel count: {channels}")


def encode_image(image: np.ndarray, suffix: str = ".jpg", quality: int = 100) -> bytes:
    """
    Encode image to bytes.

    Args:
        image: Image as numpy array (BGR format)
        suffix: Target format extension (".jpg" or ".png")
        quality: JPEG quality (0-100)

    Returns:
        Encoded image bytes
    """
    params = []
    if suffix.lower() in [".jpg", ".jpeg"]:
        params = [cv2.IMWRITE_JPEG_QUALITY, quality]
    elif suffix.lower() == ".png":
        params = [cv2.IMWRITE_PNG_COMPRESSION, 9 - (quality // 11)]

    success, buf = cv2.imencode(suffix, ensure_bgr(image), params)
    if not success:
        raise RuntimeError(f"Failed to encode image as {suffix}")
    return buf.tobytes()


def save_image(image: np.ndarray, output_path: str, quality: int = 100) -> None:
    """
    Save image to file.

    Args:
        image: Image as numpy array (BGR format)
        output_path: Output file path
        quality: JPEG quality (0-100)
    """
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    path.write_bytes(encode_image(image, path.suffix or ".jpg", quality))
    logger.debug(f"Saved image: {output_path}")


def get_image_info(image: np.ndarray) -> dict:
    """
    Get basic image information.

    Args:
        image: Image as numpy array

    Returns:
        Dictionary with image properties
    """
    return {
        "height": image.shape[0],
        "width": image.shape[1],
        "channels": image.shape[2] if len(image.shape) > 2 else 1,
        "dtype": str(image.dtype),
        "size_bytes": image.nbytes,
    }
