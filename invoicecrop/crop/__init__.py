"""Padded region cropping."""

from invoicecrop.crop.cropper import Cropper, CropResult, expand_and_clamp

__all__ = [
    "Cropper",
    "CropResult",
    "expand_and_clamp",
]
