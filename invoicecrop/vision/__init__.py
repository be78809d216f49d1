"""Vision model access."""

from invoicecrop.vision.client import VisionModel, VisionModelClient, build_page_prompt

__all__ = [
    "VisionModel",
    "VisionModelClient",
    "build_page_prompt",
]
