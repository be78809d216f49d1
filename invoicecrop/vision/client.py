"""
Vision model client for invoicecrop.

Sends a page image plus a locating prompt to an OpenAI-compatible
chat-completions endpoint (Volcengine Ark by default) and returns the raw
text answer. Parsing that text is the extractor's job, not the client's.
"""

from __future__ import annotations

import base64
import time
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import numpy as np
from loguru import logger

from invoicecrop.config import VisionConfig
from invoicecrop.io.image import encode_image

# Page images are re-encoded for upload; the saved artifacts keep full quality.
_UPLOAD_JPEG_QUALITY = 95


@runtime_checkable
class VisionModel(Protocol):
    """Anything that can answer a prompt about an image."""

    def call(self, image: np.ndarray, prompt: str) -> str:
        ...


def build_page_prompt(base_prompt: str, width: int, height: int, page_num: int = 1) -> str:
    """
    Append the page size hint to ``base_prompt``.

    The model answers on a 0-1000 grid relative to the image it sees, so it
    is told the real pixel size of the page to anchor that grid.
    """
    if page_num > 1:
        hint = (
            f"\n\nImportant: this is page {page_num}; the image is {width}x{height} pixels. "
            f"Make sure the normalized (0-1000) coordinates are relative to this size."
        )
    else:
        hint = (
            f"\n\nImportant: the image is {width}x{height} pixels. "
            f"Make sure the normalized (0-1000) coordinates are relative to this size."
        )
    return base_prompt + hint


class VisionModelClient:
    """
    Call an OpenAI-compatible vision endpoint.

    Usage::

        client = VisionModelClient(config.vision)
        text = client.call(page_image, build_page_prompt(config.vision.prompt, w, h))
    """

    def __init__(self, config: VisionConfig) -> None:
        if not config.is_ready:
            raise ValueError(
                "Vision model is not configured. "
                "Set ARK_API_KEY (and optionally ARK_BASE_URL, ARK_MODEL) "
                "in your .env file or config YAML."
            )

        self._config = config
        self._client = None  # lazy
        logger.info(
            f"VisionModelClient initialised (model={config.model}, base_url={config.base_url})"
        )

    @property
    def client(self):
        """Lazy-initialise the OpenAI SDK client."""
        if self._client is None:
            from openai import OpenAI
            import httpx
            import certifi

            self._client = OpenAI(
                base_url=self._config.base_url,
                api_key=self._config.api_key,
                timeout=self._config.timeout_seconds,
                max_retries=0,
                http_client=httpx.Client(
                    verify=certifi.where(),
                    timeout=self._config.timeout_seconds,
                ),
            )
            logger.debug("OpenAI client created")
        return self._client

    def call(self, image: np.ndarray, prompt: Optional[str] = None) -> str:
        """
        Send one page image to the model.

        Args:
            image: Page raster (BGR)
            prompt: Full prompt text; defaults to the configured prompt
                with a size hint for ``image``

        Returns:
            The model's text answer (may be empty)
        """
        if prompt is None:
            height, width = image.shape[:2]
            prompt = build_page_prompt(self._config.prompt, width, height)

        messages = self._build_messages(image, prompt)

        t0 = time.perf_counter()
        logger.info(f"Sending {image.shape[1]}x{image.shape[0]} image to {self._config.model}")

        response = self.client.chat.completions.create(
            model=self._config.model,
            messages=messages,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
        )

        elapsed = time.perf_counter() - t0
        if not response.choices:
            raise RuntimeError("Vision model returned no choices")

        text = response.choices[0].message.content or ""
        usage = response.usage
        logger.info(
            f"Vision model response in {elapsed:.2f}s, {len(text)} chars "
            f"(tokens: prompt={usage.prompt_tokens if usage else 0}, "
            f"completion={usage.completion_tokens if usage else 0})"
        )
        return text

    def _build_messages(self, image: np.ndarray, prompt: str) -> List[Dict[str, Any]]:
        return [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {
                        "type": "image_url",
                        "image_url": {"url": self._encode_data_url(image)},
                    },
                ],
            }
        ]

    @staticmethod
    def _encode_data_url(image: np.ndarray) -> str:
        data = encode_image(image, ".jpg", quality=_UPLOAD_JPEG_QUALITY)
        return "data:image/jpeg;base64," + base64.b64encode(data).decode("utf-8")
