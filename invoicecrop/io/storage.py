"""
Artifact storage.

Cropped regions and rendered pages are written through an ArtifactStore so
the pipeline does not care where bytes end up. The default store writes
flat files under a single output directory.
"""

from pathlib import Path
from typing import List, Protocol, runtime_checkable

import numpy as np
from loguru import logger

from invoicecrop.io.image import load_image, save_image


@runtime_checkable
class ArtifactStore(Protocol):
    """Persist encoded images by name."""

    def save(self, image: np.ndarray, name: str) -> str:
        """Encode and store ``image``; returns the artifact id (its name)."""
        ...

    def load(self, name: str) -> np.ndarray:
        ...

    def path(self, name: str) -> Path:
        ...


class FileArtifactStore:
    """
    Store artifacts as files under ``output_dir``.

    Names are plain file names; the extension picks the encoding (JPEG at
    ``quality``, PNG with no compression loss).
    """

    def __init__(self, output_dir: str, quality: int = 100):
        """
        Initialize file store.

        Args:
            output_dir: Directory to write artifacts into
            quality: JPEG quality (0-100)
        """
        self.output_dir = Path(output_dir)
        self.quality = quality
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def path(self, name: str) -> Path:
        """
        Resolve an artifact name to its file path.

        Raises:
            ValueError: If the name is empty or points outside the store
        """
        if not name or name in (".", "..") or Path(name).name != name or "\\" in name:
            raise ValueError(f"Invalid artifact name: {name!r}")
        return self.output_dir / name

    def save(self, image: np.ndarray, name: str) -> str:
        target = self.path(name)
        save_image(image, str(target), quality=self.quality)
        logger.debug(f"Stored artifact {name} ({image.shape[1]}x{image.shape[0]})")
        return name

    def load(self, name: str) -> np.ndarray:
        target = self.path(name)
        if not target.exists():
            raise FileNotFoundError(f"Artifact not found: {name}")
        return load_image(target, auto_orient=False)

    def exists(self, name: str) -> bool:
        try:
            return self.path(name).is_file()
        except ValueError:
            return False

    def list(self, prefix: str = "") -> List[str]:
        """List stored artifact names starting with ``prefix``."""
        return sorted(
            p.name for p in self.output_dir.iterdir()
            if p.is_file() and p.name.startswith(prefix)
        )
