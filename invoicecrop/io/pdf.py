"""
PDF loading and rasterization using PyMuPDF.

Renders PDF pages to BGR images at a configurable DPI. Pages can be
rendered one at a time so each page task only holds its own raster.
"""

from pathlib import Path
from typing import List, Optional, Tuple, Generator
import numpy as np
import cv2
import fitz  # PyMuPDF
from loguru import logger


class PDFLoader:
    """
    Load and rasterize PDF documents.

    Uses PyMuPDF for PDF to image conversion with configurable DPI.
    """

    def __init__(self, dpi: int = 300, max_pages: Optional[int] = None):
        """
        Initialize PDF loader.

        Args:
            dpi: Resolution for rasterization
            max_pages: Maximum pages to process (None = all pages)
        """
        self.dpi = dpi
        self.max_pages = max_pages
        self._zoom = dpi / 72.0  # PDF default is 72 DPI

    def _check_path(self, pdf_path: str) -> Path:
        path = Path(pdf_path)
        if not path.exists():
            raise FileNotFoundError(f"PDF file not found: {pdf_path}")
        if path.suffix.lower() != ".pdf":
            raise ValueError(f"Not a PDF file: {pdf_path}")
        return path

    def _pages_to_process(self, page_count: int) -> int:
        if self.max_pages is not None:
            return min(page_count, self.max_pages)
        return page_count

    def load(self, pdf_path: str) -> List[np.ndarray]:
        """
        Load all pages from PDF as images.

        Args:
            pdf_path: Path to PDF file

        Returns:
            List of page images as numpy arrays (BGR format)
        """
        return [image for _, image in self.load_lazy(pdf_path)]

    def load_lazy(self, pdf_path: str) -> Generator[Tuple[int, np.ndarray], None, None]:
        """
        Lazily load pages from PDF.

        Args:
            pdf_path: Path to PDF file

        Yields:
            Tuple of (page_index, page_image)
        """
        self._check_path(pdf_path)
        logger.info(f"Loading PDF: {pdf_path} at {self.dpi} DPI")

        with fitz.open(pdf_path) as doc:
            pages_to_process = self._pages_to_process(len(doc))
            logger.info(f"Processing {pages_to_process}/{len(doc)} pages")

            for page_index in range(pages_to_process):
                image = self._render_page(doc[page_index])
                logger.debug(f"Rendered page {page_index + 1}: {image.shape}")
                yield page_index, image

    def render_page(self, pdf_path: str, page_index: int) -> np.ndarray:
        """
        Render a single page.

        Opens the document for this call only, so pages can be rendered
        from different threads.

        Args:
            pdf_path: Path to PDF file
            page_index: 0-based page index

        Returns:
            Page image as numpy array (BGR format)
        """
        self._check_path(pdf_path)

        with fitz.open(pdf_path) as doc:
            if page_index < 0 or page_index >= len(doc):
                raise IndexError(
                    f"Page index {page_index} out of range for {len(doc)}-page PDF"
                )
            image = self._render_page(doc[page_index])

        logger.debug(f"Rendered page {page_index + 1} of {pdf_path}: {image.shape}")
        return image

    def _render_page(self, page: "fitz.Page") -> np.ndarray:
        mat = fitz.Matrix(self._zoom, self._zoom)
        pixmap = page.get_pixmap(matrix=mat, alpha=False)

        image = np.frombuffer(pixmap.samples, dtype=np.uint8)
        image = image.reshape(pixmap.height, pixmap.width, pixmap.n)

        # PyMuPDF returns RGB (or gray for some colorspaces)
        if pixmap.n == 3:
            return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
        if pixmap.n == 1:
            return cv2.cvtColor(image[:, :, 0], cv2.COLOR_GRAY2BGR)
        return image.copy()

    def get_page_count(self, pdf_path: str) -> int:
        """
        Get number of pages in PDF without rendering them.

        Honors ``max_pages``.

        Args:
            pdf_path: Path to PDF file

        Returns:
            Number of pages
        """
        self._check_path(pdf_path)
        with fitz.open(pdf_path) as doc:
            return self._pages_to_process(len(doc))

    def get_metadata(self, pdf_path: str) -> dict:
        """
        Get PDF metadata.

        Args:
            pdf_path: Path to PDF file

        Returns:
            Dictionary with PDF metadata
        """
        with fitz.open(pdf_path) as doc:
            metadata = dict(doc.metadata or {})
            metadata["page_count"] = len(doc)
        return metadata
