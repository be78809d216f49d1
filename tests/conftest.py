"""
Pytest configuration and fixtures for invoicecrop tests.
"""

import re
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple

import pytest
import numpy as np

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


# ============================================================================
# Fixtures - Sample Data
# ============================================================================

@pytest.fixture
def sample_image() -> np.ndarray:
    """Create an 800x600 page with two invoice-like blocks."""
    img = np.ones((600, 800, 3), dtype=np.uint8) * 255

    # Two dark "invoices" side by side
    img[50:550, 40:380] = 40
    img[50:550, 420:760] = 80

    return img


@pytest.fixture
def square_page() -> np.ndarray:
    """1000x1000 white page with a gray block."""
    img = np.ones((1000, 1000, 3), dtype=np.uint8) * 255
    img[20:600, 10:500] = 128
    return img


@pytest.fixture
def sample_grayscale_image(sample_image) -> np.ndarray:
    """Convert sample image to grayscale."""
    import cv2
    return cv2.cvtColor(sample_image, cv2.COLOR_BGR2GRAY)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_pdf_path(temp_dir) -> Path:
    """Create a 3-page PDF with an invoice block on each page."""
    import fitz  # PyMuPDF

    pdf_path = temp_dir / "invoices.pdf"
    doc = fitz.open()

    for page_num in range(1, 4):
        page = doc.new_page(width=612, height=792)  # Letter size
        page.draw_rect(fitz.Rect(50, 50, 300, 400), color=(0, 0, 0), fill=(0.8, 0.8, 0.8))
        page.insert_text((72, 72), f"Invoice page {page_num}", fontsize=18)

    doc.save(str(pdf_path))
    doc.close()

    return pdf_path


@pytest.fixture
def sample_image_path(temp_dir, sample_image) -> Path:
    """Save sample image to temporary file."""
    import cv2

    img_path = temp_dir / "scan.png"
    cv2.imwrite(str(img_path), sample_image)
    return img_path


# ============================================================================
# Fixtures - Vision model
# ============================================================================

_PAGE_IN_PROMPT = re.compile(r"this is page (\d+)")


def page_from_prompt(prompt: str) -> int:
    """Recover the page number from the size hint appended to the prompt."""
    match = _PAGE_IN_PROMPT.search(prompt or "")
    return int(match.group(1)) if match else 1


class FakeVisionModel:
    """
    Scripted stand-in for the vision model.

    Answers per page from ``responses``; pages listed in ``errors`` raise,
    pages listed in ``delays`` sleep first.
    """

    def __init__(
        self,
        responses: Optional[Dict[int, str]] = None,
        default: str = "",
        errors: Optional[Dict[int, Exception]] = None,
        delays: Optional[Dict[int, float]] = None,
    ):
        self.responses = responses or {}
        self.default = default
        self.errors = errors or {}
        self.delays = delays or {}
        self.calls: List[Tuple[int, Tuple[int, ...]]] = []
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    def call(self, image: np.ndarray, prompt: str) -> str:
        page = page_from_prompt(prompt)
        with self._lock:
            self.calls.append((page, image.shape))
            self.prompts.append(prompt)

        if page in self.delays:
            time.sleep(self.delays[page])
        if page in self.errors:
            raise self.errors[page]
        return self.responses.get(page, self.default)

    @property
    def pages_called(self) -> List[int]:
        with self._lock:
            return [page for page, _ in self.calls]


@pytest.fixture
def fake_model() -> FakeVisionModel:
    return FakeVisionModel(default="Acme 发票：<bbox>10 20 500 600</bbox>")


@pytest.fixture
def make_model():
    """Factory for scripted vision models."""
    return FakeVisionModel


# ============================================================================
# Fixtures - Configuration
# ============================================================================

@pytest.fixture
def default_config():
    """Get default configuration."""
    from invoicecrop.config import Config
    return Config()


@pytest.fixture
def test_config(temp_dir):
    """Get test configuration with temp directories."""
    from invoicecrop.config import Config

    config = Config()
    config.storage.upload_dir = str(temp_dir / "uploads")
    config.storage.output_dir = str(temp_dir / "outputs")
    config.storage.temp_dir = str(temp_dir / "temp")
    config.storage.cleanup_enabled = False
    config.vision.api_key = "test-key"
    config.pdf.dpi = 72
    return config


@pytest.fixture
def artifact_store(temp_dir):
    from invoicecrop.io.storage import FileArtifactStore
    return FileArtifactStore(str(temp_dir / "outputs"))


# ============================================================================
# Fixtures - Types
# ============================================================================

@pytest.fixture
def sample_region():
    """Labeled region as parsed from a tag response."""
    from invoicecrop.types import ParseStrategy, RawRegion

    return RawRegion(
        bbox=[10, 20, 500, 600],
        label="Acme",
        source_page=1,
        index=0,
        strategy=ParseStrategy.LABELED_TAG,
        raw_text="<bbox>10 20 500 600</bbox>",
    )
