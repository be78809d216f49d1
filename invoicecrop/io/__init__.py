"""IO modules for invoicecrop."""

from invoicecrop.io.pdf import PDFLoader
from invoicecrop.io.image import ImageLoader, ensure_bgr, load_image, save_image
from invoicecrop.io.storage import ArtifactStore, FileArtifactStore
from invoicecrop.io.cleanup import CleanupResult, cleanup_expired_files

__all__ = [
    "PDFLoader",
    "ImageLoader",
    "ensure_bgr",
    "load_image",
    "save_image",
    "ArtifactStore",
    "FileArtifactStore",
    "CleanupResult",
    "cleanup_expired_files",
]
