"""
Job orchestration for invoice cropping.

Coordinates the processing stages for one uploaded file:
1. Input validation and page counting (PDF or single image)
2. Page fan-out on a bounded worker pool, one PageTask per page
3. Join on every page
4. Finalization of the job record

Jobs can run synchronously (``process``) or in a background thread
(``submit``); either way progress is visible through the JobTracker.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import numpy as np
from loguru import logger

from invoicecrop.config import Config
from invoicecrop.io.image import SUPPORTED_FORMATS
from invoicecrop.pipeline.job_tracker import JobTracker
from invoicecrop.pipeline.page_task import PageTask, page_image_name
from invoicecrop.types import Job, PageResult


SUPPORTED_OUTPUT_FORMATS = ("jpg", "png")


@dataclass
class ProcessingOptions:
    """Per-job overrides of the configured crop settings."""
    padding: Optional[int] = None
    output_format: Optional[str] = None
    workers: Optional[int] = None
    save_page_images: Optional[bool] = None

    # Progress callback: called with (message: str, percent: int)
    progress_callback: Optional[Callable[[str, int], None]] = None


def normalize_output_format(output_format: str) -> str:
    fmt = output_format.lower().lstrip(".")
    if fmt == "jpeg":
        fmt = "jpg"
    if fmt not in SUPPORTED_OUTPUT_FORMATS:
        raise ValueError(
            f"Unsupported output format: {output_format}. Allowed: {list(SUPPORTED_OUTPUT_FORMATS)}"
        )
    return fmt


class InvoiceProcessor:
    """
    Main invoice cropping pipeline.

    Components are created lazily from the config unless injected.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        vision_model=None,
        store=None,
        tracker: Optional[JobTracker] = None,
    ):
        """
        Initialize processor.

        Args:
            config: Configuration object (uses defaults if None)
            vision_model: VisionModel implementation (default: VisionModelClient)
            store: ArtifactStore implementation (default: FileArtifactStore)
            tracker: Job tracker shared with status readers
        """
        self.config = config or Config()
        self._init_lock = threading.Lock()  # guards lazy component init

        self._vision_model = vision_model
        self._store = store
        self.tracker = tracker or JobTracker(
            max_age_seconds=self.config.runtime.job_max_age_seconds,
            max_jobs=self.config.runtime.job_max_count,
        )

        self._pdf_loader = None
        self._image_loader = None
        self._extractor = None
        self._resolver = None
        self._validator = None
        self._limiter = None

        logger.info(f"InvoiceProcessor initialized with {self.config.runtime.get_workers()} worker(s)")

    @property
    def pdf_loader(self):
        """Lazy load PDF loader."""
        if self._pdf_loader is None:
            from invoicecrop.io.pdf import PDFLoader
            self._pdf_loader = PDFLoader(
                dpi=self.config.pdf.dpi,
                max_pages=self.config.pdf.max_pages,
            )
        return self._pdf_loader

    @property
    def image_loader(self):
        """Lazy load image loader."""
        if self._image_loader is None:
            from invoicecrop.io.image import ImageLoader
            self._image_loader = ImageLoader()
        return self._image_loader

    @property
    def vision_model(self):
        """Lazy load the vision model client."""
        with self._init_lock:
            if self._vision_model is None:
                from invoicecrop.vision.client import VisionModelClient
                self._vision_model = VisionModelClient(self.config.vision)
        return self._vision_model

    @property
    def store(self):
        """Lazy load the artifact store."""
        with self._init_lock:
            if self._store is None:
                from invoicecrop.io.storage import FileArtifactStore
                self._store = FileArtifactStore(
                    self.config.storage.output_dir,
                    quality=self.config.crop.quality,
                )
        return self._store

    @property
    def extractor(self):
        if self._extractor is None:
            from invoicecrop.extract.bbox_parser import BboxExtractor
            self._extractor = BboxExtractor.from_config(self.config.extraction)
        return self._extractor

    @property
    def resolver(self):
        if self._resolver is None:
            from invoicecrop.geometry.coordinates import CoordinateResolver
            self._resolver = CoordinateResolver(self.config.coordinates)
        return self._resolver

    @property
    def validator(self):
        if self._validator is None:
            from invoicecrop.geometry.validator import RegionValidator
            self._validator = RegionValidator()
        return self._validator

    @property
    def limiter(self):
        """Model-call limiter shared by every job of this processor."""
        with self._init_lock:
            if self._limiter is None:
                from invoicecrop.pipeline.rate_limit import RateLimiter
                self._limiter = RateLimiter.from_config(self.config.rate_limit)
        return self._limiter

    # ── public API ───────────────────────────────────────────────────────

    def submit(self, input_path: str, options: Optional[ProcessingOptions] = None) -> str:
        """
        Start processing in a background thread.

        Args:
            input_path: Path to PDF or image file
            options: Processing options

        Returns:
            Job id to poll through ``tracker.snapshot``
        """
        options = options or ProcessingOptions()
        path = self._check_input(input_path, options)
        job = self.tracker.create_job(path.name)

        thread = threading.Thread(
            target=self._run_job,
            args=(job.job_id, path, options),
            name=f"invoicecrop-job-{job.job_id[:8]}",
            daemon=True,
        )
        thread.start()
        return job.job_id

    def process(self, input_path: str, options: Optional[ProcessingOptions] = None) -> Job:
        """
        Process a file and wait for the result.

        Args:
            input_path: Path to PDF or image file
            options: Processing options

        Returns:
            Terminal Job record
        """
        options = options or ProcessingOptions()
        path = self._check_input(input_path, options)
        job = self.tracker.create_job(path.name)
        return self._run_job(job.job_id, path, options)

    def cancel(self, job_id: str) -> bool:
        return self.tracker.cancel(job_id)

    # ── internals ────────────────────────────────────────────────────────

    def _get_file_type(self, path: Path) -> str:
        """Determine file type from extension."""
        suffix = path.suffix.lower()

        if suffix == ".pdf":
            return "pdf"
        elif suffix in SUPPORTED_FORMATS:
            return "image"
        else:
            return "unknown"

    def _check_input(self, input_path: str, options: ProcessingOptions) -> Path:
        path = Path(input_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {input_path}")
        if self._get_file_type(path) == "unknown":
            raise ValueError(f"Unsupported file type: {path.suffix}")

        normalize_output_format(options.output_format or self.config.crop.output_format)
        if options.padding is not None and options.padding < 0:
            raise ValueError(f"padding must be >= 0, got {options.padding}")
        return path

    def _page_loader(self, job_id: str, path: Path, file_type: str, page: int, save_page: bool):
        def load() -> np.ndarray:
            if file_type == "pdf":
                image = self.pdf_loader.render_page(str(path), page - 1)
            else:
                image = self.image_loader.load(str(path))
            if save_page:
                self.store.save(image, page_image_name(job_id, page))
            return image

        return load

    def _make_task(
        self,
        job_id: str,
        page: int,
        load_page: Callable[[], np.ndarray],
        padding: int,
        output_format: str,
    ) -> PageTask:
        from invoicecrop.crop.cropper import Cropper

        return PageTask(
            job_id=job_id,
            page=page,
            load_page=load_page,
            model=self.vision_model,
            cropper=Cropper.from_config(self.config.crop, store=self.store),
            tracker=self.tracker,
            extractor=self.extractor,
            resolver=self.resolver,
            validator=self.validator,
            limiter=self.limiter,
            prompt=self.config.vision.prompt,
            padding=padding,
            output_format=output_format,
        )

    def _run_job(self, job_id: str, path: Path, options: ProcessingOptions) -> Job:
        _cb = options.progress_callback or (lambda message, pct: None)
        start_time = time.time()

        padding = self.config.crop.padding if options.padding is None else options.padding
        output_format = normalize_output_format(options.output_format or self.config.crop.output_format)
        save_pages = (
            self.config.crop.save_page_images
            if options.save_page_images is None
            else options.save_page_images
        )

        logger.info(f"Job {job_id}: processing {path} (padding={padding}, format={output_format})")

        try:
            file_type = self._get_file_type(path)
            total_pages = self.pdf_loader.get_page_count(str(path)) if file_type == "pdf" else 1
            if total_pages == 0:
                raise ValueError(f"No pages found in {path.name}")

            job = self.tracker.set_total_pages(job_id, total_pages)
            _cb(job.status_message or "Loaded", job.progress)

            workers = max(1, min(options.workers or self.config.runtime.get_workers(), total_pages))
            tasks = {
                page: self._make_task(
                    job_id,
                    page,
                    self._page_loader(job_id, path, file_type, page, save_pages),
                    padding,
                    output_format,
                )
                for page in range(1, total_pages + 1)
            }

            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="invoicecrop-page") as executor:
                futures = {executor.submit(task.run): page for page, task in tasks.items()}

                for future in as_completed(futures):
                    page = futures[future]
                    try:
                        future.result()
                    except Exception as e:
                        logger.error(f"Job {job_id}: page {page} task crashed: {e}")
                        self.tracker.record_page_result(
                            job_id, PageResult(page=page, failed=True, error=str(e))
                        )
                    job = self.tracker.get(job_id)
                    _cb(job.status_message or f"Page {page} done", job.progress)

            job = self.tracker.finalize(job_id)

        except Exception as e:
            logger.error(f"Job {job_id}: processing failed: {e}")
            job = self.tracker.fail(job_id, str(e))

        _cb(job.status_message or job.status.value, job.progress)
        logger.info(
            f"Job {job_id}: {job.status.value} in {time.time() - start_time:.2f}s, "
            f"{job.total_regions} region(s) from {job.pages_completed}/{job.total_pages} page(s)"
        )
        return job
