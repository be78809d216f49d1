"""
Per-page pipeline.

One PageTask handles one page end to end:

    decode page -> model call -> extract -> resolve -> validate -> crop

Page-level failures (the page cannot be decoded, the model call raises,
the job was cancelled) produce a failed PageResult. Region-level failures
are logged as warnings and only drop that region.
"""

import threading
from typing import Callable, List, Optional

import numpy as np
from loguru import logger

from invoicecrop.config import DEFAULT_PROMPT
from invoicecrop.crop.cropper import Cropper
from invoicecrop.extract.bbox_parser import BboxExtractor, summarize_outcome
from invoicecrop.geometry.coordinates import CoordinateResolver
from invoicecrop.geometry.validator import RegionValidator
from invoicecrop.io.image import ensure_bgr
from invoicecrop.pipeline.job_tracker import JobTracker
from invoicecrop.pipeline.rate_limit import RateLimiter
from invoicecrop.types import PageResult, RawRegion, RegionArtifact
from invoicecrop.vision.client import VisionModel, build_page_prompt


class JobCancelledError(RuntimeError):
    """Raised inside a page task when its job was cancelled."""


def artifact_name(job_id: str, page: int, index: int, output_format: str = "jpg") -> str:
    """File name of the crop for region ``index`` on ``page``."""
    return f"{job_id}_{page}_invoice_{page}_{index}.{output_format}"


def page_image_name(job_id: str, page: int) -> str:
    """File name of the rendered page image kept for previews."""
    return f"{job_id}_page_{page}.jpg"


class PageTask:
    """
    Run the region pipeline for a single page.

    Args:
        job_id: Owning job
        page: 1-based page number
        load_page: Returns the decoded page raster
        model: Vision model to query
        cropper: Crops and stores regions
        tracker: Job tracker to report into (optional for standalone use)
        extractor: Response parser
        resolver: Coordinate-space resolver
        validator: Bounds validator
        limiter: Model-call limiter
        prompt: Base prompt; a page size hint is appended
        padding: Crop padding override
        output_format: Artifact extension ("jpg" or "png")
    """

    def __init__(
        self,
        job_id: str,
        page: int,
        load_page: Callable[[], np.ndarray],
        model: VisionModel,
        cropper: Cropper,
        tracker: Optional[JobTracker] = None,
        extractor: Optional[BboxExtractor] = None,
        resolver: Optional[CoordinateResolver] = None,
        validator: Optional[RegionValidator] = None,
        limiter: Optional[RateLimiter] = None,
        prompt: str = DEFAULT_PROMPT,
        padding: Optional[int] = None,
        output_format: str = "jpg",
    ):
        self.job_id = job_id
        self.page = page
        self.load_page = load_page
        self.model = model
        self.cropper = cropper
        self.tracker = tracker
        self.extractor = extractor or BboxExtractor()
        self.resolver = resolver or CoordinateResolver()
        self.validator = validator or RegionValidator()
        self.limiter = limiter
        self.prompt = prompt
        self.padding = padding
        self.output_format = output_format

    @property
    def _cancel_event(self) -> Optional[threading.Event]:
        if self.tracker is None:
            return None
        return self.tracker.cancel_event(self.job_id)

    def _check_cancelled(self) -> None:
        event = self._cancel_event
        if event is not None and event.is_set():
            raise JobCancelledError("cancelled")

    def _call_model(self, image: np.ndarray, prompt: str) -> str:
        if self.limiter is None:
            return self.model.call(image, prompt)
        with self.limiter:
            # The job may have been cancelled while waiting for a slot
            self._check_cancelled()
            return self.model.call(image, prompt)

    def run(self) -> PageResult:
        """
        Process the page and report the result to the tracker.

        Returns:
            PageResult for this page; never raises for page or region errors
        """
        try:
            self._check_cancelled()
            image = ensure_bgr(self.load_page())
            height, width = image.shape[:2]

            prompt = build_page_prompt(self.prompt, width, height, self.page)
            logger.info(f"Job {self.job_id}: page {self.page} ({width}x{height}) sent to vision model")
            text = self._call_model(image, prompt)
        except JobCancelledError:
            logger.info(f"Job {self.job_id}: page {self.page} skipped, job cancelled")
            return self._report(PageResult(page=self.page, failed=True, error="cancelled"))
        except Exception as e:
            logger.error(f"Job {self.job_id}: page {self.page} failed: {e}")
            return self._report(PageResult(page=self.page, failed=True, error=str(e)))

        outcome = self.extractor.parse(text, self.page)
        logger.debug(f"Job {self.job_id}: page {self.page} {summarize_outcome(outcome)}")

        if self.tracker is not None:
            self.tracker.mark_processing(self.job_id, f"Cropping regions on page {self.page}")

        artifacts: List[RegionArtifact] = []
        warnings: List[str] = []
        for region in outcome.regions:
            try:
                artifacts.append(self._process_region(image, region))
            except Exception as e:
                warnings.append(f"region {region.index}: {e}")
                logger.warning(f"Job {self.job_id}: page {self.page} region {region.index} skipped: {e}")

        logger.info(
            f"Job {self.job_id}: page {self.page} produced {len(artifacts)}/"
            f"{len(outcome.regions)} region(s) via {outcome.strategy.value}"
        )
        return self._report(
            PageResult(
                page=self.page,
                width=width,
                height=height,
                artifacts=artifacts,
                warnings=warnings,
            )
        )

    def _process_region(self, image: np.ndarray, region: RawRegion) -> RegionArtifact:
        """
        Resolve, validate and crop one region.

        Raises:
            ValueError: If the region is rejected or its crop has no area
        """
        height, width = image.shape[:2]

        resolved = self.resolver.resolve(region, width, height)
        outcome = self.validator.validate(resolved.bbox, width, height)
        if not outcome.accepted:
            raise ValueError(outcome.reason or "rejected")

        name = artifact_name(self.job_id, self.page, region.index, self.output_format)
        crop = self.cropper.crop_and_save(
            image,
            outcome.bbox,
            name,
            padding=self.padding,
            region_index=region.index,
            page=self.page,
        )

        return RegionArtifact(
            index=region.index,
            page=region.source_page,
            bbox=crop.bbox,
            confidence=region.confidence,
            label=region.label,
            artifact_id=crop.artifact_id,
            corrected=outcome.corrected,
            small=crop.small,
        )

    def _report(self, result: PageResult) -> PageResult:
        if self.tracker is not None:
            self.tracker.record_page_result(self.job_id, result)
        return result
