"""
Pydantic types and schemas for invoicecrop.

Defines the records that flow through the extraction pipeline:
- Raw regions parsed from vision model text
- Resolved / validated pixel rectangles
- Crop specs and region artifacts
- Per-page results and the job record exposed to status readers
"""

from typing import Optional, List, Dict
from enum import Enum
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field as PydanticField
import uuid


PixelBox = List[int]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CoordinateSpace(str, Enum):
    """Coordinate convention a raw bbox was expressed in."""
    PIXEL = "pixel"
    NORMALIZED_0_1 = "normalized_0_1"
    NORMALIZED_0_1000 = "normalized_0_1000"


class ParseStrategy(str, Enum):
    """Response parsing strategy, in precedence order."""
    JSON = "json"
    LABELED_TAG = "labeled_tag"
    GENERIC_TAG = "generic_tag"
    BRACKETED = "bracketed"
    EMPTY = "empty"


class JobStatus(str, Enum):
    """Lifecycle status of a job."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class RawRegion(BaseModel):
    """Candidate region as reported by the model, before any coordinate handling."""
    model_config = ConfigDict(frozen=True)

    bbox: List[float]
    label: Optional[str] = None
    confidence: float = 0.9
    source_page: int = 1
    index: int = 0
    strategy: ParseStrategy = ParseStrategy.JSON
    raw_text: str = ""  # Snippet the numbers were read from

    @property
    def has_decimal_point(self) -> bool:
        return "." in self.raw_text


class ParseOutcome(BaseModel):
    """Result of one extraction call: the winning strategy and its regions."""
    model_config = ConfigDict(frozen=True)

    strategy: ParseStrategy = ParseStrategy.EMPTY
    regions: List[RawRegion] = PydanticField(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.regions


class ResolvedRegion(BaseModel):
    """Raw region rewritten into integer pixel coordinates of its page."""
    model_config = ConfigDict(frozen=True)

    raw: RawRegion
    bbox: PixelBox
    space: CoordinateSpace


class ValidationOutcome(BaseModel):
    """Accepted (possibly clamped) rectangle, or a rejection reason."""
    accepted: bool
    bbox: Optional[PixelBox] = None
    corrected: bool = False
    reason: Optional[str] = None


class CropSpec(BaseModel):
    """Crop request: padded rectangle before clamping to the page."""
    region_index: int
    page: int
    bbox: PixelBox
    padding: int = 10

    @property
    def width(self) -> int:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> int:
        return self.bbox[3] - self.bbox[1]


class RegionArtifact(BaseModel):
    """One cropped invoice, keyed in storage by ``artifact_id``."""
    model_config = ConfigDict(frozen=True)

    index: int
    page: int
    bbox: PixelBox
    confidence: float = PydanticField(ge=0.0, le=1.0, default=0.9)
    label: Optional[str] = None
    artifact_id: str
    corrected: bool = False
    small: bool = False


class PageResult(BaseModel):
    """Artifacts produced for a single page."""
    page: int
    width: int = 0
    height: int = 0
    artifacts: List[RegionArtifact] = PydanticField(default_factory=list)
    failed: bool = False
    error: Optional[str] = None
    warnings: List[str] = PydanticField(default_factory=list)


class Job(BaseModel):
    """Job record covering every page of one submitted input."""
    job_id: str = PydanticField(default_factory=lambda: str(uuid.uuid4()))
    filename: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_pages: int = 0
    pages_completed: int = 0
    current_page: Optional[int] = None
    status_message: Optional[str] = None
    page_results: Dict[int, PageResult] = PydanticField(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = PydanticField(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    processing_time_seconds: Optional[float] = None

    def ordered_results(self) -> List[PageResult]:
        """Page results in page order, regardless of completion order."""
        return [self.page_results[p] for p in sorted(self.page_results)]

    def artifacts(self) -> List[RegionArtifact]:
        return [a for result in self.ordered_results() for a in result.artifacts]

    @property
    def total_regions(self) -> int:
        return sum(len(r.artifacts) for r in self.page_results.values())

    @property
    def failed_pages(self) -> List[int]:
        return sorted(p for p, r in self.page_results.items() if r.failed)
