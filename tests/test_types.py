"""Tests for invoicecrop types."""

import pytest
from pydantic import ValidationError


class TestRawRegion:
    """Tests for RawRegion."""

    def test_decimal_point_from_raw_text(self):
        from invoicecrop.types import RawRegion

        assert RawRegion(bbox=[0.1, 0.2, 0.3, 0.4], raw_text="0.1 0.2 0.3 0.4").has_decimal_point
        # Parsed values are floats either way; only the source text counts
        assert not RawRegion(bbox=[1.0, 2.0, 3.0, 4.0], raw_text="1 2 3 4").has_decimal_point

    def test_frozen(self):
        from invoicecrop.types import RawRegion

        region = RawRegion(bbox=[1, 2, 3, 4])

        with pytest.raises(ValidationError):
            region.label = "changed"

    def test_defaults(self):
        from invoicecrop.types import ParseStrategy, RawRegion

        region = RawRegion(bbox=[1, 2, 3, 4])

        assert region.confidence == 0.9
        assert region.source_page == 1
        assert region.index == 0
        assert region.strategy == ParseStrategy.JSON


class TestRegionArtifact:
    """Tests for RegionArtifact."""

    def test_confidence_bounds(self):
        from invoicecrop.types import RegionArtifact

        with pytest.raises(ValidationError):
            RegionArtifact(index=0, page=1, bbox=[0, 0, 1, 1], confidence=1.5, artifact_id="a.jpg")

    def test_crop_spec_size(self):
        from invoicecrop.types import CropSpec

        spec = CropSpec(region_index=0, page=1, bbox=[-10, 0, 90, 50])

        assert spec.width == 100
        assert spec.height == 50


class TestJobStatus:
    """Tests for JobStatus."""

    @pytest.mark.parametrize("status,terminal", [
        ("PENDING", False),
        ("PROCESSING", False),
        ("COMPLETED", True),
        ("FAILED", True),
    ])
    def test_is_terminal(self, status, terminal):
        from invoicecrop.types import JobStatus

        assert JobStatus(status).is_terminal is terminal


class TestJob:
    """Tests for Job aggregation helpers."""

    def _job(self):
        from invoicecrop.types import Job, PageResult, RegionArtifact

        def artifact(page, index):
            return RegionArtifact(
                index=index, page=page, bbox=[0, 0, 5, 5], artifact_id=f"j_{page}_invoice_{page}_{index}.jpg"
            )

        job = Job(total_pages=3)
        # Inserted out of page order, as concurrent workers would
        job.page_results[3] = PageResult(page=3, artifacts=[artifact(3, 0)])
        job.page_results[1] = PageResult(page=1, artifacts=[artifact(1, 0), artifact(1, 1)])
        job.page_results[2] = PageResult(page=2, failed=True, error="timeout")
        return job

    def test_defaults(self):
        from invoicecrop.types import Job, JobStatus

        job = Job()

        assert job.job_id
        assert job.status == JobStatus.PENDING
        assert job.progress == 0
        assert job.created_at.tzinfo is not None
        assert job.completed_at is None

    def test_unique_ids(self):
        from invoicecrop.types import Job

        assert Job().job_id != Job().job_id

    def test_ordered_results(self):
        job = self._job()

        assert [r.page for r in job.ordered_results()] == [1, 2, 3]
        assert [(a.page, a.index) for a in job.artifacts()] == [(1, 0), (1, 1), (3, 0)]

    def test_counts(self):
        job = self._job()

        assert job.total_regions == 3
        assert job.failed_pages == [2]

    def test_json_dump(self):
        job = self._job()
        data = job.model_dump(mode="json")

        assert data["status"] == "PENDING"
        assert {str(k) for k in data["page_results"]} == {"1", "2", "3"}
