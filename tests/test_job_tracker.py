"""Tests for job state tracking."""

import threading

import pytest


def _artifact(page, index=0):
    from invoicecrop.types import RegionArtifact

    return RegionArtifact(
        index=index,
        page=page,
        bbox=[0, 0, 10, 10],
        artifact_id=f"job_{page}_invoice_{page}_{index}.jpg",
    )


class TestInMemoryJobStore:
    """Tests for InMemoryJobStore."""

    @pytest.mark.unit
    def test_create_and_get(self):
        from invoicecrop.pipeline.job_tracker import InMemoryJobStore
        from invoicecrop.types import Job

        store = InMemoryJobStore()
        job = Job(job_id="abc", filename="a.pdf")
        store.create(job)

        fetched = store.get("abc")
        assert fetched.filename == "a.pdf"
        assert fetched is not job
        assert store.get("missing") is None
        assert store.list_ids() == ["abc"]

    @pytest.mark.unit
    def test_duplicate_rejected(self):
        from invoicecrop.pipeline.job_tracker import InMemoryJobStore
        from invoicecrop.types import Job

        store = InMemoryJobStore()
        store.create(Job(job_id="abc"))

        with pytest.raises(ValueError):
            store.create(Job(job_id="abc"))

    @pytest.mark.unit
    def test_failing_update_leaves_state_unchanged(self):
        from invoicecrop.pipeline.job_tracker import InMemoryJobStore
        from invoicecrop.types import Job

        store = InMemoryJobStore()
        store.create(Job(job_id="abc", progress=10))

        def broken(job):
            job.progress = 50
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            store.update("abc", broken)

        assert store.get("abc").progress == 10

    @pytest.mark.unit
    def test_update_unknown_raises(self):
        from invoicecrop.pipeline.job_tracker import InMemoryJobStore

        with pytest.raises(KeyError):
            InMemoryJobStore().update("nope", lambda job: None)

    @pytest.mark.unit
    def test_delete(self):
        from invoicecrop.pipeline.job_tracker import InMemoryJobStore
        from invoicecrop.types import Job

        store = InMemoryJobStore()
        store.create(Job(job_id="abc"))

        assert store.delete("abc")
        assert not store.delete("abc")


class TestJobTracker:
    """Tests for JobTracker transitions."""

    @pytest.mark.unit
    def test_create_job(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import JobStatus

        tracker = JobTracker()
        job = tracker.create_job("scan.pdf")

        assert job.status == JobStatus.PENDING
        assert job.progress == 0
        assert job.filename == "scan.pdf"
        assert tracker.snapshot(job.job_id) is not None
        assert tracker.snapshot("unknown") is None

    @pytest.mark.unit
    def test_get_unknown_raises(self):
        from invoicecrop.pipeline.job_tracker import JobTracker

        with pytest.raises(KeyError):
            JobTracker().get("unknown")

    @pytest.mark.unit
    def test_results_ordered_by_page_not_completion(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import PageResult

        tracker = JobTracker()
        job_id = tracker.create_job("scan.pdf").job_id
        tracker.set_total_pages(job_id, 3)
        tracker.mark_processing(job_id)

        for page in (2, 1, 3):
            tracker.record_page_result(job_id, PageResult(page=page, artifacts=[_artifact(page)]))

        job = tracker.finalize(job_id)

        assert [r.page for r in job.ordered_results()] == [1, 2, 3]
        assert [a.page for a in job.artifacts()] == [1, 2, 3]

    @pytest.mark.unit
    def test_progress_is_monotonic(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import PageResult

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        tracker.set_total_pages(job_id, 3)
        tracker.mark_processing(job_id)

        seen = [tracker.get(job_id).progress]
        for page in (3, 1, 2):
            seen.append(tracker.record_page_result(job_id, PageResult(page=page)).progress)
        seen.append(tracker.finalize(job_id).progress)

        assert seen == [10, 36, 63, 90, 100]
        assert seen == sorted(seen)

        # Lower values are ignored
        tracker2 = JobTracker()
        other = tracker2.create_job().job_id
        tracker2.set_progress(other, 50)
        assert tracker2.set_progress(other, 20).progress == 50

    @pytest.mark.unit
    def test_page_progress(self):
        from invoicecrop.pipeline.job_tracker import page_progress

        assert page_progress(0, 4) == 10
        assert page_progress(2, 4) == 50
        assert page_progress(4, 4) == 90
        assert page_progress(0, 0) == 10

    @pytest.mark.unit
    def test_finalize_completed(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import JobStatus, PageResult

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        tracker.set_total_pages(job_id, 1)
        tracker.record_page_result(job_id, PageResult(page=1, artifacts=[_artifact(1), _artifact(1, 1)]))

        job = tracker.finalize(job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.error is None
        assert job.total_regions == 2
        assert job.completed_at is not None
        assert job.processing_time_seconds >= 0

    @pytest.mark.unit
    def test_failed_page_fails_job_keeps_partial_results(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import JobStatus, PageResult

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        tracker.set_total_pages(job_id, 2)
        tracker.record_page_result(job_id, PageResult(page=1, artifacts=[_artifact(1)]))
        tracker.record_page_result(job_id, PageResult(page=2, failed=True, error="model timeout"))

        job = tracker.finalize(job_id)

        assert job.status == JobStatus.FAILED
        assert "pages failed: [2]" in job.error
        assert job.total_regions == 1
        assert job.failed_pages == [2]

    @pytest.mark.unit
    def test_missing_page_fails_job(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import JobStatus, PageResult

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        tracker.set_total_pages(job_id, 3)
        tracker.record_page_result(job_id, PageResult(page=1))

        job = tracker.finalize(job_id)

        assert job.status == JobStatus.FAILED
        assert "pages missing: [2, 3]" in job.error

    @pytest.mark.unit
    def test_terminal_job_is_immutable(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import JobStatus, PageResult

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        tracker.set_total_pages(job_id, 1)
        tracker.record_page_result(job_id, PageResult(page=1))
        done = tracker.finalize(job_id)

        tracker.record_page_result(job_id, PageResult(page=2, failed=True))
        tracker.fail(job_id, "late error")
        tracker.set_progress(job_id, 5, "rewind")

        job = tracker.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.error is None
        assert list(job.page_results) == [1]
        assert job.completed_at == done.completed_at

    @pytest.mark.unit
    def test_fail(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import JobStatus

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        job = tracker.fail(job_id, "cannot open file")

        assert job.status == JobStatus.FAILED
        assert job.error == "cannot open file"
        assert job.completed_at is not None

    @pytest.mark.unit
    def test_mark_processing_is_idempotent(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import JobStatus

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        tracker.mark_processing(job_id)
        job = tracker.mark_processing(job_id, "Page 2")

        assert job.status == JobStatus.PROCESSING
        assert job.status_message == "Page 2"

    @pytest.mark.unit
    def test_snapshots_are_detached(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import PageResult

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        snapshot = tracker.snapshot(job_id)
        snapshot.page_results[1] = PageResult(page=1)
        snapshot.progress = 99

        job = tracker.get(job_id)
        assert job.page_results == {}
        assert job.progress == 0

    @pytest.mark.unit
    def test_cancel(self):
        from invoicecrop.pipeline.job_tracker import JobTracker

        tracker = JobTracker()
        job_id = tracker.create_job().job_id

        assert not tracker.is_cancelled(job_id)
        assert tracker.cancel(job_id)
        assert tracker.is_cancelled(job_id)
        assert not tracker.cancel("unknown")

        tracker.fail(job_id, "cancelled")
        assert not tracker.cancel(job_id)

    @pytest.mark.unit
    def test_list_and_delete(self):
        from invoicecrop.pipeline.job_tracker import JobTracker

        tracker = JobTracker()
        first = tracker.create_job("a.pdf").job_id
        second = tracker.create_job("b.pdf").job_id

        assert [j.job_id for j in tracker.list_jobs()] == [first, second]
        assert tracker.delete(first)
        assert tracker.snapshot(first) is None

    @pytest.mark.unit
    def test_concurrent_page_reports(self):
        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import PageResult

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        total = 40
        tracker.set_total_pages(job_id, total)

        threads = [
            threading.Thread(
                target=tracker.record_page_result,
                args=(job_id, PageResult(page=page, artifacts=[_artifact(page)])),
            )
            for page in range(total, 0, -1)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        job = tracker.finalize(job_id)
        assert job.pages_completed == total
        assert [a.page for a in job.artifacts()] == list(range(1, total + 1))


class TestEviction:
    """Tests for dropping finished jobs."""

    def _finished(self, tracker, filename):
        job_id = tracker.create_job(filename).job_id
        tracker.set_total_pages(job_id, 0)
        tracker.finalize(job_id)
        return job_id

    @pytest.mark.unit
    def test_old_finished_jobs_evicted(self):
        from datetime import timedelta

        from invoicecrop.pipeline.job_tracker import JobTracker
        from invoicecrop.types import utc_now

        tracker = JobTracker(max_age_seconds=60)
        done = self._finished(tracker, "done.pdf")
        failed = tracker.create_job("failed.pdf").job_id
        tracker.fail(failed, "boom")
        running = tracker.create_job("running.pdf").job_id
        tracker.mark_processing(running)

        assert tracker.evict_finished_jobs(now=utc_now() + timedelta(seconds=30)) == 0
        evicted = tracker.evict_finished_jobs(now=utc_now() + timedelta(seconds=120))

        assert evicted == 2
        assert tracker.snapshot(done) is None
        assert tracker.snapshot(failed) is None
        assert tracker.snapshot(running) is not None
        assert tracker.store.list_ids() == [running]

    @pytest.mark.unit
    def test_count_cap_drops_oldest_finished(self):
        from invoicecrop.pipeline.job_tracker import JobTracker

        tracker = JobTracker(max_jobs=3)
        running = tracker.create_job("running.pdf").job_id
        finished = [self._finished(tracker, f"{n}.pdf") for n in range(4)]

        tracker.evict_finished_jobs()

        remaining = tracker.store.list_ids()
        assert len(remaining) == 3
        assert running in remaining
        assert finished[0] not in remaining
        assert finished[1] not in remaining
        assert finished[-1] in remaining

    @pytest.mark.unit
    def test_running_jobs_never_evicted(self):
        from invoicecrop.pipeline.job_tracker import JobTracker

        tracker = JobTracker(max_age_seconds=0, max_jobs=1)
        ids = [tracker.create_job(f"{n}.pdf").job_id for n in range(3)]

        assert tracker.evict_finished_jobs() == 0
        assert sorted(tracker.store.list_ids()) == sorted(ids)

    @pytest.mark.unit
    def test_create_job_evicts_and_drops_cancel_event(self):
        from invoicecrop.pipeline.job_tracker import JobTracker

        tracker = JobTracker(max_jobs=1)
        first = self._finished(tracker, "first.pdf")
        second = self._finished(tracker, "second.pdf")
        third = tracker.create_job("third.pdf").job_id

        assert tracker.snapshot(first) is None
        assert tracker.store.list_ids() == [second, third]
        assert first not in tracker._cancel_events


class TestWaitForJob:
    """Tests for wait_for_job."""

    @pytest.mark.unit
    def test_returns_terminal_job(self):
        from invoicecrop.pipeline.job_tracker import JobTracker, wait_for_job

        tracker = JobTracker()
        job_id = tracker.create_job().job_id
        tracker.fail(job_id, "x")

        assert wait_for_job(tracker, job_id, timeout=1).error == "x"

    @pytest.mark.unit
    def test_timeout(self):
        from invoicecrop.pipeline.job_tracker import JobTracker, wait_for_job

        tracker = JobTracker()
        job_id = tracker.create_job().job_id

        with pytest.raises(TimeoutError):
            wait_for_job(tracker, job_id, timeout=0.1, interval=0.02)
