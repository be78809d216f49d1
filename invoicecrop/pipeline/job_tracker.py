"""
Job state tracking.

A job moves PENDING -> PROCESSING -> COMPLETED | FAILED. Page workers
report into it concurrently; every mutation goes through the store's
atomic ``update`` so readers only ever see whole states, and terminal jobs
are never modified again.

Progress bands:
    0-10    submission and setup
    10-90   pages, ``10 + done / total * 80``
    90-100  finalization
"""

import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from loguru import logger

from invoicecrop.types import Job, JobStatus, PageResult, utc_now


SETUP_PROGRESS = 10
PAGES_PROGRESS_SPAN = 80
FINALIZE_PROGRESS = 90

# Retention for finished jobs kept in memory
DEFAULT_JOB_MAX_AGE_SECONDS = 3600
DEFAULT_JOB_MAX_COUNT = 200


@runtime_checkable
class JobStore(Protocol):
    """Storage for job records with atomic read-modify-write."""

    def create(self, job: Job) -> None:
        ...

    def get(self, job_id: str) -> Optional[Job]:
        """Return a detached copy of the job, or None."""
        ...

    def update(self, job_id: str, fn: Callable[[Job], None]) -> Job:
        """Apply ``fn`` to the job atomically and return a detached copy."""
        ...

    def delete(self, job_id: str) -> bool:
        ...

    def list_ids(self) -> List[str]:
        ...


class InMemoryJobStore:
    """Process-local job store guarded by a single lock."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job already exists: {job.job_id}")
            self._jobs[job.job_id] = job.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def update(self, job_id: str, fn: Callable[[Job], None]) -> Job:
        with self._lock:
            if job_id not in self._jobs:
                raise KeyError(f"Job not found: {job_id}")
            # Mutate a copy so a failing fn leaves the stored job untouched
            working = self._jobs[job_id].model_copy(deep=True)
            fn(working)
            self._jobs[job_id] = working
            return working.model_copy(deep=True)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)


def page_progress(pages_completed: int, total_pages: int) -> int:
    """Progress percentage for ``pages_completed`` of ``total_pages``."""
    if total_pages <= 0:
        return SETUP_PROGRESS
    done = min(pages_completed, total_pages)
    return SETUP_PROGRESS + int(done / total_pages * PAGES_PROGRESS_SPAN)


class JobTracker:
    """
    Job lifecycle on top of a JobStore.

    Usage::

        tracker = JobTracker()
        job = tracker.create_job("scan.pdf")
        tracker.set_total_pages(job.job_id, 3)
        tracker.record_page_result(job.job_id, PageResult(page=2))
        tracker.finalize(job.job_id)
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        max_age_seconds: float = DEFAULT_JOB_MAX_AGE_SECONDS,
        max_jobs: int = DEFAULT_JOB_MAX_COUNT,
    ):
        self.store = store or InMemoryJobStore()
        self.max_age_seconds = max_age_seconds
        self.max_jobs = max_jobs
        self._cancel_events: Dict[str, threading.Event] = {}
        self._events_lock = threading.Lock()

    # ── reads ────────────────────────────────────────────────────────────

    def snapshot(self, job_id: str) -> Optional[Job]:
        """Detached copy of the job, or None if unknown."""
        return self.store.get(job_id)

    def get(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise KeyError(f"Job not found: {job_id}")
        return job

    def list_jobs(self) -> List[Job]:
        jobs = [self.store.get(job_id) for job_id in self.store.list_ids()]
        return sorted((j for j in jobs if j is not None), key=lambda j: j.created_at)

    # ── transitions ──────────────────────────────────────────────────────

    def create_job(self, filename: Optional[str] = None, job_id: Optional[str] = None) -> Job:
        self.evict_finished_jobs()
        job = Job(filename=filename, status_message="Queued")
        if job_id:
            job.job_id = job_id
        self.store.create(job)
        with self._events_lock:
            self._cancel_events[job.job_id] = threading.Event()
        logger.info(f"Job {job.job_id} created ({filename or 'no filename'})")
        return self.get(job.job_id)

    def _mutate(self, job_id: str, fn: Callable[[Job], None]) -> Job:
        """Apply ``fn`` unless the job is already terminal."""
        def guarded(job: Job) -> None:
            if job.status.is_terminal:
                logger.warning(f"Job {job_id} is {job.status.value}, ignoring update")
                return
            fn(job)

        return self.store.update(job_id, guarded)

    def set_total_pages(self, job_id: str, total_pages: int) -> Job:
        if total_pages < 0:
            raise ValueError(f"total_pages must be >= 0, got {total_pages}")

        def apply(job: Job) -> None:
            job.total_pages = total_pages
            job.progress = max(job.progress, SETUP_PROGRESS // 2)
            job.status_message = f"Loaded {total_pages} page(s)"

        return self._mutate(job_id, apply)

    def mark_processing(self, job_id: str, message: Optional[str] = None) -> Job:
        """Move a PENDING job to PROCESSING. Safe to call repeatedly."""
        def apply(job: Job) -> None:
            if job.status == JobStatus.PENDING:
                job.status = JobStatus.PROCESSING
                job.progress = max(job.progress, SETUP_PROGRESS)
                logger.debug(f"Job {job_id} -> PROCESSING")
            if message:
                job.status_message = message

        return self._mutate(job_id, apply)

    def set_progress(self, job_id: str, progress: int, message: Optional[str] = None) -> Job:
        """Raise progress to ``progress``; never lowers it."""
        def apply(job: Job) -> None:
            job.progress = max(job.progress, min(100, int(progress)))
            if message:
                job.status_message = message

        return self._mutate(job_id, apply)

    def record_page_result(self, job_id: str, result: PageResult) -> Job:
        """
        Store the result for one page and advance progress.

        Results are keyed by page number, so completion order does not
        affect the aggregated output order.
        """
        def apply(job: Job) -> None:
            job.page_results[result.page] = result
            job.pages_completed = len(job.page_results)
            job.current_page = result.page
            job.progress = max(job.progress, page_progress(job.pages_completed, job.total_pages))
            state = "failed" if result.failed else f"{len(result.artifacts)} region(s)"
            job.status_message = (
                f"Page {result.page} done ({state}), "
                f"{job.pages_completed}/{job.total_pages} pages complete"
            )

        job = self._mutate(job_id, apply)
        logger.info(
            f"Job {job_id}: page {result.page} recorded "
            f"({job.pages_completed}/{job.total_pages}, {job.progress}%)"
        )
        return job

    def finalize(self, job_id: str) -> Job:
        """
        Close the job after all pages have reported.

        Any failed or missing page makes the job FAILED; page results
        already recorded are kept either way.
        """
        self.set_progress(job_id, FINALIZE_PROGRESS, "Finalizing")

        def apply(job: Job) -> None:
            missing = [p for p in range(1, job.total_pages + 1) if p not in job.page_results]
            failed = job.failed_pages

            if failed or missing:
                job.status = JobStatus.FAILED
                parts = []
                if failed:
                    parts.append(f"pages failed: {failed}")
                if missing:
                    parts.append(f"pages missing: {missing}")
                job.error = "; ".join(parts)
                job.status_message = "Processing failed"
            else:
                job.status = JobStatus.COMPLETED
                job.status_message = f"Processing complete, {job.total_regions} region(s) extracted"

            job.progress = 100
            job.current_page = None
            self._close(job)

        job = self._mutate(job_id, apply)
        if job.status == JobStatus.COMPLETED:
            logger.info(f"Job {job_id} completed: {job.total_regions} regions in {job.processing_time_seconds:.2f}s")
        else:
            logger.error(f"Job {job_id} failed: {job.error}")
        return job

    def fail(self, job_id: str, error: str) -> Job:
        """Mark the job FAILED with ``error``."""
        def apply(job: Job) -> None:
            job.status = JobStatus.FAILED
            job.error = error
            job.status_message = "Processing failed"
            self._close(job)

        job = self._mutate(job_id, apply)
        logger.error(f"Job {job_id} failed: {error}")
        return job

    @staticmethod
    def _close(job: Job) -> None:
        job.completed_at = utc_now()
        job.processing_time_seconds = (job.completed_at - job.created_at).total_seconds()

    # ── cancellation ─────────────────────────────────────────────────────

    def cancel_event(self, job_id: str) -> threading.Event:
        with self._events_lock:
            return self._cancel_events.setdefault(job_id, threading.Event())

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation. Pages not yet sent to the model will fail.

        Returns:
            False if the job is unknown or already terminal
        """
        job = self.snapshot(job_id)
        if job is None or job.status.is_terminal:
            return False
        self.cancel_event(job_id).set()
        logger.info(f"Job {job_id}: cancellation requested")
        return True

    def is_cancelled(self, job_id: str) -> bool:
        return self.cancel_event(job_id).is_set()

    def delete(self, job_id: str) -> bool:
        with self._events_lock:
            self._cancel_events.pop(job_id, None)
        return self.store.delete(job_id)

    def evict_finished_jobs(self, now: Optional[datetime] = None) -> int:
        """
        Drop terminal jobs to keep the store bounded.

        Terminal jobs that finished more than ``max_age_seconds`` ago are
        removed first; if the store still holds more than ``max_jobs``
        jobs, the oldest terminal ones go next. Running jobs are never
        evicted.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            Number of jobs removed
        """
        now = now or utc_now()
        finished = [j for j in self.list_jobs() if j.status.is_terminal]

        stale = [
            j for j in finished
            if (now - (j.completed_at or j.created_at)).total_seconds() > self.max_age_seconds
        ]
        for job in stale:
            self.delete(job.job_id)
        if stale:
            logger.debug(f"Evicted {len(stale)} stale jobs")

        stale_ids = {j.job_id for j in stale}
        remaining = [j for j in finished if j.job_id not in stale_ids]
        overflow = len(self.store.list_ids()) - self.max_jobs
        over_cap = remaining[:max(0, overflow)]
        for job in over_cap:
            self.delete(job.job_id)
        if over_cap:
            logger.debug(f"Evicted {len(over_cap)} jobs (over cap)")

        return len(stale) + len(over_cap)


def wait_for_job(
    tracker: JobTracker,
    job_id: str,
    timeout: float = 60.0,
    interval: float = 0.05,
) -> Job:
    """
    Poll until the job is terminal.

    Raises:
        TimeoutError: If the job is still running after ``timeout`` seconds
    """
    deadline = time.monotonic() + timeout
    while True:
        job = tracker.get(job_id)
        if job.status.is_terminal:
            return job
        if time.monotonic() >= deadline:
            raise TimeoutError(f"Job {job_id} still {job.status.value} after {timeout}s")
        time.sleep(interval)
