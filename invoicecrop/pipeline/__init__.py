"""Pipeline orchestration for invoicecrop."""

from invoicecrop.pipeline.job_tracker import InMemoryJobStore, JobStore, JobTracker
from invoicecrop.pipeline.orchestrator import InvoiceProcessor, ProcessingOptions
from invoicecrop.pipeline.page_task import PageTask
from invoicecrop.pipeline.rate_limit import RateLimiter

__all__ = [
    "InMemoryJobStore",
    "JobStore",
    "JobTracker",
    "InvoiceProcessor",
    "ProcessingOptions",
    "PageTask",
    "RateLimiter",
]
