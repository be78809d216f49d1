"""
FastAPI server for invoicecrop.

Provides REST API endpoints under /api/v1/invoice for:
- Synchronous recognition and cropping (POST /recognize-and-crop)
- Async jobs (POST /recognize-and-crop/async, GET /task/{task_id})
- Cropped and original page previews / downloads
- Health check (GET /health)

Every JSON response is wrapped as ``{code, message, data, timestamp}``.
"""

import asyncio
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from loguru import logger

from invoicecrop import __version__
from invoicecrop.config import Config, StorageConfig, load_config
from invoicecrop.io.cleanup import cleanup_expired_files
from invoicecrop.io.image import SUPPORTED_FORMATS
from invoicecrop.pipeline import InvoiceProcessor, ProcessingOptions
from invoicecrop.pipeline.page_task import page_image_name
from invoicecrop.types import Job, JobStatus


API_PREFIX = "/api/v1/invoice"
ALLOWED_UPLOAD_TYPES = sorted({".pdf"} | SUPPORTED_FORMATS)

# Global state for the processor shared by all requests
_processor: Optional[InvoiceProcessor] = None


class ApiResponse(BaseModel):
    """Response envelope."""
    code: int = 200
    message: str = "success"
    data: Any = None
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def success(cls, data: Any = None) -> "ApiResponse":
        return cls(data=data)

    @classmethod
    def error(cls, code: int, message: str, data: Any = None) -> "ApiResponse":
        return cls(code=code, message=message, data=data)


def _envelope(response: ApiResponse, status_code: Optional[int] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code or response.code,
        content=response.model_dump(mode="json"),
    )


def _build_processor(config: Optional[Config] = None) -> InvoiceProcessor:
    if config is None:
        config_path = os.environ.get("INVOICECROP_CONFIG")
        config = load_config(config_path) if config_path else Config()

    for directory in (config.storage.upload_dir, config.storage.output_dir, config.storage.temp_dir):
        Path(directory).mkdir(parents=True, exist_ok=True)

    if config.storage.cleanup_enabled:
        cleanup_expired_files(
            [config.storage.upload_dir, config.storage.temp_dir],
            retention_hours=config.storage.retention_hours,
        )

    return InvoiceProcessor(config)


async def _periodic_cleanup(storage: StorageConfig) -> None:
    """Sweep uploads and temp files every ``cleanup_interval_seconds``."""
    while True:
        await asyncio.sleep(storage.cleanup_interval_seconds)
        try:
            await run_in_threadpool(
                cleanup_expired_files,
                [storage.upload_dir, storage.temp_dir],
                retention_hours=storage.retention_hours,
            )
        except Exception as e:
            logger.error(f"Scheduled cleanup failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _processor

    logger.info("Starting invoicecrop API server...")
    if _processor is None:
        _processor = _build_processor()
        logger.info("InvoiceProcessor initialized")

    cleanup_task = None
    storage = _processor.config.storage
    if storage.cleanup_enabled and storage.cleanup_interval_seconds > 0:
        cleanup_task = asyncio.create_task(_periodic_cleanup(storage))
        logger.info(f"Scheduled cleanup every {storage.cleanup_interval_seconds:.0f}s")

    yield

    logger.info("Shutting down invoicecrop API server...")
    if cleanup_task is not None:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
    _processor = None


def create_app(config: Optional[Config] = None, processor: Optional[InvoiceProcessor] = None) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        config: Configuration used to build the processor at startup
        processor: Pre-built processor (takes precedence over ``config``)
    """
    global _processor

    if processor is not None:
        _processor = processor
    elif config is not None:
        _processor = _build_processor(config)

    cors_origins = (config or (processor.config if processor else Config())).server.cors_origins

    app = FastAPI(
        title="invoicecrop API",
        description="Locate invoices on scanned pages and crop each one out",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _envelope(ApiResponse.error(exc.status_code, str(exc.detail)))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _envelope(ApiResponse.error(400, f"Invalid request: {exc.errors()}"))

    app.include_router(_router())
    return app


def _get_processor() -> InvoiceProcessor:
    if _processor is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return _processor


def _artifact_urls(base_url: str, task_id: str, filename: str, page: int) -> Dict[str, str]:
    return {
        "imageUrl": f"{base_url}/preview/cropped/{filename}",
        "downloadUrl": f"{base_url}/download/{filename}",
        "originalImageUrl": f"{base_url}/preview/original/{task_id}?page={page}",
    }


def job_payload(job: Job, base_url: str) -> Dict[str, Any]:
    """Serialize a job snapshot for API clients, artifacts in page order."""
    invoices = []
    for artifact in job.artifacts():
        entry = {
            "index": artifact.index,
            "page": artifact.page,
            "bbox": artifact.bbox,
            "confidence": artifact.confidence,
            "merchantName": artifact.label,
            "filename": artifact.artifact_id,
            "corrected": artifact.corrected,
            "small": artifact.small,
        }
        entry.update(_artifact_urls(base_url, job.job_id, artifact.artifact_id, artifact.page))
        invoices.append(entry)

    return {
        "taskId": job.job_id,
        "filename": job.filename,
        "status": job.status.value,
        "progress": job.progress,
        "currentPage": job.current_page,
        "totalPages": job.total_pages,
        "pagesCompleted": job.pages_completed,
        "statusMessage": job.status_message,
        "totalInvoices": len(invoices),
        "invoices": invoices,
        "failedPages": job.failed_pages,
        "warnings": {
            str(r.page): r.warnings for r in job.ordered_results() if r.warnings
        },
        "error": job.error,
        "createdAt": job.created_at.isoformat(),
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        "processingTime": job.processing_time_seconds,
    }


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/") + API_PREFIX


async def _save_upload(processor: InvoiceProcessor, file: UploadFile) -> Path:
    """Validate and persist an upload; returns its path in the upload dir."""
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="File must not be empty")

    suffix = Path(file.filename).suffix.lower()
    if suffix not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type: {suffix}. Allowed: {ALLOWED_UPLOAD_TYPES}",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="File must not be empty")

    max_bytes = processor.config.server.max_upload_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File too large: {len(content)} bytes (max {processor.config.server.max_upload_mb} MB)",
        )

    upload_dir = Path(processor.config.storage.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    # Keep the original name visible for status readers, uniquely prefixed on disk
    target = upload_dir / f"{uuid.uuid4().hex}_{Path(file.filename).name}"
    target.write_bytes(content)

    logger.info(f"Received upload {file.filename} ({len(content)} bytes) -> {target}")
    return target


def _options(crop_padding: int, output_format: str) -> ProcessingOptions:
    if crop_padding < 0:
        raise HTTPException(status_code=400, detail=f"cropPadding must be >= 0, got {crop_padding}")
    return ProcessingOptions(padding=crop_padding, output_format=output_format)


def _router():
    router = APIRouter(prefix=API_PREFIX)

    @router.get("/health", tags=["System"])
    async def health_check():
        """Check API health and vision model configuration."""
        processor = _get_processor()
        return ApiResponse.success({
            "status": "UP",
            "service": "invoicecrop",
            "version": __version__,
            "model": processor.config.vision.model,
            "visionConfigured": processor.config.vision.is_ready,
            "workers": processor.config.runtime.get_workers(),
        })

    @router.post("/recognize-and-crop", tags=["Processing"])
    async def recognize_and_crop(
        request: Request,
        file: UploadFile = File(..., description="PDF or image file"),
        crop_padding: int = Form(10, alias="cropPadding"),
        output_format: str = Form("jpg", alias="outputFormat"),
    ):
        """Process an upload and wait for every page to finish."""
        processor = _get_processor()
        options = _options(crop_padding, output_format)
        path = await _save_upload(processor, file)

        try:
            job = await run_in_threadpool(processor.process, str(path), options)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        payload = job_payload(job, _base_url(request))
        if job.status == JobStatus.FAILED:
            return _envelope(ApiResponse.error(500, job.error or "Processing failed", payload))
        return ApiResponse.success(payload)

    @router.post("/recognize-and-crop/async", tags=["Processing"])
    async def recognize_and_crop_async(
        request: Request,
        file: UploadFile = File(..., description="PDF or image file"),
        crop_padding: int = Form(10, alias="cropPadding"),
        output_format: str = Form("jpg", alias="outputFormat"),
    ):
        """Start a background job; poll /task/{task_id} for progress."""
        processor = _get_processor()
        options = _options(crop_padding, output_format)
        path = await _save_upload(processor, file)

        try:
            task_id = processor.submit(str(path), options)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        job = processor.tracker.get(task_id)
        return ApiResponse.success({
            "taskId": task_id,
            "status": job.status.value,
            "message": "Task submitted",
        })

    @router.get("/task/{task_id}", tags=["Processing"])
    async def get_task_status(request: Request, task_id: str):
        """Get status and results of a job."""
        processor = _get_processor()
        job = processor.tracker.snapshot(task_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        return ApiResponse.success(job_payload(job, _base_url(request)))

    @router.post("/task/{task_id}/cancel", tags=["Processing"])
    async def cancel_task(task_id: str):
        """Stop a running job from issuing further model calls."""
        processor = _get_processor()
        job = processor.tracker.snapshot(task_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
        if not processor.cancel(task_id):
            raise HTTPException(status_code=409, detail=f"Task already {job.status.value}")
        return ApiResponse.success({"taskId": task_id, "cancelled": True})

    def _stored_file(name: str) -> Path:
        processor = _get_processor()
        try:
            path = processor.store.path(name)
        except ValueError:
            raise HTTPException(status_code=404, detail=f"File not found: {name}")
        if not path.is_file():
            raise HTTPException(status_code=404, detail=f"File not found: {name}")
        return path

    @router.get("/preview/cropped/{filename}", tags=["Files"])
    async def preview_cropped(filename: str):
        """Inline view of a cropped invoice."""
        return FileResponse(_stored_file(filename))

    @router.get("/download/{filename}", tags=["Files"])
    async def download_cropped(filename: str):
        """Download a cropped invoice as an attachment."""
        return FileResponse(_stored_file(filename), filename=filename)

    @router.get("/preview/original/{task_id}", tags=["Files"])
    async def preview_original(task_id: str, page: int = Query(1, ge=1)):
        """Rendered page image the crops were cut from."""
        return FileResponse(_stored_file(page_image_name(task_id, page)))

    @router.get("/download/original/{task_id}", tags=["Files"])
    async def download_original(task_id: str, page: int = Query(1, ge=1)):
        """Download the rendered page image as an attachment."""
        return FileResponse(
            _stored_file(page_image_name(task_id, page)),
            filename=f"original_page_{page}.jpg",
        )

    return router


# Create default app
app = create_app()


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8080))
    host = os.environ.get("HOST", "0.0.0.0")

    uvicorn.run(
        "invoicecrop.api.server:app",
        host=host,
        port=port,
        reload=False,
        workers=1,
    )
