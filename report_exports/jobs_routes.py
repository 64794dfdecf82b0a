"""
Export Jobs API Routes

Provides endpoints for:
- Creating export jobs and listing a user's history
- Checking job status, cancelling, retrying and reporting progress
- Downloading, inspecting and deleting rendered files
- Storage, queue, lifecycle and cleanup statistics

The requesting user comes from the ``X-User-Id`` header, or from the claims of a
bearer token when that header is absent.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field

from report_exports.errors import (
    AccessDeniedError,
    ConcurrencyError,
    ExportError,
    ExportValidationError,
    NotFoundError,
    QuotaExceededError,
)
from report_exports.jobs.job_types import (
    CleanupMetrics,
    CleanupResult,
    CreateExportJobRequest,
    ExportFormat,
    ExportJob,
    ExportStatus,
    FileInfo,
    JobCreationOptions,
    LifecycleStats,
    QueueStats,
    QueueStatus,
    StorageStats,
)
from report_exports.service import ExportService
from report_exports.supabase_client import verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exports", tags=["exports"])


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_export_service(request: Request) -> ExportService:
    service = getattr(request.app.state, "export_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Export service is not running")
    return service


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> int:
    """Resolve the requesting user's numeric id."""
    raw = x_user_id
    if raw is None and authorization:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise HTTPException(status_code=401, detail="Invalid authorization header")
        claims = verify_token(parts[1])
        if not claims:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        raw = claims.get("user_id") or claims.get("sub")

    if raw is None:
        raise HTTPException(status_code=401, detail="X-User-Id header missing")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid user id: {raw}")


def to_http_error(error: ExportError) -> HTTPException:
    if isinstance(error, ExportValidationError):
        status_code = 400
    elif isinstance(error, QuotaExceededError):
        status_code = 429
    elif isinstance(error, NotFoundError):
        status_code = 404
    elif isinstance(error, AccessDeniedError):
        status_code = 403
    elif isinstance(error, ConcurrencyError):
        status_code = 409
    else:
        status_code = 500
    return HTTPException(status_code=status_code, detail=error.to_dict())


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================

class CreateExportRequest(CreateExportJobRequest):
    """Export request plus optional queueing hints."""
    priority: Optional[float] = None
    max_retries: Optional[int] = Field(default=None, ge=0)


class CancelJobRequest(BaseModel):
    reason: Optional[str] = None


class ActionResponse(BaseModel):
    success: bool
    message: str
    job_id: Optional[str] = None
    file_id: Optional[str] = None


class ProgressUpdateRequest(BaseModel):
    progress: float
    message: Optional[str] = None


class QueueOverview(BaseModel):
    status: QueueStatus
    stats: QueueStats


# =============================================================================
# JOB ENDPOINTS
# =============================================================================

@router.post("", response_model=ExportJob, status_code=201)
async def create_export(
    request: CreateExportRequest,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    """Validate and queue a new export job."""
    job_request = CreateExportJobRequest(
        template_id=request.template_id,
        format=request.format,
        parameters=request.parameters,
        options=request.options,
    )
    options = JobCreationOptions(priority=request.priority, max_retries=request.max_retries)
    try:
        return await service.create_job(user_id, job_request, options)
    except ExportError as e:
        raise to_http_error(e)


@router.get("", response_model=List[ExportJob])
async def list_exports(
    status: Optional[ExportStatus] = Query(default=None),
    format: Optional[ExportFormat] = Query(default=None),
    template_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    """List the current user's export jobs, newest first."""
    return await service.get_job_history(
        user_id, status=status, format=format, template_id=template_id, limit=limit, offset=offset
    )


# =============================================================================
# STATISTICS / MAINTENANCE
# =============================================================================

@router.get("/stats/storage", response_model=StorageStats)
async def storage_stats(
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    return await service.get_storage_stats(user_id)


@router.get("/stats/queue", response_model=QueueOverview)
async def queue_stats(
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    return QueueOverview(status=await service.get_queue_status(), stats=service.queue.get_queue_stats())


@router.get("/stats/lifecycle", response_model=LifecycleStats)
async def lifecycle_stats(
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    return await service.get_lifecycle_stats()


@router.get("/stats/cleanup", response_model=CleanupMetrics)
async def cleanup_metrics(
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    return service.get_cleanup_metrics()


@router.post("/cleanup", response_model=CleanupResult)
async def run_cleanup(
    force: bool = Query(default=False),
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    """Run a retention sweep now."""
    logger.info(f"Manual cleanup requested by user {user_id} (force={force})")
    try:
        return await service.run_cleanup(force)
    except ExportError as e:
        raise to_http_error(e)


# =============================================================================
# FILE ENDPOINTS
# =============================================================================

def _file_response(content: bytes, file_name: str, mime_type: str) -> Response:
    return Response(
        content=content,
        media_type=mime_type,
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


@router.get("/files/{file_id}", response_model=FileInfo)
async def get_file_info(
    file_id: str,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    info = await service.get_file_info(file_id, user_id)
    if info is None:
        raise HTTPException(status_code=404, detail="File not found")
    return info


@router.get("/files/{file_id}/download")
async def download_file(
    file_id: str,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    try:
        retrieved = await service.download_file(file_id, user_id)
    except ExportError as e:
        raise to_http_error(e)
    return _file_response(retrieved.content, retrieved.metadata.file_name, retrieved.metadata.mime_type)


@router.delete("/files/{file_id}", response_model=ActionResponse)
async def delete_file(
    file_id: str,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    deleted = await service.delete_file(file_id, user_id)
    return ActionResponse(
        success=deleted,
        message="File deleted" if deleted else "File not found or not owned by user",
        file_id=file_id,
    )


# =============================================================================
# SINGLE JOB ENDPOINTS
# =============================================================================

@router.get("/{job_id}", response_model=ExportJob)
async def get_export_status(
    job_id: str,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    try:
        return await service.get_job_status(job_id, user_id)
    except ExportError as e:
        raise to_http_error(e)


@router.post("/{job_id}/cancel", response_model=ActionResponse)
async def cancel_export(
    job_id: str,
    request: Optional[CancelJobRequest] = None,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    """
    Cancel a queued or running export.

    Queued jobs are removed immediately; a running render finishes but its
    result is discarded.
    """
    reason = request.reason if request else None
    try:
        success = await service.cancel_job(job_id, user_id, reason)
    except ExportError as e:
        raise to_http_error(e)
    return ActionResponse(
        success=success,
        message="Job cancelled" if success else "Job cannot be cancelled in its current state",
        job_id=job_id,
    )


@router.post("/{job_id}/retry", response_model=ActionResponse)
async def retry_export(
    job_id: str,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    """Re-queue a FAILED or TIMEOUT export."""
    try:
        success = await service.retry_job(job_id, user_id)
    except ExportError as e:
        raise to_http_error(e)
    return ActionResponse(
        success=success,
        message="Job queued for retry" if success else "Only failed or timed out jobs can be retried",
        job_id=job_id,
    )


@router.put("/{job_id}/progress", response_model=ActionResponse)
async def update_export_progress(
    job_id: str,
    request: ProgressUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    try:
        await service.get_job_status(job_id, user_id)
        await service.update_progress(job_id, request.progress, request.message)
    except ExportError as e:
        raise to_http_error(e)
    return ActionResponse(success=True, message=f"Progress set to {request.progress:g}%", job_id=job_id)


@router.get("/{job_id}/download")
async def download_job_file(
    job_id: str,
    user_id: int = Depends(get_current_user_id),
    service: ExportService = Depends(get_export_service),
):
    """Download the file produced by a completed job."""
    try:
        file_id = await service.get_job_file_id(job_id, user_id)
        if file_id is None:
            raise HTTPException(status_code=404, detail="Job has no file yet")
        retrieved = await service.download_file(file_id, user_id)
    except ExportError as e:
        raise to_http_error(e)
    return _file_response(retrieved.content, retrieved.metadata.file_name, retrieved.metadata.mime_type)
