"""
Job State Machine

Handles export job creation, request validation, per-user quotas and status
transitions. Every change to a persisted job goes through this class.

Status graph:
    PENDING -> PROCESSING | FAILED
    PROCESSING -> COMPLETED | FAILED | TIMEOUT
    FAILED | TIMEOUT -> PENDING   (only through retry_job / reset_for_retry)
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional, TYPE_CHECKING

from report_exports.config import LifecycleConfig
from report_exports.errors import (
    ExportValidationError,
    JobNotFoundError,
    JobValidationError,
    QuotaExceededError,
)
from report_exports.jobs.job_types import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    CreateExportJobRequest,
    ExportFormat,
    ExportJob,
    ExportStatus,
    JobCreationOptions,
    JobTransitionResult,
    LifecycleStats,
    utcnow,
)
from report_exports.repository import TIMEOUT_MESSAGE, ExportRepository

if TYPE_CHECKING:
    from report_exports.jobs.queue import JobQueue

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[ExportStatus, FrozenSet[ExportStatus]] = {
    ExportStatus.PENDING: frozenset({ExportStatus.PROCESSING, ExportStatus.FAILED}),
    ExportStatus.PROCESSING: frozenset({ExportStatus.COMPLETED, ExportStatus.FAILED, ExportStatus.TIMEOUT}),
    ExportStatus.COMPLETED: frozenset(),
    ExportStatus.FAILED: frozenset(),
    ExportStatus.TIMEOUT: frozenset(),
}

RETRYABLE_STATUSES = frozenset({ExportStatus.FAILED, ExportStatus.TIMEOUT})

PDF_PAGE_SIZES = ("A4", "A3", "Letter", "Legal")
PDF_ORIENTATIONS = ("portrait", "landscape")
CSV_ENCODINGS = ("utf8", "latin1", "ascii")

DEFAULT_CANCEL_REASON = "Job cancelled by user"


def is_valid_transition(current: ExportStatus, new: ExportStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def _parse_date(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobStateMachine:
    """
    Validates and applies export job status transitions.

    The queue is attached after construction (``attach_queue``) because the two
    components call each other: the state machine hands new jobs to the queue and
    the queue reports execution outcomes back through the state machine.
    """

    def __init__(self, repository: ExportRepository, config: Optional[LifecycleConfig] = None):
        self.repository = repository
        self.config = config or LifecycleConfig()
        self.queue: Optional["JobQueue"] = None
        # Serializes quota check and insert per user
        self._user_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def attach_queue(self, queue: "JobQueue") -> None:
        self.queue = queue

    # ==========================================================================
    # Validation
    # ==========================================================================

    def validate_request(self, request: CreateExportJobRequest) -> List[str]:
        """Collect every problem with ``request``. Empty list means valid."""
        errors = []

        if not request.template_id:
            errors.append("Template ID is required")
        elif request.template_id not in self.config.valid_templates:
            errors.append(f"Invalid template ID: {request.template_id}")

        export_format = None
        if not request.format:
            errors.append("Export format is required")
        else:
            try:
                export_format = ExportFormat(request.format)
            except ValueError:
                errors.append(f"Invalid export format: {request.format}")

        errors.extend(self._validate_parameters(request.parameters or {}))

        if request.options and export_format is not None:
            errors.extend(self._validate_options(export_format, request.options))

        return errors

    def _validate_parameters(self, parameters: Dict[str, Any]) -> List[str]:
        errors = []
        date_range = parameters.get("dateRange")
        if not date_range:
            return errors
        if not isinstance(date_range, dict):
            return ["dateRange must be an object with 'from' and 'to'"]

        start = end = None
        if "from" in date_range:
            start = _parse_date(date_range["from"])
            if start is None:
                errors.append("Invalid date format for dateRange.from")
        if "to" in date_range:
            end = _parse_date(date_range["to"])
            if end is None:
                errors.append("Invalid date format for dateRange.to")
        if start and end and start > end:
            errors.append("dateRange.from must be before dateRange.to")
        return errors

    def _validate_options(self, export_format: ExportFormat, options: Dict[str, Any]) -> List[str]:
        errors = []

        if export_format == ExportFormat.PDF:
            page_size = options.get("pageSize")
            if page_size and page_size not in PDF_PAGE_SIZES:
                errors.append(f"Invalid PDF page size: {page_size}")
            orientation = options.get("orientation")
            if orientation and orientation not in PDF_ORIENTATIONS:
                errors.append(f"Invalid PDF orientation: {orientation}")

        elif export_format == ExportFormat.EXCEL:
            if "compression" in options and not isinstance(options["compression"], bool):
                errors.append("Excel compression option must be boolean")

        elif export_format == ExportFormat.CSV:
            encoding = options.get("encoding")
            if encoding and encoding not in CSV_ENCODINGS:
                errors.append(f"Invalid CSV encoding: {encoding}")
            if "separator" in options and not isinstance(options["separator"], str):
                errors.append("CSV separator must be a string")

        return errors

    async def enforce_user_job_limits(self, user_id: int) -> None:
        limit = self.config.max_jobs_per_user
        active = await self.repository.get_job_history(
            user_id, limit=limit + 1, offset=0, statuses=ACTIVE_STATUSES
        )
        if len(active) >= limit:
            logger.warning(f"User {user_id} is at the active job limit ({limit})")
            raise QuotaExceededError(f"User has reached maximum number of active jobs ({limit})")

    # ==========================================================================
    # Creation
    # ==========================================================================

    async def create_job(
        self,
        user_id: int,
        request: CreateExportJobRequest,
        options: Optional[JobCreationOptions] = None,
    ) -> ExportJob:
        """
        Validate, quota-check, persist and enqueue a new export job.

        Raises:
            JobValidationError: listing every invalid field.
            QuotaExceededError: if the user already has too many active jobs.
        """
        logger.info(f"Creating job for user {user_id}, template {request.template_id}")

        errors = self.validate_request(request)
        if errors:
            logger.warning(f"Job request rejected for user {user_id}: {', '.join(errors)}")
            raise JobValidationError(errors)

        async with self._user_locks[user_id]:
            await self.enforce_user_job_limits(user_id)
            job = await self.repository.create_export_job(
                user_id, request, expires_in_hours=self.config.job_expiry_hours
            )

        if self.queue is not None:
            await self.queue.add_job(job, options)

        logger.info(f"Job created and queued: {job.id}")
        return job

    # ==========================================================================
    # Transitions
    # ==========================================================================

    async def transition_job_status(
        self, job_id: str, new_status: ExportStatus, **update: Any
    ) -> JobTransitionResult:
        """
        Move a job to ``new_status`` if the transition table allows it.

        An illegal transition is reported in the result, not raised.

        Raises:
            JobNotFoundError: if the job does not exist.
        """
        job = await self.repository.get_job_status(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        previous = job.status
        if not is_valid_transition(previous, new_status):
            message = f"Invalid status transition from {previous.value} to {new_status.value}"
            logger.warning(f"Job {job_id}: {message}")
            return JobTransitionResult(
                success=False, previous_status=previous, new_status=new_status, message=message
            )

        changes = {"status": new_status, **update}
        now = utcnow()
        if new_status == ExportStatus.PROCESSING and not job.started_at and "started_at" not in update:
            changes["started_at"] = now
        if new_status in TERMINAL_STATUSES and not job.completed_at and "completed_at" not in update:
            changes["completed_at"] = now

        await self.repository.update_job(job_id, **changes)
        logger.info(f"Job {job_id} transitioned from {previous.value} to {new_status.value}")
        return JobTransitionResult(success=True, previous_status=previous, new_status=new_status)

    async def mark_queued(self, job_id: str) -> Optional[ExportJob]:
        """Persist ``{status: PENDING, progress: 0}`` for a job entering the queue."""
        job = await self.repository.get_job_status(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != ExportStatus.PENDING:
            logger.warning(f"Job {job_id} is {job.status.value}, not queueing")
            return None
        return await self.repository.update_job(job_id, status=ExportStatus.PENDING, progress=0)

    async def mark_retry_pending(self, job_id: str, attempt: int, max_retries: int, reason: str) -> bool:
        """Return a PROCESSING job to PENDING while it waits out a retry backoff."""
        job = await self.repository.get_job_status(job_id)
        if job is None or job.status != ExportStatus.PROCESSING:
            return False
        await self.repository.update_job(
            job_id,
            status=ExportStatus.PENDING,
            progress=0,
            started_at=None,
            error_message=f"Retry {attempt}/{max_retries}: {reason}",
        )
        return True

    async def reset_for_retry(self, job_id: str) -> Optional[ExportJob]:
        """Put a FAILED or TIMEOUT job back to a fresh PENDING state. None if not eligible."""
        job = await self.repository.get_job_status(job_id)
        if job is None:
            logger.warning(f"Job not found for retry: {job_id}")
            return None
        if job.status not in RETRYABLE_STATUSES:
            logger.warning(f"Cannot retry job in status {job.status.value}: {job_id}")
            return None

        return await self.repository.update_job(
            job_id,
            status=ExportStatus.PENDING,
            progress=0,
            error_message=None,
            started_at=None,
            completed_at=None,
        )

    async def cancel_job(self, job_id: str, reason: Optional[str] = None) -> bool:
        """Cancel a PENDING or PROCESSING job. False for missing or finished jobs."""
        job = await self.repository.get_job_status(job_id)
        if job is None:
            logger.warning(f"Job not found for cancellation: {job_id}")
            return False
        if job.status not in ACTIVE_STATUSES:
            logger.warning(f"Cannot cancel job in status {job.status.value}: {job_id}")
            return False

        removed = False
        if self.queue is not None:
            removed = await self.queue.cancel_job(job_id)

        result = await self.transition_job_status(
            job_id, ExportStatus.FAILED, error_message=reason or DEFAULT_CANCEL_REASON
        )
        if not result.success:
            return False

        if self.queue is not None and not removed:
            self.queue.notify_cancelled(job_id)
        logger.info(f"Job cancelled: {job_id} (from queue: {removed})")
        return True

    async def retry_job(self, job_id: str) -> bool:
        """Re-run a FAILED or TIMEOUT job from scratch. False for any other status."""
        job = await self.reset_for_retry(job_id)
        if job is None:
            return False

        if self.queue is not None:
            await self.queue.requeue_job(job)

        logger.info(f"Job queued for retry: {job_id}")
        return True

    async def handle_job_timeout(self, job_id: str) -> JobTransitionResult:
        logger.info(f"Handling timeout for job: {job_id}")
        return await self.transition_job_status(
            job_id, ExportStatus.TIMEOUT, error_message=TIMEOUT_MESSAGE
        )

    async def update_job_progress(self, job_id: str, progress: float, message: Optional[str] = None) -> None:
        if progress < 0 or progress > 100:
            raise ExportValidationError(f"Invalid progress value: {progress}. Must be between 0 and 100")

        changes: Dict[str, Any] = {"progress": int(progress)}
        if message:
            changes["error_message"] = message
        await self.repository.update_job(job_id, **changes)
        logger.debug(f"Job progress updated: {job_id} - {progress}%")

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get_job_details(self, job_id: str) -> Optional[ExportJob]:
        return await self.repository.get_job_status(job_id)

    async def get_user_job_history(
        self,
        user_id: int,
        status: Optional[ExportStatus] = None,
        format: Optional[ExportFormat] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExportJob]:
        statuses = [status] if status else None
        return await self.repository.get_job_history(
            user_id,
            limit=limit,
            offset=offset,
            statuses=statuses,
            format=format,
            template_id=template_id,
        )

    async def get_lifecycle_stats(self) -> LifecycleStats:
        stats = await self.repository.get_export_stats()
        total = stats.total_jobs
        if total == 0:
            return LifecycleStats()

        return LifecycleStats(
            average_processing_time=stats.average_processing_seconds,
            success_rate=stats.completed_jobs / total * 100,
            retry_rate=(stats.failed_jobs + stats.timeout_jobs) / total * 100,
            timeout_rate=stats.timeout_jobs / total * 100,
        )
