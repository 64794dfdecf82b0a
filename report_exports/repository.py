"""
Export Repository

Persistence collaborator for export jobs and files. ``ExportRepository`` is the
interface the pipeline depends on; ``SupabaseExportRepository`` stores rows in the
``export_jobs`` / ``export_files`` tables and ``InMemoryExportRepository`` keeps
them in process memory for single-node development and tests.
"""

import abc
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set

from report_exports.errors import StorageError
from report_exports.jobs.job_types import (
    CreateExportJobRequest,
    ExportFile,
    ExportFormat,
    ExportJob,
    ExportStats,
    ExportStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Job timed out after exceeding maximum processing time"


class ExportRepository(abc.ABC):
    """Async persistence interface used by every pipeline component."""

    @abc.abstractmethod
    async def create_export_job(
        self, user_id: int, request: CreateExportJobRequest, expires_in_hours: int = 24
    ) -> ExportJob: ...

    @abc.abstractmethod
    async def get_job_status(self, job_id: str) -> Optional[ExportJob]: ...

    @abc.abstractmethod
    async def update_job(self, job_id: str, **changes: Any) -> ExportJob: ...

    @abc.abstractmethod
    async def get_job_history(
        self,
        user_id: int,
        limit: int = 50,
        offset: int = 0,
        statuses: Optional[Iterable[ExportStatus]] = None,
        format: Optional[ExportFormat] = None,
        template_id: Optional[str] = None,
    ) -> List[ExportJob]: ...

    @abc.abstractmethod
    async def get_pending_jobs(self) -> List[ExportJob]: ...

    @abc.abstractmethod
    async def create_export_file(
        self,
        job_id: str,
        file_name: str,
        file_path: str,
        file_size: int,
        mime_type: str,
        checksum: Optional[str] = None,
    ) -> ExportFile: ...

    @abc.abstractmethod
    async def get_export_file(self, file_id: str) -> Optional[ExportFile]: ...

    @abc.abstractmethod
    async def get_export_file_for_job(self, job_id: str) -> Optional[ExportFile]: ...

    @abc.abstractmethod
    async def delete_export_file(self, file_id: str) -> bool: ...

    @abc.abstractmethod
    async def increment_download_count(self, file_id: str) -> Optional[ExportFile]: ...

    @abc.abstractmethod
    async def get_export_stats(self, user_id: Optional[int] = None) -> ExportStats: ...

    @abc.abstractmethod
    async def get_expired_files(
        self, status: ExportStatus, older_than: datetime, limit: int = 100, offset: int = 0
    ) -> List[ExportFile]:
        """Files of jobs in ``status`` that are past ``expires_at`` and finished before ``older_than``."""

    @abc.abstractmethod
    async def get_tracked_file_paths(self) -> Set[str]: ...

    @abc.abstractmethod
    async def get_timeout_jobs(self, timeout_minutes: int = 10) -> List[ExportJob]: ...

    @abc.abstractmethod
    async def mark_jobs_as_timeout(self, job_ids: List[str]) -> int: ...


def build_export_stats(jobs: List[ExportJob], files: List[ExportFile]) -> ExportStats:
    """Aggregate job and file rows into an ``ExportStats`` snapshot."""
    stats = ExportStats(total_jobs=len(jobs))
    processing_seconds = []

    for job in jobs:
        field_name = f"{job.status.value.lower()}_jobs"
        setattr(stats, field_name, getattr(stats, field_name) + 1)

        if job.status == ExportStatus.COMPLETED:
            stats.by_format[job.format.value.lower()] = stats.by_format.get(job.format.value.lower(), 0) + 1
            stats.by_template[job.template_id] = stats.by_template.get(job.template_id, 0) + 1
            if job.started_at and job.completed_at:
                processing_seconds.append((job.completed_at - job.started_at).total_seconds())

    stats.total_files = len(files)
    stats.total_file_size = sum(f.file_size for f in files)
    stats.total_downloads = sum(f.download_count for f in files)
    if files:
        stats.oldest_file_at = min(f.created_at for f in files)
        stats.newest_file_at = max(f.created_at for f in files)
    if processing_seconds:
        stats.average_processing_seconds = sum(processing_seconds) / len(processing_seconds)

    return stats


def is_expired(job: ExportJob, status: ExportStatus, older_than: datetime, now: datetime) -> bool:
    if job.status != status:
        return False
    if job.expires_at is not None and job.expires_at > now:
        return False
    finished_at = job.completed_at or job.created_at
    return finished_at <= older_than


# ============================================================================
# In-memory implementation
# ============================================================================

class InMemoryExportRepository(ExportRepository):
    """
    Process-local repository. Rows live in dicts keyed by id; every read returns a
    copy so callers never mutate stored state directly.
    """

    def __init__(self):
        self.jobs: Dict[str, ExportJob] = {}
        self.files: Dict[str, ExportFile] = {}

    async def create_export_job(self, user_id, request, expires_in_hours=24):
        now = utcnow()
        job = ExportJob(
            user_id=user_id,
            template_id=request.template_id,
            format=ExportFormat(request.format),
            parameters=request.parameters or {},
            options=request.options or {},
            created_at=now,
            expires_at=now + timedelta(hours=expires_in_hours),
        )
        self.jobs[job.id] = job
        logger.info(f"Export job created with ID: {job.id}")
        return job.model_copy()

    async def get_job_status(self, job_id):
        job = self.jobs.get(job_id)
        return job.model_copy() if job else None

    async def update_job(self, job_id, **changes):
        job = self.jobs.get(job_id)
        if job is None:
            raise StorageError.for_operation("update job")
        updated = job.model_copy(update=changes)
        self.jobs[job_id] = updated
        return updated.model_copy()

    async def get_job_history(self, user_id, limit=50, offset=0, statuses=None, format=None, template_id=None):
        wanted = set(statuses) if statuses else None
        jobs = [
            j for j in self.jobs.values()
            if j.user_id == user_id
            and (wanted is None or j.status in wanted)
            and (format is None or j.format == format)
            and (template_id is None or j.template_id == template_id)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy() for j in jobs[offset:offset + limit]]

    async def get_pending_jobs(self):
        jobs = [j for j in self.jobs.values() if j.status == ExportStatus.PENDING]
        jobs.sort(key=lambda j: j.created_at)
        return [j.model_copy() for j in jobs]

    async def create_export_file(self, job_id, file_name, file_path, file_size, mime_type, checksum=None):
        record = ExportFile(
            job_id=job_id,
            file_name=file_name,
            file_path=file_path,
            file_size=file_size,
            mime_type=mime_type,
            checksum=checksum,
        )
        self.files[record.id] = record
        return record.model_copy()

    async def get_export_file(self, file_id):
        record = self.files.get(file_id)
        return record.model_copy() if record else None

    async def get_export_file_for_job(self, job_id):
        matches = [f for f in self.files.values() if f.job_id == job_id]
        if not matches:
            return None
        return max(matches, key=lambda f: f.created_at).model_copy()

    async def delete_export_file(self, file_id):
        return self.files.pop(file_id, None) is not None

    async def increment_download_count(self, file_id):
        record = self.files.get(file_id)
        if record is None:
            return None
        record = record.model_copy(update={
            "download_count": record.download_count + 1,
            "last_downloaded_at": utcnow(),
        })
        self.files[file_id] = record
        return record.model_copy()

    async def get_export_stats(self, user_id=None):
        jobs = [j for j in self.jobs.values() if user_id is None or j.user_id == user_id]
        job_ids = {j.id for j in jobs}
        files = [f for f in self.files.values() if f.job_id in job_ids]
        return build_export_stats(jobs, files)

    async def get_expired_files(self, status, older_than, limit=100, offset=0):
        now = utcnow()
        expired_ids = {
            j.id for j in self.jobs.values() if is_expired(j, status, older_than, now)
        }
        files = [f for f in self.files.values() if f.job_id in expired_ids]
        files.sort(key=lambda f: f.created_at)
        return [f.model_copy() for f in files[offset:offset + limit]]

    async def get_tracked_file_paths(self):
        return {f.file_path for f in self.files.values()}

    async def get_timeout_jobs(self, timeout_minutes=10):
        cutoff = utcnow() - timedelta(minutes=timeout_minutes)
        return [
            j.model_copy() for j in self.jobs.values()
            if j.status == ExportStatus.PROCESSING and j.started_at and j.started_at < cutoff
        ]

    async def mark_jobs_as_timeout(self, job_ids):
        now = utcnow()
        marked = 0
        for job_id in job_ids:
            job = self.jobs.get(job_id)
            if job is None or job.status != ExportStatus.PROCESSING:
                continue
            self.jobs[job_id] = job.model_copy(update={
                "status": ExportStatus.TIMEOUT,
                "error_message": TIMEOUT_MESSAGE,
                "completed_at": job.completed_at or now,
            })
            marked += 1
        logger.info(f"Marked {marked} jobs as timed out")
        return marked


# ============================================================================
# Supabase implementation
# ============================================================================

class SupabaseExportRepository(ExportRepository):
    """
    Stores export rows in Supabase. The client is synchronous, so every query is
    executed on the default thread pool to keep the event loop responsive.
    """

    JOBS_TABLE = "export_jobs"
    FILES_TABLE = "export_files"

    def __init__(self, supabase=None):
        if supabase is None:
            from report_exports.supabase_client import get_supabase
            supabase = get_supabase()
        if supabase is None:
            raise StorageError("Supabase is not configured (set SUPABASE_URL and a key)")
        self.supabase = supabase

    async def _execute(self, query, operation: str):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, query.execute)
        except Exception as e:
            logger.error(f"Error during {operation}: {e}")
            raise StorageError.for_operation(operation) from e

    def _jobs(self):
        return self.supabase.table(self.JOBS_TABLE)

    def _files(self):
        return self.supabase.table(self.FILES_TABLE)

    @staticmethod
    def _serialize(changes: Dict[str, Any]) -> Dict[str, Any]:
        data = {}
        for key, value in changes.items():
            if isinstance(value, datetime):
                value = value.isoformat()
            elif hasattr(value, "value"):
                value = value.value
            data[key] = value
        return data

    async def create_export_job(self, user_id, request, expires_in_hours=24):
        now = utcnow()
        job = ExportJob(
            user_id=user_id,
            template_id=request.template_id,
            format=ExportFormat(request.format),
            parameters=request.parameters or {},
            options=request.options or {},
            created_at=now,
            expires_at=now + timedelta(hours=expires_in_hours),
        )
        result = await self._execute(
            self._jobs().insert(job.model_dump(mode="json")), "create export job"
        )
        created = ExportJob(**result.data[0]) if result.data else job
        logger.info(f"Export job created with ID: {created.id}")
        return created

    async def get_job_status(self, job_id):
        result = await self._execute(
            self._jobs().select("*").eq("id", job_id).limit(1), "get job status"
        )
        return ExportJob(**result.data[0]) if result.data else None

    async def update_job(self, job_id, **changes):
        result = await self._execute(
            self._jobs().update(self._serialize(changes)).eq("id", job_id), "update job"
        )
        if not result.data:
            raise StorageError.for_operation("update job")
        return ExportJob(**result.data[0])

    async def get_job_history(self, user_id, limit=50, offset=0, statuses=None, format=None, template_id=None):
        query = self._jobs().select("*").eq("user_id", user_id)
        if statuses:
            query = query.in_("status", [s.value for s in statuses])
        if format is not None:
            query = query.eq("format", ExportFormat(format).value)
        if template_id is not None:
            query = query.eq("template_id", template_id)
        query = query.order("created_at", desc=True).range(offset, offset + limit - 1)
        result = await self._execute(query, "get job history")
        return [ExportJob(**row) for row in result.data or []]

    async def get_pending_jobs(self):
        result = await self._execute(
            self._jobs().select("*").eq("status", ExportStatus.PENDING.value).order("created_at"),
            "get pending jobs",
        )
        return [ExportJob(**row) for row in result.data or []]

    async def create_export_file(self, job_id, file_name, file_path, file_size, mime_type, checksum=None):
        record = ExportFile(
            job_id=job_id,
            file_name=file_name,
            file_path=file_path,
            file_size=file_size,
            mime_type=mime_type,
            checksum=checksum,
        )
        result = await self._execute(
            self._files().insert(record.model_dump(mode="json")), "create export file record"
        )
        return ExportFile(**result.data[0]) if result.data else record

    async def get_export_file(self, file_id):
        result = await self._execute(
            self._files().select("*").eq("id", file_id).limit(1), "get export file"
        )
        return ExportFile(**result.data[0]) if result.data else None

    async def get_export_file_for_job(self, job_id):
        result = await self._execute(
            self._files().select("*").eq("job_id", job_id).order("created_at", desc=True).limit(1),
            "get export file",
        )
        return ExportFile(**result.data[0]) if result.data else None

    async def delete_export_file(self, file_id):
        result = await self._execute(
            self._files().delete().eq("id", file_id), "delete export file"
        )
        return bool(result.data)

    async def increment_download_count(self, file_id):
        record = await self.get_export_file(file_id)
        if record is None:
            return None
        result = await self._execute(
            self._files().update({
                "download_count": record.download_count + 1,
                "last_downloaded_at": utcnow().isoformat(),
            }).eq("id", file_id),
            "increment download count",
        )
        logger.info(f"Download count incremented for file {file_id}")
        return ExportFile(**result.data[0]) if result.data else record

    async def get_export_stats(self, user_id=None):
        query = self._jobs().select("*")
        if user_id is not None:
            query = query.eq("user_id", user_id)
        jobs_result = await self._execute(query, "get export statistics")
        jobs = [ExportJob(**row) for row in jobs_result.data or []]

        files: List[ExportFile] = []
        if jobs:
            files_result = await self._execute(
                self._files().select("*").in_("job_id", [j.id for j in jobs]),
                "get export statistics",
            )
            files = [ExportFile(**row) for row in files_result.data or []]
        return build_export_stats(jobs, files)

    async def get_expired_files(self, status, older_than, limit=100, offset=0):
        now = utcnow()
        jobs_result = await self._execute(
            self._jobs().select("*").eq("status", status.value).lt("expires_at", now.isoformat()),
            "cleanup expired files",
        )
        job_ids = [
            row["id"] for row in jobs_result.data or []
            if is_expired(ExportJob(**row), status, older_than, now)
        ]
        if not job_ids:
            return []
        files_result = await self._execute(
            self._files().select("*").in_("job_id", job_ids)
            .order("created_at").range(offset, offset + limit - 1),
            "cleanup expired files",
        )
        return [ExportFile(**row) for row in files_result.data or []]

    async def get_tracked_file_paths(self):
        result = await self._execute(self._files().select("file_path"), "list export files")
        return {row["file_path"] for row in result.data or []}

    async def get_timeout_jobs(self, timeout_minutes=10):
        cutoff = utcnow() - timedelta(minutes=timeout_minutes)
        result = await self._execute(
            self._jobs().select("*")
                .eq("status", ExportStatus.PROCESSING.value)
                .lt("started_at", cutoff.isoformat()),
            "get timeout jobs",
        )
        return [ExportJob(**row) for row in result.data or []]

    async def mark_jobs_as_timeout(self, job_ids):
        if not job_ids:
            return 0
        result = await self._execute(
            self._jobs().update({
                "status": ExportStatus.TIMEOUT.value,
                "error_message": TIMEOUT_MESSAGE,
                "completed_at": utcnow().isoformat(),
            }).in_("id", job_ids).eq("status", ExportStatus.PROCESSING.value),
            "mark jobs as timeout",
        )
        marked = len(result.data or [])
        logger.info(f"Marked {marked} jobs as timed out")
        return marked
