"""
Export Service

Composition root for the export pipeline. Builds the repository, file store,
state machine, queue and retention scheduler from one ``ExportSettings`` object
and exposes the operations the API layer needs.
"""

import logging
from typing import List, Optional

from report_exports.config import ExportSettings
from report_exports.errors import JobNotFoundError
from report_exports.jobs.events import QueueEventBus
from report_exports.jobs.job_manager import JobStateMachine
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
    QueueStatus,
    RetrievedFile,
    StorageStats,
)
from report_exports.jobs.queue import JobQueue
from report_exports.renderers import Renderer, TabularReportRenderer
from report_exports.repository import ExportRepository, InMemoryExportRepository
from report_exports.retention import RetentionScheduler
from report_exports.storage import FileIntegrityStore

logger = logging.getLogger(__name__)


class ExportService:
    """
    Owns one instance of every pipeline component.

    Construct once per process, then ``await initialize()`` before use and
    ``await shutdown()`` on exit.
    """

    def __init__(
        self,
        settings: Optional[ExportSettings] = None,
        repository: Optional[ExportRepository] = None,
        renderer: Optional[Renderer] = None,
        events: Optional[QueueEventBus] = None,
    ):
        self.settings = settings or ExportSettings()
        self.repository = repository or InMemoryExportRepository()
        self.events = events or QueueEventBus()

        self.store = FileIntegrityStore(self.repository, self.settings.storage)
        self.lifecycle = JobStateMachine(self.repository, self.settings.lifecycle)
        self.queue = JobQueue(
            self.lifecycle,
            self.store,
            renderer or TabularReportRenderer(),
            self.settings.queue,
            self.events,
        )
        self.retention = RetentionScheduler(self.repository, self.store, self.settings.cleanup)
        self._initialized = False

    async def initialize(self, start_queue: bool = True) -> None:
        """Prepare storage, start the queue loops and the cleanup schedule."""
        if self._initialized:
            return
        await self.store.initialize()
        if start_queue:
            await self.queue.start()
        await self.retention.initialize()
        self._initialized = True
        logger.info("Export service initialized")

    async def shutdown(self) -> None:
        await self.queue.stop()
        await self.queue.drain(process_pending=False)
        await self.retention.shutdown()
        self._initialized = False
        logger.info("Export service shut down")

    # ==========================================================================
    # Jobs
    # ==========================================================================

    async def create_job(
        self,
        user_id: int,
        request: CreateExportJobRequest,
        options: Optional[JobCreationOptions] = None,
    ) -> ExportJob:
        return await self.lifecycle.create_job(user_id, request, options)

    async def get_job_status(self, job_id: str, user_id: Optional[int] = None) -> ExportJob:
        """Raises JobNotFoundError if absent or owned by someone else."""
        job = await self.lifecycle.get_job_details(job_id)
        if job is None or (user_id is not None and job.user_id != user_id):
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: str, user_id: Optional[int] = None, reason: Optional[str] = None) -> bool:
        if user_id is not None:
            await self.get_job_status(job_id, user_id)
        return await self.lifecycle.cancel_job(job_id, reason)

    async def retry_job(self, job_id: str, user_id: Optional[int] = None) -> bool:
        if user_id is not None:
            await self.get_job_status(job_id, user_id)
        return await self.lifecycle.retry_job(job_id)

    async def update_progress(self, job_id: str, progress: float, message: Optional[str] = None) -> None:
        await self.lifecycle.update_job_progress(job_id, progress, message)

    async def get_job_history(
        self,
        user_id: int,
        status: Optional[ExportStatus] = None,
        format: Optional[ExportFormat] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExportJob]:
        return await self.lifecycle.get_user_job_history(
            user_id, status=status, format=format, template_id=template_id, limit=limit, offset=offset
        )

    async def get_job_file_id(self, job_id: str, user_id: int) -> Optional[str]:
        await self.get_job_status(job_id, user_id)
        record = await self.repository.get_export_file_for_job(job_id)
        return record.id if record else None

    # ==========================================================================
    # Files
    # ==========================================================================

    async def download_file(self, file_id: str, user_id: int) -> RetrievedFile:
        return await self.store.retrieve(file_id, user_id)

    async def delete_file(self, file_id: str, user_id: int) -> bool:
        return await self.store.delete(file_id, user_id)

    async def get_file_info(self, file_id: str, user_id: int) -> Optional[FileInfo]:
        return await self.store.get_info(file_id, user_id)

    # ==========================================================================
    # Statistics / maintenance
    # ==========================================================================

    async def get_storage_stats(self, user_id: Optional[int] = None) -> StorageStats:
        return await self.store.get_stats(user_id)

    async def get_queue_status(self) -> QueueStatus:
        return await self.queue.get_queue_status()

    async def get_lifecycle_stats(self) -> LifecycleStats:
        return await self.lifecycle.get_lifecycle_stats()

    def get_cleanup_metrics(self) -> CleanupMetrics:
        return self.retention.get_metrics()

    async def run_cleanup(self, force: bool = False) -> CleanupResult:
        return await self.retention.perform_cleanup(force)
