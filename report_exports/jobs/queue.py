"""
Job Queue

In-memory, priority-ordered executor for export jobs.

Pending entries are kept sorted by descending priority. At most
``max_concurrent_jobs`` jobs render at once; each admitted job runs as its own
asyncio task so the drain loop never blocks on a renderer. Failed renders are
retried with exponential backoff when the error is transient, and a periodic
sweep marks jobs stuck in PROCESSING as TIMEOUT.

Cancellation of an in-flight job is cooperative: the job record is marked by the
state machine and the running task discards its result when it finishes.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

import aiofiles
import aiofiles.os

from report_exports.config import QueueConfig
from report_exports.jobs.events import QueueEventBus
from report_exports.jobs.job_manager import JobStateMachine
from report_exports.jobs.job_types import (
    ExportFormat,
    ExportJob,
    ExportStatus,
    FileMetadata,
    JobCreationOptions,
    JobEventType,
    QueueStats,
    QueueStatus,
    utcnow,
)
from report_exports.jobs.utils import calculate_retry_delay, format_duration, is_retryable_error
from report_exports.renderers import RenderedFile, Renderer
from report_exports.storage import FileIntegrityStore

logger = logging.getLogger(__name__)

# Format weight always outranks the recency bonus, so PDF drains before EXCEL before CSV.
FORMAT_WEIGHTS = {
    ExportFormat.PDF: 20.0,
    ExportFormat.EXCEL: 10.0,
    ExportFormat.CSV: 0.0,
}
RECENCY_WEIGHT = 9.0
RECENCY_WINDOW_HOURS = 24.0


def calculate_priority(job: ExportJob, now: Optional[datetime] = None, boost: Optional[float] = None) -> float:
    """Format weight plus a bonus that decays to zero over the first day of a job's life."""
    now = now or utcnow()
    age_hours = max(0.0, (now - job.created_at).total_seconds() / 3600)
    recency = RECENCY_WEIGHT * max(0.0, 1 - age_hours / RECENCY_WINDOW_HOURS)
    return FORMAT_WEIGHTS[job.format] + recency + (boost or 0.0)


@dataclass
class QueueEntry:
    """A job waiting for (or retrying toward) a processing slot."""
    job: ExportJob
    priority: float
    retry_count: int = 0
    max_retries: int = 3
    enqueued_at: datetime = field(default_factory=utcnow)

    @property
    def job_id(self) -> str:
        return self.job.id


class JobQueue:
    """
    Bounded-concurrency priority queue that turns PENDING jobs into stored files.
    """

    def __init__(
        self,
        lifecycle: JobStateMachine,
        store: FileIntegrityStore,
        renderer: Renderer,
        config: Optional[QueueConfig] = None,
        events: Optional[QueueEventBus] = None,
    ):
        self.lifecycle = lifecycle
        self.repository = lifecycle.repository
        self.store = store
        self.renderer = renderer
        self.config = config or QueueConfig()
        self.events = events or QueueEventBus()

        self._queue: List[QueueEntry] = []
        self._processing: Dict[str, QueueEntry] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._backoff: Dict[str, asyncio.Task] = {}
        self._is_processing = False
        self._running = False
        self._loop_tasks: List[asyncio.Task] = []
        self._wakeup: Optional[asyncio.Event] = None

        lifecycle.attach_queue(self)

    # ==========================================================================
    # Introspection
    # ==========================================================================

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def is_running(self) -> bool:
        return self._running

    def pending_job_ids(self) -> List[str]:
        """Pending job ids in dequeue order."""
        return [entry.job_id for entry in self._queue]

    def _is_tracked(self, job_id: str) -> bool:
        return (
            job_id in self._processing
            or job_id in self._backoff
            or any(entry.job_id == job_id for entry in self._queue)
        )

    def calculate_retry_delay(self, retry_count: int) -> int:
        """Backoff in milliseconds before retry number ``retry_count``."""
        return calculate_retry_delay(
            retry_count, self.config.retry_base_delay_ms, self.config.max_retry_delay_ms
        )

    # ==========================================================================
    # Admission
    # ==========================================================================

    def _insert_by_priority(self, entry: QueueEntry) -> None:
        # Ahead of the first entry that does not outrank it: newest-first among equals.
        index = len(self._queue)
        for i, queued in enumerate(self._queue):
            if queued.priority <= entry.priority:
                index = i
                break
        self._queue.insert(index, entry)

    async def add_job(self, job: ExportJob, options: Optional[JobCreationOptions] = None) -> bool:
        """
        Queue a PENDING job. Returns False if it is already queued or no longer PENDING.
        """
        if self._is_tracked(job.id):
            logger.warning(f"Job {job.id} is already in the queue")
            return False

        persisted = await self.lifecycle.mark_queued(job.id)
        if persisted is None:
            return False

        options = options or JobCreationOptions()
        entry = QueueEntry(
            job=persisted,
            priority=calculate_priority(persisted, boost=options.priority),
            max_retries=options.max_retries if options.max_retries is not None else self.config.max_retries,
        )
        self._insert_by_priority(entry)
        self.events.publish(JobEventType.ADDED, entry)
        logger.info(f"Job added to queue: {job.id} (priority {entry.priority:.2f}, queue size: {len(self._queue)})")

        self._wake()
        return True

    async def recover_pending_jobs(self) -> int:
        """Queue every persisted PENDING job not already tracked. Used at startup."""
        try:
            pending = await self.repository.get_pending_jobs()
        except Exception as e:
            logger.error(f"Could not load pending jobs for recovery: {e}")
            return 0

        recovered = 0
        for job in pending:
            if await self.add_job(job):
                recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} pending jobs")
        return recovered

    # ==========================================================================
    # Execution
    # ==========================================================================

    async def process_next_job(self) -> Optional[QueueEntry]:
        """
        Admit the highest-priority entry if a slot is free.

        Returns the admitted entry, or None when the queue is empty, every slot is
        busy, or the job was cancelled before it could start.
        """
        if not self._queue or len(self._processing) >= self.config.max_concurrent_jobs:
            return None

        entry = self._queue.pop(0)
        job_id = entry.job_id
        # Slot is claimed before the first await so concurrent callers see it.
        self._processing[job_id] = entry

        try:
            result = await self.lifecycle.transition_job_status(job_id, ExportStatus.PROCESSING, progress=0)
        except Exception as e:
            logger.error(f"Error starting job {job_id}: {e}")
            self._release(job_id)
            return None

        if not result.success:
            logger.info(f"Job {job_id} was not started: {result.message}")
            self._release(job_id)
            return None

        logger.info(f"Starting job processing: {job_id}")
        self.events.publish(JobEventType.STARTED, entry)

        task = asyncio.create_task(self._execute(entry))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return entry

    def _release(self, job_id: str) -> None:
        self._processing.pop(job_id, None)
        self._wake()

    async def _is_still_processing(self, job_id: str) -> bool:
        job = await self.repository.get_job_status(job_id)
        return job is not None and job.status == ExportStatus.PROCESSING

    async def _report_progress(self, job_id: str, progress: int) -> None:
        if await self._is_still_processing(job_id):
            await self.lifecycle.update_job_progress(job_id, progress)

    async def _read_rendered(self, rendered: RenderedFile) -> bytes:
        if rendered.content is not None:
            return rendered.content

        async with aiofiles.open(rendered.file_path, "rb") as f:
            content = await f.read()
        try:
            await aiofiles.os.remove(rendered.file_path)
        except OSError as e:
            logger.warning(f"Could not remove rendered temp file {rendered.file_path}: {e}")
        return content

    async def _execute(self, entry: QueueEntry) -> None:
        job = entry.job
        started = utcnow()

        try:
            await self._report_progress(job.id, 10)
            rendered = await self.renderer.generate_file(job)
            content = await self._read_rendered(rendered)
            await self._report_progress(job.id, 80)

            if not await self._is_still_processing(job.id):
                logger.info(f"Discarding result for job {job.id}: no longer processing")
                self._release(job.id)
                return

            stored = await self.store.store(
                content,
                FileMetadata(
                    job_id=job.id,
                    user_id=job.user_id,
                    format=job.format.value,
                    mime_type=rendered.mime_type,
                    original_name=rendered.file_name,
                ),
            )

            result = await self.lifecycle.transition_job_status(job.id, ExportStatus.COMPLETED, progress=100)
            if not result.success:
                logger.info(f"Job {job.id} changed state during storage, discarding file {stored.file_id}")
                await self.store.discard(stored.file_id)
                self._release(job.id)
                return

        except Exception as e:
            self._release(job.id)
            await self._handle_failure(entry, e)
            return

        self._release(job.id)
        elapsed = (utcnow() - started).total_seconds()
        logger.info(f"Job completed successfully: {job.id} in {format_duration(elapsed)}")
        self.events.publish(JobEventType.COMPLETED, entry)

    async def _handle_failure(self, entry: QueueEntry, error: Exception) -> None:
        job_id = entry.job_id
        message = str(error) or type(error).__name__

        try:
            # max_retries counts the first attempt
            if is_retryable_error(error) and entry.retry_count + 1 < entry.max_retries:
                entry.retry_count += 1
                if not await self.lifecycle.mark_retry_pending(job_id, entry.retry_count, entry.max_retries, message):
                    logger.info(f"Not retrying job {job_id}: no longer processing")
                    return

                delay_ms = self.calculate_retry_delay(entry.retry_count)
                logger.info(
                    f"Retrying job: {job_id} (retry {entry.retry_count}/{entry.max_retries}) in {delay_ms}ms: {message}"
                )
                self._backoff[job_id] = asyncio.create_task(self._requeue_after(entry, delay_ms / 1000))
                self.events.publish(JobEventType.RETRY, entry, error)
                return

            result = await self.lifecycle.transition_job_status(job_id, ExportStatus.FAILED, error_message=message)
            if result.success:
                logger.error(f"Job failed permanently: {job_id} - {message}")
                self.events.publish(JobEventType.FAILED, entry, error)
            else:
                logger.info(f"Ignoring failure of job {job_id}: {result.message}")

        except Exception as e:
            logger.error(f"Error handling failure of job {job_id}: {e}")

    async def _requeue_after(self, entry: QueueEntry, delay_seconds: float) -> None:
        try:
            await asyncio.sleep(delay_seconds)
            job = await self.repository.get_job_status(entry.job_id)
            if job is None or job.status != ExportStatus.PENDING:
                logger.info(f"Dropping retry of job {entry.job_id}: status changed")
                return
            entry.job = job
            entry.enqueued_at = utcnow()
            self._insert_by_priority(entry)
            self._wake()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error re-queueing job {entry.job_id}: {e}")
        finally:
            self._backoff.pop(entry.job_id, None)

    # ==========================================================================
    # Cancellation / retry / timeouts
    # ==========================================================================

    async def cancel_job(self, job_id: str) -> bool:
        """Remove a job that has not started yet. False if it is executing or unknown."""
        for i, entry in enumerate(self._queue):
            if entry.job_id == job_id:
                del self._queue[i]
                self.events.publish(JobEventType.CANCELLED, entry)
                logger.info(f"Job cancelled from queue: {job_id}")
                return True

        backoff = self._backoff.pop(job_id, None)
        if backoff is not None:
            backoff.cancel()
            logger.info(f"Job cancelled during retry backoff: {job_id}")
            return True

        return False

    async def retry_failed_job(self, job_id: str) -> bool:
        """Re-queue a FAILED job with a fresh retry budget."""
        job = await self.repository.get_job_status(job_id)
        if job is None or job.status != ExportStatus.FAILED:
            return False

        job = await self.lifecycle.reset_for_retry(job_id)
        if job is None:
            return False

        added = await self.requeue_job(job)
        if added:
            logger.info(f"Failed job added back to queue: {job_id}")
        return added

    async def requeue_job(self, job: ExportJob) -> bool:
        """Queue a job that was reset for a manual retry and announce it."""
        if not await self.add_job(job):
            return False
        entry = next((e for e in self._queue if e.job_id == job.id), None)
        if entry is not None:
            self.events.publish(JobEventType.RETRY, entry, None)
        return True

    def notify_cancelled(self, job_id: str) -> None:
        """Announce the cancellation of a job that is already executing."""
        entry = self._processing.get(job_id)
        if entry is not None:
            self.events.publish(JobEventType.CANCELLED, entry)

    async def handle_timeout_jobs(self) -> int:
        """Mark jobs stuck in PROCESSING past the staleness threshold as TIMEOUT."""
        try:
            stale = await self.repository.get_timeout_jobs(self.config.job_timeout_minutes)
            if not stale:
                return 0

            job_ids = [job.id for job in stale]
            logger.info(f"Found {len(job_ids)} timeout jobs")
            marked = await self.repository.mark_jobs_as_timeout(job_ids)

            for job_id in job_ids:
                entry = self._processing.pop(job_id, None)
                if entry is not None:
                    self.events.publish(JobEventType.TIMEOUT, entry)
            self._wake()
            return marked
        except Exception as e:
            logger.error(f"Error handling timeout jobs: {e}")
            return 0

    # ==========================================================================
    # Status
    # ==========================================================================

    async def get_queue_status(self) -> QueueStatus:
        try:
            stats = await self.repository.get_export_stats()
            return QueueStatus(
                pending=len(self._queue),
                processing=len(self._processing),
                completed=stats.completed_jobs,
                failed=stats.failed_jobs,
                total_jobs=stats.total_jobs,
            )
        except Exception as e:
            logger.error(f"Error getting queue status: {e}")
            return QueueStatus(
                pending=len(self._queue),
                processing=len(self._processing),
                completed=0,
                failed=0,
                total_jobs=len(self._queue) + len(self._processing),
            )

    def get_queue_stats(self) -> QueueStats:
        return QueueStats(
            queue_length=len(self._queue),
            processing_count=len(self._processing),
            max_concurrent=self.config.max_concurrent_jobs,
            is_processing=self._running or self._is_processing,
        )

    # ==========================================================================
    # Loops
    # ==========================================================================

    def _wake(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def _process_queue(self) -> None:
        if self._is_processing:
            return
        self._is_processing = True
        try:
            while self._queue and len(self._processing) < self.config.max_concurrent_jobs:
                await self.process_next_job()
        except Exception as e:
            logger.error(f"Error in queue processing: {e}")
        finally:
            self._is_processing = False

    async def _processing_loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.processing_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
            await self._process_queue()

    async def _timeout_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.timeout_check_interval_seconds)
            await self.handle_timeout_jobs()

    async def start(self) -> None:
        """Recover pending jobs and start the processing and timeout loops."""
        if self._running:
            return
        self._running = True
        self._wakeup = asyncio.Event()

        await self.recover_pending_jobs()
        self._loop_tasks = [
            asyncio.create_task(self._processing_loop()),
            asyncio.create_task(self._timeout_loop()),
        ]
        self._wake()
        logger.info(
            f"Job queue processing started (max concurrent: {self.config.max_concurrent_jobs}, "
            f"poll interval: {self.config.processing_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the loops and pending retry timers. In-flight renders keep running."""
        self._running = False
        for task in self._loop_tasks + list(self._backoff.values()):
            task.cancel()
        await asyncio.gather(*self._loop_tasks, *self._backoff.values(), return_exceptions=True)
        self._loop_tasks = []
        self._backoff.clear()
        self._wakeup = None
        logger.info("Job queue processing stopped")

    async def drain(self, process_pending: bool = True) -> None:
        """
        Wait until nothing is in flight. With ``process_pending`` the queue is also
        worked off, including entries that come back from retry backoff.
        """
        while True:
            if process_pending:
                await self._process_queue()
            waiting = [t for t in list(self._tasks) if not t.done()]
            if process_pending:
                waiting += [t for t in self._backoff.values() if not t.done()]
            if not waiting:
                has_room = self._is_processing or len(self._processing) < self.config.max_concurrent_jobs
                if process_pending and self._queue and has_room:
                    await asyncio.sleep(0)
                    continue
                return
            await asyncio.gather(*waiting, return_exceptions=True)
