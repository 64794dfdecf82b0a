"""
Retention Scheduler

Reclaims disk space held by export files. A sweep runs three steps:
1. Expired jobs: delete files of COMPLETED / FAILED / TIMEOUT jobs past their
   expiry and retention window
2. Orphaned files: delete files under ``user_*`` directories that no record tracks
3. Temp files: delete stale files in the temp directory

Only one sweep runs at a time unless forced. Each sweep is time-boxed by
``max_cleanup_duration``; when the budget runs out the sweep reports failure and
its stop token is set so the abandoned work halts at the next file boundary.
"""

import asyncio
import logging
import os
import stat
import time
from datetime import datetime, timedelta
from typing import Any, List, Optional, Set, Tuple

import aiofiles.os

from report_exports.config import CleanupConfig
from report_exports.errors import CleanupAlreadyRunningError, CleanupTimeoutError
from report_exports.jobs.job_types import (
    CleanupMetrics,
    CleanupResult,
    ExportStatus,
    SweepOutcome,
    utcnow,
)
from report_exports.jobs.utils import format_duration, format_file_size
from report_exports.repository import ExportRepository
from report_exports.scheduling import CronTrigger
from report_exports.storage import FileIntegrityStore

logger = logging.getLogger(__name__)


class RetentionScheduler:
    """
    Periodic, mutually exclusive, time-boxed cleanup of export files.
    """

    def __init__(
        self,
        repository: ExportRepository,
        store: FileIntegrityStore,
        config: Optional[CleanupConfig] = None,
    ):
        self.repository = repository
        self.store = store
        self.config = config or CleanupConfig()
        self.metrics = CleanupMetrics()

        self._active_runs = 0
        self._stop_tokens: Set[asyncio.Event] = set()
        self._abandoned: Set[asyncio.Task] = set()
        self._trigger: Optional[CronTrigger] = None

    @property
    def is_running(self) -> bool:
        return self._active_runs > 0

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def initialize(self) -> None:
        logger.info("Initializing file cleanup service")
        if self.config.enable_scheduled_cleanup:
            self.start_scheduled_cleanup()
        await self.cleanup_temp_files()
        logger.info("File cleanup service initialized successfully")

    async def shutdown(self) -> None:
        logger.info("Shutting down file cleanup service")
        self.stop_scheduled_cleanup()
        await self.force_stop()
        if self._abandoned:
            await asyncio.gather(*list(self._abandoned), return_exceptions=True)
        logger.info("File cleanup service shutdown completed")

    async def force_stop(self) -> None:
        """Ask every in-progress sweep to stop at its next file boundary."""
        if not self._stop_tokens:
            return
        logger.warning("Force stopping cleanup operation")
        for token in self._stop_tokens:
            token.set()

    # ==========================================================================
    # Sweep
    # ==========================================================================

    async def perform_cleanup(self, force: bool = False) -> CleanupResult:
        """
        Run one sweep.

        Raises:
            CleanupAlreadyRunningError: if a sweep is active and ``force`` is False.
        """
        if self.is_running and not force:
            raise CleanupAlreadyRunningError()

        self._active_runs += 1
        token = asyncio.Event()
        self._stop_tokens.add(token)
        working = CleanupResult(start_time=utcnow())
        result = working
        logger.info("Starting comprehensive file cleanup")

        work = asyncio.create_task(self._execute_cleanup(working, token))
        try:
            done, _ = await asyncio.wait({work}, timeout=self.config.max_cleanup_duration * 60)
            if work in done:
                work.result()
                result.success = not result.errors
            else:
                # Freeze what was done so far; the abandoned task keeps mutating ``working``.
                result = working.model_copy(deep=True)
                result.errors.append(CleanupTimeoutError(self.config.max_cleanup_duration).message)
                result.success = False
                token.set()
                self._abandon(work)
        except asyncio.CancelledError:
            token.set()
            work.cancel()
            raise
        except Exception as e:
            logger.error(f"Cleanup failed: {e}")
            result.errors.append(str(e))
            result.success = False
        finally:
            result.end_time = utcnow()
            result.duration_ms = (result.end_time - result.start_time).total_seconds() * 1000
            self._active_runs -= 1
            self._stop_tokens.discard(token)
            self._record(result)

        if result.success:
            logger.info(
                f"Cleanup completed successfully: {result.files_deleted} files deleted, "
                f"{format_file_size(result.space_cleaned)} freed in {format_duration(result.duration_ms / 1000)}"
            )
        else:
            logger.error(f"Cleanup finished with errors: {'; '.join(result.errors)}")
        return result

    def _abandon(self, task: asyncio.Task) -> None:
        self._abandoned.add(task)

        def _done(t: asyncio.Task):
            self._abandoned.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Abandoned cleanup work failed: {t.exception()}")

        task.add_done_callback(_done)

    async def _execute_cleanup(self, result: CleanupResult, token: asyncio.Event) -> None:
        steps: List[Tuple[str, Any]] = [
            ("completed_jobs", lambda: self._cleanup_jobs_by_status(
                (ExportStatus.COMPLETED,), self.config.retention_policies.completed_jobs, token)),
            ("failed_jobs", lambda: self._cleanup_jobs_by_status(
                (ExportStatus.FAILED, ExportStatus.TIMEOUT), self.config.retention_policies.failed_jobs, token)),
            ("orphaned_files", lambda: self.cleanup_orphaned_files(token)),
            ("temp_files", lambda: self.cleanup_temp_files(token)),
        ]

        for name, step in steps:
            if token.is_set():
                break
            try:
                outcome = await step()
            except Exception as e:
                logger.error(f"Cleanup step {name} failed: {e}")
                result.errors.append(f"{name.replace('_', ' ')} cleanup failed: {e}")
                continue

            result.files_processed += outcome.files_processed
            result.files_deleted += outcome.deleted_files
            result.space_cleaned += outcome.space_cleaned
            setattr(result.details, name, getattr(result.details, name) + outcome.deleted_files)

    def _record(self, result: CleanupResult) -> None:
        m = self.metrics
        m.total_runs += 1
        if result.success:
            m.successful_runs += 1
        else:
            m.failed_runs += 1
        m.total_files_deleted += result.files_deleted
        m.total_space_cleaned += result.space_cleaned
        m.last_run_time = result.end_time
        m.average_duration = (m.average_duration * (m.total_runs - 1) + result.duration_ms) / m.total_runs
        m.next_scheduled_run = self.get_next_scheduled_run()

        if self.config.enable_metrics:
            logger.info(
                f"Cleanup metrics: {m.total_runs} runs ({m.failed_runs} failed), "
                f"{m.total_files_deleted} files deleted, average {m.average_duration:.0f}ms"
            )

    # ==========================================================================
    # Steps
    # ==========================================================================

    async def cleanup_expired_jobs(self, token: Optional[asyncio.Event] = None) -> SweepOutcome:
        """Delete files of finished jobs that are past expiry and their retention window."""
        logger.info("Cleaning up expired job files")
        policies = self.config.retention_policies
        outcome = await self._cleanup_jobs_by_status((ExportStatus.COMPLETED,), policies.completed_jobs, token)
        outcome += await self._cleanup_jobs_by_status(
            (ExportStatus.FAILED, ExportStatus.TIMEOUT), policies.failed_jobs, token
        )
        logger.info(f"Expired jobs cleanup completed: {outcome.deleted_files} files deleted")
        return outcome

    async def _cleanup_jobs_by_status(
        self,
        statuses: Tuple[ExportStatus, ...],
        retention_hours: float,
        token: Optional[asyncio.Event] = None,
    ) -> SweepOutcome:
        cutoff = utcnow() - timedelta(hours=retention_hours)
        processed = deleted = freed = 0

        for status in statuses:
            seen: Set[str] = set()
            failed = 0
            while not (token and token.is_set()):
                # Rows that failed to purge stay at the head of the result set
                page = await self.repository.get_expired_files(
                    status, cutoff, self.config.batch_size, offset=failed
                )
                batch = [f for f in page if f.id not in seen]
                if not batch:
                    break

                for record in batch:
                    if token and token.is_set():
                        break
                    seen.add(record.id)
                    processed += 1
                    try:
                        freed += await self.store.purge(record)
                        deleted += 1
                    except Exception as e:
                        failed += 1
                        logger.warning(f"Failed to delete expired file {record.file_path}: {e}")

                if len(page) < self.config.batch_size:
                    break

        return SweepOutcome(files_processed=processed, deleted_files=deleted, space_cleaned=freed)

    def _scan_user_files(self) -> List[Tuple[str, float, int]]:
        found = []
        base = self.store.base_directory
        if not base.is_dir():
            return found
        for entry in base.iterdir():
            if not entry.is_dir() or not entry.name.startswith("user_"):
                continue
            for root, _dirs, files in os.walk(entry):
                for name in files:
                    path = os.path.join(root, name)
                    try:
                        st = os.stat(path)
                    except OSError as e:
                        logger.warning(f"Could not stat {path}: {e}")
                        continue
                    found.append((os.path.abspath(path), st.st_mtime, st.st_size))
        return found

    async def cleanup_orphaned_files(self, token: Optional[asyncio.Event] = None) -> SweepOutcome:
        """Delete stored files that no file record points at. Logs problems, never raises."""
        logger.info("Cleaning up orphaned files")
        try:
            tracked = {os.path.abspath(p) for p in await self.repository.get_tracked_file_paths()}
            loop = asyncio.get_running_loop()
            candidates = await loop.run_in_executor(None, self._scan_user_files)
        except Exception as e:
            logger.warning(f"Failed to find orphaned files: {e}")
            return SweepOutcome()

        cutoff = time.time() - self.config.retention_policies.orphaned_files * 3600
        processed = deleted = freed = 0
        for path, mtime, size in candidates:
            if token and token.is_set():
                break
            processed += 1
            if path in tracked or mtime >= cutoff:
                continue
            try:
                await aiofiles.os.remove(path)
                deleted += 1
                freed += size
                logger.debug(f"Deleted orphaned file: {path}")
            except OSError as e:
                logger.warning(f"Failed to delete orphaned file {path}: {e}")

        logger.info(f"Orphaned files cleanup completed: {deleted} files deleted")
        return SweepOutcome(files_processed=processed, deleted_files=deleted, space_cleaned=freed)

    async def cleanup_temp_files(self, token: Optional[asyncio.Event] = None) -> SweepOutcome:
        """Delete temp files older than the temp retention. A missing temp dir is not an error."""
        logger.info("Cleaning up temporary files")
        temp_dir = self.store.temp_directory
        try:
            names = await aiofiles.os.listdir(temp_dir)
        except (FileNotFoundError, NotADirectoryError):
            logger.debug("Temp directory not found or inaccessible")
            return SweepOutcome()

        cutoff = time.time() - self.config.retention_policies.temp_files * 3600
        processed = deleted = freed = 0
        for name in names:
            if token and token.is_set():
                break
            path = os.path.join(temp_dir, name)
            try:
                st = await aiofiles.os.stat(path)
                if not stat.S_ISREG(st.st_mode):
                    continue
                processed += 1
                if st.st_mtime < cutoff:
                    await aiofiles.os.remove(path)
                    deleted += 1
                    freed += st.st_size
                    logger.debug(f"Deleted temp file: {path}")
            except OSError as e:
                logger.warning(f"Failed to process temp file {path}: {e}")

        logger.info(f"Temp files cleanup completed: {deleted} files deleted")
        return SweepOutcome(files_processed=processed, deleted_files=deleted, space_cleaned=freed)

    # ==========================================================================
    # Scheduling / config
    # ==========================================================================

    async def _scheduled_run(self) -> None:
        logger.info("Starting scheduled cleanup")
        try:
            await self.perform_cleanup(force=False)
        except CleanupAlreadyRunningError:
            logger.warning("Skipping scheduled cleanup: a cleanup is already running")

    def start_scheduled_cleanup(self) -> None:
        self.stop_scheduled_cleanup()
        self._trigger = CronTrigger(self.config.cleanup_schedule, self._scheduled_run, self.config.timezone)
        self._trigger.start()
        self.metrics.next_scheduled_run = self.get_next_scheduled_run()
        logger.info(f"Scheduled cleanup started with cron: {self.config.cleanup_schedule}")

    def stop_scheduled_cleanup(self) -> None:
        if self._trigger is not None:
            self._trigger.stop()
            self._trigger = None
            self.metrics.next_scheduled_run = None
            logger.info("Scheduled cleanup stopped")

    def get_next_scheduled_run(self) -> Optional[datetime]:
        if not self.config.enable_scheduled_cleanup or self._trigger is None:
            return None
        return self._trigger.next_run()

    def get_metrics(self) -> CleanupMetrics:
        return self.metrics.model_copy()

    def get_config(self) -> CleanupConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, **changes: Any) -> CleanupConfig:
        """Apply config changes; the trigger is reinstalled when the schedule changes."""
        old = self.config
        self.config = CleanupConfig(**{**old.model_dump(), **changes})

        schedule_changed = (
            old.cleanup_schedule != self.config.cleanup_schedule
            or old.enable_scheduled_cleanup != self.config.enable_scheduled_cleanup
            or old.timezone != self.config.timezone
        )
        if schedule_changed:
            self.stop_scheduled_cleanup()
            if self.config.enable_scheduled_cleanup:
                self.start_scheduled_cleanup()

        logger.info("Cleanup configuration updated")
        return self.get_config()
