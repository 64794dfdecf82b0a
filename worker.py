#!/usr/bin/env python3
"""
Report Export Worker

A dedicated worker process that renders queued export jobs and runs the
scheduled retention sweep.

Usage:
    python worker.py [--concurrency=N] [--poll-interval=S] [--storage-dir=DIR]
                     [--no-cleanup] [--cleanup-once]

Features:
- Recovers PENDING jobs left over from a previous run
- Renders jobs with bounded concurrency and retry/backoff
- Marks stale PROCESSING jobs as TIMEOUT
- Runs the retention sweep on its cron schedule
- Graceful shutdown on signals
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("report_exports.worker")

from report_exports.config import ExportSettings
from report_exports.main import build_default_service
from report_exports.service import ExportService


class ExportWorker:
    """
    Runs an ExportService until a shutdown signal arrives.
    """

    def __init__(self, service: ExportService, status_interval: float = 60.0):
        self.service = service
        self.status_interval = status_interval
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start the service and block until shutdown."""
        logger.info(f"Worker {os.getpid()} starting...")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        await self.service.initialize()
        try:
            await self._status_loop()
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
        finally:
            await self.service.shutdown()
            logger.info("Worker cleanup complete")

    def _handle_shutdown(self):
        logger.info("Worker received shutdown signal")
        self._shutdown_event.set()

    async def _status_loop(self):
        """Log queue status periodically until shutdown."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.status_interval)
                break
            except asyncio.TimeoutError:
                pass

            stats = self.service.queue.get_queue_stats()
            logger.info(
                f"Queue: {stats.queue_length} pending, "
                f"{stats.processing_count}/{stats.max_concurrent} processing"
            )


def main():
    """Main entry point for the worker."""
    parser = argparse.ArgumentParser(description="Report Export Worker")
    parser.add_argument(
        "--concurrency", "-c",
        type=int,
        default=None,
        help="Number of jobs to render concurrently (default: EXPORT_MAX_CONCURRENT_JOBS or 3)"
    )
    parser.add_argument(
        "--poll-interval", "-p",
        type=float,
        default=None,
        help="Seconds between queue polls (default: EXPORT_POLL_INTERVAL or 5.0)"
    )
    parser.add_argument(
        "--storage-dir",
        type=str,
        default=None,
        help="Root directory for rendered files (default: EXPORT_STORAGE_DIR or uploads/reports)"
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=None,
        help="Path to a .env file to load before reading settings"
    )
    parser.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Disable the scheduled retention sweep"
    )
    parser.add_argument(
        "--cleanup-once",
        action="store_true",
        help="Run a single retention sweep and exit"
    )

    args = parser.parse_args()

    try:
        settings = ExportSettings.from_env(args.env_file)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if args.concurrency is not None:
        settings.queue.max_concurrent_jobs = args.concurrency
    if args.poll_interval is not None:
        settings.queue.processing_interval_seconds = args.poll_interval
    if args.storage_dir:
        settings.storage.base_directory = args.storage_dir
    if args.no_cleanup:
        settings.cleanup.enable_scheduled_cleanup = False

    service = build_default_service(settings)

    if args.cleanup_once:
        async def run_once():
            await service.store.initialize()
            return await service.run_cleanup(force=True)

        result = asyncio.run(run_once())
        logger.info(f"Cleanup finished: success={result.success}, files deleted={result.files_deleted}")
        sys.exit(0 if result.success else 1)

    worker = ExportWorker(service)
    try:
        asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
