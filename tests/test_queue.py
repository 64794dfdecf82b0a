"""
Tests for JobQueue: priority ordering, bounded concurrency, retry with backoff,
cancellation, timeouts and the background loops.

Run with: python -m pytest tests/test_queue.py -v
"""

import asyncio
from datetime import timedelta

import pytest

from report_exports.config import QueueConfig
from report_exports.errors import FatalProcessingError, TransientProcessingError
from report_exports.jobs.job_types import (
    ExportFormat,
    ExportJob,
    ExportStatus,
    JobCreationOptions,
    JobEventType,
    utcnow,
)
from report_exports.jobs.queue import JobQueue, calculate_priority
from report_exports.jobs.utils import calculate_retry_delay, is_retryable_error

from tests.conftest import make_request


async def _status(repository, job_id):
    return (await repository.get_job_status(job_id)).status


def _record(queue, event_type):
    seen = []
    queue.events.subscribe(event_type, lambda *payload: seen.append(payload))
    return seen


# =============================================================================
# PRIORITY
# =============================================================================

class TestPriority:
    """Format dominates, recency breaks ties within a format."""

    def test_format_outranks_recency(self):
        now = utcnow()
        old_pdf = ExportJob(user_id=1, template_id="health", format=ExportFormat.PDF,
                            created_at=now - timedelta(hours=23))
        new_csv = ExportJob(user_id=1, template_id="health", format=ExportFormat.CSV, created_at=now)

        assert calculate_priority(old_pdf, now) > calculate_priority(new_csv, now)

    def test_newer_job_ranks_higher_within_format(self):
        now = utcnow()
        older = ExportJob(user_id=1, template_id="health", format=ExportFormat.EXCEL,
                          created_at=now - timedelta(hours=6))
        newer = ExportJob(user_id=1, template_id="health", format=ExportFormat.EXCEL, created_at=now)

        assert calculate_priority(newer, now) > calculate_priority(older, now)

    def test_boost_is_added(self):
        now = utcnow()
        job = ExportJob(user_id=1, template_id="health", format=ExportFormat.CSV, created_at=now)

        assert calculate_priority(job, now, boost=5) == calculate_priority(job, now) + 5

    @pytest.mark.asyncio
    async def test_dequeue_order(self, queue, lifecycle):
        csv = await lifecycle.create_job(1, make_request("CSV"))
        pdf = await lifecycle.create_job(1, make_request("PDF"))
        excel = await lifecycle.create_job(1, make_request("EXCEL"))

        assert queue.pending_job_ids() == [pdf.id, excel.id, csv.id]

        first = await queue.process_next_job()
        assert first.job_id == pdf.id

    @pytest.mark.asyncio
    async def test_priority_option_moves_job_forward(self, queue, lifecycle):
        pdf = await lifecycle.create_job(1, make_request("PDF"))
        csv = await lifecycle.create_job(1, make_request("CSV"), JobCreationOptions(priority=100))

        assert queue.pending_job_ids() == [csv.id, pdf.id]


# =============================================================================
# ADMISSION
# =============================================================================

class TestAddJob:

    @pytest.mark.asyncio
    async def test_added_event_and_pending_state(self, queue, lifecycle, repository):
        added = _record(queue, JobEventType.ADDED)

        job = await lifecycle.create_job(1, make_request())

        assert queue.queue_length == 1
        assert added[0][0].job_id == job.id
        assert (await repository.get_job_status(job.id)).progress == 0

    @pytest.mark.asyncio
    async def test_duplicate_is_rejected(self, queue, lifecycle):
        job = await lifecycle.create_job(1, make_request())

        assert await queue.add_job(job) is False
        assert queue.queue_length == 1

    @pytest.mark.asyncio
    async def test_non_pending_job_is_rejected(self, queue, repository):
        job = await repository.create_export_job(1, make_request())
        await repository.update_job(job.id, status=ExportStatus.COMPLETED)

        assert await queue.add_job(job) is False
        assert queue.queue_length == 0

    @pytest.mark.asyncio
    async def test_max_retries_option(self, queue, lifecycle):
        await lifecycle.create_job(1, make_request(), JobCreationOptions(max_retries=0))
        assert queue._queue[0].max_retries == 0

    @pytest.mark.asyncio
    async def test_recover_pending_jobs(self, queue, repository):
        for fmt in ("PDF", "CSV"):
            await repository.create_export_job(1, make_request(fmt))
        done = await repository.create_export_job(1, make_request())
        await repository.update_job(done.id, status=ExportStatus.COMPLETED)

        assert await queue.recover_pending_jobs() == 2
        assert queue.queue_length == 2
        # Already tracked jobs are not queued twice
        assert await queue.recover_pending_jobs() == 0


# =============================================================================
# EXECUTION
# =============================================================================

class TestExecution:

    @pytest.mark.asyncio
    async def test_job_completes_with_file(self, queue, lifecycle, repository):
        started = _record(queue, JobEventType.STARTED)
        completed = _record(queue, JobEventType.COMPLETED)
        job = await lifecycle.create_job(1, make_request("PDF"))

        await queue.drain()

        finished = await repository.get_job_status(job.id)
        assert finished.status == ExportStatus.COMPLETED
        assert finished.progress == 100
        assert finished.started_at is not None
        assert finished.completed_at is not None
        record = await repository.get_export_file_for_job(job.id)
        assert record.mime_type == "application/pdf"
        assert len(started) == 1
        assert len(completed) == 1
        assert queue.processing_count == 0

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, queue, lifecycle, repository, renderer):
        renderer.gate = asyncio.Event()
        observed = []
        queue.events.subscribe(JobEventType.STARTED, lambda entry: observed.append(queue.processing_count))
        jobs = [await lifecycle.create_job(1, make_request("CSV")) for _ in range(5)]

        admitted = [await queue.process_next_job() for _ in range(5)]

        assert sum(1 for entry in admitted if entry is not None) == 3
        assert queue.processing_count == 3
        assert queue.queue_length == 2

        renderer.gate.set()
        await queue.drain()

        assert max(observed) <= 3
        assert len(observed) == 5
        for job in jobs:
            assert await _status(repository, job.id) == ExportStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_queue_returns_none(self, queue):
        assert await queue.process_next_job() is None

    @pytest.mark.asyncio
    async def test_rendered_temp_file_is_consumed(self, queue, lifecycle, repository, renderer, tmp_path):
        from report_exports.renderers import RenderedFile
        from tests.conftest import CSV_BYTES

        temp_file = tmp_path / "rendered.csv"
        temp_file.write_bytes(CSV_BYTES)

        async def from_disk(job):
            return RenderedFile(file_name="rendered.csv", mime_type="text/csv", file_path=str(temp_file))

        renderer.generate_file = from_disk
        job = await lifecycle.create_job(1, make_request("CSV"))

        await queue.drain()

        assert await _status(repository, job.id) == ExportStatus.COMPLETED
        assert not temp_file.exists()


# =============================================================================
# RETRIES
# =============================================================================

class TestRetries:

    def test_retry_delay_schedule(self):
        assert calculate_retry_delay(1) == 2000
        assert calculate_retry_delay(2) == 4000
        assert calculate_retry_delay(3) == 8000
        assert calculate_retry_delay(10) == 30000

    def test_queue_uses_configured_delays(self, lifecycle, store, renderer):
        job_queue = JobQueue(lifecycle, store, renderer, QueueConfig())
        assert [job_queue.calculate_retry_delay(n) for n in (1, 2, 10)] == [2000, 4000, 30000]

    def test_retryable_classification(self):
        assert is_retryable_error(Exception("Network timeout error"))
        assert is_retryable_error(ConnectionError("reset"))
        assert is_retryable_error(TransientProcessingError("renderer busy"))
        assert not is_retryable_error(FatalProcessingError("timeout in template"))
        assert not is_retryable_error(ValueError("connection string malformed"))
        assert not is_retryable_error(Exception("template missing"))

    @pytest.mark.asyncio
    async def test_transient_failure_exhausts_retries(self, queue, lifecycle, repository, renderer):
        renderer.always_fail = Exception("Network timeout error")
        retries = []
        queue.events.subscribe(JobEventType.RETRY, lambda entry, error: retries.append(entry.retry_count))
        failed = _record(queue, JobEventType.FAILED)
        job = await lifecycle.create_job(1, make_request("PDF"))

        await queue.drain()

        finished = await repository.get_job_status(job.id)
        assert finished.status == ExportStatus.FAILED
        assert finished.error_message == "Network timeout error"
        assert retries == [1, 2]
        assert len(failed) == 1
        assert len(renderer.calls) == 3
        assert repository.files == {}

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, queue, lifecycle, repository, renderer):
        renderer.failures = [TransientProcessingError("renderer busy")]
        retries = _record(queue, JobEventType.RETRY)
        job = await lifecycle.create_job(1, make_request("EXCEL"))

        await queue.drain()

        finished = await repository.get_job_status(job.id)
        assert finished.status == ExportStatus.COMPLETED
        assert len(retries) == 1
        assert len(renderer.calls) == 2

    @pytest.mark.asyncio
    async def test_fatal_failure_is_not_retried(self, queue, lifecycle, repository, renderer):
        renderer.always_fail = FatalProcessingError("Unknown column in template")
        retries = _record(queue, JobEventType.RETRY)
        job = await lifecycle.create_job(1, make_request())

        await queue.drain()

        assert await _status(repository, job.id) == ExportStatus.FAILED
        assert retries == []
        assert len(renderer.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, queue, lifecycle, repository, renderer):
        renderer.failures = [FatalProcessingError("bad data")]
        retries = _record(queue, JobEventType.RETRY)
        job = await lifecycle.create_job(1, make_request())
        await queue.drain()
        assert await _status(repository, job.id) == ExportStatus.FAILED
        assert retries == []

        assert await queue.retry_failed_job(job.id) is True
        assert [(entry.job_id, error) for entry, error in retries] == [(job.id, None)]
        await queue.drain()

        assert await _status(repository, job.id) == ExportStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_failed_job_rejects_other_statuses(self, queue, lifecycle):
        job = await lifecycle.create_job(1, make_request())

        assert await queue.retry_failed_job(job.id) is False
        assert await queue.retry_failed_job("missing") is False


# =============================================================================
# CANCELLATION
# =============================================================================

class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_queued_job(self, queue, lifecycle, repository, renderer):
        cancelled = _record(queue, JobEventType.CANCELLED)
        job = await lifecycle.create_job(1, make_request())

        assert await lifecycle.cancel_job(job.id) is True
        await queue.drain()

        assert queue.queue_length == 0
        assert len(cancelled) == 1
        assert renderer.calls == []
        assert await _status(repository, job.id) == ExportStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_running_job_discards_result(self, queue, lifecycle, repository, renderer):
        renderer.gate = asyncio.Event()
        completed = _record(queue, JobEventType.COMPLETED)
        cancelled = _record(queue, JobEventType.CANCELLED)
        job = await lifecycle.create_job(1, make_request())
        await queue.process_next_job()

        assert await lifecycle.cancel_job(job.id, "Changed my mind") is True
        renderer.gate.set()
        await queue.drain()

        finished = await repository.get_job_status(job.id)
        assert finished.status == ExportStatus.FAILED
        assert finished.error_message == "Changed my mind"
        assert repository.files == {}
        assert completed == []
        assert queue.processing_count == 0
        assert [payload[0].job_id for payload in cancelled] == [job.id]

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, queue):
        assert await queue.cancel_job("missing") is False


# =============================================================================
# TIMEOUTS
# =============================================================================

class TestTimeouts:

    @pytest.mark.asyncio
    async def test_stale_job_is_marked_timeout(self, queue, lifecycle, repository, renderer):
        renderer.gate = asyncio.Event()
        timeouts = _record(queue, JobEventType.TIMEOUT)
        job = await lifecycle.create_job(1, make_request())
        await queue.process_next_job()
        await repository.update_job(job.id, started_at=utcnow() - timedelta(minutes=30))

        assert await queue.handle_timeout_jobs() == 1

        assert await _status(repository, job.id) == ExportStatus.TIMEOUT
        assert queue.processing_count == 0
        assert len(timeouts) == 1

        renderer.gate.set()
        await queue.drain()
        assert await _status(repository, job.id) == ExportStatus.TIMEOUT
        assert repository.files == {}

    @pytest.mark.asyncio
    async def test_recent_jobs_are_left_alone(self, queue, lifecycle, repository, renderer):
        renderer.gate = asyncio.Event()
        job = await lifecycle.create_job(1, make_request())
        await queue.process_next_job()

        assert await queue.handle_timeout_jobs() == 0
        assert await _status(repository, job.id) == ExportStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_repository_error_is_contained(self, queue, repository, monkeypatch):
        async def broken(timeout_minutes=10):
            raise RuntimeError("db down")

        monkeypatch.setattr(repository, "get_timeout_jobs", broken)

        assert await queue.handle_timeout_jobs() == 0


# =============================================================================
# STATUS / LOOPS
# =============================================================================

class TestStatusAndLoops:

    @pytest.mark.asyncio
    async def test_queue_status(self, queue, lifecycle):
        await lifecycle.create_job(1, make_request())
        await lifecycle.create_job(1, make_request())

        status = await queue.get_queue_status()
        stats = queue.get_queue_stats()

        assert status.pending == 2
        assert status.processing == 0
        assert status.total_jobs == 2
        assert stats.queue_length == 2
        assert stats.max_concurrent == 3
        assert stats.is_processing is False

    @pytest.mark.asyncio
    async def test_status_falls_back_when_stats_fail(self, queue, lifecycle, repository, monkeypatch):
        await lifecycle.create_job(1, make_request())

        async def broken(user_id=None):
            raise RuntimeError("db down")

        monkeypatch.setattr(repository, "get_export_stats", broken)

        status = await queue.get_queue_status()
        assert status.pending == 1
        assert status.completed == 0
        assert status.total_jobs == 1

    @pytest.mark.asyncio
    async def test_background_loop_processes_jobs(self, queue, lifecycle, repository):
        pending = await repository.create_export_job(1, make_request("CSV"))

        await queue.start()
        assert queue.is_running
        assert queue.get_queue_stats().is_processing is True
        job = await lifecycle.create_job(1, make_request("PDF"))

        for _ in range(200):
            statuses = {await _status(repository, pending.id), await _status(repository, job.id)}
            if statuses == {ExportStatus.COMPLETED}:
                break
            await asyncio.sleep(0.01)

        assert await _status(repository, pending.id) == ExportStatus.COMPLETED
        assert await _status(repository, job.id) == ExportStatus.COMPLETED

        await queue.stop()
        assert not queue.is_running
