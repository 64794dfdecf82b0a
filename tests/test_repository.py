"""
Tests for the repository implementations.

The Supabase repository is exercised against a mocked client whose query
builder chains back to itself, the way the Supabase SDK's builders do.

Run with: python -m pytest tests/test_repository.py -v
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from report_exports.errors import StorageError
from report_exports.jobs.job_types import ExportFormat, ExportStatus, utcnow
from report_exports.repository import (
    TIMEOUT_MESSAGE,
    SupabaseExportRepository,
)

from tests.conftest import make_request


# =============================================================================
# FIXTURES
# =============================================================================

def make_query(data=None):
    """Query builder mock: every filter returns the builder, execute returns ``data``."""
    query = MagicMock()
    for name in ("select", "insert", "update", "delete", "eq", "in_", "lt", "order", "range", "limit"):
        getattr(query, name).return_value = query
    query.execute.return_value = MagicMock(data=data if data is not None else [])
    return query


@pytest.fixture
def mock_supabase():
    """Mock Supabase client returning one shared query builder."""
    client = MagicMock()
    query = make_query()
    client.table.return_value = query
    return client, query


# =============================================================================
# IN-MEMORY REPOSITORY
# =============================================================================

class TestInMemoryRepository:

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, repository):
        job = await repository.create_export_job(1, make_request())

        fetched = await repository.get_job_status(job.id)
        fetched.progress = 50

        assert (await repository.get_job_status(job.id)).progress == 0

    @pytest.mark.asyncio
    async def test_update_missing_job(self, repository):
        with pytest.raises(StorageError) as exc_info:
            await repository.update_job("missing", progress=5)
        assert str(exc_info.value) == "Failed to update job"

    @pytest.mark.asyncio
    async def test_history_is_newest_first_and_paged(self, repository):
        jobs = [await repository.create_export_job(1, make_request()) for _ in range(3)]
        for i, job in enumerate(jobs):
            await repository.update_job(job.id, created_at=utcnow() + timedelta(seconds=i))

        page = await repository.get_job_history(1, limit=2, offset=0)
        rest = await repository.get_job_history(1, limit=2, offset=2)

        assert [j.id for j in page] == [jobs[2].id, jobs[1].id]
        assert [j.id for j in rest] == [jobs[0].id]

    @pytest.mark.asyncio
    async def test_timeout_scan_and_marking(self, repository):
        stale = await repository.create_export_job(1, make_request())
        fresh = await repository.create_export_job(1, make_request())
        await repository.update_job(stale.id, status=ExportStatus.PROCESSING,
                                    started_at=utcnow() - timedelta(minutes=15))
        await repository.update_job(fresh.id, status=ExportStatus.PROCESSING, started_at=utcnow())

        found = await repository.get_timeout_jobs(10)
        marked = await repository.mark_jobs_as_timeout([j.id for j in found] + [fresh.id, "missing"])

        assert [j.id for j in found] == [stale.id]
        # Any named PROCESSING job is marked, unknown ids are skipped
        assert marked == 2
        timed_out = await repository.get_job_status(stale.id)
        assert timed_out.status == ExportStatus.TIMEOUT
        assert timed_out.error_message == TIMEOUT_MESSAGE
        assert timed_out.completed_at is not None

    @pytest.mark.asyncio
    async def test_export_stats(self, repository):
        done = await repository.create_export_job(1, make_request("PDF", template_id="financial"))
        now = utcnow()
        await repository.update_job(done.id, status=ExportStatus.COMPLETED,
                                    started_at=now - timedelta(seconds=4), completed_at=now)
        await repository.create_export_job(1, make_request("CSV"))
        await repository.create_export_file(done.id, "a.pdf", "/tmp/a.pdf", 100, "application/pdf")

        stats = await repository.get_export_stats(1)

        assert stats.total_jobs == 2
        assert stats.completed_jobs == 1
        assert stats.pending_jobs == 1
        assert stats.by_format["pdf"] == 1
        assert stats.by_template == {"financial": 1}
        assert stats.total_file_size == 100
        assert stats.average_processing_seconds == pytest.approx(4)
        assert (await repository.get_export_stats(2)).total_jobs == 0


# =============================================================================
# SUPABASE REPOSITORY
# =============================================================================

class TestSupabaseRepository:

    def test_requires_configured_client(self):
        with patch("report_exports.supabase_client.get_supabase", return_value=None):
            with pytest.raises(StorageError):
                SupabaseExportRepository()

    @pytest.mark.asyncio
    async def test_create_job_inserts_json_row(self, mock_supabase):
        client, query = mock_supabase
        repo = SupabaseExportRepository(client)

        job = await repo.create_export_job(3, make_request("EXCEL"), expires_in_hours=12)

        client.table.assert_called_with("export_jobs")
        row = query.insert.call_args[0][0]
        assert row["user_id"] == 3
        assert row["status"] == "PENDING"
        assert row["format"] == "EXCEL"
        assert isinstance(row["created_at"], str)
        assert job.expires_at - job.created_at == timedelta(hours=12)

    @pytest.mark.asyncio
    async def test_get_job_status(self, mock_supabase):
        client, query = mock_supabase
        repo = SupabaseExportRepository(client)
        assert await repo.get_job_status("missing") is None

        row = {
            "id": "job-1",
            "user_id": 1,
            "template_id": "health",
            "format": "PDF",
            "status": "PROCESSING",
            "progress": 10,
            "created_at": "2024-01-01T00:00:00+00:00",
        }
        query.execute.return_value = MagicMock(data=[row])

        job = await repo.get_job_status("job-1")

        assert job.status == ExportStatus.PROCESSING
        query.eq.assert_any_call("id", "job-1")

    @pytest.mark.asyncio
    async def test_history_filters_are_part_of_the_query(self, mock_supabase):
        client, query = mock_supabase
        repo = SupabaseExportRepository(client)

        await repo.get_job_history(1, limit=2, offset=4, format=ExportFormat.PDF, template_id="health")

        query.eq.assert_any_call("user_id", 1)
        query.eq.assert_any_call("format", "PDF")
        query.eq.assert_any_call("template_id", "health")
        query.range.assert_called_once_with(4, 5)

    @pytest.mark.asyncio
    async def test_update_serializes_enums_and_datetimes(self, mock_supabase):
        client, query = mock_supabase
        repo = SupabaseExportRepository(client)
        completed_at = utcnow()
        query.execute.return_value = MagicMock(data=[{
            "id": "job-1",
            "user_id": 1,
            "template_id": "health",
            "format": "CSV",
            "status": "COMPLETED",
            "progress": 100,
        }])

        job = await repo.update_job("job-1", status=ExportStatus.COMPLETED, completed_at=completed_at, progress=100)

        query.update.assert_called_once_with({
            "status": "COMPLETED",
            "completed_at": completed_at.isoformat(),
            "progress": 100,
        })
        assert job.status == ExportStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_update_without_rows_fails(self, mock_supabase):
        client, _query = mock_supabase
        repo = SupabaseExportRepository(client)

        with pytest.raises(StorageError) as exc_info:
            await repo.update_job("job-1", progress=5)
        assert str(exc_info.value) == "Failed to update job"

    @pytest.mark.asyncio
    async def test_client_errors_become_storage_errors(self, mock_supabase):
        client, query = mock_supabase
        query.execute.side_effect = ConnectionError("socket closed")
        repo = SupabaseExportRepository(client)

        with pytest.raises(StorageError) as exc_info:
            await repo.get_pending_jobs()
        assert str(exc_info.value) == "Failed to get pending jobs"

    @pytest.mark.asyncio
    async def test_mark_jobs_as_timeout(self, mock_supabase):
        client, query = mock_supabase
        query.execute.return_value = MagicMock(data=[{"id": "a"}, {"id": "b"}])
        repo = SupabaseExportRepository(client)

        assert await repo.mark_jobs_as_timeout(["a", "b"]) == 2
        assert await repo.mark_jobs_as_timeout([]) == 0

        update = query.update.call_args[0][0]
        assert update["status"] == "TIMEOUT"
        assert update["error_message"] == TIMEOUT_MESSAGE
        query.in_.assert_called_with("id", ["a", "b"])

    @pytest.mark.asyncio
    async def test_tracked_file_paths(self, mock_supabase):
        client, query = mock_supabase
        query.execute.return_value = MagicMock(data=[{"file_path": "/a"}, {"file_path": "/b"}])
        repo = SupabaseExportRepository(client)

        assert await repo.get_tracked_file_paths() == {"/a", "/b"}
        client.table.assert_called_with("export_files")
