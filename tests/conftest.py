"""
Shared fixtures for the export pipeline tests.

Components are wired against an in-memory repository and a fake renderer, with
the storage root under pytest's tmp_path and backoff/poll delays shrunk to
milliseconds.
"""

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio

from report_exports.config import (
    CleanupConfig,
    ExportSettings,
    LifecycleConfig,
    QueueConfig,
    StorageConfig,
)
from report_exports.jobs.job_manager import JobStateMachine
from report_exports.jobs.job_types import (
    MIME_TYPES,
    CreateExportJobRequest,
    ExportFormat,
    ExportJob,
)
from report_exports.jobs.queue import JobQueue
from report_exports.renderers import RenderedFile, Renderer
from report_exports.repository import InMemoryExportRepository
from report_exports.storage import FileIntegrityStore

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\ntrailer\n%%EOF\n"
XLSX_BYTES = b"PK\x03\x04" + b"\x00" * 60
CSV_BYTES = b"animal,weight\nA-1,420\nA-2,398\n"

SAMPLE_CONTENT = {
    ExportFormat.PDF: PDF_BYTES,
    ExportFormat.EXCEL: XLSX_BYTES,
    ExportFormat.CSV: CSV_BYTES,
}


class FakeRenderer(Renderer):
    """
    Renderer double. Raises the queued ``failures`` in order before succeeding,
    and blocks on ``gate`` when one is set.
    """

    def __init__(self, failures: Optional[List[Exception]] = None, always_fail: Optional[Exception] = None):
        self.failures = list(failures or [])
        self.always_fail = always_fail
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []

    async def generate_file(self, job: ExportJob) -> RenderedFile:
        self.calls.append(job.id)
        if self.gate is not None:
            await self.gate.wait()
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)
        return RenderedFile(
            file_name=f"{job.template_id}.bin",
            mime_type=MIME_TYPES[job.format][0],
            content=SAMPLE_CONTENT[job.format],
        )


def make_request(fmt: str = "PDF", template_id: str = "health", **parameters) -> CreateExportJobRequest:
    return CreateExportJobRequest(template_id=template_id, format=fmt, parameters=parameters)


@pytest.fixture
def settings(tmp_path) -> ExportSettings:
    return ExportSettings(
        storage=StorageConfig(base_directory=str(tmp_path / "reports"), max_file_size=1024 * 1024),
        queue=QueueConfig(
            retry_base_delay_ms=1,
            max_retry_delay_ms=10,
            processing_interval_seconds=0.01,
            timeout_check_interval_seconds=60,
        ),
        lifecycle=LifecycleConfig(),
        cleanup=CleanupConfig(enable_scheduled_cleanup=False),
    )


@pytest.fixture
def repository() -> InMemoryExportRepository:
    return InMemoryExportRepository()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest_asyncio.fixture
async def store(repository, settings) -> FileIntegrityStore:
    file_store = FileIntegrityStore(repository, settings.storage)
    await file_store.initialize()
    return file_store


@pytest.fixture
def lifecycle(repository, settings) -> JobStateMachine:
    return JobStateMachine(repository, settings.lifecycle)


@pytest_asyncio.fixture
async def queue(lifecycle, store, renderer, settings):
    job_queue = JobQueue(lifecycle, store, renderer, settings.queue)
    yield job_queue
    await job_queue.stop()
    if renderer.gate is not None:
        renderer.gate.set()
    await job_queue.drain(process_pending=False)
