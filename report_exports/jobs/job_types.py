"""
Export Job Types and Schemas

Defines enums, type hints, and Pydantic models for the export job pipeline.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExportFormat(str, Enum):
    """Output formats a report can be rendered to."""
    PDF = "PDF"
    EXCEL = "EXCEL"
    CSV = "CSV"


class ExportStatus(str, Enum):
    """Status of an export job."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


TERMINAL_STATUSES = frozenset({ExportStatus.COMPLETED, ExportStatus.FAILED, ExportStatus.TIMEOUT})
ACTIVE_STATUSES = frozenset({ExportStatus.PENDING, ExportStatus.PROCESSING})


class JobEventType(str, Enum):
    """Names of the events emitted by the job queue."""
    ADDED = "jobAdded"
    STARTED = "jobStarted"
    COMPLETED = "jobCompleted"
    FAILED = "jobFailed"
    RETRY = "jobRetry"
    CANCELLED = "jobCancelled"
    TIMEOUT = "jobTimeout"


MIME_TYPES: Dict[ExportFormat, List[str]] = {
    ExportFormat.PDF: ["application/pdf"],
    ExportFormat.EXCEL: [
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.ms-excel",
    ],
    ExportFormat.CSV: ["text/csv", "application/csv", "text/plain"],
}

FILE_EXTENSIONS: Dict[ExportFormat, str] = {
    ExportFormat.PDF: "pdf",
    ExportFormat.EXCEL: "xlsx",
    ExportFormat.CSV: "csv",
}


# ============================================================================
# Persisted records
# ============================================================================

class ExportJob(BaseModel):
    """A request to render one report. Mutated only through the state machine."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: int
    template_id: str
    format: ExportFormat
    status: ExportStatus = ExportStatus.PENDING
    parameters: Dict[str, Any] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)
    progress: int = Field(default=0, ge=0, le=100)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def _default_expiry(self):
        if self.expires_at is None:
            self.expires_at = self.created_at + timedelta(hours=24)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExportFile(BaseModel):
    """The rendered output of a job, as stored on disk."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    job_id: str
    file_name: str
    file_path: str
    file_size: int = Field(ge=0)
    mime_type: str
    checksum: Optional[str] = None
    download_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_downloaded_at: Optional[datetime] = None


class JobWithFile(ExportJob):
    files: List[ExportFile] = Field(default_factory=list)


# ============================================================================
# Requests
# ============================================================================

class CreateExportJobRequest(BaseModel):
    """Parameters for creating an export job.

    ``format`` stays a plain string so an unknown value is reported alongside the
    other validation errors instead of failing model parsing.
    """
    template_id: str = ""
    format: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    options: Optional[Dict[str, Any]] = None


class JobCreationOptions(BaseModel):
    priority: Optional[float] = None  # added to the derived queue priority
    max_retries: Optional[int] = Field(default=None, ge=0)


class FileMetadata(BaseModel):
    """What the store needs to know about bytes it is asked to persist."""
    job_id: str
    user_id: int
    format: str
    mime_type: str
    original_name: Optional[str] = None


# ============================================================================
# Results
# ============================================================================

class JobTransitionResult(BaseModel):
    success: bool
    previous_status: Optional[ExportStatus] = None
    new_status: ExportStatus
    message: Optional[str] = None


class StorageResult(BaseModel):
    file_id: str
    file_path: str
    file_name: str
    size: int
    checksum: str


class RetrievedFile(BaseModel):
    content: bytes
    metadata: ExportFile


class FileInfo(ExportFile):
    physical_file_exists: bool = True


class StorageStats(BaseModel):
    total_files: int = 0
    total_size: int = 0
    available_space: int = 0
    oldest_file: Optional[datetime] = None
    newest_file: Optional[datetime] = None


class ExportStats(BaseModel):
    """Aggregate counts returned by the persistence collaborator."""
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    pending_jobs: int = 0
    processing_jobs: int = 0
    timeout_jobs: int = 0
    total_downloads: int = 0
    total_files: int = 0
    total_file_size: int = 0
    oldest_file_at: Optional[datetime] = None
    newest_file_at: Optional[datetime] = None
    by_format: Dict[str, int] = Field(default_factory=lambda: {"pdf": 0, "excel": 0, "csv": 0})
    by_template: Dict[str, int] = Field(default_factory=dict)
    average_processing_seconds: float = 0.0


class LifecycleStats(BaseModel):
    average_processing_time: float = 0.0
    success_rate: float = 0.0
    retry_rate: float = 0.0
    timeout_rate: float = 0.0


class QueueStatus(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    total_jobs: int


class QueueStats(BaseModel):
    queue_length: int
    processing_count: int
    max_concurrent: int
    is_processing: bool


# ============================================================================
# Cleanup
# ============================================================================

class CleanupDetails(BaseModel):
    completed_jobs: int = 0
    failed_jobs: int = 0
    orphaned_files: int = 0
    temp_files: int = 0


class CleanupResult(BaseModel):
    success: bool = False
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration_ms: float = 0.0
    files_processed: int = 0
    files_deleted: int = 0
    space_cleaned: int = 0
    errors: List[str] = Field(default_factory=list)
    details: CleanupDetails = Field(default_factory=CleanupDetails)


class CleanupMetrics(BaseModel):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    total_files_deleted: int = 0
    total_space_cleaned: int = 0
    average_duration: float = 0.0  # milliseconds
    last_run_time: Optional[datetime] = None
    next_scheduled_run: Optional[datetime] = None


class SweepOutcome(BaseModel):
    """Counts produced by one cleanup step."""
    model_config = ConfigDict(frozen=True)

    files_processed: int = 0
    deleted_files: int = 0
    space_cleaned: int = 0

    def __add__(self, other: "SweepOutcome") -> "SweepOutcome":
        return SweepOutcome(
            files_processed=self.files_processed + other.files_processed,
            deleted_files=self.deleted_files + other.deleted_files,
            space_cleaned=self.space_cleaned + other.space_cleaned,
        )
