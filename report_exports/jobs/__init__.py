"""
Report Export Jobs

Asynchronous pipeline that renders report exports in the background.

Key components:
- job_types: Enums and Pydantic models shared across the pipeline
- job_manager: JobStateMachine, request validation and status transitions
- queue: JobQueue, priority-ordered executor with retry/backoff
- events: QueueEventBus for job lifecycle notifications
- utils: Retry backoff and failure classification helpers

job_manager and queue depend on the storage and config modules, so they are
imported from their own modules rather than re-exported here.
"""

from report_exports.jobs.job_types import (
    ExportFormat,
    ExportStatus,
    JobEventType,
    ExportJob,
    ExportFile,
    CreateExportJobRequest,
    JobCreationOptions,
    JobTransitionResult,
)

from report_exports.jobs.events import QueueEventBus

from report_exports.jobs.utils import (
    calculate_retry_delay,
    is_retryable_error,
)

__all__ = [
    # Types
    "ExportFormat",
    "ExportStatus",
    "JobEventType",
    "ExportJob",
    "ExportFile",
    "CreateExportJobRequest",
    "JobCreationOptions",
    "JobTransitionResult",
    # Events
    "QueueEventBus",
    # Utils
    "calculate_retry_delay",
    "is_retryable_error",
]
