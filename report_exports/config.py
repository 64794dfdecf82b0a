"""
Export Pipeline Configuration

Explicit configuration objects handed to each component at construction time.
``ExportSettings.from_env`` is the only place that reads the environment.
"""

import os
from typing import List, Optional

from croniter import croniter
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from report_exports.jobs.job_types import ExportFormat


class StorageConfig(BaseModel):
    base_directory: str = "uploads/reports"
    max_file_size: int = Field(default=50 * 1024 * 1024, gt=0)  # 50MB
    allowed_formats: List[ExportFormat] = Field(
        default_factory=lambda: [ExportFormat.PDF, ExportFormat.EXCEL, ExportFormat.CSV]
    )
    temp_subdirectory: str = "temp"
    archive_subdirectory: str = "archive"


class QueueConfig(BaseModel):
    max_concurrent_jobs: int = Field(default=3, ge=1)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_ms: int = Field(default=1000, ge=0)
    max_retry_delay_ms: int = Field(default=30000, ge=0)
    processing_interval_seconds: float = Field(default=5.0, gt=0)
    timeout_check_interval_seconds: float = Field(default=60.0, gt=0)
    job_timeout_minutes: int = Field(default=10, gt=0)


class LifecycleConfig(BaseModel):
    max_jobs_per_user: int = Field(default=10, ge=1)
    job_expiry_hours: int = Field(default=24, gt=0)
    valid_templates: List[str] = Field(
        default_factory=lambda: ["reproductive", "health", "inventory", "financial"]
    )


class RetentionPolicies(BaseModel):
    """Hours each category is kept before it is reclaimed."""
    completed_jobs: float = 24
    failed_jobs: float = 72
    orphaned_files: float = 1
    temp_files: float = 1


class CleanupConfig(BaseModel):
    enable_scheduled_cleanup: bool = True
    cleanup_schedule: str = "0 2 * * *"  # daily at 2 AM
    timezone: str = "UTC"
    retention_policies: RetentionPolicies = Field(default_factory=RetentionPolicies)
    batch_size: int = Field(default=100, ge=1)
    max_cleanup_duration: float = Field(default=30, gt=0)  # minutes
    enable_metrics: bool = True

    @field_validator("cleanup_schedule")
    @classmethod
    def validate_schedule(cls, v):
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v}")
        return v


class ExportSettings(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ExportSettings":
        """Build settings from ``EXPORT_*`` environment variables (and a .env file)."""
        load_dotenv(env_file)
        env = os.environ

        storage = StorageConfig(
            base_directory=env.get("EXPORT_STORAGE_DIR", "uploads/reports"),
            max_file_size=int(env.get("EXPORT_MAX_FILE_SIZE", str(50 * 1024 * 1024))),
        )
        queue = QueueConfig(
            max_concurrent_jobs=int(env.get("EXPORT_MAX_CONCURRENT_JOBS", "3")),
            max_retries=int(env.get("EXPORT_MAX_RETRIES", "3")),
            processing_interval_seconds=float(env.get("EXPORT_POLL_INTERVAL", "5.0")),
            job_timeout_minutes=int(env.get("EXPORT_JOB_TIMEOUT_MINUTES", "10")),
        )
        lifecycle = LifecycleConfig(
            max_jobs_per_user=int(env.get("EXPORT_MAX_JOBS_PER_USER", "10")),
            job_expiry_hours=int(env.get("EXPORT_JOB_EXPIRY_HOURS", "24")),
        )
        cleanup = CleanupConfig(
            enable_scheduled_cleanup=env.get("EXPORT_ENABLE_CLEANUP", "true").lower() in ("1", "true", "yes"),
            cleanup_schedule=env.get("EXPORT_CLEANUP_SCHEDULE", "0 2 * * *"),
            timezone=env.get("EXPORT_CLEANUP_TIMEZONE", "UTC"),
            max_cleanup_duration=float(env.get("EXPORT_MAX_CLEANUP_MINUTES", "30")),
        )
        return cls(storage=storage, queue=queue, lifecycle=lifecycle, cleanup=cleanup)
