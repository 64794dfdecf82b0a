"""
Export Errors

Exception taxonomy for the export pipeline. Every error carries a machine-readable
``error_type`` and a user-friendly ``hint`` so API layers can surface them verbatim.
"""

from typing import List, Optional


DEFAULT_HINTS = {
    "validation_error": "Please check your input data and try again.",
    "quota_exceeded": "You have too many exports in progress. Wait for one to finish and try again.",
    "not_found": "The requested resource could not be found.",
    "permission_denied": "You don't have permission to perform this action.",
    "lock_conflict": "Another operation is in progress. Please wait and try again.",
    "timeout": "The operation timed out. Try with smaller data or try again.",
    "transient_error": "A temporary problem occurred. The export will be retried automatically.",
    "processing_error": "The report could not be generated. Please check the report parameters.",
    "storage_error": "The storage backend is unavailable. Please try again later.",
}


def get_default_hint(error_type: str) -> str:
    """Get default user-friendly hint for an error type."""
    return DEFAULT_HINTS.get(error_type, "An error occurred. Please try again or contact support.")


class ExportError(Exception):
    """Base class for all export pipeline errors."""

    error_type = "export_error"

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint or get_default_hint(self.error_type)

    def to_dict(self) -> dict:
        return {"error_type": self.error_type, "message": self.message, "hint": self.hint}


# ============================================================================
# Validation
# ============================================================================

class ExportValidationError(ExportError):
    """Bad request fields or bad file content. Never retried."""

    error_type = "validation_error"
    prefix: Optional[str] = None

    def __init__(self, message_or_errors, hint: Optional[str] = None):
        if isinstance(message_or_errors, (list, tuple)):
            self.errors: List[str] = list(message_or_errors)
            message = f"{self.prefix}: {', '.join(self.errors)}" if self.prefix else ", ".join(self.errors)
        else:
            self.errors = [message_or_errors]
            message = message_or_errors
        super().__init__(message, hint)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class JobValidationError(ExportValidationError):
    prefix = "Job validation failed"


class FileValidationError(ExportValidationError):
    prefix = "File validation failed"


class QuotaExceededError(ExportError):
    error_type = "quota_exceeded"


# ============================================================================
# Lookup / ownership
# ============================================================================

class NotFoundError(ExportError):
    error_type = "not_found"


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class FileRecordNotFoundError(NotFoundError):
    def __init__(self, file_id: str):
        super().__init__(f"File not found: {file_id}")
        self.file_id = file_id


class FileMissingOnDiskError(NotFoundError):
    def __init__(self, file_path: str):
        super().__init__(f"File not found on disk: {file_path}")
        self.file_path = file_path


class AccessDeniedError(ExportError):
    error_type = "permission_denied"


# ============================================================================
# Concurrency / timeouts
# ============================================================================

class ConcurrencyError(ExportError):
    error_type = "lock_conflict"


class CleanupAlreadyRunningError(ConcurrencyError):
    def __init__(self):
        super().__init__("Cleanup is already running")


class CleanupTimeoutError(ExportError):
    error_type = "timeout"

    def __init__(self, minutes: float):
        super().__init__(f"Cleanup timeout after {minutes:g} minutes")
        self.minutes = minutes


# ============================================================================
# Rendering
# ============================================================================

class ProcessingError(ExportError):
    """Raised by renderers. ``retryable`` is the typed retry signal."""

    error_type = "processing_error"
    retryable = False


class TransientProcessingError(ProcessingError):
    error_type = "transient_error"
    retryable = True


class FatalProcessingError(ProcessingError):
    retryable = False


# ============================================================================
# Storage
# ============================================================================

class StorageError(ExportError):
    """A persistence or filesystem collaborator failed."""

    error_type = "storage_error"

    @classmethod
    def for_operation(cls, operation: str) -> "StorageError":
        return cls(f"Failed to {operation}")


class StorageIntegrityError(StorageError):
    pass


class StorageInitializationError(StorageError):
    pass
