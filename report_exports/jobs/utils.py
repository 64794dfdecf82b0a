"""
Job Utilities

Shared helpers for the export pipeline: retry backoff, failure classification,
and human-readable formatting for log lines.
"""

import logging
from typing import Optional

from report_exports.errors import ExportValidationError, ProcessingError

logger = logging.getLogger(__name__)

RETRYABLE_KEYWORDS = ("timeout", "network", "connection", "temporary", "busy")


def calculate_retry_delay(retry_count: int, base_delay_ms: int = 1000, max_delay_ms: int = 30000) -> int:
    """Exponential backoff in milliseconds: ``min(2**retry_count * base, max)``."""
    return min((2 ** retry_count) * base_delay_ms, max_delay_ms)


def is_retryable_error(error: BaseException) -> bool:
    """
    Decide whether a failed render is worth another attempt.

    Typed processing errors carry the answer. Validation errors never retry.
    Anything else falls back to a keyword match on the message.
    """
    if isinstance(error, ProcessingError):
        return error.retryable
    if isinstance(error, (ExportValidationError, ValueError, TypeError)):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    return any(keyword in message for keyword in RETRYABLE_KEYWORDS)


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        mins = seconds / 60
        return f"{mins:.1f}m"
    hours = seconds / 3600
    return f"{hours:.1f}h"


def format_file_size(size: Optional[int]) -> str:
    if not size:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} GB"
