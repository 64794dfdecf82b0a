"""
File Integrity Store

Validates, persists, retrieves and deletes rendered export files.

Files live under ``{base}/user_{user_id}/{yyyy}/{mm}/{dd}/`` with collision-resistant
names. Every stored file carries a SHA-256 checksum that is verified right after
the write and again on every retrieval. Access is restricted to the user who owns
the job that produced the file.
"""

import hashlib
import logging
import os
import secrets
import shutil
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os

from report_exports.config import StorageConfig
from report_exports.errors import (
    AccessDeniedError,
    FileMissingOnDiskError,
    FileRecordNotFoundError,
    FileValidationError,
    StorageError,
    StorageInitializationError,
    StorageIntegrityError,
)
from report_exports.jobs.job_types import (
    FILE_EXTENSIONS,
    MIME_TYPES,
    ExportFile,
    ExportFormat,
    FileInfo,
    FileMetadata,
    RetrievedFile,
    StorageResult,
    StorageStats,
    utcnow,
)
from report_exports.repository import ExportRepository

logger = logging.getLogger(__name__)

# Leading bytes each format must start with. CSV has no signature.
MAGIC_SIGNATURES = {
    ExportFormat.PDF: b"%PDF",
    ExportFormat.EXCEL: b"PK\x03\x04",
}

PERMISSION_CHECK_FILE = "test_permissions.tmp"


def calculate_checksum(content: bytes) -> str:
    """SHA-256 hex digest of ``content``."""
    return hashlib.sha256(content).hexdigest()


class FileIntegrityStore:
    """
    Persists rendered files with validation, checksums and ownership checks.
    """

    def __init__(self, repository: ExportRepository, config: Optional[StorageConfig] = None):
        self.repository = repository
        self.config = config or StorageConfig()
        self.base_directory = Path(self.config.base_directory).resolve()

    @property
    def temp_directory(self) -> Path:
        return self.base_directory / self.config.temp_subdirectory

    @property
    def archive_directory(self) -> Path:
        return self.base_directory / self.config.archive_subdirectory

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def initialize(self) -> None:
        """Create the storage root and its subdirectories and verify write access."""
        try:
            for directory in (self.base_directory, self.temp_directory, self.archive_directory):
                await aiofiles.os.makedirs(directory, mode=0o755, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create directory structure: {e}")
            raise StorageInitializationError(
                f"Cannot create storage root {self.base_directory}: {e}"
            ) from e

        check_file = self.base_directory / PERMISSION_CHECK_FILE
        try:
            async with aiofiles.open(check_file, "w") as f:
                await f.write("test")
            await aiofiles.os.remove(check_file)
        except OSError as e:
            logger.error(f"Permission verification failed: {e}")
            raise StorageInitializationError("Insufficient storage permissions") from e

        logger.info(f"File storage initialized at {self.base_directory}")

    # ==========================================================================
    # Validation
    # ==========================================================================

    def validate(self, content: bytes, metadata: FileMetadata) -> List[str]:
        """Return every reason ``content`` may not be stored. Empty list means valid."""
        errors = []

        if len(content) == 0:
            errors.append("File is empty")
        elif len(content) > self.config.max_file_size:
            errors.append(f"File size {len(content)} exceeds maximum {self.config.max_file_size}")

        try:
            file_format = ExportFormat(metadata.format)
        except ValueError:
            errors.append(f"Format {metadata.format} is not recognized")
            return errors

        if file_format not in self.config.allowed_formats:
            errors.append(f"Format {file_format.value} is not allowed")

        if metadata.mime_type not in MIME_TYPES[file_format]:
            errors.append(f"Invalid MIME type {metadata.mime_type} for format {file_format.value}")

        signature = MAGIC_SIGNATURES.get(file_format)
        if signature is not None and len(content) > 0 and not content.startswith(signature):
            errors.append(f"Invalid file signature for format {file_format.value}")

        return errors

    # ==========================================================================
    # Store / retrieve / delete
    # ==========================================================================

    def _build_path(self, metadata: FileMetadata) -> Path:
        now = utcnow()
        extension = FILE_EXTENSIONS[ExportFormat(metadata.format)]
        file_name = f"{metadata.job_id}_{int(now.timestamp() * 1000)}_{secrets.token_hex(8)}.{extension}"
        return (
            self.base_directory
            / f"user_{metadata.user_id}"
            / f"{now:%Y}" / f"{now:%m}" / f"{now:%d}"
            / file_name
        )

    async def store(self, content: bytes, metadata: FileMetadata) -> StorageResult:
        """
        Validate and persist ``content``, then record it for ``metadata.job_id``.

        Raises:
            FileValidationError: with every violation found.
            StorageIntegrityError: if the written bytes do not read back identically.
        """
        errors = self.validate(content, metadata)
        if errors:
            logger.warning(f"Rejected file for job {metadata.job_id}: {', '.join(errors)}")
            raise FileValidationError(errors)

        file_path = self._build_path(metadata)
        checksum = calculate_checksum(content)

        try:
            await aiofiles.os.makedirs(file_path.parent, mode=0o755, exist_ok=True)
            async with aiofiles.open(file_path, "wb") as f:
                await f.write(content)
        except OSError as e:
            logger.error(f"Failed to write {file_path}: {e}")
            raise StorageError.for_operation("store file") from e

        try:
            await self._verify_written(file_path, len(content), checksum)
            record = await self.repository.create_export_file(
                job_id=metadata.job_id,
                file_name=file_path.name,
                file_path=str(file_path),
                file_size=len(content),
                mime_type=metadata.mime_type,
                checksum=checksum,
            )
        except Exception:
            await self._remove_quietly(file_path)
            raise

        logger.info(f"File stored for job {metadata.job_id}: {file_path.name} ({len(content)} bytes)")
        return StorageResult(
            file_id=record.id,
            file_path=record.file_path,
            file_name=record.file_name,
            size=record.file_size,
            checksum=checksum,
        )

    async def _verify_written(self, file_path: Path, expected_size: int, expected_checksum: str) -> None:
        async with aiofiles.open(file_path, "rb") as f:
            written = await f.read()
        if len(written) != expected_size:
            raise StorageIntegrityError(
                f"File integrity check failed: expected {expected_size} bytes, got {len(written)}"
            )
        actual = calculate_checksum(written)
        if actual != expected_checksum:
            raise StorageIntegrityError(
                f"File integrity check failed: expected {expected_checksum}, got {actual}"
            )

    async def _owner_of(self, record: ExportFile) -> Optional[int]:
        job = await self.repository.get_job_status(record.job_id)
        return job.user_id if job else None

    async def retrieve(self, file_id: str, requesting_user_id: int) -> RetrievedFile:
        """
        Read a stored file on behalf of ``requesting_user_id``.

        Counts the download on success.

        Raises:
            FileRecordNotFoundError, AccessDeniedError, FileMissingOnDiskError,
            StorageIntegrityError
        """
        record = await self.repository.get_export_file(file_id)
        if record is None:
            raise FileRecordNotFoundError(file_id)

        owner = await self._owner_of(record)
        if owner != requesting_user_id:
            logger.warning(f"User {requesting_user_id} denied access to file {file_id}")
            raise AccessDeniedError("Access denied: file belongs to another user")

        if not await aiofiles.os.path.exists(record.file_path):
            raise FileMissingOnDiskError(record.file_path)

        async with aiofiles.open(record.file_path, "rb") as f:
            content = await f.read()

        if record.checksum and calculate_checksum(content) != record.checksum:
            logger.error(f"Checksum mismatch for file {file_id}")
            raise StorageIntegrityError(f"File integrity check failed for {record.file_name}")

        updated = await self.repository.increment_download_count(file_id)
        logger.info(f"File {file_id} retrieved by user {requesting_user_id}")
        return RetrievedFile(content=content, metadata=updated or record)

    async def delete(self, file_id: str, requesting_user_id: int) -> bool:
        """Delete a file and its record. False when absent or not owned by the requester."""
        record = await self.repository.get_export_file(file_id)
        if record is None:
            return False

        if await self._owner_of(record) != requesting_user_id:
            logger.warning(f"User {requesting_user_id} may not delete file {file_id}")
            return False

        await self.purge(record)
        logger.info(f"File {file_id} deleted by user {requesting_user_id}")
        return True

    async def purge(self, record: ExportFile) -> int:
        """Remove a file from disk and drop its record. Returns the bytes reclaimed."""
        freed = 0
        try:
            stat = await aiofiles.os.stat(record.file_path)
            freed = stat.st_size
            await aiofiles.os.remove(record.file_path)
        except FileNotFoundError:
            logger.warning(f"File already missing on disk: {record.file_path}")

        await self.repository.delete_export_file(record.id)
        return freed

    async def discard(self, file_id: str) -> int:
        """Purge a stored file by id without an ownership check. Returns bytes reclaimed."""
        record = await self.repository.get_export_file(file_id)
        if record is None:
            return 0
        return await self.purge(record)

    async def _remove_quietly(self, file_path: Path) -> None:
        try:
            await aiofiles.os.remove(file_path)
        except OSError as e:
            logger.warning(f"Could not remove {file_path}: {e}")

    # ==========================================================================
    # Read-only projections
    # ==========================================================================

    async def get_info(self, file_id: str, requesting_user_id: Optional[int] = None) -> Optional[FileInfo]:
        """File metadata plus whether the bytes are still on disk. None if absent or not owned."""
        record = await self.repository.get_export_file(file_id)
        if record is None:
            return None
        if requesting_user_id is not None and await self._owner_of(record) != requesting_user_id:
            return None

        exists = await aiofiles.os.path.exists(record.file_path)
        return FileInfo(**record.model_dump(), physical_file_exists=exists)

    async def get_stats(self, user_id: Optional[int] = None) -> StorageStats:
        stats = await self.repository.get_export_stats(user_id)

        available = 0
        if os.path.isdir(self.base_directory):
            available = shutil.disk_usage(self.base_directory).free

        return StorageStats(
            total_files=stats.total_files,
            total_size=stats.total_file_size,
            available_space=available,
            oldest_file=stats.oldest_file_at,
            newest_file=stats.newest_file_at,
        )
