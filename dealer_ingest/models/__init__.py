"""Domain models for the dealer portal ingestion pipeline."""

from .error_record import ErrorRecord
from .file_types import FileKind, FileType
from .import_job import ImportJob, JobStatus
from .import_result import BatchStatsAccumulator, ImportResult
from .row_data import PeriodContext, Row
from .upload_chunk import UploadChunk

__all__ = [
    # Job records
    "ImportJob",
    "JobStatus",
    "FileType",
    "FileKind",
    "UploadChunk",
    # Processing models
    "Row",
    "PeriodContext",
    "ImportResult",
    "BatchStatsAccumulator",
    "ErrorRecord",
]
