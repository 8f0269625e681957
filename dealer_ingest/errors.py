from __future__ import annotations

"""Exception taxonomy for the ingestion pipeline.

Recovery policy:
- RowError / BatchTimeoutError are recovered locally (recorded, counted)
- StructuralImportError / DecodeError abort the file and fail the job
- ChunksNotFoundError / DataNotFoundError mean the raw bytes are gone and
  the file has to be uploaded again
"""

__all__ = [
    "IngestError",
    "StructuralImportError",
    "DecodeError",
    "RowError",
    "BatchTimeoutError",
    "ChunksNotFoundError",
    "ChunksIncompleteError",
    "DataNotFoundError",
    "ReimportUnavailableError",
    "JobNotFoundError",
    "InvalidTransitionError",
    "UnsupportedFileError",
    "PhaseOrderError",
]


class IngestError(Exception):
    """Base class for all pipeline errors."""


class StructuralImportError(IngestError):
    """The file as a whole cannot be trusted; nothing is written."""


class DecodeError(StructuralImportError):
    """Input bytes could not be turned into rows."""

    def __init__(self, message: str, *, offset: int | None = None, sheet: str | None = None) -> None:
        context = []
        if sheet is not None:
            context.append(f"sheet={sheet!r}")
        if offset is not None:
            context.append(f"offset={offset}")
        full = f"{message} ({', '.join(context)})" if context else message
        super().__init__(full)
        self.offset = offset
        self.sheet = sheet


class RowError(IngestError):
    """A single source row failed validation or transformation."""

    def __init__(self, message: str, row: int | None = None) -> None:
        super().__init__(message)
        self.row = row


class BatchTimeoutError(IngestError):
    """One bulk-write batch exceeded its time budget."""


class DataNotFoundError(IngestError):
    """Raw bytes for a job are unavailable."""


class ChunksNotFoundError(DataNotFoundError):
    """No chunks exist for an upload id (abandoned, expired or unknown)."""


class ChunksIncompleteError(ChunksNotFoundError):
    """Chunk indices for an upload id are not contiguous."""


class ReimportUnavailableError(DataNotFoundError):
    """The job's source bytes were discarded after a successful import."""


class JobNotFoundError(IngestError):
    pass


class InvalidTransitionError(IngestError):
    pass


class UnsupportedFileError(IngestError):
    """Filename extension or declared file type is not accepted."""


class PhaseOrderError(IngestError):
    """A fragment was started before the phase it depends on completed."""
