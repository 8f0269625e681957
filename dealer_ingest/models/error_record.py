from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

"""ErrorRecord model for structured import error logging.

Row-level problems, rejected store operations, timed-out batches and
file-level failures are all captured as ErrorRecord and written as JSON
Lines by ErrorLogBuffer. ``row=-1`` marks a file- or phase-level record
where no single source row applies.
"""

__all__ = [
    "ErrorRecord",
    "FILE_LEVEL_ROW",
]

FILE_LEVEL_ROW = -1


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        job_id: import job the error belongs to
        file: uploaded filename
        phase: importer phase (e.g. "dealers", "contracts", "stats")
        row: 1-based data row number, -1 when not row-specific
        error_type: classification in UPPER_SNAKE_CASE
        message: human-readable description
    """
    timestamp: str
    job_id: str
    file: str
    phase: str
    row: int
    error_type: str
    message: str

    @staticmethod
    def create(job_id: str, file: str, phase: str, row: int, error_type: str, message: str) -> ErrorRecord:
        ts = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            job_id=job_id,
            file=file,
            phase=phase,
            row=row,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)
