from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from dealer_ingest.models.file_types import FileType

"""ImportJob domain model and JobStatus enum.

One ImportJob exists per uploaded file. It is the durable source of truth
for an import: status, counters, the current phase and its percent, a
capped list of row errors and an append-only (capped) debug log.
"""

__all__ = [
    "JobStatus",
    "ImportJob",
    "CHUNK_REF_PREFIX",
    "INLINE_REF",
    "utcnow",
    "isoformat",
    "parse_timestamp",
]

CHUNK_REF_PREFIX = "chunk:"
INLINE_REF = "inline"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


class JobStatus(Enum):
    """Lifecycle: pending -> processing -> (imported | import_failed).

    import_failed -> processing is a retry; an explicit reset returns any
    state to pending.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    IMPORTED = "imported"
    IMPORT_FAILED = "import_failed"


@dataclass
class ImportJob:
    id: str
    filename: str
    file_type: FileType
    status: JobStatus = JobStatus.PENDING
    year: int | None = None
    month: int | None = None
    records_total: int | None = None
    processed_rows: int = 0
    records_imported: int = 0
    import_errors: list[str] = field(default_factory=list)
    error_count: int = 0
    error_message: str | None = None
    status_message: str | None = None
    phase: str | None = None
    step_pct: int = 0
    completed_phases: list[str] = field(default_factory=list)
    debug_log: list[str] = field(default_factory=list)
    storage_ref: str = INLINE_REF
    file_data: bytes | None = None
    raw_discarded: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def upload_id(self) -> str | None:
        if self.storage_ref.startswith(CHUNK_REF_PREFIX):
            return self.storage_ref[len(CHUNK_REF_PREFIX):]
        return None

    @property
    def progress_pct(self) -> int:
        if not self.records_total:
            return 0
        return round(min(self.processed_rows, self.records_total) / self.records_total * 100)

    def to_document(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["file_type"] = self.file_type.value
        doc["status"] = self.status.value
        doc["created_at"] = isoformat(self.created_at)
        doc["updated_at"] = isoformat(self.updated_at)
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> ImportJob:
        known = {f for f in cls.__dataclass_fields__}
        data = {k: v for k, v in doc.items() if k in known}
        data["file_type"] = FileType(doc["file_type"])
        data["status"] = JobStatus(doc.get("status", JobStatus.PENDING.value))
        data["created_at"] = parse_timestamp(doc.get("created_at")) or utcnow()
        data["updated_at"] = parse_timestamp(doc.get("updated_at")) or utcnow()
        data["import_errors"] = list(doc.get("import_errors") or [])
        data["debug_log"] = list(doc.get("debug_log") or [])
        data["completed_phases"] = list(doc.get("completed_phases") or [])
        return cls(**data)

    def snapshot(self) -> dict[str, Any]:
        """Pollable progress view (no raw bytes)."""
        return {
            "id": self.id,
            "filename": self.filename,
            "file_type": self.file_type.value,
            "status": self.status.value,
            "year": self.year,
            "month": self.month,
            "records_total": self.records_total,
            "processed_rows": self.processed_rows,
            "records_imported": self.records_imported,
            "progress_pct": self.progress_pct,
            "phase": self.phase,
            "step_pct": self.step_pct,
            "status_message": self.status_message,
            "error_message": self.error_message,
            "error_count": self.error_count,
            "import_errors": list(self.import_errors),
            "debug_log": list(self.debug_log),
            "raw_discarded": self.raw_discarded,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
