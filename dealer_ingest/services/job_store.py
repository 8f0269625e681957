from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from dealer_ingest.db.collections import IMPORT_JOBS
from dealer_ingest.db.document_store import DocumentStore, new_id
from dealer_ingest.errors import InvalidTransitionError, JobNotFoundError
from dealer_ingest.models.file_types import FileType, parse_file_type
from dealer_ingest.models.import_job import INLINE_REF, ImportJob, JobStatus, isoformat, utcnow

from .chunks import ChunkAssembler

"""Job record store: the durable state of every import.

Status changes go through ``transition`` which applies the state machine
atomically in the store (the current status is part of the update filter),
so two workers cannot both move a job into ``processing``.
"""

__all__ = [
    "JobStore",
    "ALLOWED_TRANSITIONS",
]

logger = logging.getLogger(__name__)

# target -> states it may be entered from (reset is handled separately)
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset(),
    JobStatus.PROCESSING: frozenset({JobStatus.PENDING, JobStatus.IMPORT_FAILED}),
    JobStatus.IMPORTED: frozenset({JobStatus.PROCESSING}),
    JobStatus.IMPORT_FAILED: frozenset({JobStatus.PROCESSING}),
}

_RESET_FIELDS: dict[str, Any] = {
    "status": JobStatus.PENDING.value,
    "records_total": None,
    "processed_rows": 0,
    "records_imported": 0,
    "import_errors": [],
    "error_count": 0,
    "error_message": None,
    "status_message": None,
    "phase": None,
    "step_pct": 0,
    "completed_phases": [],
}


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return isoformat(value)
    return value


class JobStore:
    def __init__(
        self,
        store: DocumentStore,
        *,
        chunks: ChunkAssembler | None = None,
        debug_log_cap: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.chunks = chunks
        self.debug_log_cap = debug_log_cap
        self.clock = clock
        self._debug_lock = threading.Lock()

    def create(
        self,
        filename: str,
        file_type: FileType | str,
        *,
        year: int | None = None,
        month: int | None = None,
        storage_ref: str = INLINE_REF,
        file_data: bytes | None = None,
    ) -> ImportJob:
        now = self.clock()
        job = ImportJob(
            id=new_id(),
            filename=filename,
            file_type=parse_file_type(file_type),
            year=year,
            month=month,
            storage_ref=storage_ref,
            file_data=file_data,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_one(IMPORT_JOBS, job.to_document())
        logger.info("job created id=%s file=%s type=%s", job.id, filename, job.file_type.value)
        return job

    def get(self, job_id: str) -> ImportJob:
        doc = self.store.find_one(IMPORT_JOBS, {"id": job_id})
        if doc is None:
            raise JobNotFoundError(f"import job not found: {job_id}")
        return ImportJob.from_document(doc)

    def list(self, limit: int | None = None) -> list[ImportJob]:
        """Jobs newest first, without raw bytes."""
        docs = self.store.find(IMPORT_JOBS, {}, sort=[("created_at", -1)], limit=limit)
        jobs = []
        for doc in docs:
            doc.pop("file_data", None)
            jobs.append(ImportJob.from_document(doc))
        return jobs

    def _set(self, filter: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any] | None:
        update = {k: _encode(v) for k, v in fields.items()}
        update["updated_at"] = isoformat(self.clock())
        return self.store.find_one_and_update(IMPORT_JOBS, filter, {"$set": update})

    def update(self, job_id: str, **fields: Any) -> ImportJob:
        doc = self._set({"id": job_id}, fields)
        if doc is None:
            raise JobNotFoundError(f"import job not found: {job_id}")
        return ImportJob.from_document(doc)

    def transition(self, job_id: str, target: JobStatus, **fields: Any) -> ImportJob:
        allowed = ALLOWED_TRANSITIONS[target]
        doc = self._set(
            {"id": job_id, "status": {"$in": [s.value for s in allowed]}},
            {"status": target, **fields},
        )
        if doc is None:
            current = self.get(job_id)
            raise InvalidTransitionError(
                f"job {job_id}: cannot move from {current.status.value} to {target.value}"
            )
        logger.debug("job %s -> %s", job_id, target.value)
        return ImportJob.from_document(doc)

    def set_total_once(self, job_id: str, total: int) -> bool:
        """Record ``records_total`` unless a value is already present."""
        return self._set({"id": job_id, "records_total": None}, {"records_total": total}) is not None

    def append_debug(self, job_id: str, message: str) -> None:
        line = f"[{self.clock().strftime('%H:%M:%S')}] {message}"
        with self._debug_lock:
            job = self.get(job_id)
            log = (job.debug_log + [line])[-self.debug_log_cap:]
            self._set({"id": job_id}, {"debug_log": log})
        logger.debug("job %s: %s", job_id, message)

    def reset(self, job_id: str) -> ImportJob:
        doc = self._set({"id": job_id}, dict(_RESET_FIELDS))
        if doc is None:
            raise JobNotFoundError(f"import job not found: {job_id}")
        logger.info("job %s reset to pending", job_id)
        return ImportJob.from_document(doc)

    def delete(self, job_id: str) -> None:
        job = self.get(job_id)
        if job.upload_id and self.chunks is not None:
            self.chunks.discard(job.upload_id)
        self.store.delete_many(IMPORT_JOBS, {"id": job_id})
        logger.info("job %s deleted", job_id)

    @staticmethod
    def is_stuck(job: ImportJob, now: datetime, threshold: timedelta) -> bool:
        return job.status is JobStatus.PROCESSING and now - job.updated_at > threshold

    def stuck(self, threshold: timedelta) -> list[ImportJob]:
        now = self.clock()
        return [j for j in self.list() if self.is_stuck(j, now, threshold)]
