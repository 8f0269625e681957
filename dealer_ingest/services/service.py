from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from dealer_ingest.config.loader import IngestConfig
from dealer_ingest.db.document_store import DocumentStore
from dealer_ingest.errors import (
    ChunksNotFoundError,
    DataNotFoundError,
    InvalidTransitionError,
    ReimportUnavailableError,
)
from dealer_ingest.importers.base import ImportContext
from dealer_ingest.importers.registry import get_importer
from dealer_ingest.models.file_types import file_kind_for, parse_file_type
from dealer_ingest.models.import_job import CHUNK_REF_PREFIX, ImportJob, JobStatus, utcnow
from dealer_ingest.models.row_data import PeriodContext
from dealer_ingest.tabular.decoder import decode
from dealer_ingest.tabular.offload import ExecutorFactory

from .chunks import ChunkAssembler, validate_upload_id
from .dispatch import Dispatcher, InlineDispatcher
from .job_store import JobStore
from .orchestrator import ImportOrchestrator
from .progress import EventChannel

"""Entry points for uploads, job queries and import triggers.

Callers are responsible for authorization; nothing here knows about users.
"""

__all__ = [
    "IngestService",
]

logger = logging.getLogger(__name__)


def _check_period(year: int | None, month: int | None) -> None:
    if month is not None and not 1 <= month <= 12:
        raise ValueError(f"month must be 1..12 (got {month})")
    if year is not None and not 1900 <= year <= 9999:
        raise ValueError(f"year out of range: {year}")


class IngestService:
    def __init__(
        self,
        store: DocumentStore,
        config: IngestConfig | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
        executor_factory: ExecutorFactory | None = None,
    ) -> None:
        self.store = store
        self.config = config or IngestConfig()
        self.clock = clock
        self.chunks = ChunkAssembler(store, self.config.upload, clock=clock)
        self.jobs = JobStore(
            store,
            chunks=self.chunks,
            debug_log_cap=self.config.progress.debug_log_cap,
            clock=clock,
        )
        self.orchestrator = ImportOrchestrator(
            store,
            self.config,
            jobs=self.jobs,
            chunks=self.chunks,
            clock=clock,
            executor_factory=executor_factory,
        )
        self.dispatcher = dispatcher or InlineDispatcher(
            self.orchestrator, fragment_phases=self.config.worker.fragment_phases
        )

    # ---- upload ----------------------------------------------------------

    def accept_chunk(self, upload_id: str, index: int, data: bytes) -> None:
        self.chunks.store_chunk(upload_id, index, data)

    def finalize_upload(
        self,
        upload_id: str,
        filename: str,
        file_type: str,
        year: int | None = None,
        month: int | None = None,
        total_size: int | None = None,
    ) -> str:
        """Register a chunked upload as a pending job; returns the job id.

        A rejected filename or type removes the chunks before raising.
        """
        validate_upload_id(upload_id)
        try:
            file_kind_for(filename, self.config.upload.allowed_extensions)
            kind = parse_file_type(file_type)
            _check_period(year, month)
        except Exception:
            self.chunks.discard(upload_id)
            raise
        self.chunks.finalize(upload_id, total_size, discard=False)
        job = self.jobs.create(
            filename,
            kind,
            year=year,
            month=month,
            storage_ref=f"{CHUNK_REF_PREFIX}{upload_id}",
        )
        return job.id

    def upload_inline(
        self,
        filename: str,
        data: bytes,
        file_type: str,
        year: int | None = None,
        month: int | None = None,
    ) -> str:
        file_kind_for(filename, self.config.upload.allowed_extensions)
        kind = parse_file_type(file_type)
        _check_period(year, month)
        job = self.jobs.create(filename, kind, year=year, month=month, file_data=bytes(data))
        return job.id

    def purge_expired_chunks(self) -> int:
        return self.chunks.purge_expired()

    # ---- query -----------------------------------------------------------

    def list_jobs(self, limit: int | None = None) -> list[ImportJob]:
        return self.jobs.list(limit)

    def get_job(self, job_id: str) -> ImportJob:
        return self.jobs.get(job_id)

    def snapshot(self, job_id: str) -> dict[str, Any]:
        return self.jobs.get(job_id).snapshot()

    def reset_job(self, job_id: str) -> ImportJob:
        return self.jobs.reset(job_id)

    def delete_job(self, job_id: str) -> None:
        self.jobs.delete(job_id)

    def stuck_jobs(self) -> list[ImportJob]:
        return self.jobs.stuck(timedelta(minutes=self.config.progress.stuck_after_minutes))

    # ---- trigger ---------------------------------------------------------

    def _ensure_reimportable(self, job: ImportJob) -> None:
        threshold = timedelta(minutes=self.config.progress.stuck_after_minutes)
        if job.status is JobStatus.PROCESSING and not self.jobs.is_stuck(job, self.clock(), threshold):
            raise InvalidTransitionError(f"job {job.id} is already processing")
        if job.raw_discarded:
            raise ReimportUnavailableError(
                f"source data for {job.filename} was discarded after import; upload the file again"
            )
        if job.upload_id:
            if not self.chunks.has_chunks(job.upload_id):
                raise ChunksNotFoundError(f"chunks for {job.filename} expired; upload the file again")
        elif job.file_data is None:
            raise DataNotFoundError(f"no source data stored for job {job.id}")

    def trigger_import(self, job_id: str) -> str | None:
        """Reset ``job_id`` to pending and hand it to the dispatcher.

        Returns the dispatcher's task id (None when run inline).
        """
        job = self.jobs.get(job_id)
        self._ensure_reimportable(job)
        self.jobs.reset(job_id)
        phases = get_importer(job.file_type).phases
        return self.dispatcher.dispatch(job_id, phases)

    def stream_import(self, job_id: str) -> EventChannel:
        """Start a single-pass import on a background thread.

        Iterate ``channel.events()`` or ``channel.sse_frames()`` for progress;
        ``channel.disconnect()`` stops delivery but not the import.
        """
        job = self.jobs.get(job_id)
        self._ensure_reimportable(job)
        self.jobs.reset(job_id)
        channel = EventChannel()
        worker = threading.Thread(
            target=self.orchestrator.run,
            args=(job_id, channel),
            name=f"import-{job_id}",
            daemon=True,
        )
        worker.start()
        return channel

    # ---- diagnostics -----------------------------------------------------

    def inspect_file(
        self,
        filename: str,
        data: bytes,
        file_type: str,
        year: int | None = None,
        month: int | None = None,
    ) -> dict[str, Any]:
        """Decode without writing: row count, columns and any missing required columns."""
        kind = parse_file_type(file_type)
        importer = get_importer(kind)
        ctx = ImportContext(store=self.store, config=self.config, period=PeriodContext(year, month))
        rows = decode(
            data,
            file_kind_for(filename, self.config.upload.allowed_extensions),
            importer.hints(ctx),
            offload=False,
        )
        columns = list(rows[0].keys()) if rows else []
        binding = importer.schema.bind(columns)
        return {
            "file_type": kind.value,
            "rows": len(rows),
            "columns": columns,
            "bound": dict(binding.columns),
            "missing": list(binding.missing),
            "sample": rows[:3],
        }
