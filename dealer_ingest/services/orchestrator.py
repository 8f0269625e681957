from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from dealer_ingest.config.loader import IngestConfig
from dealer_ingest.db.document_store import DocumentStore
from dealer_ingest.errors import DataNotFoundError, InvalidTransitionError, PhaseOrderError, ReimportUnavailableError
from dealer_ingest.importers.base import ImportContext, Importer
from dealer_ingest.importers.registry import get_importer
from dealer_ingest.logging.error_log import ErrorLogBuffer
from dealer_ingest.logging.init import log_summary
from dealer_ingest.models.error_record import FILE_LEVEL_ROW, ErrorRecord
from dealer_ingest.models.file_types import file_kind_for
from dealer_ingest.models.import_job import ImportJob, JobStatus, utcnow
from dealer_ingest.models.import_result import BatchStatsAccumulator, ImportResult
from dealer_ingest.models.row_data import PeriodContext, Row
from dealer_ingest.tabular.decoder import decode
from dealer_ingest.tabular.offload import ExecutorFactory

from .chunks import ChunkAssembler
from .job_store import JobStore
from .progress import EventChannel, ProgressReporter
from .summary import render_summary_line

"""Import orchestration.

``run`` imports a job in one pass; ``run_phase`` runs one fragment of a
multi-phase import (contracts) so each invocation stays short. Every
fragment re-reads the raw bytes and re-decodes them; nothing but the job
record carries state between fragments.

Overall progress is the share of rows processed, weighted per phase:
contracts spend 0-5% on dealers, 5-50% on customers and 50-100% on
contracts. Within a fragment, ``step_pct`` tracks the phase alone.
"""

__all__ = [
    "ImportOrchestrator",
    "PHASE_WEIGHTS",
    "STEP_MILESTONES",
]

logger = logging.getLogger(__name__)

# phase -> (start %, end %) of overall progress
PHASE_WEIGHTS: dict[str, tuple[int, int]] = {
    "dealers": (0, 5),
    "customers": (5, 50),
    "contracts": (50, 100),
}
_SINGLE_PHASE = (0, 100)

STEP_MILESTONES = (25, 50, 75)


class _PhaseProgress:
    """Translates (done, total) of one phase into row progress and step percent."""

    def __init__(
        self,
        orchestrator: ImportOrchestrator,
        job_id: str,
        reporter: ProgressReporter,
        rows: int,
        phase: str,
        weights: tuple[int, int],
        *,
        track_steps: bool,
    ) -> None:
        self.orchestrator = orchestrator
        self.job_id = job_id
        self.reporter = reporter
        self.rows = rows
        self.phase = phase
        self.weights = weights
        self.track_steps = track_steps
        self._next_milestone = 0

    def __call__(self, done: int, total: int, message: str) -> None:
        fraction = done / total if total else 0.0
        lo, hi = self.weights
        processed = round(self.rows * (lo + (hi - lo) * fraction) / 100)
        self.reporter.update(processed, message)
        if not self.track_steps:
            return
        step = round(fraction * 100)
        while self._next_milestone < len(STEP_MILESTONES) and step >= STEP_MILESTONES[self._next_milestone]:
            milestone = STEP_MILESTONES[self._next_milestone]
            self._next_milestone += 1
            self.orchestrator.jobs.update(self.job_id, step_pct=milestone)
            self.orchestrator.jobs.append_debug(self.job_id, f"{self.phase}: {milestone}%")


class ImportOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        config: IngestConfig | None = None,
        *,
        jobs: JobStore | None = None,
        chunks: ChunkAssembler | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        executor_factory: ExecutorFactory | None = None,
        logs_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.config = config or IngestConfig()
        self.chunks = chunks or ChunkAssembler(store, self.config.upload, clock=clock)
        self.jobs = jobs or JobStore(
            store,
            chunks=self.chunks,
            debug_log_cap=self.config.progress.debug_log_cap,
            clock=clock,
        )
        self.clock = clock
        self.monotonic = monotonic
        self.executor_factory = executor_factory
        self.logs_dir = logs_dir or Path(self.config.logs_directory)

    # ---- shared steps --------------------------------------------------

    def load_bytes(self, job: ImportJob) -> bytes:
        """Raw bytes for ``job``; chunks are left in place until the job succeeds."""
        if job.raw_discarded:
            raise ReimportUnavailableError(
                f"source data for {job.filename} was discarded after import; upload the file again"
            )
        if job.upload_id:
            return self.chunks.finalize(job.upload_id, discard=False)
        if job.file_data is not None:
            return bytes(job.file_data)
        raise DataNotFoundError(f"no source data stored for job {job.id}")

    def _context(self, job: ImportJob, errors: ErrorLogBuffer, stats: BatchStatsAccumulator) -> ImportContext:
        return ImportContext(
            store=self.store,
            config=self.config,
            period=PeriodContext(year=job.year, month=job.month),
            job_id=job.id,
            filename=job.filename,
            clock=self.clock,
            error_log=errors,
            batch_stats=stats,
        )

    def _decode(self, job: ImportJob, importer: Importer, ctx: ImportContext,
                reporter: ProgressReporter) -> list[Row]:
        data = self.load_bytes(job)
        kind = file_kind_for(job.filename, self.config.upload.allowed_extensions)
        rows = decode(
            data,
            kind,
            importer.hints(ctx),
            heartbeat=reporter.heartbeat,
            heartbeat_interval=self.config.progress.heartbeat_seconds,
            offload=self.config.worker.decode_offload,
            executor_factory=self.executor_factory,
        )
        logger.info("decoded %d row(s) from %s", len(rows), job.filename)
        return rows

    def _summarize(self, job: ImportJob, started: float, stats: BatchStatsAccumulator) -> None:
        line = render_summary_line(job, self.monotonic() - started, stats)
        # log_summary adds its own label
        log_summary(line.removeprefix("SUMMARY "))

    def _reporter(self, job_id: str, channel: EventChannel | None) -> ProgressReporter:
        return ProgressReporter(
            self.jobs,
            job_id,
            channel=channel,
            interval=self.config.progress.write_interval_seconds,
            monotonic=self.monotonic,
        )

    def _flush_errors(self, errors: ErrorLogBuffer) -> None:
        try:
            path = errors.flush()
        except OSError as e:
            logger.warning("could not write error log: %s", e)
            return
        if path is not None:
            logger.info("row errors written to %s", path)

    def _fail(self, job_id: str, message: str, reporter: ProgressReporter, errors: ErrorLogBuffer,
              phase: str) -> ImportJob:
        logger.error("import %s failed: %s", job_id, message)
        errors.append(ErrorRecord.create(
            job_id=job_id,
            file=self.jobs.get(job_id).filename,
            phase=phase,
            row=FILE_LEVEL_ROW,
            error_type="IMPORT_FAILED",
            message=message,
        ))
        job = self.jobs.transition(
            job_id,
            JobStatus.IMPORT_FAILED,
            error_message=message,
            status_message="Import failed",
        )
        self.jobs.append_debug(job_id, f"failed: {message}")
        reporter.error(message)
        return self.jobs.get(job_id)

    def _complete(self, job_id: str, result: ImportResult, reporter: ProgressReporter,
                  import_errors: list[str], error_count: int) -> ImportJob:
        reporter.update(result.total_rows, "Import complete", force=True)
        summary = ImportResult(
            total_rows=result.total_rows,
            imported_count=result.imported_count,
            errors=import_errors,
            error_count=error_count,
        )
        job = self.jobs.transition(
            job_id,
            JobStatus.IMPORTED,
            records_imported=result.imported_count,
            import_errors=import_errors,
            error_count=error_count,
            error_message=summary.summary_message(),
            status_message="Import complete",
            step_pct=100,
        )
        if job.upload_id:
            self.chunks.discard(job.upload_id)
            job = self.jobs.update(job_id, raw_discarded=True)
        self.jobs.append_debug(job_id, f"complete: {result.imported_count} imported, {error_count} error(s)")
        reporter.done(summary)
        return self.jobs.get(job_id)

    def _begin(self, job_id: str) -> ImportJob:
        return self.jobs.transition(
            job_id,
            JobStatus.PROCESSING,
            processed_rows=0,
            records_imported=0,
            import_errors=[],
            error_count=0,
            error_message=None,
            status_message="Starting…",
            phase=None,
            step_pct=0,
            completed_phases=[],
        )

    # ---- single pass ---------------------------------------------------

    def run(self, job_id: str, channel: EventChannel | None = None) -> ImportJob:
        """Import ``job_id`` in one pass; returns the final job record.

        Failures never escape: they are recorded on the job (import_failed)
        and sent to ``channel`` as an ``error`` event.
        """
        started = self.monotonic()
        job = self._begin(job_id)
        reporter = self._reporter(job_id, channel)
        errors = ErrorLogBuffer(self.logs_dir)
        stats = BatchStatsAccumulator()
        reporter.start()
        self.jobs.append_debug(job_id, f"import started: {job.filename} ({job.file_type.value})")
        current = "decode"
        try:
            importer = get_importer(job.file_type)
            ctx = self._context(job, errors, stats)
            rows = self._decode(job, importer, ctx, reporter)
            reporter.set_total(len(rows))
            reporter.update(0, "Validating…", force=True)

            def on_phase(phase: str) -> None:
                nonlocal current
                current = phase
                weights = PHASE_WEIGHTS.get(phase, _SINGLE_PHASE) if len(importer.phases) > 1 else _SINGLE_PHASE
                ctx.on_progress = _PhaseProgress(self, job_id, reporter, len(rows), phase, weights, track_steps=False)
                self.jobs.update(job_id, phase=phase, step_pct=0)
                self.jobs.append_debug(job_id, f"{phase}: started")

            result = importer.run(rows, ctx, on_phase=on_phase)
            job = self._complete(job_id, result, reporter, result.errors, result.error_count)
        except Exception as e:
            logger.debug("import %s raised", job_id, exc_info=True)
            job = self._fail(job_id, str(e), reporter, errors, current)
        finally:
            self._flush_errors(errors)
        self._summarize(job, started, stats)
        return job

    # ---- fragmented ----------------------------------------------------

    def phases_for(self, job_id: str) -> tuple[str, ...]:
        return get_importer(self.jobs.get(job_id).file_type).phases

    def run_phase(self, job_id: str, phase: str) -> ImportJob:
        """Run one phase of ``job_id``.

        The first phase moves the job into processing; every later phase
        requires all earlier phases to be recorded as completed. The last
        phase completes the job.

        Raises:
            PhaseOrderError: unknown phase, or an earlier phase is not complete
            InvalidTransitionError: a later phase on a job that is neither processing nor
                import_failed
        """
        started = self.monotonic()
        job = self.jobs.get(job_id)
        importer = get_importer(job.file_type)
        if phase not in importer.phases:
            raise PhaseOrderError(f"{job.file_type.value} has no phase {phase!r}")
        index = importer.phases.index(phase)
        if index == 0:
            job = self._begin(job_id)
        else:
            missing = [p for p in importer.phases[:index] if p not in job.completed_phases]
            if missing:
                raise PhaseOrderError(f"phase {phase!r} cannot start before {', '.join(missing)} completed")
            if job.status is JobStatus.IMPORT_FAILED:
                job = self.jobs.transition(
                    job_id,
                    JobStatus.PROCESSING,
                    error_message=None,
                    status_message=f"Retrying {phase}…",
                )
                self.jobs.append_debug(job_id, f"{phase}: retry after failure")
            elif job.status is not JobStatus.PROCESSING:
                raise InvalidTransitionError(f"job {job_id} is {job.status.value}; phase {phase!r} cannot run")

        reporter = self._reporter(job_id, None)
        errors = ErrorLogBuffer(self.logs_dir)
        stats = BatchStatsAccumulator()
        self.jobs.update(job_id, phase=phase, step_pct=0)
        self.jobs.append_debug(job_id, f"{phase}: 0%")
        try:
            ctx = self._context(job, errors, stats)
            rows = self._decode(job, importer, ctx, reporter)
            reporter.set_total(len(rows))
            weights = PHASE_WEIGHTS.get(phase, _SINGLE_PHASE) if len(importer.phases) > 1 else _SINGLE_PHASE
            ctx.on_progress = _PhaseProgress(self, job_id, reporter, len(rows), phase, weights, track_steps=True)
            importer.validate(rows, ctx)
            result = importer.run_phase(phase, rows, ctx)
        except Exception as e:
            logger.debug("phase %s of %s raised", phase, job_id, exc_info=True)
            job = self._fail(job_id, f"{phase}: {e}", reporter, errors, phase)
            self._flush_errors(errors)
            self._summarize(job, started, stats)
            return job

        job = self.jobs.get(job_id)
        cap = self.config.progress.error_cap
        import_errors = (job.import_errors + result.errors)[:cap]
        error_count = job.error_count + result.error_count
        self.jobs.append_debug(job_id, f"{phase}: 100%")
        completed = job.completed_phases + [phase]
        if index == len(importer.phases) - 1:
            self.jobs.update(job_id, completed_phases=completed)
            job = self._complete(job_id, result, reporter, import_errors, error_count)
            self._summarize(job, started, stats)
        else:
            hi = weights[1]
            reporter.update(round(len(rows) * hi / 100), f"{phase.capitalize()} complete", force=True)
            job = self.jobs.update(
                job_id,
                completed_phases=completed,
                import_errors=import_errors,
                error_count=error_count,
                records_imported=result.imported_count,
                step_pct=100,
            )
        self._flush_errors(errors)
        return job
