from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from dealer_ingest.config.loader import IngestConfig
from dealer_ingest.db.batch_upsert import BatchMetrics, BulkUpsertResult, bulk_upsert
from dealer_ingest.db.collections import MONTHLY_STATS
from dealer_ingest.db.document_store import DocumentStore, UpdateOne
from dealer_ingest.errors import StructuralImportError
from dealer_ingest.logging.error_log import ErrorLogBuffer
from dealer_ingest.models.error_record import FILE_LEVEL_ROW, ErrorRecord
from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_result import BatchStatsAccumulator, ImportResult
from dealer_ingest.models.import_job import utcnow
from dealer_ingest.models.row_data import MONTH_KEY, YEAR_KEY, PeriodContext, Row
from dealer_ingest.tabular.decoder import DecodeHints

"""Importer building blocks.

- SourceSchema / ColumnBinding: per-source header aliases resolved once
  against the decoded header, then used to project every row into a fixed
  shape.
- RowErrorLog: capped row-error messages with a complete count.
- ImportContext: store handle, config, period and progress hooks for one
  importer pass.
- Importer: the contract every per-source importer implements.
"""

__all__ = [
    "SourceSchema",
    "ColumnBinding",
    "RowErrorLog",
    "ImportContext",
    "Importer",
    "StatsImporter",
    "ProgressHook",
]

logger = logging.getLogger(__name__)

# (done, total, message)
ProgressHook = Callable[[int, int, str], None]


@dataclass(frozen=True)
class ColumnBinding:
    """Logical field -> concrete decoded column key."""
    columns: Mapping[str, str]
    fields: tuple[str, ...] = ()
    missing: tuple[str, ...] = ()

    def has(self, logical: str) -> bool:
        return logical in self.columns

    def project(self, row: Row) -> dict[str, str]:
        out = {}
        for logical in self.fields:
            column = self.columns.get(logical)
            out[logical] = (row.get(column) or "").strip() if column else ""
        for key in (YEAR_KEY, MONTH_KEY):
            if key in row:
                out[key] = row[key]
        return out


@dataclass(frozen=True)
class SourceSchema:
    """Ordered header aliases per logical field (aliases are normalized keys)."""
    fields: Mapping[str, tuple[str, ...]]
    required: tuple[str, ...] = ()

    def bind(self, header: Iterable[str]) -> ColumnBinding:
        present = set(header)
        columns: dict[str, str] = {}
        for logical, aliases in self.fields.items():
            for alias in (logical, *aliases):
                if alias in present:
                    columns[logical] = alias
                    break
        missing = tuple(f for f in self.required if f not in columns)
        return ColumnBinding(columns=columns, fields=tuple(self.fields), missing=missing)


class RowErrorLog:
    """Row-error messages capped at ``cap``; ``count`` is never capped."""

    def __init__(self, cap: int = 20) -> None:
        self.cap = cap
        self.messages: list[str] = []
        self.count = 0

    def add(self, message: str) -> None:
        self.count += 1
        if len(self.messages) < self.cap:
            self.messages.append(message)

    def add_bulk(self, result: BulkUpsertResult) -> None:
        self.count += result.failed
        for message in result.errors:
            if len(self.messages) >= self.cap:
                break
            self.messages.append(message)

    def to_result(self, total_rows: int, imported: int) -> ImportResult:
        return ImportResult(
            total_rows=total_rows,
            imported_count=imported,
            errors=list(self.messages),
            error_count=self.count,
        )


@dataclass
class ImportContext:
    store: DocumentStore
    config: IngestConfig = field(default_factory=IngestConfig)
    period: PeriodContext = field(default_factory=PeriodContext)
    job_id: str = ""
    filename: str = ""
    clock: Callable[[], datetime] = utcnow
    on_progress: ProgressHook | None = None
    error_log: ErrorLogBuffer | None = None
    batch_stats: BatchStatsAccumulator | None = None

    def now(self) -> datetime:
        return self.clock()

    def progress(self, done: int, total: int, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(done, total, message)

    def new_error_log(self) -> RowErrorLog:
        return RowErrorLog(cap=self.config.progress.error_cap)

    def record(self, phase: str, row: int, error_type: str, message: str) -> None:
        if self.error_log is not None:
            self.error_log.append(
                ErrorRecord.create(
                    job_id=self.job_id,
                    file=self.filename,
                    phase=phase,
                    row=row,
                    error_type=error_type,
                    message=message,
                )
            )

    def _on_metrics(self, metrics: BatchMetrics) -> None:
        if self.batch_stats is not None:
            self.batch_stats.add_batch_time(metrics.elapsed_seconds)

    def upsert(self, collection: str, operations: Sequence[UpdateOne], *, label: str, phase: str) -> BulkUpsertResult:
        bulk = self.config.bulk

        def on_batch(done: int, total: int) -> None:
            self.progress(done, total, f"{label}: {done:,} / {total:,}")

        result = bulk_upsert(
            self.store,
            collection,
            operations,
            batch_size=bulk.batch_size,
            parallelism=bulk.parallelism,
            batch_timeout=bulk.batch_timeout_seconds,
            on_batch_complete=on_batch,
            metrics_callback=self._on_metrics,
        )
        for message in result.errors:
            self.record(phase, FILE_LEVEL_ROW, "WRITE_REJECTED", message)
        return result


class Importer:
    """One importer per source file type.

    ``run(rows, ctx)`` validates, then executes every phase in order.
    ``run_phase`` runs a single one so a fragmented import can spread them
    across invocations; its caller runs ``validate`` first.
    Bad rows are recorded and skipped; structural problems raise
    StructuralImportError from ``validate`` before anything is written.
    """

    file_type: ClassVar[FileType]
    phases: ClassVar[tuple[str, ...]] = ("import",)
    schema: ClassVar[SourceSchema]

    def hints(self, ctx: ImportContext) -> DecodeHints:
        return DecodeHints(title_scan_rows=ctx.config.rules.title_scan_rows)

    def bind(self, rows: Sequence[Row]) -> ColumnBinding:
        binding = self.schema.bind(rows[0].keys() if rows else ())
        if binding.missing:
            raise StructuralImportError(
                f"{self.file_type.value}: missing required column(s): {', '.join(binding.missing)}"
            )
        return binding

    def validate(self, rows: Sequence[Row], ctx: ImportContext) -> None:
        if rows:
            self.bind(rows)

    def run_phase(self, phase: str, rows: Sequence[Row], ctx: ImportContext) -> ImportResult:
        raise NotImplementedError

    def run(
        self,
        rows: Sequence[Row],
        ctx: ImportContext,
        *,
        on_phase: Callable[[str], None] | None = None,
    ) -> ImportResult:
        self.validate(rows, ctx)
        merged = RowErrorLog(cap=ctx.config.progress.error_cap)
        imported = 0
        for phase in self.phases:
            if on_phase is not None:
                on_phase(phase)
            result = self.run_phase(phase, rows, ctx)
            for message in result.errors:
                merged.add(message)
            merged.count += result.error_count - len(result.errors)
            imported = result.imported_count
        return merged.to_result(len(rows), imported)

    def row_error(self, log: RowErrorLog, ctx: ImportContext, phase: str, row_no: int, message: str) -> None:
        log.add(f"Row {row_no}: {message}")
        ctx.record(phase, row_no, "ROW_ERROR", message)


class StatsImporter(Importer):
    """Base for report sources that write (dealer, year, month) statistics."""

    def validate(self, rows: Sequence[Row], ctx: ImportContext) -> None:
        super().validate(rows, ctx)
        if not ctx.period.complete and any(ctx.period.for_row(r) is None for r in rows):
            raise StructuralImportError(
                f"{self.file_type.value}: no reporting period; set year and month on the upload"
            )

    def load_dealers(self, ctx: ImportContext) -> list[dict[str, Any]]:
        return ctx.store.find("dealers", {"active": True})

    @staticmethod
    def stats_op(dealer_id: str, period: tuple[int, int], values: Mapping[str, Any]) -> UpdateOne:
        year, month = period
        return UpdateOne(
            filter={"dealer_id": dealer_id, "year": year, "month": month},
            update={"$set": {f"stats.{k}": v for k, v in values.items()}},
            upsert=True,
        )

    def write_stats(
        self,
        ops: Sequence[UpdateOne],
        log: RowErrorLog,
        ctx: ImportContext,
        phase: str,
    ) -> int:
        result = ctx.upsert(MONTHLY_STATS, ops, label="Stats", phase=phase)
        log.add_bulk(result)
        return result.succeeded
