from __future__ import annotations

from dealer_ingest.models.import_job import ImportJob
from dealer_ingest.models.import_result import BatchStatsAccumulator

"""Summary line rendering for finished imports.

Format:
SUMMARY job={id} type={file_type} status={status} rows={total} imported={n}
errors={n} elapsed_sec={s} batches={n} avg_batch_sec={s} p95_batch_sec={s}
"""

__all__ = [
    "render_summary_line",
    "format_seconds",
]


def format_seconds(value: float) -> str:
    """Render seconds without scientific notation or a trailing ``.0``.

    >>> format_seconds(2.0)
    '2'
    >>> format_seconds(0.0001234)
    '0.000123'
    """
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.3f}".rstrip("0").rstrip(".")


def render_summary_line(
    job: ImportJob,
    elapsed_seconds: float,
    batch_stats: BatchStatsAccumulator | None = None,
) -> str:
    batches, avg_batch, p95_batch = batch_stats.get_stats() if batch_stats else (0, 0.0, 0.0)
    return (
        f"SUMMARY job={job.id} "
        f"type={job.file_type.value} "
        f"status={job.status.value} "
        f"rows={job.records_total or 0} "
        f"imported={job.records_imported} "
        f"errors={job.error_count} "
        f"elapsed_sec={format_seconds(elapsed_seconds)} "
        f"batches={batches} "
        f"avg_batch_sec={format_seconds(avg_batch)} "
        f"p95_batch_sec={format_seconds(p95_batch)}"
    )
