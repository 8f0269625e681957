from __future__ import annotations

import re

import pytest

from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_job import ImportJob, JobStatus
from dealer_ingest.models.import_result import BatchStatsAccumulator
from dealer_ingest.services.summary import format_seconds, render_summary_line

"""Unit tests for the SUMMARY line rendered at the end of every import."""

SUMMARY_PATTERN = re.compile(
    r"^SUMMARY\s+job=(\S+)\s+type=([a-z_]+)\s+status=([a-z_]+)\s+rows=([0-9]+)\s+"
    r"imported=([0-9]+)\s+errors=([0-9]+)\s+elapsed_sec=([0-9]+\.?[0-9]*)\s+"
    r"batches=([0-9]+)\s+avg_batch_sec=([0-9]+\.?[0-9]*)\s+p95_batch_sec=([0-9]+\.?[0-9]*)$"
)


def _job(**kwargs) -> ImportJob:
    base = dict(id="job-1", filename="dealers.csv", file_type=FileType.DEALER_MASTER)
    base.update(kwargs)
    return ImportJob(**base)


def test_render_summary_line_success():
    job = _job(status=JobStatus.IMPORTED, records_total=1000, records_imported=1000)
    stats = BatchStatsAccumulator()
    for t in (0.5, 0.5, 1.0):
        stats.add_batch_time(t)

    summary_line = render_summary_line(job, 2.0, stats)

    match = SUMMARY_PATTERN.match(summary_line)
    assert match, f"SUMMARY line should match regex: {summary_line}"
    assert match.group(1) == "job-1"
    assert match.group(2) == "dealers"
    assert match.group(3) == "imported"
    assert match.group(4) == "1000"
    assert match.group(7) == "2"  # integer elapsed renders without decimals
    assert match.group(8) == "3"


def test_render_summary_line_failed_job_without_total():
    job = _job(file_type=FileType.CONTRACTS, status=JobStatus.IMPORT_FAILED, error_count=4)

    summary_line = render_summary_line(job, 0.84)

    assert summary_line == (
        "SUMMARY job=job-1 type=contracts status=import_failed rows=0 imported=0 errors=4 "
        "elapsed_sec=0.84 batches=0 avg_batch_sec=0 p95_batch_sec=0"
    )


def test_render_summary_line_handles_very_small_elapsed_time():
    summary_line = render_summary_line(_job(status=JobStatus.IMPORTED), 0.00005)
    assert SUMMARY_PATTERN.match(summary_line)
    assert "e-" not in summary_line
    assert "elapsed_sec=0.00005" in summary_line


@pytest.mark.parametrize(
    "value, text",
    [(0, "0"), (2.0, "2"), (1.5, "1.5"), (66.666666, "66.667"), (0.0001234, "0.000123"), (0.00005, "0.00005")],
)
def test_format_seconds(value, text):
    assert format_seconds(value) == text


def test_batch_stats():
    stats = BatchStatsAccumulator()
    assert stats.get_stats() == (0, 0.0, 0.0)
    stats.add_batch_time(0.25)
    assert stats.get_stats() == (1, 0.25, 0.25)
    for _ in range(19):
        stats.add_batch_time(0.25)
    stats.add_batch_time(5.0)
    total, avg, p95 = stats.get_stats()
    assert total == 21
    assert avg == pytest.approx((20 * 0.25 + 5.0) / 21)
    assert 0.25 <= p95 <= 5.0
