from __future__ import annotations

import statistics
from dataclasses import dataclass, field

"""Result models for importer runs and bulk-write timing statistics."""

__all__ = [
    "ImportResult",
    "BatchStatsAccumulator",
]


@dataclass
class ImportResult:
    """Outcome of one importer pass (or one phase of a fragmented import).

    ``errors`` is capped by the importer; ``error_count`` keeps the true total.
    """
    total_rows: int = 0
    imported_count: int = 0
    errors: list[str] = field(default_factory=list)
    error_count: int = 0

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def summary_message(self) -> str | None:
        if not self.error_count:
            return None
        return f"{self.error_count} row(s) had errors"


class BatchStatsAccumulator:
    """Accumulates per-batch timing data for the job summary."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Return (total_batches, avg_batch_seconds, p95_batch_seconds)."""
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)
        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method="inclusive"
            )[18]
        return (total_batches, avg_batch_seconds, p95_batch_seconds)
