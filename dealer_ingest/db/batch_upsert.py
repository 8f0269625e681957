from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from ..errors import BatchTimeoutError
from .collections import get_collection
from .document_store import BulkWriteError, DocumentStore, UpdateOne

"""Bulk upsert engine shared by every importer.

Operations are partitioned into batches of about ``batch_size``. Operations
that share a natural key always land in the same batch, in input order, so
the last row for a key wins no matter how the batches interleave. Up to ``parallelism``
batches form one wave and run concurrently on a thread pool; the wave is
given ``batch_timeout`` seconds. Per batch:

- success: every operation counts as succeeded
- BulkWriteError (some operations rejected by the store): swallowed, the
  operations the store applied count as succeeded, the rest as failed
- timeout: logged as BatchTimeoutError, the whole batch counts as failed
- any other exception propagates to the caller

After each wave ``on_batch_complete(succeeded_so_far, total)`` is invoked so
callers can persist or stream progress. Per-batch timing goes to
``metrics_callback`` as BatchMetrics.
"""

__all__ = [
    "BatchMetrics",
    "BulkUpsertResult",
    "bulk_upsert",
    "key_batches",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
MetricsCallback = Callable[["BatchMetrics"], None]

# Stored error strings per call; the counts are always complete.
_MAX_ERROR_MESSAGES = 20


@dataclass(frozen=True)
class BatchMetrics:
    """Timing of a single bulk-write batch."""
    batch_index: int
    batch_size: int  # operations submitted
    succeeded: int  # operations the store applied
    elapsed_seconds: float
    start_time: float
    end_time: float


@dataclass
class BulkUpsertResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out_batches: int = 0
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < _MAX_ERROR_MESSAGES:
            self.errors.append(message)


def key_batches(collection: str, operations: Sequence[UpdateOne], size: int) -> list[list[UpdateOne]]:
    """Batches of roughly ``size`` operations that never split a natural key.

    Operations with the same key are kept together in input order at the
    position of the key's first occurrence; filters that do not pin a key
    are batched individually.
    """
    if size <= 0:
        raise ValueError("batch size must be positive")
    spec = get_collection(collection)
    groups: dict[object, list[UpdateOne]] = {}
    for index, op in enumerate(operations):
        key = spec.key_from_filter(op.filter)
        groups.setdefault(index if key is None else key, []).append(op)
    batches: list[list[UpdateOne]] = []
    current: list[UpdateOne] = []
    for group in groups.values():
        if current and len(current) + len(group) > size:
            batches.append(current)
            current = []
        current.extend(group)
    if current:
        batches.append(current)
    return batches


def _run_batch(
    store: DocumentStore,
    collection: str,
    batch_index: int,
    batch: Sequence[UpdateOne],
    metrics_callback: MetricsCallback | None,
) -> tuple[int, list[str]]:
    """Write one batch; returns (succeeded, error messages)."""
    start_time = time.time()
    succeeded = 0
    messages: list[str] = []
    try:
        result = store.bulk_write(collection, batch)
        succeeded = result.ok_count
    except BulkWriteError as e:
        succeeded = e.result.ok_count
        messages = [f"{collection}[{batch_index}:{w.index}]: {w.message}" for w in e.write_errors]
        logger.debug("batch %d on %s: %d write error(s)", batch_index, collection, len(e.write_errors))
    finally:
        end_time = time.time()
        if metrics_callback is not None:
            metrics_callback(
                BatchMetrics(
                    batch_index=batch_index,
                    batch_size=len(batch),
                    succeeded=succeeded,
                    elapsed_seconds=end_time - start_time,
                    start_time=start_time,
                    end_time=end_time,
                )
            )
    return succeeded, messages


def bulk_upsert(
    store: DocumentStore,
    collection: str,
    operations: Sequence[UpdateOne],
    *,
    batch_size: int = 1000,
    parallelism: int = 4,
    batch_timeout: float = 60.0,
    on_batch_complete: ProgressCallback | None = None,
    metrics_callback: MetricsCallback | None = None,
) -> BulkUpsertResult:
    """Upsert ``operations`` into ``collection`` in bounded-parallel batches.

    Parameters
    ----------
    store: document store handle (shared, thread-safe)
    collection: target collection name
    operations: UpdateOne list; operations on one natural key apply in
        order, order across keys is not significant
    batch_size: operations per bulk_write call
    parallelism: maximum concurrent batches (one wave)
    batch_timeout: seconds a wave may take before unfinished batches are
        counted as failed
    on_batch_complete: called after each wave with (succeeded_so_far, total)
    metrics_callback: receives BatchMetrics for every finished batch.
        Not invoked when ``operations`` is empty.
    """
    result = BulkUpsertResult(total=len(operations))
    if not operations:
        return result
    parallelism = max(1, parallelism)
    batches = key_batches(collection, operations, batch_size)

    for wave_start in range(0, len(batches), parallelism):
        wave = list(enumerate(batches[wave_start:wave_start + parallelism], start=wave_start))
        # one pool per wave; stuck batches keep their own worker
        executor = ThreadPoolExecutor(max_workers=len(wave), thread_name_prefix=f"upsert-{collection}")
        try:
            futures: dict[Future, tuple[int, Sequence[UpdateOne]]] = {
                executor.submit(_run_batch, store, collection, idx, batch, metrics_callback): (idx, batch)
                for idx, batch in wave
            }
            done, not_done = wait(futures, timeout=batch_timeout)
            for future in sorted(done, key=lambda f: futures[f][0]):
                idx, batch = futures[future]
                succeeded, messages = future.result()
                result.succeeded += succeeded
                result.failed += len(batch) - succeeded
                for message in messages:
                    result.add_error(message)
            for future in not_done:
                idx, batch = futures[future]
                future.cancel()
                err = BatchTimeoutError(
                    f"batch {idx} on {collection} ({len(batch)} ops) exceeded {batch_timeout}s"
                )
                logger.warning("%s", err)
                result.timed_out_batches += 1
                result.failed += len(batch)
                result.add_error(str(err))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        if on_batch_complete is not None:
            on_batch_complete(result.succeeded, result.total)

    logger.debug(
        "bulk upsert %s: total=%d succeeded=%d failed=%d timed_out_batches=%d",
        collection, result.total, result.succeeded, result.failed, result.timed_out_batches,
    )
    return result
