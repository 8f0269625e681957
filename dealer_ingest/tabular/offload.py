from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Executor, ProcessPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field

from dealer_ingest.errors import DecodeError

from .xlsx_fast import SheetTable, read_workbook

"""Runs the fast spreadsheet reader in a worker process.

Message contract (all picklable):

- input:  WorkbookRequest(buffer, sheet_selector)
- output: WorkbookResult(sheets) or WorkbookFailure(message, offset, sheet)

The caller blocks in ``heartbeat_interval`` slices and calls ``heartbeat``
between slices, so a waiting client still sees liveness during a long
decode. Any failure (decode error, broken pool, unexpected exception)
comes back as a WorkbookFailure; the caller then uses the fallback reader.
"""

__all__ = [
    "WorkbookRequest",
    "WorkbookResult",
    "WorkbookFailure",
    "decode_workbook_job",
    "run_offloaded",
]

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[], Executor]


@dataclass(frozen=True)
class WorkbookRequest:
    buffer: bytes
    sheet_selector: str | None = None


@dataclass(frozen=True)
class WorkbookResult:
    sheets: list[SheetTable] = field(default_factory=list)


@dataclass(frozen=True)
class WorkbookFailure:
    message: str
    offset: int | None = None
    sheet: str | None = None

    def to_error(self) -> DecodeError:
        return DecodeError(self.message, offset=self.offset, sheet=self.sheet)


def decode_workbook_job(request: WorkbookRequest) -> WorkbookResult | WorkbookFailure:
    """Worker entry point; never raises."""
    try:
        return WorkbookResult(sheets=read_workbook(request.buffer, request.sheet_selector))
    except DecodeError as e:
        return WorkbookFailure(message=str(e), offset=e.offset, sheet=e.sheet)
    except Exception as e:  # noqa: BLE001 - every worker failure goes back as data
        return WorkbookFailure(message=f"{type(e).__name__}: {e}")


def _default_executor() -> Executor:
    return ProcessPoolExecutor(max_workers=1)


def run_offloaded(
    request: WorkbookRequest,
    *,
    heartbeat: Callable[[], None] | None = None,
    heartbeat_interval: float = 20.0,
    executor_factory: ExecutorFactory | None = None,
) -> WorkbookResult | WorkbookFailure:
    executor = (executor_factory or _default_executor)()
    try:
        future = executor.submit(decode_workbook_job, request)
        while True:
            try:
                return future.result(timeout=heartbeat_interval)
            except FutureTimeout:
                if heartbeat is not None:
                    heartbeat()
            except Exception as e:  # noqa: BLE001 - broken pool etc.
                logger.warning("offloaded workbook decode crashed: %s", e)
                return WorkbookFailure(message=f"worker failed: {e}")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
