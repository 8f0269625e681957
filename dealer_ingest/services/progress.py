from __future__ import annotations

import json
import logging
import queue
import sys
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

from dealer_ingest.models.import_result import ImportResult

from .job_store import JobStore

"""Progress reporting for running imports.

- ProgressReporter: throttled persistence of processed/total/message on the
  job record (poll mode) plus event emission to an optional EventChannel.
- EventChannel: thread-safe event queue for push mode. Events are
  ``start``, ``progress``, then exactly one terminal ``done`` or ``error``.
  ``sse_frames`` renders them as Server-Sent Events, with ``:keep-alive``
  comments while the import is silent.
- ProgressTracker: tqdm bar for the CLI (TTY only).
"""

__all__ = [
    "EventChannel",
    "ProgressReporter",
    "ProgressTracker",
    "is_tty_enabled",
    "percent",
    "KEEP_ALIVE_FRAME",
]

logger = logging.getLogger(__name__)

KEEP_ALIVE_FRAME = ":keep-alive\n\n"
_KEEP_ALIVE = object()
_TERMINAL = frozenset({"done", "error"})


def percent(processed: int, total: int | None) -> int:
    if not total:
        return 0
    return round(min(processed, total) / total * 100)


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class EventChannel:
    """Producer/consumer queue between a running import and one listener.

    Emission after ``disconnect()`` is a no-op; the import keeps running and
    its final state lands on the job record.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[Any] = queue.Queue()
        self._disconnected = threading.Event()
        self._closed = threading.Event()

    @property
    def disconnected(self) -> bool:
        return self._disconnected.is_set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def disconnect(self) -> None:
        self._disconnected.set()

    def emit(self, event: dict[str, Any]) -> None:
        if self.disconnected or self.closed:
            return
        if event.get("type") in _TERMINAL:
            self._closed.set()
        self._queue.put(event)

    def start(self) -> None:
        self.emit({"type": "start"})

    def progress(self, processed: int, total: int | None, message: str | None = None) -> None:
        self.emit({
            "type": "progress",
            "processed": processed,
            "total": total or 0,
            "pct": percent(processed, total),
            "message": message or "",
        })

    def done(self, imported_count: int, total_count: int, errors: list[str] | None = None) -> None:
        self.emit({
            "type": "done",
            "imported_count": imported_count,
            "total_count": total_count,
            "errors": list(errors or []),
        })

    def error(self, message: str) -> None:
        self.emit({"type": "error", "message": message})

    def heartbeat(self) -> None:
        if not (self.disconnected or self.closed):
            self._queue.put(_KEEP_ALIVE)

    def events(self, idle_timeout: float = 20.0) -> Iterator[dict[str, Any] | None]:
        """Yield events until a terminal one; ``None`` marks an idle interval."""
        while not self.disconnected:
            try:
                item = self._queue.get(timeout=idle_timeout)
            except queue.Empty:
                yield None
                continue
            if item is _KEEP_ALIVE:
                yield None
                continue
            yield item
            if item.get("type") in _TERMINAL:
                return

    def sse_frames(self, idle_timeout: float = 20.0) -> Iterator[str]:
        for event in self.events(idle_timeout):
            if event is None:
                yield KEEP_ALIVE_FRAME
            else:
                yield f"data: {json.dumps(event)}\n\n"


class ProgressReporter:
    """Maps importer progress onto the job record and the event channel.

    Job writes are throttled to one per ``interval`` seconds; ``flush``
    forces the pending state out. ``records_total`` is only written once.
    """

    def __init__(
        self,
        jobs: JobStore,
        job_id: str,
        *,
        channel: EventChannel | None = None,
        interval: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jobs = jobs
        self.job_id = job_id
        self.channel = channel
        self.interval = interval
        self.monotonic = monotonic
        self.processed = 0
        self.total: int | None = None
        self.message: str | None = None
        self._last_write: float | None = None
        self._dirty = False
        self._lock = threading.Lock()

    def start(self) -> None:
        if self.channel is not None:
            self.channel.start()

    def set_total(self, total: int) -> None:
        with self._lock:
            if self.total is None:
                self.total = total
                self.jobs.set_total_once(self.job_id, total)

    def update(self, processed: int, message: str | None = None, *, force: bool = False) -> None:
        with self._lock:
            self.processed = processed
            if message is not None:
                self.message = message
            self._dirty = True
            now = self.monotonic()
            due = self._last_write is None or now - self._last_write >= self.interval
            if force or due:
                self._write(now)
        if self.channel is not None:
            self.channel.progress(processed, self.total, message)

    def _write(self, now: float) -> None:
        self.jobs.update(self.job_id, processed_rows=self.processed, status_message=self.message)
        self._last_write = now
        self._dirty = False

    def flush(self) -> None:
        with self._lock:
            if self._dirty:
                self._write(self.monotonic())

    def heartbeat(self) -> None:
        if self.channel is not None:
            self.channel.heartbeat()

    def done(self, result: ImportResult) -> None:
        self.flush()
        if self.channel is not None:
            self.channel.done(result.imported_count, result.total_rows, result.errors)

    def error(self, message: str) -> None:
        self.flush()
        if self.channel is not None:
            self.channel.error(message)


class ProgressTracker:
    """Row progress bar for a push-mode import, disabled when not on a TTY."""

    def __init__(self, description: str = "Importing") -> None:
        self.description = description
        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None = None
        if self.enabled:
            self.pbar = tqdm(total=0, desc=description, unit="row", leave=True, ncols=80, ascii=True)

    def on_event(self, event: dict[str, Any] | None) -> None:
        if not self.enabled or self.pbar is None or event is None:
            return
        if event.get("type") == "progress":
            total = event.get("total") or 0
            if total and self.pbar.total != total:
                self.pbar.total = total
            self.pbar.n = event.get("processed", 0)
            if event.get("message"):
                self.pbar.set_postfix_str(event["message"], refresh=False)
            self.pbar.refresh()

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
