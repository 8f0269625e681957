from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from dealer_ingest.models.import_job import JobStatus

from .orchestrator import ImportOrchestrator

"""Dispatchers hand a pending job to whatever runs imports.

InlineDispatcher runs it synchronously in the calling process (CLI, tests).
CeleryDispatcher enqueues it on the worker; multi-phase imports become a
chain of one task per phase when fragmentation is enabled.
"""

__all__ = [
    "Dispatcher",
    "InlineDispatcher",
    "CeleryDispatcher",
]

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    def dispatch(self, job_id: str, phases: Sequence[str]) -> str | None: ...


class InlineDispatcher:
    def __init__(self, orchestrator: ImportOrchestrator, *, fragment_phases: bool = True) -> None:
        self.orchestrator = orchestrator
        self.fragment_phases = fragment_phases

    def dispatch(self, job_id: str, phases: Sequence[str]) -> str | None:
        if self.fragment_phases and len(phases) > 1:
            for phase in phases:
                job = self.orchestrator.run_phase(job_id, phase)
                if job.status is JobStatus.IMPORT_FAILED:
                    break
        else:
            self.orchestrator.run(job_id)
        return None


class CeleryDispatcher:
    """Returns the Celery task id of the (last) enqueued task."""

    def __init__(self, *, fragment_phases: bool = True) -> None:
        self.fragment_phases = fragment_phases

    def dispatch(self, job_id: str, phases: Sequence[str]) -> str | None:
        from celery import chain

        from dealer_ingest.worker.tasks import process_import, run_import_phase

        if self.fragment_phases and len(phases) > 1:
            result = chain(*(run_import_phase.si(job_id, phase) for phase in phases)).apply_async()
        else:
            result = process_import.delay(job_id)
        logger.info("job %s queued as task %s", job_id, result.id)
        return result.id
