from __future__ import annotations

import logging
from typing import Any

from celery.exceptions import Ignore
from celery.signals import worker_process_init, worker_process_shutdown

from dealer_ingest.config.loader import IngestConfig
from dealer_ingest.db import open_store
from dealer_ingest.db.document_store import DocumentStore
from dealer_ingest.logging.init import setup_logging
from dealer_ingest.models.import_job import ImportJob, JobStatus
from dealer_ingest.services.orchestrator import ImportOrchestrator

from .celery_app import celery, get_config

"""Import tasks.

Each worker process owns one store handle, opened on
``worker_process_init``. A failed phase stops its chain: the task is
marked ignored so the next phase is never started.
"""

__all__ = [
    "process_import",
    "run_import_phase",
    "configure_store",
]

logger = logging.getLogger(__name__)

_state: dict[str, Any] = {"store": None, "config": None}

_PHASE_SOFT_LIMIT = get_config().worker.phase_time_limit_seconds


def configure_store(store: DocumentStore | None, config: IngestConfig | None = None) -> None:
    """Install the store used by tasks (worker start-up, tests)."""
    _state["store"] = store
    _state["config"] = config


@worker_process_init.connect
def _open_store(**kwargs: Any) -> None:
    setup_logging()
    config = get_config()
    configure_store(open_store(config.database), config)
    logger.info("worker store ready")


@worker_process_shutdown.connect
def _close_store(**kwargs: Any) -> None:
    store = _state["store"]
    if store is not None:
        store.close()
        configure_store(None)


def _orchestrator() -> ImportOrchestrator:
    config = _state["config"] or get_config()
    if _state["store"] is None:
        configure_store(open_store(config.database), config)
    return ImportOrchestrator(_state["store"], config)


def _outcome(job: ImportJob) -> dict[str, Any]:
    return {
        "job_id": job.id,
        "status": job.status.value,
        "phase": job.phase,
        "records_imported": job.records_imported,
        "error_count": job.error_count,
    }


@celery.task(name="dealer_ingest.process_import")
def process_import(job_id: str) -> dict[str, Any]:
    job = _orchestrator().run(job_id)
    return _outcome(job)


@celery.task(
    bind=True,
    name="dealer_ingest.run_import_phase",
    soft_time_limit=_PHASE_SOFT_LIMIT,
    time_limit=_PHASE_SOFT_LIMIT + 30,
)
def run_import_phase(self: Any, job_id: str, phase: str) -> dict[str, Any]:
    job = _orchestrator().run_phase(job_id, phase)
    if job.status is JobStatus.IMPORT_FAILED:
        logger.warning("job %s failed in phase %s; remaining phases skipped", job_id, phase)
        raise Ignore()
    return _outcome(job)
