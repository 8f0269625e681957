from __future__ import annotations

from celery import Celery

from dealer_ingest.config.loader import (
    IngestConfig,
    load_config,
    load_env_file,
    resolve_broker_url,
    resolve_config_path,
    resolve_result_backend,
)

"""Celery application for background imports.

The broker comes from ``CELERY_BROKER_URL`` or the ``worker`` config
section. Start a worker with::

    celery -A dealer_ingest.worker.celery_app worker --loglevel=INFO
"""

__all__ = [
    "celery",
    "get_config",
]

load_env_file()
_config = load_config(resolve_config_path())


def get_config() -> IngestConfig:
    return _config


celery = Celery(
    "dealer_ingest",
    broker=resolve_broker_url(_config.worker),
    backend=resolve_result_backend(_config.worker),
    include=["dealer_ingest.worker.tasks"],
)

celery.conf.update(
    task_track_started=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)

if __name__ == "__main__":
    import sys
    argv = ["worker"] + sys.argv[1:]
    celery.worker_main(argv)
