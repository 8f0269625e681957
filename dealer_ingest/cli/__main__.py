from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from dealer_ingest.config.loader import ConfigError, IngestConfig, load_config, load_env_file, resolve_config_path
from dealer_ingest.db import open_store
from dealer_ingest.db.document_store import DocumentStore, StoreError
from dealer_ingest.errors import IngestError
from dealer_ingest.logging.init import set_debug, setup_logging
from dealer_ingest.models.import_job import ImportJob, JobStatus
from dealer_ingest.services.chunks import new_upload_id
from dealer_ingest.services.dispatch import CeleryDispatcher
from dealer_ingest.services.progress import ProgressTracker
from dealer_ingest.services.service import IngestService

"""CLI entrypoint: ``python -m dealer_ingest.cli``.

Exit codes:
- 0: success (import completed without row errors, a non-final phase finished,
  or a non-import command)
- 2: import completed but some rows failed
- 1: fatal (config, store, decode or structural failure; import_failed)

``DISABLE_DB_CONNECT=1`` runs against an in-memory store; state then only
lives for one invocation, so combine ``upload --run`` for a dry run.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

logger = logging.getLogger("dealer_ingest.cli")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="dealer-ingest", description="Dealer portal bulk file ingestion")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--config", help="Path to the YAML config (default config/ingest.yml)")
    sub = p.add_subparsers(dest="command", required=True)

    up = sub.add_parser("upload", help="Upload a file and create a pending import job")
    up.add_argument("file", type=Path)
    up.add_argument("--type", required=True, dest="file_type")
    up.add_argument("--year", type=int)
    up.add_argument("--month", type=int)
    up.add_argument("--chunk-size", type=int, help="Send the file in chunks of N bytes")
    up.add_argument("--run", action="store_true", help="Import immediately after upload")
    up.add_argument("--stream", action="store_true", help="With --run: push-mode progress")

    imp = sub.add_parser("import", help="Run (or re-run) an import job")
    imp.add_argument("job_id")
    imp.add_argument("--stream", action="store_true", help="Push-mode progress on this terminal")
    imp.add_argument("--phase", help="Run a single phase of a multi-phase import")
    imp.add_argument("--queue", action="store_true", help="Enqueue on the Celery worker")

    sub.add_parser("list", help="List import jobs, newest first")

    show = sub.add_parser("show", help="Print a job snapshot as JSON")
    show.add_argument("job_id")

    reset = sub.add_parser("reset", help="Reset a job to pending")
    reset.add_argument("job_id")

    delete = sub.add_parser("delete", help="Delete a job and any staged chunks")
    delete.add_argument("job_id")

    sub.add_parser("purge-chunks", help="Delete expired upload chunks")

    inspect = sub.add_parser("inspect", help="Decode a file and print its columns, without writing")
    inspect.add_argument("file", type=Path)
    inspect.add_argument("--type", required=True, dest="file_type")
    inspect.add_argument("--year", type=int)
    inspect.add_argument("--month", type=int)
    return p.parse_args(argv)


def _exit_for(job: ImportJob) -> int:
    if job.status is JobStatus.PROCESSING:
        return EXIT_SUCCESS_ALL  # more phases to run
    if job.status is not JobStatus.IMPORTED:
        return EXIT_FATAL
    return EXIT_PARTIAL_FAILURE if job.error_count else EXIT_SUCCESS_ALL


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _report(job: ImportJob) -> None:
    logger.info(
        "job=%s status=%s rows=%s imported=%s errors=%s",
        job.id, job.status.value, job.records_total, job.records_imported, job.error_count,
    )
    if job.error_message:
        logger.info(job.error_message)
    for message in job.import_errors:
        logger.info("  %s", message)


def _upload(service: IngestService, args: argparse.Namespace) -> str:
    data = args.file.read_bytes()
    if not args.chunk_size:
        return service.upload_inline(args.file.name, data, args.file_type, args.year, args.month)
    upload_id = new_upload_id()
    size = args.chunk_size
    for index, start in enumerate(range(0, max(len(data), 1), size)):
        service.accept_chunk(upload_id, index, data[start:start + size])
    return service.finalize_upload(
        upload_id, args.file.name, args.file_type, args.year, args.month, total_size=len(data)
    )


def _stream(service: IngestService, config: IngestConfig, job_id: str) -> ImportJob:
    channel = service.stream_import(job_id)
    with ProgressTracker(description="Importing") as bar:
        for event in channel.events(config.progress.heartbeat_seconds):
            bar.on_event(event)
            if event is not None and event["type"] == "error":
                logger.error(event["message"])
    return service.get_job(job_id)


def _import(service: IngestService, config: IngestConfig, args: argparse.Namespace, job_id: str) -> int:
    if getattr(args, "phase", None):
        job = service.orchestrator.run_phase(job_id, args.phase)
    elif args.stream:
        job = _stream(service, config, job_id)
    else:
        task_id = service.trigger_import(job_id)
        if task_id is not None:
            print(task_id)
            return EXIT_SUCCESS_ALL
        job = service.get_job(job_id)
    _report(job)
    return _exit_for(job)


def _run_command(service: IngestService, config: IngestConfig, args: argparse.Namespace) -> int:
    if args.command == "upload":
        job_id = _upload(service, args)
        print(job_id)
        if args.run:
            return _import(service, config, args, job_id)
        return EXIT_SUCCESS_ALL
    if args.command == "import":
        return _import(service, config, args, args.job_id)
    if args.command == "list":
        for job in service.list_jobs():
            print(
                f"{job.id}  {job.status.value:<13} {job.file_type.value:<16} "
                f"{job.progress_pct:>3}%  {job.filename}"
            )
        return EXIT_SUCCESS_ALL
    if args.command == "show":
        _print_json(service.snapshot(args.job_id))
        return EXIT_SUCCESS_ALL
    if args.command == "reset":
        service.reset_job(args.job_id)
        return EXIT_SUCCESS_ALL
    if args.command == "delete":
        service.delete_job(args.job_id)
        return EXIT_SUCCESS_ALL
    if args.command == "purge-chunks":
        print(service.purge_expired_chunks())
        return EXIT_SUCCESS_ALL
    if args.command == "inspect":
        _print_json(
            service.inspect_file(args.file.name, args.file.read_bytes(), args.file_type, args.year, args.month)
        )
        return EXIT_SUCCESS_ALL
    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    if args.debug:
        set_debug(True)
        logger.debug("debug mode enabled")

    load_env_file(Path(".env"), override=True)
    try:
        config = load_config(resolve_config_path(args.config))
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    try:
        store: DocumentStore = open_store(config.database)
    except Exception as e:
        logger.error(f"store: {e}")
        return EXIT_FATAL

    dispatcher = None
    if getattr(args, "queue", False):
        dispatcher = CeleryDispatcher(fragment_phases=config.worker.fragment_phases)
    service = IngestService(store, config, dispatcher=dispatcher)
    try:
        return _run_command(service, config, args)
    except (IngestError, StoreError, ValueError, OSError) as e:
        logger.error(str(e))
        return EXIT_FATAL
    finally:
        store.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
