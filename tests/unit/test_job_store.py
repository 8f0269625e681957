from __future__ import annotations

from datetime import timedelta

import pytest

from dealer_ingest.errors import InvalidTransitionError, JobNotFoundError
from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_job import JobStatus
from dealer_ingest.services.chunks import ChunkAssembler, new_upload_id
from dealer_ingest.services.job_store import JobStore


@pytest.fixture()
def jobs(store, clock):
    return JobStore(store, chunks=ChunkAssembler(store, clock=clock), debug_log_cap=3, clock=clock)


def test_create_and_get(jobs):
    job = jobs.create("dealers.csv", "dealers", file_data=b"dealer_code\nZAK0001\n")
    loaded = jobs.get(job.id)
    assert loaded.status is JobStatus.PENDING
    assert loaded.file_type is FileType.DEALER_MASTER
    assert loaded.file_data == b"dealer_code\nZAK0001\n"
    assert loaded.records_total is None


def test_get_missing(jobs):
    with pytest.raises(JobNotFoundError):
        jobs.get("nope")


def test_state_machine(jobs):
    job = jobs.create("dealers.csv", "dealers")
    with pytest.raises(InvalidTransitionError, match="pending to imported"):
        jobs.transition(job.id, JobStatus.IMPORTED)
    assert jobs.transition(job.id, JobStatus.PROCESSING).status is JobStatus.PROCESSING
    # a second worker cannot claim the same job
    with pytest.raises(InvalidTransitionError):
        jobs.transition(job.id, JobStatus.PROCESSING)
    jobs.transition(job.id, JobStatus.IMPORT_FAILED, error_message="boom")
    # retry from failure
    assert jobs.transition(job.id, JobStatus.PROCESSING).status is JobStatus.PROCESSING
    done = jobs.transition(job.id, JobStatus.IMPORTED, records_imported=3)
    assert done.records_imported == 3
    with pytest.raises(InvalidTransitionError):
        jobs.transition(job.id, JobStatus.PROCESSING)


def test_transition_on_missing_job(jobs):
    with pytest.raises(JobNotFoundError):
        jobs.transition("nope", JobStatus.PROCESSING)


def test_set_total_once(jobs):
    job = jobs.create("dealers.csv", "dealers")
    assert jobs.set_total_once(job.id, 10)
    assert not jobs.set_total_once(job.id, 99)
    assert jobs.get(job.id).records_total == 10


def test_debug_log_is_timestamped_and_capped(jobs, clock):
    job = jobs.create("dealers.csv", "dealers")
    for i in range(5):
        jobs.append_debug(job.id, f"step {i}")
        clock.advance(seconds=1)
    assert jobs.get(job.id).debug_log == ["[12:00:02] step 2", "[12:00:03] step 3", "[12:00:04] step 4"]


def test_reset_clears_progress(jobs):
    job = jobs.create("contracts.txt.csv", "contracts")
    jobs.transition(job.id, JobStatus.PROCESSING, processed_rows=50, phase="customers",
                    completed_phases=["dealers"], import_errors=["Row 1: x"], error_count=1)
    reset = jobs.reset(job.id)
    assert reset.status is JobStatus.PENDING
    assert (reset.processed_rows, reset.error_count, reset.import_errors) == (0, 0, [])
    assert reset.phase is None
    assert reset.completed_phases == []


def test_update_stamps_updated_at(jobs, clock):
    job = jobs.create("dealers.csv", "dealers")
    clock.advance(minutes=3)
    updated = jobs.update(job.id, status_message="Working")
    assert updated.updated_at - job.updated_at == timedelta(minutes=3)
    with pytest.raises(JobNotFoundError):
        jobs.update("nope", status_message="x")


def test_list_newest_first_without_bytes(jobs, clock):
    first = jobs.create("a.csv", "dealers", file_data=b"x")
    clock.advance(seconds=5)
    second = jobs.create("b.csv", "units", year=2024, month=5, file_data=b"y")
    listed = jobs.list()
    assert [j.id for j in listed] == [second.id, first.id]
    assert all(j.file_data is None for j in listed)
    assert [j.id for j in jobs.list(limit=1)] == [second.id]


def test_delete_discards_staged_chunks(jobs, store):
    upload_id = new_upload_id()
    jobs.chunks.store_chunk(upload_id, 0, b"abc")
    job = jobs.create("dealers.csv", "dealers", storage_ref=f"chunk:{upload_id}")
    assert job.upload_id == upload_id
    jobs.delete(job.id)
    assert not jobs.chunks.has_chunks(upload_id)
    with pytest.raises(JobNotFoundError):
        jobs.get(job.id)


def test_stuck_detection(jobs, clock):
    job = jobs.create("dealers.csv", "dealers")
    jobs.transition(job.id, JobStatus.PROCESSING)
    idle = jobs.create("units.csv", "units")
    assert jobs.stuck(timedelta(minutes=10)) == []
    clock.advance(minutes=11)
    assert [j.id for j in jobs.stuck(timedelta(minutes=10))] == [job.id]
    assert not JobStore.is_stuck(jobs.get(idle.id), clock(), timedelta(minutes=10))
