from __future__ import annotations

import pytest

from dealer_ingest.db.collections import CONTRACTS, CUSTOMERS, DEALERS, UPLOAD_CHUNKS, VEHICLES
from dealer_ingest.errors import ReimportUnavailableError
from dealer_ingest.models.import_job import JobStatus
from dealer_ingest.services.chunks import new_upload_id

"""Contracts export uploaded in chunks and imported as three fragments."""

pytestmark = pytest.mark.integration


def _upload(service, data: bytes, size: int = 64) -> str:
    upload_id = new_upload_id()
    for index, start in enumerate(range(0, len(data), size)):
        service.accept_chunk(upload_id, index, data[start:start + size])
    return service.finalize_upload(upload_id, "contracts.csv", "contracts", total_size=len(data))


@pytest.fixture()
def export(contract_row, contracts_bytes) -> bytes:
    rows = [
        contract_row(),
        contract_row(agreement="A1001", vin="2hgcm82633a004353"),
        contract_row(dealer_code="ZAK0002", dealer_name="Honda of Joliet", agreement="A2000",
                     email_address="", vin="3hgcm82633a004354"),
        contract_row(agreement="", vin=""),
    ]
    return contracts_bytes(rows)


def test_contracts_chunked_fragmented_import(service, store, export):
    job_id = _upload(service, export)
    assert service.trigger_import(job_id) is None

    job = service.get_job(job_id)
    assert job.status is JobStatus.IMPORTED
    assert job.completed_phases == ["dealers", "customers", "contracts"]
    assert job.records_imported == 3
    assert job.error_count == 1
    assert job.progress_pct == 100
    assert job.raw_discarded
    assert store.count_documents(UPLOAD_CHUNKS) == 0

    assert store.count_documents(DEALERS) == 2
    assert store.count_documents(CUSTOMERS) == 2
    assert store.count_documents(CONTRACTS) == 3
    assert store.count_documents(VEHICLES) == 3

    contract = store.find_one(CONTRACTS, {"agreement_id": "A1000-01"})
    customer = store.find_one(CUSTOMERS, {"email": "jane.doe@example.com"})
    dealer = store.find_one(DEALERS, {"dealer_code": "ZAK0001"})
    assert contract["customer_id"] == customer["_id"]
    assert contract["dealer_id"] == dealer["_id"]
    assert store.find_one(CUSTOMERS, {"email": "a2000-01@noemail.portal.invalid"}) is not None

    with pytest.raises(ReimportUnavailableError):
        service.trigger_import(job_id)


def test_contracts_import_is_idempotent(service, store, export):
    first = _upload(service, export)
    service.trigger_import(first)
    counts = {c: store.count_documents(c) for c in (DEALERS, CUSTOMERS, CONTRACTS, VEHICLES)}

    second = _upload(service, export, size=100)
    service.trigger_import(second)
    assert service.get_job(second).records_imported == 3
    assert {c: store.count_documents(c) for c in counts} == counts
