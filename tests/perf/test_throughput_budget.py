from __future__ import annotations

import time

import numpy as np
import pytest

from dealer_ingest.db.collections import CONTRACTS, CUSTOMERS
from dealer_ingest.models.import_job import JobStatus
from dealer_ingest.importers.contracts import CONTRACT_COLUMNS
from dealer_ingest.tabular.decoder import DecodeHints, decode

"""Throughput budget for the contracts pipeline against the in-memory store.

The budget is lenient so it holds on shared CI runners; it catches
accidental quadratic behaviour in matching or batching, not tuning drift.
Each active contract also writes its service-record schedule (eleven
documents for the default five-year term), which the floor allows for.
"""

ROWS = 3_000
MIN_ROWS_PER_SEC = 150


@pytest.fixture()
def synthetic_export(contract_row, contracts_bytes) -> bytes:
    rng = np.random.default_rng(42)
    dealer_no = rng.integers(1, 40, ROWS)
    has_email = rng.random(ROWS) > 0.1
    rows = [
        contract_row(
            dealer_code=f"ZAK{d:04d}",
            dealer_name=f"Store {d}",
            agreement=f"A{i:07d}",
            email_address=f"owner{i}@example.com" if e else "",
            vin=f"VIN{i:014d}",
        )
        for i, (d, e) in enumerate(zip(dealer_no, has_email))
    ]
    return contracts_bytes(rows)


def test_decode_throughput(synthetic_export):
    start = time.perf_counter()
    rows = decode(synthetic_export, "csv", DecodeHints(delimiter="|", fixed_columns=CONTRACT_COLUMNS), offload=False)
    elapsed = time.perf_counter() - start
    assert len(rows) == ROWS
    assert ROWS / elapsed > 10 * MIN_ROWS_PER_SEC, f"decode too slow: {elapsed:.3f}s"


def test_contracts_import_throughput(service, store, synthetic_export, capsys):
    job_id = service.upload_inline("contracts.csv", synthetic_export, "contracts")
    start = time.perf_counter()
    service.trigger_import(job_id)
    elapsed = time.perf_counter() - start

    job = service.get_job(job_id)
    assert job.status is JobStatus.IMPORTED
    assert job.records_imported == ROWS
    assert store.count_documents(CONTRACTS) == ROWS
    assert store.count_documents(CUSTOMERS) == ROWS
    throughput = ROWS / elapsed
    assert throughput >= MIN_ROWS_PER_SEC, f"{throughput:.0f} rows/sec below budget ({elapsed:.2f}s)"
    summary = [line for line in capsys.readouterr().out.splitlines() if line.startswith("SUMMARY")]
    assert summary and "batches=" in summary[-1]
