from __future__ import annotations

import pytest

from dealer_ingest.db.collections import MONTHLY_STATS
from dealer_ingest.models.import_job import JobStatus

"""Monthly stats sources through the service, streamed and inline."""

pytestmark = pytest.mark.integration


@pytest.fixture()
def dealers(add_dealer):
    return {
        "acura": add_dealer("ZAK0001", "Acura of Peoria"),
        "kia": add_dealer("ZAK0666", "Kia of Pekin", dme_aliases=["Pekin North"]),
    }


def _stats(store, dealer_id, year, month):
    return store.find_one(MONTHLY_STATS, {"dealer_id": dealer_id, "year": year, "month": month})["stats"]


def test_units_workbook_streamed(service, store, dealers, xlsx_bytes):
    data = xlsx_bytes({
        "Jan 2024": [["Units Report", None, None], ["Dealership", "New", "Used"], ["Acura of Peoria", 3, 2]],
        "Feb 2024": [["Dealership", "New", "Used"], ["Acura of Peoria", 5, 1], ["Kia of Pekin", 2, 2]],
    })
    job_id = service.upload_inline("units.xlsx", data, "units")
    events = [e for e in service.stream_import(job_id).events(idle_timeout=2) if e]

    assert events[-1]["type"] == "done"
    assert events[-1]["imported_count"] == 3
    assert service.get_job(job_id).status is JobStatus.IMPORTED
    assert _stats(store, dealers["acura"], 2024, 1)["units"] == 5
    assert _stats(store, dealers["kia"], 2024, 2)["units"] == 4


def test_sources_share_one_monthly_document(service, store, dealers):
    uploads = [
        ("billing.csv", "billing", b"Zaktek Billing Name,Minimum,Zaktek Billing\nKia of Pekin (666),$250.00,$900.00\n"),
        ("dme.csv", "campaign_results", b"DME Name,List,ROs,Response\nPekin North,100,10,5\n"),
        ("zie.csv", "zie", b"Dealer Code,Exterior Units,Interior Units\nZAK0666,4,1\n"),
    ]
    for filename, file_type, data in uploads:
        job_id = service.upload_inline(filename, data, file_type, year=2024, month=3)
        service.trigger_import(job_id)
        assert service.get_job(job_id).status is JobStatus.IMPORTED

    assert store.count_documents(MONTHLY_STATS) == 1
    stats = _stats(store, dealers["kia"], 2024, 3)
    assert stats["zaktek_billing"] == 900.0
    assert stats["response_rate"] == pytest.approx(5.0)
    assert stats["exterior_units"] == 4
