from __future__ import annotations

from dataclasses import replace
from datetime import datetime

import pytest

from dealer_ingest.db.collections import CONTRACTS, CUSTOMERS, DEALERS, SERVICE_RECORDS, VEHICLES
from dealer_ingest.errors import PhaseOrderError, StructuralImportError
from dealer_ingest.importers.base import ImportContext
from dealer_ingest.importers.contracts import (
    ContractsImporter,
    agreement_id,
    contract_status,
    customer_email,
    plan_for_coverage,
)
from dealer_ingest.tabular.decoder import decode

NOW = datetime(2024, 6, 15, 12, 0, 0)


@pytest.fixture()
def importer():
    return ContractsImporter()


@pytest.fixture()
def ctx(store, config, clock):
    return ImportContext(store=store, config=config, clock=clock, job_id="job-1", filename="contracts.txt")


@pytest.mark.parametrize(
    "cancel, expires, expected",
    [
        ("", "06/16/2024", "active"),
        ("", "06/14/2024", "expired"),
        ("", "2024-06-15T12:00:00", "active"),
        ("", "2024-06-15T11:59:59", "expired"),
        ("", "", "active"),
        ("03/01/2024", "01/01/2030", "cancelled"),
        ("03/01/2024", "01/01/2020", "cancelled"),
        ("00/00/0000", "01/01/2030", "active"),
        ("0", "01/01/2020", "expired"),
    ],
)
def test_contract_status(cancel, expires, expected):
    assert contract_status(cancel, expires, NOW) == expected


@pytest.mark.parametrize(
    "coverage, plan",
    [
        ("Ultimate", "Ultimate"),
        ("  ULT   INT ", "Ultimate with Interior"),
        ("b/i", "Basic with Interior"),
        ("Exterior", "Basic"),
        ("mystery plan", "Basic"),
        (None, "Basic"),
    ],
)
def test_plan_for_coverage(coverage, plan):
    assert plan_for_coverage(coverage) == plan


def test_agreement_id_and_customer_email():
    fields = {"agreement": "a1000", "agreement_suffix": "01", "email_address": ""}
    assert agreement_id(fields) == "A1000-01"
    assert customer_email(fields, "noemail.portal.invalid") == "a1000-01@noemail.portal.invalid"
    assert customer_email({**fields, "email_address": "not-an-email"}, "x.invalid") == "a1000-01@x.invalid"
    assert customer_email({**fields, "email_address": "Jane@Example.com"}, "x.invalid") == "jane@example.com"


def test_full_import(importer, ctx, store, contract_row):
    rows = [
        contract_row(),
        contract_row(agreement="A1001", vin="5J6RW2H89LL000001", coverage="basic w/ interior"),
    ]
    result = importer.run(rows, ctx)

    assert (result.total_rows, result.imported_count, result.error_count) == (2, 2, 0)
    assert store.count_documents(DEALERS) == 1
    assert store.count_documents(CUSTOMERS) == 1
    assert store.count_documents(VEHICLES) == 2

    dealer = store.find_one(DEALERS, {"dealer_code": "ZAK0001"})
    customer = store.find_one(CUSTOMERS, {"email": "jane.doe@example.com"})
    assert customer["name"] == "Jane Doe"
    assert customer["phone"] == "3095550100"
    assert customer["role"] == "customer"

    contract = store.find_one(CONTRACTS, {"agreement_id": "A1000-01"})
    assert contract["dealer_id"] == dealer["_id"]
    assert contract["customer_id"] == customer["_id"]
    assert contract["plan"] == "Ultimate"
    assert contract["status"] == "active"
    assert (contract["begins_at"], contract["ends_at"]) == ("2023-01-15", "2028-01-15")
    assert contract["vin"] == "1HGCM82633A004352"
    assert (contract["begin_mileage"], contract["expiration_mileage"], contract["deductible"]) == (12, 75000, 0.0)
    assert contract["home_kit"] is False
    assert store.find_one(CONTRACTS, {"agreement_id": "A1001-01"})["plan"] == "Basic with Interior"

    vehicle = store.find_one(VEHICLES, {"vin": "1HGCM82633A004352"})
    assert (vehicle["make"], vehicle["model"], vehicle["year"]) == ("Acura", "MDX", 2022)
    assert vehicle["coverage_type"] == "both"
    assert vehicle["active"] is True


def test_first_row_wins_per_dealer(importer, ctx, store, contract_row):
    rows = [contract_row(), contract_row(agreement="A2000", dealer_name="Some Other Name")]
    importer.run_phase("dealers", rows, ctx)
    assert store.find_one(DEALERS, {"dealer_code": "ZAK0001"})["name"] == "Acura of Peoria"


def test_missing_email_gets_placeholder_customer(importer, ctx, store, contract_row):
    importer.run([contract_row(agreement="B77", agreement_suffix="0a", email_address="")], ctx)
    customer = store.find_one(CUSTOMERS, {"email": "b77-0a@noemail.portal.invalid"})
    assert customer is not None
    assert store.find_one(CONTRACTS, {"agreement_id": "B77-0A"})["customer_id"] == customer["_id"]


def test_cancelled_and_expired_vehicles_are_inactive(importer, ctx, store, contract_row):
    rows = [
        contract_row(agreement="C1", vin="VIN000000000000C1", cancel_post_date="02/01/2024"),
        contract_row(agreement="E1", vin="VIN000000000000E1", expiration_date="01/01/2024"),
    ]
    importer.run(rows, ctx)
    assert store.find_one(CONTRACTS, {"agreement_id": "C1-01"})["status"] == "cancelled"
    assert store.find_one(CONTRACTS, {"agreement_id": "E1-01"})["status"] == "expired"
    assert store.find_one(VEHICLES, {"vin": "VIN000000000000C1"})["active"] is False


def test_active_contracts_get_an_application_schedule(importer, ctx, store, contract_row):
    rows = [
        contract_row(),
        contract_row(agreement="C1", vin="VIN000000000000C1", cancel_post_date="02/01/2024"),
        contract_row(agreement="E1", vin="VIN000000000000E1", expiration_date="01/01/2024"),
    ]
    result = importer.run(rows, ctx)
    assert result.error_count == 0

    contract = store.find_one(CONTRACTS, {"agreement_id": "A1000-01"})
    records = store.find(SERVICE_RECORDS, {}, sort=[("scheduled_date", 1)])
    assert [r["scheduled_date"] for r in records] == [
        f"{year}-{month}-15" for year in range(2023, 2028) for month in ("01", "07")
    ] + ["2028-01-15"]
    assert {r["contract_id"] for r in records} == {contract["_id"]}
    first = records[0]
    assert (first["customer_id"], first["dealer_id"]) == (contract["customer_id"], contract["dealer_id"])
    assert (first["type"], first["status"], first["reminder_sent"]) == ("both", "scheduled", False)


def test_reimport_keeps_service_record_progress(importer, ctx, store, contract_row):
    rows = [contract_row(coverage="Basic")]
    importer.run(rows, ctx)
    contract_id = store.find_one(CONTRACTS, {"agreement_id": "A1000-01"})["_id"]
    store.find_one_and_update(
        SERVICE_RECORDS,
        {"contract_id": contract_id, "scheduled_date": "2023-01-15"},
        {"$set": {"status": "completed", "completed_date": "2023-01-20"}},
    )
    importer.run(rows, ctx)
    assert store.count_documents(SERVICE_RECORDS) == 11
    done = store.find_one(SERVICE_RECORDS, {"contract_id": contract_id, "scheduled_date": "2023-01-15"})
    assert (done["status"], done["type"]) == ("completed", "exterior")


def test_phases_run_independently(importer, ctx, store, contract_row):
    rows = [contract_row()]
    importer.run_phase("dealers", rows, ctx)
    assert store.count_documents(CUSTOMERS) == 0
    importer.run_phase("customers", rows, ctx)
    assert store.count_documents(CONTRACTS) == 0
    result = importer.run_phase("contracts", rows, ctx)
    assert result.imported_count == 1
    assert store.find_one(CONTRACTS, {"agreement_id": "A1000-01"})["dealer_id"]


def test_unresolved_references_fail_the_contract_write(importer, ctx, store, contract_row):
    result = importer.run_phase("contracts", [contract_row()], ctx)
    assert result.imported_count == 0
    assert result.error_count == 1
    assert "customer_id" in result.errors[0]
    assert store.count_documents(CONTRACTS) == 0


def test_reimport_is_idempotent(importer, ctx, store, contract_row):
    rows = [contract_row(), contract_row(agreement="A1001", vin="")]
    first = importer.run(rows, ctx)
    second = importer.run(rows, ctx)
    assert first.imported_count == second.imported_count == 2
    assert store.count_documents(CONTRACTS) == 2
    assert store.count_documents(CUSTOMERS) == 1
    assert store.count_documents(VEHICLES) == 1


def test_row_without_agreement_is_skipped(importer, ctx, store, contract_row):
    result = importer.run([contract_row(), contract_row(agreement="")], ctx)
    assert result.imported_count == 1
    assert result.errors == ["Row 2: missing agreement or agreement_suffix"]


def test_distinct_dealer_ceiling(importer, store, config, clock, contract_row):
    tight = replace(config, rules=replace(config.rules, max_distinct_dealer_codes=2))
    ctx = ImportContext(store=store, config=tight, clock=clock)
    rows = [contract_row(dealer_code=f"ZAK000{i}", agreement=f"A{i}") for i in range(3)]
    with pytest.raises(StructuralImportError, match="3 distinct dealer codes exceeds the ceiling of 2"):
        importer.run(rows, ctx)
    assert store.count_documents(DEALERS) == 0


def test_unknown_phase(importer, ctx, contract_row):
    with pytest.raises(PhaseOrderError):
        importer.run_phase("vehicles", [contract_row()], ctx)


@pytest.mark.parametrize("header", [False, True])
def test_decodes_the_pipe_export(importer, ctx, store, contract_row, contracts_bytes, header):
    data = contracts_bytes([contract_row(), contract_row(agreement="A1001")], header=header)
    rows = decode(data, "csv", importer.hints(ctx))
    assert len(rows) == 2
    assert rows[0]["agreement"] == "A1000"
    result = importer.run(rows, ctx)
    assert result.imported_count == 2
