# Shared pytest fixtures
from __future__ import annotations

import io
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from dealer_ingest.config.loader import BulkConfig, IngestConfig, ProgressConfig, WorkerConfig
from dealer_ingest.db.collections import DEALERS
from dealer_ingest.db.memory_store import MemoryDocumentStore
from dealer_ingest.importers.contracts import CONTRACT_COLUMNS
from dealer_ingest.logging.init import reset_logging
from dealer_ingest.services.service import IngestService


class FakeClock:
    """Callable clock for code that takes ``clock=``; advance it explicitly."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture(autouse=True)
def _fresh_logging():
    # the app logger binds sys.stdout when configured; rebuild it per test
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        monkeypatch.delenv("DEALER_INGEST_CONFIG", raising=False)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """bulk:
  batch_size: 50
  parallelism: 2
  batch_timeout_seconds: 10
progress:
  write_interval_seconds: 0
  heartbeat_seconds: 0.05
  error_cap: 20
  debug_log_cap: 100
worker:
  fragment_phases: true
  decode_offload: false
rules:
  max_distinct_dealer_codes: 2000
  dealer_code_prefix: ZAK
logs_directory: ./logs
timezone: UTC
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "ingest.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture()
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture()
def config() -> IngestConfig:
    return IngestConfig(
        bulk=BulkConfig(batch_size=50, parallelism=2, batch_timeout_seconds=10),
        progress=ProgressConfig(write_interval_seconds=0, heartbeat_seconds=0.05),
        worker=WorkerConfig(decode_offload=False),
    )


@pytest.fixture()
def service(temp_workdir: Path, store: MemoryDocumentStore, config: IngestConfig, clock: FakeClock) -> IngestService:
    return IngestService(store, config, clock=clock)


@pytest.fixture()
def add_dealer(store: MemoryDocumentStore):
    """Insert a dealer document directly; returns its ``_id``."""

    def _add(code: str, name: str, **extra: Any) -> str:
        doc = {
            "dealer_code": code,
            "name": name,
            "email": f"{code.lower()}@dealers.portal.invalid",
            "active": True,
            "dme_aliases": [],
        }
        doc.update(extra)
        return store.insert_one(DEALERS, doc)

    return _add


_CONTRACT_DEFAULTS = {
    "dealer_code": "ZAK0001",
    "dealer_name": "Acura of Peoria",
    "dealer_city": "Peoria",
    "dealer_state": "IL",
    "agreement": "A1000",
    "agreement_suffix": "01",
    "owner_first_name": "Jane",
    "owner_last_name": "Doe",
    "owner_phone": "(309) 555-0100",
    "email_address": "jane.doe@example.com",
    "vin": "1hgcm82633a004352",
    "vehicle_year": "2022",
    "vehicle_maker": "Acura",
    "series_name": "MDX",
    "new_used": "N",
    "coverage": "Ultimate",
    "plan_code": "ULT5",
    "contract_purchase_date": "01/15/2023",
    "expiration_date": "01/15/2028",
    "expiration_mileage": "75,000",
    "begin_mileage": "12",
    "deductible": "$0.00",
}


@pytest.fixture()
def contract_row():
    """Contract export row (dict keyed by CONTRACT_COLUMNS) with overrides."""

    def _row(**overrides: str) -> dict[str, str]:
        row = {c: "" for c in CONTRACT_COLUMNS}
        row.update(_CONTRACT_DEFAULTS)
        row.update(overrides)
        return row

    return _row


@pytest.fixture()
def contracts_bytes():
    """Render contract rows as the header-less pipe-delimited export."""

    def _render(rows: list[dict[str, str]], header: bool = False) -> bytes:
        lines = []
        if header:
            lines.append("|".join(c.upper() for c in CONTRACT_COLUMNS))
        for row in rows:
            lines.append("|".join(row.get(c, "") for c in CONTRACT_COLUMNS))
        return ("\n".join(lines) + "\n").encode("utf-8")

    return _render


@pytest.fixture()
def xlsx_bytes():
    """Build an .xlsx workbook from {sheet name: grid} with pandas/openpyxl."""

    def _build(sheets: dict[str, list[list[Any]]]) -> bytes:
        buf = io.BytesIO()
        with pd.ExcelWriter(buf, engine="openpyxl") as writer:
            for name, grid in sheets.items():
                pd.DataFrame(grid).to_excel(writer, sheet_name=name, header=False, index=False)
        return buf.getvalue()

    return _build
