from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

from jsonschema import Draft7Validator

from .document_store import DocumentValidationError, get_path

"""Collection registry: natural keys and document validators.

Every collection is keyed by a natural key so upserts are idempotent.
Documents are validated with JSON Schema before they are written; a
document that fails validation fails only its own write operation.
"""

__all__ = [
    "CollectionSpec",
    "COLLECTIONS",
    "DEALERS",
    "CUSTOMERS",
    "CONTRACTS",
    "VEHICLES",
    "SERVICE_RECORDS",
    "MONTHLY_STATS",
    "IMPORT_JOBS",
    "UPLOAD_CHUNKS",
    "get_collection",
    "PLAN_NAMES",
    "CONTRACT_STATUSES",
    "COVERAGE_TYPES",
    "SERVICE_STATUSES",
]

DEALERS = "dealers"
CUSTOMERS = "customers"
CONTRACTS = "contracts"
VEHICLES = "vehicles"
SERVICE_RECORDS = "service_records"
MONTHLY_STATS = "dealer_monthly_stats"
IMPORT_JOBS = "import_jobs"
UPLOAD_CHUNKS = "upload_chunks"

PLAN_NAMES = ("Basic", "Basic with Interior", "Ultimate", "Ultimate with Interior")
CONTRACT_STATUSES = ("active", "expired", "cancelled")
COVERAGE_TYPES = ("exterior", "interior", "both")
SERVICE_STATUSES = ("scheduled", "completed", "cancelled", "missed")

_ID = {"type": "string", "minLength": 1}
_OPTIONAL_STR = {"type": ["string", "null"]}
_DATE = {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}"}


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    key_fields: tuple[str, ...]
    schema: dict[str, Any] = field(default_factory=dict)

    @cached_property
    def validator(self) -> Draft7Validator:
        return Draft7Validator(self.schema)

    def natural_key(self, doc: Mapping[str, Any]) -> str | None:
        parts = []
        for f in self.key_fields:
            value = get_path(doc, f)
            if value is None or value == "":
                return None
            parts.append(str(value))
        return "|".join(parts)

    def key_from_filter(self, filter: Mapping[str, Any]) -> str | None:
        """Natural key when ``filter`` pins every key field by equality."""
        parts = []
        for f in self.key_fields:
            value = filter.get(f)
            if value is None or isinstance(value, Mapping):
                return None
            parts.append(str(value))
        return "|".join(parts)

    def validate(self, doc: Mapping[str, Any]) -> None:
        errors = sorted(self.validator.iter_errors(_json_view(doc)), key=lambda e: list(e.path))
        if errors:
            first = errors[0]
            where = ".".join(str(p) for p in first.path) or "<document>"
            raise DocumentValidationError(f"{self.name}: {where}: {first.message}")
        if self.natural_key(doc) is None:
            raise DocumentValidationError(f"{self.name}: natural key {self.key_fields} missing")


def _json_view(doc: Any) -> Any:
    # bytes are opaque to JSON Schema; validate them as a marker string
    if isinstance(doc, Mapping):
        return {k: _json_view(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [_json_view(v) for v in doc]
    if isinstance(doc, (bytes, bytearray, memoryview)):
        return "<binary>"
    return doc


COLLECTIONS: dict[str, CollectionSpec] = {
    DEALERS: CollectionSpec(
        name=DEALERS,
        key_fields=("dealer_code",),
        schema={
            "type": "object",
            "required": ["_id", "dealer_code", "name", "email"],
            "properties": {
                "_id": _ID,
                "dealer_code": _ID,
                "name": {"type": "string", "minLength": 1},
                "email": {"type": "string", "pattern": "@"},
                "active": {"type": "boolean"},
                "dme_aliases": {"type": "array", "items": {"type": "string"}},
            },
        },
    ),
    CUSTOMERS: CollectionSpec(
        name=CUSTOMERS,
        key_fields=("email",),
        schema={
            "type": "object",
            "required": ["_id", "email", "role"],
            "properties": {
                "_id": _ID,
                "email": {"type": "string", "pattern": "^[^@\\s]+@[^@\\s]+$"},
                "name": _OPTIONAL_STR,
                "role": {"enum": ["customer", "dealer", "regional", "admin"]},
                "dealer_ids": {"type": "array", "items": {"type": "string"}},
            },
        },
    ),
    CONTRACTS: CollectionSpec(
        name=CONTRACTS,
        key_fields=("agreement_id",),
        schema={
            "type": "object",
            "required": [
                "_id", "agreement_id", "customer_id", "dealer_id", "plan", "status",
                "begins_at", "ends_at", "purchase_date",
            ],
            "properties": {
                "_id": _ID,
                "agreement_id": _ID,
                "customer_id": _ID,
                "dealer_id": _ID,
                "plan": {"enum": list(PLAN_NAMES)},
                "status": {"enum": list(CONTRACT_STATUSES)},
                "begins_at": _DATE,
                "ends_at": _DATE,
                "purchase_date": _DATE,
                "home_kit": {"type": "boolean"},
            },
        },
    ),
    VEHICLES: CollectionSpec(
        name=VEHICLES,
        key_fields=("vin",),
        schema={
            "type": "object",
            "required": ["_id", "vin"],
            "properties": {
                "_id": _ID,
                "vin": _ID,
                "year": {"type": "integer"},
                "active": {"type": "boolean"},
            },
        },
    ),
    SERVICE_RECORDS: CollectionSpec(
        name=SERVICE_RECORDS,
        key_fields=("contract_id", "scheduled_date"),
        schema={
            "type": "object",
            "required": [
                "_id", "contract_id", "customer_id", "dealer_id", "type", "status",
                "scheduled_date", "reminder_sent",
            ],
            "properties": {
                "_id": _ID,
                "contract_id": _ID,
                "customer_id": _ID,
                "dealer_id": _ID,
                "type": {"enum": list(COVERAGE_TYPES)},
                "status": {"enum": list(SERVICE_STATUSES)},
                "scheduled_date": _DATE,
                "completed_date": _DATE,
                "reminder_sent": {"type": "boolean"},
            },
        },
    ),
    MONTHLY_STATS: CollectionSpec(
        name=MONTHLY_STATS,
        key_fields=("dealer_id", "year", "month"),
        schema={
            "type": "object",
            "required": ["_id", "dealer_id", "year", "month"],
            "properties": {
                "_id": _ID,
                "dealer_id": _ID,
                "year": {"type": "integer", "minimum": 1900, "maximum": 9999},
                "month": {"type": "integer", "minimum": 1, "maximum": 12},
                "stats": {"type": "object"},
            },
        },
    ),
    IMPORT_JOBS: CollectionSpec(
        name=IMPORT_JOBS,
        key_fields=("id",),
        schema={
            "type": "object",
            "required": ["_id", "id", "filename", "file_type", "status"],
            "properties": {
                "_id": _ID,
                "id": _ID,
                "status": {"enum": ["pending", "processing", "imported", "import_failed"]},
                "step_pct": {"type": "integer", "minimum": 0, "maximum": 100},
                "import_errors": {"type": "array", "items": {"type": "string"}},
            },
        },
    ),
    UPLOAD_CHUNKS: CollectionSpec(
        name=UPLOAD_CHUNKS,
        key_fields=("upload_id", "chunk_index"),
        schema={
            "type": "object",
            "required": ["_id", "upload_id", "chunk_index", "data", "touched_at"],
            "properties": {
                "_id": _ID,
                "upload_id": _ID,
                "chunk_index": {"type": "integer", "minimum": 0},
            },
        },
    ),
}


def get_collection(name: str) -> CollectionSpec:
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise KeyError(f"unknown collection: {name}") from None
