from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from dealer_ingest.db.collections import CONTRACTS, CUSTOMERS, DEALERS, SERVICE_RECORDS, VEHICLES
from dealer_ingest.db.document_store import UpdateOne
from dealer_ingest.errors import PhaseOrderError, StructuralImportError
from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_result import ImportResult
from dealer_ingest.models.row_data import Row
from dealer_ingest.tabular.decoder import DecodeHints

from .base import ImportContext, Importer, SourceSchema
from .dealers import dealer_placeholder_email
from .parsing import is_blank_date, iso_date, naive_utc, parse_date, parse_float, parse_num
from .schedule import application_schedule

"""Contracts export importer (pipe-delimited, header optional).

Runs as three phases that must execute in order:

1. ``dealers``   - upsert every distinct dealer code (first row wins)
2. ``customers`` - upsert every distinct customer keyed by email, or a
   placeholder address derived from the agreement when the row has none
3. ``contracts`` - upsert contracts keyed by ``AGREEMENT-SUFFIX``,
   resolving dealer and customer ids from lookups rebuilt from the store,
   then upsert vehicles keyed by VIN and, for active contracts, one
   scheduled service record per application date (insert only, so
   completed or rescheduled records survive a re-import)

Every phase can be re-run on its own from a fresh decode; nothing is
carried in memory between phases.
"""

__all__ = [
    "ContractsImporter",
    "CONTRACT_COLUMNS",
    "PHASES",
    "contract_status",
    "plan_for_coverage",
    "agreement_id",
    "customer_email",
]

logger = logging.getLogger(__name__)

PHASES = ("dealers", "customers", "contracts")

# Header-less export layout, columns A..AL
CONTRACT_COLUMNS = (
    "dealer_code", "dealer_name", "dealer_address_1", "dealer_address_2",
    "dealer_city", "dealer_state", "dealer_zip_code",
    "agreement", "agreement_suffix",
    "owner_first_name", "owner_last_name", "owner_address_1", "owner_address_2",
    "owner_city", "owner_state", "owner_zip_code", "owner_phone", "email_address",
    "vin", "vehicle_year", "vehicle_maker", "model_code", "series_name", "new_used",
    "coverage", "plan_code", "contract_purchase_date", "expiration_date",
    "expiration_mileage", "begin_mileage", "deductible",
    "cancel_post_date", "cancel_date", "refund_amount",
    "retail_price", "dealer_cost", "admin_fee", "internal_cost",
)

REQUIRED_COLUMNS = (
    "dealer_code", "agreement", "agreement_suffix", "coverage",
    "contract_purchase_date", "expiration_date",
)

_PLAN_ALIASES = {
    "Basic": (
        "basic", "b", "bas", "bsc", "ext", "exterior", "basic exterior", "basic ext",
    ),
    "Basic with Interior": (
        "basic with interior", "basic w/ interior", "basic w/interior", "basic w interior",
        "basic + interior", "basic+interior", "basic & interior", "basic int",
        "bwi", "b+i", "bi", "b/i",
    ),
    "Ultimate": (
        "ultimate", "u", "ult", "ultimate exterior", "ult ext",
    ),
    "Ultimate with Interior": (
        "ultimate with interior", "ultimate w/ interior", "ultimate w/interior",
        "ultimate w interior", "ultimate + interior", "ultimate+interior",
        "ultimate & interior", "ult int", "ult+int", "uwi", "u+i", "ui", "u/i",
    ),
}
PLAN_MAP = {alias: plan for plan, aliases in _PLAN_ALIASES.items() for alias in aliases}
DEFAULT_PLAN = "Basic"

COVERAGE_TYPE = {
    "Basic": "exterior",
    "Basic with Interior": "both",
    "Ultimate": "both",
    "Ultimate with Interior": "both",
}

_WS = re.compile(r"\s+")
_PHONE_JUNK = re.compile(r"\D")
_LOOKUP_CHUNK = 5000


def plan_for_coverage(coverage: str | None) -> str:
    key = _WS.sub(" ", (coverage or "").strip().lower())
    return PLAN_MAP.get(key, DEFAULT_PLAN)


def contract_status(cancel_post_date: str | None, expiration_date: str | None, now: datetime) -> str:
    """cancelled > expired (strictly before ``now``) > active."""
    if not is_blank_date(cancel_post_date):
        return "cancelled"
    expires = parse_date(expiration_date)
    if expires is not None and expires < naive_utc(now):
        return "expired"
    return "active"


def agreement_id(fields: dict[str, str]) -> str:
    return f"{fields['agreement']}-{fields['agreement_suffix']}".upper()


def customer_email(fields: dict[str, str], domain: str) -> str:
    email = fields["email_address"].lower()
    if email and "@" in email:
        return email
    return f"{fields['agreement']}-{fields['agreement_suffix']}@{domain}".lower()


def _chunks(values: Sequence[str], size: int = _LOOKUP_CHUNK) -> Iterable[Sequence[str]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


def _non_empty(**values: Any) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v not in ("", None)}


class ContractsImporter(Importer):
    file_type = FileType.CONTRACTS
    phases = PHASES
    schema = SourceSchema(
        fields={
            **{c: () for c in CONTRACT_COLUMNS},
            "email_address": ("email", "owner_email"),
            "agreement": ("agreement_number", "agreement_no"),
            "agreement_suffix": ("suffix",),
        },
        required=REQUIRED_COLUMNS,
    )

    def hints(self, ctx: ImportContext) -> DecodeHints:
        return DecodeHints(
            delimiter="|",
            fixed_columns=CONTRACT_COLUMNS,
            title_scan_rows=ctx.config.rules.title_scan_rows,
        )

    def validate(self, rows: Sequence[Row], ctx: ImportContext) -> None:
        if not rows:
            return
        binding = self.bind(rows)
        codes = {binding.project(r)["dealer_code"] for r in rows} - {""}
        ceiling = ctx.config.rules.max_distinct_dealer_codes
        if len(codes) > ceiling:
            raise StructuralImportError(
                f"contracts: {len(codes)} distinct dealer codes exceeds the ceiling of {ceiling}; "
                "check the delimiter and column layout"
            )

    def run_phase(self, phase: str, rows: Sequence[Row], ctx: ImportContext) -> ImportResult:
        if phase not in PHASES:
            raise PhaseOrderError(f"unknown contracts phase: {phase!r}")
        if not rows:
            return ImportResult()
        fields = [self.bind(rows).project(r) for r in rows]
        if phase == "dealers":
            return self._dealers(fields, ctx)
        if phase == "customers":
            return self._customers(fields, ctx)
        return self._contracts(fields, ctx)

    # ---- phase 1 -----------------------------------------------------

    def _dealers(self, rows: list[dict[str, str]], ctx: ImportContext) -> ImportResult:
        log = ctx.new_error_log()
        first_rows: dict[str, dict[str, str]] = {}
        for row_no, f in enumerate(rows, start=1):
            code = f["dealer_code"]
            if not code:
                self.row_error(log, ctx, "dealers", row_no, "missing dealer_code")
                continue
            first_rows.setdefault(code, f)

        domain = ctx.config.rules.dealer_email_domain
        ops = []
        for code, f in first_rows.items():
            name = f["dealer_name"]
            to_set = _non_empty(
                dealer_code=code,
                name=name,
                contracts_dealer=name,
                address=f["dealer_address_1"],
                address_2=f["dealer_address_2"],
                city=f["dealer_city"],
                state=f["dealer_state"],
                zip=f["dealer_zip_code"],
            )
            on_insert: dict[str, Any] = {"email": dealer_placeholder_email(code, domain), "active": True}
            if not name:
                on_insert["name"] = code
            ops.append(UpdateOne({"dealer_code": code}, {"$set": to_set, "$setOnInsert": on_insert}))

        ctx.progress(0, len(ops), "Importing dealers…")
        result = ctx.upsert(DEALERS, ops, label="Dealers", phase="dealers")
        log.add_bulk(result)
        return log.to_result(len(rows), result.succeeded)

    # ---- phase 2 -----------------------------------------------------

    def _customers(self, rows: list[dict[str, str]], ctx: ImportContext) -> ImportResult:
        log = ctx.new_error_log()
        domain = ctx.config.rules.customer_email_domain
        first_rows: dict[str, dict[str, str]] = {}
        for f in rows:
            first_rows.setdefault(customer_email(f, domain), f)

        ops = []
        for email, f in first_rows.items():
            full_name = f"{f['owner_first_name']} {f['owner_last_name']}".strip()
            to_set = _non_empty(
                name=full_name,
                phone=_PHONE_JUNK.sub("", f["owner_phone"]),
                address=f["owner_address_1"],
                city=f["owner_city"],
                state=f["owner_state"],
                zip=f["owner_zip_code"],
            )
            update: dict[str, Any] = {
                "$setOnInsert": {"role": "customer", "active": True, "dealer_ids": []},
            }
            if to_set:
                update["$set"] = to_set
            ops.append(UpdateOne({"email": email}, update))

        ctx.progress(0, len(ops), "Importing customers…")
        result = ctx.upsert(CUSTOMERS, ops, label="Customers", phase="customers")
        log.add_bulk(result)
        return log.to_result(len(rows), result.succeeded)

    # ---- phase 3 -----------------------------------------------------

    def _lookup(self, ctx: ImportContext, collection: str, key: str, values: Iterable[str]) -> dict[str, str]:
        wanted = sorted(set(values) - {""})
        out: dict[str, str] = {}
        for chunk in _chunks(wanted):
            for doc in ctx.store.find(collection, {key: {"$in": list(chunk)}}, projection=[key]):
                out[doc[key]] = doc["_id"]
        return out

    def _contracts(self, rows: list[dict[str, str]], ctx: ImportContext) -> ImportResult:
        log = ctx.new_error_log()
        domain = ctx.config.rules.customer_email_domain
        now = naive_utc(ctx.now())
        today = iso_date(now)

        dealer_ids = self._lookup(ctx, DEALERS, "dealer_code", (f["dealer_code"] for f in rows))
        customer_ids = self._lookup(ctx, CUSTOMERS, "email", (customer_email(f, domain) for f in rows))

        ops = []
        vehicle_ops = []
        agreement_ids = []
        scheduled: list[tuple[str, str | None, str | None, str, datetime, datetime]] = []
        for row_no, f in enumerate(rows, start=1):
            if not f["agreement"] or not f["agreement_suffix"]:
                self.row_error(log, ctx, "contracts", row_no, "missing agreement or agreement_suffix")
                continue
            ag_id = agreement_id(f)
            agreement_ids.append(ag_id)
            plan = plan_for_coverage(f["coverage"])
            status = contract_status(f["cancel_post_date"], f["expiration_date"], now)
            purchased = parse_date(f["contract_purchase_date"])
            expires = parse_date(f["expiration_date"])
            purchase_date = iso_date(purchased) if purchased else today
            expiration_date = iso_date(expires) if expires else today
            customer_id = customer_ids.get(customer_email(f, domain))
            dealer_id = dealer_ids.get(f["dealer_code"])
            vin = f["vin"].upper()

            to_set: dict[str, Any] = {
                "customer_id": customer_id,
                "dealer_id": dealer_id,
                "plan": plan,
                "status": status,
                "begins_at": purchase_date,
                "ends_at": expiration_date,
                "purchase_date": purchase_date,
                "coverage": f["coverage"],
                "begin_mileage": parse_num(f["begin_mileage"]),
                "expiration_mileage": parse_num(f["expiration_mileage"]),
                "deductible": parse_float(f["deductible"]),
            }
            to_set.update(_non_empty(vin=vin, plan_code=f["plan_code"], new_used=f["new_used"]))
            ops.append(UpdateOne({"agreement_id": ag_id}, {"$set": to_set, "$setOnInsert": {"home_kit": False}}))
            if status == "active":
                scheduled.append((ag_id, customer_id, dealer_id, COVERAGE_TYPE[plan], purchased or now, expires or now))

            if vin:
                vehicle_ops.append(
                    UpdateOne(
                        {"vin": vin},
                        {
                            "$set": {
                                "customer_id": customer_id,
                                "dealer_id": dealer_id,
                                "year": parse_num(f["vehicle_year"]),
                                "make": f["vehicle_maker"],
                                "model": f["series_name"] or f["model_code"],
                                "purchase_date": purchase_date,
                                "coverage_type": COVERAGE_TYPE[plan],
                                "warranty_expires_at": expiration_date,
                                "active": status == "active",
                            },
                        },
                    )
                )

        ctx.progress(0, len(ops), "Importing contracts…")
        result = ctx.upsert(CONTRACTS, ops, label="Contracts", phase="contracts")
        log.add_bulk(result)

        if vehicle_ops:
            vehicles = ctx.upsert(VEHICLES, vehicle_ops, label="Vehicles", phase="contracts")
            if vehicles.failed:
                logger.warning("vehicle upserts: %d of %d failed", vehicles.failed, vehicles.total)
                log.add_bulk(vehicles)

        if scheduled:
            service_ops = self._service_ops(ctx, scheduled)
            services = ctx.upsert(SERVICE_RECORDS, service_ops, label="Service records", phase="contracts")
            if services.failed:
                logger.warning("service record upserts: %d of %d failed", services.failed, services.total)

        imported = 0
        distinct = sorted(set(agreement_ids))
        for chunk in _chunks(distinct):
            imported += ctx.store.count_documents(CONTRACTS, {"agreement_id": {"$in": list(chunk)}})
        return log.to_result(len(rows), imported)

    def _service_ops(
        self,
        ctx: ImportContext,
        scheduled: list[tuple[str, str | None, str | None, str, datetime, datetime]],
    ) -> list[UpdateOne]:
        contract_ids = self._lookup(ctx, CONTRACTS, "agreement_id", (s[0] for s in scheduled))
        ops = []
        for ag_id, customer_id, dealer_id, coverage_type, begins, ends in scheduled:
            contract_id = contract_ids.get(ag_id)
            if contract_id is None or customer_id is None or dealer_id is None:
                continue
            for day in application_schedule(begins, ends):
                scheduled_date = day.isoformat()
                ops.append(
                    UpdateOne(
                        {"contract_id": contract_id, "scheduled_date": scheduled_date},
                        {
                            "$setOnInsert": {
                                "customer_id": customer_id,
                                "dealer_id": dealer_id,
                                "type": coverage_type,
                                "status": "scheduled",
                                "reminder_sent": False,
                            },
                        },
                    )
                )
        return ops
