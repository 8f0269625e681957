from __future__ import annotations

import re
from collections.abc import Sequence

from dealer_ingest.db.collections import DEALERS
from dealer_ingest.db.document_store import UpdateOne
from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_result import ImportResult
from dealer_ingest.models.row_data import Row

from .base import ImportContext, Importer, SourceSchema

"""Dealer master importer.

Upserts dealers by ``dealer_code`` and stores the per-report name aliases
(units, ZIE, billing, campaign, contracts) used by the name matcher.
Optional fields are only ``$set`` when the row has a value, so re-importing
a sparse master never blanks out known data.
"""

__all__ = [
    "DealerMasterImporter",
    "dealer_placeholder_email",
]

_ALIAS_SPLIT = re.compile(r"[;|]")

# logical field -> dealer document attribute
_OPTIONAL_FIELDS = {
    "combine_with": "combine_with",
    "zie_dealer": "zie_dealer",
    "units_dealer": "units_dealer",
    "billing_dealer": "billing_dealer",
    "dme_dealer": "dme_dealer",
    "contracts_dealer": "contracts_dealer",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip": "zip",
    "phone": "phone",
}

_INSERT_DEFAULTS = {
    "address": "",
    "city": "",
    "state": "",
    "zip": "",
    "phone": "",
    "active": True,
}


def dealer_placeholder_email(code: str, domain: str) -> str:
    return f"{code.strip().lower()}@{domain}"


class DealerMasterImporter(Importer):
    file_type = FileType.DEALER_MASTER
    schema = SourceSchema(
        fields={
            "dealer_code": ("dealercode", "code"),
            "dealer_name": ("dealername", "name"),
            "combine_with": ("combinewith",),
            "zie_dealer": ("ziedealer",),
            "units_dealer": ("unitsdealer",),
            "billing_dealer": ("billingdealer",),
            "dme_dealer": ("dmedealer", "autopoint_dealer"),
            "contracts_dealer": ("zakcntrcts_dealer", "zakcntrctsdealer"),
            "dme_aliases": ("dmealiases", "autopoint_rollup", "rollup"),
            "address": ("address_1", "dealer_address_1", "street"),
            "city": ("dealer_city",),
            "state": ("dealer_state",),
            "zip": ("zip_code", "dealer_zip_code", "postal_code"),
            "phone": ("phone_number", "dealer_phone"),
        },
        required=("dealer_code",),
    )

    def build_operation(self, fields: dict[str, str], ctx: ImportContext) -> UpdateOne:
        code = fields["dealer_code"]
        best_name = fields["dealer_name"] or fields["contracts_dealer"]
        to_set: dict[str, object] = {"dealer_code": code}
        if best_name:
            to_set["name"] = best_name
        for logical, attr in _OPTIONAL_FIELDS.items():
            if fields[logical]:
                to_set[attr] = fields[logical]
        aliases = [a.strip() for a in _ALIAS_SPLIT.split(fields["dme_aliases"]) if a.strip()]
        if aliases:
            to_set["dme_aliases"] = aliases

        on_insert: dict[str, object] = {
            "email": dealer_placeholder_email(code, ctx.config.rules.dealer_email_domain),
            "dme_aliases": [],
        }
        if not best_name:
            on_insert["name"] = code
        on_insert.update(_INSERT_DEFAULTS)
        # a path may not appear in both $set and $setOnInsert
        on_insert = {k: v for k, v in on_insert.items() if k not in to_set}
        return UpdateOne(
            filter={"dealer_code": code},
            update={"$set": to_set, "$setOnInsert": on_insert},
            upsert=True,
        )

    def run_phase(self, phase: str, rows: Sequence[Row], ctx: ImportContext) -> ImportResult:
        binding = self.bind(rows) if rows else None
        log = ctx.new_error_log()
        ops: list[UpdateOne] = []
        for row_no, row in enumerate(rows, start=1):
            fields = binding.project(row)
            if not fields["dealer_code"]:
                self.row_error(log, ctx, phase, row_no, "missing dealer_code")
                continue
            ops.append(self.build_operation(fields, ctx))

        ctx.progress(0, len(ops), "Importing dealers…")
        result = ctx.upsert(DEALERS, ops, label="Dealers", phase=phase)
        log.add_bulk(result)
        return log.to_result(len(rows), result.succeeded)
