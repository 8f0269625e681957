from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any

from dealer_ingest.db.collections import DEALERS
from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_result import ImportResult
from dealer_ingest.models.row_data import Row

from .base import ImportContext, SourceSchema, StatsImporter
from .parsing import parse_float

"""Billing report importer.

The billing name ends in the numeric part of the dealer code:
"Acura of Peoria (666)" belongs to dealer ZAK0666.
"""

__all__ = [
    "BillingImporter",
    "billing_dealer_code",
]

_CODE_SUFFIX = re.compile(r"\((\d+)\)\s*$")


def billing_dealer_code(billing_name: str, prefix: str = "ZAK") -> str | None:
    m = _CODE_SUFFIX.search(billing_name or "")
    if not m:
        return None
    return prefix + m.group(1).zfill(4)


class BillingImporter(StatsImporter):
    file_type = FileType.BILLING
    schema = SourceSchema(
        fields={
            "billing_name": ("zaktek_billing_name", "dealer_billing_name", "name"),
            "minimum": ("min", "minimum_billing"),
            "billing_1": ("zaktek_billing", "billing1"),
            "billing_2": ("stone_eagle_billing", "billing2"),
        },
        required=("billing_name",),
    )

    def run_phase(self, phase: str, rows: Sequence[Row], ctx: ImportContext) -> ImportResult:
        log = ctx.new_error_log()
        if not rows:
            return log.to_result(0, 0)
        binding = self.bind(rows)
        prefix = ctx.config.rules.dealer_code_prefix

        projected = []
        for row_no, row in enumerate(rows, start=1):
            fields = binding.project(row)
            name = fields["billing_name"]
            if not name:
                self.row_error(log, ctx, phase, row_no, "missing billing name")
                continue
            code = billing_dealer_code(name, prefix)
            if code is None:
                self.row_error(log, ctx, phase, row_no, f'no dealer code in billing name: "{name}"')
                continue
            projected.append((row_no, code, fields))

        codes = sorted({code for _, code, _ in projected})
        dealers = {
            d["dealer_code"]: d
            for d in ctx.store.find(DEALERS, {"dealer_code": {"$in": codes}}, projection=["dealer_code"])
        }

        latest: dict[tuple[str, tuple[int, int]], dict[str, Any]] = {}
        for row_no, code, fields in projected:
            dealer = dealers.get(code)
            if dealer is None:
                self.row_error(log, ctx, phase, row_no, f"unknown dealer code {code}")
                continue
            latest[(dealer["_id"], ctx.period.for_row(fields))] = {
                "minimum": parse_float(fields["minimum"]),
                "zaktek_billing": parse_float(fields["billing_1"]),
                "stone_eagle_billing": parse_float(fields["billing_2"]),
            }

        ops = [self.stats_op(dealer_id, period, values) for (dealer_id, period), values in latest.items()]
        ctx.progress(0, len(ops), "Importing billing…")
        imported = self.write_stats(ops, log, ctx, phase)
        return log.to_result(len(rows), imported)
