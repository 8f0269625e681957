from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from dealer_ingest.errors import StructuralImportError
from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_result import ImportResult
from dealer_ingest.models.row_data import Row

from .base import ImportContext, SourceSchema, StatsImporter
from .matching import DealerNameMatcher
from .parsing import parse_float, parse_num

"""Service exterior/interior (ZIE) report importer.

Rows identify a dealer by code when the report carries one; otherwise the
dealer name is matched against ``zie_dealer`` then ``name``.
"""

__all__ = [
    "ZieImporter",
]


class ZieImporter(StatsImporter):
    file_type = FileType.SERVICE_EI
    schema = SourceSchema(
        fields={
            "dealer_code": ("dealercode", "code"),
            "dealer_name": ("dealername", "dealer", "dealership"),
            "exterior_units": ("exteriorunits", "exterior"),
            "interior_units": ("interiorunits", "interior"),
            "total_revenue": ("totalrevenue", "revenue"),
            "average_revenue": ("averagerevenue", "avg_revenue", "avgrevenue"),
        },
    )

    def validate(self, rows: Sequence[Row], ctx: ImportContext) -> None:
        super().validate(rows, ctx)
        if rows:
            binding = self.bind(rows)
            if not (binding.has("dealer_code") or binding.has("dealer_name")):
                raise StructuralImportError(
                    f"{self.file_type.value}: missing required column(s): dealer_code or dealer_name"
                )

    def run_phase(self, phase: str, rows: Sequence[Row], ctx: ImportContext) -> ImportResult:
        log = ctx.new_error_log()
        if not rows:
            return log.to_result(0, 0)
        binding = self.bind(rows)
        dealers = self.load_dealers(ctx)
        by_code = {d["dealer_code"]: d for d in dealers if d.get("dealer_code")}
        matcher = DealerNameMatcher(dealers, ("zie_dealer", "name"))

        latest: dict[tuple[str, tuple[int, int]], dict[str, Any]] = {}
        for row_no, row in enumerate(rows, start=1):
            fields = binding.project(row)
            code, name = fields["dealer_code"], fields["dealer_name"]
            if not code and not name:
                self.row_error(log, ctx, phase, row_no, "missing dealer_code and dealer_name")
                continue
            dealer = by_code.get(code) if code else None
            if dealer is None and name:
                dealer = matcher.match(name)
            if dealer is None:
                self.row_error(log, ctx, phase, row_no, f'No dealer match for: "{code or name}"')
                continue
            latest[(dealer["_id"], ctx.period.for_row(fields))] = {
                "exterior_units": parse_num(fields["exterior_units"]),
                "interior_units": parse_num(fields["interior_units"]),
                "total_revenue": parse_float(fields["total_revenue"]),
                "avg_revenue": parse_float(fields["average_revenue"]),
            }

        ops = [self.stats_op(dealer_id, period, values) for (dealer_id, period), values in latest.items()]
        ctx.progress(0, len(ops), "Importing service exterior/interior…")
        imported = self.write_stats(ops, log, ctx, phase)
        return log.to_result(len(rows), imported)
