from __future__ import annotations

from collections.abc import Sequence

from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_result import ImportResult
from dealer_ingest.models.row_data import Row
from dealer_ingest.tabular.decoder import DecodeHints

from .base import ImportContext, SourceSchema, StatsImporter
from .matching import DealerNameMatcher
from .parsing import parse_num

"""Units report importer.

The report is a workbook with one tab per month (or a single CSV for the
job's period) listing new and used units sold per dealership. Dealers are
matched by name; dealers flagged "combined" roll up into a parent and are
not expected in the report.
"""

__all__ = [
    "UnitsImporter",
]


class UnitsImporter(StatsImporter):
    file_type = FileType.UNITS
    schema = SourceSchema(
        fields={
            "dealership": ("dealer", "dealer_name", "dealership_name"),
            "new_units": ("newunits", "new"),
            "used_units": ("usedunits", "used"),
            "units": ("total_units", "totalunits", "total"),
        },
        required=("dealership",),
    )

    def hints(self, ctx: ImportContext) -> DecodeHints:
        return DecodeHints(
            header_tokens=("dealership",),
            title_scan_rows=ctx.config.rules.title_scan_rows,
            multi_sheet=True,
            fallback_year=ctx.period.year,
            fallback_month=ctx.period.month,
        )

    def run_phase(self, phase: str, rows: Sequence[Row], ctx: ImportContext) -> ImportResult:
        log = ctx.new_error_log()
        if not rows:
            return log.to_result(0, 0)
        binding = self.bind(rows)
        matcher = DealerNameMatcher(
            self.load_dealers(ctx),
            ("units_dealer", "name"),
            exclude_combined="units_dealer",
        )

        latest: dict[tuple[str, tuple[int, int]], dict[str, int]] = {}
        for row_no, row in enumerate(rows, start=1):
            fields = binding.project(row)
            name = fields["dealership"]
            if not name:
                self.row_error(log, ctx, phase, row_no, "missing Dealership name")
                continue
            dealer = matcher.match(name)
            if dealer is None:
                self.row_error(log, ctx, phase, row_no, f'No dealer match for: "{name}"')
                continue
            period = ctx.period.for_row(fields)
            new_units = parse_num(fields["new_units"])
            used_units = parse_num(fields["used_units"])
            units = parse_num(fields["units"]) or new_units + used_units
            latest[(dealer["_id"], period)] = {
                "new_units": new_units,
                "used_units": used_units,
                "units": units,
            }

        ops = [self.stats_op(dealer_id, period, values) for (dealer_id, period), values in latest.items()]
        ctx.progress(0, len(ops), "Importing units…")
        imported = self.write_stats(ops, log, ctx, phase)
        return log.to_result(len(rows), imported)
