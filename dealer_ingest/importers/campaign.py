from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from dealer_ingest.models.file_types import FileType
from dealer_ingest.models.import_result import ImportResult
from dealer_ingest.models.row_data import Row

from .base import ImportContext, SourceSchema, StatsImporter
from .matching import DealerNameMatcher
from .parsing import parse_float, parse_num

"""Campaign results importer.

Several stores can roll up into one dealer (their names are listed in the
dealer's ``dme_aliases``). Rows are accumulated per (dealer, period) and
the rates and averages are recomputed from the sums, so one stats write
happens per dealer and period.
"""

__all__ = [
    "CampaignResultsImporter",
    "CampaignRollup",
]


@dataclass
class CampaignRollup:
    list: int = 0
    ros: int = 0
    response: int = 0
    cp_amount: float = 0.0
    wp_amount: float = 0.0
    fixed_ops_revenue: float = 0.0
    campaign_invest: float = 0.0

    def add(self, fields: dict[str, str]) -> None:
        self.list += parse_num(fields["list"])
        self.ros += parse_num(fields["ros"])
        self.response += parse_num(fields["response"])
        self.cp_amount += parse_float(fields["cp_amount"])
        self.wp_amount += parse_float(fields["wp_amount"])
        self.fixed_ops_revenue += parse_float(fields["total_amount"])
        self.campaign_invest += parse_float(fields["campaign_invest"])

    def stats(self) -> dict[str, float]:
        def ratio(num: float, den: float) -> float:
            return num / den if den > 0 else 0.0

        return {
            "list": self.list,
            "ros": self.ros,
            "response": self.response,
            "response_rate": ratio(self.response, self.list) * 100,
            "avg_cp_amount": ratio(self.cp_amount, self.ros),
            "avg_wp_amount": ratio(self.wp_amount, self.ros),
            "avg_ro_total_pay": ratio(self.fixed_ops_revenue, self.ros),
            "cp_amount": self.cp_amount,
            "wp_amount": self.wp_amount,
            "fixed_ops_revenue": self.fixed_ops_revenue,
            "campaign_invest": self.campaign_invest,
            "sales_roi": ratio(self.fixed_ops_revenue, self.campaign_invest),
        }


class CampaignResultsImporter(StatsImporter):
    file_type = FileType.CAMPAIGN_RESULTS
    schema = SourceSchema(
        fields={
            "dme_name": ("dealer_name", "dealer", "store", "dealership"),
            "list": ("list_size",),
            "ros": ("ro_count", "repair_orders"),
            "response": ("responses",),
            "cp_amount": ("cpamount",),
            "wp_amount": ("wpamount",),
            "total_amount": ("totalamount", "total"),
            "campaign_invest": ("campaigninvest", "investment"),
        },
        required=("dme_name",),
    )

    def run_phase(self, phase: str, rows: Sequence[Row], ctx: ImportContext) -> ImportResult:
        log = ctx.new_error_log()
        if not rows:
            return log.to_result(0, 0)
        binding = self.bind(rows)
        matcher = DealerNameMatcher(self.load_dealers(ctx), ("dme_dealer", "dme_aliases", "name"))

        rollups: dict[tuple[str, tuple[int, int]], CampaignRollup] = {}
        for row_no, row in enumerate(rows, start=1):
            fields = binding.project(row)
            name = fields["dme_name"]
            if not name:
                self.row_error(log, ctx, phase, row_no, "missing store name")
                continue
            dealer = matcher.match(name)
            if dealer is None:
                self.row_error(log, ctx, phase, row_no, f'No dealer match for: "{name}"')
                continue
            key = (dealer["_id"], ctx.period.for_row(fields))
            rollups.setdefault(key, CampaignRollup()).add(fields)

        ops = [self.stats_op(dealer_id, period, acc.stats()) for (dealer_id, period), acc in rollups.items()]
        ctx.progress(0, len(ops), "Importing campaign results…")
        imported = self.write_stats(ops, log, ctx, phase)
        return log.to_result(len(rows), imported)
