from __future__ import annotations

from dataclasses import dataclass

"""Row and period models shared by the decoder and the importers."""

__all__ = [
    "Row",
    "PeriodContext",
    "YEAR_KEY",
    "MONTH_KEY",
]

# A decoded row: normalized column key -> raw string value
Row = dict[str, str]

# Keys added to rows decoded from a month-per-sheet workbook
YEAR_KEY = "_year"
MONTH_KEY = "_month"


@dataclass(frozen=True)
class PeriodContext:
    """Reporting period declared on the job (year/month), if any."""
    year: int | None = None
    month: int | None = None

    def for_row(self, row: Row) -> tuple[int, int] | None:
        """Period for one row: the sheet tag wins over the job period."""
        year = row.get(YEAR_KEY)
        month = row.get(MONTH_KEY)
        if year and month:
            return int(year), int(month)
        if self.year is not None and self.month is not None:
            return self.year, self.month
        return None

    @property
    def complete(self) -> bool:
        return self.year is not None and self.month is not None
