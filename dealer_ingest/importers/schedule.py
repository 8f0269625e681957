from __future__ import annotations

import calendar
from datetime import MAXYEAR, date, datetime

"""Detailing application schedule for an active contract."""

__all__ = [
    "APPLICATION_INTERVAL_MONTHS",
    "add_months",
    "application_schedule",
]

APPLICATION_INTERVAL_MONTHS = 6


def add_months(value: date, months: int) -> date | None:
    """``value`` shifted by ``months``, clamped to the last day of the target month.

    None when the result falls past ``datetime.MAXYEAR``.
    """
    index = value.month - 1 + months
    year = value.year + index // 12
    if year > MAXYEAR:
        return None
    month = index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def application_schedule(
    begins: date | datetime,
    ends: date | datetime,
    interval_months: int = APPLICATION_INTERVAL_MONTHS,
) -> list[date]:
    """Every ``interval_months`` from ``begins`` up to and including ``ends``.

    Each date is computed from ``begins`` so a clamped month end (Aug 31 ->
    Feb 28) does not pull the following dates earlier.
    """
    if isinstance(begins, datetime):
        begins = begins.date()
    if isinstance(ends, datetime):
        ends = ends.date()
    if interval_months <= 0:
        raise ValueError("interval_months must be positive")
    dates = []
    step = 0
    current: date | None = begins
    while current is not None and current <= ends:
        dates.append(current)
        step += 1
        current = add_months(begins, step * interval_months)
    return dates
