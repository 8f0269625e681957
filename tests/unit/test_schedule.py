from __future__ import annotations

from datetime import date, datetime

import pytest

from dealer_ingest.importers.schedule import add_months, application_schedule


@pytest.mark.parametrize(
    "start, months, expected",
    [
        (date(2024, 1, 15), 6, date(2024, 7, 15)),
        (date(2024, 8, 31), 6, date(2025, 2, 28)),
        (date(2023, 8, 31), 6, date(2024, 2, 29)),
        (date(2024, 12, 31), 6, date(2025, 6, 30)),
        (date(2024, 3, 31), -1, date(2024, 2, 29)),
        (date(9999, 7, 1), 6, None),
    ],
)
def test_add_months(start, months, expected):
    assert add_months(start, months) == expected


def test_schedule_includes_the_end_date():
    assert application_schedule(date(2024, 1, 15), date(2025, 1, 15)) == [
        date(2024, 1, 15), date(2024, 7, 15), date(2025, 1, 15),
    ]


def test_schedule_stops_before_the_end_date():
    assert application_schedule(datetime(2024, 1, 15), datetime(2025, 1, 14, 23, 59)) == [
        date(2024, 1, 15), date(2024, 7, 15),
    ]


def test_schedule_clamps_month_end_without_drift():
    assert application_schedule(date(2023, 8, 31), date(2025, 3, 1)) == [
        date(2023, 8, 31), date(2024, 2, 29), date(2024, 8, 31), date(2025, 2, 28),
    ]


def test_schedule_for_a_single_day_and_a_reversed_range():
    assert application_schedule(date(2024, 5, 1), date(2024, 5, 1)) == [date(2024, 5, 1)]
    assert application_schedule(date(2024, 5, 2), date(2024, 5, 1)) == []


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        application_schedule(date(2024, 1, 1), date(2025, 1, 1), interval_months=0)
