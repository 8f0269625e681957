from __future__ import annotations

import pytest

from dealer_ingest.tabular.columns import (
    find_header_row,
    is_blank_row,
    normalize_header,
    normalize_headers,
    table_to_rows,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("  New Units ", "new_units"),
        ("Dealer-Code", "dealer_code"),
        ("newUnits", "newunits"),
        ("\ufeffDealership", "dealership"),
        ("ZAKTEK  Billing Name", "zaktek_billing_name"),
        (None, ""),
        (42, "42"),
    ],
)
def test_normalize_header(raw, expected):
    assert normalize_header(raw) == expected


def test_normalize_headers_blank_and_duplicates():
    assert normalize_headers(["Name", "name", "", "NAME"]) == ["name", "name_2", "column_3", "name_3"]


def test_is_blank_row():
    assert is_blank_row(["", "  ", ""])
    assert is_blank_row([])
    assert not is_blank_row(["", "x"])


def test_find_header_row_skips_title_rows():
    table = [
        ["Monthly Units Report", ""],
        ["Generated 2024-02-01", ""],
        ["Dealership", "New Units"],
        ["Acura of Peoria", "10"],
    ]
    assert find_header_row(table, ["dealership"]) == 2
    # outside the scan window -> first row
    assert find_header_row(table, ["dealership"], scan_rows=2) == 0


def test_table_to_rows_with_header_tokens():
    table = [
        ["Monthly Units Report", "", ""],
        ["", "", ""],
        ["Dealership", "newUnits", "usedUnits"],
        ["Acura of Peoria", "10", "5"],
        ["", "", ""],
        ["Honda World", "7"],
    ]
    rows = table_to_rows(table, header_tokens=["Dealership"])
    assert rows == [
        {"dealership": "Acura of Peoria", "newunits": "10", "usedunits": "5"},
        {"dealership": "Honda World", "newunits": "7", "usedunits": ""},
    ]


def test_table_to_rows_values_are_not_coerced():
    rows = table_to_rows([["Code", "Qty"], ["00123", "NA"]])
    assert rows == [{"code": "00123", "qty": "NA"}]


def test_fixed_columns_positional():
    rows = table_to_rows([["", ""], ["ZAK0001", "Acura"], ["ZAK0002"]], fixed_columns=("dealer_code", "dealer_name"))
    assert rows == [
        {"dealer_code": "ZAK0001", "dealer_name": "Acura"},
        {"dealer_code": "ZAK0002", "dealer_name": ""},
    ]


def test_fixed_columns_with_own_header_maps_by_name():
    table = [
        ["Dealer Name", "Dealer Code", "Extra"],
        ["Acura", "ZAK0001", "x"],
    ]
    rows = table_to_rows(table, fixed_columns=("dealer_code", "dealer_name"))
    assert rows == [{"dealer_name": "Acura", "dealer_code": "ZAK0001", "extra": "x"}]


def test_fixed_columns_single_name_match_is_still_data():
    # one coincidental match is not enough to treat the row as a header
    table = [["dealer_code", "Acura"]]
    rows = table_to_rows(table, fixed_columns=("dealer_code", "dealer_name"))
    assert rows == [{"dealer_code": "dealer_code", "dealer_name": "Acura"}]


def test_empty_table():
    assert table_to_rows([]) == []
    assert table_to_rows([["", ""]]) == []
