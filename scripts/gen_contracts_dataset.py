#!/usr/bin/env python3
"""Synthetic contract exports for load testing.

Writes a pipe-delimited contracts export in the same column order the
dealer management system produces (no header row unless ``--header``),
or a monthly units workbook with one tab per month.

The generated dealers use codes ZAK0001..ZAKnnnn so a dealer master
import of ``--dealers`` rows can be generated alongside.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

import numpy as np
import pandas as pd

from dealer_ingest.importers.contracts import CONTRACT_COLUMNS

_MAKES = ["Acura", "Honda", "Kia", "Toyota", "Ford", "Subaru"]
_SERIES = ["MDX", "Accord", "Sorento", "Camry", "F-150", "Outback"]
_PLANS = [("Basic", "BAS5"), ("Basic with Interior", "BSI5"), ("Ultimate", "ULT5"), ("Ultimate with Interior", "ULI5")]
_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def generate_contracts(rows: int, dealers: int = 50, seed: int = 42) -> pd.DataFrame:
    """Contract rows keyed by the export column names.

    Args:
        rows: number of contracts
        dealers: number of distinct dealer codes
        seed: random seed for reproducible data
    """
    rng = np.random.default_rng(seed)
    dealer_no = rng.integers(1, dealers + 1, rows)
    plan_no = rng.integers(0, len(_PLANS), rows)
    make_no = rng.integers(0, len(_MAKES), rows)
    purchase = pd.Timestamp("2021-01-01") + pd.to_timedelta(rng.integers(0, 1200, rows), unit="D")
    term_years = rng.choice([3, 5, 7], rows)

    data = {c: [""] * rows for c in CONTRACT_COLUMNS}
    data["dealer_code"] = [f"ZAK{n:04d}" for n in dealer_no]
    data["dealer_name"] = [f"{_MAKES[n % len(_MAKES)]} Store {n}" for n in dealer_no]
    data["dealer_state"] = rng.choice(["IL", "IN", "WI", "MO"], rows).tolist()
    data["agreement"] = [f"A{i:07d}" for i in range(1, rows + 1)]
    data["agreement_suffix"] = ["01"] * rows
    data["owner_first_name"] = rng.choice(["Jane", "John", "Maria", "Wei", "Sam"], rows).tolist()
    data["owner_last_name"] = rng.choice(["Doe", "Smith", "Garcia", "Chen", "Patel"], rows).tolist()
    data["owner_phone"] = [f"(309) 555-{n:04d}" for n in rng.integers(0, 10_000, rows)]
    # one in ten customers has no email and gets a placeholder
    data["email_address"] = [
        "" if i % 10 == 0 else f"owner{i}@example.com" for i in range(1, rows + 1)
    ]
    data["vin"] = [f"{n:017X}" for n in rng.integers(1 << 60, 1 << 62, rows)]
    data["vehicle_year"] = rng.integers(2015, 2025, rows).astype(str).tolist()
    data["vehicle_maker"] = [_MAKES[n] for n in make_no]
    data["series_name"] = [_SERIES[n] for n in make_no]
    data["new_used"] = rng.choice(["N", "U"], rows).tolist()
    data["coverage"] = [_PLANS[n][0] for n in plan_no]
    data["plan_code"] = [_PLANS[n][1] for n in plan_no]
    data["contract_purchase_date"] = purchase.strftime("%m/%d/%Y").tolist()
    data["expiration_date"] = [
        (p + pd.DateOffset(years=int(t))).strftime("%m/%d/%Y") for p, t in zip(purchase, term_years)
    ]
    data["expiration_mileage"] = [f"{int(m):,}" for m in rng.choice([36_000, 60_000, 75_000, 100_000], rows)]
    data["begin_mileage"] = rng.integers(0, 60_000, rows).astype(str).tolist()
    data["deductible"] = rng.choice(["$0.00", "$50.00", "$100.00"], rows).tolist()
    return pd.DataFrame(data, columns=list(CONTRACT_COLUMNS))


def write_contracts(output: Path, frame: pd.DataFrame, header: bool = False) -> None:
    output.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(
        output,
        sep="|",
        index=False,
        header=[c.upper() for c in frame.columns] if header else False,
    )


def write_units_workbook(output: Path, year: int, dealers: int, seed: int = 42) -> None:
    """One tab per month, a title row above the header on each tab."""
    rng = np.random.default_rng(seed)
    output.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        for month in _MONTHS:
            grid = [[f"Units Report - {month} {year}", None, None], ["Dealership", "New", "Used"]]
            for n in range(1, dealers + 1):
                grid.append([f"{_MAKES[n % len(_MAKES)]} Store {n}", int(rng.integers(0, 40)), int(rng.integers(0, 40))])
            pd.DataFrame(grid).to_excel(writer, sheet_name=f"{month} {year}", header=False, index=False)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Generate synthetic dealer portal import files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # 100k contracts across 200 dealers
  %(prog)s contracts.csv --rows 100000 --dealers 200

  # monthly units workbook for 2024
  %(prog)s units.xlsx --units --year 2024 --dealers 200
        """,
    )
    parser.add_argument("output", type=Path, help="Output file path")
    parser.add_argument("--rows", type=int, default=50_000, help="Contract rows (default: 50,000)")
    parser.add_argument("--dealers", type=int, default=50, help="Distinct dealers (default: 50)")
    parser.add_argument("--header", action="store_true", help="Write a header row")
    parser.add_argument("--units", action="store_true", help="Write a units workbook instead of contracts")
    parser.add_argument("--year", type=int, default=2024, help="Units workbook year (default: 2024)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()

    if args.rows <= 0 or args.dealers <= 0:
        print("Error: --rows and --dealers must be positive", file=sys.stderr)
        return 1

    try:
        if args.units:
            write_units_workbook(args.output, args.year, args.dealers, args.seed)
            print(f"Created units workbook: {args.output} (12 tabs, {args.dealers} dealers)")
        else:
            write_contracts(args.output, generate_contracts(args.rows, args.dealers, args.seed), args.header)
            print(f"Created contracts export: {args.output} ({args.rows:,} rows, {args.dealers} dealers)")
    except (OSError, ValueError) as e:
        print(f"Error generating dataset: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
