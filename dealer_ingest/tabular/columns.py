from __future__ import annotations

import re
from collections.abc import Sequence

from dealer_ingest.models.row_data import Row

"""Header normalization and table -> Row projection.

normalize_header("  New Units ") == "new_units"
normalize_header("Dealer-Code") == "dealer_code"
normalize_header("newUnits") == "newunits"   (camelCase is not split)
"""

__all__ = [
    "normalize_header",
    "normalize_headers",
    "is_blank_row",
    "find_header_row",
    "table_to_rows",
]

_BOM = "﻿"
_SEPARATORS = re.compile(r"[\s\-]+")

# named fixed columns needed before a first row counts as a header
_HEADER_MATCH_MIN = 2


def normalize_header(value: object) -> str:
    text = "" if value is None else str(value)
    text = text.replace(_BOM, "").strip().lower()
    return _SEPARATORS.sub("_", text)


def normalize_headers(cells: Sequence[object]) -> list[str]:
    """Normalize a header row; blank headers get ``column_<n>``, repeats get ``_2``, ``_3``..."""
    seen: dict[str, int] = {}
    out: list[str] = []
    for i, cell in enumerate(cells):
        key = normalize_header(cell) or f"column_{i + 1}"
        if key in seen:
            seen[key] += 1
            key = f"{key}_{seen[key]}"
        else:
            seen[key] = 1
        out.append(key)
    return out


def is_blank_row(cells: Sequence[str]) -> bool:
    return all(not (c or "").strip() for c in cells)


def find_header_row(table: Sequence[Sequence[str]], tokens: Sequence[str], scan_rows: int = 10) -> int:
    """Index of the first row (within ``scan_rows``) holding one of ``tokens``.

    Title/subtitle rows above a report's real header are skipped this way.
    Falls back to 0 when no row matches.
    """
    wanted = {normalize_header(t) for t in tokens}
    for idx, cells in enumerate(table[:scan_rows]):
        if any(normalize_header(c) in wanted for c in cells):
            return idx
    return 0


def table_to_rows(
    table: Sequence[Sequence[str]],
    *,
    fixed_columns: Sequence[str] | None = None,
    header_tokens: Sequence[str] | None = None,
    scan_rows: int = 10,
) -> list[Row]:
    """Project a cell grid onto Row mappings.

    With ``fixed_columns`` rows are mapped by position, unless the first
    non-blank row names at least two of those columns: then the file carries
    its own header and columns are mapped by name. Otherwise the header row
    is row 0, or the first row containing a ``header_tokens`` entry.
    Entirely blank rows are skipped; order is preserved.
    """
    body = [list(r) for r in table]
    if fixed_columns is not None:
        columns = list(fixed_columns)
        while body and is_blank_row(body[0]):
            body.pop(0)
        if body:
            named = normalize_headers(body[0])
            if len(set(named) & set(columns)) >= _HEADER_MATCH_MIN:
                columns = named
                body = body[1:]
    else:
        while body and is_blank_row(body[0]):
            body.pop(0)
        if not body:
            return []
        start = find_header_row(body, header_tokens, scan_rows) if header_tokens else 0
        columns = normalize_headers(body[start])
        body = body[start + 1:]

    rows: list[Row] = []
    for cells in body:
        if is_blank_row(cells):
            continue
        row: Row = {}
        for i, key in enumerate(columns):
            row[key] = cells[i] if i < len(cells) else ""
        rows.append(row)
    return rows
