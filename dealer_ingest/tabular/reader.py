from __future__ import annotations

import io
import re

import pandas as pd

from dealer_ingest.errors import DecodeError
from dealer_ingest.models.file_types import FileKind

from .xlsx_fast import ALL_SHEETS, SheetTable

"""General-purpose workbook reader (fallback path).

Uses pandas ``read_excel`` with the openpyxl engine (xlrd for legacy .xls)
and ``header=None`` so the raw grid is returned for the shared header
logic. Values are read as strings; datetime cells and integral floats are
rendered the way the fast reader renders them.
"""

__all__ = [
    "read_workbook_fallback",
]

_MIDNIGHT = re.compile(r"^(\d{4}-\d{2}-\d{2})[ T]00:00:00$")
_TIMESTAMP = re.compile(r"^(\d{4}-\d{2}-\d{2}) (\d{2}:\d{2}:\d{2})$")
_INTEGRAL_FLOAT = re.compile(r"^(-?\d+)\.0+$")
_NULLS = {"nan", "NaT", "None"}


def _clean(value: object) -> str:
    if value is None:
        return ""
    text = str(value)
    if text in _NULLS:
        return ""
    m = _MIDNIGHT.match(text)
    if m:
        return m.group(1)
    m = _TIMESTAMP.match(text)
    if m:
        return f"{m.group(1)}T{m.group(2)}"
    m = _INTEGRAL_FLOAT.match(text)
    if m:
        return m.group(1)
    return text


def read_workbook_fallback(
    buffer: bytes, kind: FileKind, sheet_selector: str | None = None
) -> list[SheetTable]:
    engine = "xlrd" if kind is FileKind.XLS else "openpyxl"
    try:
        xls = pd.ExcelFile(io.BytesIO(buffer), engine=engine)
        names = [str(n) for n in xls.sheet_names]
        if sheet_selector is None:
            names = names[:1]
        elif sheet_selector != ALL_SHEETS:
            if sheet_selector not in names:
                raise DecodeError("sheet not found", sheet=sheet_selector)
            names = [sheet_selector]
        tables = []
        for name in names:
            df = xls.parse(name, header=None, dtype=str, keep_default_na=False)
            rows = [[_clean(v) for v in r] for r in df.values.tolist()]
            tables.append(SheetTable(name=name, rows=rows))
        return tables
    except DecodeError:
        raise
    except Exception as e:  # noqa: BLE001 - engine errors vary by library version
        raise DecodeError(f"workbook could not be read ({engine}): {e}") from e
