"""Tabular decoding: delimited text and spreadsheet workbooks into rows."""

from .columns import normalize_header, normalize_headers
from .decoder import DecodeHints, decode, parse_sheet_period
from .xlsx_fast import excel_serial_to_iso, is_date_format, read_workbook

__all__ = [
    "DecodeHints",
    "decode",
    "parse_sheet_period",
    "normalize_header",
    "normalize_headers",
    "read_workbook",
    "is_date_format",
    "excel_serial_to_iso",
]
