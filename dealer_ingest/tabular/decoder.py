from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from dealer_ingest.errors import DecodeError
from dealer_ingest.models.file_types import FileKind
from dealer_ingest.models.row_data import MONTH_KEY, YEAR_KEY, Row

from .columns import table_to_rows
from .delimited import read_delimited
from .offload import ExecutorFactory, WorkbookFailure, WorkbookRequest, decode_workbook_job, run_offloaded
from .reader import read_workbook_fallback
from .xlsx_fast import ALL_SHEETS, SheetTable

"""Tabular decoder: raw bytes -> ordered list of Row mappings."""

__all__ = [
    "DecodeHints",
    "decode",
    "parse_sheet_period",
]

logger = logging.getLogger(__name__)

_MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}
_MONTH_WORD = re.compile(r"(?<![a-z])(" + "|".join(sorted(_MONTHS, key=len, reverse=True)) + r")(?![a-z])")
_YEAR = re.compile(r"(?<!\d)(\d{4})(?!\d)")
_BARE_MONTH = re.compile(r"^[\s\-_/.]*(\d{1,2})[\s\-_/.]*$")


@dataclass(frozen=True)
class DecodeHints:
    """Per-source decoding instructions."""
    delimiter: str = ","
    fixed_columns: tuple[str, ...] | None = None  # header-less positional layout
    header_tokens: tuple[str, ...] | None = None  # title-row skipping
    title_scan_rows: int = 10
    multi_sheet: bool = False  # one sheet per reporting month
    fallback_year: int | None = None
    fallback_month: int | None = None  # with fallback_year: period for an undated first sheet
    sheet: str | None = None  # single named sheet; None = first


def parse_sheet_period(name: str, fallback_year: int | None = None) -> tuple[int | None, int] | None:
    """(year, month) from a tab name such as "Jan 2024", "2024-03" or "7"; None if no month."""
    text = (name or "").strip().lower()
    year_match = _YEAR.search(text)
    year = int(year_match.group(1)) if year_match else fallback_year
    rest = _YEAR.sub(" ", text) if year_match else text
    word = _MONTH_WORD.search(rest)
    if word:
        return year, _MONTHS[word.group(1)]
    bare = _BARE_MONTH.match(rest)
    if bare and 1 <= int(bare.group(1)) <= 12:
        return year, int(bare.group(1))
    return None


def _as_kind(kind: FileKind | str) -> FileKind:
    if isinstance(kind, FileKind):
        return kind
    try:
        return FileKind(str(kind).lower().lstrip("."))
    except ValueError:
        raise DecodeError(f"unsupported file kind: {kind!r}") from None


def _read_sheets(
    buffer: bytes,
    kind: FileKind,
    selector: str | None,
    *,
    offload: bool,
    heartbeat: Callable[[], None] | None,
    heartbeat_interval: float,
    executor_factory: ExecutorFactory | None,
) -> list[SheetTable]:
    if kind is FileKind.XLS:
        return read_workbook_fallback(buffer, kind, selector)
    request = WorkbookRequest(buffer=bytes(buffer), sheet_selector=selector)
    if offload:
        outcome = run_offloaded(
            request,
            heartbeat=heartbeat,
            heartbeat_interval=heartbeat_interval,
            executor_factory=executor_factory,
        )
    else:
        outcome = decode_workbook_job(request)
    if not isinstance(outcome, WorkbookFailure):
        return outcome.sheets
    logger.warning("fast workbook reader failed (%s); using fallback reader", outcome.message)
    try:
        return read_workbook_fallback(buffer, kind, selector)
    except DecodeError as e:
        raise DecodeError(
            f"workbook could not be decoded: fast reader: {outcome.message}; fallback: {e}",
            offset=outcome.offset,
            sheet=outcome.sheet or e.sheet,
        ) from e


def _tag_rows(rows: Sequence[Row], year: int, month: int) -> list[Row]:
    for row in rows:
        row[YEAR_KEY] = str(year)
        row[MONTH_KEY] = str(month)
    return list(rows)


def decode(
    buffer: bytes,
    file_kind: FileKind | str,
    hints: DecodeHints | None = None,
    *,
    heartbeat: Callable[[], None] | None = None,
    heartbeat_interval: float = 20.0,
    offload: bool = True,
    executor_factory: ExecutorFactory | None = None,
) -> list[Row]:
    """Decode ``buffer`` into rows in source order.

    The buffer is never modified. Failures surface as DecodeError.
    """
    hints = hints or DecodeHints()
    kind = _as_kind(file_kind)

    def project(table: Sequence[Sequence[str]]) -> list[Row]:
        return table_to_rows(
            table,
            fixed_columns=hints.fixed_columns,
            header_tokens=hints.header_tokens,
            scan_rows=hints.title_scan_rows,
        )

    if kind is FileKind.CSV:
        return project(read_delimited(buffer, hints.delimiter))

    selector = ALL_SHEETS if hints.multi_sheet else hints.sheet
    sheets = _read_sheets(
        buffer,
        kind,
        selector,
        offload=offload,
        heartbeat=heartbeat,
        heartbeat_interval=heartbeat_interval,
        executor_factory=executor_factory,
    )
    if not hints.multi_sheet:
        return project(sheets[0].rows) if sheets else []

    rows: list[Row] = []
    dated = 0
    for sheet in sheets:
        period = parse_sheet_period(sheet.name, hints.fallback_year)
        if period is None:
            logger.debug("sheet %r has no month in its name; skipped", sheet.name)
            continue
        year, month = period
        if year is None:
            logger.debug("sheet %r has no year and no fallback year; skipped", sheet.name)
            continue
        rows.extend(_tag_rows(project(sheet.rows), year, month))
        dated += 1
    if dated or not sheets:
        return rows
    if hints.fallback_year is None or hints.fallback_month is None:
        raise DecodeError(
            "workbook has no month-named sheets; name each tab after its month or give the job a year and month"
        )
    logger.info(
        "no month-named sheets; reading %r as %04d-%02d", sheets[0].name, hints.fallback_year, hints.fallback_month
    )
    return _tag_rows(project(sheets[0].rows), hints.fallback_year, hints.fallback_month)
