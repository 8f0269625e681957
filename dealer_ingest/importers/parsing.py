from __future__ import annotations

import re
from datetime import datetime, timezone

"""Cell value parsers shared by the importers.

All parsers are total: unparseable input yields 0 / 0.0 / None rather than
raising, matching how the source reports treat blank and malformed cells.
"""

__all__ = [
    "parse_num",
    "parse_float",
    "parse_date",
    "iso_date",
    "is_blank_date",
    "naive_utc",
]

_NUM_JUNK = re.compile(r"[^0-9.\-]")
_LEADING_INT = re.compile(r"^-?\d+")
_FLOAT_JUNK = re.compile(r"[\s$,%]")
_SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}):(\d{2})(?::(\d{2}))?(?:\.\d+)?Z?)?$")

# Values the contracts export uses for "no date"
DATE_SENTINELS = frozenset({"", "0", "0000-00-00", "00/00/0000", "0/0/0000", "00/00/00"})


def parse_num(value: str | None) -> int:
    """Integer count: "1,204" -> 1204, "12.7" -> 12, junk -> 0."""
    if not value:
        return 0
    m = _LEADING_INT.match(_NUM_JUNK.sub("", value))
    return int(m.group(0)) if m else 0


def parse_float(value: str | None) -> float:
    """Money/ratio value: "$1,234.50" -> 1234.5, junk -> 0.0."""
    if not value:
        return 0.0
    try:
        result = float(_FLOAT_JUNK.sub("", value))
    except ValueError:
        return 0.0
    return result if result == result else 0.0  # NaN -> 0.0


def is_blank_date(value: str | None) -> bool:
    return (value or "").strip() in DATE_SENTINELS


def parse_date(value: str | None) -> datetime | None:
    """Parse ``M/D/YYYY`` (two-digit years are 20xx) or ISO ``YYYY-MM-DD[THH:MM[:SS]]``.

    Returns a naive UTC datetime, or None for sentinels and anything else.
    """
    if is_blank_date(value):
        return None
    text = value.strip()
    m = _SLASH_DATE.match(text)
    if m:
        month, day, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if year < 100:
            year += 2000
        try:
            return datetime(year, month, day)
        except ValueError:
            return None
    m = _ISO_DATE.match(text)
    if m:
        parts = [int(p) if p else 0 for p in m.groups()]
        try:
            return datetime(*parts)
        except ValueError:
            return None
    return None


def iso_date(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
