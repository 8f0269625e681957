from __future__ import annotations

import html
import math
import re
import struct
import zlib
from dataclasses import dataclass, field
from datetime import date, timedelta

from dealer_ingest.errors import DecodeError

"""Fast-path .xlsx reader.

Reads only what an import needs, without building a workbook object model:

1. Locate the End Of Central Directory record in the archive tail and walk
   the central directory to index entries (no full-archive scan).
2. Inflate only ``xl/workbook.xml``, its rels, ``xl/sharedStrings.xml``,
   ``xl/styles.xml`` and the selected worksheet(s), raw deflate
   (``wbits=-15``) or stored.
3. Regex-extract shared strings, number formats and cell styles; decide
   which style indices are dates.
4. Walk ``<row>``/``<c>`` elements and emit padded rows of strings.

Date-styled numeric cells follow the 1900 date system, including the
fictitious 1900-02-29 (serial 60), and render as ``YYYY-MM-DD`` (plus
``THH:MM:SS`` when there is a time part).
"""

__all__ = [
    "SheetTable",
    "ZipArchive",
    "read_workbook",
    "sheet_names",
    "is_date_format",
    "excel_serial_to_iso",
    "column_index",
    "ALL_SHEETS",
]

ALL_SHEETS = "*"

_EOCD_SIG = 0x06054B50
_CDH_SIG = 0x02014B50
_LFH_SIG = 0x04034B50
_EOCD_MIN = 22
_MAX_COMMENT = 0xFFFF

# Built-in number format ids that Excel renders as dates/times
_BUILTIN_DATE_IDS = frozenset(
    list(range(14, 23)) + list(range(27, 37)) + list(range(45, 48)) + list(range(50, 59))
)

_SHEET_TAG = re.compile(r"<(?:\w+:)?sheet\b([^>]*?)/?>")
_REL_TAG = re.compile(r"<(?:\w+:)?Relationship\b([^>]*?)/?>")
_ATTR = re.compile(r'([\w:]+)\s*=\s*"([^"]*)"')
_SI = re.compile(r"<(?:\w+:)?si\b[^>]*?(?:/>|>(.*?)</(?:\w+:)?si>)", re.S)
_T = re.compile(r"<(?:\w+:)?t\b[^>]*?(?:/>|>(.*?)</(?:\w+:)?t>)", re.S)
_RPH = re.compile(r"<(?:\w+:)?rPh\b.*?</(?:\w+:)?rPh>", re.S)
_NUMFMT = re.compile(r"<(?:\w+:)?numFmt\b([^>]*?)/?>")
_CELLXFS = re.compile(r"<(?:\w+:)?cellXfs\b[^>]*>(.*?)</(?:\w+:)?cellXfs>", re.S)
_XF = re.compile(r"<(?:\w+:)?xf\b([^>]*?)/?>")
_SHEETDATA = re.compile(r"<(?:\w+:)?sheetData\b[^>]*?(?:/>|>(.*?)</(?:\w+:)?sheetData>)", re.S)
_ROW = re.compile(r"<(?:\w+:)?row\b([^>]*?)(?:/>|>(.*?)</(?:\w+:)?row>)", re.S)
_CELL = re.compile(r"<(?:\w+:)?c\b([^>]*?)(?:/>|>(.*?)</(?:\w+:)?c>)", re.S)
_V = re.compile(r"<(?:\w+:)?v\b[^>/]*>(.*?)</(?:\w+:)?v>", re.S)
_IS = re.compile(r"<(?:\w+:)?is\b[^>]*>(.*?)</(?:\w+:)?is>", re.S)
_ESCAPED_CHAR = re.compile(r"_x([0-9A-Fa-f]{4})_")
_CELL_REF = re.compile(r"^\$?([A-Za-z]{1,3})\$?\d*$")
_INTEGER = re.compile(r"^-?\d+$")


@dataclass
class SheetTable:
    name: str
    rows: list[list[str]] = field(default_factory=list)

    @property
    def width(self) -> int:
        return max((len(r) for r in self.rows), default=0)


@dataclass(frozen=True)
class _Entry:
    name: str
    method: int
    compressed_size: int
    size: int
    header_offset: int


class ZipArchive:
    """Minimal zip directory reader over an in-memory buffer."""

    def __init__(self, buffer: bytes) -> None:
        self._buf = memoryview(buffer)
        self.entries: dict[str, _Entry] = {}
        self._index()

    def _find_eocd(self) -> int:
        buf = self._buf
        start = max(0, len(buf) - (_EOCD_MIN + _MAX_COMMENT))
        tail = bytes(buf[start:])
        pos = tail.rfind(struct.pack("<I", _EOCD_SIG))
        while pos >= 0:
            if pos + _EOCD_MIN <= len(tail):
                return start + pos
            pos = tail.rfind(struct.pack("<I", _EOCD_SIG), 0, pos)
        raise DecodeError("not a zip archive: end of central directory not found", offset=start)

    def _index(self) -> None:
        buf = self._buf
        eocd = self._find_eocd()
        (_, _, _, _, count, cd_size, cd_offset, _) = struct.unpack_from("<IHHHHIIH", buf, eocd)
        if count == 0xFFFF or cd_offset == 0xFFFFFFFF:
            raise DecodeError("zip64 archives are not supported by the fast reader", offset=eocd)
        if cd_offset + cd_size > len(buf):
            raise DecodeError("central directory lies outside the archive", offset=cd_offset)
        pos = cd_offset
        for _ in range(count):
            if pos + 46 > len(buf):
                raise DecodeError("truncated central directory", offset=pos)
            fields = struct.unpack_from("<IHHHHHHIIIHHHHHII", buf, pos)
            if fields[0] != _CDH_SIG:
                raise DecodeError("bad central directory signature", offset=pos)
            method, csize, usize = fields[4], fields[8], fields[9]
            name_len, extra_len, comment_len = fields[10], fields[11], fields[12]
            header_offset = fields[16]
            name = bytes(buf[pos + 46:pos + 46 + name_len]).decode("utf-8", "replace")
            self.entries[name] = _Entry(name, method, csize, usize, header_offset)
            pos += 46 + name_len + extra_len + comment_len

    def has(self, name: str) -> bool:
        return name in self.entries

    def read(self, name: str) -> bytes:
        entry = self.entries.get(name)
        if entry is None:
            raise DecodeError(f"archive entry missing: {name}")
        buf = self._buf
        pos = entry.header_offset
        if pos + 30 > len(buf) or struct.unpack_from("<I", buf, pos)[0] != _LFH_SIG:
            raise DecodeError(f"bad local header for {name}", offset=pos)
        name_len, extra_len = struct.unpack_from("<HH", buf, pos + 26)
        data_start = pos + 30 + name_len + extra_len
        data = bytes(buf[data_start:data_start + entry.compressed_size])
        if entry.method == 0:
            return data
        if entry.method == 8:
            try:
                inflater = zlib.decompressobj(-15)
                out = inflater.decompress(data)
                out += inflater.flush()
            except zlib.error as e:
                raise DecodeError(f"inflate failed for {name}: {e}", offset=data_start) from e
            return out
        raise DecodeError(f"unsupported compression method {entry.method} for {name}", offset=pos)

    def read_text(self, name: str) -> str:
        return self.read(name).decode("utf-8", "replace")


def _attrs(fragment: str) -> dict[str, str]:
    out = {}
    for key, value in _ATTR.findall(fragment):
        out[key] = value
        if ":" in key:
            out.setdefault(key.split(":", 1)[1], value)
    return out


def _unescape(text: str) -> str:
    text = html.unescape(text)
    return _ESCAPED_CHAR.sub(lambda m: chr(int(m.group(1), 16)), text)


def column_index(ref: str) -> int | None:
    """Zero-based column for a cell reference: "A1" -> 0, "AB7" -> 27."""
    m = _CELL_REF.match(ref or "")
    if not m:
        return None
    idx = 0
    for ch in m.group(1).upper():
        idx = idx * 26 + (ord(ch) - 64)
    return idx - 1


def is_date_format(code: str) -> bool:
    """True when a custom number format code renders a date or time."""
    stripped = re.sub(r'"[^"]*"', "", code)
    stripped = re.sub(r"\[[^\]]*\]", "", stripped)
    stripped = re.sub(r"\\.", "", stripped)
    stripped = re.sub(r"_.|\*.", "", stripped)
    if not stripped or stripped.lower() == "general":
        return False
    return re.search(r"[dmyh]", stripped, re.I) is not None


def excel_serial_to_iso(serial: float) -> str:
    """Convert a 1900-system serial to ``YYYY-MM-DD[THH:MM:SS]``.

    Serial 1 is 1900-01-01. Excel treats 1900 as a leap year, so serials
    from 61 on are shifted one day and serial 60 collapses onto 1900-02-28.
    """
    days = math.floor(serial)
    seconds = round((serial - days) * 86400)
    if seconds >= 86400:
        days += 1
        seconds -= 86400
    if days < 60:
        day = date(1899, 12, 31) + timedelta(days=days)
    else:
        day = date(1899, 12, 30) + timedelta(days=days)
    out = day.isoformat()
    if seconds:
        h, rem = divmod(seconds, 3600)
        m, s = divmod(rem, 60)
        out += f"T{h:02d}:{m:02d}:{s:02d}"
    return out


def _format_number(text: str) -> str:
    text = text.strip()
    if _INTEGER.match(text):
        return text
    try:
        value = float(text)
    except ValueError:
        return text
    if math.isfinite(value) and value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return format(value, ".15g")


class _Workbook:
    def __init__(self, archive: ZipArchive) -> None:
        self.archive = archive
        self.sheets = self._sheet_targets()
        self.shared = self._shared_strings()
        self.date_styles = self._date_styles()

    def _sheet_targets(self) -> list[tuple[str, str]]:
        if not self.archive.has("xl/workbook.xml"):
            raise DecodeError("xl/workbook.xml missing; not a spreadsheet archive")
        workbook = self.archive.read_text("xl/workbook.xml")
        rels: dict[str, str] = {}
        if self.archive.has("xl/_rels/workbook.xml.rels"):
            for frag in _REL_TAG.findall(self.archive.read_text("xl/_rels/workbook.xml.rels")):
                a = _attrs(frag)
                if "Id" in a and "Target" in a:
                    rels[a["Id"]] = a["Target"]
        out = []
        for position, frag in enumerate(_SHEET_TAG.findall(workbook), start=1):
            a = _attrs(frag)
            name = _unescape(a.get("name", f"Sheet{position}"))
            target = rels.get(a.get("r:id", a.get("id", "")), f"worksheets/sheet{position}.xml")
            if target.startswith("/"):
                path = target.lstrip("/")
            else:
                path = "xl/" + target
            out.append((name, path))
        return out

    def _shared_strings(self) -> list[str]:
        if not self.archive.has("xl/sharedStrings.xml"):
            return []
        xml = self.archive.read_text("xl/sharedStrings.xml")
        out = []
        for m in _SI.finditer(xml):
            body = _RPH.sub("", m.group(1) or "")
            out.append(_unescape("".join(t.group(1) or "" for t in _T.finditer(body))))
        return out

    def _date_styles(self) -> frozenset[int]:
        if not self.archive.has("xl/styles.xml"):
            return frozenset()
        xml = self.archive.read_text("xl/styles.xml")
        custom_dates = set()
        for frag in _NUMFMT.findall(xml):
            a = _attrs(frag)
            try:
                fmt_id = int(a.get("numFmtId", ""))
            except ValueError:
                continue
            if is_date_format(_unescape(a.get("formatCode", ""))):
                custom_dates.add(fmt_id)
        m = _CELLXFS.search(xml)
        if not m:
            return frozenset()
        styles = set()
        for idx, frag in enumerate(_XF.findall(m.group(1))):
            try:
                fmt_id = int(_attrs(frag).get("numFmtId", "0"))
            except ValueError:
                continue
            if fmt_id in _BUILTIN_DATE_IDS or fmt_id in custom_dates:
                styles.add(idx)
        return frozenset(styles)

    def _cell_value(self, attrs: dict[str, str], body: str, sheet: str) -> str:
        kind = attrs.get("t", "n")
        if kind == "inlineStr":
            m = _IS.search(body)
            inner = _RPH.sub("", m.group(1)) if m else ""
            return _unescape("".join(t.group(1) or "" for t in _T.finditer(inner)))
        vm = _V.search(body)
        raw = vm.group(1) if vm else ""
        if kind == "s":
            if raw == "":
                return ""
            try:
                return self.shared[int(raw)]
            except (ValueError, IndexError):
                raise DecodeError(
                    f"shared string index {raw!r} out of range at {attrs.get('r', '?')}", sheet=sheet
                ) from None
        if kind == "b":
            return "TRUE" if raw.strip() == "1" else "FALSE"
        if kind in ("str", "e", "d"):
            return _unescape(raw)
        if raw == "":
            return ""
        style = attrs.get("s")
        if style is not None and style.isdigit() and int(style) in self.date_styles:
            try:
                return excel_serial_to_iso(float(raw))
            except (ValueError, OverflowError):
                return _unescape(raw)
        return _format_number(_unescape(raw))

    def read_sheet(self, name: str, path: str) -> SheetTable:
        if not self.archive.has(path):
            raise DecodeError(f"worksheet part {path} missing", sheet=name)
        xml = self.archive.read_text(path)
        m = _SHEETDATA.search(xml)
        table = SheetTable(name=name)
        if not m or not m.group(1):
            return table
        for row_attrs, row_body in _ROW.findall(m.group(1)):
            cells: list[str] = []
            next_col = 0
            for cell_attrs, cell_body in _CELL.findall(row_body or ""):
                a = _attrs(cell_attrs)
                col = column_index(a.get("r", ""))
                if col is None:
                    col = next_col
                if col >= len(cells):
                    cells.extend([""] * (col + 1 - len(cells)))
                cells[col] = self._cell_value(a, cell_body or "", name)
                next_col = col + 1
            table.rows.append(cells)
        width = table.width
        for cells in table.rows:
            if len(cells) < width:
                cells.extend([""] * (width - len(cells)))
        return table


def sheet_names(buffer: bytes) -> list[str]:
    return [name for name, _ in _Workbook(ZipArchive(buffer)).sheets]


def read_workbook(buffer: bytes, sheet_selector: str | None = None) -> list[SheetTable]:
    """Decode worksheets from an .xlsx buffer.

    ``sheet_selector``: None for the first sheet, ``ALL_SHEETS`` for every
    sheet in workbook order, or a sheet name.
    """
    workbook = _Workbook(ZipArchive(buffer))
    if not workbook.sheets:
        raise DecodeError("workbook declares no sheets")
    if sheet_selector is None:
        targets = workbook.sheets[:1]
    elif sheet_selector == ALL_SHEETS:
        targets = workbook.sheets
    else:
        targets = [(n, p) for n, p in workbook.sheets if n == sheet_selector]
        if not targets:
            raise DecodeError("sheet not found", sheet=sheet_selector)
    return [workbook.read_sheet(name, path) for name, path in targets]
