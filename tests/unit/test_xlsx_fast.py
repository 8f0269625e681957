from __future__ import annotations

import io
import zipfile

import pytest

from dealer_ingest.errors import DecodeError
from dealer_ingest.tabular.xlsx_fast import (
    ALL_SHEETS,
    ZipArchive,
    column_index,
    excel_serial_to_iso,
    is_date_format,
    read_workbook,
    sheet_names,
)

"""Fast reader tests against workbooks assembled part by part, so every
XML shape the reader must handle is spelled out explicitly."""

_WORKBOOK = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<workbook xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main"
 xmlns:r="http://schemas.openxmlformats.org/officeDocument/2006/relationships">
<sheets>
<sheet name="Jan 2024" sheetId="1" r:id="rId1"/>
<sheet name="Notes &amp; Totals" sheetId="2" r:id="rId2"/>
</sheets>
</workbook>"""

_RELS = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">
<Relationship Id="rId1" Type="worksheet" Target="worksheets/sheet1.xml"/>
<Relationship Id="rId2" Type="worksheet" Target="/xl/worksheets/other.xml"/>
</Relationships>"""

_SHARED = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<sst xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main" count="4" uniqueCount="4">
<si><t>Dealership</t></si>
<si><r><rPr><b/></rPr><t>Pur</t></r><r><t xml:space="preserve">chased</t></r></si>
<si><t>Line_x000A_Break</t><rPh sb="0" eb="1"><t>IGNORED</t></rPh></si>
<si><t/></si>
</sst>"""

_STYLES = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<styleSheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main">
<numFmts count="2">
<numFmt numFmtId="164" formatCode="yyyy\\-mm\\-dd\\ hh:mm"/>
<numFmt numFmtId="165" formatCode="&quot;Qty&quot;\\ 0.00"/>
</numFmts>
<cellXfs count="4">
<xf numFmtId="0" fontId="0"/>
<xf numFmtId="14" fontId="0" applyNumberFormat="1"/>
<xf numFmtId="164" fontId="0" applyNumberFormat="1"/>
<xf numFmtId="165" fontId="0" applyNumberFormat="1"/>
</cellXfs>
</styleSheet>"""

_SHEET1 = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<worksheet xmlns="http://schemas.openxmlformats.org/spreadsheetml/2006/main"><sheetData>
<row r="1"><c r="A1" t="s"><v>0</v></c><c r="B1" t="s"><v>1</v></c></row>
<row r="2"><c r="A2" t="inlineStr"><is><t>Acura &amp; Co</t></is></c><c r="B2" s="1"><v>45292</v></c><c r="C2" t="b"><v>1</v></c><c r="E2" s="3"><v>12.50</v></c></row>
<row r="3"/>
<row r="4"><c r="A4" t="s"><v>2</v></c><c r="B4" s="2"><v>45292.5</v></c><c r="C4" t="str"><v>SUM(1)</v></c><c r="D4"/></row>
<row r="5"><c r="A5" t="s"><v>3</v></c><c r="B5" s="1"><v>1</v></c><c r="C5"><v>3.0</v></c><c r="D5" t="e"><v>#N/A</v></c></row>
</sheetData></worksheet>"""

_SHEET2 = """<?xml version="1.0" encoding="UTF-8" standalone="yes"?>
<x:worksheet xmlns:x="http://schemas.openxmlformats.org/spreadsheetml/2006/main"><x:sheetData>
<x:row><x:c><x:v>1</x:v></x:c><x:c><x:v>2</x:v></x:c></x:row>
</x:sheetData></x:worksheet>"""


def _zip(parts: dict[str, str], compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, text in parts.items():
            zf.writestr(name, text)
    return buf.getvalue()


def _workbook(compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    return _zip(
        {
            "[Content_Types].xml": "<Types/>",
            "xl/workbook.xml": _WORKBOOK,
            "xl/_rels/workbook.xml.rels": _RELS,
            "xl/sharedStrings.xml": _SHARED,
            "xl/styles.xml": _STYLES,
            "xl/worksheets/sheet1.xml": _SHEET1,
            "xl/worksheets/other.xml": _SHEET2,
        },
        compression,
    )


@pytest.mark.parametrize("compression", [zipfile.ZIP_DEFLATED, zipfile.ZIP_STORED])
def test_first_sheet_cells(compression):
    (sheet,) = read_workbook(_workbook(compression))
    assert sheet.name == "Jan 2024"
    assert sheet.width == 5
    assert sheet.rows == [
        ["Dealership", "Purchased", "", "", ""],
        ["Acura & Co", "2024-01-01", "TRUE", "", "12.5"],
        ["", "", "", "", ""],
        ["Line\nBreak", "2024-01-01T12:00:00", "SUM(1)", "", ""],
        ["", "1900-01-01", "3", "#N/A", ""],
    ]


def test_all_sheets_and_absolute_targets():
    sheets = read_workbook(_workbook(), ALL_SHEETS)
    assert [s.name for s in sheets] == ["Jan 2024", "Notes & Totals"]
    # cells without an r attribute fill left to right
    assert sheets[1].rows == [["1", "2"]]


def test_named_sheet_selection():
    (sheet,) = read_workbook(_workbook(), "Notes & Totals")
    assert sheet.rows == [["1", "2"]]
    with pytest.raises(DecodeError, match="sheet not found"):
        read_workbook(_workbook(), "Feb 2024")


def test_sheet_names():
    assert sheet_names(_workbook()) == ["Jan 2024", "Notes & Totals"]


def test_missing_rels_fall_back_to_positional_parts():
    data = _zip({
        "xl/workbook.xml": _WORKBOOK,
        "xl/worksheets/sheet1.xml": _SHEET2,
    })
    (sheet,) = read_workbook(data)
    assert sheet.rows == [["1", "2"]]


def test_shared_string_out_of_range():
    sheet = _SHEET1.replace("<v>2</v></c><c r=\"B4\"", "<v>99</v></c><c r=\"B4\"")
    data = _zip({"xl/workbook.xml": _WORKBOOK, "xl/_rels/workbook.xml.rels": _RELS,
                 "xl/sharedStrings.xml": _SHARED, "xl/worksheets/sheet1.xml": sheet})
    with pytest.raises(DecodeError, match="shared string index"):
        read_workbook(data)


def test_not_a_zip():
    with pytest.raises(DecodeError, match="not a zip archive"):
        ZipArchive(b"Dealership,Units\nAcura,1\n")


def test_zip_without_workbook_part():
    with pytest.raises(DecodeError, match="workbook.xml missing"):
        read_workbook(_zip({"word/document.xml": "<doc/>"}))


def test_archive_reads_named_entries():
    archive = ZipArchive(_workbook())
    assert archive.has("xl/styles.xml")
    assert "cellXfs" in archive.read_text("xl/styles.xml")
    with pytest.raises(DecodeError, match="archive entry missing"):
        archive.read("xl/missing.xml")


@pytest.mark.parametrize(
    "ref,expected",
    [("A1", 0), ("Z9", 25), ("AA1", 26), ("AB7", 27), ("$C$3", 2), ("XFD1048576", 16383), ("", None), ("1A", None)],
)
def test_column_index(ref, expected):
    assert column_index(ref) == expected


@pytest.mark.parametrize(
    "code,expected",
    [
        ("yyyy-mm-dd", True),
        ("m/d/yy h:mm", True),
        ("[h]:mm:ss", True),
        ("dd\\-mmm", True),
        ("0.00", False),
        ("#,##0", False),
        ('"Qty" 0.00', False),
        ("[Red]0.00", False),
        ("General", False),
        ("", False),
    ],
)
def test_is_date_format(code, expected):
    assert is_date_format(code) is expected


@pytest.mark.parametrize(
    "serial,expected",
    [
        (1, "1900-01-01"),
        (59, "1900-02-28"),
        (61, "1900-03-01"),
        (45292, "2024-01-01"),
        (45292.25, "2024-01-01T06:00:00"),
        (45291.99999999, "2024-01-01"),
    ],
)
def test_excel_serial_to_iso(serial, expected):
    assert excel_serial_to_iso(serial) == expected
