from __future__ import annotations

import codecs
import csv
import io

import pandas as pd

from dealer_ingest.errors import DecodeError

"""Delimited-text reader.

Cells are read with ``dtype=str`` and ``keep_default_na=False`` so nothing
is coerced: "00123" stays "00123", "NA" stays "NA". Input is decoded as
UTF-8 (BOM stripped) with a Latin-1 retry for legacy exports.
"""

__all__ = [
    "read_delimited",
]


def _decode_text(buffer: bytes) -> str:
    if buffer.startswith(codecs.BOM_UTF8):
        buffer = buffer[len(codecs.BOM_UTF8):]
    try:
        return buffer.decode("utf-8")
    except UnicodeDecodeError:
        return buffer.decode("latin-1")


def _max_width(text: str, delimiter: str) -> int:
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    return max((len(r) for r in reader), default=0)


def read_delimited(buffer: bytes, delimiter: str = ",") -> list[list[str]]:
    """Parse ``buffer`` into a grid of strings (header row included).

    Rows shorter than the widest row are padded with "". Blank lines are
    skipped.
    """
    text = _decode_text(bytes(buffer))
    if not text.strip():
        return []
    try:
        width = _max_width(text, delimiter)
        df = pd.read_csv(
            io.StringIO(text),
            sep=delimiter,
            header=None,
            names=list(range(width)),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python" if len(delimiter) > 1 else "c",
        )
    except (pd.errors.ParserError, csv.Error, ValueError) as e:
        raise DecodeError(f"delimited text could not be parsed: {e}") from e
    df = df.fillna("")
    return df.values.tolist()
