from __future__ import annotations

from enum import Enum
from pathlib import PurePath

from dealer_ingest.errors import UnsupportedFileError

"""Declared source file types and on-disk formats."""

__all__ = [
    "FileType",
    "FileKind",
    "file_kind_for",
    "parse_file_type",
    "PERIOD_SCOPED_TYPES",
]


class FileType(Enum):
    """Third-party export a file was declared as at upload time."""
    DEALER_MASTER = "dealers"
    CONTRACTS = "contracts"
    UNITS = "units"
    SERVICE_EI = "zie"
    BILLING = "billing"
    CAMPAIGN_RESULTS = "campaign_results"


class FileKind(Enum):
    CSV = "csv"
    XLSX = "xlsx"
    XLS = "xls"


# Stats sources write into a (dealer, year, month) record
PERIOD_SCOPED_TYPES = frozenset({
    FileType.UNITS,
    FileType.SERVICE_EI,
    FileType.BILLING,
    FileType.CAMPAIGN_RESULTS,
})

_ALIASES = {
    "dealer-master": FileType.DEALER_MASTER,
    "dealer_master": FileType.DEALER_MASTER,
    "service-exterior-interior": FileType.SERVICE_EI,
    "campaign-results": FileType.CAMPAIGN_RESULTS,
    "autopoint": FileType.CAMPAIGN_RESULTS,
}


def parse_file_type(value: str | FileType) -> FileType:
    if isinstance(value, FileType):
        return value
    key = (value or "").strip().lower()
    try:
        return FileType(key)
    except ValueError:
        if key in _ALIASES:
            return _ALIASES[key]
        raise UnsupportedFileError(f"unknown file type: {value!r}") from None


def file_kind_for(filename: str, allowed_extensions: tuple[str, ...] = (".csv", ".xls", ".xlsx")) -> FileKind:
    """Map a filename to its tabular format, rejecting anything else."""
    suffix = PurePath(filename or "").suffix.lower()
    if not suffix or suffix not in allowed_extensions:
        raise UnsupportedFileError(
            f"only {', '.join(allowed_extensions)} files are allowed (got {filename!r})"
        )
    if suffix == ".xlsx":
        return FileKind.XLSX
    if suffix == ".xls":
        return FileKind.XLS
    return FileKind.CSV
