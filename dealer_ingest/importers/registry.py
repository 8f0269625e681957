from __future__ import annotations

from dealer_ingest.errors import UnsupportedFileError
from dealer_ingest.models.file_types import FileType, parse_file_type

from .base import Importer
from .billing import BillingImporter
from .campaign import CampaignResultsImporter
from .contracts import ContractsImporter
from .dealers import DealerMasterImporter
from .units import UnitsImporter
from .zie import ZieImporter

"""File type -> importer lookup."""

__all__ = [
    "IMPORTERS",
    "get_importer",
]

IMPORTERS: dict[FileType, type[Importer]] = {
    FileType.DEALER_MASTER: DealerMasterImporter,
    FileType.CONTRACTS: ContractsImporter,
    FileType.UNITS: UnitsImporter,
    FileType.SERVICE_EI: ZieImporter,
    FileType.BILLING: BillingImporter,
    FileType.CAMPAIGN_RESULTS: CampaignResultsImporter,
}


def get_importer(file_type: FileType | str) -> Importer:
    kind = parse_file_type(file_type)
    try:
        return IMPORTERS[kind]()
    except KeyError:
        raise UnsupportedFileError(f"no importer for file type: {kind.value}") from None
