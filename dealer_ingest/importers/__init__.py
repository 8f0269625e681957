"""Per-source importers for the dealer portal ingestion pipeline."""

from .base import ColumnBinding, ImportContext, Importer, RowErrorLog, SourceSchema, StatsImporter
from .billing import BillingImporter, billing_dealer_code
from .campaign import CampaignResultsImporter, CampaignRollup
from .contracts import ContractsImporter, contract_status, plan_for_coverage
from .dealers import DealerMasterImporter
from .matching import DealerNameMatcher, normalize_name
from .registry import IMPORTERS, get_importer
from .units import UnitsImporter
from .zie import ZieImporter

__all__ = [
    # Contract
    "Importer",
    "StatsImporter",
    "ImportContext",
    "SourceSchema",
    "ColumnBinding",
    "RowErrorLog",
    # Sources
    "DealerMasterImporter",
    "ContractsImporter",
    "UnitsImporter",
    "ZieImporter",
    "BillingImporter",
    "CampaignResultsImporter",
    "CampaignRollup",
    "IMPORTERS",
    "get_importer",
    # Helpers
    "DealerNameMatcher",
    "normalize_name",
    "contract_status",
    "plan_for_coverage",
    "billing_dealer_code",
]
