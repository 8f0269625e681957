"""Document store adapters and the bulk upsert engine."""

from __future__ import annotations

import logging
import os

from dealer_ingest.config.loader import DatabaseConfig, resolve_dsn

from .batch_upsert import BatchMetrics, BulkUpsertResult, bulk_upsert
from .document_store import (
    BulkWriteError,
    BulkWriteResult,
    DocumentStore,
    DocumentValidationError,
    StoreError,
    UpdateOne,
)
from .memory_store import MemoryDocumentStore

__all__ = [
    "DocumentStore",
    "UpdateOne",
    "BulkWriteResult",
    "BulkWriteError",
    "StoreError",
    "DocumentValidationError",
    "MemoryDocumentStore",
    "open_store",
    "bulk_upsert",
    "BulkUpsertResult",
    "BatchMetrics",
]

logger = logging.getLogger(__name__)


def open_store(db_cfg: DatabaseConfig) -> DocumentStore:
    """Create the process-wide store handle.

    ``DISABLE_DB_CONNECT=1`` yields an in-memory store (tests, dry runs).
    """
    if os.getenv("DISABLE_DB_CONNECT") == "1":
        logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> memory store")
        return MemoryDocumentStore()
    from .pg_store import PostgresDocumentStore

    return PostgresDocumentStore(
        resolve_dsn(db_cfg),
        schema=db_cfg.schema or "public",
        min_connections=db_cfg.min_connections,
        max_connections=db_cfg.max_connections,
    )
