from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from dealer_ingest.config.loader import UploadConfig
from dealer_ingest.db.collections import UPLOAD_CHUNKS
from dealer_ingest.db.document_store import DocumentStore
from dealer_ingest.errors import ChunksIncompleteError, ChunksNotFoundError
from dealer_ingest.models.import_job import isoformat, utcnow
from dealer_ingest.models.upload_chunk import UploadChunk

"""Chunk assembler: durable staging for uploads split into pieces.

Chunks may arrive in any order and any index may be resent (the later copy
wins). ``finalize`` reassembles them in index order. Chunks that are never
finalized are removed by ``purge_expired`` once their TTL has passed.
"""

__all__ = [
    "ChunkAssembler",
    "new_upload_id",
    "validate_upload_id",
]

logger = logging.getLogger(__name__)

_UPLOAD_ID = re.compile(r"^[A-Za-z0-9_-]{8,128}$")


def new_upload_id() -> str:
    return secrets.token_urlsafe(24)


def validate_upload_id(upload_id: str) -> str:
    if not isinstance(upload_id, str) or not _UPLOAD_ID.match(upload_id):
        raise ValueError(f"invalid upload id: {upload_id!r}")
    return upload_id


class ChunkAssembler:
    def __init__(
        self,
        store: DocumentStore,
        config: UploadConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config or UploadConfig()
        self.clock = clock

    def store_chunk(self, upload_id: str, index: int, data: bytes) -> None:
        validate_upload_id(upload_id)
        if index < 0:
            raise ValueError(f"chunk index must be >= 0 (got {index})")
        chunk = UploadChunk(upload_id=upload_id, chunk_index=index, data=bytes(data), touched_at=self.clock())
        self.store.find_one_and_update(
            UPLOAD_CHUNKS,
            {"upload_id": upload_id, "chunk_index": index},
            {"$set": chunk.to_document()},
            upsert=True,
        )
        logger.debug("chunk stored upload=%s index=%d size=%d", upload_id, index, len(chunk.data))

    def finalize(self, upload_id: str, total_size_hint: int | None = None, discard: bool = True) -> bytes:
        """Concatenate the chunks of ``upload_id`` in index order.

        Raises:
            ChunksNotFoundError: no chunk exists for the upload id
            ChunksIncompleteError: indices are not exactly 0..N-1, or the
                assembled size differs from ``total_size_hint``
        """
        validate_upload_id(upload_id)
        docs = self.store.find(UPLOAD_CHUNKS, {"upload_id": upload_id}, sort=[("chunk_index", 1)])
        if not docs:
            raise ChunksNotFoundError(f"no chunks found for upload {upload_id}; upload the file again")
        chunks = [UploadChunk.from_document(d) for d in docs]
        indices = [c.chunk_index for c in chunks]
        if indices != list(range(len(chunks))):
            missing = sorted(set(range(max(indices) + 1)) - set(indices))
            raise ChunksIncompleteError(
                f"upload {upload_id} is incomplete: missing chunk(s) {missing[:10]}"
            )
        data = b"".join(c.data for c in chunks)
        if total_size_hint is not None and len(data) != total_size_hint:
            raise ChunksIncompleteError(
                f"upload {upload_id} assembled to {len(data)} bytes, expected {total_size_hint}"
            )
        if discard:
            self.discard(upload_id)
        return data

    def discard(self, upload_id: str) -> int:
        validate_upload_id(upload_id)
        removed = self.store.delete_many(UPLOAD_CHUNKS, {"upload_id": upload_id})
        if removed:
            logger.debug("discarded %d chunk(s) for upload %s", removed, upload_id)
        return removed

    def has_chunks(self, upload_id: str) -> bool:
        validate_upload_id(upload_id)
        return self.store.count_documents(UPLOAD_CHUNKS, {"upload_id": upload_id}) > 0

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = (now or self.clock()) - timedelta(seconds=self.config.chunk_ttl_seconds)
        removed = self.store.delete_many(UPLOAD_CHUNKS, {"touched_at": {"$lt": isoformat(cutoff)}})
        if removed:
            logger.info("purged %d expired upload chunk(s)", removed)
        return removed
