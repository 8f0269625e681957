from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .import_job import isoformat, parse_timestamp, utcnow

"""UploadChunk model: one byte range of one in-flight upload."""

__all__ = [
    "UploadChunk",
]


@dataclass(frozen=True)
class UploadChunk:
    upload_id: str
    chunk_index: int
    data: bytes
    touched_at: datetime = field(default_factory=utcnow)

    def to_document(self) -> dict[str, Any]:
        return {
            "upload_id": self.upload_id,
            "chunk_index": self.chunk_index,
            "data": self.data,
            "size": len(self.data),
            "touched_at": isoformat(self.touched_at),
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> UploadChunk:
        return cls(
            upload_id=doc["upload_id"],
            chunk_index=int(doc["chunk_index"]),
            data=bytes(doc["data"]),
            touched_at=parse_timestamp(doc.get("touched_at")) or utcnow(),
        )
