from __future__ import annotations

import copy
import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from .collections import get_collection
from .document_store import (
    BulkWriteError,
    BulkWriteResult,
    DocumentValidationError,
    DuplicateKeyError,
    SortSpec,
    StoreError,
    UpdateOne,
    WriteError,
    apply_update,
    build_upsert_document,
    match_filter,
    new_id,
    shape_results,
)

"""In-process DocumentStore.

Thread-safe (single RLock), with the same natural-key uniqueness and
validation semantics as the Postgres adapter. Used by the test-suite and
by ``DISABLE_DB_CONNECT=1`` runs.
"""

__all__ = [
    "MemoryDocumentStore",
]


class MemoryDocumentStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        # collection -> natural key -> document
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        self.bulk_calls: list[tuple[str, int]] = []

    def _coll(self, collection: str) -> dict[str, dict[str, Any]]:
        get_collection(collection)
        return self._data.setdefault(collection, {})

    def _matching(self, collection: str, filter: Mapping[str, Any] | None) -> list[tuple[str, dict[str, Any]]]:
        coll = self._coll(collection)
        spec = get_collection(collection)
        key = spec.key_from_filter(filter or {})
        if key is not None:
            doc = coll.get(key)
            if doc is not None and match_filter(doc, filter):
                return [(key, doc)]
            return []
        return [(k, d) for k, d in coll.items() if match_filter(d, filter)]

    def _store(self, collection: str, old_key: str | None, doc: dict[str, Any]) -> None:
        spec = get_collection(collection)
        spec.validate(doc)
        coll = self._coll(collection)
        new_key = spec.natural_key(doc)
        if new_key is None:
            raise DocumentValidationError(f"{collection}: natural key {spec.key_fields} missing")
        if new_key != old_key and new_key in coll:
            raise DuplicateKeyError(f"{collection}: duplicate key {new_key}")
        if old_key is not None and old_key != new_key:
            coll.pop(old_key, None)
        coll[new_key] = doc

    def find(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
        limit: int | None = None,
        projection: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            docs = [copy.deepcopy(d) for _, d in self._matching(collection, filter)]
        return shape_results(docs, sort=sort, limit=limit, projection=projection)

    def find_one(self, collection: str, filter: Mapping[str, Any]) -> dict[str, Any] | None:
        found = self.find(collection, filter, limit=1)
        return found[0] if found else None

    def find_one_and_update(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> dict[str, Any] | None:
        with self._lock:
            return copy.deepcopy(self._update_one(collection, filter, update, upsert=upsert)[1])

    def _update_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool,
    ) -> tuple[str, dict[str, Any] | None]:
        """Returns (outcome, document) where outcome is matched/upserted/none."""
        found = self._matching(collection, filter)
        if found:
            key, current = found[0]
            candidate = apply_update(copy.deepcopy(current), update, inserting=False)
            candidate["_id"] = current["_id"]
            self._store(collection, key, candidate)
            return "matched", candidate
        if not upsert:
            return "none", None
        candidate = build_upsert_document(filter, update)
        self._store(collection, None, candidate)
        return "upserted", candidate

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> str:
        doc = copy.deepcopy(dict(document))
        doc.setdefault("_id", new_id())
        with self._lock:
            self._store(collection, None, doc)
        return doc["_id"]

    def bulk_write(self, collection: str, operations: Sequence[UpdateOne]) -> BulkWriteResult:
        result = BulkWriteResult()
        with self._lock:
            self.bulk_calls.append((collection, len(operations)))
            for index, op in enumerate(operations):
                try:
                    outcome, _ = self._update_one(collection, op.filter, op.update, upsert=op.upsert)
                except StoreError as exc:
                    result.write_errors.append(WriteError(index=index, message=str(exc)))
                    continue
                if outcome == "matched":
                    result.matched_count += 1
                    result.modified_count += 1
                elif outcome == "upserted":
                    result.upserted_count += 1
        if result.write_errors:
            raise BulkWriteError(result)
        return result

    def delete_many(self, collection: str, filter: Mapping[str, Any]) -> int:
        with self._lock:
            coll = self._coll(collection)
            doomed = [k for k, _ in self._matching(collection, filter)]
            for key in doomed:
                del coll[key]
        return len(doomed)

    def count_documents(self, collection: str, filter: Mapping[str, Any] | None = None) -> int:
        with self._lock:
            return len(self._matching(collection, filter))

    def close(self) -> None:
        pass

