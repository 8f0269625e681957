from __future__ import annotations

import copy
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

"""Generic document store contract shared by every pipeline component.

The pipeline only needs a small, Mongo-flavoured surface:

- find / find_one / count_documents with equality, ``$in``, ``$lt``,
  ``$lte``, ``$gt``, ``$ne`` and ``$exists`` filters on dotted paths
- find_one_and_update / bulk_write with ``$set``, ``$setOnInsert`` and
  ``$unset`` update documents, optionally upserting
- insert_one / delete_many

bulk_write is unordered: each operation is applied independently and a
failure of one operation never prevents the others. When at least one
operation failed the store raises BulkWriteError carrying the partial
result.
"""

__all__ = [
    "DocumentStore",
    "UpdateOne",
    "BulkWriteResult",
    "WriteError",
    "StoreError",
    "BulkWriteError",
    "DocumentValidationError",
    "DuplicateKeyError",
    "get_path",
    "set_path",
    "unset_path",
    "match_filter",
    "apply_update",
    "build_upsert_document",
    "new_id",
    "SortSpec",
    "shape_results",
]

SortSpec = Sequence[tuple[str, int]]

_FILTER_OPERATORS = {"$in", "$lt", "$lte", "$gt", "$gte", "$ne", "$exists"}
_UPDATE_OPERATORS = {"$set", "$setOnInsert", "$unset"}


class StoreError(Exception):
    pass


class DocumentValidationError(StoreError):
    pass


class DuplicateKeyError(StoreError):
    pass


@dataclass(frozen=True)
class WriteError:
    index: int  # position of the failed operation within the submitted list
    message: str


@dataclass
class BulkWriteResult:
    matched_count: int = 0
    modified_count: int = 0
    upserted_count: int = 0
    write_errors: list[WriteError] = field(default_factory=list)

    @property
    def ok_count(self) -> int:
        return self.matched_count + self.upserted_count


class BulkWriteError(StoreError):
    """Some operations of an unordered bulk write failed; the rest applied."""

    def __init__(self, result: BulkWriteResult) -> None:
        first = result.write_errors[0].message if result.write_errors else ""
        super().__init__(f"{len(result.write_errors)} write error(s); first: {first}")
        self.result = result

    @property
    def write_errors(self) -> list[WriteError]:
        return self.result.write_errors


@dataclass(frozen=True)
class UpdateOne:
    filter: dict[str, Any]
    update: dict[str, Any]
    upsert: bool = True


class DocumentStore(Protocol):
    def find(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
        limit: int | None = None,
        projection: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]: ...

    def find_one(self, collection: str, filter: Mapping[str, Any]) -> dict[str, Any] | None: ...

    def find_one_and_update(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> dict[str, Any] | None: ...

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> str: ...

    def bulk_write(self, collection: str, operations: Sequence[UpdateOne]) -> BulkWriteResult: ...

    def delete_many(self, collection: str, filter: Mapping[str, Any]) -> int: ...

    def count_documents(self, collection: str, filter: Mapping[str, Any] | None = None) -> int: ...

    def close(self) -> None: ...


def new_id() -> str:
    return uuid.uuid4().hex


_MISSING = object()


def get_path(doc: Mapping[str, Any], path: str, default: Any = None) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def unset_path(doc: dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        current = current.get(part) if isinstance(current, dict) else None
        if current is None:
            return
    if isinstance(current, dict):
        current.pop(parts[-1], None)


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, Mapping) and bool(value) and all(str(k).startswith("$") for k in value)


def _match_condition(actual: Any, condition: Any) -> bool:
    if not _is_operator_dict(condition):
        if condition is None:
            return actual is None or actual is _MISSING
        return actual is not _MISSING and actual == condition
    for op, operand in condition.items():
        if op not in _FILTER_OPERATORS:
            raise StoreError(f"unsupported filter operator: {op}")
        present = actual is not _MISSING and actual is not None
        if op == "$exists":
            if bool(operand) != (actual is not _MISSING):
                return False
        elif op == "$in":
            if actual is _MISSING or actual not in list(operand):
                return False
        elif op == "$ne":
            if actual is not _MISSING and actual == operand:
                return False
        else:
            if not present:
                return False
            try:
                if op == "$lt" and not actual < operand:
                    return False
                if op == "$lte" and not actual <= operand:
                    return False
                if op == "$gt" and not actual > operand:
                    return False
                if op == "$gte" and not actual >= operand:
                    return False
            except TypeError:
                return False
    return True


def match_filter(doc: Mapping[str, Any], filter: Mapping[str, Any] | None) -> bool:
    if not filter:
        return True
    for path, condition in filter.items():
        if not _match_condition(get_path(doc, path, _MISSING), condition):
            return False
    return True


def apply_update(doc: dict[str, Any], update: Mapping[str, Any], *, inserting: bool) -> dict[str, Any]:
    """Apply an operator update to ``doc`` in place and return it."""
    unknown = set(update) - _UPDATE_OPERATORS
    if unknown:
        raise StoreError(f"unsupported update operator(s): {sorted(unknown)}")
    if inserting:
        for path, value in (update.get("$setOnInsert") or {}).items():
            set_path(doc, path, copy.deepcopy(value))
    for path, value in (update.get("$set") or {}).items():
        set_path(doc, path, copy.deepcopy(value))
    for path in (update.get("$unset") or {}):
        unset_path(doc, path)
    return doc


def build_upsert_document(filter: Mapping[str, Any], update: Mapping[str, Any]) -> dict[str, Any]:
    """Seed a new document from the equality parts of ``filter`` then apply ``update``."""
    doc: dict[str, Any] = {"_id": new_id()}
    for path, condition in filter.items():
        if not _is_operator_dict(condition):
            set_path(doc, path, copy.deepcopy(condition))
    return apply_update(doc, update, inserting=True)


def _sort_key(value: Any) -> tuple[int, Any]:
    # missing values sort first
    if value is None:
        return (0, 0)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (1, value)
    return (2, str(value))


def shape_results(
    docs: list[dict[str, Any]],
    *,
    sort: SortSpec | None = None,
    limit: int | None = None,
    projection: Iterable[str] | None = None,
) -> list[dict[str, Any]]:
    """Apply sort (stable, multi-key), limit and projection to fetched documents."""
    for path, direction in reversed(list(sort or [])):
        docs.sort(key=lambda d: _sort_key(get_path(d, path)), reverse=direction < 0)
    if limit is not None:
        docs = docs[:limit]
    if projection is not None:
        wanted = set(projection) | {"_id"}
        docs = [{k: v for k, v in d.items() if k in wanted} for d in docs]
    return docs
