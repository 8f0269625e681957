from __future__ import annotations

import base64
import copy
import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, execute_values
from psycopg2.pool import ThreadedConnectionPool

from .collections import COLLECTIONS, CollectionSpec, get_collection
from .document_store import (
    BulkWriteError,
    BulkWriteResult,
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

"""PostgreSQL DocumentStore (JSONB documents, one table per collection).

Table layout::

    CREATE TABLE <schema>.<collection> (
        natural_key TEXT PRIMARY KEY,
        id          TEXT NOT NULL UNIQUE,
        doc         JSONB NOT NULL
    )

Plain equality filters are pushed down as JSONB containment (``doc @> ...``),
``$in`` as ``= ANY(...)`` and string ranges as ``doc->>field`` comparisons;
every filter is then evaluated on the fetched documents with the same
matcher the in-memory store uses, so both adapters agree on semantics.

bulk_write is one transaction per call: existing documents are locked with
``SELECT ... FOR UPDATE``, updates are applied and validated per operation,
and every valid result is written with a single
``INSERT ... VALUES %s ON CONFLICT (natural_key) DO UPDATE`` through
``psycopg2.extras.execute_values``. Invalid operations become write errors
without affecting the rest.

The connection pool is created once per process and shared by every
thread; each call borrows one connection for its own transaction.
"""

__all__ = [
    "PostgresDocumentStore",
]

logger = logging.getLogger(__name__)

_BINARY = "$binary"


def _encode(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {_BINARY: base64.b64encode(bytes(value)).decode("ascii")}
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_BINARY}:
            return base64.b64decode(value[_BINARY])
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def _equality_part(filter: Mapping[str, Any] | None) -> dict[str, Any]:
    """Containment document for the plain (non-None) equality conditions."""
    contained: dict[str, Any] = {}
    for path, condition in (filter or {}).items():
        if condition is None or isinstance(condition, Mapping):
            continue
        if isinstance(condition, (bytes, bytearray)):
            continue
        current = contained
        parts = path.split(".")
        for part in parts[:-1]:
            current = current.setdefault(part, {})
        current[parts[-1]] = condition
    return contained


_RANGE_OPERATORS = {"$lt": "<", "$lte": "<=", "$gt": ">", "$gte": ">="}


def _scalar_text(value: Any) -> str | None:
    """Text form ``doc->>`` yields for ``value``, None when it has no stable one."""
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _where(spec: CollectionSpec, filter: Mapping[str, Any] | None) -> tuple[sql.Composable, list[Any]]:
    """WHERE clause narrowing the rows ``filter`` can match.

    Equality goes into one containment test. ``$in`` on a single-field
    natural key uses the primary key index; ``$in`` on other top-level
    fields and string range operators compare ``doc->>field``. Anything
    else is left to ``match_filter`` on the fetched rows.
    """
    clauses: list[sql.Composable] = [sql.SQL("doc @> %s")]
    params: list[Any] = [Json(_equality_part(filter))]
    for path, condition in (filter or {}).items():
        if not isinstance(condition, Mapping) or "." in path:
            continue
        for op, operand in condition.items():
            if op == "$in":
                values = [_scalar_text(v) for v in operand]
                if None in values:
                    continue
                if spec.key_fields == (path,):
                    clauses.append(sql.SQL("natural_key = ANY(%s)"))
                    params.append(values)
                else:
                    clauses.append(sql.SQL("doc->>%s = ANY(%s)"))
                    params.extend([path, values])
            elif op in _RANGE_OPERATORS and isinstance(operand, str):
                clauses.append(sql.SQL('(doc->>%s) COLLATE "C" {} %s').format(sql.SQL(_RANGE_OPERATORS[op])))
                params.extend([path, operand])
    return sql.SQL(" AND ").join(clauses), params


class PostgresDocumentStore:
    def __init__(
        self,
        dsn: str,
        *,
        schema: str = "public",
        min_connections: int = 1,
        max_connections: int = 8,
        ensure_schema: bool = True,
    ) -> None:
        self._schema = schema
        self._pool = ThreadedConnectionPool(min_connections, max_connections, dsn)
        if ensure_schema:
            self.ensure_schema()

    def _table(self, spec: CollectionSpec) -> sql.Composed:
        return sql.SQL("{}.{}").format(sql.Identifier(self._schema), sql.Identifier(spec.name))

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        conn = self._pool.getconn()
        try:
            with conn.cursor() as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(self._schema)))
            for spec in COLLECTIONS.values():
                cur.execute(
                    sql.SQL(
                        "CREATE TABLE IF NOT EXISTS {} ("
                        " natural_key TEXT PRIMARY KEY,"
                        " id TEXT NOT NULL UNIQUE,"
                        " doc JSONB NOT NULL)"
                    ).format(self._table(spec))
                )
        logger.debug("document tables ensured in schema %s", self._schema)

    # ---- reads -------------------------------------------------------

    def _select(
        self,
        cur: Any,
        spec: CollectionSpec,
        filter: Mapping[str, Any] | None,
        *,
        for_update: bool = False,
    ) -> list[tuple[str, dict[str, Any]]]:
        key = spec.key_from_filter(filter or {})
        lock = sql.SQL(" FOR UPDATE") if for_update else sql.SQL("")
        if key is not None:
            cur.execute(
                sql.SQL("SELECT natural_key, doc FROM {} WHERE natural_key = %s{}").format(self._table(spec), lock),
                (key,),
            )
        else:
            where, params = _where(spec, filter)
            cur.execute(
                sql.SQL("SELECT natural_key, doc FROM {} WHERE {}{}").format(self._table(spec), where, lock),
                params,
            )
        rows = [(k, _decode(d)) for k, d in cur.fetchall()]
        return [(k, d) for k, d in rows if match_filter(d, filter)]

    def find(
        self,
        collection: str,
        filter: Mapping[str, Any] | None = None,
        *,
        sort: SortSpec | None = None,
        limit: int | None = None,
        projection: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        spec = get_collection(collection)
        with self._cursor() as cur:
            docs = [d for _, d in self._select(cur, spec, filter)]
        return shape_results(docs, sort=sort, limit=limit, projection=projection)

    def find_one(self, collection: str, filter: Mapping[str, Any]) -> dict[str, Any] | None:
        found = self.find(collection, filter, limit=1)
        return found[0] if found else None

    def count_documents(self, collection: str, filter: Mapping[str, Any] | None = None) -> int:
        return len(self.find(collection, filter, projection=()))

    # ---- writes ------------------------------------------------------

    def _write(self, cur: Any, spec: CollectionSpec, docs: Sequence[tuple[str | None, dict[str, Any]]]) -> None:
        """Write (old_key, doc) pairs; old_key differs from the new key on key changes."""
        moved = [old for old, doc in docs if old is not None and old != spec.natural_key(doc)]
        if moved:
            cur.execute(
                sql.SQL("DELETE FROM {} WHERE natural_key = ANY(%s)").format(self._table(spec)),
                (moved,),
            )
        rows = [(spec.natural_key(doc), doc["_id"], Json(_encode(doc))) for _, doc in docs]
        execute_values(
            cur,
            sql.SQL(
                "INSERT INTO {} (natural_key, id, doc) VALUES %s "
                "ON CONFLICT (natural_key) DO UPDATE SET id = EXCLUDED.id, doc = EXCLUDED.doc"
            ).format(self._table(spec)).as_string(cur),
            rows,
            page_size=max(len(rows), 1),
        )

    def find_one_and_update(
        self,
        collection: str,
        filter: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> dict[str, Any] | None:
        spec = get_collection(collection)
        with self._cursor() as cur:
            found = self._select(cur, spec, filter, for_update=True)
            if found:
                old_key, current = found[0]
                doc = apply_update(copy.deepcopy(current), update, inserting=False)
                doc["_id"] = current["_id"]
            elif upsert:
                old_key, doc = None, build_upsert_document(filter, update)
            else:
                return None
            spec.validate(doc)
            self._write(cur, spec, [(old_key, doc)])
        return doc

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> str:
        spec = get_collection(collection)
        doc = copy.deepcopy(dict(document))
        doc.setdefault("_id", new_id())
        spec.validate(doc)
        try:
            with self._cursor() as cur:
                cur.execute(
                    sql.SQL("INSERT INTO {} (natural_key, id, doc) VALUES (%s, %s, %s)").format(self._table(spec)),
                    (spec.natural_key(doc), doc["_id"], Json(_encode(doc))),
                )
        except psycopg2.IntegrityError as exc:
            raise DuplicateKeyError(f"{collection}: {exc}") from exc
        return doc["_id"]

    def bulk_write(self, collection: str, operations: Sequence[UpdateOne]) -> BulkWriteResult:
        spec = get_collection(collection)
        result = BulkWriteResult()
        if not operations:
            return result
        with self._cursor() as cur:
            keys = [spec.key_from_filter(op.filter) for op in operations]
            pinned = sorted({k for k in keys if k is not None})
            existing: dict[str, dict[str, Any]] = {}
            if pinned:
                cur.execute(
                    sql.SQL(
                        "SELECT natural_key, doc FROM {} WHERE natural_key = ANY(%s) "
                        "ORDER BY natural_key FOR UPDATE"
                    ).format(self._table(spec)),
                    (pinned,),
                )
                existing = {k: _decode(d) for k, d in cur.fetchall()}
            # several ops may target the same key; later ones see earlier results
            pending: dict[str, tuple[str | None, dict[str, Any]]] = {}
            for index, (op, key) in enumerate(zip(operations, keys)):
                try:
                    planned = self._plan(cur, spec, op, key, existing, pending)
                    if planned is None:
                        continue
                    old_key, doc, matched = planned
                    spec.validate(doc)
                except StoreError as exc:
                    result.write_errors.append(WriteError(index=index, message=str(exc)))
                    continue
                if matched:
                    result.matched_count += 1
                    result.modified_count += 1
                else:
                    result.upserted_count += 1
                pending[spec.natural_key(doc)] = (old_key, doc)
            if pending:
                self._write(cur, spec, list(pending.values()))
        if result.write_errors:
            raise BulkWriteError(result)
        return result

    def _plan(
        self,
        cur: Any,
        spec: CollectionSpec,
        op: UpdateOne,
        key: str | None,
        existing: dict[str, dict[str, Any]],
        pending: dict[str, tuple[str | None, dict[str, Any]]],
    ) -> tuple[str | None, dict[str, Any], bool] | None:
        """(old_key, new document, matched) for one operation, or None when it is a no-op."""
        if key is None:
            found = self._select(cur, spec, op.filter, for_update=True)
            if found:
                key = found[0][0]
                existing.setdefault(key, found[0][1])
        if key is not None and key in pending:
            old_key, current = pending[key]
        elif key is not None and key in existing:
            old_key, current = key, existing[key]
        else:
            current = None
        if current is not None:
            doc = apply_update(copy.deepcopy(current), op.update, inserting=False)
            doc["_id"] = current["_id"]
            return old_key, doc, True
        if not op.upsert:
            return None
        return None, build_upsert_document(op.filter, op.update), False

    def delete_many(self, collection: str, filter: Mapping[str, Any]) -> int:
        spec = get_collection(collection)
        with self._cursor() as cur:
            doomed = [k for k, _ in self._select(cur, spec, filter, for_update=True)]
            if doomed:
                cur.execute(
                    sql.SQL("DELETE FROM {} WHERE natural_key = ANY(%s)").format(self._table(spec)),
                    (doomed,),
                )
        return len(doomed)

    def close(self) -> None:
        self._pool.closeall()

