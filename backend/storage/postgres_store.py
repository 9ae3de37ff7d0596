"""
Postgres Document Store
=======================
IDocumentStore on top of the `documents` JSONB table (see database.py).

- Reads inside a transaction take row locks (SELECT ... FOR UPDATE) under
  REPEATABLE READ, so a concurrent writer surfaces as a serialization
  failure, which is mapped to TransactionConflict and retried.
- The partial unique index on payments.reference is the at-most-once
  guarantee; unique violations surface as DuplicateKeyError.

pip install asyncpg
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
import structlog

from database import Database, dumps
from storage.document_store import (
    DocumentNotFound,
    DuplicateKeyError,
    IDocumentStore,
    ITransaction,
    TransactionConflict,
    TransactionFn,
    add_numeric,
    retry_transaction,
)

logger = structlog.get_logger().bind(component="postgres_store")

CONFLICT_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


def _load(data: Any) -> Dict[str, Any]:
    return json.loads(data) if isinstance(data, str) else dict(data)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class PostgresTransaction(ITransaction):
    """Reads run immediately on the connection; writes flush before commit."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn
        self._writes: List[Tuple[str, str, str, Dict[str, Any], Dict[str, Any]]] = []

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = await self._conn.fetchrow(
            "SELECT data FROM documents WHERE collection = $1 AND id = $2 FOR UPDATE",
            collection,
            doc_id,
        )
        return _load(row["data"]) if row else None

    async def find_one(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        row = await self._conn.fetchrow(
            """
            SELECT data FROM documents
            WHERE collection = $1 AND data->>$2 = $3
            LIMIT 1
            FOR UPDATE
            """,
            collection,
            field,
            _as_text(value),
        )
        return _load(row["data"]) if row else None

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes.append(("create", collection, doc_id, data, {}))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._writes.append(("update", collection, doc_id, fields, {}))

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        self._writes.append(("merge" if merge else "set", collection, doc_id, data, {}))

    def increment(
        self,
        collection: str,
        doc_id: str,
        amounts: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._writes.append(("increment", collection, doc_id, amounts, defaults or {}))

    async def flush(self) -> None:
        for op, collection, doc_id, payload, defaults in self._writes:
            if op == "create":
                await self._insert(collection, doc_id, payload)
            elif op == "update":
                result = await self._conn.execute(
                    """
                    UPDATE documents
                    SET data = data || $3::jsonb, version = version + 1, updated_at = NOW()
                    WHERE collection = $1 AND id = $2
                    """,
                    collection,
                    doc_id,
                    dumps(payload),
                )
                if result == "UPDATE 0":
                    raise DocumentNotFound(collection, doc_id)
            elif op in ("set", "merge"):
                await self._upsert(collection, doc_id, payload, merge=(op == "merge"))
            elif op == "increment":
                current = await self.get(collection, doc_id)
                target = current if current is not None else dict(defaults)
                for field, delta in payload.items():
                    target[field] = add_numeric(target.get(field), delta)
                await self._upsert(collection, doc_id, target, merge=False)

    async def _insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        try:
            await self._conn.execute(
                "INSERT INTO documents (collection, id, data) VALUES ($1, $2, $3::jsonb)",
                collection,
                doc_id,
                dumps(data),
            )
        except asyncpg.exceptions.UniqueViolationError as e:
            field = "reference" if e.constraint_name == "idx_payments_reference" else "id"
            raise DuplicateKeyError(collection, field, data.get(field, doc_id)) from e

    async def _upsert(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool) -> None:
        merge_expr = "documents.data || EXCLUDED.data" if merge else "EXCLUDED.data"
        await self._conn.execute(
            f"""
            INSERT INTO documents (collection, id, data) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (collection, id) DO UPDATE
            SET data = {merge_expr}, version = documents.version + 1, updated_at = NOW()
            """,
            collection,
            doc_id,
            dumps(data),
        )


class PostgresDocumentStore(IDocumentStore):
    """Document store backed by the shared asyncpg pool."""

    def __init__(self, database=Database):
        self._db = database

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        row = await self._db.fetch_one(
            "SELECT data FROM documents WHERE collection = $1 AND id = $2",
            collection,
            doc_id,
        )
        return _load(row["data"]) if row else None

    async def find_one(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        row = await self._db.fetch_one(
            "SELECT data FROM documents WHERE collection = $1 AND data->>$2 = $3 LIMIT 1",
            collection,
            field,
            _as_text(value),
        )
        return _load(row["data"]) if row else None

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        rows = await self._db.fetch_all(
            """
            SELECT data FROM documents
            WHERE collection = $1 AND data @> $2::jsonb
            ORDER BY created_at
            LIMIT $3
            """,
            collection,
            dumps(filters or {}),
            limit,
        )
        return [_load(row["data"]) for row in rows]

    async def run_transaction(self, fn: TransactionFn, max_attempts: int = 5):
        async def attempt_once():
            async with self._db.acquire() as conn:
                try:
                    async with conn.transaction(isolation="repeatable_read"):
                        tx = PostgresTransaction(conn)
                        result = await fn(tx)
                        await tx.flush()
                        return result
                except CONFLICT_ERRORS as e:
                    raise TransactionConflict(str(e)) from e

        return await retry_transaction(attempt_once, max_attempts)

    async def close(self) -> None:
        await self._db.close()
