"""
Document Store - Persistence Interface
======================================
Abstraction over the managed document store the settlement engine consumes.

The contract the engine relies on:
- Atomic multi-document read-modify-write transactions
- Unique-constraint style existence checks (payments.reference)
- Monotonic numeric increments

Transactions are optimistic: every read records the document version, and
commit fails with TransactionConflict if any of those documents changed in
between. run_transaction() retries the whole callback on conflict, so the
callback must be a pure function of what it reads.

The in-memory implementation backs tests and local development; the
Postgres implementation lives in storage/postgres_store.py.
"""

import asyncio
import copy
import random
from abc import ABC, abstractmethod
from collections import defaultdict
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger().bind(component="document_store")

T = TypeVar("T")

# collection -> fields that must be unique across the collection
DEFAULT_UNIQUE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "payments": ("reference",),
}


# =============================================================================
# ERRORS
# =============================================================================

class DocumentStoreError(Exception):
    """Base class for store failures."""


class TransactionConflict(DocumentStoreError):
    """A document read by the transaction changed before commit."""


class DuplicateKeyError(DocumentStoreError):
    """Create collided with an existing id or a unique field value."""

    def __init__(self, collection: str, field: str, value: Any):
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(f"Duplicate {collection}.{field}: {value}")


class DocumentNotFound(DocumentStoreError):
    """Update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"{collection}/{doc_id} not found")


# =============================================================================
# HELPERS
# =============================================================================

def add_numeric(current: Any, delta: Any) -> str:
    """Exact decimal addition; stored as a string to survive JSON round trips."""
    base = Decimal(str(current)) if current not in (None, "") else Decimal("0")
    return str(base + Decimal(str(delta)))


def matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(document.get(key) == value for key, value in filters.items())


# =============================================================================
# INTERFACES
# =============================================================================

class ITransaction(ABC):
    """
    One atomic unit of work. Reads go to the store immediately; writes are
    buffered and applied together at commit.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_one(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Insert; fails at commit if the id or a unique field already exists."""
        pass

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Shallow merge into an existing document."""
        pass

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        pass

    @abstractmethod
    def increment(
        self,
        collection: str,
        doc_id: str,
        amounts: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Add to numeric fields, creating the document from defaults if missing."""
        pass


TransactionFn = Callable[[ITransaction], Awaitable[T]]


class IDocumentStore(ABC):
    """Store-wide operations. Single writes are one-operation transactions."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_one(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def run_transaction(self, fn: TransactionFn, max_attempts: int = 5) -> T:
        pass

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        async def _op(tx: ITransaction):
            tx.create(collection, doc_id, data)
        await self.run_transaction(_op)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        async def _op(tx: ITransaction):
            tx.update(collection, doc_id, fields)
        await self.run_transaction(_op)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        async def _op(tx: ITransaction):
            tx.set(collection, doc_id, data, merge=merge)
        await self.run_transaction(_op)

    async def increment(
        self,
        collection: str,
        doc_id: str,
        amounts: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        async def _op(tx: ITransaction):
            tx.increment(collection, doc_id, amounts, defaults)
        await self.run_transaction(_op)

    async def close(self) -> None:
        pass


async def retry_transaction(
    attempt_once: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay: float = 0.01,
) -> T:
    """Re-run a transaction attempt on TransactionConflict with jittered backoff."""
    for attempt in range(1, max_attempts + 1):
        try:
            return await attempt_once()
        except TransactionConflict:
            if attempt >= max_attempts:
                logger.error("transaction_conflict_exhausted", attempts=attempt)
                raise
            delay = base_delay * (2 ** (attempt - 1)) * (1 + random.random())
            logger.info("transaction_conflict_retry", attempt=attempt, delay=round(delay, 4))
            await asyncio.sleep(delay)
    raise TransactionConflict("transaction was not attempted")


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class _StoredDocument:
    __slots__ = ("data", "version")

    def __init__(self, data: Dict[str, Any], version: int = 1):
        self.data = data
        self.version = version


class InMemoryTransaction(ITransaction):
    """Buffered transaction against an InMemoryDocumentStore."""

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._reads: Dict[Tuple[str, str], int] = {}
        self._writes: List[Tuple[str, str, str, Dict[str, Any], Dict[str, Any]]] = []

    def _record_read(self, collection: str, doc_id: str, stored: Optional[_StoredDocument]):
        self._reads[(collection, doc_id)] = stored.version if stored else 0

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        stored = self._store._collections[collection].get(doc_id)
        self._record_read(collection, doc_id, stored)
        await asyncio.sleep(0)
        return copy.deepcopy(stored.data) if stored else None

    async def find_one(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        for doc_id, stored in self._store._collections[collection].items():
            if stored.data.get(field) == value:
                self._record_read(collection, doc_id, stored)
                await asyncio.sleep(0)
                return copy.deepcopy(stored.data)
        await asyncio.sleep(0)
        return None

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._writes.append(("create", collection, doc_id, copy.deepcopy(data), {}))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        self._writes.append(("update", collection, doc_id, copy.deepcopy(fields), {}))

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        op = "merge" if merge else "set"
        self._writes.append((op, collection, doc_id, copy.deepcopy(data), {}))

    def increment(
        self,
        collection: str,
        doc_id: str,
        amounts: Dict[str, Any],
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._writes.append(
            ("increment", collection, doc_id, dict(amounts), copy.deepcopy(defaults or {}))
        )


class InMemoryDocumentStore(IDocumentStore):
    """Thread-safe (asyncio) in-memory document store with optimistic commits."""

    def __init__(self, unique_fields: Optional[Dict[str, Tuple[str, ...]]] = None):
        self._collections: Dict[str, Dict[str, _StoredDocument]] = defaultdict(dict)
        self._unique_fields = unique_fields if unique_fields is not None else dict(DEFAULT_UNIQUE_FIELDS)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        stored = self._collections[collection].get(doc_id)
        return copy.deepcopy(stored.data) if stored else None

    async def find_one(self, collection: str, field: str, value: Any) -> Optional[Dict[str, Any]]:
        for stored in self._collections[collection].values():
            if stored.data.get(field) == value:
                return copy.deepcopy(stored.data)
        return None

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        results = []
        for stored in self._collections[collection].values():
            if matches(stored.data, filters or {}):
                results.append(copy.deepcopy(stored.data))
                if len(results) >= limit:
                    break
        return results

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def begin(self) -> InMemoryTransaction:
        return InMemoryTransaction(self)

    async def commit(self, tx: InMemoryTransaction) -> None:
        async with self._lock:
            for (collection, doc_id), version in tx._reads.items():
                stored = self._collections[collection].get(doc_id)
                current = stored.version if stored else 0
                if current != version:
                    raise TransactionConflict(f"{collection}/{doc_id} changed during transaction")

            staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

            def current_data(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
                key = (collection, doc_id)
                if key in staged:
                    return staged[key]
                stored = self._collections[collection].get(doc_id)
                return copy.deepcopy(stored.data) if stored else None

            for op, collection, doc_id, payload, defaults in tx._writes:
                existing = current_data(collection, doc_id)
                if op == "create":
                    if existing is not None:
                        raise DuplicateKeyError(collection, "id", doc_id)
                    staged[(collection, doc_id)] = payload
                elif op == "update":
                    if existing is None:
                        raise DocumentNotFound(collection, doc_id)
                    existing.update(payload)
                    staged[(collection, doc_id)] = existing
                elif op == "set":
                    staged[(collection, doc_id)] = payload
                elif op == "merge":
                    merged = existing or {}
                    merged.update(payload)
                    staged[(collection, doc_id)] = merged
                elif op == "increment":
                    target = existing if existing is not None else dict(defaults)
                    for field, delta in payload.items():
                        target[field] = add_numeric(target.get(field), delta)
                    staged[(collection, doc_id)] = target

            self._check_unique(staged)

            for (collection, doc_id), data in staged.items():
                stored = self._collections[collection].get(doc_id)
                version = stored.version + 1 if stored else 1
                self._collections[collection][doc_id] = _StoredDocument(data, version)

    def _check_unique(self, staged: Dict[Tuple[str, str], Optional[Dict[str, Any]]]) -> None:
        for (collection, doc_id), data in staged.items():
            for field in self._unique_fields.get(collection, ()):
                value = data.get(field) if data else None
                if value is None:
                    continue
                for other_id, stored in self._collections[collection].items():
                    if other_id != doc_id and stored.data.get(field) == value:
                        raise DuplicateKeyError(collection, field, value)
                for (other_collection, other_id), other in staged.items():
                    if (
                        other_collection == collection
                        and other_id != doc_id
                        and other
                        and other.get(field) == value
                    ):
                        raise DuplicateKeyError(collection, field, value)

    async def run_transaction(self, fn: TransactionFn, max_attempts: int = 5) -> T:
        async def attempt_once():
            tx = self.begin()
            result = await fn(tx)
            await self.commit(tx)
            return result

        return await retry_transaction(attempt_once, max_attempts)

    def dump(self, collection: str) -> Dict[str, Dict[str, Any]]:
        """Snapshot of a collection (tests and admin tooling)."""
        return {doc_id: copy.deepcopy(s.data) for doc_id, s in self._collections[collection].items()}
