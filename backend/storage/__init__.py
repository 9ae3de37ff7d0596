# storage/__init__.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — STORAGE MODULE
# ============================================================================
# Document store contract plus in-memory and Postgres implementations
# ============================================================================

from storage.document_store import (
    IDocumentStore,
    ITransaction,
    InMemoryDocumentStore,
    DocumentStoreError,
    TransactionConflict,
    DuplicateKeyError,
    DocumentNotFound,
)
from storage.postgres_store import PostgresDocumentStore

__all__ = [
    "IDocumentStore",
    "ITransaction",
    "InMemoryDocumentStore",
    "PostgresDocumentStore",
    "DocumentStoreError",
    "TransactionConflict",
    "DuplicateKeyError",
    "DocumentNotFound",
]
