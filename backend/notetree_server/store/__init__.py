"""
Document store abstraction for Notetree.

This module provides a pluggable document store interface supporting:
- SQLite (single file, for self-hosting)
- In-memory (for testing)

Invariants:
    - Single-document atomicity only; there are no multi-document transactions
    - Writes are conditioned on the revision token the caller read
    - Backends never interpret document bodies beyond owner_id

How to change safely:
    - New backends must implement the DocumentStore protocol
    - Run the tree engine test suite against every backend
"""

from .base import (
    DocumentNotFoundError,
    DocumentStore,
    DuplicateDocumentError,
    RevisionConflictError,
    StoreConnectionError,
    StoredDocument,
    StoreError,
    StoreTimeoutError,
    create_document_store,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocol and types
    "DocumentStore",
    "StoredDocument",
    "StoreError",
    "StoreConnectionError",
    "StoreTimeoutError",
    "RevisionConflictError",
    "DocumentNotFoundError",
    "DuplicateDocumentError",
    # Factory
    "create_document_store",
    # Implementations
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
