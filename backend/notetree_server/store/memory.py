"""
In-memory document store implementation for testing.

This module provides a dict-backed document store for:
- Unit tests of the tree engine
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Same revision-check semantics as the SQLite backend
    - Documents handed out are deep copies; callers cannot mutate stored state

How to change safely:
    - Keep interface compatible with the DocumentStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from .base import (
    DocumentNotFoundError,
    DuplicateDocumentError,
    RevisionConflictError,
    StoreConnectionError,
    StoredDocument,
    apply_sort,
    matches,
    next_revision,
)

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore.

    Thread safety:
        Uses an asyncio lock so each call is atomic with respect to other
        coroutines. Safe to use from concurrent tasks on one event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> doc = await store.insert("nodes", {"title": "Inbox"})
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, StoredDocument]] = defaultdict(dict)
        self._connected = False
        self._lock = asyncio.Lock()
        # operation -> list of exceptions to raise on the next calls
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        # operation -> callbacks run once, before the next call
        self._hooks: dict[str, list[Callable[[], None]]] = defaultdict(list)
        self.call_counts: dict[str, int] = defaultdict(int)

    @property
    def is_connected(self) -> bool:
        """Whether connected (always true after connect())."""
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDocumentStore connected")

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._collections.clear()
        self._failures.clear()
        self._hooks.clear()
        logger.debug("InMemoryDocumentStore closed")

    def _check(self, operation: str) -> None:
        if not self._connected:
            raise StoreConnectionError("Not connected")
        self.call_counts[operation] += 1
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)
        hooks = self._hooks.pop(operation, None)
        for hook in hooks or []:
            hook()

    async def get(self, collection: str, doc_id: str) -> StoredDocument | None:
        async with self._lock:
            self._check("get")
            doc = self._collections[collection].get(doc_id)
            return copy.deepcopy(doc) if doc else None

    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        sort: list[tuple[str, str]] | None = None,
        limit: int | None = None,
    ) -> list[StoredDocument]:
        async with self._lock:
            self._check("find")
            docs = [
                copy.deepcopy(doc)
                for doc in self._collections[collection].values()
                if matches(doc.data, where)
            ]
        docs = apply_sort(docs, sort)
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def insert(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: str | None = None,
    ) -> StoredDocument:
        async with self._lock:
            self._check("insert")
            doc_id = doc_id or str(uuid.uuid4())
            if doc_id in self._collections[collection]:
                raise DuplicateDocumentError(collection, doc_id)
            doc = StoredDocument(collection, doc_id, next_revision(None), copy.deepcopy(data))
            self._collections[collection][doc_id] = doc

        logger.debug(
            "Inserted document",
            extra={"collection": collection, "doc_id": doc_id, "revision": doc.revision},
        )
        return copy.deepcopy(doc)

    async def update(
        self,
        collection: str,
        doc_id: str,
        revision: str,
        data: dict[str, Any],
    ) -> StoredDocument:
        async with self._lock:
            self._check("update")
            current = self._collections[collection].get(doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            if current.revision != revision:
                raise RevisionConflictError(collection, doc_id, revision, current.revision)
            doc = StoredDocument(
                collection, doc_id, next_revision(current.revision), copy.deepcopy(data)
            )
            self._collections[collection][doc_id] = doc
            return copy.deepcopy(doc)

    async def delete(self, collection: str, doc_id: str, revision: str) -> None:
        async with self._lock:
            self._check("delete")
            current = self._collections[collection].get(doc_id)
            if current is None:
                raise DocumentNotFoundError(collection, doc_id)
            if current.revision != revision:
                raise RevisionConflictError(collection, doc_id, revision, current.revision)
            del self._collections[collection][doc_id]

    # Testing helpers

    def inject_failure(self, operation: str, exception: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``exception``.

        Args:
            operation: One of get, find, insert, update, delete
            exception: Exception instance to raise
            times: Number of consecutive calls that fail
        """
        self._failures[operation].extend([exception] * times)

    def before_next(self, operation: str, callback: Callable[[], None]) -> None:
        """Run ``callback`` once, just before the next ``operation`` call is served.

        The callback runs under the store lock, so it must only use the raw_*
        helpers. Used to interleave a competing write at an exact point.
        """
        self._hooks[operation].append(callback)

    def raw_put(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Overwrite a document bypassing revision checks (testing helper).

        Simulates the store being mutated outside the tree engine.
        """
        current = self._collections[collection].get(doc_id)
        revision = next_revision(current.revision if current else None)
        self._collections[collection][doc_id] = StoredDocument(
            collection, doc_id, revision, copy.deepcopy(data)
        )

    def raw_delete(self, collection: str, doc_id: str) -> None:
        """Drop a document bypassing revision checks (testing helper)."""
        self._collections[collection].pop(doc_id, None)

    def raw_get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Read a document body without going through the lock (testing helper)."""
        doc = self._collections[collection].get(doc_id)
        return copy.deepcopy(doc.data) if doc else None

    def document_count(self, collection: str) -> int:
        """Get total document count for a collection (testing helper)."""
        return len(self._collections[collection])
