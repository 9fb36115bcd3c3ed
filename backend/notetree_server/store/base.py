"""
Base protocol and types for the document store abstraction.

The tree manager only needs a key/value document interface with
single-document atomicity and revision-checked writes. This module defines
that contract; backends live in sibling modules.

Invariants:
    - Every successful write issues a new revision token
    - update() and delete() succeed only if the caller's revision matches
    - A timeout means the outcome is unknown, not that the write failed
    - No operation spans more than one document

How to change safely:
    - Protocol changes require updating all implementations
    - Keep find() predicates to top-level equality so every backend can serve them
"""

from __future__ import annotations

import logging
import secrets
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import StoreConfig

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for document store operations."""

    pass


class StoreConnectionError(StoreError):
    """Store is not connected or the connection failed."""

    pass


class StoreTimeoutError(StoreError):
    """Store call timed out; the write may or may not have happened."""

    pass


class RevisionConflictError(StoreError):
    """Revision token is stale: another write happened since the read."""

    def __init__(self, collection: str, doc_id: str, expected: str, actual: str | None = None):
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Revision conflict on {collection}/{doc_id}: expected {expected}, found {actual}"
        )


class DocumentNotFoundError(StoreError):
    """Document does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found: {collection}/{doc_id}")


class DuplicateDocumentError(StoreError):
    """Insert with an id that already exists."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document already exists: {collection}/{doc_id}")


def next_revision(current: str | None) -> str:
    """Issue the revision token following ``current``.

    Tokens look like ``"3-9f2c..."``: a generation counter and a random
    suffix, so two writers racing from the same generation never mint the
    same token.
    """
    generation = 0
    if current:
        generation = int(current.split("-", 1)[0])
    return f"{generation + 1}-{secrets.token_hex(8)}"


@dataclass(frozen=True)
class StoredDocument:
    """A document as read from the store.

    Attributes:
        collection: Collection name
        doc_id: Document identifier
        revision: Revision token the document was read at
        data: Document body (a fresh copy; mutating it never touches the store)
    """

    collection: str
    doc_id: str
    revision: str
    data: dict[str, Any] = field(default_factory=dict)


def matches(data: dict[str, Any], where: dict[str, Any]) -> bool:
    """Check a document body against an equality predicate.

    A ``None`` value in the predicate matches both a missing field and an
    explicit null.
    """
    return all(data.get(key) == value for key, value in where.items())


def sort_key(sort: list[tuple[str, str]]):
    """Build a key function for ``find`` sort specs on a single direction.

    Mixed directions are handled by the caller sorting repeatedly from the
    least significant field (Python's sort is stable).
    """

    def key(doc: StoredDocument) -> tuple:
        values = []
        for name, _direction in sort:
            value = doc.data.get(name)
            # None sorts first
            values.append((value is not None, value))
        return tuple(values)

    return key


def apply_sort(docs: list[StoredDocument], sort: list[tuple[str, str]] | None) -> list[StoredDocument]:
    """Sort documents by a list of ``(field, "asc"|"desc")`` pairs."""
    if not sort:
        return docs
    for name, direction in reversed(sort):
        if direction not in ("asc", "desc"):
            raise ValueError(f"Invalid sort direction: {direction}")
        docs = sorted(docs, key=sort_key([(name, direction)]), reverse=direction == "desc")
    return docs


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for document store backends.

    Consistency contract:
        - get() returns the latest committed revision of one document
        - update()/delete() are compare-and-swap on the revision token
        - find() is not a snapshot; concurrent writes may or may not be visible

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.connect()
        >>> doc = await store.insert("nodes", {"owner_id": "u1"})
        >>> doc = await store.update("nodes", doc.doc_id, doc.revision, {"owner_id": "u1"})
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend. Must be called before any other operation."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources."""
        ...

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> StoredDocument | None:
        """Fetch a document by id.

        Returns:
            The document, or None if it does not exist
        """
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        sort: list[tuple[str, str]] | None = None,
        limit: int | None = None,
    ) -> list[StoredDocument]:
        """Find documents whose top-level fields equal the predicate values.

        Args:
            collection: Collection name
            where: Equality predicate; should include owner_id to stay owner-scoped
            sort: List of (field, "asc"|"desc") pairs, most significant first
            limit: Maximum documents to return
        """
        ...

    @abstractmethod
    async def insert(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: str | None = None,
    ) -> StoredDocument:
        """Insert a new document.

        Raises:
            DuplicateDocumentError: If doc_id already exists
        """
        ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        revision: str,
        data: dict[str, Any],
    ) -> StoredDocument:
        """Replace a document if its revision still matches.

        Raises:
            DocumentNotFoundError: If the document is gone
            RevisionConflictError: If the revision is stale
        """
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str, revision: str) -> None:
        """Delete a document if its revision still matches.

        Raises:
            DocumentNotFoundError: If the document is gone
            RevisionConflictError: If the revision is stale
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_document_store(config: StoreConfig) -> DocumentStore:
    """Factory function to create a document store from configuration.

    Args:
        config: Store configuration

    Returns:
        Appropriate DocumentStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StoreBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SqliteDocumentStore

    if config.backend == StoreBackend.MEMORY:
        return InMemoryDocumentStore()
    elif config.backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            data_dir=config.data_dir,
            filename=config.sqlite_file,
            timeout_ms=config.timeout_ms,
        )
    else:
        raise ValueError(f"Unsupported store backend: {config.backend}")
