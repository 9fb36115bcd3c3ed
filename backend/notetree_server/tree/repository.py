"""
Node repository: single-document reads and writes for the tree.

The repository translates tree operations into store calls and owns the
read-modify-write-with-revision-check loop every multi-document tree edit
is composed of. It is also where ownership is enforced: every read and
write takes the caller's owner_id, and a node owned by someone else is
treated exactly like a missing one.

Invariants:
    - A write only lands if the node is unchanged since it was read
    - Conflicts and timeouts are retried here and never leak out raw
    - Foreign-owned nodes are invisible (None / NodeNotFoundError)
    - created_at/updated_at are set here, never by callers

How to change safely:
    - Mutation callbacks passed to retrying_update may run several times;
      keep them idempotent and free of side effects
    - Never widen find() predicates past owner_id
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from ..store.base import (
    DocumentNotFoundError,
    DocumentStore,
    DuplicateDocumentError,
    RevisionConflictError,
    StoredDocument,
    StoreTimeoutError,
)
from .errors import ConcurrencyExhaustedError, NodeNotFoundError
from .models import Node, NodeKind, now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Receives a private copy of the current node. Returns the node to write,
# or None when no write is needed.
MutateFn = Callable[[Node], "Node | None"]


class NodeRepository:
    """Owner-scoped node access over a DocumentStore.

    Attributes:
        store: Document store adapter
        max_attempts: Default attempt budget for retried operations
        retry_delay_ms: Base backoff between attempts

    Example:
        >>> repo = NodeRepository(store, max_attempts=5)
        >>> parent = await repo.retrying_update(
        ...     parent_id, "user_1", lambda p: p.copy(children=p.children + [child_id])
        ... )
    """

    COLLECTION = "nodes"

    def __init__(
        self,
        store: DocumentStore,
        max_attempts: int = 5,
        retry_delay_ms: int = 10,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.retry_delay_ms = retry_delay_ms

    async def backoff(self, attempt: int) -> None:
        """Sleep before the next attempt; linear in the attempt number."""
        if self.retry_delay_ms:
            await asyncio.sleep(self.retry_delay_ms * attempt / 1000.0)

    async def _read(self, key: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run a read, retrying store timeouts within the attempt budget."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except StoreTimeoutError as e:
                logger.debug(
                    "Store read timed out",
                    extra={"key": key, "attempt": attempt, "error": str(e)},
                )
            if attempt < self.max_attempts:
                await self.backoff(attempt)
        logger.warning("Store reads exhausted", extra={"key": key, "attempts": self.max_attempts})
        raise ConcurrencyExhaustedError(key, self.max_attempts)

    def _to_node(self, doc: StoredDocument, owner_id: str) -> Node | None:
        if doc.data.get("owner_id") != owner_id:
            return None
        return Node.from_document(doc.doc_id, doc.revision, doc.data)

    # Reads

    async def get(self, node_id: str, owner_id: str) -> Node | None:
        """Fetch a node owned by ``owner_id``.

        Returns:
            The node, or None if it is missing or owned by someone else
        """
        doc = await self._read(node_id, lambda: self.store.get(self.COLLECTION, node_id))
        if doc is None:
            return None
        return self._to_node(doc, owner_id)

    async def require(self, node_id: str, owner_id: str) -> Node:
        """Fetch a node or raise NodeNotFoundError."""
        node = await self.get(node_id, owner_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    async def _find(
        self,
        owner_id: str,
        where: dict[str, Any],
        sort: list[tuple[str, str]],
    ) -> list[Node]:
        predicate = dict(where, owner_id=owner_id)
        docs = await self._read(
            f"find:{owner_id}",
            lambda: self.store.find(self.COLLECTION, predicate, sort=sort),
        )
        return [Node.from_document(doc.doc_id, doc.revision, doc.data) for doc in docs]

    async def find_children(self, parent_id: str, owner_id: str) -> list[Node]:
        """Nodes pointing at ``parent_id``, ordered by position."""
        return await self._find(
            owner_id,
            {"parent_id": parent_id},
            [("position", "asc"), ("created_at", "asc")],
        )

    async def find_roots(self, owner_id: str) -> list[Node]:
        """Space nodes of the owner, ordered by position then creation."""
        return await self._find(
            owner_id,
            {"kind": NodeKind.SPACE.value},
            [("position", "asc"), ("created_at", "asc")],
        )

    async def find_by_owner(self, owner_id: str) -> list[Node]:
        """Every node of the owner, most recently updated first."""
        return await self._find(owner_id, {}, [("updated_at", "desc")])

    # Writes

    async def insert(self, node: Node) -> Node:
        """Insert a new node, stamping its timestamps.

        A timed-out insert is retried with the same id; finding the id
        already present on a retry means the earlier attempt landed.
        """
        node = node.copy(node_id=node.node_id or str(uuid.uuid4()))
        node.created_at = node.updated_at = now_ms()
        timed_out = False

        for attempt in range(1, self.max_attempts + 1):
            try:
                doc = await self.store.insert(self.COLLECTION, node.to_document(), doc_id=node.node_id)
                return Node.from_document(doc.doc_id, doc.revision, doc.data)
            except DuplicateDocumentError:
                if not timed_out:
                    raise
                existing = await self.get(node.node_id, node.owner_id)
                if existing is None:
                    raise
                return existing
            except StoreTimeoutError as e:
                timed_out = True
                logger.debug(
                    "Insert timed out",
                    extra={"node_id": node.node_id, "attempt": attempt, "error": str(e)},
                )
            if attempt < self.max_attempts:
                await self.backoff(attempt)

        raise ConcurrencyExhaustedError(node.node_id, self.max_attempts)

    async def put(self, node: Node, owner_id: str) -> Node:
        """Write a node back at the revision it was read with.

        Raises:
            NodeNotFoundError: If the node is not owned by ``owner_id``
            RevisionConflictError: If the node changed since it was read
            DocumentNotFoundError: If the node was deleted since it was read
        """
        if node.owner_id != owner_id or node.revision is None:
            raise NodeNotFoundError(node.node_id)

        node = node.copy(updated_at=now_ms())
        doc = await self.store.update(self.COLLECTION, node.node_id, node.revision, node.to_document())
        return Node.from_document(doc.doc_id, doc.revision, doc.data)

    async def remove(self, node: Node, owner_id: str) -> None:
        """Delete a node at the revision it was read with.

        Raises:
            NodeNotFoundError: If the node is not owned by ``owner_id``
            RevisionConflictError: If the node changed since it was read
            DocumentNotFoundError: If the node is already gone
        """
        if node.owner_id != owner_id or node.revision is None:
            raise NodeNotFoundError(node.node_id)
        await self.store.delete(self.COLLECTION, node.node_id, node.revision)

    async def retrying_update(
        self,
        node_id: str,
        owner_id: str,
        mutate: MutateFn,
        max_attempts: int | None = None,
    ) -> Node | None:
        """Read, mutate and conditionally write one node, retrying on conflicts.

        Args:
            node_id: Node to update
            owner_id: Caller; a foreign node counts as missing
            mutate: Called with a fresh copy on every attempt; returns the
                node to write, or None to leave the node unchanged
            max_attempts: Override of the repository's attempt budget

        Returns:
            The node as written (or as read, if mutate asked for no write),
            or None if the node does not exist for this owner

        Raises:
            ConcurrencyExhaustedError: If every attempt conflicted or timed out
        """
        attempts = max_attempts or self.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                current = await self.store.get(self.COLLECTION, node_id)
                node = self._to_node(current, owner_id) if current else None
                if node is None:
                    return None

                updated = mutate(node.copy())
                if updated is None:
                    return node
                return await self.put(updated, owner_id)

            except DocumentNotFoundError:
                # Deleted between our read and our write
                return None
            except (RevisionConflictError, StoreTimeoutError) as e:
                logger.debug(
                    "Retrying node update",
                    extra={
                        "node_id": node_id,
                        "attempt": attempt,
                        "reason": type(e).__name__,
                    },
                )
            if attempt < attempts:
                await self.backoff(attempt)

        logger.warning(
            "Node update retries exhausted",
            extra={"node_id": node_id, "owner_id": owner_id, "attempts": attempts},
        )
        raise ConcurrencyExhaustedError(node_id, attempts)

    async def retrying_delete(
        self,
        node_id: str,
        owner_id: str,
        max_attempts: int | None = None,
    ) -> bool:
        """Delete a node at whatever revision it currently has.

        Returns:
            True if the node was deleted by this call, False if it was
            already gone (or foreign-owned)

        Raises:
            ConcurrencyExhaustedError: If every attempt conflicted or timed out
        """
        attempts = max_attempts or self.max_attempts
        timed_out = False

        for attempt in range(1, attempts + 1):
            deleting = False
            try:
                current = await self.store.get(self.COLLECTION, node_id)
                node = self._to_node(current, owner_id) if current else None
                if node is None:
                    # A timed-out delete of ours may have landed
                    return timed_out
                deleting = True
                await self.remove(node, owner_id)
                return True

            except DocumentNotFoundError:
                return timed_out
            except (RevisionConflictError, StoreTimeoutError) as e:
                if deleting and isinstance(e, StoreTimeoutError):
                    timed_out = True
                logger.debug(
                    "Retrying node delete",
                    extra={"node_id": node_id, "attempt": attempt, "reason": type(e).__name__},
                )
            if attempt < attempts:
                await self.backoff(attempt)

        logger.warning(
            "Node delete retries exhausted",
            extra={"node_id": node_id, "owner_id": owner_id, "attempts": attempts},
        )
        raise ConcurrencyExhaustedError(node_id, attempts)
