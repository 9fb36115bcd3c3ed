"""
Node service - the operation contract consumed by the HTTP layer.

A thin facade over TreeEngine and TreeRepairer. It wires the store,
repository and engine together from configuration and owns the store's
connection lifecycle; it adds no tree logic of its own.

Invariants:
    - Every operation takes the acting owner's id
    - Errors propagate unchanged as TreeError subclasses, except in
      bulk_sync, which reports them per item
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..config import ServerConfig
from ..store.base import DocumentStore, create_document_store
from ..tree.engine import TreeEngine
from ..tree.errors import TreeError
from ..tree.models import EncryptedBlob, Node, NodeKind
from ..tree.repair import RepairReport, TreeRepairer, Violation
from ..tree.repository import NodeRepository

logger = logging.getLogger(__name__)


@dataclass
class BulkSyncResult:
    """Outcome of a bulk upload.

    Attributes:
        created: Items created as new nodes
        updated: Items applied to existing nodes
        ids: Node id per item, in request order; None where the item failed
        errors: One entry per failed item with its index, id and error
    """

    created: int = 0
    updated: int = 0
    ids: list[str | None] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "ids": list(self.ids),
            "errors": list(self.errors),
        }


class NodeService:
    """Access surface for node operations.

    Example:
        >>> service = NodeService.from_config(ServerConfig())
        >>> await service.start()
        >>> space = await service.create_node("Work", "", "user_1", "space")
    """

    def __init__(
        self,
        store: DocumentStore,
        max_attempts: int = 5,
        retry_delay_ms: int = 10,
        max_depth: int = 1000,
    ) -> None:
        self.store = store
        self.repository = NodeRepository(store, max_attempts=max_attempts, retry_delay_ms=retry_delay_ms)
        self.engine = TreeEngine(self.repository, max_depth=max_depth)
        self.repairer = TreeRepairer(self.engine)

    @classmethod
    def from_config(cls, config: ServerConfig) -> NodeService:
        return cls(
            create_document_store(config.store),
            max_attempts=config.tree.max_attempts,
            retry_delay_ms=config.tree.retry_delay_ms,
            max_depth=config.tree.max_depth,
        )

    async def start(self) -> None:
        if not self.store.is_connected:
            await self.store.connect()
        logger.info("Node service started", extra={"store": type(self.store).__name__})

    async def close(self) -> None:
        await self.store.close()

    async def health(self) -> dict[str, Any]:
        return {"healthy": self.store.is_connected, "store": type(self.store).__name__}

    # Core operations

    async def create_node(
        self,
        title: str | None,
        body: str | None,
        owner_id: str,
        kind: NodeKind | str,
        parent_id: str | None = None,
        tags: list[str] | None = None,
        encrypted: bool = False,
        encrypted_title: EncryptedBlob | None = None,
        encrypted_body: EncryptedBlob | None = None,
    ) -> Node:
        return await self.engine.create(
            owner_id,
            kind,
            title=title,
            body=body,
            parent_id=parent_id,
            tags=tags,
            encrypted=encrypted,
            encrypted_title=encrypted_title,
            encrypted_body=encrypted_body,
        )

    async def move_node(
        self,
        node_id: str,
        new_parent_id: str | None,
        new_position: int,
        owner_id: str,
    ) -> Node:
        return await self.engine.move(node_id, owner_id, new_parent_id, new_position)

    async def delete_node(self, node_id: str, owner_id: str) -> bool:
        return await self.engine.delete(node_id, owner_id)

    async def list_children(self, parent_id: str, owner_id: str) -> list[Node]:
        return await self.engine.list_children(parent_id, owner_id)

    async def list_roots(self, owner_id: str) -> list[Node]:
        return await self.engine.list_roots(owner_id)

    async def resolve_path(self, node_id: str, owner_id: str) -> list[Node]:
        return await self.engine.resolve_path(node_id, owner_id)

    # Supporting operations

    async def get_node(self, node_id: str, owner_id: str) -> Node:
        return await self.engine.get(node_id, owner_id)

    async def list_nodes(self, owner_id: str) -> list[Node]:
        return await self.engine.list_nodes(owner_id)

    async def update_node(self, node_id: str, owner_id: str, changes: dict[str, Any]) -> Node:
        return await self.engine.update_content(node_id, owner_id, changes)

    async def promote_node(self, node_id: str, owner_id: str) -> Node:
        return await self.engine.promote_to_space(node_id, owner_id)

    async def changes_since(self, owner_id: str, since_ms: int) -> list[Node]:
        return await self.engine.changes_since(owner_id, since_ms)

    async def verify(self, owner_id: str) -> list[Violation]:
        return await self.repairer.verify(owner_id)

    async def repair(
        self,
        owner_id: str,
        dry_run: bool = False,
        delete_orphans: bool = False,
    ) -> RepairReport:
        return await self.repairer.repair(owner_id, dry_run=dry_run, delete_orphans=delete_orphans)

    async def bulk_sync(self, owner_id: str, items: list[dict[str, Any]]) -> BulkSyncResult:
        """Create or update each item on its own, collecting per-item errors.

        An item with an ``id`` has its content updated; any other item is
        created (``kind`` defaults to page). A failing item never stops the
        rest of the batch.
        """
        result = BulkSyncResult()

        for index, item in enumerate(items):
            fields = dict(item)
            node_id = fields.pop("id", None)
            try:
                if node_id is not None:
                    node = await self.engine.update_content(node_id, owner_id, fields)
                    result.updated += 1
                else:
                    kind = fields.pop("kind", None) or NodeKind.PAGE
                    node = await self.engine.create(owner_id, kind, **fields)
                    result.created += 1
                result.ids.append(node.node_id)
            except TreeError as e:
                result.ids.append(None)
                result.errors.append(
                    {"index": index, "id": node_id, "error": e.message, "error_code": e.code}
                )
            except ValueError as e:
                result.ids.append(None)
                result.errors.append(
                    {"index": index, "id": node_id, "error": str(e), "error_code": "INVALID_ARGUMENT"}
                )

        logger.info(
            "Bulk sync processed",
            extra={
                "owner_id": owner_id,
                "created": result.created,
                "updated": result.updated,
                "errors": len(result.errors),
            },
        )
        return result
