"""
Tree consistency engine.

Implements create, move, promote, delete, path resolution and ordered child
listing on top of NodeRepository, keeping the redundant structure (child's
parent_id/position and parent's children list) in step.

There are no multi-document transactions. Each structural change is a fixed
sequence of independently retried single-document writes:

    create:  insert node -> append to parent -> renumber if raced
    move:    detach from old parent -> attach to new parent -> update node
             -> renumber both parents
    promote: detach from old parent -> update node
    delete:  children (depth-first) -> detach from parent -> delete node

Invariants:
    - A parent's children list never names a node that does not exist
      (nodes are inserted before being listed and unlisted before deletion)
    - Validation (parent kind, ownership, cycles) happens before any write
    - Every mutation passed to the repository is idempotent
    - Every operation that can shift siblings renumbers that parent
      before returning, and renumbering repeats until it sees a settled
      parent, so positions match list indices once concurrent edits finish

Failure model:
    A crash or exhausted retry between the steps above can leave a node
    listed under one parent while pointing at another, or detached. This is
    accepted; TreeRepairer reconciles such states.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from .errors import (
    ConcurrencyExhaustedError,
    CorruptTreeError,
    CycleDetectedError,
    InvalidKindError,
    InvalidParentError,
    NodeNotFoundError,
)
from .models import EncryptedBlob, Node, NodeKind
from .repository import NodeRepository

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 1000

CONTENT_FIELDS = frozenset(
    {"title", "body", "tags", "encrypted", "encrypted_title", "encrypted_body"}
)


# Idempotent mutations. Each one returns None when the document already
# has the desired shape, so a retry after a write that did land is a no-op.


def _append_child(child_id: str) -> Callable[[Node], Node | None]:
    def mutate(parent: Node) -> Node | None:
        if not parent.kind.is_foldable:
            raise InvalidParentError(f"A {parent.kind.value} cannot hold children", parent.node_id)
        children = parent.children or []
        if child_id in children:
            return None
        parent.children = children + [child_id]
        return parent

    return mutate


def _place_child(child_id: str, position: int) -> Callable[[Node], Node | None]:
    def mutate(parent: Node) -> Node | None:
        if not parent.kind.is_foldable:
            raise InvalidParentError(f"A {parent.kind.value} cannot hold children", parent.node_id)
        children = [c for c in (parent.children or []) if c != child_id]
        children.insert(min(position, len(children)), child_id)
        if children == parent.children:
            return None
        parent.children = children
        return parent

    return mutate


def _remove_child(child_id: str) -> Callable[[Node], Node | None]:
    def mutate(parent: Node) -> Node | None:
        if not parent.children or child_id not in parent.children:
            return None
        parent.children = [c for c in parent.children if c != child_id]
        return parent

    return mutate


def _set_position(parent_id: str | None, position: int) -> Callable[[Node], Node | None]:
    def mutate(child: Node) -> Node | None:
        # The child may have moved elsewhere since the parent was read
        if child.parent_id != parent_id or child.position == position:
            return None
        child.position = position
        return child

    return mutate


def _relocate(parent_id: str, position: int) -> Callable[[Node], Node | None]:
    def mutate(node: Node) -> Node | None:
        if node.parent_id == parent_id and node.position == position:
            return None
        node.parent_id = parent_id
        node.position = position
        return node

    return mutate


def _make_space(node: Node) -> Node | None:
    if node.kind is NodeKind.SPACE and node.parent_id is None:
        return None
    if node.kind is NodeKind.PAGE:
        raise InvalidKindError("A page cannot become a space", node.kind.value)
    node.kind = NodeKind.SPACE
    node.parent_id = None
    node.position = 0
    if node.children is None:
        node.children = []
    return node


def _check_content_value(name: str, value: Any) -> None:
    if name in ("title", "body"):
        valid = value is None or isinstance(value, str)
    elif name == "tags":
        valid = isinstance(value, (list, tuple)) and all(isinstance(t, str) for t in value)
    elif name == "encrypted":
        valid = isinstance(value, bool)
    else:
        valid = value is None or isinstance(value, EncryptedBlob)
    if not valid:
        raise ValueError(f"Invalid value for {name}: {value!r}")


class TreeEngine:
    """Forest operations for one owner at a time.

    The engine holds no state between calls; every call re-reads what it
    needs from the repository, so any number of engines may run
    concurrently against the same store.

    Example:
        >>> engine = TreeEngine(NodeRepository(store))
        >>> space = await engine.create("user_1", NodeKind.SPACE, title="Work")
        >>> page = await engine.create("user_1", NodeKind.PAGE, title="Todo",
        ...                            parent_id=space.node_id)
        >>> [n.title for n in await engine.resolve_path(page.node_id, "user_1")]
        ['Work', 'Todo']
    """

    def __init__(self, repository: NodeRepository, max_depth: int = DEFAULT_MAX_DEPTH) -> None:
        self.repo = repository
        self.max_depth = max_depth

    # Helpers

    @staticmethod
    def _check_parent(parent: Node | None, parent_id: str) -> Node:
        if parent is None:
            raise InvalidParentError(f"Parent not found: {parent_id}", parent_id)
        if not parent.kind.is_foldable:
            raise InvalidParentError(
                f"A {parent.kind.value} cannot hold children", parent_id
            )
        return parent

    async def _check_no_cycle(self, node_id: str, new_parent: Node, owner_id: str) -> None:
        """Reject moving node_id under new_parent if it is one of new_parent's ancestors."""
        current: Node | None = new_parent
        seen: set[str] = set()

        while current is not None:
            if current.node_id == node_id:
                raise CycleDetectedError(node_id, new_parent.node_id)
            if current.node_id in seen or len(seen) >= self.max_depth:
                raise CorruptTreeError(new_parent.node_id, len(seen))
            seen.add(current.node_id)
            if current.parent_id is None:
                return
            current = await self.repo.get(current.parent_id, owner_id)

    async def _renumber(self, parent_id: str, owner_id: str) -> None:
        """Make every listed child's position match its index in the parent.

        Renumbers of the same parent may interleave, and a late write from
        one can undo another. Each pass therefore rereads the parent and
        its children, and the loop only ends once a pass finds every listed
        child at its index with the parent unchanged across the pass.
        Children listed here but pointing elsewhere are mid-move and are
        left to the mover's own renumber.

        Raises:
            ConcurrencyExhaustedError: If the parent never settles
        """
        # One pass more than the retry budget, so the last fixes get confirmed
        attempts = self.repo.max_attempts + 1

        for attempt in range(1, attempts + 1):
            parent = await self.repo.get(parent_id, owner_id)
            if parent is None or not parent.children:
                return

            current = {c.node_id: c for c in await self.repo.find_children(parent_id, owner_id)}
            stale = [
                (index, child_id)
                for index, child_id in enumerate(parent.children)
                if child_id in current and current[child_id].position != index
            ]
            if not stale:
                latest = await self.repo.get(parent_id, owner_id)
                if latest is None or latest.revision == parent.revision:
                    return
            for index, child_id in stale:
                await self.repo.retrying_update(child_id, owner_id, _set_position(parent_id, index))

            if attempt < attempts:
                await self.repo.backoff(attempt)

        logger.warning(
            "Renumbering did not settle",
            extra={"parent_id": parent_id, "owner_id": owner_id, "attempts": attempts},
        )
        raise ConcurrencyExhaustedError(parent_id, attempts)

    async def _reorder_roots(self, node: Node, position: int) -> Node:
        """Put a space at ``position`` among the roots and number all roots densely."""
        owner_id = node.owner_id
        order = [r.node_id for r in await self.repo.find_roots(owner_id) if r.node_id != node.node_id]
        order.insert(min(position, len(order)), node.node_id)

        moved = None
        for index, root_id in enumerate(order):
            updated = await self.repo.retrying_update(root_id, owner_id, _set_position(None, index))
            if root_id == node.node_id:
                moved = updated
        if moved is None:
            raise NodeNotFoundError(node.node_id)
        return moved

    # Reads

    async def get(self, node_id: str, owner_id: str) -> Node:
        """Fetch a node.

        Raises:
            NodeNotFoundError: If missing or owned by someone else
        """
        return await self.repo.require(node_id, owner_id)

    async def list_children(self, parent_id: str, owner_id: str) -> list[Node]:
        """Nodes whose parent is ``parent_id``, ordered by position.

        A foreign or missing parent yields an empty list.
        """
        return await self.repo.find_children(parent_id, owner_id)

    async def list_roots(self, owner_id: str) -> list[Node]:
        """All spaces of the owner, ordered by position."""
        return await self.repo.find_roots(owner_id)

    async def list_nodes(self, owner_id: str) -> list[Node]:
        """Every node of the owner, most recently updated first."""
        return await self.repo.find_by_owner(owner_id)

    async def changes_since(self, owner_id: str, since_ms: int) -> list[Node]:
        """Nodes updated after ``since_ms``, oldest change first."""
        nodes = [n for n in await self.repo.find_by_owner(owner_id) if n.updated_at > since_ms]
        nodes.sort(key=lambda n: (n.updated_at, n.node_id))
        return nodes

    async def resolve_path(self, node_id: str, owner_id: str) -> list[Node]:
        """Ancestors of a node, root first, ending with the node itself.

        If an ancestor is missing (a detached subtree awaiting repair) the
        path starts at the highest ancestor that still exists.

        Raises:
            NodeNotFoundError: If the node is missing or foreign
            CorruptTreeError: If the walk revisits a node or exceeds max_depth
        """
        node = await self.repo.require(node_id, owner_id)
        path = [node]
        seen = {node.node_id}

        while node.parent_id is not None:
            if len(path) > self.max_depth:
                raise CorruptTreeError(node_id, len(path))
            parent = await self.repo.get(node.parent_id, owner_id)
            if parent is None:
                logger.warning(
                    "Ancestor missing while resolving path",
                    extra={"node_id": node_id, "missing_id": node.parent_id},
                )
                break
            if parent.node_id in seen:
                raise CorruptTreeError(node_id, len(path))
            seen.add(parent.node_id)
            path.append(parent)
            node = parent

        path.reverse()
        return path

    # Writes

    async def create(
        self,
        owner_id: str,
        kind: NodeKind | str,
        title: str | None = None,
        body: str | None = None,
        parent_id: str | None = None,
        tags: list[str] | None = None,
        encrypted: bool = False,
        encrypted_title: EncryptedBlob | None = None,
        encrypted_body: EncryptedBlob | None = None,
    ) -> Node:
        """Create a node; non-root nodes are appended to their parent.

        Raises:
            InvalidKindError: If kind is not a known node kind
            InvalidParentError: If a space gets a parent, a folder/page gets
                none, or the parent is missing, foreign, or a page
        """
        try:
            kind = NodeKind(kind)
        except ValueError:
            raise InvalidKindError(f"Unknown node kind: {kind}", str(kind))

        node = Node(
            node_id=str(uuid.uuid4()),
            owner_id=owner_id,
            kind=kind,
            children=[] if kind.is_foldable else None,
            title=title,
            body=body,
            tags=list(tags or []),
            encrypted=encrypted,
            encrypted_title=encrypted_title,
            encrypted_body=encrypted_body,
        )

        if kind is NodeKind.SPACE:
            if parent_id is not None:
                raise InvalidParentError("A space is a root and cannot have a parent", parent_id)
            node = await self.repo.insert(node)
            logger.info("Created space", extra={"owner_id": owner_id, "node_id": node.node_id})
            return node

        if parent_id is None:
            raise InvalidParentError(f"A {kind.value} must have a parent")
        parent = self._check_parent(await self.repo.get(parent_id, owner_id), parent_id)

        node.parent_id = parent_id
        node.position = len(parent.children or [])
        node = await self.repo.insert(node)

        parent = await self.repo.retrying_update(parent_id, owner_id, _append_child(node.node_id))
        if parent is None:
            # Parent deleted after validation; do not leave an orphan behind
            await self.repo.retrying_delete(node.node_id, owner_id)
            raise InvalidParentError(f"Parent not found: {parent_id}", parent_id)

        if parent.children.index(node.node_id) != node.position:
            # A concurrent create or move changed the list first
            await self._renumber(parent_id, owner_id)
            node = await self.repo.get(node.node_id, owner_id) or node

        logger.info(
            f"Created {kind.value}",
            extra={"owner_id": owner_id, "node_id": node.node_id, "parent_id": parent_id},
        )
        return node

    async def update_content(
        self,
        node_id: str,
        owner_id: str,
        changes: dict[str, Any],
    ) -> Node:
        """Replace content fields; structure is never touched here.

        Args:
            node_id: Node to update
            owner_id: Caller
            changes: Subset of CONTENT_FIELDS mapped to their new values

        Raises:
            NodeNotFoundError: If missing or owned by someone else
            ValueError: If changes names a structural or unknown field, or
                gives a field a value of the wrong type (null included for
                ``encrypted`` and ``tags``)
        """
        unknown = set(changes) - CONTENT_FIELDS
        if unknown:
            raise ValueError(f"Not content fields: {', '.join(sorted(unknown))}")

        changes = dict(changes)
        for name, value in changes.items():
            _check_content_value(name, value)
        if "tags" in changes:
            changes["tags"] = list(changes["tags"])

        def mutate(node: Node) -> Node | None:
            if all(getattr(node, name) == value for name, value in changes.items()):
                return None
            for name, value in changes.items():
                setattr(node, name, value)
            return node

        node = await self.repo.retrying_update(node_id, owner_id, mutate)
        if node is None:
            raise NodeNotFoundError(node_id)

        logger.debug("Updated node content", extra={"node_id": node_id, "fields": sorted(changes)})
        return node

    async def move(
        self,
        node_id: str,
        owner_id: str,
        new_parent_id: str | None,
        new_position: int,
    ) -> Node:
        """Move a node to ``new_position`` among ``new_parent_id``'s children.

        Positions past the end are clamped to the end; negative positions to 0.
        Spaces can only be reordered among roots (``new_parent_id=None``),
        which renumbers every root densely;
        folders and pages must always get a parent (see promote_to_space).

        Raises:
            NodeNotFoundError: If the node is missing or foreign
            InvalidParentError: If the new parent is missing, foreign, a page,
                absent for a non-space, or given for a space
            CycleDetectedError: If the new parent is the node or a descendant
        """
        node = await self.repo.require(node_id, owner_id)
        new_position = max(0, new_position)

        if node.kind is NodeKind.SPACE:
            if new_parent_id is not None:
                raise InvalidParentError("A space is a root and cannot be moved under a node", new_parent_id)
            return await self._reorder_roots(node, new_position)

        if new_parent_id is None:
            raise InvalidParentError(
                f"A {node.kind.value} must have a parent; promote it to a space instead"
            )
        if new_parent_id == node_id:
            raise CycleDetectedError(node_id, new_parent_id)

        new_parent = self._check_parent(await self.repo.get(new_parent_id, owner_id), new_parent_id)
        await self._check_no_cycle(node_id, new_parent, owner_id)

        old_parent_id = node.parent_id
        if old_parent_id is not None and old_parent_id != new_parent_id:
            old_parent = await self.repo.retrying_update(old_parent_id, owner_id, _remove_child(node_id))
            if old_parent is None:
                logger.info(
                    "Old parent already gone; node treated as detached",
                    extra={"node_id": node_id, "old_parent_id": old_parent_id},
                )
            else:
                await self._renumber(old_parent_id, owner_id)

        new_parent = await self.repo.retrying_update(
            new_parent_id, owner_id, _place_child(node_id, new_position)
        )
        if new_parent is None:
            logger.warning(
                "New parent vanished mid-move; node left detached until repair",
                extra={"node_id": node_id, "new_parent_id": new_parent_id},
            )
            raise InvalidParentError(f"Parent not found: {new_parent_id}", new_parent_id)

        index = new_parent.children.index(node_id)
        moved = await self.repo.retrying_update(node_id, owner_id, _relocate(new_parent_id, index))
        if moved is None:
            raise NodeNotFoundError(node_id)
        await self._renumber(new_parent_id, owner_id)
        moved = await self.repo.get(node_id, owner_id) or moved

        logger.info(
            "Moved node",
            extra={
                "node_id": node_id,
                "old_parent_id": old_parent_id,
                "new_parent_id": new_parent_id,
                "position": moved.position,
            },
        )
        return moved

    async def promote_to_space(self, node_id: str, owner_id: str) -> Node:
        """Detach a folder from its parent and make it a space.

        Raises:
            NodeNotFoundError: If the node is missing or foreign
            InvalidKindError: If the node is a page
        """
        node = await self.repo.require(node_id, owner_id)
        if node.kind is NodeKind.SPACE:
            return node
        if node.kind is NodeKind.PAGE:
            raise InvalidKindError("A page cannot become a space", node.kind.value)

        if node.parent_id is not None:
            old_parent = await self.repo.retrying_update(node.parent_id, owner_id, _remove_child(node_id))
            if old_parent is not None:
                await self._renumber(node.parent_id, owner_id)

        promoted = await self.repo.retrying_update(node_id, owner_id, _make_space)
        if promoted is None:
            raise NodeNotFoundError(node_id)

        logger.info(
            "Promoted node to space",
            extra={"node_id": node_id, "old_parent_id": node.parent_id},
        )
        return promoted

    async def delete(self, node_id: str, owner_id: str) -> bool:
        """Delete a node and, for spaces and folders, everything beneath it.

        Safe to re-run after a partial failure: every step checks that its
        document still exists and still references what it expects.

        Returns:
            True if the node existed and was deleted, False otherwise
        """
        node = await self.repo.get(node_id, owner_id)
        if node is None:
            return False

        await self._delete_subtree(node, owner_id, set(), depth=0, renumber_parent=True)
        logger.info("Deleted node", extra={"node_id": node_id, "owner_id": owner_id})
        return True

    async def _delete_subtree(
        self,
        node: Node,
        owner_id: str,
        visited: set[str],
        depth: int,
        renumber_parent: bool,
    ) -> None:
        if depth > self.max_depth:
            raise CorruptTreeError(node.node_id, depth)
        visited.add(node.node_id)

        if node.kind.is_foldable:
            child_ids = list(node.children or [])
            # Also catch children that point here but were never listed
            for stray in await self.repo.find_children(node.node_id, owner_id):
                if stray.node_id not in child_ids:
                    child_ids.append(stray.node_id)

            for child_id in child_ids:
                if child_id in visited:
                    continue
                child = await self.repo.get(child_id, owner_id)
                if child is None or child.parent_id != node.node_id:
                    # Dangling entry, or a node that has since moved away
                    continue
                await self._delete_subtree(
                    child, owner_id, visited, depth=depth + 1, renumber_parent=False
                )

        if node.parent_id is not None:
            parent = await self.repo.retrying_update(node.parent_id, owner_id, _remove_child(node.node_id))
            if parent is not None and renumber_parent:
                await self._renumber(node.parent_id, owner_id)

        await self.repo.retrying_delete(node.node_id, owner_id)
        logger.debug("Deleted node document", extra={"node_id": node.node_id})
