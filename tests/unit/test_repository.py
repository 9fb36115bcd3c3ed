"""
Unit tests for NodeRepository.

Tests cover:
- Ownership guard on reads and writes
- The retrying read-modify-write loop (conflicts, timeouts, exhaustion)
- Insert and delete retries when the outcome of a timed-out call is unknown
"""

import pytest

from backend.notetree_server.store.base import (
    RevisionConflictError,
    StoreTimeoutError,
)
from backend.notetree_server.store.memory import InMemoryDocumentStore
from backend.notetree_server.tree import (
    ConcurrencyExhaustedError,
    Node,
    NodeKind,
    NodeNotFoundError,
    NodeRepository,
)
from tests.conftest import OTHER, OWNER


def _node(title="Inbox", kind=NodeKind.FOLDER, owner=OWNER):
    return Node(node_id="", owner_id=owner, kind=kind, children=[], title=title)


def _conflict(node_id="n"):
    return RevisionConflictError("nodes", node_id, "stale")


class TestNodeRepositoryReads:
    """Reads and the ownership guard."""

    @pytest.mark.asyncio
    async def test_insert_stamps_node(self, repo):
        node = await repo.insert(_node())

        assert node.node_id
        assert node.revision is not None
        assert node.created_at > 0
        assert node.updated_at == node.created_at

    @pytest.mark.asyncio
    async def test_get_foreign_node_is_none(self, repo):
        node = await repo.insert(_node())

        assert await repo.get(node.node_id, OWNER) is not None
        assert await repo.get(node.node_id, OTHER) is None

        with pytest.raises(NodeNotFoundError):
            await repo.require(node.node_id, OTHER)

    @pytest.mark.asyncio
    async def test_find_is_owner_scoped(self, repo):
        await repo.insert(_node("mine", kind=NodeKind.SPACE))
        await repo.insert(_node("theirs", kind=NodeKind.SPACE, owner=OTHER))

        roots = await repo.find_roots(OWNER)

        assert [n.title for n in roots] == ["mine"]

    @pytest.mark.asyncio
    async def test_find_children_orders_by_position(self, repo):
        parent = await repo.insert(_node("parent", kind=NodeKind.SPACE))
        for title, position in (("c", 2), ("a", 0), ("b", 1)):
            child = _node(title, kind=NodeKind.PAGE)
            child.children = None
            child.parent_id = parent.node_id
            child.position = position
            await repo.insert(child)

        children = await repo.find_children(parent.node_id, OWNER)

        assert [c.title for c in children] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_read_timeouts_are_retried(self, store, repo):
        await repo.insert(_node(kind=NodeKind.SPACE))
        store.inject_failure("find", StoreTimeoutError("slow"), times=2)

        roots = await repo.find_roots(OWNER)

        assert len(roots) == 1
        assert store.call_counts["find"] == 3

    @pytest.mark.asyncio
    async def test_read_timeouts_exhaust(self, store, repo):
        node = await repo.insert(_node())
        store.inject_failure("get", StoreTimeoutError("slow"), times=5)

        with pytest.raises(ConcurrencyExhaustedError):
            await repo.get(node.node_id, OWNER)

    def test_requires_one_attempt(self, store):
        with pytest.raises(ValueError):
            NodeRepository(store, max_attempts=0)


class TestNodeRepositoryWrites:
    """Conditional writes and the retry loop."""

    @pytest.mark.asyncio
    async def test_put_stale_revision_conflicts(self, repo):
        node = await repo.insert(_node())
        await repo.put(node.copy(title="first"), OWNER)

        with pytest.raises(RevisionConflictError):
            await repo.put(node.copy(title="second"), OWNER)

    @pytest.mark.asyncio
    async def test_put_foreign_node_is_not_found(self, repo):
        node = await repo.insert(_node())

        with pytest.raises(NodeNotFoundError):
            await repo.put(node.copy(title="hijack"), OTHER)

    @pytest.mark.asyncio
    async def test_retrying_update_applies_mutation(self, repo):
        node = await repo.insert(_node())

        def rename(n):
            n.title = "Renamed"
            return n

        updated = await repo.retrying_update(node.node_id, OWNER, rename)

        assert updated.title == "Renamed"
        assert updated.revision != node.revision
        assert (await repo.get(node.node_id, OWNER)).title == "Renamed"

    @pytest.mark.asyncio
    async def test_retrying_update_noop_skips_write(self, store, repo):
        node = await repo.insert(_node())

        result = await repo.retrying_update(node.node_id, OWNER, lambda n: None)

        assert result.revision == node.revision
        assert store.call_counts["update"] == 0

    @pytest.mark.asyncio
    async def test_retrying_update_rereads_after_conflict(self, store, repo):
        """A concurrent write is never lost: the mutation reapplies to fresh data."""
        node = await repo.insert(_node("Original"))
        seen = []

        def tag(n):
            seen.append(n.title)
            if len(seen) == 1:
                raced = dict(store.raw_get("nodes", n.node_id), title="Concurrent")
                store.raw_put("nodes", n.node_id, raced)
            n.tags = n.tags + ["x"]
            return n

        result = await repo.retrying_update(node.node_id, OWNER, tag)

        assert seen == ["Original", "Concurrent"]
        assert result.title == "Concurrent"
        assert result.tags == ["x"]

    @pytest.mark.asyncio
    async def test_retrying_update_retries_injected_conflicts(self, store, repo):
        node = await repo.insert(_node())
        store.inject_failure("update", _conflict(node.node_id), times=2)

        updated = await repo.retrying_update(node.node_id, OWNER, lambda n: n.copy(title="ok"))

        assert updated.title == "ok"
        assert store.call_counts["update"] == 3

    @pytest.mark.asyncio
    async def test_retrying_update_exhausts(self, store, repo):
        node = await repo.insert(_node())
        store.inject_failure("update", _conflict(node.node_id), times=5)

        with pytest.raises(ConcurrencyExhaustedError) as exc_info:
            await repo.retrying_update(node.node_id, OWNER, lambda n: n.copy(title="never"))

        assert exc_info.value.retryable
        assert exc_info.value.attempts == 5
        assert (await repo.get(node.node_id, OWNER)).title == "Inbox"

    @pytest.mark.asyncio
    async def test_timeouts_count_as_failed_attempts(self, store, repo):
        node = await repo.insert(_node())
        store.inject_failure("update", StoreTimeoutError("slow"), times=3)

        updated = await repo.retrying_update(
            node.node_id, OWNER, lambda n: n.copy(title="late"), max_attempts=4
        )

        assert updated.title == "late"

        store.inject_failure("update", StoreTimeoutError("slow"), times=2)
        with pytest.raises(ConcurrencyExhaustedError):
            await repo.retrying_update(
                node.node_id, OWNER, lambda n: n.copy(title="never"), max_attempts=2
            )

    @pytest.mark.asyncio
    async def test_retrying_update_missing_or_foreign(self, repo):
        node = await repo.insert(_node())
        calls = []

        def mutate(n):
            calls.append(n)
            return n

        assert await repo.retrying_update("missing", OWNER, mutate) is None
        assert await repo.retrying_update(node.node_id, OTHER, mutate) is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_retrying_update_node_deleted_mid_write(self, store, repo):
        node = await repo.insert(_node())
        store.before_next("update", lambda: store.raw_delete("nodes", node.node_id))

        assert await repo.retrying_update(node.node_id, OWNER, lambda n: n.copy(title="x")) is None

    @pytest.mark.asyncio
    async def test_retrying_delete(self, store, repo):
        node = await repo.insert(_node())
        store.inject_failure("delete", _conflict(node.node_id), times=1)

        assert await repo.retrying_delete(node.node_id, OWNER) is True
        assert await repo.retrying_delete(node.node_id, OWNER) is False
        assert store.document_count("nodes") == 0

    @pytest.mark.asyncio
    async def test_retrying_delete_foreign_node(self, store, repo):
        node = await repo.insert(_node())

        assert await repo.retrying_delete(node.node_id, OTHER) is False
        assert store.document_count("nodes") == 1


class LandedTimeoutStore(InMemoryDocumentStore):
    """Store whose first write of each kind lands but reports a timeout."""

    def __init__(self, operations):
        super().__init__()
        self.pending = set(operations)

    async def insert(self, collection, data, doc_id=None):
        doc = await super().insert(collection, data, doc_id=doc_id)
        if "insert" in self.pending:
            self.pending.discard("insert")
            raise StoreTimeoutError("insert timed out after commit")
        return doc

    async def delete(self, collection, doc_id, revision):
        await super().delete(collection, doc_id, revision)
        if "delete" in self.pending:
            self.pending.discard("delete")
            raise StoreTimeoutError("delete timed out after commit")


class TestUnknownOutcomes:
    """Timed-out writes that actually landed."""

    @pytest.mark.asyncio
    async def test_insert_that_landed_is_not_duplicated(self):
        store = LandedTimeoutStore({"insert"})
        await store.connect()
        repo = NodeRepository(store, retry_delay_ms=0)

        node = await repo.insert(_node())

        assert node.title == "Inbox"
        assert store.document_count("nodes") == 1

    @pytest.mark.asyncio
    async def test_delete_that_landed_reports_success(self):
        store = LandedTimeoutStore({"delete"})
        await store.connect()
        repo = NodeRepository(store, retry_delay_ms=0)
        node = await repo.insert(_node())

        assert await repo.retrying_delete(node.node_id, OWNER) is True
        assert store.document_count("nodes") == 0
