"""
Integration tests for the SQLite document store.

Tests cover:
- Revision-checked writes against a real database file
- Owner-scoped find with sorting
- Persistence across store instances
- The tree engine end to end on SQLite
"""

import tempfile

import pytest

from backend.notetree_server.store.base import (
    DocumentNotFoundError,
    DuplicateDocumentError,
    RevisionConflictError,
    StoreConnectionError,
)
from backend.notetree_server.store.sqlite import SqliteDocumentStore
from backend.notetree_server.tree import NodeKind, NodeRepository, TreeEngine, TreeRepairer
from tests.conftest import OTHER, OWNER, build_forest


class TestSqliteDocumentStore:
    """Tests for SqliteDocumentStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def sqlite_store(self, data_dir):
        return SqliteDocumentStore(data_dir, wal_mode=False)

    @pytest.mark.asyncio
    async def test_requires_connect(self, sqlite_store):
        with pytest.raises(StoreConnectionError):
            await sqlite_store.get("nodes", "a")

    @pytest.mark.asyncio
    async def test_connect_creates_database(self, data_dir):
        store = SqliteDocumentStore(f"{data_dir}/nested/dir", filename="kb.db")

        await store.connect()

        assert store.is_connected
        assert store.db_path.exists()

    @pytest.mark.asyncio
    async def test_insert_and_get(self, sqlite_store):
        await sqlite_store.connect()

        doc = await sqlite_store.insert("nodes", {"owner_id": "u1", "title": "Inbox"})
        fetched = await sqlite_store.get("nodes", doc.doc_id)

        assert fetched.revision == doc.revision
        assert fetched.data == {"owner_id": "u1", "title": "Inbox"}
        assert await sqlite_store.get("nodes", "missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_insert(self, sqlite_store):
        await sqlite_store.connect()
        await sqlite_store.insert("nodes", {}, doc_id="a")

        with pytest.raises(DuplicateDocumentError):
            await sqlite_store.insert("nodes", {}, doc_id="a")

    @pytest.mark.asyncio
    async def test_compare_and_swap(self, sqlite_store):
        await sqlite_store.connect()
        doc = await sqlite_store.insert("nodes", {"title": "v1"})

        updated = await sqlite_store.update("nodes", doc.doc_id, doc.revision, {"title": "v2"})
        assert updated.revision.startswith("2-")

        with pytest.raises(RevisionConflictError):
            await sqlite_store.update("nodes", doc.doc_id, doc.revision, {"title": "lost"})
        with pytest.raises(RevisionConflictError):
            await sqlite_store.delete("nodes", doc.doc_id, doc.revision)

        await sqlite_store.delete("nodes", doc.doc_id, updated.revision)

        with pytest.raises(DocumentNotFoundError):
            await sqlite_store.update("nodes", doc.doc_id, updated.revision, {})
        with pytest.raises(DocumentNotFoundError):
            await sqlite_store.delete("nodes", doc.doc_id, updated.revision)

    @pytest.mark.asyncio
    async def test_find_is_owner_scoped_and_sorted(self, sqlite_store):
        await sqlite_store.connect()
        await sqlite_store.insert("nodes", {"owner_id": "u1", "parent_id": "p", "position": 1}, doc_id="b")
        await sqlite_store.insert("nodes", {"owner_id": "u1", "parent_id": "p", "position": 0}, doc_id="a")
        await sqlite_store.insert("nodes", {"owner_id": "u1", "parent_id": "q", "position": 0}, doc_id="c")
        await sqlite_store.insert("nodes", {"owner_id": "u2", "parent_id": "p", "position": 0}, doc_id="x")

        docs = await sqlite_store.find(
            "nodes", {"owner_id": "u1", "parent_id": "p"}, sort=[("position", "asc")]
        )

        assert [d.doc_id for d in docs] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_data_persists_across_instances(self, data_dir):
        first = SqliteDocumentStore(data_dir, wal_mode=False)
        await first.connect()
        doc = await first.insert("nodes", {"owner_id": "u1"})
        await first.close()

        second = SqliteDocumentStore(data_dir, wal_mode=False)
        await second.connect()

        assert (await second.get("nodes", doc.doc_id)).revision == doc.revision


class TestTreeOnSqlite:
    """The tree engine against the SQLite backend."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def sqlite_engine(self, data_dir):
        store = SqliteDocumentStore(data_dir)
        return TreeEngine(NodeRepository(store, retry_delay_ms=0))

    @pytest.mark.asyncio
    async def test_move_delete_and_path(self, sqlite_engine):
        await sqlite_engine.repo.store.connect()
        repairer = TreeRepairer(sqlite_engine)
        s, f1, f2, p = await build_forest(sqlite_engine)

        path = await sqlite_engine.resolve_path(p.node_id, OWNER)
        assert [n.title for n in path] == ["S", "F1", "P"]

        await sqlite_engine.move(p.node_id, OWNER, f2.node_id, 0)
        assert (await sqlite_engine.get(f2.node_id, OWNER)).children == [p.node_id]
        assert await repairer.verify(OWNER) == []

        assert await sqlite_engine.delete(f2.node_id, OWNER) is True
        assert (await sqlite_engine.get(s.node_id, OWNER)).children == [f1.node_id]
        assert len(await sqlite_engine.list_nodes(OWNER)) == 2
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_owners_are_isolated(self, sqlite_engine):
        await sqlite_engine.repo.store.connect()
        mine = await sqlite_engine.create(OWNER, NodeKind.SPACE, title="Mine")
        await sqlite_engine.create(OTHER, NodeKind.SPACE, title="Theirs")

        roots = await sqlite_engine.list_roots(OWNER)

        assert [r.node_id for r in roots] == [mine.node_id]
        assert await sqlite_engine.delete(mine.node_id, OTHER) is False
