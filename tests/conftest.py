"""
Shared fixtures for the Notetree test suite.

Everything here runs against the in-memory document store with retry
backoff disabled, so tests are fast and deterministic.
"""

import pytest
import pytest_asyncio

from backend.notetree_server.store.memory import InMemoryDocumentStore
from backend.notetree_server.tree import NodeKind, NodeRepository, TreeEngine, TreeRepairer

OWNER = "user_1"
OTHER = "user_2"


@pytest_asyncio.fixture
async def store():
    """Connected in-memory store."""
    store = InMemoryDocumentStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def repo(store):
    return NodeRepository(store, max_attempts=5, retry_delay_ms=0)


@pytest.fixture
def engine(repo):
    return TreeEngine(repo)


@pytest.fixture
def repairer(engine):
    return TreeRepairer(engine)


async def build_forest(engine, owner=OWNER):
    """Create space S with folders F1, F2 and page P under F1."""
    s = await engine.create(owner, NodeKind.SPACE, title="S")
    f1 = await engine.create(owner, NodeKind.FOLDER, title="F1", parent_id=s.node_id)
    f2 = await engine.create(owner, NodeKind.FOLDER, title="F2", parent_id=s.node_id)
    p = await engine.create(owner, NodeKind.PAGE, title="P", parent_id=f1.node_id)
    return s, f1, f2, p
