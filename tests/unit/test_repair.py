"""
Unit tests for the consistency check and repair sweep.

Tests cover:
- check_forest violation codes
- Rebuilding children lists from parent pointers
- Orphan detection and optional deletion
- Dry runs and idempotence
"""

import pytest

from backend.notetree_server.tree import Node, NodeKind, check_forest
from backend.notetree_server.tree.repair import find_orphans, rebuild_children
from tests.conftest import OWNER, build_forest


def _edit(store, node_id, **fields):
    doc = store.raw_get("nodes", node_id)
    doc.update(fields)
    store.raw_put("nodes", node_id, doc)


def _codes(violations):
    return {v.code for v in violations}


class TestPureHelpers:
    """Tests for the snapshot helpers."""

    def test_rebuild_keeps_existing_order(self):
        assert rebuild_children(["b", "ghost", "a", "b"], ["a", "b", "c"]) == ["b", "a", "c"]

    def test_rebuild_from_nothing(self):
        assert rebuild_children(None, ["a", "b"]) == ["a", "b"]

    def test_find_orphans_in_cycle(self):
        a = Node(node_id="a", owner_id=OWNER, kind=NodeKind.FOLDER, parent_id="b", children=["b"])
        b = Node(node_id="b", owner_id=OWNER, kind=NodeKind.FOLDER, parent_id="a", children=["a"])
        s = Node(node_id="s", owner_id=OWNER, kind=NodeKind.SPACE, children=[])

        assert find_orphans([a, b, s]) == ["a", "b"]

    def test_check_forest_clean(self):
        s = Node(node_id="s", owner_id=OWNER, kind=NodeKind.SPACE, children=["p"])
        p = Node(node_id="p", owner_id=OWNER, kind=NodeKind.PAGE, parent_id="s", position=0)

        assert check_forest([s, p]) == []

    def test_check_forest_rootless_page(self):
        p = Node(node_id="p", owner_id=OWNER, kind=NodeKind.PAGE)

        violations = check_forest([p])

        assert [(v.node_id, v.code) for v in violations] == [("p", "rootless")]


class TestTreeRepairer:
    """Tests for TreeRepairer against a live store."""

    @pytest.mark.asyncio
    async def test_clean_forest_needs_no_writes(self, store, engine, repairer):
        await build_forest(engine)
        updates = store.call_counts["update"]

        report = await repairer.repair(OWNER)

        assert report.clean
        assert store.call_counts["update"] == updates

    @pytest.mark.asyncio
    async def test_dangling_entry_is_dropped(self, store, engine, repairer):
        s, f1, f2, _p = await build_forest(engine)
        _edit(store, s.node_id, children=[f1.node_id, "ghost", f2.node_id])

        assert "dangling_child" in _codes(await repairer.verify(OWNER))

        report = await repairer.repair(OWNER)

        assert report.rewritten_parents == [s.node_id]
        assert (await engine.get(s.node_id, OWNER)).children == [f1.node_id, f2.node_id]
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_unlisted_child_is_appended(self, store, engine, repairer):
        s, f1, _f2, p = await build_forest(engine)
        _edit(store, f1.node_id, children=[])

        assert "unlisted_child" in _codes(await repairer.verify(OWNER))

        await repairer.repair(OWNER)

        assert (await engine.get(f1.node_id, OWNER)).children == [p.node_id]
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_duplicates_and_positions_fixed(self, store, engine, repairer):
        s, f1, f2, _p = await build_forest(engine)
        _edit(store, s.node_id, children=[f2.node_id, f1.node_id, f2.node_id])

        assert _codes(await repairer.verify(OWNER)) >= {"duplicate_child", "position_mismatch"}

        report = await repairer.repair(OWNER)

        assert (await engine.get(s.node_id, OWNER)).children == [f2.node_id, f1.node_id]
        assert set(report.renumbered) == {f1.node_id, f2.node_id}
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_half_finished_move_is_reconciled(self, store, engine, repairer):
        """Node detached from its old parent but never attached to the new one."""
        s, f1, f2, p = await build_forest(engine)
        _edit(store, f1.node_id, children=[])
        _edit(store, p.node_id, parent_id=f2.node_id, position=3)

        await repairer.repair(OWNER)

        assert (await engine.get(f2.node_id, OWNER)).children == [p.node_id]
        assert (await engine.get(p.node_id, OWNER)).position == 0
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_kind_fields_normalized(self, store, engine, repairer):
        s, f1, _f2, p = await build_forest(engine)
        _edit(store, p.node_id, children=["x"])
        other = await engine.create(OWNER, NodeKind.SPACE, title="Other")
        _edit(store, other.node_id, parent_id=f1.node_id)

        report = await repairer.repair(OWNER)

        assert set(report.cleared) == {p.node_id, other.node_id}
        assert (await engine.get(p.node_id, OWNER)).children is None
        assert (await engine.get(other.node_id, OWNER)).parent_id is None
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_orphans_reported_then_deleted(self, store, engine, repairer):
        s, f1, _f2, p = await build_forest(engine)
        store.raw_delete("nodes", f1.node_id)

        report = await repairer.repair(OWNER)

        assert report.orphans == [p.node_id]
        assert report.deleted == []
        assert store.raw_get("nodes", p.node_id) is not None

        report = await repairer.repair(OWNER, delete_orphans=True)

        assert report.deleted == [p.node_id]
        assert store.raw_get("nodes", p.node_id) is None
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_cycle_orphans_deleted(self, store, engine, repairer):
        s, _f1, _f2, _p = await build_forest(engine)
        for node_id, parent_id in (("a", "b"), ("b", "a")):
            node = Node(
                node_id=node_id,
                owner_id=OWNER,
                kind=NodeKind.FOLDER,
                parent_id=parent_id,
                children=[parent_id],
            )
            store.raw_put("nodes", node_id, node.to_document())

        assert "unreachable" in _codes(await repairer.verify(OWNER))

        await repairer.repair(OWNER, delete_orphans=True)

        assert store.raw_get("nodes", "a") is None
        assert store.raw_get("nodes", "b") is None
        assert await repairer.verify(OWNER) == []

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, store, engine, repairer):
        s, f1, _f2, _p = await build_forest(engine)
        _edit(store, f1.node_id, children=[])
        before = store.raw_get("nodes", f1.node_id)

        report = await repairer.repair(OWNER, dry_run=True)

        assert not report.clean
        assert report.dry_run
        assert report.rewritten_parents == []
        assert store.raw_get("nodes", f1.node_id) == before

    @pytest.mark.asyncio
    async def test_repair_is_idempotent(self, store, engine, repairer):
        s, f1, f2, p = await build_forest(engine)
        _edit(store, s.node_id, children=["ghost", f2.node_id])

        await repairer.repair(OWNER)
        second = await repairer.repair(OWNER)

        assert second.clean
        assert second.rewritten_parents == []

    @pytest.mark.asyncio
    async def test_report_to_dict(self, store, engine, repairer):
        s, _f1, _f2, _p = await build_forest(engine)
        _edit(store, s.node_id, children=[])

        data = (await repairer.repair(OWNER, dry_run=True)).to_dict()

        assert data["owner_id"] == OWNER
        assert data["clean"] is False
        assert {"node_id", "code", "message"} <= set(data["violations"][0])
