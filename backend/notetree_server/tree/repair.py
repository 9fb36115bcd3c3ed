"""
Consistency check and repair sweep for an owner's forest.

Multi-document tree edits are not atomic, so a crash or an exhausted retry
can leave a parent's children list and its children's parent_id/position
disagreeing. This module finds and fixes such states.

Repair rules:
    - parent_id is authoritative for membership
    - A parent keeps the relative order of valid entries already in its
      list; missing children are appended by (position, created_at)
    - Dangling and duplicate ids are dropped
    - Positions are renumbered to match list indices
    - Pages lose any children list; spaces lose any parent_id
    - Nodes whose parent is missing or a page, folders/pages without a
      parent, and nodes that cannot reach a space are orphans: reported,
      and deleted only on request

The sweep is idempotent and order-tolerant: running it twice, or while
other operations are in flight, never makes things worse than one more
run can fix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .engine import TreeEngine
from .models import Node, NodeKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Violation:
    """One broken invariant.

    Attributes:
        node_id: Node the problem was found on
        code: Short machine-readable name
        message: Human-readable description
    """

    node_id: str
    code: str
    message: str


@dataclass
class RepairReport:
    """Outcome of a repair sweep.

    Attributes:
        owner_id: Owner whose forest was swept
        dry_run: Whether writes were skipped
        violations: Problems found before repairing
        rewritten_parents: Parents whose children list was rewritten
        renumbered: Nodes whose position was corrected
        cleared: Nodes whose kind-specific fields were normalized
        orphans: Nodes with no valid path to a space
        deleted: Orphans deleted (with their subtrees)
    """

    owner_id: str
    dry_run: bool = False
    violations: list[Violation] = field(default_factory=list)
    rewritten_parents: list[str] = field(default_factory=list)
    renumbered: list[str] = field(default_factory=list)
    cleared: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "dry_run": self.dry_run,
            "clean": self.clean,
            "violations": [v.__dict__ for v in self.violations],
            "rewritten_parents": self.rewritten_parents,
            "renumbered": self.renumbered,
            "cleared": self.cleared,
            "orphans": self.orphans,
            "deleted": self.deleted,
        }


def _member_order(node: Node) -> tuple:
    return (node.position, node.created_at, node.node_id)


def _valid_parent(node: Node, by_id: dict[str, Node]) -> Node | None:
    if node.kind is NodeKind.SPACE or node.parent_id is None:
        return None
    parent = by_id.get(node.parent_id)
    if parent is None or not parent.kind.is_foldable:
        return None
    return parent


def members_by_parent(nodes: list[Node]) -> dict[str, list[Node]]:
    """Group nodes under the parent they point at, in repair order."""
    by_id = {n.node_id: n for n in nodes}
    members: dict[str, list[Node]] = {n.node_id: [] for n in nodes if n.kind.is_foldable}
    for node in nodes:
        parent = _valid_parent(node, by_id)
        if parent is not None:
            members[parent.node_id].append(node)
    for group in members.values():
        group.sort(key=_member_order)
    return members


def rebuild_children(current: list[str] | None, members: list[str]) -> list[str]:
    """Children list keeping current order of valid entries, then the rest."""
    wanted = set(members)
    result: list[str] = []
    for child_id in current or []:
        if child_id in wanted and child_id not in result:
            result.append(child_id)
    for child_id in members:
        if child_id not in result:
            result.append(child_id)
    return result


def find_orphans(nodes: list[Node]) -> list[str]:
    """Nodes that cannot reach a space by following valid parents."""
    by_id = {n.node_id: n for n in nodes}
    reachable: dict[str, bool] = {}

    for node in nodes:
        trail: list[str] = []
        current: Node | None = node
        result = False
        while current is not None:
            if current.node_id in reachable:
                result = reachable[current.node_id]
                break
            if current.node_id in trail:
                break  # cycle
            trail.append(current.node_id)
            if current.kind is NodeKind.SPACE:
                result = True
                break
            current = _valid_parent(current, by_id)
        for node_id in trail:
            reachable[node_id] = result

    return sorted(node_id for node_id, ok in reachable.items() if not ok)


def check_forest(nodes: list[Node]) -> list[Violation]:
    """Check the structural invariants over a snapshot of one owner's nodes."""
    by_id = {n.node_id: n for n in nodes}
    violations: list[Violation] = []

    for node in nodes:
        if node.kind is NodeKind.PAGE and node.children is not None:
            violations.append(Violation(node.node_id, "page_has_children", "Page carries a children list"))
        if node.kind.is_foldable and node.children is None:
            violations.append(Violation(node.node_id, "missing_children", "Children list is missing"))
        if node.kind is NodeKind.SPACE and node.parent_id is not None:
            violations.append(Violation(node.node_id, "space_has_parent", "Space points at a parent"))

        if node.kind.is_foldable and node.children:
            seen: set[str] = set()
            for index, child_id in enumerate(node.children):
                if child_id in seen:
                    violations.append(
                        Violation(node.node_id, "duplicate_child", f"{child_id} listed twice")
                    )
                    continue
                seen.add(child_id)
                child = by_id.get(child_id)
                if child is None:
                    violations.append(
                        Violation(node.node_id, "dangling_child", f"{child_id} does not exist")
                    )
                elif child.parent_id != node.node_id:
                    violations.append(
                        Violation(node.node_id, "foreign_child", f"{child_id} points at {child.parent_id}")
                    )
                elif child.position != index:
                    violations.append(
                        Violation(
                            child_id,
                            "position_mismatch",
                            f"position {child.position} but listed at {index}",
                        )
                    )

        if node.kind is not NodeKind.SPACE:
            if node.parent_id is None:
                violations.append(Violation(node.node_id, "rootless", "Non-space node has no parent"))
                continue
            parent = by_id.get(node.parent_id)
            if parent is None or not parent.kind.is_foldable:
                violations.append(
                    Violation(node.node_id, "invalid_parent", f"Parent {node.parent_id} cannot hold it")
                )
            elif node.node_id not in (parent.children or []):
                violations.append(
                    Violation(node.node_id, "unlisted_child", f"Not listed by parent {parent.node_id}")
                )

    flagged = {v.node_id for v in violations if v.code in ("rootless", "invalid_parent")}
    for node_id in find_orphans(nodes):
        if node_id not in flagged:
            violations.append(Violation(node_id, "unreachable", "No path to a space"))

    return violations


class TreeRepairer:
    """Reconciles children lists with parent pointers for one owner.

    Example:
        >>> report = await TreeRepairer(engine).repair("user_1")
        >>> report.clean
        True
    """

    def __init__(self, engine: TreeEngine) -> None:
        self.engine = engine
        self.repo = engine.repo

    async def verify(self, owner_id: str) -> list[Violation]:
        """Read-only check of the owner's forest."""
        return check_forest(await self.repo.find_by_owner(owner_id))

    async def repair(
        self,
        owner_id: str,
        dry_run: bool = False,
        delete_orphans: bool = False,
    ) -> RepairReport:
        """Run the repair sweep.

        Args:
            owner_id: Owner whose forest to sweep
            dry_run: Only report what is wrong
            delete_orphans: Delete orphaned subtrees instead of reporting them

        Returns:
            RepairReport describing what was found and changed
        """
        nodes = await self.repo.find_by_owner(owner_id)
        report = RepairReport(owner_id=owner_id, dry_run=dry_run)
        report.violations = check_forest(nodes)
        report.orphans = find_orphans(nodes)

        if dry_run or report.clean:
            logger.info(
                "Repair sweep checked forest",
                extra={
                    "owner_id": owner_id,
                    "violations": len(report.violations),
                    "dry_run": dry_run,
                },
            )
            return report

        await self._normalize_kinds(nodes, owner_id, report)
        await self._rebuild_lists(nodes, owner_id, report)

        if delete_orphans:
            for node_id in report.orphans:
                if await self.engine.delete(node_id, owner_id):
                    report.deleted.append(node_id)

        logger.info(
            "Repair sweep finished",
            extra={
                "owner_id": owner_id,
                "violations": len(report.violations),
                "rewritten_parents": len(report.rewritten_parents),
                "renumbered": len(report.renumbered),
                "orphans": len(report.orphans),
                "deleted": len(report.deleted),
            },
        )
        return report

    async def _normalize_kinds(self, nodes: list[Node], owner_id: str, report: RepairReport) -> None:
        def normalize(node: Node) -> Node | None:
            changed = False
            if node.kind is NodeKind.PAGE and node.children is not None:
                node.children = None
                changed = True
            if node.kind is NodeKind.SPACE and node.parent_id is not None:
                node.parent_id = None
                node.position = 0
                changed = True
            return node if changed else None

        for node in nodes:
            if normalize(node.copy()) is None:
                continue
            await self.repo.retrying_update(node.node_id, owner_id, normalize)
            report.cleared.append(node.node_id)

    async def _rebuild_lists(self, nodes: list[Node], owner_id: str, report: RepairReport) -> None:
        members = members_by_parent(nodes)
        by_id = {n.node_id: n for n in nodes}

        for parent_id, group in members.items():
            member_ids = [n.node_id for n in group]

            def rewrite(parent: Node, member_ids: list[str] = member_ids) -> Node | None:
                children = rebuild_children(parent.children, member_ids)
                if children == parent.children:
                    return None
                parent.children = children
                return parent

            parent = by_id[parent_id]
            if rewrite(parent.copy()) is not None:
                written = await self.repo.retrying_update(parent_id, owner_id, rewrite)
                if written is None:
                    continue
                report.rewritten_parents.append(parent_id)
                children = written.children or []
            else:
                children = parent.children or []

            for index, child_id in enumerate(children):
                child = by_id.get(child_id)
                if child is None or child.position == index:
                    continue

                def renumber(node: Node, parent_id: str = parent_id, index: int = index) -> Node | None:
                    if node.parent_id != parent_id or node.position == index:
                        return None
                    node.position = index
                    return node

                if await self.repo.retrying_update(child_id, owner_id, renumber) is not None:
                    report.renumbered.append(child_id)
