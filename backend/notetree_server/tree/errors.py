"""
Error types for the node tree.

This module defines the exceptions the tree manager raises to its callers:
- TreeError: Base exception
- NodeNotFoundError: Node absent or owned by someone else
- InvalidParentError: Parent missing, foreign-owned, or not foldable
- InvalidKindError: Operation not allowed for the node's kind
- CycleDetectedError: Move would make a node its own ancestor
- ConcurrencyExhaustedError: Retries exhausted; safe to retry later
- CorruptTreeError: Ancestor walk exceeded its bound

Invariants:
    - All errors inherit from TreeError
    - NodeNotFoundError never reveals whether another owner's node exists
    - Store conflicts never escape the repository except as ConcurrencyExhaustedError
"""

from __future__ import annotations

from typing import Any


class TreeError(Exception):
    """Base exception for all tree errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        retryable: Whether the caller may retry the same request unchanged
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TREE_ERROR"
        self.details = details or {}


class NodeNotFoundError(TreeError):
    """Node does not exist or belongs to another owner.

    The two cases are deliberately indistinguishable.
    """

    def __init__(self, node_id: str) -> None:
        super().__init__(
            f"Node not found: {node_id}",
            code="NOT_FOUND",
            details={"node_id": node_id},
        )
        self.node_id = node_id


class InvalidParentError(TreeError):
    """Requested parent cannot hold the node.

    Raised when:
    - Parent is missing or foreign-owned
    - Parent is a page
    - A space is given a parent, or a folder/page is left without one
    """

    def __init__(self, message: str, parent_id: str | None = None) -> None:
        super().__init__(
            message,
            code="INVALID_PARENT",
            details={"parent_id": parent_id},
        )
        self.parent_id = parent_id


class InvalidKindError(TreeError):
    """Operation is not valid for this kind of node."""

    def __init__(self, message: str, kind: str | None = None) -> None:
        super().__init__(message, code="INVALID_KIND", details={"kind": kind})
        self.kind = kind


class CycleDetectedError(TreeError):
    """Move would make a node its own ancestor."""

    def __init__(self, node_id: str, new_parent_id: str) -> None:
        super().__init__(
            f"Cannot move {node_id} under its own descendant {new_parent_id}",
            code="CYCLE_DETECTED",
            details={"node_id": node_id, "new_parent_id": new_parent_id},
        )
        self.node_id = node_id
        self.new_parent_id = new_parent_id


class ConcurrencyExhaustedError(TreeError):
    """Every read-modify-write attempt lost a race.

    The operation may have partially completed; retrying it is safe.
    """

    retryable = True

    def __init__(self, node_id: str, attempts: int) -> None:
        super().__init__(
            f"Gave up updating {node_id} after {attempts} attempts",
            code="CONCURRENCY_EXHAUSTED",
            details={"node_id": node_id, "attempts": attempts},
        )
        self.node_id = node_id
        self.attempts = attempts


class CorruptTreeError(TreeError):
    """Ancestor walk looped or exceeded the depth bound.

    Only reachable if the store was modified outside the engine.
    """

    def __init__(self, node_id: str, steps: int) -> None:
        super().__init__(
            f"Ancestor chain of {node_id} did not reach a root within {steps} steps",
            code="CORRUPT_TREE",
            details={"node_id": node_id, "steps": steps},
        )
        self.node_id = node_id
        self.steps = steps
