"""
Tree module for Notetree - the hierarchical node tree manager.

This module handles:
- The node model (spaces, folders, pages)
- Owner-scoped, revision-checked node access (NodeRepository)
- Structural operations that keep parent lists and parent pointers in step
  (TreeEngine)
- Consistency checking and the repair sweep (TreeRepairer)

Invariants:
    - Every structural change goes through TreeEngine
    - Foreign-owned nodes are indistinguishable from missing ones
    - No in-process locks; all serialization is the store's revision check

How to change safely:
    - Keep write ordering: insert before listing, unlist before deleting
    - Test concurrent scenarios with injected conflicts and timeouts
    - Run TreeRepairer.verify in tests after every structural operation
"""

from .engine import CONTENT_FIELDS, TreeEngine
from .errors import (
    ConcurrencyExhaustedError,
    CorruptTreeError,
    CycleDetectedError,
    InvalidKindError,
    InvalidParentError,
    NodeNotFoundError,
    TreeError,
)
from .models import EncryptedBlob, Node, NodeKind
from .repair import RepairReport, TreeRepairer, Violation, check_forest
from .repository import NodeRepository

__all__ = [
    "CONTENT_FIELDS",
    "TreeEngine",
    "NodeRepository",
    "TreeRepairer",
    "RepairReport",
    "Violation",
    "check_forest",
    "Node",
    "NodeKind",
    "EncryptedBlob",
    "TreeError",
    "NodeNotFoundError",
    "InvalidParentError",
    "InvalidKindError",
    "CycleDetectedError",
    "ConcurrencyExhaustedError",
    "CorruptTreeError",
]
