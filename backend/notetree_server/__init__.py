"""
Notetree Server - personal knowledge-base backend.

This package stores user-owned nodes (spaces, folders, pages) in a document
store and keeps them organized as a forest of trees:

    ┌─────────────┐     ┌──────────────┐     ┌────────────────┐
    │ HTTP layer  │────▶│ NodeService  │────▶│   TreeEngine   │
    │  (FastAPI)  │     │  (facade)    │     │ (tree shapes)  │
    └─────────────┘     └──────────────┘     └───────┬────────┘
                                                     │
                                                     ▼
                                             ┌────────────────┐
                                             │ NodeRepository │
                                             │ (CAS + retry)  │
                                             └───────┬────────┘
                                                     │
                                                     ▼
                                             ┌────────────────┐
                                             │ DocumentStore  │
                                             │ memory/sqlite  │
                                             └────────────────┘

Invariants:
    - Every node has exactly one owner; no cross-owner references
    - A non-root node is listed in its parent's children at its position
    - Children lists have no duplicates and no dangling ids
    - Following parent_id from any node reaches a space
    - Pages never have a children list

How to change safely:
    - Route every structural write through TreeEngine
    - Keep retried mutations idempotent (they may run more than once)
    - Run the repair sweep after changing the write ordering
"""

from ._version import __version__

__all__ = ["__version__"]
