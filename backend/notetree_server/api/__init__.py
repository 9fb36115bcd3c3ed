"""
API module for Notetree.

This module provides:
- NodeService: the operation surface over the tree engine
- HTTP API: FastAPI app with REST endpoints under /api/v1

The HTTP layer is a thin translation; all tree rules live in the tree module.
"""

from .app import create_app
from .service import NodeService
from .settings import Settings

__all__ = [
    "create_app",
    "NodeService",
    "Settings",
]
