"""
Notetree Test Suite.

This package contains:
- unit/: Unit tests against the in-memory document store
- integration/: Integration tests (SQLite file store, FastAPI app)
"""
