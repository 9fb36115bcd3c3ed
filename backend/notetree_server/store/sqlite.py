"""
SQLite document store for Notetree.

Stores every collection in one SQLite file as JSON bodies keyed by
(collection, doc_id), with a revision column that makes update and delete
compare-and-swap operations.

Invariants:
    - One row per document; body_json holds the full document
    - Writes are single-statement and conditioned on the revision column
    - owner_id is denormalized out of the body so owner-scoped finds use an index

How to change safely:
    - Schema migrations must be backward compatible
    - Keep every write a single statement (no multi-document transactions)

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - revision TEXT
        - owner_id TEXT (copied from body, nullable)
        - body_json TEXT
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .base import (
    DocumentNotFoundError,
    DuplicateDocumentError,
    RevisionConflictError,
    StoreConnectionError,
    StoredDocument,
    StoreError,
    StoreTimeoutError,
    apply_sort,
    matches,
    next_revision,
)

logger = logging.getLogger(__name__)


class SqliteDocumentStore:
    """SQLite-backed implementation of DocumentStore.

    Thread safety:
        Each operation opens its own connection. SQLite serializes writers;
        a writer that cannot get the lock within ``timeout_ms`` surfaces as
        StoreTimeoutError.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/notetree")
        >>> await store.connect()
        >>> doc = await store.insert("nodes", {"owner_id": "u1", "title": "Inbox"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        filename: str = "notetree.db",
        timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for the SQLite database file
            filename: Database file name
            timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL journal mode
        """
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / filename
        self.timeout_ms = timeout_ms
        self.wal_mode = wal_mode
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, translating lock timeouts."""
        if not self._connected:
            raise StoreConnectionError("Not connected")

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit; every write is one statement
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise StoreTimeoutError(f"SQLite busy after {self.timeout_ms}ms: {e}") from e
            raise StoreError(f"SQLite error: {e}") from e
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                revision TEXT NOT NULL,
                owner_id TEXT,
                body_json TEXT NOT NULL DEFAULT '{}',
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_owner
                ON documents(collection, owner_id);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def connect(self) -> None:
        """Create the database file and schema if needed."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._connected = True
        with self._get_connection() as conn:
            self._create_schema(conn)
        logger.info("SQLite document store ready", extra={"db_path": str(self.db_path)})

    async def close(self) -> None:
        self._connected = False

    @staticmethod
    def _row_to_doc(row: sqlite3.Row) -> StoredDocument:
        return StoredDocument(
            collection=row["collection"],
            doc_id=row["doc_id"],
            revision=row["revision"],
            data=json.loads(row["body_json"]),
        )

    async def get(self, collection: str, doc_id: str) -> StoredDocument | None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row = cursor.fetchone()
            return self._row_to_doc(row) if row else None

    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        sort: list[tuple[str, str]] | None = None,
        limit: int | None = None,
    ) -> list[StoredDocument]:
        with self._get_connection() as conn:
            if "owner_id" in where:
                cursor = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? AND owner_id = ? ORDER BY rowid",
                    (collection, where["owner_id"]),
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM documents WHERE collection = ? ORDER BY rowid",
                    (collection,),
                )
            docs = [self._row_to_doc(row) for row in cursor.fetchall()]

        docs = apply_sort([doc for doc in docs if matches(doc.data, where)], sort)
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def insert(
        self,
        collection: str,
        data: dict[str, Any],
        doc_id: str | None = None,
    ) -> StoredDocument:
        doc_id = doc_id or str(uuid.uuid4())
        revision = next_revision(None)

        with self._get_connection() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO documents (collection, doc_id, revision, owner_id,
                                           body_json, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        collection,
                        doc_id,
                        revision,
                        data.get("owner_id"),
                        json.dumps(data),
                        int(time.time() * 1000),
                    ),
                )
            except sqlite3.IntegrityError:
                raise DuplicateDocumentError(collection, doc_id)

        logger.debug(
            "Inserted document",
            extra={"collection": collection, "doc_id": doc_id, "revision": revision},
        )
        return StoredDocument(collection, doc_id, revision, json.loads(json.dumps(data)))

    def _current_revision(self, conn: sqlite3.Connection, collection: str, doc_id: str) -> str | None:
        cursor = conn.execute(
            "SELECT revision FROM documents WHERE collection = ? AND doc_id = ?",
            (collection, doc_id),
        )
        row = cursor.fetchone()
        return row["revision"] if row else None

    async def update(
        self,
        collection: str,
        doc_id: str,
        revision: str,
        data: dict[str, Any],
    ) -> StoredDocument:
        new_revision = next_revision(revision)

        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE documents
                SET revision = ?, owner_id = ?, body_json = ?, updated_at = ?
                WHERE collection = ? AND doc_id = ? AND revision = ?
                """,
                (
                    new_revision,
                    data.get("owner_id"),
                    json.dumps(data),
                    int(time.time() * 1000),
                    collection,
                    doc_id,
                    revision,
                ),
            )
            if cursor.rowcount == 0:
                actual = self._current_revision(conn, collection, doc_id)
                if actual is None:
                    raise DocumentNotFoundError(collection, doc_id)
                raise RevisionConflictError(collection, doc_id, revision, actual)

        return StoredDocument(collection, doc_id, new_revision, json.loads(json.dumps(data)))

    async def delete(self, collection: str, doc_id: str, revision: str) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ? AND revision = ?",
                (collection, doc_id, revision),
            )
            if cursor.rowcount == 0:
                actual = self._current_revision(conn, collection, doc_id)
                if actual is None:
                    raise DocumentNotFoundError(collection, doc_id)
                raise RevisionConflictError(collection, doc_id, revision, actual)
