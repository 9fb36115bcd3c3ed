"""
Node model for the knowledge-base tree.

A node is the only entity. Structure is stored redundantly: each node keeps
its own parent_id and position, and each space/folder keeps the ordered
list of its children's ids.

Document layout (collection "nodes"):
    {
        "owner_id": "user_1",
        "kind": "folder",
        "parent_id": "9b1d...",
        "position": 2,
        "children": ["c41a...", "77e0..."],
        "title": "Recipes",
        "body": "",
        "tags": [],
        "encrypted": false,
        "encrypted_title": null,
        "encrypted_body": null,
        "created_at": 1730000000000,
        "updated_at": 1730000000000
    }
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Current time as Unix milliseconds."""
    return int(time.time() * 1000)


class NodeKind(Enum):
    """Kinds of nodes in the forest."""

    SPACE = "space"
    FOLDER = "folder"
    PAGE = "page"

    @property
    def is_foldable(self) -> bool:
        """Whether nodes of this kind hold a children list."""
        return self is not NodeKind.PAGE

    @property
    def is_root(self) -> bool:
        return self is NodeKind.SPACE


@dataclass(frozen=True)
class EncryptedBlob:
    """Ciphertext stored verbatim; the server never decrypts it.

    Attributes:
        algorithm: Algorithm tag chosen by the client
        data: Opaque ciphertext (typically base64)
        key_hint: Optional hint for which client key to use
        version: Envelope format version
    """

    algorithm: str
    data: str
    version: int = 1
    key_hint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "data": self.data,
            "version": self.version,
            "key_hint": self.key_hint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> EncryptedBlob | None:
        if data is None:
            return None
        return cls(
            algorithm=data["algorithm"],
            data=data["data"],
            version=data.get("version", 1),
            key_hint=data.get("key_hint"),
        )


@dataclass
class Node:
    """A space, folder, or page.

    Attributes:
        node_id: Immutable unique identifier
        owner_id: Owning user; never changes
        kind: space, folder, or page
        parent_id: Structural parent; None for spaces
        position: Index within the parent's children list (0 for spaces)
        children: Ordered child ids; None for pages
        title: Plain-text title (None when encrypted)
        body: Plain-text body (None when encrypted)
        tags: Free-form labels
        encrypted: Whether title/body are carried as ciphertext
        encrypted_title: Ciphertext title
        encrypted_body: Ciphertext body
        created_at: Creation timestamp (Unix ms), set by the repository
        updated_at: Last write timestamp (Unix ms), set by the repository
        revision: Store revision token this copy was read at
    """

    node_id: str
    owner_id: str
    kind: NodeKind
    parent_id: str | None = None
    position: int = 0
    children: list[str] | None = None
    title: str | None = None
    body: str | None = None
    tags: list[str] = field(default_factory=list)
    encrypted: bool = False
    encrypted_title: EncryptedBlob | None = None
    encrypted_body: EncryptedBlob | None = None
    created_at: int = 0
    updated_at: int = 0
    revision: str | None = None

    def to_document(self) -> dict[str, Any]:
        """Serialize to a store document body (id and revision live outside)."""
        return {
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "parent_id": self.parent_id,
            "position": self.position,
            "children": list(self.children) if self.children is not None else None,
            "title": self.title,
            "body": self.body,
            "tags": list(self.tags),
            "encrypted": self.encrypted,
            "encrypted_title": self.encrypted_title.to_dict() if self.encrypted_title else None,
            "encrypted_body": self.encrypted_body.to_dict() if self.encrypted_body else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc_id: str, revision: str, data: dict[str, Any]) -> Node:
        """Deserialize from a store document body."""
        children = data.get("children")
        return cls(
            node_id=doc_id,
            owner_id=data["owner_id"],
            kind=NodeKind(data["kind"]),
            parent_id=data.get("parent_id"),
            position=data.get("position", 0),
            children=list(children) if children is not None else None,
            title=data.get("title"),
            body=data.get("body"),
            tags=list(data.get("tags") or []),
            encrypted=data.get("encrypted", False),
            encrypted_title=EncryptedBlob.from_dict(data.get("encrypted_title")),
            encrypted_body=EncryptedBlob.from_dict(data.get("encrypted_body")),
            created_at=data.get("created_at", 0),
            updated_at=data.get("updated_at", 0),
            revision=revision,
        )

    def copy(self, **changes: Any) -> Node:
        """Return a copy with an independent children list."""
        if "children" not in changes and self.children is not None:
            changes["children"] = list(self.children)
        if "tags" not in changes:
            changes["tags"] = list(self.tags)
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict including id and revision."""
        data = self.to_document()
        data["id"] = self.node_id
        data["revision"] = self.revision
        return data
