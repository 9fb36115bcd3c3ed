"""
API routes for the Notetree HTTP layer.

Thin REST endpoints over NodeService. Credential verification happens
upstream; the verified owner id arrives in the X-Owner-ID header.
"""

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator, model_validator

from ..tree.models import EncryptedBlob, Node
from .service import NodeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Notetree"])

MAX_TAGS = 20
MAX_TAG_LENGTH = 50
MAX_BULK_ITEMS = 500


# --- Request/Response Models ---


class EncryptedBlobModel(BaseModel):
    """Client-side encrypted payload, stored verbatim."""

    algorithm: str = Field(..., min_length=1, description="Algorithm tag")
    data: str = Field(..., min_length=1, description="Ciphertext")
    version: int = Field(1, ge=1, description="Envelope version")
    key_hint: str | None = Field(None, description="Key hint")

    def to_blob(self) -> EncryptedBlob:
        return EncryptedBlob(
            algorithm=self.algorithm,
            data=self.data,
            version=self.version,
            key_hint=self.key_hint,
        )


NOT_NULLABLE = ("tags", "encrypted")


def _reject_nulls(model: BaseModel) -> None:
    for name in NOT_NULLABLE:
        if name in model.model_fields_set and getattr(model, name) is None:
            raise ValueError(f"{name} cannot be null")


def _check_tags(tags: list[str] | None) -> list[str] | None:
    if tags is None:
        return tags
    if len(tags) > MAX_TAGS:
        raise ValueError(f"At most {MAX_TAGS} tags allowed")
    for tag in tags:
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Tags are limited to {MAX_TAG_LENGTH} characters")
    return tags


def _check_new_content(
    encrypted: bool | None,
    title: str | None,
    encrypted_title: EncryptedBlobModel | None,
    encrypted_body: EncryptedBlobModel | None,
) -> None:
    if encrypted:
        if encrypted_title is None or encrypted_body is None:
            raise ValueError("encrypted_title and encrypted_body are required when encrypted")
    else:
        if encrypted_title is not None or encrypted_body is not None:
            raise ValueError("encrypted_title/encrypted_body require encrypted=true")
        if title is None:
            raise ValueError("title is required")


class NodeCreateRequest(BaseModel):
    """Request to create a node."""

    title: str | None = Field(None, min_length=1, max_length=500, description="Plain-text title")
    body: str | None = Field(None, max_length=1_000_000, description="Plain-text body")
    kind: Literal["space", "folder", "page"] = Field("page", description="Node kind")
    parent_id: str | None = Field(None, description="Parent node id (omit for spaces)")
    tags: list[str] = Field(default_factory=list, description="Tags")
    encrypted: bool = Field(False, description="Whether title/body are ciphertext")
    encrypted_title: EncryptedBlobModel | None = None
    encrypted_body: EncryptedBlobModel | None = None

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: list[str] | None) -> list[str] | None:
        return _check_tags(value)

    @model_validator(mode="after")
    def check_encryption(self) -> "NodeCreateRequest":
        _check_new_content(self.encrypted, self.title, self.encrypted_title, self.encrypted_body)
        return self


class NodeUpdateRequest(BaseModel):
    """Request to update a node's content. Only fields sent are changed."""

    title: str | None = Field(None, min_length=1, max_length=500)
    body: str | None = Field(None, max_length=1_000_000)
    tags: list[str] | None = None
    encrypted: bool | None = None
    encrypted_title: EncryptedBlobModel | None = None
    encrypted_body: EncryptedBlobModel | None = None

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: list[str] | None) -> list[str] | None:
        return _check_tags(value)

    @model_validator(mode="after")
    def check_not_empty(self) -> "NodeUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("At least one field is required")
        return self

    @model_validator(mode="after")
    def check_not_null(self) -> "NodeUpdateRequest":
        _reject_nulls(self)
        return self

    def to_changes(self) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if isinstance(value, EncryptedBlobModel):
                value = value.to_blob()
            changes[name] = value
        return changes


class MoveRequest(BaseModel):
    """Request to move a node."""

    parent_id: str | None = Field(None, description="New parent id")
    position: int = Field(0, ge=0, description="Index among the new siblings (clamped)")


class RepairRequest(BaseModel):
    """Request to run the repair sweep."""

    dry_run: bool = False
    delete_orphans: bool = False


class BulkSyncItem(BaseModel):
    """One node in a bulk upload: updated when ``id`` is set, created otherwise."""

    id: str | None = Field(None, description="Existing node id to update")
    kind: Literal["space", "folder", "page"] | None = None
    parent_id: str | None = None
    title: str | None = Field(None, min_length=1, max_length=500)
    body: str | None = Field(None, max_length=1_000_000)
    tags: list[str] | None = None
    encrypted: bool | None = None
    encrypted_title: EncryptedBlobModel | None = None
    encrypted_body: EncryptedBlobModel | None = None

    @field_validator("tags")
    @classmethod
    def check_tags(cls, value: list[str] | None) -> list[str] | None:
        return _check_tags(value)

    @model_validator(mode="after")
    def check_item(self) -> "BulkSyncItem":
        _reject_nulls(self)
        if self.id is None:
            _check_new_content(self.encrypted, self.title, self.encrypted_title, self.encrypted_body)
        return self

    def to_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if isinstance(value, EncryptedBlobModel):
                value = value.to_blob()
            fields[name] = value
        return fields


class BulkSyncRequest(BaseModel):
    """Batch of nodes uploaded by an offline client."""

    items: list[BulkSyncItem] = Field(..., max_length=MAX_BULK_ITEMS)


class NodeResponse(BaseModel):
    """Node response."""

    id: str
    kind: str
    parent_id: str | None = None
    position: int
    children: list[str] = Field(default_factory=list)
    title: str | None = None
    body: str | None = None
    tags: list[str] = Field(default_factory=list)
    encrypted: bool = False
    encrypted_title: dict[str, Any] | None = None
    encrypted_body: dict[str, Any] | None = None
    created_at: int
    updated_at: int


class NodeListResponse(BaseModel):
    """Ordered list of nodes."""

    items: list[NodeResponse]
    total: int


class ChangesResponse(BaseModel):
    """Nodes changed since a timestamp."""

    items: list[NodeResponse]
    since: int
    latest: int


def _node_response(node: Node) -> NodeResponse:
    return NodeResponse(
        id=node.node_id,
        kind=node.kind.value,
        parent_id=node.parent_id,
        position=node.position,
        children=list(node.children or []),
        title=node.title,
        body=node.body,
        tags=node.tags,
        encrypted=node.encrypted,
        encrypted_title=node.encrypted_title.to_dict() if node.encrypted_title else None,
        encrypted_body=node.encrypted_body.to_dict() if node.encrypted_body else None,
        created_at=node.created_at,
        updated_at=node.updated_at,
    )


def _node_list(nodes: list[Node]) -> NodeListResponse:
    return NodeListResponse(items=[_node_response(n) for n in nodes], total=len(nodes))


# --- Dependencies ---


def get_service(request: Request) -> NodeService:
    """Get node service from app state."""
    return request.app.state.node_service


def get_owner(x_owner_id: str | None = Header(None, alias="X-Owner-ID")) -> str:
    """Get the authenticated owner id set by the auth layer."""
    if not x_owner_id:
        raise HTTPException(status_code=401, detail="X-Owner-ID header is required")
    return x_owner_id


# --- Node Routes ---


@router.get("/nodes", response_model=NodeListResponse)
async def list_nodes(
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """List every node of the caller, most recently updated first."""
    return _node_list(await service.list_nodes(owner_id))


@router.get("/nodes/roots", response_model=NodeListResponse)
async def list_roots(
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """List the caller's spaces in order."""
    return _node_list(await service.list_roots(owner_id))


@router.get("/nodes/{node_id}", response_model=NodeResponse)
async def get_node(
    node_id: str,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Get a single node by ID."""
    return _node_response(await service.get_node(node_id, owner_id))


@router.post("/nodes", response_model=NodeResponse, status_code=201)
async def create_node(
    request: NodeCreateRequest,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """
    Create a space, folder, or page.

    Folders and pages are appended to the end of their parent's children.
    """
    node = await service.create_node(
        request.title,
        request.body,
        owner_id,
        request.kind,
        parent_id=request.parent_id,
        tags=request.tags,
        encrypted=request.encrypted,
        encrypted_title=request.encrypted_title.to_blob() if request.encrypted_title else None,
        encrypted_body=request.encrypted_body.to_blob() if request.encrypted_body else None,
    )
    return _node_response(node)


@router.put("/nodes/{node_id}", response_model=NodeResponse)
async def update_node(
    node_id: str,
    request: NodeUpdateRequest,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Update content fields. Use the move endpoint to restructure."""
    return _node_response(await service.update_node(node_id, owner_id, request.to_changes()))


@router.delete("/nodes/{node_id}", status_code=204)
async def delete_node(
    node_id: str,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Delete a node and everything beneath it."""
    if not await service.delete_node(node_id, owner_id):
        raise HTTPException(status_code=404, detail=f"Node {node_id} not found")


@router.get("/nodes/{node_id}/children", response_model=NodeListResponse)
async def list_children(
    node_id: str,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """List a node's children ordered by position."""
    return _node_list(await service.list_children(node_id, owner_id))


@router.patch("/nodes/{node_id}/move", response_model=NodeResponse)
async def move_node(
    node_id: str,
    request: MoveRequest,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Move a node under a new parent at a given position."""
    return _node_response(
        await service.move_node(node_id, request.parent_id, request.position, owner_id)
    )


@router.post("/nodes/{node_id}/promote", response_model=NodeResponse)
async def promote_node(
    node_id: str,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Turn a folder into a space."""
    return _node_response(await service.promote_node(node_id, owner_id))


@router.get("/nodes/{node_id}/path", response_model=NodeListResponse)
async def resolve_path(
    node_id: str,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Ancestors of a node, root first."""
    return _node_list(await service.resolve_path(node_id, owner_id))


# --- Sync and Maintenance Routes ---


@router.get("/sync/changes", response_model=ChangesResponse)
async def changes_since(
    since: int = Query(0, ge=0, description="Unix ms; return nodes updated after this"),
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Nodes changed after ``since``, oldest first."""
    nodes = await service.changes_since(owner_id, since)
    latest = max((n.updated_at for n in nodes), default=since)
    return ChangesResponse(items=[_node_response(n) for n in nodes], since=since, latest=latest)


@router.post("/maintenance/repair")
async def repair(
    request: RepairRequest,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """Run the repair sweep over the caller's forest."""
    report = await service.repair(
        owner_id,
        dry_run=request.dry_run,
        delete_orphans=request.delete_orphans,
    )
    return report.to_dict()


@router.post("/sync/bulk")
async def bulk_sync(
    request: BulkSyncRequest,
    service: NodeService = Depends(get_service),
    owner_id: str = Depends(get_owner),
):
    """
    Create or update a batch of nodes.

    Items are applied in order and independently; a failing item is
    reported under ``errors`` and does not stop the rest.
    """
    result = await service.bulk_sync(owner_id, [item.to_fields() for item in request.items])
    return result.to_dict()
