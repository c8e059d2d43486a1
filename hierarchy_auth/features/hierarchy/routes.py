"""
Hierarchy API routes.

Node CRUD, subtree moves and path maintenance. Every route authorizes the
caller against the target node's path before touching the tree.
"""
from typing import Annotated, List
from fastapi import APIRouter, Depends, HTTPException, status

from hierarchy_auth.features.hierarchy import levels
from hierarchy_auth.features.hierarchy.levels import EntityType
from hierarchy_auth.features.hierarchy.schemas import (
    BatchMoveRequest,
    BatchMoveResponse,
    IntegrityResponse,
    MoveRequest,
    MoveResponse,
    NodeCreate,
    NodeResponse,
    RebuildRequest,
    RebuildResponse,
)
from hierarchy_auth.features.hierarchy import service as hierarchy_service
from hierarchy_auth.features.hierarchy.service import HierarchyService
from hierarchy_auth.features.hierarchy.store import NodeRecord
from hierarchy_auth.features.permissions.dependencies import (
    ensure_permission,
    get_authorization_service,
    get_current_principal_id,
    get_hierarchy_service,
    require_permission,
)
from hierarchy_auth.features.permissions.resolver import RESOURCE_FAMILIES
from hierarchy_auth.features.permissions.service import AuthorizationService, TargetRef
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


def _family(entity_type: EntityType) -> str:
    return RESOURCE_FAMILIES[levels.level_of(entity_type)]


def _target(node: NodeRecord) -> TargetRef:
    return TargetRef(node.entity_type.value, node.id)


async def _ensure_can_view(auth: AuthorizationService, principal_id: str, node: NodeRecord) -> None:
    permission = f"{_family(node.entity_type)}.view"
    for scope in ("subordinate", "own"):
        if await auth.authorize(principal_id, permission, scope, _target(node)):
            return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"Permission denied: {permission}",
    )


async def _ensure_can_move(auth: AuthorizationService, hierarchy: HierarchyService,
                           principal_id: str, entity_id: str, new_parent_id: str) -> None:
    """The caller must manage the entity's family at both the old and the new location."""
    entity = await hierarchy.store.get(entity_id)
    if entity is None:
        return
    permission = f"{_family(entity.entity_type)}.manage"
    await ensure_permission(auth, principal_id, permission, "subordinate", _target(entity))
    new_parent = await hierarchy.store.get(new_parent_id)
    if new_parent is not None:
        await ensure_permission(auth, principal_id, permission, "subordinate", _target(new_parent))


# ============================================================================
# Node Routes
# ============================================================================

@router.post("/nodes", response_model=NodeResponse, status_code=status.HTTP_201_CREATED)
async def create_node(
    node: NodeCreate,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """Create a node under a parent inside the caller's scope."""
    if not await auth.can_create(principal_id, node.entity_type, node.parent_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: cannot create {node.entity_type.value} here",
        )
    return await hierarchy.create_node(node.entity_type, node.name, node.parent_id)


@router.get("/nodes/{node_id}", response_model=NodeResponse)
async def get_node(
    node_id: str,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """Get a single node."""
    node = await hierarchy.get_node(node_id)
    await _ensure_can_view(auth, principal_id, node)
    return node


@router.get("/nodes/{node_id}/subtree", response_model=List[NodeResponse])
async def get_subtree(
    node_id: str,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """Get a node and all of its descendants, shallowest first."""
    node = await hierarchy.get_node(node_id)
    await _ensure_can_view(auth, principal_id, node)
    return await hierarchy.subtree(node_id)


@router.delete("/nodes/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_node(
    node_id: str,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """Delete a node that has no children."""
    node = await hierarchy.get_node(node_id)
    await ensure_permission(
        auth, principal_id, f"{_family(node.entity_type)}.delete", "subordinate", _target(node)
    )
    await hierarchy.delete_node(node_id)


# ============================================================================
# Move Routes
# ============================================================================

@router.post("/move", response_model=MoveResponse)
async def move_node(
    request: MoveRequest,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """Move a node and its whole subtree under a new parent."""
    await _ensure_can_move(auth, hierarchy, principal_id, request.entity_id, request.new_parent_id)
    return await hierarchy.move_path(
        request.entity_type, request.entity_id, request.new_parent_id,
        actor_id=principal_id, reason=request.reason,
    )


@router.post("/move/batch", response_model=BatchMoveResponse)
async def move_nodes(
    request: BatchMoveRequest,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """
    Apply several moves, each in its own transaction.

    Every item is authorized up front; the batch is refused when any item is
    not permitted. Missing nodes are reported per item.
    """
    for item in request.moves:
        await _ensure_can_move(auth, hierarchy, principal_id, item.entity_id, item.new_parent_id)
    return await hierarchy.move_batch(
        [
            hierarchy_service.MoveRequest(item.entity_type.value, item.entity_id, item.new_parent_id)
            for item in request.moves
        ],
        actor_id=principal_id,
        reason=request.reason,
    )


# ============================================================================
# Maintenance Routes
# ============================================================================

@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild_paths(
    request: RebuildRequest,
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
    principal_id: Annotated[str, Depends(require_permission("hierarchy.maintain"))],
):
    """Recompute every stored path from the parent links (admin only)."""
    log.info(f"Principal {principal_id} started a path rebuild (dry_run={request.dry_run})")
    return await hierarchy.rebuild_all_paths(dry_run=request.dry_run)


@router.get("/integrity", response_model=IntegrityResponse)
async def check_integrity(
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
    _principal_id: Annotated[str, Depends(require_permission("hierarchy.maintain"))],
):
    """Report paths that disagree with the tree structure (admin only)."""
    return await hierarchy.validate_integrity()
