"""
Permission API routes.

Provides permission checks for the caller, the caller's resolved permission
set, cache invalidation and role assignment.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError

from hierarchy_auth.features.hierarchy.service import HierarchyService
from hierarchy_auth.features.permissions.cache import PermissionCache
from hierarchy_auth.features.permissions.dependencies import (
    ensure_permission,
    get_authorization_service,
    get_current_principal_id,
    get_hierarchy_service,
    get_permission_cache,
    require_permission,
)
from hierarchy_auth.features.permissions.schemas import (
    AssignRole,
    CacheInvalidateRequest,
    CacheInvalidateResponse,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PrincipalPermissionsResponse,
)
from hierarchy_auth.features.permissions.service import AuthorizationService, TargetRef
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Permission Check Routes
# ============================================================================

@router.post("/check", response_model=PermissionCheckResponse)
async def check_permission(
    request: PermissionCheckRequest,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
):
    """Check whether the caller holds a permission, optionally on a target."""
    target = None
    if request.target is not None:
        target = TargetRef(request.target.entity_type, request.target.entity_id)
    allowed = await auth.authorize(principal_id, request.permission, request.scope, target)
    return PermissionCheckResponse(has_permission=allowed, permission=request.permission, scope=request.scope)


@router.get("/me", response_model=PrincipalPermissionsResponse)
async def get_my_permissions(
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
):
    """Get the caller's resolved permissions and scope."""
    resolved = await auth.permissions_for(principal_id)
    if resolved is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Principal not found")
    return PrincipalPermissionsResponse(
        principal_id=resolved.principal_id,
        is_super_admin=resolved.is_super_admin,
        level=resolved.level,
        scope_path=resolved.scope_path,
        permissions=sorted(str(token) for token in resolved.permissions),
        managed_levels=await auth.managed_levels(principal_id),
    )


# ============================================================================
# Cache Routes
# ============================================================================

@router.post("/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    request: CacheInvalidateRequest,
    cache: Annotated[PermissionCache, Depends(get_permission_cache)],
    principal_id: Annotated[str, Depends(require_permission("permissions.manage"))],
):
    """Drop cached permission sets (all of them when no ids are given)."""
    if not request.principal_ids:
        count = len(cache)
        cache.invalidate_all()
        log.info(f"Principal {principal_id} invalidated the whole permission cache")
        return CacheInvalidateResponse(invalidated=count, all=True)

    count = cache.invalidate_many(request.principal_ids)
    log.info(f"Principal {principal_id} invalidated {count} cached permission sets")
    return CacheInvalidateResponse(invalidated=count)


# ============================================================================
# Assignment Routes
# ============================================================================

async def _ensure_can_assign(auth: AuthorizationService, hierarchy: HierarchyService,
                             principal_id: str, request: AssignRole) -> None:
    """The node must be in scope and the role must sit below the caller."""
    node = await hierarchy.get_node(request.node_id)
    await ensure_permission(
        auth, principal_id, "roles.assign", "subordinate", TargetRef(node.entity_type.value, node.id)
    )
    role = await auth.get_role(request.role_id)
    if role is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role not found")
    if not await auth.can_grant(principal_id, role):
        log.warning(f"Principal {principal_id} may not grant role {role.name}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: cannot grant role {role.name}",
        )


@router.post("/assignments", status_code=status.HTTP_201_CREATED)
async def assign_role(
    request: AssignRole,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """Assign a role to a principal at a node inside the caller's scope."""
    await _ensure_can_assign(auth, hierarchy, principal_id, request)
    try:
        await auth.assign_role(request.principal_id, request.node_id, request.role_id, assigned_by_id=principal_id)
    except IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Assignment already exists or references an unknown principal or role"
        )
    return {"message": "Role assigned"}


@router.delete("/assignments", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_role(
    request: AssignRole,
    principal_id: Annotated[str, Depends(get_current_principal_id)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    hierarchy: Annotated[HierarchyService, Depends(get_hierarchy_service)],
):
    """Remove a role assignment."""
    await _ensure_can_assign(auth, hierarchy, principal_id, request)
    if not await auth.revoke_role(request.principal_id, request.node_id, request.role_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assignment not found")
