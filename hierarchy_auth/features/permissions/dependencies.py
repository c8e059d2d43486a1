"""
FastAPI dependencies for authentication and route protection.
"""
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from hierarchy_auth.features.hierarchy.service import HierarchyService
from hierarchy_auth.features.permissions.auth import verify_jwt_token
from hierarchy_auth.features.permissions.cache import PermissionCache
from hierarchy_auth.features.permissions.service import AuthorizationService, TargetRef


security = HTTPBearer()


def get_authorization_service(request: Request) -> AuthorizationService:
    return request.app.state.authorization_service


def get_hierarchy_service(request: Request) -> HierarchyService:
    return request.app.state.hierarchy_service


def get_permission_cache(request: Request) -> PermissionCache:
    return request.app.state.permission_cache


async def get_current_principal_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
) -> str:
    """
    Get the current principal id from the bearer token.

    The principal must exist; its permissions are loaded (and cached) here so
    later checks in the same request hit the cache.

    Usage:
        @router.get("/me")
        async def get_me(principal_id: str = Depends(get_current_principal_id)):
            ...
    """
    payload = verify_jwt_token(credentials.credentials)
    principal_id = payload.get("sub")
    if not principal_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    if await auth.permissions_for(principal_id) is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown principal",
        )
    return principal_id


async def ensure_permission(
    auth: AuthorizationService,
    principal_id: str,
    permission: str,
    scope: Optional[str] = None,
    target: Optional[TargetRef] = None,
) -> None:
    """Raise 403 unless ``principal_id`` holds ``permission`` on ``target``."""
    if not await auth.authorize(principal_id, permission, scope, target):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Permission denied: {permission}{':' + scope if scope else ''}",
        )


def require_permission(permission: str, scope: Optional[str] = None):
    """
    FastAPI dependency to require a permission without a target node.

    Usage:
        @router.post("/rebuild")
        async def rebuild(principal_id: str = Depends(require_permission("hierarchy.maintain"))):
            ...

    Returns:
        Dependency function that returns the principal id if permitted

    Raises:
        HTTPException: 403 if the principal lacks the permission
    """
    async def permission_dependency(
        principal_id: Annotated[str, Depends(get_current_principal_id)],
        auth: Annotated[AuthorizationService, Depends(get_authorization_service)],
    ) -> str:
        await ensure_permission(auth, principal_id, permission, scope)
        return principal_id

    return permission_dependency


def get_authorization_header(request) -> str:
    """
    Extract authorization header for rate limiting.
    Used with slowapi Limiter.
    """
    auth = request.headers.get("Authorization", "")
    return auth or "anonymous"
