"""
Pydantic schemas for permission checks and role assignments.
"""
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from hierarchy_auth.features.permissions.tokens import SCOPES


# ============================================================================
# Permission Check Schemas
# ============================================================================

class TargetSchema(BaseModel):
    """The entity a permission is checked against."""
    entity_type: str = Field(..., description="Node type, or 'user' for a principal")
    entity_id: str = Field(..., min_length=1)


class PermissionCheckRequest(BaseModel):
    """Schema for checking whether the caller holds a permission."""
    permission: str = Field(..., description="Permission as resource.action (e.g., 'teams.view')")
    scope: Optional[str] = Field(None, description="self, own, subordinate or all")
    target: Optional[TargetSchema] = None

    @field_validator("permission")
    @classmethod
    def resource_action(cls, v: str) -> str:
        """Require the resource.action form."""
        resource, _, action = v.partition(".")
        if not resource or not action:
            raise ValueError("Permission must be in the form resource.action")
        return v

    @field_validator("scope")
    @classmethod
    def known_scope(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in SCOPES:
            raise ValueError(f"Scope must be one of {', '.join(sorted(SCOPES))}")
        return v


class PermissionCheckResponse(BaseModel):
    """Schema for permission check response."""
    has_permission: bool
    permission: str
    scope: Optional[str] = None


# ============================================================================
# Principal Permissions Response
# ============================================================================

class PrincipalPermissionsResponse(BaseModel):
    """Schema for the caller's resolved permission set."""
    principal_id: str
    is_super_admin: bool
    level: Optional[int]
    scope_path: Optional[str]
    permissions: List[str] = []
    managed_levels: List[int] = []


# ============================================================================
# Cache Schemas
# ============================================================================

class CacheInvalidateRequest(BaseModel):
    """Invalidate specific principals, or everything when empty."""
    principal_ids: List[str] = Field(default_factory=list)


class CacheInvalidateResponse(BaseModel):
    invalidated: int
    all: bool = False


# ============================================================================
# Assignment Schemas
# ============================================================================

class AssignRole(BaseModel):
    """Schema for assigning a role to a principal at a node."""
    principal_id: str = Field(..., description="Principal ID")
    node_id: str = Field(..., description="Hierarchy node ID")
    role_id: str = Field(..., description="Role ID")
