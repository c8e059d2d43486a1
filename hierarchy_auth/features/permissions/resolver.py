"""
Effective permission resolution.

Resolution is a pure function of a principal's assignments and role data:
no I/O, no hidden state, safe to run concurrently.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Set

from hierarchy_auth.features.hierarchy import levels
from hierarchy_auth.features.permissions import tokens
from hierarchy_auth.features.permissions.store import PrincipalRecord
from hierarchy_auth.features.permissions.tokens import PermissionToken


# Baseline rights implied by the principal's highest assigned level; each
# level may view and create one level below itself.
IMPLICIT_PERMISSIONS: Dict[int, FrozenSet[PermissionToken]] = {
    0: tokens.parse_many([
        "organizations.view:subordinate",
        "organizations.create:subordinate",
        "teams.view:subordinate",
        "services.view:subordinate",
    ]),
    1: tokens.parse_many([
        "organizations.view:subordinate",
        "organizations.create:subordinate",
        "teams.view:subordinate",
        "services.view:subordinate",
    ]),
    2: tokens.parse_many([
        "teams.view:own",
        "teams.create:own",
        "services.view:subordinate",
        "users.invite:own",
    ]),
    3: tokens.parse_many([
        "services.view:own",
        "services.create:own",
        "users.view:own",
    ]),
    4: tokens.parse_many([
        "services.view:own",
    ]),
}

# Resource family administered at each managed level
RESOURCE_FAMILIES: Dict[int, str] = {
    0: "organizations",
    1: "organizations",
    2: "organizations",
    3: "teams",
    4: "services",
}


@dataclass(frozen=True)
class ResolvedPermissions:
    """Everything an authorization check needs to know about a principal."""
    principal_id: str
    permissions: FrozenSet[PermissionToken]
    level: Optional[int]
    scope_path: Optional[str]
    is_super_admin: bool = False

    def __contains__(self, token: PermissionToken) -> bool:
        return token in self.permissions


class RoleResolver:

    def highest_level(self, principal: PrincipalRecord) -> Optional[int]:
        """Numerically lowest role level across assignments; None when unassigned."""
        if principal.is_super_admin:
            return levels.SUPER_ADMIN_LEVEL
        if not principal.assignments:
            return None
        return min(assignment.role.hierarchy_level for assignment in principal.assignments)

    def scope_path(self, principal: PrincipalRecord) -> Optional[str]:
        """
        Path that scoped permissions are measured from.

        Super-admins get the root scope "". Otherwise the node of the
        highest-level assignment; ties break on the shallower, then
        lexically smaller, node path so the result is deterministic.
        """
        if principal.is_super_admin:
            return ""
        if not principal.assignments:
            return None
        best = min(
            principal.assignments,
            key=lambda a: (a.role.hierarchy_level, a.node_level, a.node_path),
        )
        return best.node_path

    def managed_levels(self, principal: PrincipalRecord) -> List[int]:
        level = self.highest_level(principal)
        if level is None:
            return []
        managed: Set[int] = set(levels.managed_levels(level))
        for assignment in principal.assignments:
            managed.update(target for target in assignment.role.can_manage if target > level)
        return sorted(managed)

    def resolve(self, principal: PrincipalRecord) -> FrozenSet[PermissionToken]:
        """Effective permission set; duplicates collapse, order is irrelevant."""
        if not principal.is_active:
            return frozenset()
        if principal.is_super_admin:
            return frozenset({tokens.GLOBAL})

        level = self.highest_level(principal)
        if level is None:
            return frozenset()

        granted: Set[PermissionToken] = set()
        for assignment in principal.assignments:
            granted.update(assignment.role.permissions)
            for managed in assignment.role.can_manage:
                if managed > level and managed in RESOURCE_FAMILIES:
                    granted.add(PermissionToken(RESOURCE_FAMILIES[managed], "manage", "subordinate"))

        granted.update(IMPLICIT_PERMISSIONS.get(level, frozenset()))
        return frozenset(granted)

    def resolve_all(self, principal: PrincipalRecord) -> ResolvedPermissions:
        return ResolvedPermissions(
            principal_id=principal.id,
            permissions=self.resolve(principal),
            level=self.highest_level(principal),
            scope_path=self.scope_path(principal),
            is_super_admin=principal.is_super_admin,
        )
