"""
Authorization entry points.

``authorize`` is the hot path: cached permission lookup, one node fetch for the
target, and a pure scope check. It returns a boolean and never raises for a
denied request.
"""
from dataclasses import dataclass
from typing import List, Optional

from hierarchy_auth.features.hierarchy import levels
from hierarchy_auth.features.hierarchy.store import HierarchyStore, NodeRecord
from hierarchy_auth.features.permissions import tokens
from hierarchy_auth.features.permissions.cache import PermissionCache
from hierarchy_auth.features.permissions.resolver import ResolvedPermissions
from hierarchy_auth.features.permissions.scope import has_permission
from hierarchy_auth.features.permissions.store import RoleRecord
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)

# Target types that name a principal rather than a tree node
PRINCIPAL_TARGETS = frozenset({"user", "principal"})


@dataclass(frozen=True)
class TargetRef:
    entity_type: str
    entity_id: str

    @property
    def is_principal(self) -> bool:
        return self.entity_type.lower() in PRINCIPAL_TARGETS


class AuthorizationService:

    def __init__(self, cache: PermissionCache, hierarchy_store: HierarchyStore):
        self.cache = cache
        self.hierarchy_store = hierarchy_store

    async def permissions_for(self, principal_id: str) -> Optional[ResolvedPermissions]:
        return await self.cache.get(principal_id)

    async def authorize(
        self,
        principal_id: str,
        permission: str,
        scope: Optional[str] = None,
        target: Optional[TargetRef] = None,
    ) -> bool:
        """
        Decide whether ``principal_id`` may perform ``permission`` on ``target``.

        Unknown principals and unknown targets are denied.
        """
        resolved = await self.cache.get(principal_id)
        if resolved is None:
            log.debug(f"Unknown principal {principal_id} denied {permission}")
            return False

        target_path: Optional[str] = None
        target_id: Optional[str] = None
        if target is not None:
            if target.is_principal:
                target_id = target.entity_id
            else:
                node = await self.hierarchy_store.get(target.entity_id)
                if node is None or node.entity_type.value != target.entity_type.lower():
                    log.debug(f"Target {target.entity_type}:{target.entity_id} not found; denied")
                    return False
                target_path = node.path

        allowed = has_permission(
            resolved.permissions,
            permission,
            scope,
            resolved.scope_path,
            target_path,
            actor_id=principal_id,
            target_id=target_id,
        )
        log.debug(
            f"Principal {principal_id} {'granted' if allowed else 'denied'} {permission}"
            f"{':' + scope if scope else ''} on {target_path!r}"
        )
        return allowed

    async def can_create(self, principal_id: str, entity_type: str, parent_id: Optional[str]) -> bool:
        resolved = await self.cache.get(principal_id)
        if resolved is None:
            return False
        parent_path: Optional[str] = None
        if parent_id is not None:
            parent = await self.hierarchy_store.get(parent_id)
            if parent is None:
                return False
            parent_path = parent.path
        elif levels.parse_entity_type(entity_type) is levels.EntityType.UNION:
            parent_path = ""
        return levels.can_create(
            resolved.level, resolved.scope_path, entity_type, parent_path, resolved.is_super_admin
        )

    async def accessible_nodes(self, principal_id: str, entity_type: Optional[str] = None) -> List[NodeRecord]:
        """Nodes inside the principal's scope, optionally of one type."""
        resolved = await self.cache.get(principal_id)
        if resolved is None or resolved.scope_path is None:
            return []
        nodes = await self.hierarchy_store.find_by_path_prefix(resolved.scope_path)
        if entity_type is not None:
            wanted = levels.parse_entity_type(entity_type)
            nodes = [node for node in nodes if node.entity_type is wanted]
        return nodes

    async def managed_levels(self, principal_id: str) -> List[int]:
        principal = await self.cache.role_store.load_principal(principal_id)
        if principal is None:
            return []
        return self.cache.resolver.managed_levels(principal)

    async def get_role(self, role_id: str) -> Optional[RoleRecord]:
        return await self.cache.role_store.get_role(role_id)

    async def can_grant(self, principal_id: str, role: RoleRecord) -> bool:
        """
        Whether ``principal_id`` may hand out (or take back) ``role``.

        Only super-admins grant wildcard roles; everyone else must outrank the
        role's level.
        """
        resolved = await self.cache.get(principal_id)
        if resolved is None:
            return False
        if resolved.is_super_admin:
            return True
        if tokens.GLOBAL in role.permissions or resolved.level is None:
            return False
        return levels.can_manage(resolved.level, role.hierarchy_level)

    async def assign_role(self, principal_id: str, node_id: str, role_id: str,
                          assigned_by_id: Optional[str] = None) -> None:
        await self.cache.role_store.assign(principal_id, node_id, role_id, assigned_by_id)
        self.cache.invalidate(principal_id)
        log.info(f"Assigned role {role_id} to {principal_id} at {node_id}")

    async def revoke_role(self, principal_id: str, node_id: str, role_id: str) -> bool:
        removed = await self.cache.role_store.revoke(principal_id, node_id, role_id)
        self.cache.invalidate(principal_id)
        return removed

