"""
Role and assignment store.

Loads a principal together with every (node, role) assignment it holds, with
role permission strings already parsed into tokens. The resolver only ever
sees these immutable records.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, Iterable, List, Optional, Protocol, Set

from sqlalchemy import select, delete, insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hierarchy_auth.features.hierarchy.models import HierarchyNode
from hierarchy_auth.features.permissions import tokens
from hierarchy_auth.features.permissions.models import Principal, Role, role_assignments
from hierarchy_auth.features.permissions.tokens import PermissionToken


@dataclass(frozen=True)
class RoleRecord:
    id: str
    name: str
    hierarchy_level: int
    permissions: FrozenSet[PermissionToken] = frozenset()
    can_manage: FrozenSet[int] = frozenset()

    @classmethod
    def from_model(cls, role: Role) -> "RoleRecord":
        return cls(
            id=role.id,
            name=role.name,
            hierarchy_level=role.hierarchy_level,
            permissions=tokens.parse_many(role.permissions or []),
            can_manage=frozenset(role.can_manage or []),
        )


@dataclass(frozen=True)
class Assignment:
    """A role held at one node of the tree."""
    node_id: str
    node_path: str
    node_level: int
    role: RoleRecord


@dataclass(frozen=True)
class PrincipalRecord:
    id: str
    is_super_admin: bool = False
    is_active: bool = True
    assignments: FrozenSet[Assignment] = field(default_factory=frozenset)


class RoleStore(Protocol):
    async def load_principal(self, principal_id: str) -> Optional[PrincipalRecord]: ...

    async def principals_assigned_to(self, node_ids: Iterable[str]) -> Set[str]: ...

    async def assign(self, principal_id: str, node_id: str, role_id: str,
                     assigned_by_id: Optional[str] = None) -> None: ...

    async def get_role(self, role_id: str) -> Optional[RoleRecord]: ...

    async def revoke(self, principal_id: str, node_id: str, role_id: str) -> bool: ...


class SqlAlchemyRoleStore:
    """``RoleStore`` backed by the roles/principals/role_assignments tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load_principal(self, principal_id: str) -> Optional[PrincipalRecord]:
        async with self._session_factory() as session:
            principal = await session.get(Principal, principal_id)
            if principal is None:
                return None

            stmt = (
                select(Role, HierarchyNode.id, HierarchyNode.path, HierarchyNode.level)
                .join(role_assignments, role_assignments.c.role_id == Role.id)
                .join(HierarchyNode, HierarchyNode.id == role_assignments.c.node_id)
                .where(role_assignments.c.principal_id == principal_id)
            )
            result = await session.execute(stmt)
            assignments = frozenset(
                Assignment(node_id=node_id, node_path=node_path, node_level=node_level,
                           role=RoleRecord.from_model(role))
                for role, node_id, node_path, node_level in result.all()
            )

            return PrincipalRecord(
                id=principal.id,
                is_super_admin=principal.is_super_admin,
                is_active=principal.is_active,
                assignments=assignments,
            )

    async def principals_assigned_to(self, node_ids: Iterable[str]) -> Set[str]:
        node_ids = list(node_ids)
        if not node_ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(role_assignments.c.principal_id)
                .where(role_assignments.c.node_id.in_(node_ids))
                .distinct()
            )
            return set(result.scalars().all())

    async def assign(self, principal_id: str, node_id: str, role_id: str,
                     assigned_by_id: Optional[str] = None) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(role_assignments).values(
                        principal_id=principal_id,
                        node_id=node_id,
                        role_id=role_id,
                        assigned_at=datetime.now(),
                        assigned_by_id=assigned_by_id,
                    )
                )

    async def revoke(self, principal_id: str, node_id: str, role_id: str) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(role_assignments).where(
                        role_assignments.c.principal_id == principal_id,
                        role_assignments.c.node_id == node_id,
                        role_assignments.c.role_id == role_id,
                    )
                )
                return result.rowcount > 0

    async def get_role(self, role_id: str) -> Optional[RoleRecord]:
        async with self._session_factory() as session:
            role = await session.get(Role, role_id)
            return RoleRecord.from_model(role) if role is not None else None

    async def list_roles(self) -> List[RoleRecord]:
        async with self._session_factory() as session:
            result = await session.execute(select(Role).order_by(Role.hierarchy_level, Role.name))
            return [RoleRecord.from_model(role) for role in result.scalars().all()]
