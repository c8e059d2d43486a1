"""Pytest configuration and fixtures for hierarchy-auth tests."""

from typing import Dict, Iterable, List, Optional, Tuple

import pytest
import pytest_asyncio

from hierarchy_auth.core.database.engine import build_engine, build_session_factory, init_db
from hierarchy_auth.features.hierarchy.levels import EntityType, LEVELS
from hierarchy_auth.features.hierarchy.models import HierarchyNode
from hierarchy_auth.features.hierarchy.store import SqlAlchemyHierarchyStore
from hierarchy_auth.features.permissions.models import Principal, Role
from hierarchy_auth.features.permissions.store import SqlAlchemyRoleStore


# (id, type, parent_id, path)
TREE: List[Tuple[str, EntityType, Optional[str], str]] = [
    ("u1", EntityType.UNION, None, "u1"),
    ("conf2", EntityType.CONFERENCE, "u1", "u1/conf2"),
    ("conf5", EntityType.CONFERENCE, "u1", "u1/conf5"),
    ("c3", EntityType.CHURCH, "conf2", "u1/conf2/c3"),
    ("c4", EntityType.CHURCH, "conf2", "u1/conf2/c4"),
    ("t9", EntityType.TEAM, "c3", "u1/conf2/c3/team_t9"),
    ("s1", EntityType.SERVICE, "t9", "u1/conf2/c3/team_t9/service_s1"),
    ("s2", EntityType.SERVICE, "t9", "u1/conf2/c3/team_t9/service_s2"),
    ("u7", EntityType.UNION, None, "u7"),
    ("conf8", EntityType.CONFERENCE, "u7", "u7/conf8"),
]


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Async engine on a throwaway SQLite file with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def hierarchy_store(session_factory):
    return SqlAlchemyHierarchyStore(session_factory)


@pytest.fixture
def role_store(session_factory):
    return SqlAlchemyRoleStore(session_factory)


async def add_nodes(session_factory, rows: Iterable[Tuple[str, EntityType, Optional[str], str]]) -> None:
    """Insert rows verbatim, bypassing path derivation (lets tests store drifted paths)."""
    async with session_factory() as session:
        for node_id, entity_type, parent_id, path in rows:
            session.add(HierarchyNode(
                id=node_id,
                entity_type=entity_type,
                level=LEVELS[entity_type],
                name=f"{entity_type.value} {node_id}",
                parent_id=parent_id,
                path=path,
            ))
            # Parents must exist before children reference them
            await session.flush()
        await session.commit()


@pytest.fixture
def insert_nodes(session_factory):
    """Insert extra rows into the test database."""
    async def _insert(rows):
        await add_nodes(session_factory, rows)
    return _insert


@pytest_asyncio.fixture
async def tree(session_factory) -> Dict[str, str]:
    """The sample tree; maps node id to its stored path."""
    await add_nodes(session_factory, TREE)
    return {node_id: path for node_id, _, _, path in TREE}


@pytest.fixture
def make_role(session_factory):
    """Factory creating a role row and returning its id."""
    async def _make_role(name: str, hierarchy_level: int, permissions: List[str],
                         can_manage: Optional[List[int]] = None) -> str:
        async with session_factory() as session:
            role = Role(
                name=name,
                hierarchy_level=hierarchy_level,
                permissions=permissions,
                can_manage=can_manage or [],
            )
            session.add(role)
            await session.commit()
            return role.id
    return _make_role


@pytest.fixture
def make_principal(session_factory, role_store):
    """Factory creating a principal and assigning (node_id, role_id) pairs."""
    async def _make_principal(principal_id: str, assignments: Iterable[Tuple[str, str]] = (),
                              is_super_admin: bool = False, is_active: bool = True) -> str:
        async with session_factory() as session:
            session.add(Principal(
                id=principal_id,
                email=f"{principal_id}@example.org",
                name=principal_id,
                is_super_admin=is_super_admin,
                is_active=is_active,
            ))
            await session.commit()
        for node_id, role_id in assignments:
            await role_store.assign(principal_id, node_id, role_id)
        return principal_id
    return _make_principal
