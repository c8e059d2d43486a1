"""
Entity store for the organization tree.

The hierarchy core talks to storage only through ``HierarchyStore`` and the
``HierarchyUnitOfWork`` it hands out. Nodes are addressed by stable ids and
returned as immutable ``NodeRecord`` values, never as live ORM objects.

``SqlAlchemyHierarchyStore`` is the production implementation. Database
failures are translated here, at the store boundary, into the package's
retryable errors.
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol

from sqlalchemy import select, update, delete, func, literal, String
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hierarchy_auth.core.exceptions import (
    ConcurrencyConflictError,
    StoreUnavailableError,
)
from hierarchy_auth.features.hierarchy import paths
from hierarchy_auth.features.hierarchy.levels import EntityType
from hierarchy_auth.features.hierarchy.models import HierarchyNode
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)

# Driver messages that indicate a lost race rather than an outage
_CONFLICT_MARKERS = (
    "database is locked",
    "could not serialize",
    "deadlock detected",
    "lock timeout",
)


@dataclass(frozen=True)
class NodeRecord:
    """Snapshot of one tree node."""
    id: str
    entity_type: EntityType
    level: int
    path: str
    parent_id: Optional[str]
    name: str
    version: int

    @classmethod
    def from_model(cls, node: HierarchyNode) -> "NodeRecord":
        return cls(
            id=node.id,
            entity_type=EntityType(node.entity_type),
            level=node.level,
            path=node.path,
            parent_id=node.parent_id,
            name=node.name,
            version=node.version,
        )


class HierarchyUnitOfWork(Protocol):
    """Reads and writes that commit or roll back together."""

    async def get(self, node_id: str) -> Optional[NodeRecord]: ...

    async def find_descendants(self, path: str) -> List[NodeRecord]: ...

    async def find_subtree(self, path: str) -> List[NodeRecord]: ...

    async def list_all(self) -> List[NodeRecord]: ...

    async def count_children(self, node_id: str) -> int: ...

    async def add(self, record: NodeRecord) -> NodeRecord: ...

    async def delete(self, node_id: str) -> None: ...

    async def update_node_path(
        self, node_id: str, path: str, parent_id: Optional[str], expected_version: int
    ) -> None: ...

    async def splice_descendants(self, old_path: str, new_path: str) -> int: ...

    async def set_path(self, node_id: str, path: str) -> None: ...


class HierarchyStore(Protocol):
    def unit_of_work(self) -> AsyncContextManager[HierarchyUnitOfWork]: ...

    async def get(self, node_id: str) -> Optional[NodeRecord]: ...

    async def find_by_path_prefix(self, path: str) -> List[NodeRecord]: ...

    async def list_all(self) -> List[NodeRecord]: ...

    async def get_many(self, node_ids: List[str]) -> Dict[str, NodeRecord]: ...


def _under(path: str):
    """
    Strict-descendant filter for ``path``.

    Compares the leading characters directly; LIKE ignores case on SQLite and
    path segments are case-sensitive.
    """
    prefix = paths.descendant_prefix(path)
    return func.substr(HierarchyNode.path, 1, len(prefix)) == literal(prefix, String)


class SqlAlchemyUnitOfWork:
    """Unit of work bound to one session and one open transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, node_id: str) -> Optional[NodeRecord]:
        result = await self.session.execute(
            select(HierarchyNode).where(HierarchyNode.id == node_id)
        )
        node = result.scalar_one_or_none()
        return NodeRecord.from_model(node) if node is not None else None

    async def find_descendants(self, path: str) -> List[NodeRecord]:
        """Strict descendants of ``path``, shallowest first."""
        stmt = (
            select(HierarchyNode)
            .where(_under(path))
            .order_by(HierarchyNode.level, HierarchyNode.path)
        )
        result = await self.session.execute(stmt)
        return [NodeRecord.from_model(node) for node in result.scalars().all()]

    async def find_subtree(self, path: str) -> List[NodeRecord]:
        """``path`` itself plus its descendants; the empty path returns everything."""
        if path == "":
            return await self.list_all()
        stmt = (
            select(HierarchyNode)
            .where(
                (HierarchyNode.path == path)
                | _under(path)
            )
            .order_by(HierarchyNode.level, HierarchyNode.path)
        )
        result = await self.session.execute(stmt)
        return [NodeRecord.from_model(node) for node in result.scalars().all()]

    async def list_all(self) -> List[NodeRecord]:
        result = await self.session.execute(
            select(HierarchyNode).order_by(HierarchyNode.level, HierarchyNode.path)
        )
        return [NodeRecord.from_model(node) for node in result.scalars().all()]

    async def count_children(self, node_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(HierarchyNode).where(HierarchyNode.parent_id == node_id)
        )
        return result.scalar_one()

    async def add(self, record: NodeRecord) -> NodeRecord:
        node = HierarchyNode(
            id=record.id,
            entity_type=record.entity_type,
            level=record.level,
            name=record.name,
            parent_id=record.parent_id,
            path=record.path,
            version=record.version,
        )
        self.session.add(node)
        await self.session.flush()
        return NodeRecord.from_model(node)

    async def delete(self, node_id: str) -> None:
        await self.session.execute(delete(HierarchyNode).where(HierarchyNode.id == node_id))

    async def update_node_path(
        self, node_id: str, path: str, parent_id: Optional[str], expected_version: int
    ) -> None:
        """Conditional write; fails if another writer bumped the version first."""
        stmt = (
            update(HierarchyNode)
            .where(HierarchyNode.id == node_id, HierarchyNode.version == expected_version)
            .values(path=path, parent_id=parent_id, version=HierarchyNode.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise ConcurrencyConflictError(
                f"Node {node_id} was modified concurrently",
                {"node_id": node_id, "expected_version": expected_version},
            )

    async def splice_descendants(self, old_path: str, new_path: str) -> int:
        """
        Rewrite the prefix of every strict descendant of ``old_path``.

        One UPDATE; the suffix after the prefix is copied unchanged.
        """
        remainder = func.substr(HierarchyNode.path, len(old_path) + 1, type_=String)
        stmt = (
            update(HierarchyNode)
            .where(_under(old_path))
            .values(
                path=literal(new_path, String) + remainder,
                version=HierarchyNode.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def set_path(self, node_id: str, path: str) -> None:
        stmt = (
            update(HierarchyNode)
            .where(HierarchyNode.id == node_id)
            .values(path=path, version=HierarchyNode.version + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)


def _translate(exc: DBAPIError) -> Exception:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    if isinstance(exc, IntegrityError) or any(marker in message for marker in _CONFLICT_MARKERS):
        return ConcurrencyConflictError("Concurrent write detected by the database", {"cause": message})
    if isinstance(exc, OperationalError) or exc.connection_invalidated:
        return StoreUnavailableError("Hierarchy store is unavailable", {"cause": message})
    return exc


class SqlAlchemyHierarchyStore:
    """``HierarchyStore`` backed by an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SqlAlchemyUnitOfWork]:
        """
        Open a transaction.

        Commits when the block exits normally; any exception rolls back every
        write made through the unit of work.
        """
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield SqlAlchemyUnitOfWork(session)
            except DBAPIError as exc:
                translated = _translate(exc)
                if translated is exc:
                    raise
                log.warning("Hierarchy transaction aborted: %s", translated.message)
                raise translated from exc

    async def get(self, node_id: str) -> Optional[NodeRecord]:
        async with self.unit_of_work() as uow:
            return await uow.get(node_id)

    async def find_by_path_prefix(self, path: str) -> List[NodeRecord]:
        async with self.unit_of_work() as uow:
            return await uow.find_subtree(path)

    async def list_all(self) -> List[NodeRecord]:
        async with self.unit_of_work() as uow:
            return await uow.list_all()

    async def get_many(self, node_ids: List[str]) -> Dict[str, NodeRecord]:
        if not node_ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(HierarchyNode).where(HierarchyNode.id.in_(node_ids))
            )
            return {node.id: NodeRecord.from_model(node) for node in result.scalars().all()}
