"""
Atomic subtree move.

Moving a node rewrites its own materialized path and the path prefix of every
descendant. Both writes happen in one transaction: either the whole subtree
carries the new prefix or none of it does.
"""
import asyncio
from collections import defaultdict
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from hierarchy_auth.core import config
from hierarchy_auth.core.exceptions import (
    CircularDependencyError,
    ConcurrencyConflictError,
    LevelMismatchError,
    NodeNotFoundError,
    ParentNotFoundError,
    TransactionTimeoutError,
    ValidationError,
)
from hierarchy_auth.features.hierarchy import paths
from hierarchy_auth.features.hierarchy.levels import EntityType, parse_entity_type
from hierarchy_auth.features.hierarchy.store import HierarchyStore, NodeRecord
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class PathChange:
    node_id: str
    entity_type: EntityType
    old_path: str
    new_path: str


@dataclass
class MoveResult:
    entity_id: str
    entity_type: EntityType
    old_parent_id: Optional[str]
    new_parent_id: str
    old_path: str
    new_path: str
    changes: List[PathChange] = field(default_factory=list)

    @property
    def affected_ids(self) -> List[str]:
        return [change.node_id for change in self.changes]


class SubtreeLocks:
    """
    In-process serialization of overlapping moves.

    Any two intersecting subtrees share their union, so locking the union
    segment of both the source and destination serializes them. Keys are
    taken in sorted order so cross-union moves cannot deadlock.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, *node_paths: str) -> AsyncIterator[None]:
        keys = sorted({paths.segments(p)[0] for p in node_paths if p})
        async with AsyncExitStack() as stack:
            for key in keys:
                await stack.enter_async_context(self._locks[key])
            yield


def check_move(entity_type: EntityType, entity: Optional[NodeRecord], new_parent: Optional[NodeRecord],
               entity_id: str, new_parent_id: str) -> str:
    """
    Validate a move and return the entity's new path.

    Raises the permanent errors; never touches storage.
    """
    if entity is None:
        raise NodeNotFoundError(f"{entity_type.value} {entity_id} not found", {"entity_id": entity_id})
    if entity.entity_type != entity_type:
        raise ValidationError(
            f"Node {entity_id} is a {entity.entity_type.value}, not a {entity_type.value}",
            {"entity_id": entity_id},
        )
    if new_parent is None:
        raise ParentNotFoundError(f"New parent {new_parent_id} not found", {"new_parent_id": new_parent_id})
    if new_parent.level != entity.level - 1:
        raise LevelMismatchError(
            f"A {entity_type.value} (level {entity.level}) cannot be placed under "
            f"a {new_parent.entity_type.value} (level {new_parent.level})",
            {"entity_level": entity.level, "parent_level": new_parent.level},
        )
    if paths.is_subtree(new_parent.path, entity.path):
        raise CircularDependencyError(
            f"New parent {new_parent_id} lies inside the subtree of {entity_id}",
            {"entity_id": entity_id, "new_parent_id": new_parent_id},
        )

    new_path = paths.build(new_parent.path, entity_type, entity.id)
    if paths.embeds(new_path, entity.id):
        raise CircularDependencyError(
            f"Path {new_path!r} would contain {entity_id} as its own ancestor",
            {"entity_id": entity_id, "new_path": new_path},
        )
    if not paths.validate(new_path):
        raise ValidationError(f"Invalid hierarchy path {new_path!r}", {"path": new_path})
    return new_path


class ReparentOperation:
    """
    Move one node, and transitively its subtree, under a new parent.

    Preconditions are checked against a snapshot before the write transaction
    opens and re-checked inside it. Each call carries a timeout and surfaces
    ``TransactionTimeoutError`` instead of waiting forever.
    """

    def __init__(
        self,
        store: HierarchyStore,
        locks: Optional[SubtreeLocks] = None,
        timeout: float = config.MOVE_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.locks = locks or SubtreeLocks()
        self.timeout = timeout

    async def execute(self, entity_type: "str | EntityType", entity_id: str, new_parent_id: str) -> MoveResult:
        entity_type = parse_entity_type(entity_type)

        entity = await self.store.get(entity_id)
        new_parent = await self.store.get(new_parent_id)
        check_move(entity_type, entity, new_parent, entity_id, new_parent_id)

        try:
            return await asyncio.wait_for(
                self._locked_apply(entity_type, entity, new_parent),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            log.warning("Move of %s %s timed out after %ss", entity_type.value, entity_id, self.timeout)
            raise TransactionTimeoutError(
                f"Moving {entity_id} did not complete within {self.timeout}s",
                {"entity_id": entity_id, "timeout": self.timeout},
            )

    async def _locked_apply(self, entity_type: EntityType, snapshot: NodeRecord, new_parent: NodeRecord) -> MoveResult:
        async with self.locks.hold(snapshot.path, new_parent.path):
            return await self._apply(entity_type, snapshot, new_parent)

    async def _apply(self, entity_type: EntityType, snapshot: NodeRecord, parent_snapshot: NodeRecord) -> MoveResult:
        async with self.store.unit_of_work() as uow:
            entity = await uow.get(snapshot.id)
            new_parent = await uow.get(parent_snapshot.id)
            new_path = check_move(entity_type, entity, new_parent, snapshot.id, parent_snapshot.id)

            # The locks were chosen from the snapshot; a different union now means we raced
            if paths.segments(entity.path)[0] != paths.segments(snapshot.path)[0] or \
                    paths.segments(new_parent.path)[0] != paths.segments(parent_snapshot.path)[0]:
                raise ConcurrencyConflictError(
                    f"Node {entity.id} changed union while the move was pending",
                    {"entity_id": entity.id},
                )

            result = MoveResult(
                entity_id=entity.id,
                entity_type=entity_type,
                old_parent_id=entity.parent_id,
                new_parent_id=new_parent.id,
                old_path=entity.path,
                new_path=new_path,
            )
            if new_path == entity.path:
                log.info("Move of %s %s is a no-op", entity_type.value, entity.id)
                return result

            descendants = await uow.find_descendants(entity.path)

            await uow.update_node_path(entity.id, new_path, new_parent.id, entity.version)
            rewritten = await uow.splice_descendants(entity.path, new_path)
            if rewritten != len(descendants):
                raise ConcurrencyConflictError(
                    f"Subtree of {entity.id} changed during the move "
                    f"(expected {len(descendants)} descendants, rewrote {rewritten})",
                    {"entity_id": entity.id},
                )

            result.changes.append(PathChange(entity.id, entity_type, entity.path, new_path))
            result.changes.extend(
                PathChange(node.id, node.entity_type, node.path, paths.splice(node.path, entity.path, new_path))
                for node in descendants
            )

        log.info(
            "Moved %s %s: %r -> %r (%d descendants)",
            entity_type.value, result.entity_id, result.old_path, result.new_path, len(result.changes) - 1,
        )
        return result
