"""
Administrative operations on the organization tree.

Wraps the reparent operation with bounded retries, cache invalidation and the
audit event, and exposes node creation/deletion and bulk path maintenance.
"""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hierarchy_auth.core import config
from hierarchy_auth.core.database.base import generate_ulid
from hierarchy_auth.core.exceptions import (
    ConcurrencyConflictError,
    HasChildrenError,
    HierarchyError,
    LevelMismatchError,
    NodeNotFoundError,
    ParentNotFoundError,
    TransactionTimeoutError,
    ValidationError,
)
from hierarchy_auth.features.audit.sink import AuditSink, EntityMovedEvent, emit
from hierarchy_auth.features.hierarchy import levels, paths
from hierarchy_auth.features.hierarchy.levels import EntityType
from hierarchy_auth.features.hierarchy.rebuild import (
    IntegrityReport,
    RebuildReport,
    check_integrity,
    rebuild_all_paths,
)
from hierarchy_auth.features.hierarchy.reparent import MoveResult, ReparentOperation
from hierarchy_auth.features.hierarchy.store import HierarchyStore, NodeRecord
from hierarchy_auth.features.permissions.cache import PermissionCache
from hierarchy_auth.features.permissions.store import RoleStore
from hierarchy_auth.utils import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class MoveRequest:
    entity_type: str
    entity_id: str
    new_parent_id: str


@dataclass
class BatchItemResult:
    entity_id: str
    success: bool
    result: Optional[MoveResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class BatchMoveResult:
    successful: int = 0
    failed: int = 0
    items: List[BatchItemResult] = field(default_factory=list)


class HierarchyService:

    def __init__(
        self,
        store: HierarchyStore,
        role_store: RoleStore,
        cache: Optional[PermissionCache] = None,
        audit_sink: Optional[AuditSink] = None,
        reparent: Optional[ReparentOperation] = None,
        max_attempts: int = config.MOVE_MAX_ATTEMPTS,
        backoff: float = config.MOVE_BACKOFF_SECONDS,
    ):
        self.store = store
        self.role_store = role_store
        self.cache = cache
        self.audit_sink = audit_sink
        self.reparent = reparent or ReparentOperation(store)
        self.max_attempts = max_attempts
        self.backoff = backoff

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def get_node(self, node_id: str) -> NodeRecord:
        node = await self.store.get(node_id)
        if node is None:
            raise NodeNotFoundError(f"Node {node_id} not found", {"node_id": node_id})
        return node

    async def subtree(self, node_id: str) -> List[NodeRecord]:
        node = await self.get_node(node_id)
        return await self.store.find_by_path_prefix(node.path)

    async def create_node(
        self,
        entity_type: "str | EntityType",
        name: str,
        parent_id: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> NodeRecord:
        """
        Insert a node beneath a verified parent.

        The path is derived from the parent's current path inside the same
        transaction, so a concurrent move of the parent cannot leave it stale.
        """
        entity_type = levels.parse_entity_type(entity_type)
        level = levels.level_of(entity_type)
        node_id = node_id or generate_ulid()

        async with self.store.unit_of_work() as uow:
            parent_path: Optional[str] = None
            if level == 0:
                if parent_id is not None:
                    raise ValidationError("Unions cannot have a parent", {"parent_id": parent_id})
            else:
                if parent_id is None:
                    raise ValidationError(
                        f"A {entity_type.value} requires a {levels.parent_type(entity_type).value} parent"
                    )
                parent = await uow.get(parent_id)
                if parent is None:
                    raise ParentNotFoundError(f"Parent {parent_id} not found", {"parent_id": parent_id})
                if parent.level != level - 1:
                    raise LevelMismatchError(
                        f"A {entity_type.value} cannot be created under a {parent.entity_type.value}",
                        {"entity_level": level, "parent_level": parent.level},
                    )
                parent_path = parent.path

            path = paths.build(parent_path, entity_type, node_id)
            if not paths.validate(path):
                raise ValidationError(f"Invalid hierarchy path {path!r}", {"path": path})

            record = await uow.add(NodeRecord(
                id=node_id,
                entity_type=entity_type,
                level=level,
                path=path,
                parent_id=parent_id,
                name=name,
                version=1,
            ))

        log.info(f"Created {entity_type.value} {node_id} at {path!r}")
        return record

    async def delete_node(self, node_id: str) -> None:
        async with self.store.unit_of_work() as uow:
            node = await uow.get(node_id)
            if node is None:
                raise NodeNotFoundError(f"Node {node_id} not found", {"node_id": node_id})
            children = await uow.count_children(node_id)
            if children:
                raise HasChildrenError(
                    f"{node.entity_type.value} {node_id} still has {children} children",
                    {"node_id": node_id, "children": children},
                )
            await uow.delete(node_id)
        log.info(f"Deleted {node.entity_type.value} {node_id}")

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    async def move_path(
        self,
        entity_type: "str | EntityType",
        entity_id: str,
        new_parent_id: str,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> MoveResult:
        """
        Move a node and its subtree under ``new_parent_id``.

        Conflicts and timeouts are retried with exponential backoff; permanent
        errors propagate on the first attempt.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff, max=self.backoff * 10),
                retry=retry_if_exception_type((ConcurrencyConflictError, TransactionTimeoutError)),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        log.warning(
                            f"Retrying move of {entity_id} (attempt {attempt.retry_state.attempt_number})"
                        )
                    result = await self.reparent.execute(entity_type, entity_id, new_parent_id)
        except HierarchyError as exc:
            log.warning(f"Move of {entity_type} {entity_id} rejected: {exc.message}")
            raise

        if result.changes:
            await self._after_move(result, actor_id, reason)
        return result

    async def move_batch(
        self,
        requests: Iterable[MoveRequest],
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> BatchMoveResult:
        """
        Apply each move as its own transaction.

        A failure does not undo the moves that already committed.
        """
        batch = BatchMoveResult()
        for request in requests:
            try:
                result = await self.move_path(
                    request.entity_type, request.entity_id, request.new_parent_id, actor_id, reason
                )
            except HierarchyError as exc:
                batch.failed += 1
                batch.items.append(BatchItemResult(
                    entity_id=request.entity_id,
                    success=False,
                    error=exc.message,
                    error_type=type(exc).__name__,
                ))
                continue
            batch.successful += 1
            batch.items.append(BatchItemResult(entity_id=request.entity_id, success=True, result=result))

        log.info(f"Batch move finished: {batch.successful} succeeded, {batch.failed} failed")
        return batch

    async def _after_move(self, result: MoveResult, actor_id: Optional[str], reason: Optional[str]) -> None:
        if self.cache is not None:
            principal_ids = await self.role_store.principals_assigned_to(result.affected_ids)
            self.cache.invalidate_many(principal_ids)

        await emit(self.audit_sink, EntityMovedEvent(
            actor_id=actor_id,
            entity_type=result.entity_type.value,
            entity_id=result.entity_id,
            old_parent_id=result.old_parent_id,
            new_parent_id=result.new_parent_id,
            old_path=result.old_path,
            new_path=result.new_path,
            affected=[
                {"node_id": change.node_id, "old_path": change.old_path, "new_path": change.new_path}
                for change in result.changes
            ],
            reason=reason,
        ))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def rebuild_all_paths(self, dry_run: bool = False) -> RebuildReport:
        report = await rebuild_all_paths(self.store, dry_run=dry_run)
        if not dry_run and report.updated and self.cache is not None:
            self.cache.invalidate_all()
        return report

    async def validate_integrity(self) -> IntegrityReport:
        return await check_integrity(self.store)
