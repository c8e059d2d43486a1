"""Tests for the hierarchy service: retries, invalidation, audit, batches."""

import pytest

from hierarchy_auth.core.exceptions import (
    ConcurrencyConflictError,
    HasChildrenError,
    LevelMismatchError,
    NodeNotFoundError,
    ParentNotFoundError,
    ValidationError,
)
from hierarchy_auth.features.audit.sink import DatabaseAuditSink
from hierarchy_auth.features.hierarchy.levels import EntityType
from hierarchy_auth.features.hierarchy.reparent import ReparentOperation
from hierarchy_auth.features.hierarchy.service import HierarchyService, MoveRequest
from hierarchy_auth.features.permissions.cache import PermissionCache


class RecordingSink:
    def __init__(self):
        self.events = []

    async def entity_moved(self, event):
        self.events.append(event)


class BrokenSink:
    async def entity_moved(self, event):
        raise RuntimeError("audit backend down")


class FlakyReparent(ReparentOperation):
    """Raises a conflict for the first ``failures`` attempts."""

    def __init__(self, store, failures):
        super().__init__(store)
        self.failures = failures
        self.attempts = 0

    async def execute(self, entity_type, entity_id, new_parent_id):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConcurrencyConflictError("simulated conflict")
        return await super().execute(entity_type, entity_id, new_parent_id)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def cache(role_store):
    return PermissionCache(role_store)


@pytest.fixture
def service(hierarchy_store, role_store, cache, sink):
    return HierarchyService(hierarchy_store, role_store, cache=cache, audit_sink=sink, backoff=0)


class TestNodes:

    async def test_create_derives_path_from_parent(self, service, tree):
        node = await service.create_node("team", "Youth", parent_id="c4", node_id="t20")
        assert node.path == "u1/conf2/c4/team_t20"
        assert node.level == 3
        assert node.entity_type is EntityType.TEAM

    async def test_create_union_generates_id(self, service):
        node = await service.create_node(EntityType.UNION, "North")
        assert node.path == node.id
        assert len(node.id) == 26

    async def test_create_rejects_bad_parents(self, service, tree):
        with pytest.raises(ParentNotFoundError):
            await service.create_node("church", "X", parent_id="ghost")
        with pytest.raises(LevelMismatchError):
            await service.create_node("church", "X", parent_id="u1")
        with pytest.raises(ValidationError):
            await service.create_node("church", "X")
        with pytest.raises(ValidationError):
            await service.create_node("union", "X", parent_id="u1")

    async def test_delete_leaf(self, service, tree):
        await service.delete_node("s2")
        assert await service.store.get("s2") is None

    async def test_delete_with_children_is_refused(self, service, tree):
        with pytest.raises(HasChildrenError):
            await service.delete_node("t9")
        with pytest.raises(NodeNotFoundError):
            await service.delete_node("ghost")

    async def test_subtree(self, service, tree):
        nodes = await service.subtree("c3")
        assert [node.id for node in nodes] == ["c3", "t9", "s1", "s2"]


class TestMovePath:

    async def test_emits_audit_event(self, service, sink, tree):
        await service.move_path("church", "c3", "conf5", actor_id="admin", reason="realignment")
        assert len(sink.events) == 1
        event = sink.events[0]
        assert event.entity_id == "c3"
        assert event.old_path == "u1/conf2/c3"
        assert event.new_path == "u1/conf5/c3"
        assert event.reason == "realignment"
        assert len(event.affected) == 4

    async def test_no_op_emits_nothing(self, service, sink, tree):
        result = await service.move_path("church", "c3", "conf2")
        assert result.changes == []
        assert sink.events == []

    async def test_invalidates_principals_in_subtree(
        self, service, cache, make_role, make_principal, tree
    ):
        role_id = await make_role("team_member", 3, ["teams.view:subordinate"])
        await make_principal("inside", [("t9", role_id)])
        await make_principal("outside", [("c4", role_id)])
        await cache.get("inside")
        await cache.get("outside")

        await service.move_path("church", "c3", "conf5")

        assert cache.peek("inside") is None
        assert cache.peek("outside") is not None
        assert (await cache.get("inside")).scope_path == "u1/conf5/c3/team_t9"

    async def test_conflicts_are_retried(self, hierarchy_store, role_store, tree):
        reparent = FlakyReparent(hierarchy_store, failures=2)
        service = HierarchyService(hierarchy_store, role_store, reparent=reparent, max_attempts=3, backoff=0)
        result = await service.move_path("church", "c3", "conf5")
        assert result.new_path == "u1/conf5/c3"
        assert reparent.attempts == 3

    async def test_retries_are_bounded(self, hierarchy_store, role_store, tree):
        reparent = FlakyReparent(hierarchy_store, failures=5)
        service = HierarchyService(hierarchy_store, role_store, reparent=reparent, max_attempts=2, backoff=0)
        with pytest.raises(ConcurrencyConflictError):
            await service.move_path("church", "c3", "conf5")
        assert reparent.attempts == 2

    async def test_permanent_errors_are_not_retried(self, hierarchy_store, role_store, tree):
        reparent = FlakyReparent(hierarchy_store, failures=0)
        service = HierarchyService(hierarchy_store, role_store, reparent=reparent, max_attempts=3, backoff=0)
        with pytest.raises(LevelMismatchError):
            await service.move_path("church", "c3", "u1")
        assert reparent.attempts == 1

    async def test_audit_failure_does_not_fail_the_move(self, hierarchy_store, role_store, tree):
        service = HierarchyService(hierarchy_store, role_store, audit_sink=BrokenSink(), backoff=0)
        result = await service.move_path("church", "c3", "conf5")
        assert result.new_path == "u1/conf5/c3"
        assert (await hierarchy_store.get("c3")).path == "u1/conf5/c3"

    async def test_database_audit_sink(self, hierarchy_store, role_store, session_factory, tree):
        from sqlalchemy import select
        from hierarchy_auth.features.audit.models import AuditLog

        service = HierarchyService(
            hierarchy_store, role_store, audit_sink=DatabaseAuditSink(session_factory), backoff=0
        )
        await service.move_path("church", "c3", "conf5", reason="merge")
        async with session_factory() as session:
            rows = (await session.execute(select(AuditLog))).scalars().all()
        assert len(rows) == 1
        assert rows[0].action == "hierarchy.move"
        assert rows[0].resource_id == "c3"
        assert rows[0].details["new_path"] == "u1/conf5/c3"
        assert rows[0].details["affected_count"] == 4


class TestMoveBatch:

    async def test_items_are_independent(self, service, tree):
        result = await service.move_batch([
            MoveRequest("church", "c3", "conf5"),
            MoveRequest("church", "c4", "u1"),
            MoveRequest("service", "s2", "ghost"),
        ])
        assert result.successful == 1
        assert result.failed == 2
        assert [item.success for item in result.items] == [True, False, False]
        assert result.items[1].error_type == "LevelMismatchError"
        assert result.items[2].error_type == "ParentNotFoundError"
        # The first move stays committed
        assert (await service.store.get("c3")).path == "u1/conf5/c3"

    async def test_later_items_see_earlier_moves(self, service, tree):
        result = await service.move_batch([
            MoveRequest("church", "c3", "conf5"),
            MoveRequest("team", "t9", "c4"),
        ])
        assert result.successful == 2
        assert result.items[1].result.old_path == "u1/conf5/c3/team_t9"
        assert (await service.store.get("s1")).path == "u1/conf2/c4/team_t9/service_s1"


class TestMaintenance:

    async def test_rebuild_invalidates_cache_after_writes(
        self, service, cache, session_factory, make_role, make_principal, tree
    ):
        from sqlalchemy import update
        from hierarchy_auth.features.hierarchy.models import HierarchyNode

        role_id = await make_role("viewer", 4, [])
        await make_principal("p1", [("s1", role_id)])
        await cache.get("p1")

        dry = await service.rebuild_all_paths(dry_run=True)
        assert dry.updated == 0
        assert cache.peek("p1") is not None

        async with session_factory() as session:
            await session.execute(
                update(HierarchyNode).where(HierarchyNode.id == "s1").values(path="u1/conf2/c3/team_t9/service_x")
            )
            await session.commit()

        report = await service.rebuild_all_paths()
        assert report.updated == 1
        assert cache.peek("p1") is None

    async def test_validate_integrity(self, service, tree):
        assert (await service.validate_integrity()).is_valid
