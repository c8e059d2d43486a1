"""Tests for effective permission resolution."""

from hierarchy_auth.features.permissions import tokens
from hierarchy_auth.features.permissions.resolver import IMPLICIT_PERMISSIONS, RoleResolver
from hierarchy_auth.features.permissions.store import Assignment, PrincipalRecord, RoleRecord
from hierarchy_auth.features.permissions.tokens import PermissionToken


def role(name, level, permissions=(), can_manage=()):
    return RoleRecord(
        id=f"role-{name}",
        name=name,
        hierarchy_level=level,
        permissions=tokens.parse_many(permissions),
        can_manage=frozenset(can_manage),
    )


def assignment(node_id, path, node_level, role_record):
    return Assignment(node_id=node_id, node_path=path, node_level=node_level, role=role_record)


CONFERENCE_ADMIN = role("conference_admin", 1, ["organizations.update:subordinate"], [2, 3, 4])
TEAM_MEMBER = role("team_member", 3, ["teams.view:subordinate"])


class TestResolve:

    def setup_method(self):
        self.resolver = RoleResolver()

    def test_super_admin_gets_global(self):
        principal = PrincipalRecord(id="p0", is_super_admin=True)
        assert self.resolver.resolve(principal) == frozenset({tokens.GLOBAL})
        assert self.resolver.highest_level(principal) == -1
        assert self.resolver.scope_path(principal) == ""

    def test_unassigned_principal_has_nothing(self):
        principal = PrincipalRecord(id="p1")
        assert self.resolver.resolve(principal) == frozenset()
        assert self.resolver.highest_level(principal) is None
        assert self.resolver.scope_path(principal) is None

    def test_inactive_principal_has_nothing(self):
        principal = PrincipalRecord(
            id="p1", is_active=False,
            assignments=frozenset({assignment("conf2", "u1/conf2", 1, CONFERENCE_ADMIN)}),
        )
        assert self.resolver.resolve(principal) == frozenset()

    def test_union_of_roles_plus_implicit_and_derived(self):
        principal = PrincipalRecord(id="p2", assignments=frozenset({
            assignment("conf2", "u1/conf2", 1, CONFERENCE_ADMIN),
            assignment("t9", "u1/conf2/c3/team_t9", 3, TEAM_MEMBER),
        }))
        resolved = self.resolver.resolve(principal)

        assert PermissionToken("organizations", "update", "subordinate") in resolved
        assert PermissionToken("teams", "view", "subordinate") in resolved
        assert IMPLICIT_PERMISSIONS[1] <= resolved
        for family in ("organizations", "teams", "services"):
            assert PermissionToken(family, "manage", "subordinate") in resolved

    def test_highest_level_and_scope_come_from_top_assignment(self):
        principal = PrincipalRecord(id="p2", assignments=frozenset({
            assignment("t9", "u1/conf2/c3/team_t9", 3, TEAM_MEMBER),
            assignment("conf2", "u1/conf2", 1, CONFERENCE_ADMIN),
        }))
        assert self.resolver.highest_level(principal) == 1
        assert self.resolver.scope_path(principal) == "u1/conf2"

    def test_can_manage_at_or_above_own_level_is_ignored(self):
        odd = role("odd", 3, [], [2, 3, 4])
        principal = PrincipalRecord(id="p3", assignments=frozenset({
            assignment("t9", "u1/conf2/c3/team_t9", 3, odd),
        }))
        resolved = self.resolver.resolve(principal)
        assert PermissionToken("services", "manage", "subordinate") in resolved
        assert PermissionToken("teams", "manage", "subordinate") not in resolved
        assert PermissionToken("organizations", "manage", "subordinate") not in resolved

    def test_managed_levels(self):
        principal = PrincipalRecord(id="p2", assignments=frozenset({
            assignment("conf2", "u1/conf2", 1, CONFERENCE_ADMIN),
        }))
        assert self.resolver.managed_levels(principal) == [2, 3, 4]
        assert self.resolver.managed_levels(PrincipalRecord(id="p1")) == []

    def test_resolution_is_deterministic(self):
        principal = PrincipalRecord(id="p2", assignments=frozenset({
            assignment("conf2", "u1/conf2", 1, CONFERENCE_ADMIN),
        }))
        assert self.resolver.resolve_all(principal) == self.resolver.resolve_all(principal)
