"""End-to-end tests for the HTTP API."""

import logging

import pytest
from httpx import ASGITransport, AsyncClient

from hierarchy_auth.core import config
from hierarchy_auth.features.hierarchy.levels import EntityType
from hierarchy_auth.features.permissions.auth import create_access_token
from hierarchy_auth.main import app, setup_services, teardown_services, warn_on_default_secret


CONFERENCE_ADMIN_PERMISSIONS = [
    "organizations.manage:subordinate",
    "organizations.delete:subordinate",
    "teams.manage:subordinate",
    "teams.delete:subordinate",
    "services.delete:subordinate",
    "roles.assign:subordinate",
]


@pytest.fixture
async def principals(tree, make_role, make_principal):
    admin_role = await make_role("conference_admin", 1, CONFERENCE_ADMIN_PERMISSIONS)
    church_role = await make_role(
        "church_admin", 2, ["organizations.view:subordinate", "roles.assign:subordinate"]
    )
    member_role = await make_role("team_member", 3, [])
    wildcard_role = await make_role("super_admin", 0, ["*"])
    await make_principal("root", is_super_admin=True)
    await make_principal("confadmin", [("conf2", admin_role)])
    await make_principal("pastor", [("c3", church_role)])
    await make_principal("member", [("t9", member_role)])
    return {
        "conference_admin": admin_role,
        "church_admin": church_role,
        "team_member": member_role,
        "super_admin": wildcard_role,
    }


@pytest.fixture
async def client(engine, session_factory, principals):
    await setup_services(app, engine, session_factory)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    await teardown_services(app)


def bearer(principal_id):
    return {"Authorization": f"Bearer {create_access_token(principal_id)}"}


class TestAuthentication:

    async def test_health_is_public(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_missing_token(self, client):
        response = await client.get("/hierarchy/nodes/c3")
        assert response.status_code in (401, 403)

    async def test_bad_token(self, client):
        response = await client.get("/hierarchy/nodes/c3", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_unknown_principal(self, client):
        response = await client.get("/hierarchy/nodes/c3", headers=bearer("stranger"))
        assert response.status_code == 401
        assert response.json()["detail"] == "Unknown principal"

    def test_default_secret_is_flagged(self, monkeypatch, caplog):
        monkeypatch.setattr(config, "JWT_SECRET", config.DEFAULT_JWT_SECRET)
        with caplog.at_level(logging.WARNING):
            assert warn_on_default_secret()
        assert "JWT_SECRET is not set" in caplog.text

        monkeypatch.setattr(config, "JWT_SECRET", "a-real-secret")
        assert not warn_on_default_secret()


class TestPermissionRoutes:

    async def test_check(self, client):
        body = {
            "permission": "organizations.manage",
            "scope": "subordinate",
            "target": {"entity_type": "church", "entity_id": "c3"},
        }
        response = await client.post("/permissions/check", json=body, headers=bearer("confadmin"))
        assert response.status_code == 200
        assert response.json()["has_permission"] is True

        body["target"] = {"entity_type": "conference", "entity_id": "conf8"}
        response = await client.post("/permissions/check", json=body, headers=bearer("confadmin"))
        assert response.json()["has_permission"] is False

    async def test_check_rejects_malformed_request(self, client):
        response = await client.post(
            "/permissions/check", json={"permission": "teams", "scope": "nearby"}, headers=bearer("confadmin")
        )
        assert response.status_code == 400
        assert set(response.json()) == {"permission", "scope"}

    async def test_me(self, client):
        response = await client.get("/permissions/me", headers=bearer("confadmin"))
        assert response.status_code == 200
        data = response.json()
        assert data["principal_id"] == "confadmin"
        assert data["level"] == 1
        assert data["scope_path"] == "u1/conf2"
        assert "organizations.manage:subordinate" in data["permissions"]
        assert data["managed_levels"] == [2, 3, 4]

    async def test_me_super_admin(self, client):
        data = (await client.get("/permissions/me", headers=bearer("root"))).json()
        assert data["is_super_admin"] is True
        assert data["permissions"] == ["*"]
        assert data["scope_path"] == ""

    async def test_cache_invalidate_requires_permission(self, client):
        response = await client.post("/permissions/cache/invalidate", json={}, headers=bearer("confadmin"))
        assert response.status_code == 403

    async def test_cache_invalidate(self, client):
        await client.get("/permissions/me", headers=bearer("member"))
        response = await client.post(
            "/permissions/cache/invalidate", json={"principal_ids": ["member", "ghost"]}, headers=bearer("root")
        )
        assert response.json() == {"invalidated": 1, "all": False}

        response = await client.post("/permissions/cache/invalidate", json={}, headers=bearer("root"))
        data = response.json()
        assert data["all"] is True
        assert data["invalidated"] >= 1

    async def test_assign_and_revoke(self, client, principals):
        body = {"principal_id": "member", "node_id": "c4", "role_id": principals["team_member"]}
        response = await client.post("/permissions/assignments", json=body, headers=bearer("confadmin"))
        assert response.status_code == 201

        response = await client.post("/permissions/assignments", json=body, headers=bearer("confadmin"))
        assert response.status_code == 409

        response = await client.request("DELETE", "/permissions/assignments", json=body, headers=bearer("confadmin"))
        assert response.status_code == 204
        response = await client.request("DELETE", "/permissions/assignments", json=body, headers=bearer("confadmin"))
        assert response.status_code == 404

    async def test_assign_outside_scope(self, client, principals):
        body = {"principal_id": "member", "node_id": "conf8", "role_id": principals["team_member"]}
        response = await client.post("/permissions/assignments", json=body, headers=bearer("confadmin"))
        assert response.status_code == 403

    async def test_assignment_changes_take_effect(self, client, principals):
        # A church-level role grants the member organization views
        body = {"principal_id": "member", "node_id": "c4", "role_id": principals["church_admin"]}
        response = await client.get("/hierarchy/nodes/c4", headers=bearer("member"))
        assert response.status_code == 403
        await client.post("/permissions/assignments", json=body, headers=bearer("confadmin"))
        response = await client.get("/hierarchy/nodes/c4", headers=bearer("member"))
        assert response.status_code == 200

    async def test_cannot_grant_wildcard_role_to_self(self, client, principals):
        body = {"principal_id": "pastor", "node_id": "c3", "role_id": principals["super_admin"]}
        response = await client.post("/permissions/assignments", json=body, headers=bearer("pastor"))
        assert response.status_code == 403

        me = (await client.get("/permissions/me", headers=bearer("pastor"))).json()
        assert "*" not in me["permissions"]
        response = await client.post("/hierarchy/rebuild", json={}, headers=bearer("pastor"))
        assert response.status_code == 403

    async def test_cannot_grant_peer_or_higher_roles(self, client, principals):
        for role in ("church_admin", "conference_admin"):
            body = {"principal_id": "member", "node_id": "c3", "role_id": principals[role]}
            response = await client.post("/permissions/assignments", json=body, headers=bearer("pastor"))
            assert response.status_code == 403

        body = {"principal_id": "member", "node_id": "c3", "role_id": principals["team_member"]}
        response = await client.post("/permissions/assignments", json=body, headers=bearer("pastor"))
        assert response.status_code == 201

    async def test_cannot_revoke_higher_roles(self, client, principals):
        body = {"principal_id": "pastor", "node_id": "c3", "role_id": principals["church_admin"]}
        response = await client.request("DELETE", "/permissions/assignments", json=body, headers=bearer("pastor"))
        assert response.status_code == 403

    async def test_super_admin_grants_wildcard_role(self, client, principals):
        body = {"principal_id": "member", "node_id": "u1", "role_id": principals["super_admin"]}
        response = await client.post("/permissions/assignments", json=body, headers=bearer("root"))
        assert response.status_code == 201

    async def test_unknown_role(self, client):
        body = {"principal_id": "member", "node_id": "c3", "role_id": "ghost"}
        response = await client.post("/permissions/assignments", json=body, headers=bearer("pastor"))
        assert response.status_code == 404

class TestNodeRoutes:

    async def test_get_node(self, client):
        response = await client.get("/hierarchy/nodes/c3", headers=bearer("confadmin"))
        assert response.status_code == 200
        data = response.json()
        assert data["path"] == "u1/conf2/c3"
        assert data["entity_type"] == "church"
        assert data["level"] == 2

    async def test_get_node_outside_scope(self, client):
        response = await client.get("/hierarchy/nodes/conf8", headers=bearer("confadmin"))
        assert response.status_code == 403

    async def test_get_missing_node(self, client):
        response = await client.get("/hierarchy/nodes/ghost", headers=bearer("confadmin"))
        assert response.status_code == 404
        assert response.json()["error"] == "NodeNotFoundError"

    async def test_own_scope_view(self, client):
        assert (await client.get("/hierarchy/nodes/s1", headers=bearer("member"))).status_code == 200
        assert (await client.get("/hierarchy/nodes/c3", headers=bearer("member"))).status_code == 403

    async def test_subtree(self, client):
        response = await client.get("/hierarchy/nodes/c3/subtree", headers=bearer("confadmin"))
        assert [node["id"] for node in response.json()] == ["c3", "t9", "s1", "s2"]

    async def test_create(self, client):
        response = await client.post(
            "/hierarchy/nodes",
            json={"entity_type": "church", "name": "Riverside", "parent_id": "conf2"},
            headers=bearer("confadmin"),
        )
        assert response.status_code == 201
        data = response.json()
        assert data["path"] == f"u1/conf2/{data['id']}"
        assert data["version"] == 1

    async def test_create_outside_scope(self, client):
        response = await client.post(
            "/hierarchy/nodes",
            json={"entity_type": "church", "name": "Elsewhere", "parent_id": "conf8"},
            headers=bearer("confadmin"),
        )
        assert response.status_code == 403

    async def test_create_at_wrong_level(self, client):
        response = await client.post(
            "/hierarchy/nodes",
            json={"entity_type": "church", "name": "Misplaced", "parent_id": "u1"},
            headers=bearer("root"),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "LevelMismatchError"

    async def test_create_rejects_unknown_type(self, client):
        response = await client.post(
            "/hierarchy/nodes",
            json={"entity_type": "diocese", "name": "X", "parent_id": "u1"},
            headers=bearer("root"),
        )
        assert response.status_code == 400

    async def test_delete(self, client):
        response = await client.delete("/hierarchy/nodes/s2", headers=bearer("confadmin"))
        assert response.status_code == 204
        response = await client.get("/hierarchy/nodes/s2", headers=bearer("confadmin"))
        assert response.status_code == 404

    async def test_delete_with_children(self, client):
        response = await client.delete("/hierarchy/nodes/t9", headers=bearer("root"))
        assert response.status_code == 409
        assert response.json()["error"] == "HasChildrenError"

    async def test_delete_requires_permission(self, client):
        response = await client.delete("/hierarchy/nodes/s2", headers=bearer("member"))
        assert response.status_code == 403


class TestMoveRoutes:

    async def test_move(self, client):
        response = await client.post(
            "/hierarchy/move",
            json={"entity_type": "church", "entity_id": "c3", "new_parent_id": "conf5", "reason": "merge"},
            headers=bearer("root"),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["old_path"] == "u1/conf2/c3"
        assert data["new_path"] == "u1/conf5/c3"
        assert len(data["changes"]) == 4

        response = await client.get("/hierarchy/nodes/s1", headers=bearer("root"))
        assert response.json()["path"] == "u1/conf5/c3/team_t9/service_s1"

    async def test_move_within_scope(self, client):
        response = await client.post(
            "/hierarchy/move",
            json={"entity_type": "team", "entity_id": "t9", "new_parent_id": "c4"},
            headers=bearer("confadmin"),
        )
        assert response.status_code == 200
        assert response.json()["new_path"] == "u1/conf2/c4/team_t9"

    async def test_move_out_of_scope_is_forbidden(self, client):
        # The church is managed by the caller, its destination is not
        response = await client.post(
            "/hierarchy/move",
            json={"entity_type": "church", "entity_id": "c3", "new_parent_id": "conf5"},
            headers=bearer("confadmin"),
        )
        assert response.status_code == 403
        response = await client.get("/hierarchy/nodes/c3", headers=bearer("root"))
        assert response.json()["path"] == "u1/conf2/c3"

    @pytest.mark.parametrize("body, status_code, error", [
        ({"entity_type": "church", "entity_id": "c3", "new_parent_id": "u1"}, 400, "LevelMismatchError"),
        ({"entity_type": "church", "entity_id": "c3", "new_parent_id": "ghost"}, 404, "ParentNotFoundError"),
        ({"entity_type": "church", "entity_id": "ghost", "new_parent_id": "conf5"}, 404, "NodeNotFoundError"),
        ({"entity_type": "team", "entity_id": "c3", "new_parent_id": "conf5"}, 400, "ValidationError"),
    ])
    async def test_rejected_moves(self, client, body, status_code, error):
        response = await client.post("/hierarchy/move", json=body, headers=bearer("root"))
        assert response.status_code == status_code
        assert response.json()["error"] == error

    async def test_circular_move(self, client, insert_nodes):
        await insert_nodes([("x1", EntityType.CONFERENCE, "u1", "u1/conf2/c3/x1")])
        response = await client.post(
            "/hierarchy/move",
            json={"entity_type": "church", "entity_id": "c3", "new_parent_id": "x1"},
            headers=bearer("root"),
        )
        assert response.status_code == 409
        assert response.json()["error"] == "CircularDependencyError"

    async def test_batch(self, client):
        response = await client.post(
            "/hierarchy/move/batch",
            json={"moves": [
                {"entity_type": "church", "entity_id": "c3", "new_parent_id": "conf5"},
                {"entity_type": "church", "entity_id": "c4", "new_parent_id": "u1"},
            ]},
            headers=bearer("root"),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["successful"] == 1
        assert data["failed"] == 1
        assert data["items"][0]["result"]["new_path"] == "u1/conf5/c3"
        assert data["items"][1]["error_type"] == "LevelMismatchError"

    async def test_batch_rejects_duplicates(self, client):
        move = {"entity_type": "church", "entity_id": "c3", "new_parent_id": "conf5"}
        response = await client.post("/hierarchy/move/batch", json={"moves": [move, move]}, headers=bearer("root"))
        assert response.status_code == 400

    async def test_batch_is_refused_when_any_item_is_forbidden(self, client):
        response = await client.post(
            "/hierarchy/move/batch",
            json={"moves": [
                {"entity_type": "team", "entity_id": "t9", "new_parent_id": "c4"},
                {"entity_type": "church", "entity_id": "c3", "new_parent_id": "conf5"},
            ]},
            headers=bearer("confadmin"),
        )
        assert response.status_code == 403
        response = await client.get("/hierarchy/nodes/t9", headers=bearer("root"))
        assert response.json()["path"] == "u1/conf2/c3/team_t9"


class TestMaintenanceRoutes:

    async def test_rebuild_requires_admin(self, client):
        response = await client.post("/hierarchy/rebuild", json={}, headers=bearer("confadmin"))
        assert response.status_code == 403

    async def test_rebuild(self, client, tree):
        response = await client.post("/hierarchy/rebuild", json={"dry_run": True}, headers=bearer("root"))
        assert response.status_code == 200
        data = response.json()
        assert data["dry_run"] is True
        assert data["processed"] == len(tree)
        assert data["updated"] == 0

    async def test_integrity(self, client, tree):
        response = await client.get("/hierarchy/integrity", headers=bearer("root"))
        assert response.status_code == 200
        data = response.json()
        assert data["is_valid"] is True
        assert data["checked"] == len(tree)
