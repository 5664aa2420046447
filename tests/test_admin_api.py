"""Tests for the administration API: role CRUD, assignments, RBAC settings
and the MEDDPICC configuration endpoints.

Uses the in-memory RBAC and configuration repositories behind the real
services, with get_current_user overridden.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.fulqrun.api.v1.admin import router as admin_router
from src.fulqrun.qualification.config import DEFAULT_MEDDPICC_CONFIG
from src.fulqrun.rbac.service import RBACService

ORG = "11111111-1111-1111-1111-111111111111"


@pytest_asyncio.fixture
async def rbac_service(rbac_repo):
    service = RBACService(rbac_repo)
    await service.seed_defaults(ORG)
    return service


@pytest.fixture
def admin_app(make_app, rbac_service, config_service):
    return make_app(admin_router, rbac_service=rbac_service, meddpicc_config_service=config_service)


@pytest_asyncio.fixture
async def client(admin_app):
    async with AsyncClient(transport=ASGITransport(app=admin_app), base_url="http://test") as ac:
        yield ac


class TestAdminOnly:
    @pytest.mark.asyncio
    async def test_rep_is_forbidden(self, make_app, rbac_service, config_service, user_factory):
        app = make_app(
            admin_router,
            user=user_factory("rep"),
            rbac_service=rbac_service,
            meddpicc_config_service=config_service,
        )
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/admin/roles")
        assert resp.status_code == 403
        assert resp.json()["error"] == "Admin access required"

    @pytest.mark.asyncio
    async def test_503_when_rbac_not_initialized(self, make_app):
        app = make_app(admin_router, rbac_service=None, meddpicc_config_service=None)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/admin/roles")
        assert resp.status_code == 503


class TestRoles:
    @pytest.mark.asyncio
    async def test_list_seeded_roles(self, client):
        resp = await client.get("/api/v1/admin/roles")
        assert resp.status_code == 200
        assert {r["role_key"] for r in resp.json()} >= {"admin", "rep", "viewer"}

    @pytest.mark.asyncio
    async def test_create_update_delete_role(self, client):
        resp = await client.post("/api/v1/admin/roles", json={
            "role_key": "field_trainer",
            "role_name": "Field Trainer",
            "permission_keys": ["crm.contacts.view"],
        })
        assert resp.status_code == 201
        role = resp.json()
        assert role["permission_keys"] == ["crm.contacts.view"]
        assert role["is_system_role"] is False

        resp = await client.patch(f"/api/v1/admin/roles/{role['id']}", json={"role_name": "Trainer"})
        assert resp.json()["role_name"] == "Trainer"

        resp = await client.put(
            f"/api/v1/admin/roles/{role['id']}/permissions",
            json={"permission_keys": ["crm.leads.view", "not.a.key"]},
        )
        assert resp.json() == {"role_id": role["id"], "permission_keys": ["crm.leads.view"]}

        resp = await client.delete(f"/api/v1/admin/roles/{role['id']}")
        assert resp.status_code == 204
        resp = await client.get(f"/api/v1/admin/roles/{role['id']}")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_role_key_is_400(self, client):
        resp = await client.post("/api/v1/admin/roles", json={"role_name": "Nameless"})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_duplicate_role_key_is_409(self, client):
        resp = await client.post("/api/v1/admin/roles", json={"role_key": "rep", "role_name": "Rep"})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_system_role_delete_is_400(self, client, rbac_repo):
        admin = await rbac_repo.get_role_by_key(ORG, "admin")
        resp = await client.delete(f"/api/v1/admin/roles/{admin.id}")
        assert resp.status_code == 400
        assert resp.json()["error"] == "System roles cannot be deleted"

    @pytest.mark.asyncio
    async def test_permissions_grouped(self, client):
        resp = await client.get("/api/v1/admin/permissions")
        assert resp.status_code == 200
        assert "Sales" in resp.json()


class TestUsersAndChecks:
    @pytest.mark.asyncio
    async def test_assign_then_test_permission(self, client, rbac_repo):
        user = rbac_repo.add_user(role="rep")
        manager = await rbac_repo.get_role_by_key(ORG, "manager")

        resp = await client.post(f"/api/v1/admin/users/{user.id}/roles", json={"role_id": manager.id})
        assert resp.status_code == 201

        resp = await client.post(
            "/api/v1/admin/rbac/test-permission",
            json={"user_id": user.id, "permission_key": "sales.reports"},
        )
        assert resp.json() == {"has_permission": True, "user_id": user.id, "permission_key": "sales.reports"}

        resp = await client.delete(f"/api/v1/admin/users/{user.id}/roles/{manager.id}")
        assert resp.status_code == 204

    @pytest.mark.asyncio
    async def test_update_user(self, client, rbac_repo):
        user = rbac_repo.add_user(role="rep")
        resp = await client.patch(f"/api/v1/admin/users/{user.id}", json={"role": "manager"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "manager"

    @pytest.mark.asyncio
    async def test_settings_and_audit_log(self, client):
        resp = await client.put("/api/v1/admin/rbac/settings", json={"strict_mode": True})
        assert resp.json()["strict_mode"] is True
        assert (await client.get("/api/v1/admin/rbac/settings")).json()["strict_mode"] is True

        resp = await client.get("/api/v1/admin/rbac/audit-log", params={"limit": 1})
        assert resp.json()[0]["action"] == "settings_updated"


class TestMeddpiccConfig:
    @pytest.mark.asyncio
    async def test_default_configuration(self, client):
        resp = await client.get("/api/v1/admin/meddpicc-config")
        body = resp.json()
        assert body["is_default"] is True
        assert body["version"] is None
        assert len(body["configuration"]["pillars"]) == len(DEFAULT_MEDDPICC_CONFIG.pillars)

    @pytest.mark.asyncio
    async def test_save_history_and_reset(self, client):
        config = DEFAULT_MEDDPICC_CONFIG.model_dump(mode="json")
        config["version"] = "2.0"
        resp = await client.put(
            "/api/v1/admin/meddpicc-config",
            json={"configuration": config, "name": "Oncology", "change_reason": "New launch"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["version"] == 1
        assert body["is_default"] is False
        assert body["validation"]["is_valid"] is True

        history = (await client.get("/api/v1/admin/meddpicc-config/history")).json()
        assert history[0]["change_reason"] == "New launch"

        exported = (await client.get("/api/v1/admin/meddpicc-config/export")).json()
        assert exported["metadata"]["name"] == "Oncology"

        resp = await client.delete("/api/v1/admin/meddpicc-config")
        assert resp.json()["is_default"] is True

    @pytest.mark.asyncio
    async def test_invalid_configuration_is_400(self, client):
        resp = await client.put("/api/v1/admin/meddpicc-config", json={"configuration": {"pillars": []}})
        assert resp.status_code == 400
        assert "Project name is required" in resp.json()["details"]["errors"]

    @pytest.mark.asyncio
    async def test_import(self, client):
        payload = {"data": {"configuration": DEFAULT_MEDDPICC_CONFIG.model_dump(mode="json")}}
        resp = await client.post("/api/v1/admin/meddpicc-config/import", json=payload)
        assert resp.status_code == 200
        assert resp.json()["name"] == "Imported Configuration"
