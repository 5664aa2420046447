"""Tests for RBACService: seeding, permission resolution, role admin and audit."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from src.fulqrun.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.fulqrun.rbac.defaults import DEFAULT_PERMISSIONS, DEFAULT_ROLES, permissions_for_role
from src.fulqrun.rbac.schemas import RBACSettingsUpdate, RoleCreate, RoleUpdate
from src.fulqrun.rbac.service import RBACService

ORG = "11111111-1111-1111-1111-111111111111"


def _seed(key: str):
    return next(r for r in DEFAULT_ROLES if r.role_key == key)


@pytest_asyncio.fixture
async def seeded(rbac_repo):
    service = RBACService(rbac_repo)
    await service.seed_defaults(ORG)
    return service


async def _assign(service, repo, role_key: str, role: str = "rep", expires_at=None) -> str:
    user = repo.add_user(role=role)
    target = await repo.get_role_by_key(ORG, role_key)
    await service.assign_role(ORG, None, user.id, target.id, expires_at=expires_at)
    return user.id


class TestDefaults:
    def test_permission_keys_are_unique(self):
        keys = [p.permission_key for p in DEFAULT_PERMISSIONS]
        assert len(keys) == len(set(keys))

    def test_super_admin_gets_everything(self):
        assert len(permissions_for_role(_seed("super_admin"))) == len(DEFAULT_PERMISSIONS)

    def test_admin_excludes_super_and_system(self):
        keys = permissions_for_role(_seed("admin"))
        assert "admin.super.organizations" not in keys
        assert "admin.system.configure" not in keys
        assert "admin.roles.edit" in keys

    def test_viewer_is_read_only(self):
        assert all(k.endswith(".view") for k in permissions_for_role(_seed("viewer")))

    def test_rep_cannot_delete(self):
        keys = permissions_for_role(_seed("rep"))
        assert "crm.leads.create" in keys
        assert "crm.leads.delete" not in keys
        assert not any(k.startswith("admin.") for k in keys)


class TestSeeding:
    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, rbac_repo):
        service = RBACService(rbac_repo)
        first = await service.seed_defaults(ORG)
        second = await service.seed_defaults(ORG)
        assert first == {"permissions": len(DEFAULT_PERMISSIONS), "roles": len(DEFAULT_ROLES)}
        assert second == {"permissions": 0, "roles": 0}

    @pytest.mark.asyncio
    async def test_seeded_roles_are_system_roles(self, seeded):
        roles = await seeded.list_roles(ORG)
        assert {r.role_key for r in roles} == {"super_admin", "admin", "manager", "rep", "viewer"}
        assert all(r.is_system_role for r in roles)

    @pytest.mark.asyncio
    async def test_permissions_grouped_by_category(self, seeded):
        grouped = await seeded.permissions_by_category(ORG)
        assert "CRM" in grouped
        assert all(p.permission_category == "Administration" for p in grouped["Administration"])


class TestPermissionChecks:
    @pytest.mark.asyncio
    async def test_rep_permissions(self, seeded, rbac_repo):
        user_id = await _assign(seeded, rbac_repo, "rep")
        assert await seeded.has_permission(ORG, user_id, "crm.leads.view")
        assert not await seeded.has_permission(ORG, user_id, "crm.leads.delete")
        assert not await seeded.has_permission(ORG, user_id, "admin.users.view")

    @pytest.mark.asyncio
    async def test_user_without_roles_has_nothing(self, seeded, rbac_repo):
        user = rbac_repo.add_user(role="admin")
        assert not await seeded.has_permission(ORG, user.id, "crm.leads.view")

    @pytest.mark.asyncio
    async def test_inherited_permissions(self, seeded, rbac_repo):
        await seeded.create_role(ORG, None, RoleCreate(
            role_key="senior_rep",
            role_name="Senior Rep",
            inherits_from="rep",
            permission_keys=["sales.opportunities.delete"],
        ))
        user_id = await _assign(seeded, rbac_repo, "senior_rep")
        assert await seeded.has_permission(ORG, user_id, "sales.opportunities.delete")
        assert await seeded.has_permission(ORG, user_id, "crm.leads.view")

    @pytest.mark.asyncio
    async def test_inheritance_cycle_terminates(self, seeded, rbac_repo):
        await seeded.create_role(ORG, None, RoleCreate(
            role_key="a", role_name="A", inherits_from="b", permission_keys=["crm.leads.view"],
        ))
        await seeded.create_role(ORG, None, RoleCreate(
            role_key="b", role_name="B", inherits_from="a", permission_keys=["crm.contacts.view"],
        ))
        user_id = await _assign(seeded, rbac_repo, "a")
        keys = await seeded.resolve_permission_keys(ORG, user_id)
        assert keys == {"crm.leads.view", "crm.contacts.view"}

    @pytest.mark.asyncio
    async def test_inactive_parent_is_not_followed(self, seeded, rbac_repo):
        await seeded.create_role(ORG, None, RoleCreate(role_key="child", role_name="Child", inherits_from="rep"))
        rep = await rbac_repo.get_role_by_key(ORG, "rep")
        await seeded.update_role(ORG, None, rep.id, RoleUpdate(is_active=False))
        user_id = await _assign(seeded, rbac_repo, "child")
        assert not await seeded.has_permission(ORG, user_id, "crm.leads.view")

    @pytest.mark.asyncio
    async def test_expired_assignment_grants_nothing(self, seeded, rbac_repo):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        user_id = await _assign(seeded, rbac_repo, "rep", expires_at=past)
        assert not await seeded.has_permission(ORG, user_id, "crm.leads.view")

    @pytest.mark.asyncio
    async def test_rbac_disabled_only_admins_pass(self, seeded, rbac_repo):
        await seeded.update_settings(ORG, None, RBACSettingsUpdate(enable_rbac=False))
        admin = rbac_repo.add_user(role="admin")
        rep_id = await _assign(seeded, rbac_repo, "rep")
        assert await seeded.has_permission(ORG, admin.id, "anything.at.all")
        assert not await seeded.has_permission(ORG, rep_id, "crm.leads.view")

    @pytest.mark.asyncio
    async def test_checks_are_audited(self, seeded, rbac_repo):
        user_id = await _assign(seeded, rbac_repo, "viewer")
        await seeded.has_permission(ORG, user_id, "crm.leads.view")
        latest = (await seeded.audit_log(ORG, limit=1))[0]
        assert latest.action == "permission_check"
        assert latest.resource_id == "crm.leads.view"
        assert latest.details == {"granted": True}


class TestRoleAdministration:
    @pytest.mark.asyncio
    async def test_create_requires_key_and_name(self, seeded):
        with pytest.raises(ValidationFailedError):
            await seeded.create_role(ORG, None, RoleCreate(role_name="No key"))

    @pytest.mark.asyncio
    async def test_duplicate_key_conflicts(self, seeded):
        with pytest.raises(ConflictError):
            await seeded.create_role(ORG, None, RoleCreate(role_key="rep", role_name="Rep again"))

    @pytest.mark.asyncio
    async def test_unknown_permission_keys_are_ignored(self, seeded):
        role = await seeded.create_role(ORG, None, RoleCreate(
            role_key="auditor", role_name="Auditor", permission_keys=["admin.audit_log.view", "made.up.key"],
        ))
        assert role.permission_keys == ["admin.audit_log.view"]

    @pytest.mark.asyncio
    async def test_system_roles_cannot_be_deleted(self, seeded, rbac_repo):
        viewer = await rbac_repo.get_role_by_key(ORG, "viewer")
        with pytest.raises(ValidationFailedError):
            await seeded.delete_role(ORG, None, viewer.id)

    @pytest.mark.asyncio
    async def test_custom_role_delete(self, seeded):
        role = await seeded.create_role(ORG, None, RoleCreate(role_key="temp", role_name="Temp"))
        await seeded.delete_role(ORG, "actor", role.id)
        with pytest.raises(NotFoundError):
            await seeded.get_role(ORG, role.id)

    @pytest.mark.asyncio
    async def test_set_role_permissions_replaces_grants(self, seeded):
        role = await seeded.create_role(ORG, None, RoleCreate(
            role_key="ops", role_name="Ops", permission_keys=["crm.leads.view"],
        ))
        applied = await seeded.set_role_permissions(ORG, None, role.id, ["sync.queue.view", "sync.queue.process"])
        assert applied == ["sync.queue.process", "sync.queue.view"]
        assert await seeded.get_role_permissions(ORG, role.id) == applied

    @pytest.mark.asyncio
    async def test_update_unknown_role(self, seeded):
        with pytest.raises(NotFoundError):
            await seeded.update_role(ORG, None, "missing", RoleUpdate(role_name="x"))


class TestAssignments:
    @pytest.mark.asyncio
    async def test_assign_to_unknown_user(self, seeded, rbac_repo):
        rep = await rbac_repo.get_role_by_key(ORG, "rep")
        with pytest.raises(NotFoundError):
            await seeded.assign_role(ORG, None, "nobody", rep.id)

    @pytest.mark.asyncio
    async def test_revoke_removes_permission(self, seeded, rbac_repo):
        user_id = await _assign(seeded, rbac_repo, "rep")
        rep = await rbac_repo.get_role_by_key(ORG, "rep")
        await seeded.revoke_role(ORG, None, user_id, rep.id)
        assert not await seeded.has_permission(ORG, user_id, "crm.leads.view")
        with pytest.raises(NotFoundError):
            await seeded.revoke_role(ORG, None, user_id, rep.id)

    @pytest.mark.asyncio
    async def test_user_lists_role_keys(self, seeded, rbac_repo):
        user_id = await _assign(seeded, rbac_repo, "manager")
        users = await seeded.list_users(ORG)
        assert next(u for u in users if u.id == user_id).role_keys == ["manager"]


class TestSettingsAudit:
    @pytest.mark.asyncio
    async def test_disabling_audit_is_itself_recorded(self, seeded, rbac_repo):
        before = len(rbac_repo.audit)
        await seeded.update_settings(ORG, "actor", RBACSettingsUpdate(audit_logging=False))
        assert len(rbac_repo.audit) == before + 1
        assert rbac_repo.audit[-1].action == "settings_updated"

        user = rbac_repo.add_user(role="admin")
        await seeded.has_permission(ORG, user.id, "crm.leads.view")
        assert len(rbac_repo.audit) == before + 1
