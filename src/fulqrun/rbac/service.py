"""Role-based access control service.

Wraps RBACRepository with the rules the admin API enforces:

- has_permission resolves a user's active, unexpired role assignments,
  follows ``inherits_from`` transitively (cycle-safe), and checks the
  collected permission keys. When RBAC is disabled for the organization
  only admin and super_admin base roles pass.
- Role creation validates required fields and key uniqueness.
- System roles cannot be deleted.
- Mutations and permission checks are written to the audit log when the
  organization's ``audit_logging`` setting is on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.fulqrun.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.fulqrun.rbac.defaults import (
    ADMIN_ROLES,
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLES,
    permissions_for_role,
)
from src.fulqrun.rbac.schemas import (
    AuditLogEntry,
    PermissionCreate,
    PermissionRead,
    RBACSettings,
    RBACSettingsUpdate,
    RBACUserRead,
    RBACUserUpdate,
    RoleCreate,
    RoleRead,
    RoleUpdate,
    UserRoleRead,
)

logger = structlog.get_logger(__name__)


class RBACService:
    """Permission checks and role administration for one repository.

    Args:
        repository: RBACRepository (or a test double with the same methods).
    """

    def __init__(self, repository: Any) -> None:
        self._repo = repository

    # ── Audit ───────────────────────────────────────────────────────────────

    async def _audit(
        self,
        organization_id: str,
        action: str,
        resource_type: str,
        resource_id: str | None,
        user_id: str | None,
        details: dict[str, Any] | None = None,
        settings: RBACSettings | None = None,
    ) -> None:
        settings = settings or await self._repo.get_settings(organization_id)
        if not settings.audit_logging:
            return
        await self._repo.add_audit_entry(
            organization_id,
            AuditLogEntry(
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                user_id=user_id,
                details=details or {},
            ),
        )

    # ── Permission checks ───────────────────────────────────────────────────

    async def resolve_permission_keys(
        self, organization_id: str, user_id: str, now: datetime | None = None
    ) -> set[str]:
        """All permission keys granted to a user, including inherited roles."""
        roles = await self._repo.get_active_roles_for_user(
            organization_id, user_id, now or datetime.now(timezone.utc)
        )
        keys: set[str] = set()
        visited: set[str] = set()
        pending = list(roles)
        while pending:
            role = pending.pop()
            if role.role_key in visited:
                continue
            visited.add(role.role_key)
            keys.update(role.permission_keys)
            if role.inherits_from and role.inherits_from not in visited:
                parent = await self._repo.get_role_by_key(organization_id, role.inherits_from)
                if parent is not None and parent.is_active:
                    pending.append(parent)
        return keys

    async def has_permission(
        self, organization_id: str, user_id: str, permission_key: str
    ) -> bool:
        settings = await self._repo.get_settings(organization_id)

        if not settings.enable_rbac:
            user = await self._repo.get_user(organization_id, user_id)
            granted = user is not None and user.role in ADMIN_ROLES
        else:
            granted = permission_key in await self.resolve_permission_keys(organization_id, user_id)

        await self._audit(
            organization_id,
            "permission_check",
            "permission",
            permission_key,
            user_id,
            {"granted": granted},
            settings=settings,
        )
        return granted

    # ── Roles ───────────────────────────────────────────────────────────────

    async def list_roles(self, organization_id: str) -> list[RoleRead]:
        return await self._repo.list_roles(organization_id)

    async def get_role(self, organization_id: str, role_id: str) -> RoleRead:
        role = await self._repo.get_role(organization_id, role_id)
        if role is None:
            raise NotFoundError("Role not found", {"role_id": role_id})
        return role

    async def create_role(
        self, organization_id: str, actor_id: str | None, data: RoleCreate
    ) -> RoleRead:
        if not data.role_key or not data.role_name:
            raise ValidationFailedError("role_key and role_name are required")
        if await self._repo.get_role_by_key(organization_id, data.role_key) is not None:
            raise ConflictError("Role key already exists", {"role_key": data.role_key})

        role = await self._repo.create_role(organization_id, data)
        if data.permission_keys:
            applied = await self._repo.set_role_permissions(organization_id, role.id, data.permission_keys)
            role = role.model_copy(update={"permission_keys": applied})

        await self._audit(
            organization_id, "role_created", "role", role.id, actor_id,
            {"role_key": role.role_key, "permission_keys": role.permission_keys},
        )
        logger.info("rbac.role_created", organization_id=organization_id, role_key=role.role_key)
        return role

    async def update_role(
        self, organization_id: str, actor_id: str | None, role_id: str, data: RoleUpdate
    ) -> RoleRead:
        try:
            role = await self._repo.update_role(organization_id, role_id, data)
        except ValueError:
            raise NotFoundError("Role not found", {"role_id": role_id})
        await self._audit(
            organization_id, "role_updated", "role", role_id, actor_id,
            data.model_dump(exclude_none=True),
        )
        return role

    async def delete_role(self, organization_id: str, actor_id: str | None, role_id: str) -> None:
        role = await self.get_role(organization_id, role_id)
        if role.is_system_role:
            raise ValidationFailedError("System roles cannot be deleted", {"role_key": role.role_key})
        await self._repo.delete_role(organization_id, role_id)
        await self._audit(
            organization_id, "role_deleted", "role", role_id, actor_id, {"role_key": role.role_key}
        )
        logger.info("rbac.role_deleted", organization_id=organization_id, role_key=role.role_key)

    async def get_role_permissions(self, organization_id: str, role_id: str) -> list[str]:
        return (await self.get_role(organization_id, role_id)).permission_keys

    async def set_role_permissions(
        self,
        organization_id: str,
        actor_id: str | None,
        role_id: str,
        permission_keys: list[str],
    ) -> list[str]:
        await self.get_role(organization_id, role_id)
        applied = await self._repo.set_role_permissions(organization_id, role_id, permission_keys)
        await self._audit(
            organization_id, "role_permissions_updated", "role", role_id, actor_id,
            {"permission_keys": applied},
        )
        return applied

    # ── Permissions ─────────────────────────────────────────────────────────

    async def list_permissions(self, organization_id: str) -> list[PermissionRead]:
        return await self._repo.list_permissions(organization_id)

    async def permissions_by_category(self, organization_id: str) -> dict[str, list[PermissionRead]]:
        grouped: dict[str, list[PermissionRead]] = {}
        for perm in await self._repo.list_permissions(organization_id):
            grouped.setdefault(perm.permission_category, []).append(perm)
        return grouped

    # ── Users ───────────────────────────────────────────────────────────────

    async def list_users(self, organization_id: str) -> list[RBACUserRead]:
        return await self._repo.list_users(organization_id)

    async def update_user(
        self, organization_id: str, actor_id: str | None, user_id: str, data: RBACUserUpdate
    ) -> RBACUserRead:
        try:
            user = await self._repo.update_user(organization_id, user_id, data)
        except ValueError:
            raise NotFoundError("User not found", {"user_id": user_id})
        await self._audit(
            organization_id, "user_updated", "user", user_id, actor_id,
            data.model_dump(exclude_none=True, mode="json"),
        )
        return user

    async def assign_role(
        self,
        organization_id: str,
        actor_id: str | None,
        user_id: str,
        role_id: str,
        expires_at: datetime | None = None,
    ) -> UserRoleRead:
        if await self._repo.get_user(organization_id, user_id) is None:
            raise NotFoundError("User not found", {"user_id": user_id})
        role = await self.get_role(organization_id, role_id)
        assignment = await self._repo.assign_role(
            organization_id, user_id, role_id, assigned_by=actor_id, expires_at=expires_at
        )
        await self._audit(
            organization_id, "role_assigned", "user", user_id, actor_id,
            {"role_key": role.role_key, "expires_at": expires_at.isoformat() if expires_at else None},
        )
        return assignment

    async def revoke_role(
        self, organization_id: str, actor_id: str | None, user_id: str, role_id: str
    ) -> None:
        if not await self._repo.revoke_role(organization_id, user_id, role_id):
            raise NotFoundError("Role assignment not found", {"user_id": user_id, "role_id": role_id})
        await self._audit(
            organization_id, "role_revoked", "user", user_id, actor_id, {"role_id": role_id}
        )

    # ── Settings and audit log ──────────────────────────────────────────────

    async def get_settings(self, organization_id: str) -> RBACSettings:
        return await self._repo.get_settings(organization_id)

    async def update_settings(
        self, organization_id: str, actor_id: str | None, data: RBACSettingsUpdate
    ) -> RBACSettings:
        previous = await self._repo.get_settings(organization_id)
        settings = await self._repo.update_settings(organization_id, data)
        # Checked against the previous value so turning audit_logging off is recorded
        await self._audit(
            organization_id, "settings_updated", "rbac_settings", None, actor_id,
            data.model_dump(exclude_none=True),
            settings=previous,
        )
        return settings

    async def audit_log(self, organization_id: str, limit: int = 100) -> list[AuditLogEntry]:
        return await self._repo.list_audit_log(organization_id, limit)

    # ── Seeding ─────────────────────────────────────────────────────────────

    async def seed_defaults(self, organization_id: str) -> dict[str, int]:
        """Insert the default permission catalogue and system roles.

        Idempotent: existing permissions and roles are left untouched.
        """
        inserted = await self._repo.create_permissions(
            organization_id,
            [
                PermissionCreate(
                    permission_key=p.permission_key,
                    permission_name=p.permission_name,
                    permission_category=p.permission_category,
                    description=p.description,
                    module_name=p.module_name,
                    is_system_permission=p.is_system_permission,
                )
                for p in DEFAULT_PERMISSIONS
            ],
        )
        roles_created = 0
        for seed in DEFAULT_ROLES:
            if await self._repo.get_role_by_key(organization_id, seed.role_key) is not None:
                continue
            role = await self._repo.create_role(
                organization_id,
                RoleCreate(
                    role_key=seed.role_key,
                    role_name=seed.role_name,
                    description=seed.description,
                    inherits_from=seed.inherits_from,
                ),
                is_system_role=True,
            )
            await self._repo.set_role_permissions(organization_id, role.id, permissions_for_role(seed))
            roles_created += 1

        logger.info(
            "rbac.defaults_seeded",
            organization_id=organization_id,
            permissions=inserted,
            roles=roles_created,
        )
        return {"permissions": inserted, "roles": roles_created}
