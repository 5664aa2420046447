"""RBAC repository -- async CRUD for roles, permissions, assignments and audit.

All methods take organization_id as first argument. Reads are converted
into the Pydantic schemas in rbac.schemas; callers never see ORM rows.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.models.organization import User
from src.fulqrun.rbac.models import (
    PermissionModel,
    RBACAuditLogModel,
    RBACSettingsModel,
    RoleModel,
    RolePermissionModel,
    UserRoleModel,
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


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_role(model: RoleModel, permission_keys: list[str], user_count: int) -> RoleRead:
    return RoleRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        role_key=model.role_key,
        role_name=model.role_name,
        description=model.description,
        inherits_from=model.inherits_from,
        is_active=model.is_active,
        is_system_role=model.is_system_role,
        permission_keys=permission_keys,
        user_count=user_count,
        created_at=model.created_at,
    )


def _model_to_permission(model: PermissionModel) -> PermissionRead:
    return PermissionRead(
        id=str(model.id),
        organization_id=str(model.organization_id),
        permission_key=model.permission_key,
        permission_name=model.permission_name,
        permission_category=model.permission_category,
        description=model.description,
        module_name=model.module_name,
        is_system_permission=model.is_system_permission,
        parent_permission_id=str(model.parent_permission_id) if model.parent_permission_id else None,
    )


def _model_to_user_role(model: UserRoleModel) -> UserRoleRead:
    return UserRoleRead(
        id=str(model.id),
        user_id=str(model.user_id),
        role_id=str(model.role_id),
        assigned_by=str(model.assigned_by) if model.assigned_by else None,
        expires_at=model.expires_at,
        is_active=model.is_active,
        assigned_at=model.assigned_at,
    )


def _model_to_user(model: User, role_keys: list[str]) -> RBACUserRead:
    return RBACUserRead(
        id=str(model.id),
        email=model.email,
        full_name=model.full_name,
        role=model.role,
        manager_id=str(model.manager_id) if model.manager_id else None,
        is_active=model.is_active,
        role_keys=role_keys,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class RBACRepository:
    """Async persistence for the RBAC tables.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def _role_details(
        self, session: AsyncSession, role: RoleModel
    ) -> tuple[list[str], int]:
        keys_result = await session.execute(
            select(PermissionModel.permission_key)
            .join(RolePermissionModel, RolePermissionModel.permission_id == PermissionModel.id)
            .where(RolePermissionModel.role_id == role.id)
            .order_by(PermissionModel.permission_key)
        )
        count_result = await session.execute(
            select(func.count(UserRoleModel.id)).where(
                UserRoleModel.role_id == role.id,
                UserRoleModel.is_active == True,  # noqa: E712
            )
        )
        return list(keys_result.scalars().all()), int(count_result.scalar() or 0)

    # ── Roles ───────────────────────────────────────────────────────────────

    async def list_roles(self, organization_id: str) -> list[RoleRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(RoleModel)
                .where(RoleModel.organization_id == uuid.UUID(organization_id))
                .order_by(RoleModel.role_key)
            )
            roles = []
            for model in result.scalars().all():
                keys, count = await self._role_details(session, model)
                roles.append(_model_to_role(model, keys, count))
            return roles

    async def get_role(self, organization_id: str, role_id: str) -> RoleRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(RoleModel).where(
                    RoleModel.organization_id == uuid.UUID(organization_id),
                    RoleModel.id == uuid.UUID(role_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            keys, count = await self._role_details(session, model)
            return _model_to_role(model, keys, count)

    async def get_role_by_key(self, organization_id: str, role_key: str) -> RoleRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(RoleModel).where(
                    RoleModel.organization_id == uuid.UUID(organization_id),
                    RoleModel.role_key == role_key,
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            keys, count = await self._role_details(session, model)
            return _model_to_role(model, keys, count)

    async def create_role(
        self, organization_id: str, data: RoleCreate, is_system_role: bool = False
    ) -> RoleRead:
        async for session in self._session_factory():
            model = RoleModel(
                organization_id=uuid.UUID(organization_id),
                role_key=data.role_key,
                role_name=data.role_name,
                description=data.description,
                inherits_from=data.inherits_from,
                is_active=data.is_active,
                is_system_role=is_system_role,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_role(model, [], 0)

    async def update_role(
        self, organization_id: str, role_id: str, data: RoleUpdate
    ) -> RoleRead:
        """Apply non-None fields. Raises ValueError if the role does not exist."""
        async for session in self._session_factory():
            result = await session.execute(
                select(RoleModel).where(
                    RoleModel.organization_id == uuid.UUID(organization_id),
                    RoleModel.id == uuid.UUID(role_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"Role {role_id} not found")
            for field, value in data.model_dump(exclude_none=True).items():
                setattr(model, field, value)
            await session.commit()
            await session.refresh(model)
            keys, count = await self._role_details(session, model)
            return _model_to_role(model, keys, count)

    async def delete_role(self, organization_id: str, role_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(RoleModel).where(
                    RoleModel.organization_id == uuid.UUID(organization_id),
                    RoleModel.id == uuid.UUID(role_id),
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def set_role_permissions(
        self, organization_id: str, role_id: str, permission_keys: list[str]
    ) -> list[str]:
        """Replace a role's grants. Unknown keys are ignored; returns the applied keys."""
        org_uuid = uuid.UUID(organization_id)
        role_uuid = uuid.UUID(role_id)
        async for session in self._session_factory():
            await session.execute(
                delete(RolePermissionModel).where(RolePermissionModel.role_id == role_uuid)
            )
            applied: list[str] = []
            if permission_keys:
                result = await session.execute(
                    select(PermissionModel).where(
                        PermissionModel.organization_id == org_uuid,
                        PermissionModel.permission_key.in_(permission_keys),
                    )
                )
                for permission in result.scalars().all():
                    session.add(RolePermissionModel(
                        organization_id=org_uuid,
                        role_id=role_uuid,
                        permission_id=permission.id,
                    ))
                    applied.append(permission.permission_key)
            await session.commit()
            return sorted(applied)

    async def get_active_roles_for_user(
        self, organization_id: str, user_id: str, now: datetime | None = None
    ) -> list[RoleRead]:
        """Active roles assigned to a user whose assignment has not expired."""
        now = now or datetime.now(timezone.utc)
        async for session in self._session_factory():
            result = await session.execute(
                select(RoleModel)
                .join(UserRoleModel, UserRoleModel.role_id == RoleModel.id)
                .where(
                    UserRoleModel.organization_id == uuid.UUID(organization_id),
                    UserRoleModel.user_id == uuid.UUID(user_id),
                    UserRoleModel.is_active == True,  # noqa: E712
                    RoleModel.is_active == True,  # noqa: E712
                    or_(UserRoleModel.expires_at.is_(None), UserRoleModel.expires_at > now),
                )
            )
            roles = []
            for model in result.scalars().all():
                keys, count = await self._role_details(session, model)
                roles.append(_model_to_role(model, keys, count))
            return roles

    # ── Permissions ─────────────────────────────────────────────────────────

    async def list_permissions(self, organization_id: str) -> list[PermissionRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(PermissionModel)
                .where(PermissionModel.organization_id == uuid.UUID(organization_id))
                .order_by(PermissionModel.permission_category, PermissionModel.permission_key)
            )
            return [_model_to_permission(m) for m in result.scalars().all()]

    async def create_permissions(
        self, organization_id: str, permissions: list[PermissionCreate]
    ) -> int:
        """Insert permissions whose key does not exist yet. Returns the insert count."""
        org_uuid = uuid.UUID(organization_id)
        async for session in self._session_factory():
            existing = await session.execute(
                select(PermissionModel.permission_key).where(PermissionModel.organization_id == org_uuid)
            )
            known = set(existing.scalars().all())
            inserted = 0
            for perm in permissions:
                if perm.permission_key in known:
                    continue
                session.add(PermissionModel(
                    organization_id=org_uuid,
                    permission_key=perm.permission_key,
                    permission_name=perm.permission_name,
                    permission_category=perm.permission_category,
                    description=perm.description,
                    module_name=perm.module_name,
                    is_system_permission=perm.is_system_permission,
                ))
                known.add(perm.permission_key)
                inserted += 1
            await session.commit()
            return inserted

    # ── Users ───────────────────────────────────────────────────────────────

    async def _user_role_keys(self, session: AsyncSession, user_id: uuid.UUID) -> list[str]:
        result = await session.execute(
            select(RoleModel.role_key)
            .join(UserRoleModel, UserRoleModel.role_id == RoleModel.id)
            .where(UserRoleModel.user_id == user_id, UserRoleModel.is_active == True)  # noqa: E712
            .order_by(RoleModel.role_key)
        )
        return list(result.scalars().all())

    async def list_users(self, organization_id: str) -> list[RBACUserRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(User)
                .where(User.organization_id == uuid.UUID(organization_id))
                .order_by(User.email)
            )
            users = []
            for model in result.scalars().all():
                users.append(_model_to_user(model, await self._user_role_keys(session, model.id)))
            return users

    async def get_user(self, organization_id: str, user_id: str) -> RBACUserRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(
                    User.organization_id == uuid.UUID(organization_id),
                    User.id == uuid.UUID(user_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_user(model, await self._user_role_keys(session, model.id))

    async def update_user(
        self, organization_id: str, user_id: str, data: RBACUserUpdate
    ) -> RBACUserRead:
        """Raises ValueError if the user does not exist."""
        async for session in self._session_factory():
            result = await session.execute(
                select(User).where(
                    User.organization_id == uuid.UUID(organization_id),
                    User.id == uuid.UUID(user_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise ValueError(f"User {user_id} not found")
            for field, value in data.model_dump(exclude_none=True).items():
                if field == "manager_id":
                    value = uuid.UUID(value)
                setattr(model, field, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_user(model, await self._user_role_keys(session, model.id))

    async def assign_role(
        self,
        organization_id: str,
        user_id: str,
        role_id: str,
        assigned_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> UserRoleRead:
        """Create or reactivate a user -> role assignment."""
        async for session in self._session_factory():
            result = await session.execute(
                select(UserRoleModel).where(
                    UserRoleModel.user_id == uuid.UUID(user_id),
                    UserRoleModel.role_id == uuid.UUID(role_id),
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = UserRoleModel(
                    organization_id=uuid.UUID(organization_id),
                    user_id=uuid.UUID(user_id),
                    role_id=uuid.UUID(role_id),
                )
                session.add(model)
            model.assigned_by = uuid.UUID(assigned_by) if assigned_by else None
            model.expires_at = expires_at
            model.is_active = True
            await session.commit()
            await session.refresh(model)
            return _model_to_user_role(model)

    async def revoke_role(self, organization_id: str, user_id: str, role_id: str) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                delete(UserRoleModel).where(
                    UserRoleModel.organization_id == uuid.UUID(organization_id),
                    UserRoleModel.user_id == uuid.UUID(user_id),
                    UserRoleModel.role_id == uuid.UUID(role_id),
                )
            )
            await session.commit()
            return result.rowcount > 0

    # ── Settings ────────────────────────────────────────────────────────────

    async def get_settings(self, organization_id: str) -> RBACSettings:
        """Stored settings, or the defaults when none were saved."""
        async for session in self._session_factory():
            result = await session.execute(
                select(RBACSettingsModel).where(
                    RBACSettingsModel.organization_id == uuid.UUID(organization_id)
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                return RBACSettings()
            return RBACSettings(
                enable_rbac=model.enable_rbac,
                strict_mode=model.strict_mode,
                audit_logging=model.audit_logging,
                session_timeout_minutes=model.session_timeout_minutes,
                max_failed_attempts=model.max_failed_attempts,
                lockout_duration_minutes=model.lockout_duration_minutes,
            )

    async def update_settings(
        self, organization_id: str, data: RBACSettingsUpdate
    ) -> RBACSettings:
        async for session in self._session_factory():
            result = await session.execute(
                select(RBACSettingsModel).where(
                    RBACSettingsModel.organization_id == uuid.UUID(organization_id)
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = RBACSettingsModel(organization_id=uuid.UUID(organization_id), **RBACSettings().model_dump())
                session.add(model)
            for field, value in data.model_dump(exclude_none=True).items():
                setattr(model, field, value)
            await session.commit()
            await session.refresh(model)
        return await self.get_settings(organization_id)

    # ── Audit ───────────────────────────────────────────────────────────────

    async def add_audit_entry(self, organization_id: str, entry: AuditLogEntry) -> None:
        async for session in self._session_factory():
            session.add(RBACAuditLogModel(
                organization_id=uuid.UUID(organization_id),
                action=entry.action,
                resource_type=entry.resource_type,
                resource_id=entry.resource_id,
                user_id=uuid.UUID(entry.user_id) if entry.user_id else None,
                details=entry.details,
            ))
            await session.commit()

    async def list_audit_log(self, organization_id: str, limit: int = 100) -> list[AuditLogEntry]:
        async for session in self._session_factory():
            result = await session.execute(
                select(RBACAuditLogModel)
                .where(RBACAuditLogModel.organization_id == uuid.UUID(organization_id))
                .order_by(RBACAuditLogModel.created_at.desc())
                .limit(limit)
            )
            return [
                AuditLogEntry(
                    action=m.action,
                    resource_type=m.resource_type,
                    resource_id=m.resource_id,
                    user_id=str(m.user_id) if m.user_id else None,
                    details=m.details or {},
                    created_at=m.created_at,
                )
                for m in result.scalars().all()
            ]
