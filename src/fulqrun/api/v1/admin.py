"""Administration endpoints: roles, permissions, user role assignment,
RBAC settings and audit log, and the organization's MEDDPICC configuration.

Every endpoint requires a user whose base role is admin or super_admin.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.fulqrun.api.deps import get_organization, get_service, require_admin
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.models.organization import User
from src.fulqrun.qualification.schemas import (
    ConfigurationHistoryEntry,
    ConfigurationImport,
    ConfigurationSave,
    ConfigurationValidation,
)
from src.fulqrun.rbac.schemas import (
    AuditLogEntry,
    PermissionRead,
    RBACSettings,
    RBACSettingsUpdate,
    RBACUserRead,
    RBACUserUpdate,
    RoleCreate,
    RoleRead,
    RoleUpdate,
    UserRoleAssign,
    UserRoleRead,
)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])

_rbac = get_service("rbac_service", "RBAC")
_meddpicc_config = get_service("meddpicc_config_service", "MEDDPICC configuration")


# ── Request / Response Schemas ──────────────────────────────────────────────


class RolePermissionsUpdate(BaseModel):
    permission_keys: list[str] = Field(default_factory=list)


class RolePermissionsResponse(BaseModel):
    role_id: str
    permission_keys: list[str]


class PermissionTestRequest(BaseModel):
    user_id: str
    permission_key: str


class PermissionTestResponse(BaseModel):
    has_permission: bool
    user_id: str
    permission_key: str


class MEDDPICCConfigResponse(BaseModel):
    """Active configuration; ``id`` and ``version`` are None for the built-in default."""

    id: str | None = None
    name: str | None = None
    description: str | None = None
    version: int | None = None
    is_default: bool = False
    configuration: dict[str, Any]
    validation: ConfigurationValidation | None = None
    updated_at: str | None = None


def _stored_to_response(stored: Any, validation: ConfigurationValidation | None = None) -> MEDDPICCConfigResponse:
    return MEDDPICCConfigResponse(
        id=stored.id,
        name=stored.name,
        description=stored.description,
        version=stored.version,
        configuration=stored.configuration.model_dump(mode="json"),
        validation=validation,
        updated_at=stored.created_at.isoformat() if stored.created_at else None,
    )


# ── Roles ────────────────────────────────────────────────────────────────────


@router.get("/roles", response_model=list[RoleRead])
async def list_roles(
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.list_roles(org.organization_id)


@router.post("/roles", response_model=RoleRead, status_code=status.HTTP_201_CREATED)
async def create_role(
    body: RoleCreate,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    """Create a custom role, optionally with its initial permission set."""
    return await rbac.create_role(org.organization_id, str(user.id), body)


@router.get("/roles/{role_id}", response_model=RoleRead)
async def get_role(
    role_id: str,
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.get_role(org.organization_id, role_id)


@router.patch("/roles/{role_id}", response_model=RoleRead)
async def update_role(
    role_id: str,
    body: RoleUpdate,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.update_role(org.organization_id, str(user.id), role_id, body)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(
    role_id: str,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    """Delete a custom role. System roles return 400."""
    await rbac.delete_role(org.organization_id, str(user.id), role_id)


@router.get("/roles/{role_id}/permissions", response_model=RolePermissionsResponse)
async def get_role_permissions(
    role_id: str,
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    keys = await rbac.get_role_permissions(org.organization_id, role_id)
    return RolePermissionsResponse(role_id=role_id, permission_keys=keys)


@router.put("/roles/{role_id}/permissions", response_model=RolePermissionsResponse)
async def set_role_permissions(
    role_id: str,
    body: RolePermissionsUpdate,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    """Replace the role's permission set. Unknown keys are ignored."""
    keys = await rbac.set_role_permissions(org.organization_id, str(user.id), role_id, body.permission_keys)
    return RolePermissionsResponse(role_id=role_id, permission_keys=keys)


# ── Permissions ──────────────────────────────────────────────────────────────


@router.get("/permissions", response_model=dict[str, list[PermissionRead]])
async def list_permissions(
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    """All permissions, grouped by category."""
    return await rbac.permissions_by_category(org.organization_id)


# ── Users ────────────────────────────────────────────────────────────────────


@router.get("/users", response_model=list[RBACUserRead])
async def list_users(
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.list_users(org.organization_id)


@router.patch("/users/{user_id}", response_model=RBACUserRead)
async def update_user(
    user_id: str,
    body: RBACUserUpdate,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.update_user(org.organization_id, str(user.id), user_id, body)


@router.post("/users/{user_id}/roles", response_model=UserRoleRead, status_code=status.HTTP_201_CREATED)
async def assign_user_role(
    user_id: str,
    body: UserRoleAssign,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.assign_role(
        org.organization_id, str(user.id), user_id, body.role_id, expires_at=body.expires_at
    )


@router.delete("/users/{user_id}/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_user_role(
    user_id: str,
    role_id: str,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    await rbac.revoke_role(org.organization_id, str(user.id), user_id, role_id)


# ── RBAC settings, permission test, audit log ────────────────────────────────


@router.post("/rbac/test-permission", response_model=PermissionTestResponse)
async def test_permission(
    body: PermissionTestRequest,
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    granted = await rbac.has_permission(org.organization_id, body.user_id, body.permission_key)
    return PermissionTestResponse(
        has_permission=granted, user_id=body.user_id, permission_key=body.permission_key
    )


@router.get("/rbac/settings", response_model=RBACSettings)
async def get_rbac_settings(
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.get_settings(org.organization_id)


@router.put("/rbac/settings", response_model=RBACSettings)
async def update_rbac_settings(
    body: RBACSettingsUpdate,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    return await rbac.update_settings(org.organization_id, str(user.id), body)


@router.get("/rbac/audit-log", response_model=list[AuditLogEntry])
async def get_audit_log(
    limit: int = Query(100, ge=1, le=1000),
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    rbac: Any = Depends(_rbac),
):
    """Audit entries, newest first."""
    return await rbac.audit_log(org.organization_id, limit)


# ── MEDDPICC configuration ───────────────────────────────────────────────────


@router.get("/meddpicc-config", response_model=MEDDPICCConfigResponse)
async def get_meddpicc_config(
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc_config),
):
    stored = await service.get_configuration_record(org.organization_id)
    if stored is None:
        config = await service.get_active_configuration(org.organization_id)
        return MEDDPICCConfigResponse(is_default=True, configuration=config.model_dump(mode="json"))
    return _stored_to_response(stored)


@router.put("/meddpicc-config", response_model=MEDDPICCConfigResponse)
async def save_meddpicc_config(
    body: ConfigurationSave,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc_config),
):
    """Validate and store a new configuration version.

    Returns 400 with the validation errors when the configuration is invalid.
    """
    stored, validation = await service.save_configuration(
        org.organization_id,
        body.configuration,
        user_id=str(user.id),
        name=body.name,
        description=body.description,
        change_reason=body.change_reason,
    )
    return _stored_to_response(stored, validation)


@router.delete("/meddpicc-config", response_model=MEDDPICCConfigResponse)
async def reset_meddpicc_config(
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc_config),
):
    """Deactivate the stored configuration; the default applies again."""
    config = await service.reset_to_default(org.organization_id, user_id=str(user.id))
    return MEDDPICCConfigResponse(is_default=True, configuration=config.model_dump(mode="json"))


@router.get("/meddpicc-config/history", response_model=list[ConfigurationHistoryEntry])
async def get_meddpicc_config_history(
    limit: int = Query(50, ge=1, le=500),
    _: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc_config),
):
    return await service.get_configuration_history(org.organization_id, limit=limit)


@router.get("/meddpicc-config/export")
async def export_meddpicc_config(
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc_config),
) -> dict[str, Any]:
    exported = await service.export_configuration(org.organization_id, exported_by=user.email)
    return json.loads(exported)


@router.post("/meddpicc-config/import", response_model=MEDDPICCConfigResponse)
async def import_meddpicc_config(
    body: ConfigurationImport,
    user: User = Depends(require_admin),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_meddpicc_config),
):
    stored, validation = await service.import_configuration(
        org.organization_id,
        body.data,
        user_id=str(user.id),
        name=body.name,
        description=body.description,
    )
    return _stored_to_response(stored, validation)
