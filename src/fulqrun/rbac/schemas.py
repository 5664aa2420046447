"""Pydantic schemas for roles, permissions, assignments and RBAC settings."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ── Roles ───────────────────────────────────────────────────────────────────


class RoleCreate(BaseModel):
    # Optional at the schema level so the service can answer 400 with a
    # domain message instead of a 422 validation error
    role_key: str | None = None
    role_name: str | None = None
    description: str | None = None
    inherits_from: str | None = None
    is_active: bool = True
    permission_keys: list[str] = Field(default_factory=list)


class RoleUpdate(BaseModel):
    role_name: str | None = None
    description: str | None = None
    inherits_from: str | None = None
    is_active: bool | None = None


class RoleRead(BaseModel):
    id: str
    organization_id: str
    role_key: str
    role_name: str
    description: str | None = None
    inherits_from: str | None = None
    is_active: bool = True
    is_system_role: bool = False
    permission_keys: list[str] = Field(default_factory=list)
    user_count: int = 0
    created_at: datetime | None = None


# ── Permissions ─────────────────────────────────────────────────────────────


class PermissionCreate(BaseModel):
    permission_key: str
    permission_name: str
    permission_category: str
    description: str | None = None
    module_name: str | None = None
    is_system_permission: bool = False
    parent_permission_id: str | None = None


class PermissionRead(PermissionCreate):
    id: str
    organization_id: str


# ── Users and assignments ───────────────────────────────────────────────────


class RBACUserRead(BaseModel):
    id: str
    email: str
    full_name: str | None = None
    role: str
    manager_id: str | None = None
    is_active: bool = True
    role_keys: list[str] = Field(default_factory=list)


class RBACUserUpdate(BaseModel):
    full_name: str | None = None
    role: str | None = None
    manager_id: str | None = None
    is_active: bool | None = None


class UserRoleAssign(BaseModel):
    role_id: str
    expires_at: datetime | None = None


class UserRoleRead(BaseModel):
    id: str
    user_id: str
    role_id: str
    assigned_by: str | None = None
    expires_at: datetime | None = None
    is_active: bool = True
    assigned_at: datetime | None = None


# ── Settings and audit ──────────────────────────────────────────────────────


class RBACSettings(BaseModel):
    enable_rbac: bool = True
    strict_mode: bool = False
    audit_logging: bool = True
    session_timeout_minutes: int = Field(default=30, ge=1)
    max_failed_attempts: int = Field(default=5, ge=1)
    lockout_duration_minutes: int = Field(default=15, ge=0)


class RBACSettingsUpdate(BaseModel):
    enable_rbac: bool | None = None
    strict_mode: bool | None = None
    audit_logging: bool | None = None
    session_timeout_minutes: int | None = Field(default=None, ge=1)
    max_failed_attempts: int | None = Field(default=None, ge=1)
    lockout_duration_minutes: int | None = Field(default=None, ge=0)


class AuditLogEntry(BaseModel):
    action: str
    resource_type: str
    resource_id: str | None = None
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
