"""Default permission catalogue and system roles seeded into every organization.

Permission keys are dotted: ``{module}.{resource}.{action}`` (e.g.
``crm.leads.view``). Role grants are derived from the keys by the rules in
DEFAULT_ROLES rather than listed one by one, so new permissions added to
the catalogue are picked up by the matching roles automatically.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class PermissionSeed:
    permission_key: str
    permission_name: str
    permission_category: str
    module_name: str
    description: str = ""
    is_system_permission: bool = False


@dataclass(frozen=True)
class RoleSeed:
    role_key: str
    role_name: str
    description: str
    grants: Callable[[str], bool]
    inherits_from: str | None = None


_CRUD = ("view", "create", "edit", "delete")


def _resource(module: str, category: str, resource: str, label: str, actions=_CRUD) -> list[PermissionSeed]:
    return [
        PermissionSeed(
            permission_key=f"{module}.{resource}.{action}",
            permission_name=f"{action.replace('_', ' ').title()} {label}",
            permission_category=category,
            module_name=module,
            description=f"{action.replace('_', ' ').capitalize()} {label.lower()}",
            is_system_permission=action == "view",
        )
        for action in actions
    ]


DEFAULT_PERMISSIONS: list[PermissionSeed] = [
    # CRM
    *_resource("crm", "CRM", "leads", "Leads", (*_CRUD, "qualify", "convert", "export")),
    *_resource("crm", "CRM", "contacts", "Contacts", (*_CRUD, "export")),
    *_resource("crm", "CRM", "companies", "Companies"),
    # Sales
    *_resource("sales", "Sales", "opportunities", "Opportunities", (*_CRUD, "assign")),
    *_resource("sales", "Sales", "pipeline", "Pipeline", ("view", "edit")),
    *_resource("sales", "Sales", "activities", "Activities"),
    PermissionSeed("sales.team_management", "Team Management", "Sales", "sales", "Manage sales team members"),
    PermissionSeed("sales.reports", "Sales Reports", "Sales", "sales", "Generate sales reports"),
    # Qualification
    *_resource("qualification", "Qualification", "meddpicc", "MEDDPICC", ("view", "edit")),
    *_resource("qualification", "Qualification", "peak", "PEAK Stages", ("view", "edit")),
    PermissionSeed("qualification.configuration", "Configure Qualification", "Qualification", "qualification", "Edit the MEDDPICC configuration"),
    # Business intelligence
    *_resource("bi", "Business Intelligence", "kpis", "KPIs", ("view",)),
    *_resource("bi", "Business Intelligence", "reports", "BI Reports", ("view", "create")),
    PermissionSeed("bi.territory_management", "Territory Management", "Business Intelligence", "bi", "Manage territories and targets"),
    # Export
    *_resource("export", "Export", "dashboards", "Dashboard Exports", ("view", "create")),
    *_resource("export", "Export", "reports", "Report Exports", ("view", "create")),
    # Integrations
    *_resource("integrations", "Integrations", "connections", "Integrations", _CRUD),
    PermissionSeed("integrations.sync", "Run Integration Sync", "Integrations", "integrations", "Trigger integration syncs"),
    # Dashboard
    *_resource("dashboard", "Dashboard", "widgets", "Dashboard", ("view", "customize")),
    # Offline sync
    *_resource("sync", "Sync", "queue", "Offline Queue", ("view", "process")),
    # Administration
    *_resource("admin", "Administration", "users", "Users", ("view", "edit")),
    *_resource("admin", "Administration", "roles", "Roles", _CRUD),
    *_resource("admin", "Administration", "rbac_settings", "RBAC Settings", ("view", "edit")),
    *_resource("admin", "Administration", "audit_log", "Audit Log", ("view",)),
    PermissionSeed("admin.system.configure", "System Configuration", "Administration", "admin", "Configure system-wide settings", True),
    PermissionSeed("admin.super.organizations", "Manage Organizations", "Administration", "admin", "Create and deactivate organizations", True),
]


def _admin_grants(key: str) -> bool:
    return "super" not in key and "system" not in key


def _manager_grants(key: str) -> bool:
    return key.endswith(".view") or "management" in key or "reports" in key


def _rep_grants(key: str) -> bool:
    if not (key.startswith("crm.") or key.startswith("sales.")):
        return False
    return not key.endswith(".delete") and "admin" not in key


def _viewer_grants(key: str) -> bool:
    return key.endswith(".view")


DEFAULT_ROLES: list[RoleSeed] = [
    RoleSeed("super_admin", "Super Administrator", "Full system access", lambda key: True),
    RoleSeed("admin", "Administrator", "Organization administration", _admin_grants),
    RoleSeed("manager", "Sales Manager", "Team management and reporting", _manager_grants),
    RoleSeed("rep", "Sales Representative", "Day-to-day CRM and pipeline work", _rep_grants),
    RoleSeed("viewer", "Viewer", "Read-only access", _viewer_grants),
]

ADMIN_ROLES = frozenset({"admin", "super_admin"})


def permissions_for_role(role: RoleSeed, catalogue: list[PermissionSeed] | None = None) -> list[str]:
    """Permission keys a default role is granted from the catalogue."""
    return [p.permission_key for p in (catalogue or DEFAULT_PERMISSIONS) if role.grants(p.permission_key)]
