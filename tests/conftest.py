"""Shared test fixtures.

Provides in-memory doubles for the pieces the services talk to, so the
suite runs without PostgreSQL or Redis:

- FakeRedis: the subset of redis.asyncio.Redis that OrganizationRedis uses
- InMemoryCRMRepository: CRMRepository for leads, contacts, opportunities
- InMemoryRBACRepository: RBACRepository for roles, permissions, users
- InMemoryConfigRepository: versioned MEDDPICC configuration storage
- make_app: a FastAPI app with routers mounted and auth dependencies
  overridden, mirroring how the API tests build their apps
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI

from src.fulqrun.api.deps import get_current_user, get_organization
from src.fulqrun.core.errors import register_exception_handlers
from src.fulqrun.core.organization import (
    OrganizationContext,
    reset_organization_context,
    set_organization_context,
)
from src.fulqrun.crm.schemas import (
    ContactRead,
    LeadRead,
    OpportunityRead,
)
from src.fulqrun.qualification.configuration import MEDDPICCConfigurationService
from src.fulqrun.qualification.schemas import ConfigurationHistoryEntry, StoredConfiguration
from src.fulqrun.rbac.schemas import (
    AuditLogEntry,
    PermissionRead,
    RBACSettings,
    RBACUserRead,
    RoleRead,
    UserRoleRead,
)

ORG_ID = "11111111-1111-1111-1111-111111111111"
OTHER_ORG_ID = "22222222-2222-2222-2222-222222222222"
USER_ID = "33333333-3333-3333-3333-333333333333"

ORG_CONTEXT = OrganizationContext(
    organization_id=ORG_ID,
    organization_slug="acme-pharma",
    schema_name="org_acme_pharma",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Redis ───────────────────────────────────────────────────────────────────


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client (decode_responses=True)."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.expiry: dict[str, float] = {}
        self.published: list[tuple[str, str]] = []

    def _expired(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.strings.pop(key, None)
            self.hashes.pop(key, None)
            self.expiry.pop(key, None)
            return True
        return False

    async def get(self, key: str) -> str | None:
        if self._expired(key):
            return None
        return self.strings.get(key)

    async def set(self, key: str, value: Any, ex: int | None = None, nx: bool = False) -> bool | None:
        self._expired(key)
        if nx and (key in self.strings or key in self.hashes):
            return None
        self.strings[key] = str(value)
        if ex:
            self.expiry[key] = time.monotonic() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.strings.pop(key, None) is not None or self.hashes.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for k in keys if not self._expired(k) and (k in self.strings or k in self.hashes))

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self.strings and key not in self.hashes:
            return False
        self.expiry[key] = time.monotonic() + seconds
        return True

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    async def hset(self, name: str, key: str, value: Any) -> int:
        bucket = self.hashes.setdefault(name, {})
        created = key not in bucket
        bucket[key] = str(value)
        return int(created)

    async def hget(self, name: str, key: str) -> str | None:
        return self.hashes.get(name, {}).get(key)

    async def hincrby(self, name: str, key: str, amount: int = 1) -> int:
        bucket = self.hashes.setdefault(name, {})
        value = int(bucket.get(key, 0)) + amount
        bucket[key] = str(value)
        return value

    async def hgetall(self, name: str) -> dict[str, str]:
        return dict(self.hashes.get(name, {}))

    async def hdel(self, name: str, *keys: str) -> int:
        bucket = self.hashes.get(name, {})
        removed = sum(1 for k in keys if bucket.pop(k, None) is not None)
        if name in self.hashes and not bucket:
            del self.hashes[name]
        return removed

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


# ── CRM ─────────────────────────────────────────────────────────────────────


def _matches(search: str | None, *values: str | None) -> bool:
    if not search:
        return True
    needle = search.lower()
    return any(v and needle in v.lower() for v in values)


class InMemoryCRMRepository:
    """CRMRepository double keeping rows in per-type dicts keyed by id."""

    def __init__(self) -> None:
        self.leads: dict[str, LeadRead] = {}
        self.contacts: dict[str, ContactRead] = {}
        self.opportunities: dict[str, OpportunityRead] = {}

    @staticmethod
    def _scoped(rows: dict[str, Any], organization_id: str) -> list[Any]:
        return [r for r in rows.values() if r.organization_id == organization_id]

    # Leads

    async def create_lead(self, organization_id, data, score=0, created_by=None):
        now = _now()
        lead = LeadRead(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            score=score,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            **data.model_dump(mode="json"),
        )
        self.leads[lead.id] = lead
        return lead

    async def get_lead(self, organization_id, lead_id):
        lead = self.leads.get(lead_id)
        return lead if lead and lead.organization_id == organization_id else None

    async def list_leads(self, organization_id, filters=None):
        rows = [
            lead for lead in self._scoped(self.leads, organization_id)
            if (filters is None or filters.status is None or lead.status == filters.status.value)
            and _matches(filters.search if filters else None, lead.first_name, lead.last_name, lead.email, lead.company)
        ]
        if filters is not None:
            rows = rows[filters.offset:filters.offset + filters.limit]
        return rows

    async def update_lead(self, organization_id, lead_id, data, score=None):
        lead = await self.get_lead(organization_id, lead_id)
        if lead is None:
            raise ValueError(f"Lead {lead_id} not found")
        changes = data.model_dump(exclude_none=True, mode="json")
        if score is not None:
            changes["score"] = score
        updated = lead.model_copy(update={**changes, "updated_at": _now()})
        self.leads[lead_id] = updated
        return updated

    async def delete_lead(self, organization_id, lead_id):
        if await self.get_lead(organization_id, lead_id) is None:
            return False
        del self.leads[lead_id]
        return True

    async def lead_status_scores(self, organization_id):
        return [(lead.status, lead.score) for lead in self._scoped(self.leads, organization_id)]

    # Contacts

    async def create_contact(self, organization_id, data, created_by=None):
        now = _now()
        contact = ContactRead(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        )
        self.contacts[contact.id] = contact
        return contact

    async def get_contact(self, organization_id, contact_id):
        contact = self.contacts.get(contact_id)
        return contact if contact and contact.organization_id == organization_id else None

    async def get_contact_by_external_id(self, organization_id, external_id):
        for contact in self._scoped(self.contacts, organization_id):
            if contact.external_id == external_id:
                return contact
        return None

    async def list_contacts(self, organization_id, search=None, limit=100, offset=0):
        rows = [
            c for c in self._scoped(self.contacts, organization_id)
            if _matches(search, c.first_name, c.last_name, c.email, c.company)
        ]
        rows.sort(key=lambda c: (c.last_name, c.first_name))
        return rows[offset:offset + limit]

    async def update_contact(self, organization_id, contact_id, data):
        contact = await self.get_contact(organization_id, contact_id)
        if contact is None:
            raise ValueError(f"Contact {contact_id} not found")
        updated = contact.model_copy(update=data.model_dump(exclude_none=True))
        self.contacts[contact_id] = updated
        return updated

    async def delete_contact(self, organization_id, contact_id):
        if await self.get_contact(organization_id, contact_id) is None:
            return False
        del self.contacts[contact_id]
        return True

    # Opportunities

    async def create_opportunity(self, organization_id, data, created_by=None):
        now = _now()
        values = data.model_dump()
        values["stage"] = data.stage.value
        opportunity = OpportunityRead(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            created_at=now,
            updated_at=now,
            **values,
        )
        self.opportunities[opportunity.id] = opportunity
        return opportunity

    async def get_opportunity(self, organization_id, opportunity_id):
        opportunity = self.opportunities.get(opportunity_id)
        return opportunity if opportunity and opportunity.organization_id == organization_id else None

    async def list_opportunities(self, organization_id, filters=None):
        rows = self._scoped(self.opportunities, organization_id)
        if filters is not None:
            if filters.stage is not None:
                rows = [o for o in rows if o.stage == filters.stage.value]
            if filters.assigned_to:
                rows = [o for o in rows if o.assigned_to == filters.assigned_to]
            if filters.assigned_to_any:
                rows = [o for o in rows if o.assigned_to in filters.assigned_to_any]
            if filters.closed_from:
                rows = [o for o in rows if o.close_date and o.close_date >= filters.closed_from]
            if filters.closed_to:
                rows = [o for o in rows if o.close_date and o.close_date <= filters.closed_to]
            rows = rows[filters.offset:filters.offset + filters.limit]
        return rows

    async def update_opportunity(self, organization_id, opportunity_id, data):
        opportunity = await self.get_opportunity(organization_id, opportunity_id)
        if opportunity is None:
            raise ValueError(f"Opportunity {opportunity_id} not found")
        changes = data.model_dump(exclude_none=True)
        if data.stage is not None:
            changes["stage"] = data.stage.value
        if data.meddpicc_responses is not None:
            changes["meddpicc_responses"] = data.meddpicc_responses
        updated = opportunity.model_copy(update={**changes, "updated_at": _now()})
        self.opportunities[opportunity_id] = updated
        return updated

    async def delete_opportunity(self, organization_id, opportunity_id):
        if await self.get_opportunity(organization_id, opportunity_id) is None:
            return False
        del self.opportunities[opportunity_id]
        return True


# ── RBAC ────────────────────────────────────────────────────────────────────


class InMemoryRBACRepository:
    """RBACRepository double. Users are added directly with add_user()."""

    def __init__(self) -> None:
        self.roles: dict[str, RoleRead] = {}
        self.permissions: dict[str, PermissionRead] = {}
        self.users: dict[str, RBACUserRead] = {}
        self.assignments: dict[tuple[str, str], UserRoleRead] = {}
        self.settings = RBACSettings()
        self.audit: list[AuditLogEntry] = []

    def add_user(self, user_id: str | None = None, role: str = "rep", email: str | None = None,
                 manager_id: str | None = None) -> RBACUserRead:
        user_id = user_id or str(uuid.uuid4())
        user = RBACUserRead(
            id=user_id,
            email=email or f"{user_id[:8]}@example.com",
            role=role,
            manager_id=manager_id,
        )
        self.users[user_id] = user
        return user

    def _with_counts(self, role: RoleRead) -> RoleRead:
        count = sum(1 for (_, rid), a in self.assignments.items() if rid == role.id and a.is_active)
        return role.model_copy(update={"user_count": count})

    async def list_roles(self, organization_id):
        return [self._with_counts(r) for r in self.roles.values()]

    async def get_role(self, organization_id, role_id):
        role = self.roles.get(role_id)
        return self._with_counts(role) if role else None

    async def get_role_by_key(self, organization_id, role_key):
        for role in self.roles.values():
            if role.role_key == role_key:
                return self._with_counts(role)
        return None

    async def create_role(self, organization_id, data, is_system_role=False):
        role = RoleRead(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            role_key=data.role_key,
            role_name=data.role_name,
            description=data.description,
            inherits_from=data.inherits_from,
            is_active=data.is_active,
            is_system_role=is_system_role,
            created_at=_now(),
        )
        self.roles[role.id] = role
        return role

    async def update_role(self, organization_id, role_id, data):
        role = self.roles.get(role_id)
        if role is None:
            raise ValueError(f"Role {role_id} not found")
        updated = role.model_copy(update=data.model_dump(exclude_none=True))
        self.roles[role_id] = updated
        return updated

    async def delete_role(self, organization_id, role_id):
        self.assignments = {k: v for k, v in self.assignments.items() if k[1] != role_id}
        return self.roles.pop(role_id, None) is not None

    async def set_role_permissions(self, organization_id, role_id, permission_keys):
        applied = sorted(k for k in set(permission_keys) if k in self.permissions)
        self.roles[role_id] = self.roles[role_id].model_copy(update={"permission_keys": applied})
        return applied

    async def get_active_roles_for_user(self, organization_id, user_id, now=None):
        now = now or _now()
        roles = []
        for (uid, role_id), assignment in self.assignments.items():
            if uid != user_id or not assignment.is_active:
                continue
            if assignment.expires_at is not None and assignment.expires_at <= now:
                continue
            role = self.roles.get(role_id)
            if role is not None and role.is_active:
                roles.append(role)
        return roles

    async def list_permissions(self, organization_id):
        return sorted(self.permissions.values(), key=lambda p: (p.permission_category, p.permission_key))

    async def create_permissions(self, organization_id, permissions):
        inserted = 0
        for perm in permissions:
            if perm.permission_key in self.permissions:
                continue
            self.permissions[perm.permission_key] = PermissionRead(
                id=str(uuid.uuid4()), organization_id=organization_id, **perm.model_dump()
            )
            inserted += 1
        return inserted

    def _user_with_roles(self, user: RBACUserRead) -> RBACUserRead:
        keys = sorted(
            self.roles[rid].role_key
            for (uid, rid), a in self.assignments.items()
            if uid == user.id and a.is_active and rid in self.roles
        )
        return user.model_copy(update={"role_keys": keys})

    async def list_users(self, organization_id):
        return [self._user_with_roles(u) for u in self.users.values()]

    async def get_user(self, organization_id, user_id):
        user = self.users.get(user_id)
        return self._user_with_roles(user) if user else None

    async def update_user(self, organization_id, user_id, data):
        user = self.users.get(user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        updated = user.model_copy(update=data.model_dump(exclude_none=True))
        self.users[user_id] = updated
        return self._user_with_roles(updated)

    async def assign_role(self, organization_id, user_id, role_id, assigned_by=None, expires_at=None):
        assignment = UserRoleRead(
            id=str(uuid.uuid4()),
            user_id=user_id,
            role_id=role_id,
            assigned_by=assigned_by,
            expires_at=expires_at,
            assigned_at=_now(),
        )
        self.assignments[(user_id, role_id)] = assignment
        return assignment

    async def revoke_role(self, organization_id, user_id, role_id):
        return self.assignments.pop((user_id, role_id), None) is not None

    async def get_settings(self, organization_id):
        return self.settings

    async def update_settings(self, organization_id, data):
        self.settings = self.settings.model_copy(update=data.model_dump(exclude_none=True))
        return self.settings

    async def add_audit_entry(self, organization_id, entry):
        self.audit.append(entry.model_copy(update={"created_at": _now()}))

    async def list_audit_log(self, organization_id, limit=100):
        return list(reversed(self.audit))[:limit]


# ── MEDDPICC configuration ──────────────────────────────────────────────────


class InMemoryConfigRepository:
    """MEDDPICCConfigurationRepository double with a single active version."""

    def __init__(self) -> None:
        self.active: StoredConfiguration | None = None
        self.version = 0
        self.entries: list[ConfigurationHistoryEntry] = []

    async def get_active(self, organization_id):
        return self.active

    async def save(self, organization_id, config, name, description=None, user_id=None, change_reason=None):
        previous = self.version or None
        self.version += 1
        self.active = StoredConfiguration(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            name=name,
            description=description,
            version=self.version,
            is_active=True,
            configuration=config,
            created_by=user_id,
            created_at=_now(),
        )
        self.entries.insert(0, ConfigurationHistoryEntry(
            id=str(uuid.uuid4()),
            configuration_id=self.active.id,
            change_type="updated" if previous else "created",
            previous_version=previous,
            new_version=self.version,
            change_reason=change_reason,
            changed_by=user_id,
        ))
        return self.active

    async def deactivate(self, organization_id, user_id=None):
        had_active = self.active is not None
        self.active = None
        return had_active

    async def history(self, organization_id, limit=50):
        return self.entries[:limit]


# ── API helpers ─────────────────────────────────────────────────────────────


class StaticPermissions:
    """rbac_service stand-in for API tests: grants everything unless told otherwise."""

    def __init__(self, granted: bool = True, denied: set[str] | None = None) -> None:
        self.granted = granted
        self.denied = denied or set()
        self.checked: list[str] = []

    async def has_permission(self, organization_id: str, user_id: str, permission_key: str) -> bool:
        self.checked.append(permission_key)
        return self.granted and permission_key not in self.denied


# ── Fixtures ────────────────────────────────────────────────────────────────


def make_user(role: str = "admin", user_id: str = USER_ID) -> MagicMock:
    user = MagicMock()
    user.id = user_id
    user.email = "owner@acme.example"
    user.name = "Olive Owner"
    user.role = role
    user.organization_id = ORG_ID
    user.is_active = True
    return user


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def crm_repo() -> InMemoryCRMRepository:
    return InMemoryCRMRepository()


@pytest.fixture
def rbac_repo() -> InMemoryRBACRepository:
    return InMemoryRBACRepository()


@pytest.fixture
def org_context():
    """Set the organization context for code that reads it implicitly."""
    token = set_organization_context(ORG_CONTEXT)
    yield ORG_CONTEXT
    reset_organization_context(token)


@pytest.fixture
def make_app():
    """Factory building a FastAPI app with routers mounted and auth overridden.

    Usage: ``make_app(router, user=make_user("rep"), crm_service=svc)``;
    keyword arguments other than ``user`` become ``app.state`` attributes.
    """

    def _factory(*routers: Any, user: Any = None, **state: Any) -> FastAPI:
        app = FastAPI()
        register_exception_handlers(app)
        for router in routers:
            app.include_router(router)

        current = user if user is not None else make_user()

        async def _mock_get_current_user():
            return current

        async def _mock_get_organization():
            return ORG_CONTEXT

        app.dependency_overrides[get_current_user] = _mock_get_current_user
        app.dependency_overrides[get_organization] = _mock_get_organization
        state.setdefault("rbac_service", StaticPermissions())
        for name, value in state.items():
            setattr(app.state, name, value)
        return app

    return _factory


@pytest.fixture
def user_factory():
    return make_user


@pytest.fixture
def config_repo() -> InMemoryConfigRepository:
    return InMemoryConfigRepository()


@pytest.fixture
def config_service(config_repo) -> MEDDPICCConfigurationService:
    return MEDDPICCConfigurationService(config_repo)


@pytest.fixture
def static_permissions():
    """The StaticPermissions class, for tests that deny specific keys."""
    return StaticPermissions
