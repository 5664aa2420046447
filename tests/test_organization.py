"""Organization isolation tests: context propagation, Redis key prefixing,
and organization resolution in OrganizationAuthMiddleware.

Database lookups are replaced with in-memory doubles.
"""

from __future__ import annotations

import asyncio
import json

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from httpx import ASGITransport, AsyncClient

from src.fulqrun.api.middleware import organization as middleware_module
from src.fulqrun.api.middleware.organization import OrganizationAuthMiddleware, lookup_cache_key
from src.fulqrun.core.organization import (
    OrganizationContext,
    get_current_organization,
    reset_organization_context,
    schema_name_for,
    set_organization_context,
)
from src.fulqrun.core.redis import OrganizationRedis
from src.fulqrun.core.security import create_access_token

ALPHA = OrganizationContext(
    organization_id="11111111-1111-1111-1111-111111111111",
    organization_slug="acme-pharma",
    schema_name="org_acme_pharma",
)
BETA = OrganizationContext(
    organization_id="22222222-2222-2222-2222-222222222222",
    organization_slug="globex",
    schema_name="org_globex",
)
ACTIVE = {ALPHA.organization_id: ALPHA, BETA.organization_id: BETA}


# ── Context ───────────────────────────────────────────────────────────────────


def test_no_context_raises():
    with pytest.raises(RuntimeError, match="not organization-scoped"):
        get_current_organization()


def test_set_and_reset_context():
    outer = set_organization_context(ALPHA)
    try:
        inner = set_organization_context(BETA)
        assert get_current_organization() == BETA
        reset_organization_context(inner)
        assert get_current_organization() == ALPHA
    finally:
        reset_organization_context(outer)


async def _read_organization() -> OrganizationContext:
    return get_current_organization()


async def test_context_propagates_to_tasks():
    """Tasks started inside a request see the request's organization."""
    token = set_organization_context(ALPHA)
    try:
        seen = await asyncio.create_task(_read_organization())
        in_thread = await asyncio.to_thread(get_current_organization)
    finally:
        reset_organization_context(token)
    assert seen == ALPHA
    assert in_thread == ALPHA


def test_schema_name_for_slug():
    assert schema_name_for("acme-pharma") == "org_acme_pharma"


# ── Redis ─────────────────────────────────────────────────────────────────────


async def test_redis_keys_are_prefixed_per_organization(fake_redis):
    alpha = OrganizationRedis(fake_redis, ALPHA.organization_id)
    beta = OrganizationRedis(fake_redis, BETA.organization_id)

    await alpha.set("kpi:trx", "42", ex=60)
    await alpha.hset("sync:state", "online", "1")

    assert fake_redis.strings == {f"o:{ALPHA.organization_id}:kpi:trx": "42"}
    assert await beta.get("kpi:trx") is None
    assert await beta.hgetall("sync:state") == {}
    assert await alpha.hget("sync:state", "online") == "1"


async def test_redis_prefix_follows_current_context(org_context, fake_redis):
    await OrganizationRedis(fake_redis).publish("sync:events", "{}")
    assert fake_redis.published == [(f"o:{org_context.organization_id}:sync:events", "{}")]


async def test_nx_set_reports_blocked_write(fake_redis):
    redis = OrganizationRedis(fake_redis, ALPHA.organization_id)
    assert await redis.set("sync:lock", "1", ex=300, nx=True) is True
    assert await redis.set("sync:lock", "1", ex=300, nx=True) is False


# ── Middleware ────────────────────────────────────────────────────────────────


@pytest.fixture
def known_organizations(monkeypatch):
    """Resolve organization ids from ACTIVE instead of the shared schema."""
    lookups: list[str] = []

    async def resolve(self, organization_id):
        lookups.append(organization_id)
        return ACTIVE.get(organization_id)

    monkeypatch.setattr(OrganizationAuthMiddleware, "_resolve_organization_by_id", resolve)
    return lookups


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(OrganizationAuthMiddleware)

    @app.get("/api/v1/whoami")
    async def whoami(request: Request):
        org = get_current_organization()
        return {
            "organization_id": org.organization_id,
            "schema_name": org.schema_name,
            "state": request.state.organization_id,
        }

    @app.get("/health")
    async def health():
        try:
            get_current_organization()
        except RuntimeError:
            return {"scoped": False}
        return {"scoped": True}

    return app


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=_app()), base_url="http://test") as ac:
        yield ac


async def test_header_resolution(client, known_organizations):
    resp = await client.get("/api/v1/whoami", headers={"X-Organization-ID": BETA.organization_id})
    assert resp.status_code == 200
    assert resp.json() == {
        "organization_id": BETA.organization_id,
        "schema_name": "org_globex",
        "state": BETA.organization_id,
    }


async def test_missing_or_unknown_organization_is_400(client, known_organizations):
    resp = await client.get("/api/v1/whoami")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Missing organization context"

    resp = await client.get("/api/v1/whoami", headers={"X-Organization-ID": "nope"})
    assert resp.status_code == 400


async def test_jwt_claims_win_over_header(client, known_organizations):
    token = create_access_token({
        "sub": "user-1",
        "organization_id": ALPHA.organization_id,
        "organization_slug": ALPHA.organization_slug,
    })
    resp = await client.get(
        "/api/v1/whoami",
        headers={"Authorization": f"Bearer {token}", "X-Organization-ID": BETA.organization_id},
    )
    assert resp.json()["organization_id"] == ALPHA.organization_id
    assert resp.json()["schema_name"] == "org_acme_pharma"


async def test_token_of_deactivated_organization_is_ignored(client, known_organizations):
    token = create_access_token({
        "sub": "user-1",
        "organization_id": "33333333-0000-0000-0000-000000000000",
        "organization_slug": "defunct",
    })
    resp = await client.get("/api/v1/whoami", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 400


async def test_api_key_resolution(client, known_organizations, monkeypatch):
    async def validate(api_key):
        if api_key != "key-1":
            return None
        return {
            "organization_id": BETA.organization_id,
            "organization_slug": BETA.organization_slug,
            "user_id": "user-9",
            "user_email": "ops@globex.example",
        }

    monkeypatch.setattr(middleware_module, "validate_api_key", validate)
    resp = await client.get("/api/v1/whoami", headers={"X-API-Key": "key-1"})
    assert resp.json()["organization_id"] == BETA.organization_id
    assert known_organizations == []


async def test_skipped_paths_have_no_organization(client, known_organizations):
    resp = await client.get("/health")
    assert resp.json() == {"scoped": False}
    assert known_organizations == []


async def test_lookup_served_from_cache(fake_redis):
    await fake_redis.set(
        lookup_cache_key(ALPHA.organization_id),
        json.dumps({
            "organization_id": ALPHA.organization_id,
            "organization_slug": ALPHA.organization_slug,
            "schema_name": ALPHA.schema_name,
        }),
    )
    middleware = OrganizationAuthMiddleware(FastAPI(), redis_client=fake_redis)
    assert await middleware._resolve_organization_by_id(ALPHA.organization_id) == ALPHA
