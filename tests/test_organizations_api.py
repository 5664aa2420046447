"""Organization provisioning endpoint tests with provisioning stubbed out."""

from __future__ import annotations

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from src.fulqrun.api.v1 import organizations as organizations_api
from src.fulqrun.core.errors import ConflictError, register_exception_handlers
from src.fulqrun.core.organization import schema_name_for

ORG_ID = "11111111-1111-1111-1111-111111111111"


class FakeProvisioning:
    """Stands in for the shared-schema provisioning functions."""

    def __init__(self) -> None:
        self.organizations: dict[str, dict] = {}

    async def provision_organization(self, slug: str, name: str) -> dict:
        if slug in self.organizations:
            raise ConflictError(f"Organization with slug '{slug}' already exists", {"slug": slug})
        self.organizations[slug] = {
            "id": ORG_ID,
            "slug": slug,
            "name": name,
            "schema_name": schema_name_for(slug),
            "is_active": True,
            "created_at": None,
        }
        return {"organization_id": ORG_ID, "slug": slug, "name": name, "schema_name": schema_name_for(slug)}

    async def list_organizations(self) -> list[dict]:
        return list(self.organizations.values())

    async def get_organization_by_slug(self, slug: str) -> dict | None:
        return self.organizations.get(slug)


@pytest.fixture
def provisioning(monkeypatch) -> FakeProvisioning:
    fake = FakeProvisioning()
    for name in ("provision_organization", "list_organizations", "get_organization_by_slug"):
        monkeypatch.setattr(organizations_api, name, getattr(fake, name))
    return fake


@pytest_asyncio.fixture
async def client(provisioning):
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(organizations_api.router)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def test_provision_organization(client):
    resp = await client.post("/api/v1/organizations", json={"slug": "acme-pharma", "name": "Acme Pharma"})
    assert resp.status_code == 201
    assert resp.json() == {
        "id": ORG_ID,
        "slug": "acme-pharma",
        "name": "Acme Pharma",
        "schema_name": "org_acme_pharma",
        "is_active": True,
        "created_at": None,
    }


async def test_duplicate_slug_is_409(client):
    await client.post("/api/v1/organizations", json={"slug": "acme-pharma", "name": "Acme Pharma"})
    resp = await client.post("/api/v1/organizations", json={"slug": "acme-pharma", "name": "Again"})
    assert resp.status_code == 409
    assert resp.json()["details"] == {"slug": "acme-pharma"}


@pytest.mark.parametrize("slug", ["ab", "Acme", "-acme", "acme_pharma"])
async def test_invalid_slug_is_422(client, provisioning, slug):
    resp = await client.post("/api/v1/organizations", json={"slug": slug, "name": "X"})
    assert resp.status_code == 422
    assert provisioning.organizations == {}


async def test_list_and_get(client):
    await client.post("/api/v1/organizations", json={"slug": "acme-pharma", "name": "Acme Pharma"})
    assert [o["slug"] for o in (await client.get("/api/v1/organizations")).json()] == ["acme-pharma"]
    assert (await client.get("/api/v1/organizations/acme-pharma")).json()["name"] == "Acme Pharma"

    resp = await client.get("/api/v1/organizations/globex")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Organization not found", "details": {"slug": "globex"}}
