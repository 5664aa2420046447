"""Organization provisioning endpoints.

These endpoints skip organization middleware (no X-Organization-ID needed)
since they create and list organizations.
"""

from __future__ import annotations

from fastapi import APIRouter, status

from src.fulqrun.core.errors import NotFoundError
from src.fulqrun.schemas.organization import OrganizationCreate, OrganizationResponse
from src.fulqrun.services.organization_provisioning import (
    get_organization_by_slug,
    list_organizations,
    provision_organization,
)

router = APIRouter(prefix="/api/v1/organizations", tags=["organizations"])


@router.post("", response_model=OrganizationResponse, status_code=status.HTTP_201_CREATED)
async def create_organization(body: OrganizationCreate):
    """Provision a new organization with isolated schema, RLS policies and default roles."""
    result = await provision_organization(slug=body.slug, name=body.name)
    return OrganizationResponse(
        id=result["organization_id"],
        slug=result["slug"],
        name=result["name"],
        schema_name=result["schema_name"],
    )


@router.get("", response_model=list[OrganizationResponse])
async def get_organizations():
    """List all active organizations."""
    return [OrganizationResponse(**o) for o in await list_organizations()]


@router.get("/{slug}", response_model=OrganizationResponse)
async def get_organization(slug: str):
    organization = await get_organization_by_slug(slug)
    if organization is None:
        raise NotFoundError("Organization not found", {"slug": slug})
    return OrganizationResponse(**organization)
