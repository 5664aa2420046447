"""Contact endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from src.fulqrun.api.deps import get_organization, get_service, require_permission
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.crm.schemas import ContactCreate, ContactRead, ContactUpdate
from src.fulqrun.models.organization import User

router = APIRouter(prefix="/api/v1/contacts", tags=["contacts"])

_crm = get_service("crm_service", "CRM")


@router.get("", response_model=list[ContactRead])
async def list_contacts(
    search: str | None = Query(None, description="Matches name, email or company"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: User = Depends(require_permission("crm.contacts.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.list_contacts(org.organization_id, search=search, limit=limit, offset=offset)


@router.post("", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
async def create_contact(
    body: ContactCreate,
    user: User = Depends(require_permission("crm.contacts.create")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.create_contact(org.organization_id, body, created_by=str(user.id))


@router.get("/{contact_id}", response_model=ContactRead)
async def get_contact(
    contact_id: str,
    _: User = Depends(require_permission("crm.contacts.view")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.get_contact(org.organization_id, contact_id)


@router.patch("/{contact_id}", response_model=ContactRead)
async def update_contact(
    contact_id: str,
    body: ContactUpdate,
    _: User = Depends(require_permission("crm.contacts.edit")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    return await crm.update_contact(org.organization_id, contact_id, body)


@router.delete("/{contact_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_contact(
    contact_id: str,
    _: User = Depends(require_permission("crm.contacts.delete")),
    org: OrganizationContext = Depends(get_organization),
    crm: Any = Depends(_crm),
):
    await crm.delete_contact(org.organization_id, contact_id)
