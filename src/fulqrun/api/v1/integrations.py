"""Integration endpoints: stored connections, connection tests, sync runs,
sync logs, and the monday.com and Slack operations.

The monday.com webhook bypasses organization middleware; monday.com cannot
send our headers, so the organization comes from the ``organization_id``
query parameter registered with the webhook.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status

from src.fulqrun.api.deps import get_organization, get_service, require_permission
from src.fulqrun.core.errors import NotFoundError, ValidationFailedError
from src.fulqrun.core.organization import (
    OrganizationContext,
    reset_organization_context,
    set_organization_context,
)
from src.fulqrun.integrations.schemas import (
    ConnectionTestResult,
    IntegrationCreate,
    IntegrationRead,
    SlackNotification,
    SyncLogEntry,
    SyncRequest,
    SyncResult,
)
from src.fulqrun.models.organization import User
from src.fulqrun.services.organization_provisioning import get_organization_by_id

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])

_integrations = get_service("integration_service", "Integrations")


# ── monday.com and Slack ─────────────────────────────────────────────────────
# Declared before /{integration_id} routes so the literal paths win.


@router.get("/monday/boards")
async def monday_boards(
    limit: int = Query(50, ge=1, le=500),
    _: User = Depends(require_permission("integrations.connections.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
) -> list[dict[str, Any]]:
    return await service.monday_boards(org.organization_id, limit=limit)


@router.get("/monday/items")
async def monday_items(
    board_id: str = Query(...),
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    _: User = Depends(require_permission("integrations.connections.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
) -> list[dict[str, Any]]:
    return await service.monday_items(org.organization_id, board_id, limit=limit, page=page)


@router.post("/monday/webhook")
async def monday_webhook(
    request: Request,
    organization_id: str | None = Query(None),
    service: Any = Depends(_integrations),
) -> dict[str, Any]:
    """Receive a monday.com webhook.

    The subscription handshake (a body carrying ``challenge``) is echoed
    back before anything else.
    """
    body = await request.json()
    if isinstance(body, dict) and "challenge" in body:
        return {"challenge": body["challenge"]}

    if not organization_id:
        raise ValidationFailedError("organization_id query parameter is required")
    organization = await get_organization_by_id(organization_id)
    if organization is None:
        raise NotFoundError("Organization not found", {"organization_id": organization_id})

    token = set_organization_context(
        OrganizationContext(
            organization_id=organization["id"],
            organization_slug=organization["slug"],
            schema_name=organization["schema_name"],
        )
    )
    try:
        result = await service.handle_monday_webhook(organization["id"], body)
    finally:
        reset_organization_context(token)
    return {"ok": True, **result}


@router.post("/slack/notify")
async def slack_notify(
    body: SlackNotification,
    _: User = Depends(require_permission("integrations.sync")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
) -> dict[str, Any]:
    return await service.slack_notify(org.organization_id, body)


# ── Connections ──────────────────────────────────────────────────────────────


@router.get("", response_model=list[IntegrationRead])
async def list_integrations(
    _: User = Depends(require_permission("integrations.connections.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
):
    """Connections with credentials redacted."""
    return await service.list_integrations(org.organization_id)


@router.post("", response_model=IntegrationRead, status_code=status.HTTP_201_CREATED)
async def create_integration(
    body: IntegrationCreate,
    user: User = Depends(require_permission("integrations.connections.create")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
):
    return await service.create_integration(org.organization_id, body, created_by=str(user.id))


@router.delete("/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_integration(
    integration_id: str,
    _: User = Depends(require_permission("integrations.connections.delete")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
):
    await service.delete_integration(org.organization_id, integration_id)


@router.post("/{integration_id}/test", response_model=ConnectionTestResult)
async def test_integration(
    integration_id: str,
    _: User = Depends(require_permission("integrations.connections.edit")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
):
    return await service.test_integration(org.organization_id, integration_id)


@router.post("/{integration_id}/sync", response_model=SyncResult)
async def sync_integration(
    integration_id: str,
    body: SyncRequest,
    _: User = Depends(require_permission("integrations.sync")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
):
    """Run one sync. Connector failures come back as ``success=false``."""
    return await service.sync_integration(org.organization_id, integration_id, body)


@router.get("/{integration_id}/logs", response_model=list[SyncLogEntry])
async def integration_logs(
    integration_id: str,
    limit: int = Query(100, ge=1, le=1000),
    _: User = Depends(require_permission("integrations.connections.view")),
    org: OrganizationContext = Depends(get_organization),
    service: Any = Depends(_integrations),
):
    return await service.get_logs(org.organization_id, integration_id, limit=limit)
