"""Dashboard export endpoints: generate a file, then download it by id."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from fastapi.responses import Response

from src.fulqrun.api.deps import get_organization, get_service, require_permission
from src.fulqrun.core.errors import NotFoundError
from src.fulqrun.core.organization import OrganizationContext
from src.fulqrun.export.schemas import ExportConfiguration, ExportResult
from src.fulqrun.models.organization import User

router = APIRouter(prefix="/api/v1/exports", tags=["exports"])

_export_engine = get_service("export_engine", "Export engine")


@router.post("", response_model=ExportResult, status_code=status.HTTP_201_CREATED)
async def create_export(
    body: ExportConfiguration,
    _: User = Depends(require_permission("export.dashboards.create")),
    org: OrganizationContext = Depends(get_organization),
    engine: Any = Depends(_export_engine),
):
    """Generate a dashboard export.

    Invalid configurations and unsupported formats come back as a result
    with ``status="failed"`` and the reason in ``error``.
    """
    return await engine.export_dashboard(org.organization_id, body)


@router.get("/{export_id}/download")
async def download_export(
    export_id: str,
    _: User = Depends(require_permission("export.dashboards.view")),
    org: OrganizationContext = Depends(get_organization),
    engine: Any = Depends(_export_engine),
):
    stored = await engine.get_file(org.organization_id, export_id)
    if stored is None:
        raise NotFoundError("Export not found or expired", {"export_id": export_id})
    return Response(
        content=stored.content,
        media_type=stored.media_type,
        headers={"Content-Disposition": f'attachment; filename="{stored.file_name}"'},
    )
