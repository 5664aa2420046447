"""SharePoint connector -- document libraries through Microsoft Graph drive APIs."""

from __future__ import annotations

import time
from typing import Any
from urllib.parse import quote

import structlog

from src.fulqrun.core.errors import IntegrationError
from src.fulqrun.integrations.base import BaseIntegration
from src.fulqrun.integrations.microsoft_graph import GRAPH_API_URL
from src.fulqrun.integrations.schemas import SyncConfiguration, SyncResult

logger = structlog.get_logger(__name__)

OPPORTUNITIES_FOLDER = "Opportunities"
PEAK_FOLDERS = {
    "prospecting": "Prospecting",
    "engaging": "Engaging",
    "advancing": "Advancing",
    "key_decision": "Key Decision",
}


def _drive_path(path: str) -> str:
    return quote(path.strip("/"))


def drive_item(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item.get("id"),
        "name": item.get("name"),
        "url": item.get("webUrl"),
        "size": item.get("size"),
        "modified": item.get("lastModifiedDateTime"),
        "is_folder": "folder" in item,
        "download_url": item.get("@microsoft.graph.downloadUrl"),
    }


class SharePointIntegration(BaseIntegration):
    """SharePoint sites and drives. ``config["site_id"]`` is the default site."""

    integration_type = "sharepoint"
    base_url = GRAPH_API_URL

    def _site(self, site_id: str | None) -> str:
        site = site_id or self.config.get("site_id")
        if not site:
            raise ValueError("A SharePoint site id is required")
        return site

    def _require_token(self) -> None:
        if not self.credentials.get("access_token"):
            raise IntegrationError("SharePoint not configured or authenticated")

    async def get_sites(self, search: str = "*") -> list[dict[str, Any]]:
        self._require_token()
        response = await self._request("GET", "/sites", "sites", params={"search": search})
        return [
            {
                "id": s.get("id"),
                "name": s.get("displayName") or s.get("name"),
                "url": s.get("webUrl"),
                "description": s.get("description"),
            }
            for s in response.json().get("value", [])
        ]

    async def get_drive_items(self, site_id: str | None = None, folder_path: str = "") -> list[dict[str, Any]]:
        self._require_token()
        site = self._site(site_id)
        if folder_path.strip("/"):
            path = f"/sites/{site}/drive/root:/{_drive_path(folder_path)}:/children"
        else:
            path = f"/sites/{site}/drive/root/children"
        response = await self._request("GET", path, "drive_items")
        return [drive_item(i) for i in response.json().get("value", [])]

    async def get_folders(self, site_id: str | None = None, folder_path: str = "") -> list[dict[str, Any]]:
        return [i for i in await self.get_drive_items(site_id, folder_path) if i["is_folder"]]

    async def upload_document(
        self,
        content: bytes,
        file_name: str,
        folder_path: str = "",
        site_id: str | None = None,
        content_type: str = "application/octet-stream",
    ) -> dict[str, Any]:
        """Simple upload (files up to 4 MB); replaces an existing file of the same name."""
        self._require_token()
        site = self._site(site_id)
        target = _drive_path(f"{folder_path.strip('/')}/{file_name}" if folder_path.strip("/") else file_name)
        response = await self._request(
            "PUT",
            f"/sites/{site}/drive/root:/{target}:/content",
            "upload",
            content=content,
            headers={"Content-Type": content_type},
        )
        item = drive_item(response.json())
        logger.info(
            "integration.sharepoint_uploaded",
            organization_id=self.organization_id,
            file_name=file_name,
            size=len(content),
        )
        return item

    async def delete_document(self, item_id: str, site_id: str | None = None) -> bool:
        self._require_token()
        await self._request("DELETE", f"/sites/{self._site(site_id)}/drive/items/{item_id}", "delete")
        return True

    async def create_folder(
        self, folder_name: str, parent_path: str = "", site_id: str | None = None
    ) -> dict[str, Any]:
        """Create ``folder_name`` under ``parent_path``; an existing folder is reused."""
        self._require_token()
        site = self._site(site_id)
        if parent_path.strip("/"):
            path = f"/sites/{site}/drive/root:/{_drive_path(parent_path)}:/children"
        else:
            path = f"/sites/{site}/drive/root/children"
        body = {"name": folder_name, "folder": {}, "@microsoft.graph.conflictBehavior": "replace"}
        response = await self._request("POST", path, "create_folder", json=body)
        return drive_item(response.json())

    async def create_peak_folder_structure(
        self, opportunity_id: str, opportunity_name: str | None = None, site_id: str | None = None
    ) -> dict[str, str]:
        """Create one folder per PEAK stage for an opportunity. Returns stage -> folder id."""
        root_name = f"{opportunity_name} ({opportunity_id})" if opportunity_name else opportunity_id
        await self.create_folder(OPPORTUNITIES_FOLDER, site_id=site_id)
        root_path = f"{OPPORTUNITIES_FOLDER}/{root_name}"
        await self.create_folder(root_name, OPPORTUNITIES_FOLDER, site_id=site_id)
        folders = {}
        for stage, label in PEAK_FOLDERS.items():
            folder = await self.create_folder(label, root_path, site_id=site_id)
            folders[stage] = folder["id"]
        logger.info(
            "integration.sharepoint_peak_folders",
            organization_id=self.organization_id,
            opportunity_id=opportunity_id,
        )
        return folders

    async def get_peak_documents(
        self, opportunity_id: str, stage: str, opportunity_name: str | None = None, site_id: str | None = None
    ) -> list[dict[str, Any]]:
        if stage not in PEAK_FOLDERS:
            raise ValueError(f"Unknown PEAK stage: {stage}")
        root_name = f"{opportunity_name} ({opportunity_id})" if opportunity_name else opportunity_id
        path = f"{OPPORTUNITIES_FOLDER}/{root_name}/{PEAK_FOLDERS[stage]}"
        return [i for i in await self.get_drive_items(site_id, path) if not i["is_folder"]]

    # ── BaseIntegration ─────────────────────────────────────────────────

    async def authenticate(self) -> bool:
        return await self.test_connection()

    async def test_connection(self) -> bool:
        self._require_token()
        response = await self._request("GET", f"/sites/{self._site(None)}", "site")
        return bool(response.json().get("id"))

    async def sync_data(self, entity_type: str, sync_config: SyncConfiguration) -> SyncResult:
        if entity_type != "documents":
            raise self._unsupported(entity_type)
        started = time.perf_counter()
        items = await self.get_drive_items(None, self.config.get("folder_path", ""))
        return SyncResult(success=True, records_processed=len(items), sync_duration=time.perf_counter() - started)

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        if entity_type != "document":
            raise self._unsupported(entity_type)
        self._require_token()
        response = await self._request("GET", f"/sites/{self._site(None)}/drive/items/{entity_id}", "drive_item")
        return drive_item(response.json())

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> str:
        if entity_type == "folder":
            return (await self.create_folder(data["name"], data.get("parent_path", "")))["id"]
        raise self._unsupported(entity_type)

    async def update_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> bool:
        if entity_type != "document":
            raise self._unsupported(entity_type)
        self._require_token()
        await self._request(
            "PATCH", f"/sites/{self._site(None)}/drive/items/{entity_id}", "update_item", json={"name": data["name"]}
        )
        return True

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        if entity_type not in ("document", "folder"):
            raise self._unsupported(entity_type)
        return await self.delete_document(entity_id)
