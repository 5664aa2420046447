"""Generated export files held in the organization's Redis namespace.

Files are stored base64-encoded under ``export:file:{id}`` and expire
with the download link.
"""

from __future__ import annotations

import base64
import json
from typing import Any

from src.fulqrun.core.redis import OrganizationRedis
from src.fulqrun.export.schemas import StoredFile


def file_key(export_id: str) -> str:
    return f"export:file:{export_id}"


class ExportFileStore:
    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    async def save(self, organization_id: str, export_id: str, file: StoredFile, ttl_seconds: int) -> None:
        payload = {
            "file_name": file.file_name,
            "media_type": file.media_type,
            "content": base64.b64encode(file.content).decode("ascii"),
            "metadata": file.metadata,
        }
        await OrganizationRedis(self._redis, organization_id).set(
            file_key(export_id), json.dumps(payload, default=str), ex=ttl_seconds
        )

    async def load(self, organization_id: str, export_id: str) -> StoredFile | None:
        raw = await OrganizationRedis(self._redis, organization_id).get(file_key(export_id))
        if raw is None:
            return None
        payload = json.loads(raw)
        return StoredFile(
            file_name=payload["file_name"],
            media_type=payload["media_type"],
            content=base64.b64decode(payload["content"]),
            metadata=payload.get("metadata") or {},
        )
