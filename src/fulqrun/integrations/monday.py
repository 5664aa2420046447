"""monday.com connector -- GraphQL API v2 for boards, items and webhooks.

Both HTTP failures and GraphQL ``errors`` in a 200 response raise
IntegrationError.
"""

from __future__ import annotations

import json
import time
from typing import Any

import structlog

from src.fulqrun.core.errors import IntegrationError
from src.fulqrun.integrations.base import BaseIntegration, batch_process, transform_data
from src.fulqrun.integrations.schemas import MondayWebhookEvent, SyncConfiguration, SyncOperation, SyncResult

logger = structlog.get_logger(__name__)

MONDAY_API_URL = "https://api.monday.com/v2"
MONDAY_API_VERSION = "2024-04"

WEBHOOK_EVENTS = frozenset({
    "create_item",
    "change_column_value",
    "change_status_column_value",
    "create_update",
    "item_deleted",
})

_COLUMN_VALUES = "column_values { id type text value }"

QUERIES = {
    "boards": f"""
        query GetBoards($ids: [ID!], $limit: Int) {{
          boards(ids: $ids, limit: $limit) {{
            id name description state board_kind workspace_id items_count
            columns {{ id title type settings_str description }}
          }}
        }}""",
    "items": f"""
        query GetItems($board_id: ID!, $limit: Int, $page: Int) {{
          boards(ids: [$board_id]) {{
            items_page(limit: $limit, query_params: {{page: $page}}) {{
              cursor
              items {{ id name state created_at updated_at group {{ id title }} {_COLUMN_VALUES} }}
            }}
          }}
        }}""",
    "item": f"""
        query GetItem($item_id: ID!) {{
          items(ids: [$item_id]) {{
            id name state created_at updated_at
            board {{ id name }} group {{ id title }} {_COLUMN_VALUES}
          }}
        }}""",
    "workspaces": "query GetWorkspaces { workspaces { id name kind description } }",
    "me": "query GetMe { me { id name email photo_thumb is_admin is_guest } }",
    "account": "query GetAccount { account { id name slug plan { max_users period tier version } } }",
}

MUTATIONS = {
    "create_item": f"""
        mutation CreateItem($board_id: ID!, $item_name: String!, $group_id: String, $column_values: JSON) {{
          create_item(board_id: $board_id, item_name: $item_name, group_id: $group_id,
                      column_values: $column_values) {{
            id name created_at {_COLUMN_VALUES}
          }}
        }}""",
    "update_item": f"""
        mutation UpdateItem($item_id: ID!, $board_id: ID!, $column_values: JSON!) {{
          change_multiple_column_values(item_id: $item_id, board_id: $board_id,
                                        column_values: $column_values) {{
            id name updated_at {_COLUMN_VALUES}
          }}
        }}""",
    "change_column_value": """
        mutation ChangeColumnValue($board_id: ID!, $item_id: ID!, $column_id: String!, $value: JSON!) {
          change_column_value(board_id: $board_id, item_id: $item_id, column_id: $column_id, value: $value) {
            id name
          }
        }""",
    "delete_item": "mutation DeleteItem($item_id: ID!) { delete_item(item_id: $item_id) { id } }",
    "archive_item": "mutation ArchiveItem($item_id: ID!) { archive_item(item_id: $item_id) { id } }",
    "create_board": """
        mutation CreateBoard($board_name: String!, $board_kind: BoardKind!, $workspace_id: ID, $description: String) {
          create_board(board_name: $board_name, board_kind: $board_kind, workspace_id: $workspace_id,
                       description: $description) {
            id name description state
          }
        }""",
    "create_webhook": """
        mutation CreateWebhook($board_id: ID!, $url: String!, $event: WebhookEventType!, $config: JSON) {
          create_webhook(board_id: $board_id, url: $url, event: $event, config: $config) { id board_id }
        }""",
    "delete_webhook": "mutation DeleteWebhook($id: ID!) { delete_webhook(id: $id) { id } }",
}


def format_column_values(values: dict[str, Any]) -> dict[str, Any]:
    """Drop empty values and JSON-encode structured ones."""
    formatted: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        formatted[key] = json.dumps(value) if isinstance(value, (dict, list)) else value
    return formatted


def parse_column_value(column_value: dict[str, Any]) -> Any:
    raw = column_value.get("value")
    if not raw:
        return column_value.get("text")
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def column_text(item: dict[str, Any], column_id: str) -> str | None:
    for column in item.get("column_values") or []:
        if column.get("id") == column_id:
            return column.get("text") or column.get("value")
    return None


def item_record(item: dict[str, Any]) -> dict[str, Any]:
    """Flatten an item so field mappings can address ``columns.<id>``."""
    return {
        "id": item.get("id"),
        "name": item.get("name"),
        "state": item.get("state"),
        "group": item.get("group") or {},
        "created_at": item.get("created_at"),
        "updated_at": item.get("updated_at"),
        "columns": {c["id"]: parse_column_value(c) for c in item.get("column_values") or []},
    }


class MondayIntegration(BaseIntegration):
    """monday.com client. The API token lives in ``credentials["api_token"]``."""

    integration_type = "monday"
    base_url = MONDAY_API_URL

    def auth_headers(self) -> dict[str, str]:
        return {
            "Authorization": self.credentials.get("api_token", ""),
            "API-Version": self.config.get("api_version", MONDAY_API_VERSION),
        }

    async def execute(
        self, query: str, variables: dict[str, Any] | None = None, operation: str = "graphql"
    ) -> dict[str, Any]:
        body = {"query": query, "variables": {k: v for k, v in (variables or {}).items() if v is not None}}
        response = await self._request("POST", self.config.get("endpoint", MONDAY_API_URL), operation, json=body)
        result = response.json()
        if result.get("errors"):
            raise IntegrationError("monday.com GraphQL errors", {"errors": result["errors"]})
        return result.get("data") or {}

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_boards(self, ids: list[str] | None = None, limit: int = 50) -> list[dict[str, Any]]:
        data = await self.execute(QUERIES["boards"], {"ids": ids, "limit": limit}, "boards")
        return data.get("boards") or []

    async def get_board(self, board_id: str) -> dict[str, Any] | None:
        boards = await self.get_boards([board_id])
        return boards[0] if boards else None

    async def get_items(self, board_id: str, limit: int = 50, page: int = 1) -> list[dict[str, Any]]:
        data = await self.execute(QUERIES["items"], {"board_id": board_id, "limit": limit, "page": page}, "items")
        boards = data.get("boards") or []
        if not boards:
            return []
        return (boards[0].get("items_page") or {}).get("items") or []

    async def get_item(self, item_id: str) -> dict[str, Any] | None:
        data = await self.execute(QUERIES["item"], {"item_id": item_id}, "item")
        items = data.get("items") or []
        return items[0] if items else None

    async def get_workspaces(self) -> list[dict[str, Any]]:
        return (await self.execute(QUERIES["workspaces"], operation="workspaces")).get("workspaces") or []

    async def get_me(self) -> dict[str, Any] | None:
        return (await self.execute(QUERIES["me"], operation="me")).get("me")

    async def get_account(self) -> dict[str, Any] | None:
        return (await self.execute(QUERIES["account"], operation="account")).get("account")

    async def search_items(self, board_id: str, term: str) -> list[dict[str, Any]]:
        needle = term.lower()
        return [i for i in await self.get_items(board_id, limit=100) if needle in (i.get("name") or "").lower()]

    # ── Mutations ───────────────────────────────────────────────────────

    async def create_item(
        self,
        board_id: str,
        item_name: str,
        group_id: str | None = None,
        column_values: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        variables = {
            "board_id": board_id,
            "item_name": item_name,
            "group_id": group_id,
            "column_values": json.dumps(column_values) if column_values else None,
        }
        return (await self.execute(MUTATIONS["create_item"], variables, "create_item"))["create_item"]

    async def update_item(self, item_id: str, board_id: str, column_values: dict[str, Any]) -> dict[str, Any]:
        variables = {"item_id": item_id, "board_id": board_id, "column_values": json.dumps(column_values)}
        data = await self.execute(MUTATIONS["update_item"], variables, "update_item")
        return data["change_multiple_column_values"]

    async def change_column_value(self, board_id: str, item_id: str, column_id: str, value: Any) -> dict[str, Any]:
        variables = {
            "board_id": board_id,
            "item_id": item_id,
            "column_id": column_id,
            "value": value if isinstance(value, str) else json.dumps(value),
        }
        data = await self.execute(MUTATIONS["change_column_value"], variables, "change_column_value")
        return data["change_column_value"]

    async def delete_item(self, item_id: str) -> dict[str, Any]:
        return (await self.execute(MUTATIONS["delete_item"], {"item_id": item_id}, "delete_item"))["delete_item"]

    async def archive_item(self, item_id: str) -> dict[str, Any]:
        return (await self.execute(MUTATIONS["archive_item"], {"item_id": item_id}, "archive_item"))["archive_item"]

    async def create_board(
        self,
        board_name: str,
        board_kind: str = "public",
        workspace_id: str | None = None,
        description: str | None = None,
    ) -> dict[str, Any]:
        if board_kind not in ("public", "private", "share"):
            raise ValueError(f"Invalid board kind: {board_kind}")
        variables = {
            "board_name": board_name,
            "board_kind": board_kind,
            "workspace_id": workspace_id,
            "description": description,
        }
        return (await self.execute(MUTATIONS["create_board"], variables, "create_board"))["create_board"]

    async def create_webhook(
        self, board_id: str, url: str, event: str, config: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if event not in WEBHOOK_EVENTS:
            raise ValueError(f"Unsupported monday.com webhook event: {event}")
        variables = {
            "board_id": board_id,
            "url": url,
            "event": event,
            "config": json.dumps(config) if config else None,
        }
        return (await self.execute(MUTATIONS["create_webhook"], variables, "create_webhook"))["create_webhook"]

    async def delete_webhook(self, webhook_id: str) -> dict[str, Any]:
        return (await self.execute(MUTATIONS["delete_webhook"], {"id": webhook_id}, "delete_webhook"))[
            "delete_webhook"
        ]

    # ── Webhook events ──────────────────────────────────────────────────

    async def handle_event(self, event: MondayWebhookEvent) -> dict[str, Any]:
        logger.info(
            "integration.monday_event",
            organization_id=self.organization_id,
            event_type=event.type,
            board_id=event.board_id,
            item_id=event.item_id,
        )
        await self.log_sync_activity(
            "webhook",
            SyncOperation.SYNC_COMPLETE,
            event.model_dump(mode="json", exclude_none=True),
        )
        await self.update_config({"last_webhook_received": event.trigger_time})
        return {"received": True, "event": event.type, "item_id": event.item_id}

    # ── BaseIntegration ─────────────────────────────────────────────────

    async def authenticate(self) -> bool:
        return await self.test_connection()

    async def test_connection(self) -> bool:
        me = await self.get_me()
        if not me:
            raise IntegrationError("Unable to retrieve monday.com user information")
        return True

    async def sync_data(self, entity_type: str, sync_config: SyncConfiguration) -> SyncResult:
        """Read items from every board in ``config["board_ids"]`` and map them."""
        if entity_type != "items":
            raise self._unsupported(entity_type)
        started = time.perf_counter()
        processed = failed = 0
        records: list[dict[str, Any]] = []

        async def _map(batch: list[dict[str, Any]]) -> None:
            nonlocal processed, failed
            for item in batch:
                processed += 1
                try:
                    records.append(transform_data(item_record(item), sync_config.field_mappings))
                except ValueError:
                    failed += 1

        for board_id in self.config.get("board_ids", []):
            items = await self.get_items(str(board_id), limit=sync_config.batch_size)
            await batch_process(items, sync_config.batch_size, _map)

        return SyncResult(
            success=failed == 0,
            records_processed=processed,
            records_failed=failed,
            sync_duration=time.perf_counter() - started,
        )

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        if entity_type == "item":
            return await self.get_item(entity_id)
        if entity_type == "board":
            return await self.get_board(entity_id)
        raise self._unsupported(entity_type)

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> str:
        if entity_type != "item":
            raise self._unsupported(entity_type)
        item = await self.create_item(
            str(data["board_id"]),
            data["name"],
            data.get("group_id"),
            format_column_values(data.get("column_values") or {}),
        )
        return str(item["id"])

    async def update_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> bool:
        if entity_type != "item":
            raise self._unsupported(entity_type)
        await self.update_item(entity_id, str(data["board_id"]), format_column_values(data.get("column_values") or {}))
        return True

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        if entity_type != "item":
            raise self._unsupported(entity_type)
        await self.delete_item(entity_id)
        return True
