"""Slack connector -- Web API calls and Block Kit notifications for CRM events."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any

import structlog

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import IntegrationError
from src.fulqrun.integrations.base import BaseIntegration
from src.fulqrun.integrations.schemas import (
    SlackNotification,
    SlackNotificationKind,
    SyncConfiguration,
    SyncResult,
)

logger = structlog.get_logger(__name__)

SLACK_API_URL = "https://slack.com/api"


# ── Block Kit builders ──────────────────────────────────────────────────


def _or_na(value: Any) -> Any:
    return value if value not in (None, "") else "N/A"


def _money(value: Any) -> str:
    if value is None:
        return "N/A"
    return f"${float(value):,.0f}"


def _when(value: Any) -> str:
    if not value:
        return "N/A"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    return str(value)


def _header(text: str) -> dict[str, Any]:
    return {"type": "header", "text": {"type": "plain_text", "text": text}}


def _fields(*pairs: tuple[str, Any]) -> dict[str, Any]:
    return {
        "type": "section",
        "fields": [{"type": "mrkdwn", "text": f"*{label}:* {value}"} for label, value in pairs],
    }


def _text(text: str) -> dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _button(label: str, url: str) -> dict[str, Any]:
    return {
        "type": "actions",
        "elements": [
            {"type": "button", "text": {"type": "plain_text", "text": label}, "url": url, "style": "primary"}
        ],
    }


def opportunity_update_blocks(opportunity: dict[str, Any], app_url: str) -> tuple[str, list[dict]]:
    name = opportunity.get("name", "")
    blocks = [
        _header(f"Opportunity Update: {name}"),
        _fields(
            ("Stage", _or_na(opportunity.get("stage"))),
            ("Value", _money(opportunity.get("value"))),
            ("Probability", f"{opportunity.get('probability') or 0}%"),
            ("Close Date", _or_na(opportunity.get("close_date"))),
        ),
        _text(
            f"*Company:* {_or_na(opportunity.get('company_name'))}\n"
            f"*Contact:* {_or_na(opportunity.get('contact_name'))}"
        ),
        _button("View Opportunity", f"{app_url}/opportunities/{opportunity.get('id', '')}"),
    ]
    return f"Opportunity Update: {name}", blocks


def lead_assignment_blocks(lead: dict[str, Any], assignee: str, app_url: str) -> tuple[str, list[dict]]:
    name = lead.get("name") or f"{lead.get('first_name', '')} {lead.get('last_name', '')}".strip()
    blocks = [
        _header("New Lead Assignment"),
        _fields(
            ("Lead", name),
            ("Company", _or_na(lead.get("company"))),
            ("Email", _or_na(lead.get("email"))),
            ("Phone", _or_na(lead.get("phone"))),
        ),
        _text(
            f"*Assigned to:* <@{assignee}>\n"
            f"*Source:* {_or_na(lead.get('source'))}\n"
            f"*Score:* {_or_na(lead.get('score'))}"
        ),
        _button("View Lead", f"{app_url}/leads/{lead.get('id', '')}"),
    ]
    return f"New Lead Assignment: {name}", blocks


def meeting_reminder_blocks(meeting: dict[str, Any]) -> tuple[str, list[dict]]:
    title = meeting.get("title", "")
    blocks = [
        _header("Meeting Reminder"),
        _fields(
            ("Meeting", title),
            ("Time", _when(meeting.get("start_time"))),
            ("Duration", f"{meeting.get('duration') or 30} minutes"),
            ("Type", meeting.get("type") or "Meeting"),
        ),
        _text(
            f"*Description:* {meeting.get('description') or 'No description'}\n"
            f"*Location:* {meeting.get('location') or 'TBD'}"
        ),
        _button("Join Meeting", meeting.get("meeting_url") or "#"),
    ]
    return f"Meeting Reminder: {title}", blocks


def deal_closed_blocks(opportunity: dict[str, Any], app_url: str) -> tuple[str, list[dict]]:
    name = opportunity.get("name", "")
    blocks = [
        _header("Deal Closed!"),
        _fields(
            ("Opportunity", name),
            ("Value", _money(opportunity.get("value"))),
            ("Company", _or_na(opportunity.get("company_name"))),
            ("Closed by", _or_na(opportunity.get("owner_name"))),
        ),
        _text("*Congratulations!* This deal has been successfully closed."),
        _button("View Opportunity", f"{app_url}/opportunities/{opportunity.get('id', '')}"),
    ]
    return f"Deal Closed: {name}", blocks


def task_due_blocks(task: dict[str, Any], app_url: str) -> tuple[str, list[dict]]:
    title = task.get("title", "")
    blocks = [
        _header("Task Due Soon"),
        _fields(
            ("Task", title),
            ("Due", _when(task.get("due_date"))),
            ("Priority", task.get("priority") or "Medium"),
            ("Status", task.get("status") or "Pending"),
        ),
        _text(
            f"*Description:* {task.get('description') or 'No description'}\n"
            f"*Assigned to:* {task.get('assigned_to') or 'Unassigned'}"
        ),
        _button("View Task", f"{app_url}/activities/{task.get('id', '')}"),
    ]
    return f"Task Due Soon: {title}", blocks


def notification_blocks(notification: SlackNotification, app_url: str) -> tuple[str, list[dict]]:
    payload = notification.payload
    if notification.kind == SlackNotificationKind.OPPORTUNITY_UPDATE:
        return opportunity_update_blocks(payload, app_url)
    if notification.kind == SlackNotificationKind.LEAD_ASSIGNMENT:
        if not notification.assignee:
            raise ValueError("Lead assignment notifications require an assignee")
        return lead_assignment_blocks(payload, notification.assignee, app_url)
    if notification.kind == SlackNotificationKind.MEETING_REMINDER:
        return meeting_reminder_blocks(payload)
    if notification.kind == SlackNotificationKind.DEAL_CLOSED:
        return deal_closed_blocks(payload, app_url)
    return task_due_blocks(payload, app_url)


# ── Connector ───────────────────────────────────────────────────────────


class SlackIntegration(BaseIntegration):
    """Slack Web API client authenticated with a bot token (``credentials["access_token"]``)."""

    integration_type = "slack"
    base_url = SLACK_API_URL

    async def _call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Call a Web API method. Slack reports failures as ``ok: false`` with HTTP 200."""
        if body is not None:
            response = await self._request("POST", f"/{method}", method, json=body)
        else:
            response = await self._request("GET", f"/{method}", method, params=params)
        data = response.json()
        if not data.get("ok"):
            raise IntegrationError(f"Slack {method} failed: {data.get('error', 'unknown_error')}", data)
        return data

    async def send_message(
        self,
        channel: str,
        text: str,
        blocks: list[dict[str, Any]] | None = None,
        thread_ts: str | None = None,
    ) -> str:
        """Post a message and return its ``ts``."""
        body: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            body["blocks"] = blocks
        if thread_ts:
            body["thread_ts"] = thread_ts
        data = await self._call("chat.postMessage", body=body)
        return data.get("ts", "")

    async def create_thread(self, channel: str, message: str, thread_ts: str) -> str:
        return await self.send_message(channel, message, thread_ts=thread_ts)

    async def send_notification(self, notification: SlackNotification, app_url: str | None = None) -> str:
        text, blocks = notification_blocks(notification, app_url or get_settings().APP_URL)
        ts = await self.send_message(notification.channel, text, blocks)
        logger.info(
            "integration.slack_notified",
            organization_id=self.organization_id,
            kind=notification.kind.value,
            channel=notification.channel,
        )
        return ts

    async def get_channels(self) -> list[dict[str, Any]]:
        data = await self._call("conversations.list", params={"types": "public_channel,private_channel"})
        return [
            {
                "id": c["id"],
                "name": c.get("name"),
                "is_private": c.get("is_private", False),
                "is_member": c.get("is_member", False),
                "topic": (c.get("topic") or {}).get("value"),
                "purpose": (c.get("purpose") or {}).get("value"),
                "num_members": c.get("num_members"),
            }
            for c in data.get("channels", [])
        ]

    async def get_users(self) -> list[dict[str, Any]]:
        """Active human members (deleted users and bots are skipped)."""
        data = await self._call("users.list")
        return [
            {
                "id": u["id"],
                "name": u.get("name"),
                "real_name": u.get("real_name"),
                "email": (u.get("profile") or {}).get("email"),
                "is_admin": u.get("is_admin", False),
                "is_owner": u.get("is_owner", False),
            }
            for u in data.get("members", [])
            if not u.get("deleted") and not u.get("is_bot")
        ]

    async def get_channel_history(self, channel: str, limit: int = 100) -> list[dict[str, Any]]:
        data = await self._call("conversations.history", params={"channel": channel, "limit": limit})
        return data.get("messages", [])

    async def auth_test(self) -> dict[str, Any]:
        data = await self._call("auth.test")
        return {"id": data.get("team_id"), "name": data.get("team"), "url": data.get("url")}

    # ── BaseIntegration ─────────────────────────────────────────────────

    async def authenticate(self) -> bool:
        return await self.test_connection()

    async def test_connection(self) -> bool:
        await self.auth_test()
        return True

    async def sync_data(self, entity_type: str, sync_config: SyncConfiguration) -> SyncResult:
        started = time.perf_counter()
        if entity_type == "users":
            records = await self.get_users()
        elif entity_type == "channels":
            records = await self.get_channels()
        else:
            raise self._unsupported(entity_type)
        return SyncResult(
            success=True,
            records_processed=len(records),
            sync_duration=time.perf_counter() - started,
        )

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        if entity_type == "channel":
            return (await self._call("conversations.info", params={"channel": entity_id})).get("channel")
        if entity_type == "user":
            return (await self._call("users.info", params={"user": entity_id})).get("user")
        raise self._unsupported(entity_type)

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> str:
        if entity_type != "message":
            raise self._unsupported(entity_type)
        return await self.send_message(data["channel"], data.get("text", ""), data.get("blocks"))

    async def update_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> bool:
        if entity_type != "message":
            raise self._unsupported(entity_type)
        await self._call("chat.update", body={"channel": data["channel"], "ts": entity_id, "text": data.get("text", "")})
        return True

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        if entity_type != "message":
            raise self._unsupported(entity_type)
        channel = self.config.get("default_channel")
        if not channel:
            raise ValueError("Deleting a Slack message requires config.default_channel")
        await self._call("chat.delete", body={"channel": channel, "ts": entity_id})
        return True
