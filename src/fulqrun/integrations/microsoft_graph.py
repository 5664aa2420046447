"""Microsoft Graph connector -- OAuth, profile, contacts, calendar and mail.

Contacts sync into CRM contacts keyed by ``external_id = "msgraph:<id>"``.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import structlog

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import FulQrunError, IntegrationError
from src.fulqrun.crm.schemas import ContactCreate, ContactUpdate
from src.fulqrun.integrations.base import BaseIntegration, batch_process
from src.fulqrun.integrations.schemas import SyncConfiguration, SyncResult

logger = structlog.get_logger(__name__)

GRAPH_API_URL = "https://graph.microsoft.com/v1.0"
LOGIN_URL = "https://login.microsoftonline.com"
DEFAULT_SCOPES = ("offline_access", "User.Read", "Contacts.Read", "Calendars.Read", "Mail.Read")
MAIL_FOLDERS = {"inbox": "inbox", "sent": "sentitems"}
EXTERNAL_ID_PREFIX = "msgraph:"


def contact_fields(contact: dict[str, Any]) -> dict[str, Any]:
    """Map a Graph contact onto CRM contact fields."""
    first = contact.get("givenName") or ""
    last = contact.get("surname") or ""
    if not first and not last:
        display = (contact.get("displayName") or "").strip()
        first, _, last = display.partition(" ")
    emails = contact.get("emailAddresses") or []
    phones = contact.get("businessPhones") or []
    return {
        "first_name": first or "Unknown",
        "last_name": last or "-",
        "email": emails[0].get("address") if emails else None,
        "phone": phones[0] if phones else contact.get("mobilePhone"),
        "title": contact.get("jobTitle"),
        "company": contact.get("companyName"),
    }


class MicrosoftGraphIntegration(BaseIntegration):
    """Graph client for one signed-in user.

    ``config`` may carry ``tenant_id``, ``client_id``, ``redirect_uri`` and
    ``scopes``; missing values fall back to the MICROSOFT_* settings. Tokens
    live in ``credentials`` (``access_token``, ``refresh_token``).
    """

    integration_type = "microsoft_graph"
    base_url = GRAPH_API_URL

    def _setting(self, key: str, fallback: str) -> str:
        return self.config.get(key) or fallback

    @property
    def tenant_id(self) -> str:
        return self._setting("tenant_id", get_settings().MICROSOFT_TENANT_ID)

    @property
    def scopes(self) -> list[str]:
        return list(self.config.get("scopes") or DEFAULT_SCOPES)

    def get_auth_url(self, state: str = "microsoft-graph-auth") -> str:
        settings = get_settings()
        client_id = self._setting("client_id", settings.MICROSOFT_CLIENT_ID)
        if not client_id:
            raise IntegrationError("Microsoft Graph is not configured")
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": self._setting("redirect_uri", settings.MICROSOFT_REDIRECT_URI),
            "scope": " ".join(self.scopes),
            "response_mode": "query",
            "state": state,
        }
        return f"{LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/authorize?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str) -> dict[str, Any]:
        """Trade an authorization code for tokens and keep them in ``credentials``."""
        settings = get_settings()
        form = {
            "client_id": self._setting("client_id", settings.MICROSOFT_CLIENT_ID),
            "client_secret": self.credentials.get("client_secret") or settings.MICROSOFT_CLIENT_SECRET,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._setting("redirect_uri", settings.MICROSOFT_REDIRECT_URI),
            "scope": " ".join(self.scopes),
        }
        response = await self._request(
            "POST", f"{LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/token", "oauth.token", data=form
        )
        tokens = response.json()
        await self.update_credentials({
            "access_token": tokens.get("access_token"),
            "refresh_token": tokens.get("refresh_token"),
        })
        return tokens

    def _require_token(self) -> None:
        if not self.credentials.get("access_token"):
            raise IntegrationError("Microsoft Graph not configured or authenticated")

    async def _get(self, path: str, operation: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self._require_token()
        response = await self._request("GET", path, operation, params=params)
        return response.json()

    async def get_current_user(self) -> dict[str, Any]:
        return await self._get("/me", "me")

    async def get_contacts(self, limit: int = 100) -> list[dict[str, Any]]:
        return (await self._get("/me/contacts", "contacts", {"$top": limit})).get("value", [])

    async def get_events(
        self, start: datetime | None = None, end: datetime | None = None, limit: int = 50
    ) -> list[dict[str, Any]]:
        """Calendar events; a start/end window uses calendarView so recurrences expand."""
        if start and end:
            params = {"startDateTime": start.isoformat(), "endDateTime": end.isoformat(), "$top": limit}
            return (await self._get("/me/calendarView", "calendar_view", params)).get("value", [])
        return (await self._get("/me/events", "events", {"$top": limit})).get("value", [])

    async def get_emails(self, folder: str = "inbox", limit: int = 50) -> list[dict[str, Any]]:
        if folder not in MAIL_FOLDERS:
            raise ValueError(f"Unknown mail folder: {folder}")
        params = {"$top": limit, "$orderby": "receivedDateTime desc"}
        return (await self._get(f"/me/mailFolders/{MAIL_FOLDERS[folder]}/messages", "messages", params)).get(
            "value", []
        )

    async def sync_contacts(self, batch_size: int = 50) -> dict[str, int]:
        """Upsert Graph contacts into CRM contacts."""
        if self._crm is None:
            raise IntegrationError("Contact sync requires a CRM service")
        contacts = await self.get_contacts()
        counts = {"imported": 0, "updated": 0, "errors": 0}

        async def _upsert(batch: list[dict[str, Any]]) -> None:
            for contact in batch:
                external_id = f"{EXTERNAL_ID_PREFIX}{contact.get('id')}"
                fields = contact_fields(contact)
                try:
                    existing = await self._crm.find_contact_by_external_id(self.organization_id, external_id)
                    if existing is None:
                        await self._crm.create_contact(
                            self.organization_id, ContactCreate(**fields, external_id=external_id)
                        )
                        counts["imported"] += 1
                    else:
                        await self._crm.update_contact(self.organization_id, existing.id, ContactUpdate(**fields))
                        counts["updated"] += 1
                except (FulQrunError, ValueError) as e:
                    counts["errors"] += 1
                    logger.warning(
                        "integration.contact_sync_failed",
                        organization_id=self.organization_id,
                        external_id=external_id,
                        error=str(e),
                    )

        await batch_process(contacts, batch_size, _upsert)
        logger.info("integration.contacts_synced", organization_id=self.organization_id, **counts)
        return counts

    # ── BaseIntegration ─────────────────────────────────────────────────

    async def authenticate(self) -> bool:
        code = self.credentials.get("authorization_code")
        if code and not self.credentials.get("access_token"):
            await self.exchange_code_for_token(code)
        return await self.test_connection()

    async def test_connection(self) -> bool:
        user = await self.get_current_user()
        return bool(user.get("id"))

    async def sync_data(self, entity_type: str, sync_config: SyncConfiguration) -> SyncResult:
        started = time.perf_counter()
        if entity_type == "contacts":
            counts = await self.sync_contacts(sync_config.batch_size)
            return SyncResult(
                success=counts["errors"] == 0,
                records_processed=sum(counts.values()),
                records_created=counts["imported"],
                records_updated=counts["updated"],
                records_failed=counts["errors"],
                sync_duration=time.perf_counter() - started,
            )
        if entity_type == "events":
            records = await self.get_events()
        elif entity_type == "emails":
            records = await self.get_emails()
        else:
            raise self._unsupported(entity_type)
        return SyncResult(success=True, records_processed=len(records), sync_duration=time.perf_counter() - started)

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        paths = {"contact": "/me/contacts/", "event": "/me/events/", "email": "/me/messages/"}
        if entity_type not in paths:
            raise self._unsupported(entity_type)
        return await self._get(f"{paths[entity_type]}{entity_id}", entity_type)

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> str:
        paths = {"contact": "/me/contacts", "event": "/me/events"}
        if entity_type not in paths:
            raise self._unsupported(entity_type)
        self._require_token()
        response = await self._request("POST", paths[entity_type], f"create_{entity_type}", json=data)
        return response.json().get("id", "")

    async def update_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> bool:
        paths = {"contact": "/me/contacts/", "event": "/me/events/"}
        if entity_type not in paths:
            raise self._unsupported(entity_type)
        self._require_token()
        await self._request("PATCH", f"{paths[entity_type]}{entity_id}", f"update_{entity_type}", json=data)
        return True

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        paths = {"contact": "/me/contacts/", "event": "/me/events/"}
        if entity_type not in paths:
            raise self._unsupported(entity_type)
        self._require_token()
        await self._request("DELETE", f"{paths[entity_type]}{entity_id}", f"delete_{entity_type}")
        return True
