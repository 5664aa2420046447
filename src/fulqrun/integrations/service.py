"""Integration management -- connections, connection tests, sync runs and
the monday.com / Slack operations exposed through the API.

Connectors are built per call from the stored connection and closed when
the call returns. Slack and monday.com fall back to the platform-wide
tokens in settings when the organization has no connection of its own.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import IntegrationError, NotFoundError, ValidationFailedError
from src.fulqrun.integrations.base import BaseIntegration
from src.fulqrun.integrations.registry import connector_class, create_integration
from src.fulqrun.integrations.schemas import (
    ConnectionTestResult,
    IntegrationConnection,
    IntegrationCreate,
    IntegrationRead,
    IntegrationType,
    MondayWebhookEvent,
    SlackNotification,
    SyncLogEntry,
    SyncOperation,
    SyncRequest,
    SyncResult,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


class IntegrationService:
    def __init__(self, repository: Any, crm_service: Any = None, http_client: Any = None) -> None:
        self._repo = repository
        self._crm = crm_service
        self._http = http_client

    # ── Connections ─────────────────────────────────────────────────────

    async def list_integrations(self, organization_id: str) -> list[IntegrationRead]:
        connections = await self._repo.list_connections(organization_id)
        return [IntegrationRead.from_connection(c) for c in connections]

    async def create_integration(
        self, organization_id: str, data: IntegrationCreate, created_by: str | None = None
    ) -> IntegrationRead:
        connector_class(data.integration_type)
        connection = await self._repo.create(organization_id, data, created_by)
        return IntegrationRead.from_connection(connection)

    async def delete_integration(self, organization_id: str, integration_id: str) -> None:
        if not await self._repo.delete(organization_id, integration_id):
            raise NotFoundError(f"Integration {integration_id} not found")
        logger.info("integration.deleted", organization_id=organization_id, integration_id=integration_id)

    async def get_logs(self, organization_id: str, integration_id: str, limit: int = 100) -> list[SyncLogEntry]:
        await self._connection(organization_id, integration_id)
        return await self._repo.list_logs(organization_id, integration_id, limit)

    async def _connection(self, organization_id: str, integration_id: str) -> IntegrationConnection:
        connection = await self._repo.get(organization_id, integration_id)
        if connection is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        return connection

    def _build(self, connection: IntegrationConnection) -> BaseIntegration:
        return create_integration(
            connection, store=self._repo, http_client=self._http, crm_service=self._crm
        )

    async def _connector_for_type(self, organization_id: str, integration_type: IntegrationType) -> BaseIntegration:
        connection = await self._repo.get_active_by_type(organization_id, integration_type)
        if connection is None:
            token = _platform_token(integration_type)
            if not token:
                raise NotFoundError(f"No active {integration_type.value} integration")
            connection = IntegrationConnection(
                id="",
                organization_id=organization_id,
                integration_type=integration_type,
                name=f"{integration_type.value} (platform)",
                credentials=_platform_credentials(integration_type, token),
            )
        return self._build(connection)

    # ── Test and sync ───────────────────────────────────────────────────

    async def test_integration(self, organization_id: str, integration_id: str) -> ConnectionTestResult:
        connection = await self._connection(organization_id, integration_id)
        async with self._build(connection) as connector:
            try:
                ok = await connector.test_connection()
            except IntegrationError as e:
                await connector.update_sync_status(SyncStatus.ERROR, e.message)
                logger.warning(
                    "integration.test_failed",
                    organization_id=organization_id,
                    integration_id=integration_id,
                    error=e.message,
                )
                return ConnectionTestResult(success=False, error=e.message)
        if not ok:
            return ConnectionTestResult(success=False, error="Connection test returned no data")
        return ConnectionTestResult(success=True)

    async def sync_integration(
        self, organization_id: str, integration_id: str, request: SyncRequest
    ) -> SyncResult:
        """Run one sync of ``request.entity_type`` and record it in the sync log.

        Connector failures are recorded on the connection and returned as an
        unsuccessful result rather than raised.
        """
        connection = await self._connection(organization_id, integration_id)
        if not connection.is_active:
            raise ValidationFailedError(f"Integration {integration_id} is disabled")
        entity_type = (
            request.entity_type
            or next(iter(request.configuration.entity_types), None)
            or connection.config.get("default_entity_type")
        )
        if not entity_type:
            raise ValidationFailedError("entity_type is required")

        async with self._build(connection) as connector:
            await connector.update_sync_status(SyncStatus.SYNCING)
            await connector.log_sync_activity(
                entity_type, SyncOperation.SYNC_START, {"configuration": request.configuration.model_dump()}
            )
            try:
                result = await connector.sync_data(entity_type, request.configuration)
            except (IntegrationError, ValueError) as e:
                await connector.handle_sync_error(e, entity_type)
                return SyncResult(success=False, error_message=getattr(e, "message", str(e)))

            if result.success:
                await connector.update_sync_status(SyncStatus.SUCCESS)
            else:
                await connector.update_sync_status(
                    SyncStatus.ERROR,
                    result.error_message or f"{result.records_failed} records failed",
                )
            await connector.log_sync_activity(
                entity_type, SyncOperation.SYNC_COMPLETE, result.model_dump(mode="json")
            )
        logger.info(
            "integration.sync_finished",
            organization_id=organization_id,
            integration_id=integration_id,
            entity_type=entity_type,
            success=result.success,
            processed=result.records_processed,
        )
        return result

    # ── monday.com ──────────────────────────────────────────────────────

    async def monday_boards(self, organization_id: str, limit: int = 50) -> list[dict[str, Any]]:
        async with await self._connector_for_type(organization_id, IntegrationType.MONDAY) as monday:
            return await monday.get_boards(limit=limit)

    async def monday_items(
        self, organization_id: str, board_id: str, limit: int = 50, page: int = 1
    ) -> list[dict[str, Any]]:
        async with await self._connector_for_type(organization_id, IntegrationType.MONDAY) as monday:
            return await monday.get_items(board_id, limit=limit, page=page)

    async def handle_monday_webhook(self, organization_id: str, body: dict[str, Any]) -> dict[str, Any]:
        """Record a monday.com webhook event. The challenge handshake is answered by the route."""
        raw = body.get("event") or {}
        if not raw.get("type"):
            raise ValidationFailedError("Webhook body has no event type")
        event = MondayWebhookEvent.model_validate(raw)
        async with await self._connector_for_type(organization_id, IntegrationType.MONDAY) as monday:
            return await monday.handle_event(event)

    # ── Slack ───────────────────────────────────────────────────────────

    async def slack_notify(self, organization_id: str, notification: SlackNotification) -> dict[str, Any]:
        async with await self._connector_for_type(organization_id, IntegrationType.SLACK) as slack:
            ts = await slack.send_notification(notification, get_settings().APP_URL)
        return {"ok": True, "ts": ts}


def _platform_token(integration_type: IntegrationType) -> str:
    settings = get_settings()
    if integration_type == IntegrationType.SLACK:
        return settings.SLACK_BOT_TOKEN
    if integration_type == IntegrationType.MONDAY:
        return settings.MONDAY_API_TOKEN
    return ""


def _platform_credentials(integration_type: IntegrationType, token: str) -> dict[str, Any]:
    if integration_type == IntegrationType.MONDAY:
        return {"api_token": token}
    return {"access_token": token}
