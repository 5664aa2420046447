"""Integration type -> connector class."""

from __future__ import annotations

from typing import Any

from src.fulqrun.core.errors import ValidationFailedError
from src.fulqrun.integrations.base import BaseIntegration
from src.fulqrun.integrations.microsoft_graph import MicrosoftGraphIntegration
from src.fulqrun.integrations.monday import MondayIntegration
from src.fulqrun.integrations.quickbooks import QuickBooksIntegration
from src.fulqrun.integrations.schemas import IntegrationConnection, IntegrationType
from src.fulqrun.integrations.sharepoint import SharePointIntegration
from src.fulqrun.integrations.slack import SlackIntegration

INTEGRATION_REGISTRY: dict[IntegrationType, type[BaseIntegration]] = {
    IntegrationType.SLACK: SlackIntegration,
    IntegrationType.MONDAY: MondayIntegration,
    IntegrationType.MICROSOFT_GRAPH: MicrosoftGraphIntegration,
    IntegrationType.SHAREPOINT: SharePointIntegration,
    IntegrationType.QUICKBOOKS: QuickBooksIntegration,
}


def connector_class(integration_type: str | IntegrationType) -> type[BaseIntegration]:
    try:
        return INTEGRATION_REGISTRY[IntegrationType(integration_type)]
    except (KeyError, ValueError):
        raise ValidationFailedError(
            f"Unsupported integration type: {getattr(integration_type, 'value', integration_type)}",
            {"supported": [t.value for t in INTEGRATION_REGISTRY]},
        )


def create_integration(connection: IntegrationConnection, **kwargs: Any) -> BaseIntegration:
    """Instantiate the connector for a stored connection.

    Extra keyword arguments (``store``, ``http_client``, ``crm_service``)
    are passed through to the connector.
    """
    cls = connector_class(connection.integration_type)
    return cls(
        connection.id,
        connection.organization_id,
        config=connection.config,
        credentials=connection.credentials,
        **kwargs,
    )
