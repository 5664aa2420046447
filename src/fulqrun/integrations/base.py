"""Integration base class -- the interface every third-party connector implements.

Connectors share one HTTP path (``_request``): an ``httpx.AsyncClient`` with
the configured timeout, tenacity retries on transport errors, 429 and 5xx
responses, per-call Prometheus metrics, and ``IntegrationError`` for
anything that still fails. Sync bookkeeping (status and sync log rows) goes
through an optional ``store`` so connectors stay testable without a
database.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from datetime import date, datetime
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import IntegrationError
from src.fulqrun.core.monitoring import track_integration_call
from src.fulqrun.integrations.schemas import (
    FieldMapping,
    SyncConfiguration,
    SyncOperation,
    SyncResult,
    SyncStatus,
    Transformation,
    WebhookPayload,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRY_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1.0
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class RetryableResponse(Exception):
    """A response worth retrying (rate limit or server error)."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


# ── Field mapping ───────────────────────────────────────────────────────


def get_nested(data: Any, path: str) -> Any:
    current = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def set_nested(data: dict[str, Any], path: str, value: Any) -> None:
    *parents, last = path.split(".")
    target = data
    for key in parents:
        target = target.setdefault(key, {})
    target[last] = value


def apply_transformation(value: Any, transformation: Transformation | None) -> Any:
    if transformation is None:
        return value
    if transformation == Transformation.UPPERCASE:
        return value.upper() if isinstance(value, str) else value
    if transformation == Transformation.LOWERCASE:
        return value.lower() if isinstance(value, str) else value
    if transformation == Transformation.TRIM:
        return value.strip() if isinstance(value, str) else value
    if transformation == Transformation.DATE_ISO:
        return value.isoformat() if isinstance(value, (date, datetime)) else value
    if transformation == Transformation.BOOLEAN:
        return bool(value)
    if transformation == Transformation.NUMBER:
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    return "" if value is None else str(value)


def transform_data(data: dict[str, Any], field_mappings: Sequence[FieldMapping]) -> dict[str, Any]:
    """Map a source record onto target fields.

    Raises:
        ValueError: A required source field is missing.
    """
    transformed: dict[str, Any] = {}
    for mapping in field_mappings:
        value = get_nested(data, mapping.source_field)
        if value is None:
            if mapping.required:
                raise ValueError(f"Required field {mapping.source_field} is missing")
            continue
        set_nested(transformed, mapping.target_field, apply_transformation(value, mapping.transformation))
    return transformed


async def batch_process(
    items: Sequence[T], batch_size: int, processor: Callable[[list[T]], Awaitable[None]]
) -> None:
    for i in range(0, len(items), batch_size):
        await processor(list(items[i : i + batch_size]))


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = RETRY_ATTEMPTS,
    delay: float = RETRY_DELAY_SECONDS,
) -> T:
    """Run ``operation`` up to ``max_attempts`` times, waiting delay * attempt between tries.

    The last exception is re-raised unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=delay, increment=delay),
        reraise=True,
    )
    return await retrying(operation)


# ── Base class ──────────────────────────────────────────────────────────


class BaseIntegration(ABC):
    """Abstract interface for a third-party integration.

    Args:
        integration_id: Stored connection id ("" for ad-hoc clients).
        organization_id: Owning organization.
        config: Non-secret settings (board ids, site ids, channels...).
        credentials: Tokens and secrets.
        store: Object with ``update_sync_status``, ``add_sync_log``,
            ``update_config`` and ``update_credentials`` (IntegrationRepository).
        http_client: Shared client; one is created lazily when omitted.
        crm_service: CRMService, for connectors that import records.
    """

    integration_type: str = "unknown"
    base_url: str = ""

    def __init__(
        self,
        integration_id: str,
        organization_id: str,
        config: dict[str, Any] | None = None,
        credentials: dict[str, Any] | None = None,
        store: Any = None,
        http_client: httpx.AsyncClient | None = None,
        crm_service: Any = None,
        timeout: float | None = None,
    ) -> None:
        self.integration_id = integration_id
        self.organization_id = organization_id
        self.config = dict(config or {})
        self.credentials = dict(credentials or {})
        self._store = store
        self._crm = crm_service
        self._timeout = timeout if timeout is not None else get_settings().INTEGRATION_TIMEOUT
        self._http = http_client
        self._owns_client = http_client is None

    # ── Abstract interface ──────────────────────────────────────────────

    @abstractmethod
    async def authenticate(self) -> bool:
        """Obtain or verify credentials."""

    @abstractmethod
    async def test_connection(self) -> bool:
        """Cheap authenticated call proving the credentials work."""

    @abstractmethod
    async def sync_data(self, entity_type: str, sync_config: SyncConfiguration) -> SyncResult:
        """Pull ``entity_type`` records from the remote system."""

    @abstractmethod
    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    @abstractmethod
    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> str: ...

    @abstractmethod
    async def update_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> bool: ...

    @abstractmethod
    async def delete_entity(self, entity_type: str, entity_id: str) -> bool: ...

    # ── HTTP ────────────────────────────────────────────────────────────

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_client:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> BaseIntegration:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def auth_headers(self) -> dict[str, str]:
        token = self.credentials.get("access_token")
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self.http.request(method, url, **kwargs)
        if response.status_code in RETRYABLE_STATUS:
            raise RetryableResponse(response)
        return response

    async def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> httpx.Response:
        """Send a request with retries; non-2xx responses raise IntegrationError."""
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = {**self.auth_headers(), **kwargs.pop("headers", {})}
        async with track_integration_call(self.integration_type, operation):
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(RETRY_ATTEMPTS),
                    wait=wait_incrementing(start=RETRY_DELAY_SECONDS, increment=RETRY_DELAY_SECONDS),
                    retry=retry_if_exception_type((httpx.TransportError, RetryableResponse)),
                ):
                    with attempt:
                        response = await self._send(method, url, headers=headers, **kwargs)
            except RetryError as e:
                cause = e.last_attempt.exception()
                status = cause.response.status_code if isinstance(cause, RetryableResponse) else None
                logger.warning(
                    "integration.request_exhausted",
                    integration=self.integration_type,
                    operation=operation,
                    status=status,
                    error=str(cause),
                )
                raise IntegrationError(
                    f"{self.integration_type} {operation} failed after {RETRY_ATTEMPTS} attempts",
                    {"status": status, "error": str(cause)},
                ) from e

            if response.is_error:
                raise IntegrationError(
                    f"{self.integration_type} {operation} failed: HTTP {response.status_code}",
                    {"status": response.status_code, "body": response.text[:500]},
                )
            return response

    # ── Sync bookkeeping ────────────────────────────────────────────────

    async def log_sync_activity(
        self, entity_type: str, operation: SyncOperation, details: dict[str, Any]
    ) -> None:
        logger.info(
            f"integration.{operation.value}",
            integration=self.integration_type,
            integration_id=self.integration_id,
            organization_id=self.organization_id,
            entity_type=entity_type,
        )
        if self._store is not None and self.integration_id:
            await self._store.add_sync_log(
                self.organization_id, self.integration_id, entity_type, operation, details
            )

    async def update_sync_status(self, status: SyncStatus, error_message: str | None = None) -> None:
        if self._store is not None and self.integration_id:
            await self._store.update_sync_status(
                self.organization_id, self.integration_id, status, error_message
            )

    async def handle_sync_error(self, error: Exception, entity_type: str) -> None:
        message = str(error) or "Unknown sync error"
        await self.update_sync_status(SyncStatus.ERROR, message)
        await self.log_sync_activity(
            entity_type, SyncOperation.SYNC_ERROR, {"error": message, "type": type(error).__name__}
        )

    async def validate_credentials(self) -> bool:
        try:
            return await self.test_connection()
        except IntegrationError as e:
            logger.warning(
                "integration.credentials_invalid",
                integration=self.integration_type,
                error=e.message,
            )
            return False

    # ── Webhooks ────────────────────────────────────────────────────────

    async def process_webhook(self, payload: WebhookPayload) -> bool:
        """Apply a create/update/delete event. Failures are recorded, not raised."""
        details = {
            "event_type": payload.event_type,
            "entity_type": payload.entity_type,
            "entity_id": payload.entity_id,
        }
        await self.log_sync_activity("webhook", SyncOperation.SYNC_START, details)
        try:
            if payload.event_type == "create":
                await self.handle_webhook_create(payload)
            elif payload.event_type == "update":
                await self.handle_webhook_update(payload)
            elif payload.event_type == "delete":
                await self.handle_webhook_delete(payload)
            else:
                logger.warning(
                    "integration.webhook_unknown_event",
                    integration=self.integration_type,
                    event_type=payload.event_type,
                )
        except (IntegrationError, ValueError, LookupError) as e:
            await self.handle_sync_error(e, "webhook")
            return False
        await self.log_sync_activity("webhook", SyncOperation.SYNC_COMPLETE, details)
        return True

    async def handle_webhook_create(self, payload: WebhookPayload) -> None:
        await self.create_entity(payload.entity_type, payload.data)

    async def handle_webhook_update(self, payload: WebhookPayload) -> None:
        await self.update_entity(payload.entity_type, payload.entity_id, payload.data)

    async def handle_webhook_delete(self, payload: WebhookPayload) -> None:
        await self.delete_entity(payload.entity_type, payload.entity_id)

    # ── Configuration ───────────────────────────────────────────────────

    async def update_config(self, new_config: dict[str, Any]) -> None:
        self.config = {**self.config, **new_config}
        if self._store is not None and self.integration_id:
            await self._store.update_config(self.organization_id, self.integration_id, self.config)

    async def update_credentials(self, new_credentials: dict[str, Any]) -> None:
        self.credentials = {**self.credentials, **new_credentials}
        if self._store is not None and self.integration_id:
            await self._store.update_credentials(self.organization_id, self.integration_id, self.credentials)

    def _unsupported(self, entity_type: str) -> IntegrationError:
        return IntegrationError(
            f"{self.integration_type} does not support entity type: {entity_type}",
            {"entity_type": entity_type},
        )
