"""QuickBooks Online connector -- OAuth, customers, invoices, payments and a
financial summary for the company in ``config["realm_id"]``.
"""

from __future__ import annotations

import time
from datetime import date
from typing import Any
from urllib.parse import urlencode

import structlog

from src.fulqrun.config import get_settings
from src.fulqrun.core.errors import IntegrationError
from src.fulqrun.integrations.base import BaseIntegration
from src.fulqrun.integrations.schemas import SyncConfiguration, SyncResult

logger = structlog.get_logger(__name__)

AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
SANDBOX_API_URL = "https://sandbox-quickbooks.api.intuit.com/v3/company"
PRODUCTION_API_URL = "https://quickbooks.api.intuit.com/v3/company"
ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"
MINOR_VERSION = "70"

ENTITIES = {"customer": "Customer", "invoice": "Invoice", "payment": "Payment"}


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def financial_summary(
    customers: list[dict[str, Any]], invoices: list[dict[str, Any]], today: date
) -> dict[str, Any]:
    """Revenue, outstanding and overdue balances over QuickBooks invoice records."""
    total_revenue = sum(_amount(i.get("TotalAmt")) for i in invoices)
    outstanding = sum(_amount(i.get("Balance")) for i in invoices)
    overdue = sum(
        _amount(i.get("Balance"))
        for i in invoices
        if _amount(i.get("Balance")) > 0 and i.get("DueDate") and date.fromisoformat(i["DueDate"]) < today
    )
    return {
        "total_revenue": total_revenue,
        "outstanding": outstanding,
        "overdue": overdue,
        "total_customers": len(customers),
        "invoice_count": len(invoices),
        "average_invoice_value": total_revenue / len(invoices) if invoices else 0.0,
    }


class QuickBooksIntegration(BaseIntegration):
    integration_type = "quickbooks"

    @property
    def base_url(self) -> str:  # type: ignore[override]
        sandbox = self.config.get("sandbox", get_settings().QUICKBOOKS_SANDBOX)
        return SANDBOX_API_URL if sandbox else PRODUCTION_API_URL

    @property
    def realm_id(self) -> str:
        realm = self.config.get("realm_id") or self.credentials.get("realm_id")
        if not realm:
            raise IntegrationError("QuickBooks not configured: missing realm_id")
        return str(realm)

    def get_auth_url(self, state: str = "quickbooks-auth") -> str:
        settings = get_settings()
        if not settings.QUICKBOOKS_CLIENT_ID:
            raise IntegrationError("QuickBooks is not configured")
        params = {
            "client_id": settings.QUICKBOOKS_CLIENT_ID,
            "scope": ACCOUNTING_SCOPE,
            "redirect_uri": self.config.get("redirect_uri") or settings.QUICKBOOKS_REDIRECT_URI,
            "response_type": "code",
            "state": state,
        }
        return f"{AUTH_URL}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str, realm_id: str | None = None) -> dict[str, Any]:
        settings = get_settings()
        response = await self._request(
            "POST",
            TOKEN_URL,
            "oauth.token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.get("redirect_uri") or settings.QUICKBOOKS_REDIRECT_URI,
            },
            auth=(settings.QUICKBOOKS_CLIENT_ID, settings.QUICKBOOKS_CLIENT_SECRET),
            headers={"Accept": "application/json"},
        )
        tokens = response.json()
        update = {"access_token": tokens.get("access_token"), "refresh_token": tokens.get("refresh_token")}
        if realm_id:
            update["realm_id"] = realm_id
        await self.update_credentials(update)
        return tokens

    def _require_token(self) -> None:
        if not self.credentials.get("access_token"):
            raise IntegrationError("QuickBooks not configured or authenticated")

    async def _company(self, method: str, path: str, operation: str, **kwargs: Any) -> dict[str, Any]:
        self._require_token()
        params = {"minorversion": MINOR_VERSION, **kwargs.pop("params", {})}
        response = await self._request(
            method,
            f"/{self.realm_id}{path}",
            operation,
            params=params,
            headers={"Accept": "application/json"},
            **kwargs,
        )
        return response.json()

    async def query(self, entity: str, where: str | None = None, limit: int = 1000) -> list[dict[str, Any]]:
        statement = f"select * from {entity}"
        if where:
            statement += f" where {where}"
        statement += f" maxresults {limit}"
        data = await self._company("GET", "/query", f"query.{entity.lower()}", params={"query": statement})
        return (data.get("QueryResponse") or {}).get(entity, [])

    async def get_customers(self) -> list[dict[str, Any]]:
        return await self.query("Customer")

    async def get_invoices(self) -> list[dict[str, Any]]:
        return await self.query("Invoice")

    async def get_payments(self) -> list[dict[str, Any]]:
        return await self.query("Payment")

    async def create_customer(self, customer: dict[str, Any]) -> dict[str, Any]:
        if not customer.get("DisplayName"):
            raise ValueError("QuickBooks customers require a DisplayName")
        return (await self._company("POST", "/customer", "create_customer", json=customer))["Customer"]

    async def create_invoice(self, invoice: dict[str, Any]) -> dict[str, Any]:
        if not (invoice.get("CustomerRef") and invoice.get("Line")):
            raise ValueError("QuickBooks invoices require CustomerRef and Line")
        return (await self._company("POST", "/invoice", "create_invoice", json=invoice))["Invoice"]

    async def get_financial_summary(self, today: date | None = None) -> dict[str, Any]:
        customers = await self.get_customers()
        invoices = await self.get_invoices()
        return financial_summary(customers, invoices, today or date.today())

    # ── BaseIntegration ─────────────────────────────────────────────────

    async def authenticate(self) -> bool:
        code = self.credentials.get("authorization_code")
        if code and not self.credentials.get("access_token"):
            await self.exchange_code_for_token(code, self.config.get("realm_id"))
        return await self.test_connection()

    async def test_connection(self) -> bool:
        data = await self._company("GET", f"/companyinfo/{self.realm_id}", "company_info")
        return "CompanyInfo" in data

    async def sync_data(self, entity_type: str, sync_config: SyncConfiguration) -> SyncResult:
        started = time.perf_counter()
        if entity_type == "customers":
            records = await self.get_customers()
        elif entity_type == "invoices":
            records = await self.get_invoices()
        elif entity_type == "payments":
            records = await self.get_payments()
        else:
            raise self._unsupported(entity_type)
        return SyncResult(success=True, records_processed=len(records), sync_duration=time.perf_counter() - started)

    async def get_entity(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        if entity_type not in ENTITIES:
            raise self._unsupported(entity_type)
        data = await self._company("GET", f"/{entity_type}/{entity_id}", f"get_{entity_type}")
        return data.get(ENTITIES[entity_type])

    async def create_entity(self, entity_type: str, data: dict[str, Any]) -> str:
        if entity_type == "customer":
            return str((await self.create_customer(data))["Id"])
        if entity_type == "invoice":
            return str((await self.create_invoice(data))["Id"])
        raise self._unsupported(entity_type)

    async def update_entity(self, entity_type: str, entity_id: str, data: dict[str, Any]) -> bool:
        """Sparse update; ``data`` must carry the current ``SyncToken``."""
        if entity_type not in ("customer", "invoice"):
            raise self._unsupported(entity_type)
        if "SyncToken" not in data:
            raise ValueError("QuickBooks updates require the entity SyncToken")
        body = {**data, "Id": entity_id, "sparse": True}
        await self._company("POST", f"/{entity_type}", f"update_{entity_type}", json=body)
        return True

    async def delete_entity(self, entity_type: str, entity_id: str) -> bool:
        if entity_type != "invoice":
            raise self._unsupported(entity_type)
        current = await self.get_entity("invoice", entity_id)
        if current is None:
            return False
        await self._company(
            "POST",
            "/invoice",
            "delete_invoice",
            params={"operation": "delete"},
            json={"Id": entity_id, "SyncToken": current["SyncToken"]},
        )
        return True
