"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- Counters/histograms for offline sync replays, exports and integration calls
- track_integration_call(): Context manager recording connector call metrics
- init_sentry(): Initialize Sentry with an organization-aware before_send callback
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import sentry_sdk
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from src.fulqrun.core.organization import get_current_organization

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "fulqrun_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code", "organization_id"],
)

http_request_duration_seconds = Histogram(
    "fulqrun_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "organization_id"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Offline Sync Metrics ─────────────────────────────────────────────────────

sync_actions_total = Counter(
    "fulqrun_sync_actions_total",
    "Offline actions replayed from the outbox",
    ["entity_type", "action_type", "status"],
)

sync_queue_depth = Gauge(
    "fulqrun_sync_queue_depth",
    "Pending offline actions at the end of the last replay",
    ["organization_id"],
)

# ── Export Metrics ───────────────────────────────────────────────────────────

exports_total = Counter(
    "fulqrun_exports_total",
    "Dashboard and report exports",
    ["format", "status"],
)

export_duration_seconds = Histogram(
    "fulqrun_export_duration_seconds",
    "Export generation time in seconds",
    ["format"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Integration Metrics ──────────────────────────────────────────────────────

integration_requests_total = Counter(
    "fulqrun_integration_requests_total",
    "Outbound calls to third-party integrations",
    ["integration", "operation", "status"],
)

integration_request_duration_seconds = Histogram(
    "fulqrun_integration_request_duration_seconds",
    "Outbound integration call duration in seconds",
    ["integration", "operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def _current_organization_id() -> str:
    try:
        return get_current_organization().organization_id
    except RuntimeError:
        return "unknown"


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/endpoint/organization.

    Skips the /metrics endpoint itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        # Organization context is set by the inner auth middleware and reset
        # before we get here, so fall back to request.state
        organization_id = getattr(request.state, "organization_id", None) or _current_organization_id()
        endpoint = request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
            organization_id=organization_id,
        ).inc()
        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
            organization_id=organization_id,
        ).observe(duration)

        return response


# ── Integration Call Tracking ────────────────────────────────────────────────


@asynccontextmanager
async def track_integration_call(integration: str, operation: str) -> AsyncGenerator[None, None]:
    """Record duration and success/error count for one connector call.

    Usage:
        async with track_integration_call("slack", "chat.postMessage"):
            response = await client.post(...)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        integration_requests_total.labels(
            integration=integration, operation=operation, status=status
        ).inc()
        integration_request_duration_seconds.labels(
            integration=integration, operation=operation
        ).observe(time.perf_counter() - start_time)


# ── Sentry Integration ───────────────────────────────────────────────────────


def _before_send(event: dict, hint: dict) -> dict:
    """Tag Sentry events with the active organization."""
    try:
        ctx = get_current_organization()
    except RuntimeError:
        return event
    event.setdefault("tags", {})
    event["tags"]["organization_id"] = ctx.organization_id
    event["tags"]["organization_slug"] = ctx.organization_slug
    return event


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with organization-aware event tagging.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=_before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
