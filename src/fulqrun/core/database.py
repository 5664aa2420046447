"""Async SQLAlchemy engine with per-organization schema isolation.

Provides:
- SharedBase: Declarative base for shared schema tables (organizations)
- OrganizationBase: Declarative base for per-organization tables (placeholder schema="org")
- get_shared_session(): Session for shared schema operations
- get_organization_session(): Session with schema_translate_map and RLS context
- Pool checkout event that runs RESET ALL so no organization GUC leaks between requests
"""

from __future__ import annotations

import importlib
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import MetaData, event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.fulqrun.config import get_settings
from src.fulqrun.core.organization import get_current_organization

ORG_SCHEMA_PLACEHOLDER = "org"

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=20,
            max_overflow=10,
            echo=False,
        )

        # Reset session variables on every checkout so a previous request's
        # app.current_organization_id never survives into the next one
        @event.listens_for(_engine.sync_engine, "checkout")
        def reset_organization_guc(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("RESET ALL")
            cursor.close()

    return _engine


# ── Declarative Bases ───────────────────────────────────────────────────────

shared_metadata = MetaData(schema="shared")
organization_metadata = MetaData(schema=ORG_SCHEMA_PLACEHOLDER)


class SharedBase(DeclarativeBase):
    """Base class for shared schema models (the organizations registry)."""

    metadata = shared_metadata


class OrganizationBase(DeclarativeBase):
    """Base class for per-organization schema models.

    Uses placeholder schema="org" which is remapped at runtime via
    schema_translate_map to the organization's schema (e.g., "org_acme_pharma").
    """

    metadata = organization_metadata


# ── Session Factories ───────────────────────────────────────────────────────


async def get_shared_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession for the shared schema (no organization scoping)."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


async def get_organization_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an organization-scoped AsyncSession with schema_translate_map and RLS context.

    1. Reads the current organization from contextvars
    2. Opens a connection with schema_translate_map={"org": schema_name}
    3. Sets the RLS variable app.current_organization_id
    4. Yields the session
    """
    org = get_current_organization()
    engine = get_engine()

    async with engine.connect() as conn:
        conn = await conn.execution_options(
            schema_translate_map={ORG_SCHEMA_PLACEHOLDER: org.schema_name}
        )
        await conn.execute(
            text("SELECT set_config('app.current_organization_id', :org_id, false)"),
            {"org_id": org.organization_id},
        )

        async with AsyncSession(bind=conn, expire_on_commit=False) as session:
            yield session


# ── Database Initialization ─────────────────────────────────────────────────

# Modules whose models live on OrganizationBase.metadata
ORGANIZATION_MODEL_MODULES = (
    "src.fulqrun.models.organization",
    "src.fulqrun.rbac.models",
    "src.fulqrun.crm.models",
    "src.fulqrun.qualification.models",
    "src.fulqrun.kpi.models",
    "src.fulqrun.dashboard.models",
    "src.fulqrun.integrations.models",
)


def import_organization_models() -> None:
    """Register every per-organization table on OrganizationBase.metadata."""
    for module in ORGANIZATION_MODEL_MODULES:
        importlib.import_module(module)


async def init_db() -> None:
    """Create the shared schema and shared tables if they don't exist."""
    # Import registers the shared models on SharedBase.metadata
    from src.fulqrun.models import shared  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text("CREATE SCHEMA IF NOT EXISTS shared"))
        await conn.run_sync(SharedBase.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
