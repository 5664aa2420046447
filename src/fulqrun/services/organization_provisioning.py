"""Organization provisioning service.

Creates a new organization with its own PostgreSQL schema holding every
per-organization table, RLS policies on each of them, the default RBAC
roles and permissions, and a Redis namespace.
"""

from __future__ import annotations

import json
import re
import uuid
from typing import Any

import structlog
from redis.exceptions import RedisError
from sqlalchemy import text

from src.fulqrun.core.database import (
    ORG_SCHEMA_PLACEHOLDER,
    OrganizationBase,
    get_engine,
    get_organization_session,
    import_organization_models,
)
from src.fulqrun.core.errors import ConflictError, NotFoundError, ValidationFailedError
from src.fulqrun.core.organization import (
    OrganizationContext,
    reset_organization_context,
    schema_name_for,
    set_organization_context,
)
from src.fulqrun.core.redis import get_redis_pool, organization_key
from src.fulqrun.rbac.repository import RBACRepository
from src.fulqrun.rbac.service import RBACService

logger = structlog.get_logger(__name__)

# Lowercase alphanumeric + hyphens, 3-50 chars, alphanumeric at both ends
SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{1,48}[a-z0-9]$")

SLUG_CACHE_TTL = 300


def slug_cache_key(slug: str) -> str:
    return f"organization:slug:{slug}"


def _row_to_dict(row: Any) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "slug": row.slug,
        "name": row.name,
        "schema_name": row.schema_name,
        "is_active": row.is_active,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def _create_organization_tables(conn: Any, schema_name: str) -> None:
    import_organization_models()

    def _create(sync_conn: Any) -> None:
        translated = sync_conn.execution_options(
            schema_translate_map={ORG_SCHEMA_PLACEHOLDER: schema_name}
        )
        OrganizationBase.metadata.create_all(translated)

    await conn.run_sync(_create)

    for table in OrganizationBase.metadata.sorted_tables:
        qualified = f'"{schema_name}".{table.name}'
        await conn.execute(text(f"ALTER TABLE {qualified} ENABLE ROW LEVEL SECURITY"))
        await conn.execute(text(f"ALTER TABLE {qualified} FORCE ROW LEVEL SECURITY"))
        await conn.execute(text(f"""
            CREATE POLICY organization_isolation ON {qualified}
            FOR ALL
            USING (organization_id::text = current_setting('app.current_organization_id', true))
            WITH CHECK (organization_id::text = current_setting('app.current_organization_id', true))
        """))


async def _seed_rbac(organization_id: str, slug: str, schema_name: str) -> dict[str, int]:
    token = set_organization_context(
        OrganizationContext(organization_id=organization_id, organization_slug=slug, schema_name=schema_name)
    )
    try:
        return await RBACService(RBACRepository(get_organization_session)).seed_defaults(organization_id)
    finally:
        reset_organization_context(token)


async def provision_organization(slug: str, name: str) -> dict:
    """Provision a new organization with isolated schema, RLS, roles and Redis namespace.

    Raises:
        ValidationFailedError: Invalid slug format.
        ConflictError: An organization with the slug already exists.
    """
    if not SLUG_PATTERN.match(slug):
        raise ValidationFailedError(
            "Slug must be 3-50 chars, lowercase alphanumeric and hyphens only, "
            "and must start and end with an alphanumeric character.",
            {"slug": slug},
        )

    schema_name = schema_name_for(slug)
    organization_id = uuid.uuid4()

    engine = get_engine()
    async with engine.begin() as conn:
        result = await conn.execute(
            text("SELECT id FROM shared.organizations WHERE slug = :slug"),
            {"slug": slug},
        )
        if result.first():
            raise ConflictError(f"Organization with slug '{slug}' already exists", {"slug": slug})

        await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"'))
        await _create_organization_tables(conn, schema_name)

        await conn.execute(
            text("""
                INSERT INTO shared.organizations (id, slug, name, schema_name, is_active, settings, created_at)
                VALUES (:id, :slug, :name, :schema_name, true, '{}'::json, now())
            """),
            {"id": organization_id, "slug": slug, "name": name, "schema_name": schema_name},
        )

    seeded = await _seed_rbac(str(organization_id), slug, schema_name)

    try:
        await get_redis_pool().set(organization_key(str(organization_id), "initialized"), "true")
    except RedisError:
        logger.warning("organization.redis_init_failed", slug=slug)

    logger.info(
        "organization.provisioned",
        organization_id=str(organization_id),
        slug=slug,
        schema_name=schema_name,
        **seeded,
    )
    return {
        "organization_id": str(organization_id),
        "slug": slug,
        "name": name,
        "schema_name": schema_name,
    }


async def list_organizations() -> list[dict]:
    """List all active organizations."""
    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(
            text(
                "SELECT id, slug, name, schema_name, is_active, created_at "
                "FROM shared.organizations WHERE is_active = true ORDER BY created_at"
            )
        )
        return [_row_to_dict(row) for row in result.fetchall()]


async def get_organization_by_slug(slug: str) -> dict | None:
    """Look up an organization by slug. Cached in Redis for 5 minutes."""
    redis = get_redis_pool()
    try:
        cached = await redis.get(slug_cache_key(slug))
    except RedisError:
        cached = None
    if cached:
        return json.loads(cached)

    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(
            text(
                "SELECT id, slug, name, schema_name, is_active, created_at "
                "FROM shared.organizations WHERE slug = :slug AND is_active = true"
            ),
            {"slug": slug},
        )
        row = result.first()
    if not row:
        return None

    data = _row_to_dict(row)
    try:
        await redis.set(slug_cache_key(slug), json.dumps(data), ex=SLUG_CACHE_TTL)
    except RedisError:
        logger.warning("organization.slug_cache_failed", slug=slug)
    return data


async def get_organization_by_id(organization_id: str) -> dict | None:
    """Look up an active organization by id."""
    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(
            text(
                "SELECT id, slug, name, schema_name, is_active, created_at "
                "FROM shared.organizations WHERE id::text = :oid AND is_active = true"
            ),
            {"oid": organization_id},
        )
        row = result.first()
    return _row_to_dict(row) if row else None


async def get_organization_settings(organization_id: str) -> dict | None:
    """The organization's ``settings`` JSON (custom scoring rules and similar)."""
    engine = get_engine()
    async with engine.connect() as conn:
        result = await conn.execute(
            text("SELECT settings FROM shared.organizations WHERE id::text = :oid"),
            {"oid": organization_id},
        )
        row = result.first()
    if row is None:
        return None
    settings = row.settings
    return (json.loads(settings) if isinstance(settings, str) else settings) or {}


async def update_organization_settings(organization_id: str, changes: dict[str, Any]) -> dict:
    """Merge ``changes`` into the organization's settings and return the result.

    Raises:
        NotFoundError: Unknown organization.
    """
    current = await get_organization_settings(organization_id)
    if current is None:
        raise NotFoundError("Organization not found", {"organization_id": organization_id})
    merged = {**current, **changes}
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(
            text(
                "UPDATE shared.organizations SET settings = CAST(:settings AS json), updated_at = now() "
                "WHERE id::text = :oid"
            ),
            {"settings": json.dumps(merged), "oid": organization_id},
        )
    logger.info("organization.settings_updated", organization_id=organization_id, keys=sorted(changes))
    return merged
