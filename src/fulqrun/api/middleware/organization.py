"""Organization resolution middleware with JWT, API key and header modes.

Resolves the organization from, in order:
1. JWT claims in the Authorization header
2. X-API-Key header (key lookup across organization schemas)
3. X-Organization-ID header (cached in Redis for 5 minutes)

After resolution, sets OrganizationContext in contextvars for the request
scope and records organization_id on request.state for the outer
logging and metrics middleware.
"""

from __future__ import annotations

import json
import logging

import redis.asyncio as aioredis
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from redis.exceptions import RedisError
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.fulqrun.config import get_settings
from src.fulqrun.core.database import get_engine
from src.fulqrun.core.errors import error_body
from src.fulqrun.core.organization import (
    SKIP_ORGANIZATION_PATHS,
    OrganizationContext,
    reset_organization_context,
    schema_name_for,
    set_organization_context,
)
from src.fulqrun.core.security import validate_api_key

logger = logging.getLogger(__name__)

LOOKUP_CACHE_TTL = 300


def lookup_cache_key(organization_id: str) -> str:
    return f"organization:lookup:{organization_id}"


class OrganizationAuthMiddleware(BaseHTTPMiddleware):
    """Resolves the organization for every request outside SKIP_ORGANIZATION_PATHS.

    Requests with no resolvable organization are rejected with 400.
    """

    def __init__(self, app, redis_client: aioredis.Redis | None = None):
        super().__init__(app)
        self._redis = redis_client

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_ORGANIZATION_PATHS):
            return await call_next(request)

        org_ctx = await self._resolve_from_jwt(request)
        if not org_ctx:
            org_ctx = await self._resolve_from_api_key(request)
        if not org_ctx:
            org_ctx = await self._resolve_from_header(request)

        if not org_ctx:
            return JSONResponse(
                status_code=400,
                content=error_body(
                    "Missing organization context",
                    "Provide an Authorization bearer token, X-API-Key, or X-Organization-ID header.",
                ),
            )

        request.state.organization_id = org_ctx.organization_id
        token = set_organization_context(org_ctx)
        try:
            return await call_next(request)
        finally:
            reset_organization_context(token)

    async def _resolve_from_jwt(self, request: Request) -> OrganizationContext | None:
        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return None

        settings = get_settings()
        try:
            payload = jwt.decode(
                auth_header[7:],
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError:
            return None

        organization_id = payload.get("organization_id")
        organization_slug = payload.get("organization_slug")
        if not organization_id or not organization_slug:
            return None

        # A deactivated organization invalidates outstanding tokens
        if not await self._resolve_organization_by_id(organization_id):
            return None

        return OrganizationContext(
            organization_id=organization_id,
            organization_slug=organization_slug,
            schema_name=schema_name_for(organization_slug),
        )

    async def _resolve_from_api_key(self, request: Request) -> OrganizationContext | None:
        api_key = request.headers.get("X-API-Key")
        if not api_key:
            return None

        result = await validate_api_key(api_key)
        if not result:
            return None

        return OrganizationContext(
            organization_id=result["organization_id"],
            organization_slug=result["organization_slug"],
            schema_name=schema_name_for(result["organization_slug"]),
        )

    async def _resolve_from_header(self, request: Request) -> OrganizationContext | None:
        organization_id = request.headers.get("X-Organization-ID")
        if not organization_id:
            return None
        return await self._resolve_organization_by_id(organization_id)

    async def _resolve_organization_by_id(self, organization_id: str) -> OrganizationContext | None:
        """Resolve an active organization by ID, using the Redis lookup cache."""
        cache_key = lookup_cache_key(organization_id)
        if self._redis:
            try:
                cached = await self._redis.get(cache_key)
            except RedisError:
                logger.warning("Redis cache lookup failed for organization %s", organization_id)
                cached = None
            if cached:
                data = json.loads(cached)
                return OrganizationContext(
                    organization_id=data["organization_id"],
                    organization_slug=data["organization_slug"],
                    schema_name=data["schema_name"],
                )

        engine = get_engine()
        async with engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT id, slug, schema_name FROM shared.organizations "
                    "WHERE id::text = :oid AND is_active = true"
                ),
                {"oid": organization_id},
            )
            row = result.first()

        if not row:
            return None

        ctx = OrganizationContext(
            organization_id=str(row.id),
            organization_slug=row.slug,
            schema_name=row.schema_name,
        )

        if self._redis:
            try:
                await self._redis.set(
                    cache_key,
                    json.dumps({
                        "organization_id": ctx.organization_id,
                        "organization_slug": ctx.organization_slug,
                        "schema_name": ctx.schema_name,
                    }),
                    ex=LOOKUP_CACHE_TTL,
                )
            except RedisError:
                logger.warning("Redis cache set failed for organization %s", organization_id)

        return ctx
