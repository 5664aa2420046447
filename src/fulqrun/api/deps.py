"""FastAPI dependency injection for organization-scoped resources and authentication.

These dependencies are used in endpoint function signatures to inject
the organization context, database session, Redis client, the
authenticated user, permission checks and the services on app.state.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.core.database import get_organization_session, get_shared_session
from src.fulqrun.core.errors import PermissionDeniedError
from src.fulqrun.core.organization import OrganizationContext, get_current_organization
from src.fulqrun.core.redis import OrganizationRedis, get_organization_redis
from src.fulqrun.core.security import validate_api_key, verify_token
from src.fulqrun.models.organization import User
from src.fulqrun.rbac.defaults import ADMIN_ROLES


async def get_organization() -> OrganizationContext:
    """Get the current organization context (set by OrganizationAuthMiddleware)."""
    return get_current_organization()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get an organization-scoped database session."""
    async for session in get_organization_session():
        yield session


async def get_shared_db() -> AsyncGenerator[AsyncSession, None]:
    """Get a shared-schema database session (for provisioning endpoints)."""
    async for session in get_shared_session():
        yield session


async def get_redis() -> OrganizationRedis:
    """Get an organization-aware Redis client."""
    return get_organization_redis()


async def _load_user(db: AsyncSession, user_id: str, organization_id: str) -> User | None:
    result = await db.execute(
        select(User).where(
            User.id == user_id,
            User.organization_id == organization_id,
            User.is_active == True,  # noqa: E712
        )
    )
    return result.scalar_one_or_none()


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from JWT or API key.

    Raises:
        HTTPException(401): No valid authentication.
        HTTPException(403): The credential belongs to another organization.
    """
    org = get_current_organization()

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        payload = verify_token(auth_header[7:], token_type="access")
        token_org_id = payload.get("organization_id")
        if token_org_id and token_org_id != org.organization_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Token organization does not match request organization context",
            )
        user = await _load_user(db, payload["sub"], org.organization_id)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found or inactive",
            )
        return user

    api_key = request.headers.get("X-API-Key")
    if api_key:
        key_info = await validate_api_key(api_key)
        if not key_info:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
        if key_info["organization_id"] != org.organization_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="API key organization does not match request organization context",
            )
        user = await _load_user(db, key_info["user_id"], org.organization_id)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="API key user not found or inactive",
            )
        return user

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


# Alias for cleaner endpoint signatures
require_auth = Depends(get_current_user)


def get_service(name: str, label: str | None = None) -> Callable[[Request], Any]:
    """Dependency returning ``app.state.<name>``, or 503 when it failed to initialize."""

    def _dependency(request: Request) -> Any:
        service = getattr(request.app.state, name, None)
        if service is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"{label or name.replace('_', ' ').capitalize()} not initialized",
            )
        return service

    return _dependency


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Only users whose base role is admin or super_admin."""
    if user.role not in ADMIN_ROLES:
        raise PermissionDeniedError("Admin access required", {"role": user.role})
    return user


def require_permission(permission_key: str) -> Callable[..., Any]:
    """Dependency factory: 403 unless the user holds ``permission_key``."""

    async def _check(
        user: User = Depends(get_current_user),
        org: OrganizationContext = Depends(get_organization),
        rbac: Any = Depends(get_service("rbac_service", "RBAC")),
    ) -> User:
        if not await rbac.has_permission(org.organization_id, str(user.id), permission_key):
            raise PermissionDeniedError("Insufficient permissions", {"permission": permission_key})
        return user

    return _check
