"""Authentication API endpoints.

Provides login, token refresh, current user info, and API key management.
Login and refresh resolve the organization from X-Organization-ID.
"""

from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.fulqrun.api.deps import get_current_user, get_db
from src.fulqrun.core.organization import OrganizationContext, get_current_organization
from src.fulqrun.core.security import (
    create_access_token,
    create_refresh_token,
    hash_password,
    verify_password,
    verify_token,
)
from src.fulqrun.models.organization import ApiKey, User
from src.fulqrun.schemas.auth import (
    ApiKeyCreate,
    ApiKeyResponse,
    LoginRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _issue_tokens(user: User, org: OrganizationContext) -> TokenResponse:
    claims = {
        "sub": str(user.id),
        "organization_id": str(user.organization_id),
        "organization_slug": org.organization_slug,
        "email": user.email,
        "role": user.role,
    }
    return TokenResponse(
        access_token=create_access_token(claims),
        refresh_token=create_refresh_token(claims),
    )


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Authenticate a user by email and password and return JWT tokens."""
    org = get_current_organization()
    result = await db.execute(
        select(User).where(
            User.email == body.email,
            User.organization_id == org.organization_id,
            User.is_active == True,  # noqa: E712
        )
    )
    user = result.scalar_one_or_none()

    # Same message for unknown email and wrong password
    if not user or not user.hashed_password or not verify_password(body.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    return _issue_tokens(user, org)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(body: TokenRefreshRequest, db: AsyncSession = Depends(get_db)):
    """Exchange a valid refresh token for a new token pair."""
    payload = verify_token(body.refresh_token, token_type="refresh")
    org = get_current_organization()
    result = await db.execute(
        select(User).where(
            User.id == payload["sub"],
            User.organization_id == org.organization_id,
            User.is_active == True,  # noqa: E712
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return _issue_tokens(user, org)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    org = get_current_organization()
    return UserResponse(
        id=str(current_user.id),
        email=current_user.email,
        full_name=current_user.full_name,
        role=current_user.role,
        organization_id=str(current_user.organization_id),
        organization_slug=org.organization_slug,
    )


@router.post("/api-keys", response_model=ApiKeyResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    body: ApiKeyCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create an API key for the authenticated user.

    The raw key is returned only once; store it securely.
    """
    raw_key = secrets.token_urlsafe(32)
    api_key = ApiKey(
        organization_id=current_user.organization_id,
        user_id=current_user.id,
        key_hash=hash_password(raw_key),
        name=body.name,
    )
    db.add(api_key)
    await db.commit()
    await db.refresh(api_key)

    return ApiKeyResponse(
        id=str(api_key.id),
        name=api_key.name,
        key=raw_key,
        created_at=api_key.created_at,
    )
