"""Pydantic schemas for authentication API endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class LoginRequest(BaseModel):
    """Email/password login. The organization comes from X-Organization-ID."""

    email: EmailStr = Field(..., description="User email address")
    password: str = Field(..., min_length=1, description="User password")


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., description="Valid refresh token")


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Human-readable name for the API key")


class ApiKeyResponse(BaseModel):
    """Newly created API key.

    The raw ``key`` is returned once; only its bcrypt hash is stored.
    """

    id: str
    name: str
    key: str
    created_at: datetime | None = None


class UserResponse(BaseModel):
    """Current user info."""

    id: str
    email: str
    full_name: str | None = None
    role: str
    organization_id: str
    organization_slug: str
