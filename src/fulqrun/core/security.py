"""JWT authentication, password hashing, and API key validation.

Provides the security primitives used by the auth endpoints and the
organization auth middleware.

Uses bcrypt directly (not passlib).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import bcrypt
from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.fulqrun.config import get_settings

logger = logging.getLogger(__name__)

# ── Password Hashing ──────────────────────────────────────────────────────────


def hash_password(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a plaintext password against its bcrypt hash."""
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


# ── JWT Token Creation ────────────────────────────────────────────────────────


def _encode(data: dict, token_type: str, expire_delta: timedelta) -> str:
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({
        "exp": now + expire_delta,
        "iat": now,
        "type": token_type,
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token with organization-scoped claims.

    The data dict should contain at minimum:
    - sub: user_id (str)
    - organization_id: organization UUID (str)
    - organization_slug: organization slug (str)
    """
    settings = get_settings()
    return _encode(
        data,
        "access",
        expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_refresh_token(data: dict) -> str:
    """Create a JWT refresh token with the longer refresh expiry."""
    settings = get_settings()
    return _encode(data, "refresh", timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS))


# ── JWT Token Verification ────────────────────────────────────────────────────


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Args:
        token: The JWT string.
        token_type: Expected token type ("access" or "refresh").

    Returns:
        The decoded payload dict.

    Raises:
        HTTPException(401): If the token is invalid, expired, or wrong type.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if payload.get("type") != token_type or not payload.get("sub"):
        raise credentials_exception
    return payload


# ── API Key Validation ────────────────────────────────────────────────────────


async def validate_api_key(api_key: str) -> dict | None:
    """Look up an API key and return the owning user and organization.

    Iterates through the active organization schemas, sets the RLS variable
    for each, and compares the key against the stored bcrypt hashes.

    Returns a dict with organization_id, organization_slug, user_id and
    user_email, or None if no active key matches.
    """
    from sqlalchemy import text

    from src.fulqrun.core.database import get_engine

    engine = get_engine()

    async with engine.connect() as conn:
        result = await conn.execute(
            text(
                "SELECT schema_name, slug, id::text AS organization_id "
                "FROM shared.organizations WHERE is_active = true"
            )
        )
        organizations = result.fetchall()

        for org_row in organizations:
            schema = org_row.schema_name
            try:
                await conn.execute(
                    text("SELECT set_config('app.current_organization_id', :org_id, false)"),
                    {"org_id": org_row.organization_id},
                )
                await conn.commit()

                key_result = await conn.execute(
                    text(f"""
                        SELECT ak.id::text AS key_id, ak.key_hash, ak.user_id::text AS user_id,
                               u.email
                        FROM "{schema}".api_keys ak
                        JOIN "{schema}".users u ON ak.user_id = u.id
                        WHERE ak.is_active = true AND u.is_active = true
                    """)
                )
                for key_row in key_result.fetchall():
                    if verify_password(api_key, key_row.key_hash):
                        await conn.execute(
                            text(f'UPDATE "{schema}".api_keys SET last_used_at = NOW() WHERE id::text = :key_id'),
                            {"key_id": key_row.key_id},
                        )
                        await conn.commit()
                        return {
                            "organization_id": org_row.organization_id,
                            "organization_slug": org_row.slug,
                            "user_id": key_row.user_id,
                            "user_email": key_row.email,
                        }
            except Exception as e:
                # Schema may predate the api_keys table
                logger.warning("API key lookup failed for schema %s: %s", schema, e)
                await conn.rollback()
                continue

    return None
