"""Password hashing and JWT token tests."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException
from jose import jwt

from src.fulqrun.config import get_settings
from src.fulqrun.core.security import (
    create_access_token,
    create_refresh_token,
    hash_password,
    verify_password,
    verify_token,
)

CLAIMS = {
    "sub": "33333333-3333-3333-3333-333333333333",
    "organization_id": "11111111-1111-1111-1111-111111111111",
    "organization_slug": "acme-pharma",
}


# ── Passwords ─────────────────────────────────────────────────────────────────


def test_password_round_trip():
    hashed = hash_password("s3cret-pass")
    assert hashed != "s3cret-pass"
    assert verify_password("s3cret-pass", hashed) is True
    assert verify_password("wrong", hashed) is False


def test_hashes_are_salted():
    assert hash_password("same") != hash_password("same")


# ── Tokens ────────────────────────────────────────────────────────────────────


def test_access_token_carries_organization_claims():
    """Access tokens keep the caller's claims and add type, iat and exp."""
    token = create_access_token(CLAIMS)
    settings = get_settings()
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    assert payload["organization_id"] == CLAIMS["organization_id"]
    assert payload["organization_slug"] == "acme-pharma"
    assert payload["type"] == "access"
    assert payload["exp"] - payload["iat"] == settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60


def test_verify_token_returns_payload():
    assert verify_token(create_access_token(CLAIMS))["sub"] == CLAIMS["sub"]
    assert verify_token(create_refresh_token(CLAIMS), token_type="refresh")["type"] == "refresh"


def test_refresh_token_is_not_an_access_token():
    with pytest.raises(HTTPException) as exc:
        verify_token(create_refresh_token(CLAIMS), token_type="access")
    assert exc.value.status_code == 401


def test_expired_token_is_rejected():
    token = create_access_token(CLAIMS, expires_delta=timedelta(seconds=-1))
    with pytest.raises(HTTPException) as exc:
        verify_token(token)
    assert exc.value.headers == {"WWW-Authenticate": "Bearer"}


def test_token_without_subject_is_rejected():
    token = create_access_token({"organization_id": CLAIMS["organization_id"]})
    with pytest.raises(HTTPException):
        verify_token(token)


def test_token_signed_with_another_key_is_rejected():
    token = jwt.encode({**CLAIMS, "type": "access"}, "not-the-secret", algorithm="HS256")
    with pytest.raises(HTTPException):
        verify_token(token)


def test_caller_claims_are_not_mutated():
    claims = dict(CLAIMS)
    create_access_token(claims)
    assert claims == CLAIMS
