"""Organization context propagation via Python contextvars.

The OrganizationContext is set by the organization auth middleware at the
start of each request and is readable anywhere in the call stack through
get_current_organization(). Database sessions, Redis keys, metrics labels
and Sentry tags all scope themselves with it.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass

# ── Organization Context ───────────────────────────────────────────────────


@dataclass(frozen=True)
class OrganizationContext:
    """Immutable organization context for the current request."""

    organization_id: str
    organization_slug: str
    schema_name: str  # e.g., "org_acme_pharma"


_organization_context: contextvars.ContextVar[OrganizationContext] = contextvars.ContextVar(
    "organization_context"
)


def get_current_organization() -> OrganizationContext:
    """Get the organization context for the current request.

    Raises RuntimeError if no organization context has been set (i.e., the
    call is not within an organization-scoped request).
    """
    try:
        return _organization_context.get()
    except LookupError:
        raise RuntimeError("No organization context set -- request is not organization-scoped")


def set_organization_context(
    ctx: OrganizationContext,
) -> contextvars.Token[OrganizationContext]:
    """Set the organization context for the current request. Returns a token for reset."""
    return _organization_context.set(ctx)


def reset_organization_context(token: contextvars.Token[OrganizationContext]) -> None:
    """Restore the context that was active before set_organization_context()."""
    _organization_context.reset(token)


def schema_name_for(slug: str) -> str:
    """Schema name for an organization slug: org_{slug with underscores}."""
    return f"org_{slug.replace('-', '_')}"


# ── Paths that skip organization resolution ────────────────────────────────

SKIP_ORGANIZATION_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/v1/organizations",
    "/api/v1/integrations/monday/webhook",
)
