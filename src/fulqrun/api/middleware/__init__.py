"""API middleware package."""

from src.fulqrun.api.middleware.logging import LoggingMiddleware
from src.fulqrun.api.middleware.organization import OrganizationAuthMiddleware

__all__ = ["LoggingMiddleware", "OrganizationAuthMiddleware"]
