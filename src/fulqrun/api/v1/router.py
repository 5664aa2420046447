"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.fulqrun.api.v1 import (
    admin,
    auth,
    contacts,
    dashboard,
    exports,
    health,
    integrations,
    kpis,
    leads,
    opportunities,
    organizations,
    qualification,
    sync,
)

router = APIRouter()

router.include_router(health.router)
router.include_router(organizations.router)
router.include_router(auth.router)
router.include_router(admin.router)
router.include_router(leads.router)
router.include_router(contacts.router)
router.include_router(opportunities.router)
router.include_router(qualification.router)
router.include_router(kpis.router)
router.include_router(exports.router)
router.include_router(dashboard.router)
router.include_router(sync.router)
router.include_router(integrations.router)
