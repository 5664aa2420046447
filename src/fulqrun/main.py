"""FastAPI application factory.

Creates the app with organization middleware, logging middleware, metrics
middleware, CORS, Sentry, the {error, details} exception handlers, lifespan
wiring of every module service onto app.state, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import partial

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.fulqrun.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.fulqrun.api.middleware.organization import OrganizationAuthMiddleware
from src.fulqrun.api.v1.router import router as v1_router
from src.fulqrun.config import get_settings
from src.fulqrun.core.database import close_db, get_organization_session, init_db
from src.fulqrun.core.errors import register_exception_handlers
from src.fulqrun.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.fulqrun.core.redis import close_redis, get_redis_pool


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and module services; close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    redis_client = get_redis_pool()

    # ── Module initialization ───────────────────────────────────────────
    # Each module is wrapped in its own try/except so one failure does not
    # prevent the application from starting; its endpoints answer 503.

    # RBAC
    try:
        from src.fulqrun.rbac.repository import RBACRepository
        from src.fulqrun.rbac.service import RBACService

        app.state.rbac_service = RBACService(RBACRepository(get_organization_session))
        log.info("modules.rbac_initialized")
    except Exception:
        log.warning("modules.rbac_init_failed", exc_info=True)
        app.state.rbac_service = None

    # Qualification (MEDDPICC configuration + scoring)
    try:
        from src.fulqrun.crm.repository import CRMRepository
        from src.fulqrun.qualification.configuration import MEDDPICCConfigurationService
        from src.fulqrun.qualification.repository import MEDDPICCConfigurationRepository
        from src.fulqrun.qualification.service import MEDDPICCScoringService

        config_service = MEDDPICCConfigurationService(
            MEDDPICCConfigurationRepository(get_organization_session)
        )
        app.state.meddpicc_config_service = config_service
        app.state.meddpicc_service = MEDDPICCScoringService(
            CRMRepository(get_organization_session),
            config_service,
            redis_client=redis_client,
            cache_ttl=settings.MEDDPICC_SCORE_CACHE_TTL,
        )
        log.info("modules.qualification_initialized")
    except Exception:
        log.warning("modules.qualification_init_failed", exc_info=True)
        app.state.meddpicc_config_service = None
        app.state.meddpicc_service = None

    # CRM (stage gates come from MEDDPICC scoring when it is available)
    try:
        from src.fulqrun.crm.repository import CRMRepository
        from src.fulqrun.crm.service import CRMService
        from src.fulqrun.services.organization_provisioning import get_organization_settings

        meddpicc_service = app.state.meddpicc_service
        app.state.crm_service = CRMService(
            CRMRepository(get_organization_session),
            settings_loader=get_organization_settings,
            gate_checker=meddpicc_service.unmet_gate_criteria if meddpicc_service else None,
        )
        log.info("modules.crm_initialized")
    except Exception:
        log.warning("modules.crm_init_failed", exc_info=True)
        app.state.crm_service = None

    # Offline sync (managers are per organization, built per request)
    try:
        from src.fulqrun.sync.manager import build_sync_manager

        if app.state.crm_service is None:
            raise RuntimeError("Offline sync requires the CRM service")
        app.state.sync_manager_factory = partial(build_sync_manager, redis_client, app.state.crm_service)
        log.info("modules.sync_initialized")
    except Exception:
        log.warning("modules.sync_init_failed", exc_info=True)
        app.state.sync_manager_factory = None

    # KPI engines
    try:
        from src.fulqrun.kpi.engine import KPIEngine
        from src.fulqrun.kpi.repository import KPIRepository
        from src.fulqrun.kpi.sales import SalesKPICalculator
        from src.fulqrun.kpi.salesman import SalesmanKPIEngine

        kpi_repository = KPIRepository(get_organization_session)
        app.state.kpi_repository = kpi_repository
        app.state.kpi_engine = KPIEngine(kpi_repository, redis_client=redis_client, cache_ttl=settings.KPI_CACHE_TTL)
        app.state.salesman_engine = SalesmanKPIEngine(kpi_repository)
        app.state.sales_calculator = SalesKPICalculator(kpi_repository)
        log.info("modules.kpi_initialized")
    except Exception:
        log.warning("modules.kpi_init_failed", exc_info=True)
        app.state.kpi_repository = None
        app.state.kpi_engine = None
        app.state.salesman_engine = None
        app.state.sales_calculator = None

    # Exports and reports
    try:
        from src.fulqrun.export.data import ExportDataCollector
        from src.fulqrun.export.engine import ExportEngine
        from src.fulqrun.export.reports import ReportBuilder
        from src.fulqrun.export.storage import ExportFileStore

        if app.state.kpi_repository is None:
            raise RuntimeError("Exports require the KPI repository")
        app.state.export_engine = ExportEngine(
            ExportDataCollector(app.state.kpi_repository),
            file_store=ExportFileStore(redis_client),
        )
        app.state.report_builder = ReportBuilder(app.state.sales_calculator, app.state.kpi_repository)
        log.info("modules.export_initialized")
    except Exception:
        log.warning("modules.export_init_failed", exc_info=True)
        app.state.export_engine = None
        app.state.report_builder = None

    # Dashboard
    try:
        from src.fulqrun.dashboard.repository import DashboardRepository
        from src.fulqrun.dashboard.service import DashboardService

        if app.state.crm_service is None:
            raise RuntimeError("Dashboard requires the CRM service")
        app.state.dashboard_service = DashboardService(
            DashboardRepository(get_organization_session),
            app.state.crm_service,
            kpi_engine=app.state.kpi_engine,
            sales_calculator=app.state.sales_calculator,
            kpi_repository=app.state.kpi_repository,
        )
        log.info("modules.dashboard_initialized")
    except Exception:
        log.warning("modules.dashboard_init_failed", exc_info=True)
        app.state.dashboard_service = None

    # Integrations (one HTTP client shared by every connector)
    integration_http: httpx.AsyncClient | None = None
    try:
        from src.fulqrun.integrations.repository import IntegrationRepository
        from src.fulqrun.integrations.service import IntegrationService

        integration_http = httpx.AsyncClient(timeout=settings.INTEGRATION_TIMEOUT)
        app.state.integration_service = IntegrationService(
            IntegrationRepository(get_organization_session),
            crm_service=app.state.crm_service,
            http_client=integration_http,
        )
        log.info("modules.integrations_initialized")
    except Exception:
        log.warning("modules.integrations_init_failed", exc_info=True)
        app.state.integration_service = None

    yield

    if integration_http is not None:
        await integration_http.aclose()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="FulQrun API",
        version="0.1.0",
        description="Sales operations platform: PEAK pipeline, MEDDPICC qualification and pharmaceutical BI",
        lifespan=lifespan,
    )
    register_exception_handlers(app)

    # Middleware is added in reverse order (last added = outermost)

    # Organization middleware (inner -- resolves organization from JWT/API key/header)
    redis_client = get_redis_pool()
    app.add_middleware(OrganizationAuthMiddleware, redis_client=redis_client)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
