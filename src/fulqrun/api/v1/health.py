"""Health check endpoints.

Provides liveness (/health), readiness (/health/ready), and startup
(/health/startup) checks. Readiness verifies the database and Redis and
reports which optional modules failed to initialize.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from src.fulqrun.config import get_settings
from src.fulqrun.core.database import get_engine
from src.fulqrun.core.redis import get_redis_pool

router = APIRouter(tags=["health"])

MODULE_SERVICES = (
    "crm_service",
    "rbac_service",
    "meddpicc_service",
    "kpi_engine",
    "export_engine",
    "dashboard_service",
    "integration_service",
    "sync_manager_factory",
)


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database and Redis connectivity and module initialization."""
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        if not await get_redis_pool().ping():
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except (RedisError, OSError) as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    checks["modules"] = {
        name: "ok" if getattr(request.app.state, name, None) is not None else "unavailable"
        for name in MODULE_SERVICES
    }
    return checks


def _healthy(checks: dict) -> bool:
    return checks.get("database") == "ok" and checks.get("redis") == "ok"


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 when the database and Redis answer, 503 otherwise."""
    checks = await _check_dependencies(request)
    healthy = _healthy(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )


@router.get("/health/startup")
async def startup_check(request: Request):
    """Startup check: same as readiness, reported as started/starting."""
    checks = await _check_dependencies(request)
    healthy = _healthy(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "started" if healthy else "starting", "checks": checks},
    )
