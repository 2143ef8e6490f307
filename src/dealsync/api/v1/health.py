"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. The
readiness probe verifies database connectivity; the remote CRM is not
probed, since a sync attempt already records CRM failures in the run log.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.dealsync.config import get_settings
from src.dealsync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database connectivity and CRM configuration. Returns check results dict."""
    checks: dict = {"database": "ok", "crm": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    settings = get_settings()
    if not (settings.AC_BASE_URL and settings.AC_API_TOKEN):
        checks["crm"] = "not_configured"

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 if the database answers, 503 otherwise."""
    checks = await _check_dependencies()
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
