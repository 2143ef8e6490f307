"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry,
lifespan events for database initialization and sync service wiring,
the health routes, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.dealsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealsync.api.v1 import health
from src.dealsync.api.v1.router import router as v1_router
from src.dealsync.config import get_settings
from src.dealsync.core.database import close_db, get_session, init_db
from src.dealsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.dealsync.deals.crm.activecampaign import ActiveCampaignSource
from src.dealsync.deals.crm.sync import DealSyncEngine
from src.dealsync.deals.repository import DealCacheRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and sync services; close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Sync Services ───────────────────────────────────────────────────
    # Missing CRM credentials do not block startup; each sync attempt
    # fails with a recorded run-log entry until they are set.

    source = ActiveCampaignSource(
        base_url=settings.AC_BASE_URL,
        api_token=settings.AC_API_TOKEN,
        timeout=settings.SYNC_REQUEST_TIMEOUT_SECONDS,
    )
    repository = DealCacheRepository(session_factory=get_session)
    app.state.deal_repository = repository
    app.state.sync_engine = DealSyncEngine(
        source=source,
        repository=repository,
        rate_limit=settings.rate_limit_config(),
        upsert=settings.upsert_config(),
        custom_field_map=settings.custom_field_map(),
        page_size=settings.SYNC_PAGE_SIZE,
        lock_ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS,
    )
    if not (settings.AC_BASE_URL and settings.AC_API_TOKEN):
        log.warning("startup.crm_not_configured")
    log.info(
        "startup.sync_engine_initialized",
        custom_fields=sorted(settings.custom_field_map()),
        page_size=settings.SYNC_PAGE_SIZE,
    )

    yield

    await source.aclose()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Deal Sync API",
        version="0.1.0",
        description="Rate-limited CRM deal sync into the deals_cache table",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router, prefix="/api/v1")

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
