"""REST endpoints for the deal sync trigger and cache health.

GET /deals/sync runs one sync with query options clearFirst, dryRun,
allDeals and maxDeals, and returns the run summary. A run already holding
the sync lease yields 409; a run that aborts yields 500 with the partial
summary. GET /deals/health grades cache freshness from the run log.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from src.dealsync.api.deps import get_deal_repository, get_sync_engine
from src.dealsync.deals.crm.sync import DealSyncEngine
from src.dealsync.deals.errors import SyncInProgressError, SyncRunFailedError
from src.dealsync.deals.health import check_cache_health
from src.dealsync.deals.repository import DealCacheRepository
from src.dealsync.deals.schemas import SyncOptions

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/deals", tags=["deals"])


# ── Shared Execution ─────────────────────────────────────────────────────────


async def execute_sync(engine: DealSyncEngine, options: SyncOptions) -> tuple[int, dict[str, Any]]:
    """Run one sync and map its outcome to (status code, JSON body)."""
    try:
        report = await engine.run(options)
    except SyncInProgressError as exc:
        return status.HTTP_409_CONFLICT, {
            "error": str(exc),
            "isRunning": True,
        }
    except SyncRunFailedError as exc:
        body: dict[str, Any] = {
            "error": str(exc),
            "syncDurationSeconds": exc.duration_seconds,
        }
        if exc.sync_log_id:
            body["syncLogId"] = exc.sync_log_id
        if exc.summary is not None:
            body["summary"] = exc.summary.model_dump(mode="json", by_alias=True, exclude_none=True)
        return status.HTTP_500_INTERNAL_SERVER_ERROR, body
    return status.HTTP_200_OK, report.to_response()


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/sync")
async def trigger_sync(
    clear_first: bool = Query(False, alias="clearFirst"),
    dry_run: bool = Query(False, alias="dryRun"),
    all_deals: bool = Query(False, alias="allDeals"),
    max_deals: int = Query(1000, alias="maxDeals", ge=1),
    engine: DealSyncEngine = Depends(get_sync_engine),
) -> JSONResponse:
    """Pull deals and custom fields from the CRM and upsert them into deals_cache."""
    options = SyncOptions(
        clear_first=clear_first,
        dry_run=dry_run,
        all_deals=all_deals,
        max_deals=max_deals,
    )
    logger.info("api.sync_triggered", **options.model_dump())
    status_code, body = await execute_sync(engine, options)
    return JSONResponse(status_code=status_code, content=body)


@router.get("/health")
async def cache_health(
    repo: DealCacheRepository = Depends(get_deal_repository),
) -> JSONResponse:
    """Grade deal cache freshness from the run log and cached row counts."""
    health = await check_cache_health(repo)
    return JSONResponse(content=health.to_response())
