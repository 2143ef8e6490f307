"""Scheduled sync trigger.

Called by the platform scheduler with ``Authorization: Bearer <CRON_SECRET>``.
Always runs a full (all deals) sync and wraps the result with a timestamp.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.dealsync.api.deps import get_sync_engine, verify_cron_secret
from src.dealsync.api.v1.sync import execute_sync
from src.dealsync.deals.crm.sync import DealSyncEngine
from src.dealsync.deals.schemas import SyncOptions

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.api_route(
    "/sync-deals",
    methods=["GET", "POST"],
    dependencies=[Depends(verify_cron_secret)],
)
async def cron_sync_deals(
    engine: DealSyncEngine = Depends(get_sync_engine),
) -> JSONResponse:
    logger.info("cron.sync_started")
    status_code, result = await execute_sync(engine, SyncOptions(all_deals=True))
    timestamp = datetime.now(timezone.utc).isoformat()

    if status_code != status.HTTP_200_OK:
        logger.error("cron.sync_failed", status_code=status_code, error=result.get("error"))
        return JSONResponse(
            status_code=status_code,
            content={
                "error": "Scheduled sync failed",
                "details": result.get("error"),
                "timestamp": timestamp,
                "syncResult": result,
            },
        )

    logger.info("cron.sync_complete", upserted=result["summary"].get("dealsUpserted"))
    return JSONResponse(
        content={
            "message": "Scheduled sync completed successfully",
            "timestamp": timestamp,
            "syncResult": result,
        }
    )
