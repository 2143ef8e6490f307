"""Administrative endpoints for the sync lease."""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends

from src.dealsync.api.deps import get_deal_repository, verify_admin_key
from src.dealsync.deals.lock import DEFAULT_LOCK_NAME
from src.dealsync.deals.repository import DealCacheRepository

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/reset-sync-lock", dependencies=[Depends(verify_admin_key)])
async def reset_sync_lock(
    repo: DealCacheRepository = Depends(get_deal_repository),
) -> dict:
    """Force-release the sync lease left behind by a crashed or stuck run.

    Does not stop a run that is still executing; it only lets a new run start.
    """
    previous_holder = await repo.get_lock_holder(DEFAULT_LOCK_NAME)
    released = await repo.force_release_lock(DEFAULT_LOCK_NAME)
    logger.warning("admin.sync_lock_reset", released=released, previous_holder=previous_holder)
    return {
        "success": True,
        "message": "Sync lock has been reset" if released else "Sync lock was not held",
        "wasLocked": previous_holder is not None,
        "released": released,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
