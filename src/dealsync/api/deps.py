"""FastAPI dependency injection for sync services and trigger authentication.

Services are built once in the application lifespan and stored on
``app.state``; these dependencies hand them to endpoints, returning 503
when startup did not initialize them. The secret checks guard the
scheduled trigger and the admin lock reset with Bearer tokens.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Request, status

from src.dealsync.config import Settings, get_settings
from src.dealsync.deals.crm.sync import DealSyncEngine
from src.dealsync.deals.repository import DealCacheRepository


def get_sync_engine(request: Request) -> DealSyncEngine:
    """Retrieve DealSyncEngine from app.state, 503 if not available."""
    engine = getattr(request.app.state, "sync_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal sync not initialized",
        )
    return engine


def get_deal_repository(request: Request) -> DealCacheRepository:
    """Retrieve DealCacheRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "deal_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Deal cache not initialized",
        )
    return repo


def _check_bearer(request: Request, expected: str, name: str) -> None:
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} is not configured",
        )
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer ") or not secrets.compare_digest(
        auth_header[7:].encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def verify_cron_secret(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``."""
    _check_bearer(request, settings.CRON_SECRET, "CRON_SECRET")


async def verify_admin_key(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """Require ``Authorization: Bearer <ADMIN_API_KEY>``."""
    _check_bearer(request, settings.ADMIN_API_KEY, "ADMIN_API_KEY")
