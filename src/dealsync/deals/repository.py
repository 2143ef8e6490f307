"""Deal cache repository -- async persistence for the sync pipeline.

Provides DealCacheRepository with the session_factory callable pattern.
Covers the three sync tables:
- deals_cache: idempotent upsert keyed by deal_id, bulk clear, counts
- deals_sync_log: run creation, completion, failure, latest-run lookup
- sync_locks: lease acquisition, release, and forced reset

Upserts use PostgreSQL INSERT ... ON CONFLICT (deal_id) DO UPDATE with
RETURNING (xmax = 0), which is true for freshly inserted rows and false
for rows rewritten by the conflict branch.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Mapping, Sequence
from datetime import date, datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, literal_column, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.dealsync.deals.models import DealCacheModel, DealSyncLogModel, SyncLockModel
from src.dealsync.deals.schemas import SyncCounters, SyncLogRead, SyncRunStatus

logger = structlog.get_logger(__name__)

# Columns never overwritten by the conflict branch of an upsert
_UPSERT_IMMUTABLE = frozenset({"id", "deal_id", "created_at"})


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_sync_log(model: DealSyncLogModel) -> SyncLogRead:
    """Convert DealSyncLogModel to SyncLogRead schema."""
    return SyncLogRead(
        id=str(model.id),
        sync_started_at=model.sync_started_at,
        sync_completed_at=model.sync_completed_at,
        sync_status=SyncRunStatus(model.sync_status),
        deals_processed=model.deals_processed or 0,
        deals_added=model.deals_added or 0,
        deals_updated=model.deals_updated or 0,
        deals_deleted=model.deals_deleted or 0,
        error_message=model.error_message,
        sync_duration_seconds=model.sync_duration_seconds,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class DealCacheRepository:
    """Async persistence for deals_cache, deals_sync_log and sync_locks.

    Every method opens its own session, so concurrent callers (parallel
    upsert batches) each get an independent transaction.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Deals Cache ─────────────────────────────────────────────────────────

    async def upsert_deals(self, rows: Sequence[Mapping[str, Any]]) -> tuple[int, int]:
        """Insert or update a batch of normalized rows in one transaction.

        Args:
            rows: Column mappings produced by NormalizedDeal.to_row().

        Returns:
            (inserted, updated) row counts for the batch.
        """
        if not rows:
            return 0, 0

        async for session in self._session_factory():
            stmt = pg_insert(DealCacheModel).values([dict(row) for row in rows])
            update_columns = {
                column.name: stmt.excluded[column.name]
                for column in DealCacheModel.__table__.columns
                if column.name in rows[0] and column.name not in _UPSERT_IMMUTABLE
            }
            update_columns["updated_at"] = func.now()
            stmt = stmt.on_conflict_do_update(
                index_elements=[DealCacheModel.deal_id],
                set_=update_columns,
            ).returning(literal_column("(xmax = 0)").label("inserted"))

            result = await session.execute(stmt)
            flags = [bool(row.inserted) for row in result]
            await session.commit()

            inserted = sum(flags)
            return inserted, len(flags) - inserted

    async def clear_deals(self) -> int:
        """Delete every row from deals_cache.

        Returns:
            Number of rows deleted.
        """
        async for session in self._session_factory():
            result = await session.execute(delete(DealCacheModel))
            await session.commit()
            deleted = result.rowcount or 0
            logger.info("repository.deals_cleared", deleted=deleted)
            return deleted

    async def count_deals(self, sync_status: str | None = "synced") -> int:
        """Count cached deals, optionally restricted to one sync_status."""
        async for session in self._session_factory():
            stmt = select(func.count()).select_from(DealCacheModel)
            if sync_status is not None:
                stmt = stmt.where(DealCacheModel.sync_status == sync_status)
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def count_recent_deals(self, closing_since: date) -> int:
        """Count synced deals with a closing date on or after ``closing_since``."""
        async for session in self._session_factory():
            stmt = (
                select(func.count())
                .select_from(DealCacheModel)
                .where(
                    DealCacheModel.sync_status == "synced",
                    DealCacheModel.closing_date.is_not(None),
                    DealCacheModel.closing_date >= closing_since,
                )
            )
            result = await session.execute(stmt)
            return int(result.scalar_one())

    # ── Sync Log ────────────────────────────────────────────────────────────

    async def create_sync_log(self, started_at: datetime) -> str:
        """Insert a ``running`` run-log row and return its id."""
        async for session in self._session_factory():
            model = DealSyncLogModel(
                sync_started_at=started_at,
                sync_status=SyncRunStatus.RUNNING.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return str(model.id)

    async def complete_sync_log(
        self,
        log_id: str,
        completed_at: datetime,
        counters: SyncCounters,
        duration_seconds: int,
    ) -> None:
        """Mark a running run-log row as completed with its counters."""
        async for session in self._session_factory():
            stmt = (
                update(DealSyncLogModel)
                .where(DealSyncLogModel.id == uuid.UUID(log_id))
                .values(
                    sync_completed_at=completed_at,
                    sync_status=SyncRunStatus.COMPLETED.value,
                    deals_processed=counters.processed,
                    deals_added=counters.added,
                    deals_updated=counters.updated,
                    deals_deleted=counters.deleted,
                    sync_duration_seconds=duration_seconds,
                )
            )
            await session.execute(stmt)
            await session.commit()

    async def fail_sync_log(
        self,
        log_id: str,
        completed_at: datetime,
        error_message: str,
        duration_seconds: int,
    ) -> None:
        """Mark a running run-log row as failed."""
        async for session in self._session_factory():
            stmt = (
                update(DealSyncLogModel)
                .where(DealSyncLogModel.id == uuid.UUID(log_id))
                .values(
                    sync_completed_at=completed_at,
                    sync_status=SyncRunStatus.FAILED.value,
                    error_message=error_message,
                    sync_duration_seconds=duration_seconds,
                )
            )
            await session.execute(stmt)
            await session.commit()

    async def get_latest_sync_log(
        self, status: SyncRunStatus | None = None
    ) -> SyncLogRead | None:
        """Most recently started run, optionally filtered by status."""
        async for session in self._session_factory():
            stmt = select(DealSyncLogModel)
            if status is not None:
                stmt = stmt.where(DealSyncLogModel.sync_status == status.value)
            stmt = stmt.order_by(DealSyncLogModel.sync_started_at.desc()).limit(1)
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_sync_log(model)

    async def list_sync_logs(self, limit: int = 5) -> list[SyncLogRead]:
        """Most recent runs, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(DealSyncLogModel)
                .order_by(DealSyncLogModel.sync_started_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_sync_log(m) for m in result.scalars().all()]

    # ── Sync Locks ──────────────────────────────────────────────────────────

    async def acquire_lock(self, name: str, holder: str, ttl_seconds: int) -> bool:
        """Take the named lease if it is free or expired.

        The insert-or-takeover is a single statement, so two callers racing
        for the same lease cannot both succeed.

        Returns:
            True if ``holder`` now owns the lease.
        """
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            stmt = pg_insert(SyncLockModel).values(
                name=name,
                holder=holder,
                acquired_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[SyncLockModel.name],
                set_={
                    "holder": stmt.excluded.holder,
                    "acquired_at": stmt.excluded.acquired_at,
                    "expires_at": stmt.excluded.expires_at,
                },
                where=SyncLockModel.expires_at < now,
            ).returning(SyncLockModel.holder)
            result = await session.execute(stmt)
            owner = result.scalar_one_or_none()
            await session.commit()
            return owner == holder

    async def get_lock_holder(self, name: str) -> str | None:
        """Current holder of an unexpired lease, or None."""
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            stmt = select(SyncLockModel.holder).where(
                SyncLockModel.name == name,
                SyncLockModel.expires_at >= now,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def release_lock(self, name: str, holder: str) -> bool:
        """Release the lease if ``holder`` still owns it."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(SyncLockModel).where(
                    SyncLockModel.name == name,
                    SyncLockModel.holder == holder,
                )
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def force_release_lock(self, name: str) -> bool:
        """Drop the lease regardless of holder (admin reset)."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(SyncLockModel).where(SyncLockModel.name == name)
            )
            await session.commit()
            released = (result.rowcount or 0) > 0
            logger.warning("repository.lock_force_released", lock=name, released=released)
            return released
