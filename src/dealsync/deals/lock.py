"""Cross-process sync lease backed by the sync_locks table."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from src.dealsync.deals.errors import SyncInProgressError

if TYPE_CHECKING:
    from src.dealsync.deals.repository import DealCacheRepository

logger = structlog.get_logger(__name__)

DEFAULT_LOCK_NAME = "deals_sync"


class SyncLease:
    """Named lease with an expiry; at most one holder at a time.

    An expired lease can be taken over, so a crashed run blocks new runs
    for at most ``ttl_seconds``.
    """

    def __init__(
        self,
        repository: DealCacheRepository,
        name: str = DEFAULT_LOCK_NAME,
        ttl_seconds: int = 300,
    ) -> None:
        self._repository = repository
        self.name = name
        self.ttl_seconds = ttl_seconds

    async def acquire(self, holder: str | None = None) -> str:
        """Take the lease, returning the holder token.

        Raises:
            SyncInProgressError: Another holder owns an unexpired lease.
        """
        token = holder or uuid.uuid4().hex
        acquired = await self._repository.acquire_lock(self.name, token, self.ttl_seconds)
        if not acquired:
            current = await self._repository.get_lock_holder(self.name)
            logger.warning("lock.contended", lock=self.name, holder=current)
            raise SyncInProgressError(self.name, current)
        logger.info("lock.acquired", lock=self.name, holder=token, ttl=self.ttl_seconds)
        return token

    async def release(self, holder: str) -> bool:
        released = await self._repository.release_lock(self.name, holder)
        logger.info("lock.released", lock=self.name, holder=holder, released=released)
        return released

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[str]:
        """Hold the lease for the duration of the block.

        A failed release is logged, not raised; the lease then lapses after
        ``ttl_seconds`` and the block's own outcome stands.
        """
        token = await self.acquire()
        try:
            yield token
        finally:
            try:
                await self.release(token)
            except Exception as exc:
                logger.error(
                    "lock.release_failed",
                    lock=self.name,
                    holder=token,
                    ttl=self.ttl_seconds,
                    error=repr(exc),
                )
