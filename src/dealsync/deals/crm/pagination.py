"""Paginated collection fetcher for counted, offset-paginated CRM endpoints.

A ``limit=1`` probe reveals ``meta.total``; the page requests covering the
(optionally capped) total are generated up front and handed to the
RateLimitedScheduler, then the item arrays are concatenated in ascending
offset order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import structlog

from src.dealsync.deals.crm.adapter import CRMSource
from src.dealsync.deals.crm.scheduler import RateLimitedScheduler
from src.dealsync.deals.errors import CRMResponseError
from src.dealsync.deals.schemas import CollectionFetch, RequestFailure

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PageRequest:
    """One page of a collection."""

    collection: str
    limit: int
    offset: int

    def __str__(self) -> str:
        return f"{self.collection}?limit={self.limit}&offset={self.offset}"


def plan_pages(
    collection: str, total: int, page_size: int, cap: int | None = None
) -> list[PageRequest]:
    """Page requests covering the first ``min(total, cap)`` items.

    The final page's limit is trimmed so a cap that is not a multiple of
    the page size still yields exactly ``cap`` items.
    """
    target = total if cap is None else min(total, cap)
    if target <= 0:
        return []
    pages = math.ceil(target / page_size)
    return [
        PageRequest(
            collection=collection,
            limit=min(page_size, target - page * page_size),
            offset=page * page_size,
        )
        for page in range(pages)
    ]


class PaginatedFetcher:
    """Retrieves an entire counted collection through the batch scheduler.

    Args:
        source: CRM source serving the pages.
        scheduler: Rate-limited scheduler shared by all page requests.
        page_size: Items per page request (the API maximum is 100).
    """

    def __init__(
        self,
        source: CRMSource,
        scheduler: RateLimitedScheduler[PageRequest],
        page_size: int = 100,
    ) -> None:
        self._source = source
        self._scheduler = scheduler
        self._page_size = page_size

    async def probe_total(self, collection: str) -> int:
        """Ask for a single item to learn the collection size.

        Raises:
            CRMResponseError: The probe exhausted its retries or the
                response has no usable ``meta.total``.
        """
        probe = PageRequest(collection=collection, limit=1, offset=0)
        outcome = await self._scheduler.run([probe], self._send)
        if outcome.errors:
            raise CRMResponseError(
                f"Probe for {collection} failed: {outcome.errors[0].error}"
            )
        payload = outcome.results[0]
        meta = payload.get("meta") if isinstance(payload, dict) else None
        if not isinstance(meta, dict) or "total" not in meta:
            raise CRMResponseError(f"Probe for {collection} returned no meta.total")
        try:
            return int(meta["total"])
        except (TypeError, ValueError) as exc:
            raise CRMResponseError(
                f"Probe for {collection} returned non-numeric meta.total: {meta['total']!r}"
            ) from exc

    async def fetch_all(self, collection: str, cap: int | None = None) -> CollectionFetch:
        """Fetch every page of ``collection`` up to ``cap`` items (None = unbounded)."""
        total = await self.probe_total(collection)
        requests = plan_pages(collection, total, self._page_size, cap)

        logger.info(
            "pagination.fetch_started",
            collection=collection,
            total_available=total,
            cap=cap,
            pages=len(requests),
        )

        outcome = await self._scheduler.run(requests, self._send)

        items: list[dict[str, Any]] = []
        errors = list(outcome.errors)
        for payload in outcome.results:
            page_items = payload.get(collection) if isinstance(payload, dict) else None
            if not isinstance(page_items, list):
                errors.append(
                    RequestFailure(
                        url=collection,
                        error=f"page response has no '{collection}' array",
                    )
                )
                continue
            items.extend(page_items)

        if cap is not None:
            items = items[: min(total, cap)]

        logger.info(
            "pagination.fetch_complete",
            collection=collection,
            items=len(items),
            errors=len(errors),
        )
        return CollectionFetch(total=total, pages=len(requests), items=items, errors=errors)

    async def _send(self, request: PageRequest) -> dict[str, Any]:
        return await self._source.get_page(request.collection, request.limit, request.offset)
