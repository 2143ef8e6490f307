"""Deal normalization and deduplication -- pure, in-memory transforms.

Turns raw /deals items plus the custom field index into flat
NormalizedDeal rows for deals_cache. Nothing here performs I/O.

Closing date policy for slash-separated dates ``A/B/YYYY``:
- ``A > 12``: day-first (A is the day).
- ``B > 12``: month-first (B is the day).
- both <= 12: day-first, so ``03/04/2024`` is 3 April 2024.
ISO dates (``YYYY-MM-DD``, optionally followed by a time) are taken as-is.
Anything else becomes None.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Hashable, Iterable, Mapping
from datetime import date, datetime, timezone
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError

from src.dealsync.deals.crm.field_mapping import (
    CLOSING_DATE_FIELD_ID,
    DEFAULT_CUSTOM_FIELD_MAP,
    CustomFieldIndex,
)
from src.dealsync.deals.schemas import NormalizedDeal, RawDeal

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_SLASH_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def convert_date_format(value: str | None) -> date | None:
    """Parse a closing date string into a date, or None if unparseable."""
    if not value:
        return None
    text = value.strip()

    match = _SLASH_DATE.match(text)
    if match:
        first, second, year = (int(part) for part in match.groups())
        if first <= 12 and second > 12:
            month, day = first, second
        else:
            day, month = first, second
        try:
            return date(year, month, day)
        except ValueError:
            logger.warning("normalizer.invalid_date", value=value)
            return None

    if _ISO_DATE.match(text):
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            logger.warning("normalizer.invalid_date", value=value)
            return None

    logger.warning("normalizer.unrecognized_date_format", value=value)
    return None


def dedupe_by_key(items: Iterable[T], key: Callable[[T], Hashable]) -> tuple[list[T], int]:
    """Collapse items sharing a key, keeping the last occurrence.

    Surviving items keep the position of the key's first appearance.

    Returns:
        (deduplicated items, number of items removed)
    """
    seen: dict[Hashable, T] = {}
    count = 0
    for item in items:
        count += 1
        seen[key(item)] = item
    return list(seen.values()), count - len(seen)


def parse_raw_deals(items: Iterable[Mapping[str, Any]]) -> tuple[list[RawDeal], int]:
    """Validate raw /deals items, skipping rows that cannot be normalized.

    Returns:
        (valid deals in input order, number of skipped rows)
    """
    deals: list[RawDeal] = []
    skipped = 0
    for item in items:
        try:
            deals.append(RawDeal.model_validate(item))
        except ValidationError as exc:
            skipped += 1
            logger.warning(
                "normalizer.invalid_deal_skipped",
                deal_id=item.get("id") if isinstance(item, Mapping) else None,
                errors=exc.error_count(),
            )
    return deals, skipped


def normalize_deal(
    deal: RawDeal,
    custom_fields: Mapping[int, str],
    field_map: Mapping[int, str] = DEFAULT_CUSTOM_FIELD_MAP,
    synced_at: datetime | None = None,
) -> NormalizedDeal:
    """Flatten one deal and its custom field values into a deals_cache row.

    Allow-listed fields with no value (missing or empty) are stored as None.
    """
    joined = {
        column: (custom_fields.get(field_id) or None)
        for field_id, column in field_map.items()
    }
    raw_closing = custom_fields.get(CLOSING_DATE_FIELD_ID) or None

    return NormalizedDeal(
        deal_id=deal.id,
        title=deal.title or "",
        value=deal.value,
        currency=deal.currency or "BRL",
        status=deal.status or None,
        stage_id=deal.stage or None,
        closing_date=convert_date_format(raw_closing),
        created_date=deal.cdate,
        custom_field_id=str(CLOSING_DATE_FIELD_ID),
        contact_id=deal.contact or None,
        organization_id=deal.organization or None,
        api_updated_at=deal.mdate or deal.cdate,
        last_synced_at=synced_at or datetime.now(timezone.utc),
        sync_status="synced",
        **joined,
    )


def normalize_deals(
    deals: Iterable[RawDeal],
    index: CustomFieldIndex,
    field_map: Mapping[int, str] = DEFAULT_CUSTOM_FIELD_MAP,
    synced_at: datetime | None = None,
) -> tuple[list[NormalizedDeal], int]:
    """Join every deal with its custom fields and dedupe the result by deal_id.

    All rows of one run share the same ``last_synced_at``.

    Returns:
        (one NormalizedDeal per distinct deal id, duplicates removed)
    """
    stamp = synced_at or datetime.now(timezone.utc)
    rows = [normalize_deal(d, index.lookup(d.id), field_map, stamp) for d in deals]
    unique, removed = dedupe_by_key(rows, key=lambda r: r.deal_id)
    if removed:
        logger.warning(
            "normalizer.duplicates_removed",
            before=len(rows),
            after=len(unique),
            removed=removed,
        )
    return unique, removed
