"""Custom field allow-list and the deal -> custom field join index.

Defines:
- DEFAULT_CUSTOM_FIELD_MAP: Maps ActiveCampaign custom field ids to the
  deals_cache columns they populate. Its keys are the default allow-list.
- CLOSING_DATE_FIELD_ID: The custom field holding the deal's closing date.
- CustomFieldIndex: deal id -> (custom field id -> value) lookup.
- build_custom_field_index(): Filters raw dealCustomFieldData entries to an
  allow-list and indexes them by deal.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

import structlog
from pydantic import ValidationError

from src.dealsync.deals.schemas import CustomFieldEntry

logger = structlog.get_logger(__name__)


# ── Custom Field Allow-List ────────────────────────────────────────────────

CLOSING_DATE_FIELD_ID = 5

DEFAULT_CUSTOM_FIELD_MAP: dict[int, str] = {
    CLOSING_DATE_FIELD_ID: "custom_field_value",  # Data Fechamento (raw)
    25: "estado",
    39: "quantidade_de_pares",
    45: "vendedor",
    47: "designer",
    49: "utm_source",
    50: "utm_medium",
    54: "custom_field_54",
}

TARGET_CUSTOM_FIELD_IDS: tuple[int, ...] = tuple(DEFAULT_CUSTOM_FIELD_MAP)


# ── Join Index ─────────────────────────────────────────────────────────────


class CustomFieldIndex:
    """Per-deal custom field values restricted to an allow-list.

    A deal with no allow-listed entries gets an empty mapping from
    ``lookup``, never a KeyError.

    Args:
        values: deal id -> (custom field id -> value).
        allowed_ids: The allow-list the index was filtered with.
        total_entries: Raw entries seen, before filtering.
        target_entries: Entries that matched the allow-list.
        invalid_entries: Entries dropped because they failed validation.
    """

    def __init__(
        self,
        values: dict[str, dict[int, str]],
        allowed_ids: frozenset[int],
        total_entries: int = 0,
        target_entries: int = 0,
        invalid_entries: int = 0,
    ) -> None:
        self._values = values
        self.allowed_ids = allowed_ids
        self.total_entries = total_entries
        self.target_entries = target_entries
        self.invalid_entries = invalid_entries

    def lookup(self, deal_id: str) -> dict[int, str]:
        """Custom field values for ``deal_id`` (a copy; empty on miss)."""
        return dict(self._values.get(str(deal_id), {}))

    @property
    def deals_with_fields(self) -> int:
        return len(self._values)

    def __contains__(self, deal_id: object) -> bool:
        return str(deal_id) in self._values

    def __len__(self) -> int:
        return len(self._values)


def build_custom_field_index(
    entries: Iterable[Mapping[str, Any]],
    allowed_ids: Iterable[int],
) -> CustomFieldIndex:
    """Index raw dealCustomFieldData entries by deal id.

    Entries outside ``allowed_ids`` are discarded before indexing. When the
    same deal/field pair appears more than once, the later entry wins.
    """
    allowed = frozenset(int(i) for i in allowed_ids)
    values: dict[str, dict[int, str]] = {}
    total = 0
    matched = 0
    invalid = 0

    for raw in entries:
        total += 1
        try:
            entry = CustomFieldEntry.model_validate(raw)
        except ValidationError:
            invalid += 1
            continue
        if entry.custom_field_id not in allowed:
            continue
        matched += 1
        values.setdefault(entry.deal_id, {})[entry.custom_field_id] = entry.field_value

    if invalid:
        logger.warning("field_index.invalid_entries", invalid=invalid)

    logger.info(
        "field_index.built",
        total_entries=total,
        target_entries=matched,
        deals_with_fields=len(values),
    )
    return CustomFieldIndex(
        values,
        allowed_ids=allowed,
        total_entries=total,
        target_entries=matched,
        invalid_entries=invalid,
    )
