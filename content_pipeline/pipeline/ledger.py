"""Blocking-item ledger.

Tracks the items of human attention that gate a run. The ledger wraps the
run's own ``blocking_items`` list and mutates it in place, so it must only be
built over a run the caller exclusively owns.
"""

from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

import structlog

from content_pipeline.models import (
    AWAITING_DECISION,
    BlockingItem,
    BlockingItemType,
    EntityKind,
    EntityProcessingRecord,
    Priority,
    utc_now,
)

logger = structlog.get_logger(__name__)

REVIEW_ITEM_TYPES = {
    EntityKind.INSIGHT: BlockingItemType.INSIGHT_REVIEW,
    EntityKind.POST: BlockingItemType.POST_REVIEW,
}


def review_item_id(kind: EntityKind, entity_id: str) -> str:
    """Stable blocking item id for the review of one entity."""
    return f"review-{kind.value}-{entity_id}"


def intervention_item_id(entity_id: str) -> str:
    return f"intervention-{entity_id}"


def _describe(record: EntityProcessingRecord) -> str:
    if record.kind == EntityKind.POST and record.platform:
        return f"Review required for {record.platform} post {record.id}"
    return f"Review required for {record.kind.value} {record.id}"


class BlockingItemLedger:
    """Add, resolve and count the blocking items of one run."""

    def __init__(self, items: list[BlockingItem]) -> None:
        self._items = items

    @property
    def items(self) -> list[BlockingItem]:
        return list(self._items)

    def add_for_review(
        self,
        records: Iterable[EntityProcessingRecord],
        kind: EntityKind,
        now: Optional[datetime] = None,
    ) -> list[BlockingItem]:
        """Create one review item per record still awaiting a decision.

        Records that already have an item are skipped, so re-entering a
        review stage never duplicates items.

        Returns:
            The newly created items.
        """
        now = now or utc_now()
        tracked = {item.id for item in self._items}
        created = []

        for record in records:
            if record.kind != kind or record.status not in AWAITING_DECISION:
                continue
            item_id = review_item_id(kind, record.id)
            if item_id in tracked:
                continue
            item = BlockingItem(
                id=item_id,
                type=REVIEW_ITEM_TYPES[kind],
                entity_id=record.id,
                entity_kind=kind,
                priority=Priority.MEDIUM,
                description=_describe(record),
                created_at=now,
            )
            self._items.append(item)
            tracked.add(item_id)
            created.append(item)

        if created:
            logger.debug("blocking_items_added", kind=kind.value, count=len(created))
        return created

    def add_manual_intervention(
        self,
        entity_id: str,
        description: str,
        priority: Priority = Priority.HIGH,
        kind: Optional[EntityKind] = None,
        now: Optional[datetime] = None,
    ) -> BlockingItem:
        """Track a manual intervention; returns the existing item if present."""
        item_id = intervention_item_id(entity_id)
        for item in self._items:
            if item.id == item_id:
                return item

        item = BlockingItem(
            id=item_id,
            type=BlockingItemType.MANUAL_INTERVENTION,
            entity_id=entity_id,
            entity_kind=kind,
            priority=priority,
            description=description,
            created_at=now or utc_now(),
        )
        self._items.append(item)
        return item

    def resolve(
        self,
        item_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        kind: Optional[EntityKind] = None,
        resolved_by: Optional[str] = None,
    ) -> bool:
        """Remove exactly one matching item.

        Matches by item id, or by entity id (optionally narrowed by kind).
        A missing item is not an error: a reviewer click racing an
        auto-approval sweep may resolve the same item twice.

        Returns:
            True if an item was removed.
        """
        for index, item in enumerate(self._items):
            if item_id is not None and item.id != item_id:
                continue
            if item_id is None:
                if entity_id is None or item.entity_id != entity_id:
                    continue
                if kind is not None and item.entity_kind != kind:
                    continue
            del self._items[index]
            logger.debug(
                "blocking_item_resolved",
                item_id=item.id,
                entity_id=item.entity_id,
                resolved_by=resolved_by,
            )
            return True
        return False

    def clear_by_type(self, item_type: BlockingItemType) -> int:
        """Remove every item of one type.

        Returns:
            Number of items removed.
        """
        before = len(self._items)
        self._items[:] = [item for item in self._items if item.type != item_type]
        removed = before - len(self._items)
        if removed:
            logger.info("blocking_items_cleared", item_type=item_type.value, removed=removed)
        return removed

    def count(self, item_type: Optional[BlockingItemType] = None) -> int:
        if item_type is None:
            return len(self._items)
        return sum(1 for item in self._items if item.type == item_type)

    def by_priority(self) -> dict[Priority, int]:
        counts = Counter(item.priority for item in self._items)
        return {priority: counts[priority] for priority in Priority if counts[priority]}

    def by_type(self) -> dict[BlockingItemType, int]:
        counts = Counter(item.type for item in self._items)
        return {item_type: counts[item_type] for item_type in BlockingItemType if counts[item_type]}

    def ids(self) -> list[str]:
        return [item.id for item in self._items]
