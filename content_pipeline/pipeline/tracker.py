"""Entity progress tracker.

Owns the status bookkeeping of every insight and post in a run and enforces
that statuses only move forward: pending -> working -> reviewing -> a resolved
status. FAILED is reachable from any unresolved status. Like the ledger, the
tracker mutates the run's dictionaries in place.
"""

from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

import structlog

from content_pipeline.models import (
    AWAITING_DECISION,
    RESOLVED_STATUSES,
    EntityKind,
    EntityProcessingRecord,
    EntityStatus,
    utc_now,
)

from .errors import EntityTransitionError, UnknownEntityError

logger = structlog.get_logger(__name__)

STATUS_RANK = {
    EntityStatus.PENDING: 0,
    EntityStatus.WORKING: 1,
    EntityStatus.REVIEWING: 2,
    EntityStatus.APPROVED: 3,
    EntityStatus.REJECTED: 3,
    EntityStatus.FAILED: 3,
}


class EntityProgressTracker:
    """Per-run insight and post processing records."""

    def __init__(
        self,
        pipeline_id: str,
        insights: dict[str, EntityProcessingRecord],
        posts: dict[str, EntityProcessingRecord],
    ) -> None:
        self.pipeline_id = pipeline_id
        self._records = {EntityKind.INSIGHT: insights, EntityKind.POST: posts}

    def register_batch(
        self,
        ids: Iterable[str],
        kind: EntityKind,
        parent_id: Optional[str] = None,
        platform: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[str]:
        """Create pending records for newly reported ids.

        Ids that are already tracked are left untouched.

        Returns:
            The ids that were actually registered.
        """
        now = now or utc_now()
        records = self._records[kind]
        registered = []

        for entity_id in ids:
            if entity_id in records:
                continue
            records[entity_id] = EntityProcessingRecord(
                id=entity_id,
                pipeline_id=self.pipeline_id,
                kind=kind,
                parent_id=parent_id,
                platform=platform,
                started_at=now,
            )
            registered.append(entity_id)

        if registered:
            logger.debug("entities_registered", kind=kind.value, count=len(registered))
        return registered

    def contains(self, entity_id: str, kind: EntityKind) -> bool:
        return entity_id in self._records[kind]

    def get(self, entity_id: str, kind: EntityKind) -> EntityProcessingRecord:
        try:
            return self._records[kind][entity_id]
        except KeyError:
            raise UnknownEntityError(entity_id, kind.value) from None

    def transition(
        self,
        entity_id: str,
        kind: EntityKind,
        new_status: EntityStatus,
        timestamp: Optional[datetime] = None,
        error: Optional[str] = None,
        reviewed_by: Optional[str] = None,
    ) -> bool:
        """Move one record to a new status.

        Returns:
            True if the record changed, False if it already had the status.

        Raises:
            UnknownEntityError: If the id is not tracked.
            EntityTransitionError: If the change would move backwards or
                leave a resolved status. The record is not modified.
        """
        record = self.get(entity_id, kind)
        current = record.status

        if current == new_status:
            return False

        if current in RESOLVED_STATUSES:
            raise EntityTransitionError(entity_id, current.value, new_status.value)

        if new_status != EntityStatus.FAILED and STATUS_RANK[new_status] < STATUS_RANK[current]:
            raise EntityTransitionError(entity_id, current.value, new_status.value)

        timestamp = timestamp or utc_now()
        record.status = new_status
        if new_status in RESOLVED_STATUSES:
            record.completed_at = timestamp
        elif record.started_at is None:
            record.started_at = timestamp
        if error is not None:
            record.error = error
        if reviewed_by is not None:
            record.reviewed_by = reviewed_by
        return True

    def records(self, kind: EntityKind) -> list[EntityProcessingRecord]:
        return list(self._records[kind].values())

    def ids_with_status(self, kind: EntityKind, statuses: Iterable[EntityStatus]) -> list[str]:
        wanted = set(statuses)
        return [r.id for r in self._records[kind].values() if r.status in wanted]

    def awaiting_decision(self, kind: EntityKind) -> list[str]:
        return self.ids_with_status(kind, AWAITING_DECISION)

    def approved_ids(self, kind: EntityKind) -> list[str]:
        return self.ids_with_status(kind, [EntityStatus.APPROVED])

    def all_resolved(self, kind: EntityKind) -> bool:
        """True iff no record of the kind still awaits a decision."""
        return not any(r.status in AWAITING_DECISION for r in self._records[kind].values())

    def approved_insight_ids_without_posts(self) -> list[str]:
        """Approved insights that no post record points back to yet."""
        with_posts = {p.parent_id for p in self._records[EntityKind.POST].values()}
        return [
            r.id
            for r in self._records[EntityKind.INSIGHT].values()
            if r.status == EntityStatus.APPROVED and r.id not in with_posts
        ]

    def counts(self, kind: EntityKind) -> dict[EntityStatus, int]:
        return dict(Counter(r.status for r in self._records[kind].values()))

    def count(self, kind: EntityKind) -> int:
        return len(self._records[kind])
