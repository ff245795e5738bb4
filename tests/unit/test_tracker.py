"""Unit tests for the entity progress tracker."""

import pytest

from content_pipeline.models import EntityKind, EntityStatus
from content_pipeline.pipeline import EntityProgressTracker, EntityTransitionError, UnknownEntityError


@pytest.fixture
def tracker() -> EntityProgressTracker:
    return EntityProgressTracker("pipeline-test", {}, {})


class TestRegistration:
    """Tests for registering entities."""

    def test_register_creates_pending_records(self, tracker, start_time):
        registered = tracker.register_batch(["i1", "i2"], EntityKind.INSIGHT, now=start_time)

        assert registered == ["i1", "i2"]
        record = tracker.get("i1", EntityKind.INSIGHT)
        assert record.status == EntityStatus.PENDING
        assert record.pipeline_id == "pipeline-test"
        assert record.started_at == start_time

    def test_register_skips_known_ids(self, tracker):
        tracker.register_batch(["i1"], EntityKind.INSIGHT)

        registered = tracker.register_batch(["i1", "i2", "i2"], EntityKind.INSIGHT)

        assert registered == ["i2"]
        assert tracker.count(EntityKind.INSIGHT) == 2

    def test_posts_keep_parent_and_platform(self, tracker):
        tracker.register_batch(["p1"], EntityKind.POST, parent_id="i1", platform="x")

        post = tracker.get("p1", EntityKind.POST)
        assert post.parent_id == "i1"
        assert post.platform == "x"

    def test_kinds_are_separate(self, tracker):
        tracker.register_batch(["same"], EntityKind.INSIGHT)

        assert tracker.contains("same", EntityKind.INSIGHT)
        assert not tracker.contains("same", EntityKind.POST)

    def test_tracker_writes_through_to_given_dicts(self):
        insights = {}
        tracker = EntityProgressTracker("pipeline-test", insights, {})

        tracker.register_batch(["i1"], EntityKind.INSIGHT)

        assert "i1" in insights


class TestTransitions:
    """Tests for forward-only status changes."""

    def test_forward_transition(self, tracker, start_time):
        tracker.register_batch(["i1"], EntityKind.INSIGHT)

        changed = tracker.transition(
            "i1", EntityKind.INSIGHT, EntityStatus.APPROVED, timestamp=start_time, reviewed_by="ana"
        )

        assert changed is True
        record = tracker.get("i1", EntityKind.INSIGHT)
        assert record.completed_at == start_time
        assert record.reviewed_by == "ana"

    def test_same_status_is_a_no_op(self, tracker):
        tracker.register_batch(["i1"], EntityKind.INSIGHT)
        tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.APPROVED)

        assert tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.APPROVED) is False

    def test_resolved_status_is_final(self, tracker):
        tracker.register_batch(["i1"], EntityKind.INSIGHT)
        tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.REJECTED)

        with pytest.raises(EntityTransitionError) as exc_info:
            tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.APPROVED)

        assert exc_info.value.current == "rejected"
        assert tracker.get("i1", EntityKind.INSIGHT).status == EntityStatus.REJECTED

    def test_backward_move_is_refused(self, tracker):
        tracker.register_batch(["i1"], EntityKind.INSIGHT)
        tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.REVIEWING)

        with pytest.raises(EntityTransitionError):
            tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.WORKING)

    def test_failed_is_reachable_from_any_open_status(self, tracker):
        tracker.register_batch(["i1"], EntityKind.INSIGHT)
        tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.REVIEWING)

        tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.FAILED, error="timeout")

        assert tracker.get("i1", EntityKind.INSIGHT).error == "timeout"

    def test_unknown_entity(self, tracker):
        with pytest.raises(UnknownEntityError):
            tracker.transition("nope", EntityKind.POST, EntityStatus.APPROVED)


class TestQueries:
    """Tests for tracker read helpers."""

    def test_all_resolved(self, tracker):
        tracker.register_batch(["i1", "i2"], EntityKind.INSIGHT)
        tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.APPROVED)
        assert not tracker.all_resolved(EntityKind.INSIGHT)

        tracker.transition("i2", EntityKind.INSIGHT, EntityStatus.FAILED)

        assert tracker.all_resolved(EntityKind.INSIGHT)

    def test_empty_kind_counts_as_resolved(self, tracker):
        assert tracker.all_resolved(EntityKind.POST)

    def test_approved_insights_without_posts(self, tracker):
        tracker.register_batch(["i1", "i2", "i3"], EntityKind.INSIGHT)
        for insight_id in ("i1", "i2"):
            tracker.transition(insight_id, EntityKind.INSIGHT, EntityStatus.APPROVED)
        tracker.transition("i3", EntityKind.INSIGHT, EntityStatus.REJECTED)
        tracker.register_batch(["p1"], EntityKind.POST, parent_id="i1")

        assert tracker.approved_insight_ids_without_posts() == ["i2"]

    def test_counts(self, tracker):
        tracker.register_batch(["i1", "i2", "i3"], EntityKind.INSIGHT)
        tracker.transition("i1", EntityKind.INSIGHT, EntityStatus.APPROVED)

        assert tracker.counts(EntityKind.INSIGHT) == {
            EntityStatus.APPROVED: 1,
            EntityStatus.PENDING: 2,
        }
        assert tracker.awaiting_decision(EntityKind.INSIGHT) == ["i2", "i3"]
        assert tracker.approved_ids(EntityKind.INSIGHT) == ["i1"]
